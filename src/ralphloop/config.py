from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from ralphloop.constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_MAX_RECORDS,
    DEFAULT_AGENT_MODEL,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_AUTO_COMMIT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_FAILURE_WINDOW_SECONDS,
    DEFAULT_FAILURE_WINDOW_SIZE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_OVERHEAD_MULTIPLIER,
    DEFAULT_REMOTE_API_URL,
    DEFAULT_REMOTE_TIMEOUT_SECONDS,
    DEFAULT_ROTATE_TOKENS,
    DEFAULT_THRASH_THRESHOLD,
    DEFAULT_THRASH_WINDOW_SECONDS,
    DEFAULT_WARN_TOKENS,
    RALPH_DIR_NAME,
    REMOTE_API_KEY_ENV,
)
from ralphloop.models import (
    AgentConfig,
    DetectorConfig,
    LoopConfig,
    RemoteConfig,
    SetupError,
    ThresholdConfig,
    _coerce_bool,
    _coerce_non_negative_int,
    _coerce_positive_float,
    _coerce_positive_int,
)

ENV_OVERRIDES = {
    "RALPH_WARN_TOKENS": ("thresholds", "warn_tokens"),
    "RALPH_ROTATE_TOKENS": ("thresholds", "rotate_tokens"),
    "RALPH_MAX_ITERATIONS": ("loop", "max_iterations"),
    "RALPH_MODEL": ("agent", "model"),
}


def _global_config_path() -> Path:
    return Path.home() / RALPH_DIR_NAME / CONFIG_FILE


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _deep_merge_dict(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge_dict(merged[key], value)
        else:
            merged[key] = value
    return merged


def _section(payload: dict[str, Any], name: str) -> dict[str, Any]:
    section = payload.get(name)
    return section if isinstance(section, dict) else {}


def _env_overlay(environ: Mapping[str, str]) -> dict[str, Any]:
    overlay: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        raw = str(environ.get(env_name, "")).strip()
        if raw:
            overlay.setdefault(section, {})[key] = raw
    return overlay


def _load_raw_config(
    ralph_dir: Path,
    *,
    environ: Mapping[str, str] | None = None,
    include_global: bool = True,
) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    payload: dict[str, Any] = {}
    if include_global:
        payload = _deep_merge_dict(payload, _load_yaml_mapping(_global_config_path()))
    payload = _deep_merge_dict(payload, _load_yaml_mapping(ralph_dir / CONFIG_FILE))
    return _deep_merge_dict(payload, _env_overlay(env))


def _load_threshold_config(payload: dict[str, Any]) -> ThresholdConfig:
    thresholds = _section(payload, "thresholds")
    warn_tokens = _coerce_positive_int(thresholds.get("warn_tokens"), default=DEFAULT_WARN_TOKENS)
    rotate_tokens = _coerce_positive_int(
        thresholds.get("rotate_tokens"), default=DEFAULT_ROTATE_TOKENS
    )
    if warn_tokens >= rotate_tokens:
        raise SetupError(
            f"thresholds.warn_tokens ({warn_tokens}) must be lower than "
            f"thresholds.rotate_tokens ({rotate_tokens})"
        )
    return ThresholdConfig(
        warn_tokens=warn_tokens,
        rotate_tokens=rotate_tokens,
        overhead_multiplier=_coerce_positive_float(
            thresholds.get("overhead_multiplier"), default=DEFAULT_OVERHEAD_MULTIPLIER
        ),
    )


def _load_detector_config(payload: dict[str, Any]) -> DetectorConfig:
    detector = _section(payload, "detector")
    return DetectorConfig(
        failure_threshold=_coerce_positive_int(
            detector.get("failure_threshold"), default=DEFAULT_FAILURE_THRESHOLD
        ),
        failure_window_size=_coerce_positive_int(
            detector.get("failure_window_size"), default=DEFAULT_FAILURE_WINDOW_SIZE
        ),
        failure_window_seconds=_coerce_positive_float(
            detector.get("failure_window_seconds"), default=DEFAULT_FAILURE_WINDOW_SECONDS
        ),
        thrash_threshold=_coerce_positive_int(
            detector.get("thrash_threshold"), default=DEFAULT_THRASH_THRESHOLD
        ),
        thrash_window_seconds=_coerce_positive_float(
            detector.get("thrash_window_seconds"), default=DEFAULT_THRASH_WINDOW_SECONDS
        ),
    )


def _load_agent_config(payload: dict[str, Any]) -> AgentConfig:
    agent = _section(payload, "agent")
    command = str(agent.get("command", DEFAULT_AGENT_COMMAND) or "").strip() or DEFAULT_AGENT_COMMAND
    model = str(agent.get("model", DEFAULT_AGENT_MODEL) or "").strip() or DEFAULT_AGENT_MODEL
    timeout_seconds = _coerce_positive_float(agent.get("timeout_seconds"), default=DEFAULT_AGENT_TIMEOUT_SECONDS)
    return AgentConfig(
        command=command,
        model=model,
        timeout_seconds=timeout_seconds,
        max_records=_coerce_non_negative_int(agent.get("max_records"), default=DEFAULT_AGENT_MAX_RECORDS),
    )


def _load_remote_config(payload: dict[str, Any]) -> RemoteConfig:
    remote = _section(payload, "remote")
    api_url = str(remote.get("api_url", DEFAULT_REMOTE_API_URL) or "").strip().rstrip("/")
    return RemoteConfig(
        enabled=_coerce_bool(remote.get("enabled"), default=False),
        api_url=api_url or DEFAULT_REMOTE_API_URL,
        model=str(remote.get("model", "") or "").strip(),
        timeout_seconds=_coerce_positive_float(
            remote.get("timeout_seconds"), default=DEFAULT_REMOTE_TIMEOUT_SECONDS
        ),
    )


def load_loop_config(
    ralph_dir: Path,
    *,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    include_global: bool = True,
) -> LoopConfig:
    """Resolve the effective loop configuration.

    Precedence, highest first: ``overrides`` (CLI flags, nested by section),
    ``RALPH_*`` environment variables, ``<ralph_dir>/config.yaml``, the global
    ``~/.ralph/config.yaml``, then built-in defaults.  Malformed values fall
    back to defaults; an inverted warn/rotate pair raises ``SetupError``.
    """
    payload = _load_raw_config(ralph_dir, environ=environ, include_global=include_global)
    if overrides:
        cleaned = {
            section: {key: value for key, value in values.items() if value is not None}
            for section, values in overrides.items()
            if isinstance(values, Mapping)
        }
        payload = _deep_merge_dict(payload, cleaned)
    loop = _section(payload, "loop")
    return LoopConfig(
        thresholds=_load_threshold_config(payload),
        detector=_load_detector_config(payload),
        agent=_load_agent_config(payload),
        remote=_load_remote_config(payload),
        max_iterations=_coerce_positive_int(loop.get("max_iterations"), default=DEFAULT_MAX_ITERATIONS),
        auto_commit=_coerce_bool(loop.get("auto_commit", DEFAULT_AUTO_COMMIT), default=DEFAULT_AUTO_COMMIT),
    )


def resolve_api_key(
    ralph_dir: Path,
    *,
    environ: Mapping[str, str] | None = None,
    include_global: bool = True,
) -> str:
    env = os.environ if environ is None else environ
    from_env = str(env.get(REMOTE_API_KEY_ENV, "")).strip()
    if from_env:
        return from_env
    sources = [ralph_dir / CONFIG_FILE]
    if include_global:
        sources.append(_global_config_path())
    for path in sources:
        remote = _section(_load_yaml_mapping(path), "remote")
        key = str(remote.get("api_key", "") or "").strip()
        if key:
            return key
    return ""
