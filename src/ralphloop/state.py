"""Ralphloop state: the `.ralph/` durable store, iteration counter, and run lock."""

from __future__ import annotations

import json
import os
import re
import shutil
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ralphloop.constants import (
    ACTIVITY_LOG_FILE,
    AGENT_LOG_DIR,
    DEFAULT_GUARDRAILS_TEMPLATE,
    DEFAULT_PROGRESS_TEMPLATE,
    ERRORS_LOG_FILE,
    GUARDRAILS_FILE,
    GUTTER_SNAPSHOT_FILE,
    HANDOFF_FILE,
    ITERATION_FILE,
    LOCK_FILE,
    PROGRESS_FILE,
    RALPH_DIR_NAME,
    STATE_FILE,
)
from ralphloop.models import Guardrail, IterationState, IterationStatus, StateError
from ralphloop.utils import (
    _append_error,
    _append_log,
    _ensure_text_file,
    _parse_utc,
    _read_json,
    _utc_now,
    _write_json,
)

_SIGN_HEADING_PATTERN = re.compile(r"^###\s+Sign:\s*(.*?)\s*$", re.MULTILINE)
_SIGN_FIELD_PATTERN = re.compile(r"^\s*-\s+\*\*(Trigger|Instruction|Added after)\*\*:\s*(.*?)\s*$", re.MULTILINE)


def _render_guardrail(guardrail: Guardrail) -> str:
    title = " ".join(guardrail.trigger.split())[:60]
    return (
        f"\n### Sign: {title}\n"
        f"- **Trigger**: {guardrail.trigger}\n"
        f"- **Instruction**: {guardrail.instruction}\n"
        f"- **Added after**: {guardrail.added_after_iteration}\n"
    )


def parse_guardrails(text: str) -> list[Guardrail]:
    headings = list(_SIGN_HEADING_PATTERN.finditer(text))
    guardrails: list[Guardrail] = []
    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(text)
        block = text[heading.end():end]
        fields = {name: value for name, value in _SIGN_FIELD_PATTERN.findall(block)}
        instruction = fields.get("Instruction", "").strip()
        if not instruction:
            continue
        guardrails.append(
            Guardrail(
                trigger=fields.get("Trigger", "").strip() or heading.group(1),
                instruction=instruction,
                added_after_iteration=fields.get("Added after", "").strip(),
            )
        )
    return guardrails


class ProgressStore:
    """Files under ``<workspace>/.ralph`` shared by every invocation.

    Read at invocation start, written at invocation end.  Only one loop may
    write a store at a time; ``acquire_lock`` guards against accidents but the
    single-writer rule is the operator's responsibility.
    """

    def __init__(self, workspace: Path, ralph_dir: Path | None = None) -> None:
        self.workspace = workspace
        self.root = ralph_dir if ralph_dir is not None else workspace / RALPH_DIR_NAME

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILE

    @property
    def guardrails_path(self) -> Path:
        return self.root / GUARDRAILS_FILE

    @property
    def iteration_path(self) -> Path:
        return self.root / ITERATION_FILE

    @property
    def state_path(self) -> Path:
        return self.root / STATE_FILE

    @property
    def activity_log_path(self) -> Path:
        return self.root / ACTIVITY_LOG_FILE

    @property
    def errors_log_path(self) -> Path:
        return self.root / ERRORS_LOG_FILE

    @property
    def gutter_path(self) -> Path:
        return self.root / GUTTER_SNAPSHOT_FILE

    @property
    def handoff_path(self) -> Path:
        return self.root / HANDOFF_FILE

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE

    @property
    def log_dir(self) -> Path:
        return self.root / AGENT_LOG_DIR

    def initialize(self) -> list[Path]:
        created: list[Path] = []
        self.root.mkdir(parents=True, exist_ok=True)
        _ensure_text_file(self.progress_path, DEFAULT_PROGRESS_TEMPLATE, created)
        _ensure_text_file(self.guardrails_path, DEFAULT_GUARDRAILS_TEMPLATE, created)
        _ensure_text_file(self.activity_log_path, "", created)
        _ensure_text_file(self.errors_log_path, "", created)
        return created

    # -- iteration counter ------------------------------------------------

    def read_iteration(self) -> int:
        if not self.iteration_path.exists():
            return 1
        raw = self.iteration_path.read_text(encoding="utf-8").strip()
        if not raw:
            return 1
        try:
            value = int(raw)
        except ValueError as exc:
            raise StateError(f"iteration counter is not an integer: {self.iteration_path}: {raw!r}") from exc
        if value < 1:
            raise StateError(f"iteration counter must be >= 1: {self.iteration_path}")
        return value

    def write_iteration(self, value: int) -> None:
        self.iteration_path.parent.mkdir(parents=True, exist_ok=True)
        self.iteration_path.write_text(f"{int(value)}\n", encoding="utf-8")

    def read_state(self) -> IterationState | None:
        if not self.state_path.exists():
            return None
        payload = _read_json(self.state_path)
        try:
            return IterationState(
                iteration=int(payload["iteration"]),
                status=IterationStatus(str(payload["status"])),
                started_at=str(payload.get("started_at", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateError(f"state file is malformed: {self.state_path}: {exc}") from exc

    def write_state(self, state: IterationState, **extra: Any) -> None:
        payload: dict[str, Any] = {
            "iteration": state.iteration,
            "status": state.status.value,
            "started_at": state.started_at,
            "updated_at": _utc_now(),
        }
        payload.update(extra)
        _write_json(self.state_path, payload)

    def claim_iteration(self) -> IterationState:
        """Reserve the next iteration number for an invocation about to launch.

        A number recorded in ``state.json`` has been used, whatever its status,
        so the counter moves past it before it is handed out again.
        """
        counter = self.read_iteration()
        previous = self.read_state()
        if previous is not None and previous.iteration >= counter:
            counter = previous.iteration + 1
            self.write_iteration(counter)
        elif not self.iteration_path.exists():
            self.write_iteration(counter)
        state = IterationState(iteration=counter, status=IterationStatus.RUNNING, started_at=_utc_now())
        self.write_state(state)
        return state

    def mark_status(self, state: IterationState, status: IterationStatus, **extra: Any) -> IterationState:
        updated = IterationState(iteration=state.iteration, status=status, started_at=state.started_at)
        self.write_state(updated, **extra)
        return updated

    def advance_iteration(self, current: int) -> int:
        """Move the counter from ``current`` to ``current + 1`` and return it."""
        stored = self.read_iteration()
        if stored != current:
            raise StateError(
                f"iteration counter changed underneath the loop (expected {current}, found {stored}); "
                "is another loop writing this state directory?"
            )
        self.write_iteration(current + 1)
        return current + 1

    # -- guardrails / progress --------------------------------------------

    def read_guardrails(self) -> list[Guardrail]:
        if not self.guardrails_path.exists():
            return []
        return parse_guardrails(self.guardrails_path.read_text(encoding="utf-8"))

    def append_guardrail(self, guardrail: Guardrail) -> None:
        if not guardrail.instruction.strip():
            raise StateError("guardrail instruction must be non-empty")
        if not self.guardrails_path.exists():
            self.initialize()
        with self.guardrails_path.open("a", encoding="utf-8") as handle:
            handle.write(_render_guardrail(guardrail))
        _append_log(self.root, f"guardrail added trigger={guardrail.trigger!r}")

    def read_progress(self) -> str:
        if not self.progress_path.exists():
            return ""
        return self.progress_path.read_text(encoding="utf-8")

    def append_progress(self, text: str) -> None:
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with self.progress_path.open("a", encoding="utf-8") as handle:
            handle.write(text if text.endswith("\n") else text + "\n")

    # -- logs / artifacts -------------------------------------------------

    def log_activity(self, message: str) -> None:
        _append_log(self.root, message)

    def log_error(self, message: str) -> None:
        _append_error(self.root, message)

    def write_gutter_snapshot(self, payload: dict[str, Any]) -> Path:
        snapshot = {"written_at": _utc_now(), **payload}
        _write_json(self.gutter_path, snapshot)
        return self.gutter_path

    def write_handoff(self, text: str) -> Path:
        self.handoff_path.parent.mkdir(parents=True, exist_ok=True)
        self.handoff_path.write_text(text, encoding="utf-8")
        return self.handoff_path

    def mirror_into(self, destination: Path) -> list[Path]:
        """Copy progress and guardrails into another directory (remote handoff)."""
        if destination.resolve() == self.root.resolve():
            return []
        destination.mkdir(parents=True, exist_ok=True)
        copied: list[Path] = []
        for source in (self.progress_path, self.guardrails_path):
            if source.exists():
                target = destination / source.name
                shutil.copy2(source, target)
                copied.append(target)
        return copied


# ---------------------------------------------------------------------------
# Single-writer lock
# ---------------------------------------------------------------------------


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _lock_age_seconds(existing: dict[str, Any], *, now: datetime) -> float | None:
    heartbeat = _parse_utc(str(existing.get("last_heartbeat_at", "")))
    if heartbeat is None:
        return None
    return max(0.0, (now - heartbeat).total_seconds())


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    rendered = json.dumps(payload, indent=2) + "\n"
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(rendered)


def acquire_lock(lock_path: Path, *, workspace: Path, command: str, stale_seconds: int) -> tuple[bool, str]:
    now = datetime.now(timezone.utc)
    started_at = _utc_now()
    owner_uuid = uuid.uuid4().hex
    lock_payload: dict[str, Any] = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "owner_uuid": owner_uuid,
        "started_at": started_at,
        "last_heartbeat_at": started_at,
        "last_heartbeat_monotonic": time.monotonic(),
        "command": command,
        "workspace": str(workspace),
    }
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    stale_replaced = False
    for _ in range(3):
        try:
            _write_lock_payload_exclusive(lock_path, lock_payload)
            if stale_replaced:
                return (True, f"replaced stale lock at {lock_path}")
            return (True, f"lock acquired at {lock_path}")
        except FileExistsError:
            existing = _read_lock_payload(lock_path)
            age_seconds = _lock_age_seconds(existing, now=now)
            holder_pid = existing.get("pid", "<unknown>")
            holder_host = existing.get("host", "<unknown>")
            heartbeat = _parse_utc(str(existing.get("last_heartbeat_at", "")))
            if heartbeat is not None and now - heartbeat <= timedelta(seconds=stale_seconds):
                age_text = f"{age_seconds:.0f}s" if age_seconds is not None else "unknown"
                return (
                    False,
                    f"active lock exists at {lock_path} (pid={holder_pid}, host={holder_host}, age={age_text})",
                )

            stale_path = lock_path.with_suffix(f"{lock_path.suffix}.stale.{owner_uuid[:8]}")
            try:
                os.replace(lock_path, stale_path)
            except FileNotFoundError:
                continue
            except OSError:
                return (False, f"failed to replace stale lock at {lock_path}")
            stale_replaced = True
            continue
        except OSError as exc:
            return (False, f"failed to acquire lock at {lock_path}: {exc}")
    return (False, f"failed to acquire lock at {lock_path} after retries")


def heartbeat_lock(lock_path: Path) -> None:
    if not lock_path.exists():
        return
    payload = _read_lock_payload(lock_path)
    if not payload:
        return
    payload["last_heartbeat_at"] = _utc_now()
    payload["last_heartbeat_monotonic"] = time.monotonic()
    _write_json(lock_path, payload)


def release_lock(lock_path: Path) -> None:
    if not lock_path.exists():
        return
    payload = _read_lock_payload(lock_path)
    holder_pid = int(payload.get("pid", -1)) if str(payload.get("pid", "")).isdigit() else -1
    if holder_pid not in {-1, os.getpid()}:
        return
    lock_path.unlink(missing_ok=True)


def inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    """Return lock payload with computed age, or None if no lock exists."""
    if not lock_path.exists():
        return None
    payload = _read_lock_payload(lock_path)
    if not payload:
        return None
    result = dict(payload)
    result["age_seconds"] = _lock_age_seconds(payload, now=datetime.now(timezone.utc))
    return result


def force_break_lock(lock_path: Path, *, reason: str) -> str:
    """Forcibly remove a lock file and return an audit message."""
    if not lock_path.exists():
        return "no lock to break"
    payload = _read_lock_payload(lock_path)
    holder_pid = payload.get("pid", "<unknown>")
    holder_host = payload.get("host", "<unknown>")
    started_at = payload.get("started_at", "<unknown>")
    lock_path.unlink(missing_ok=True)
    return (
        f"lock broken: pid={holder_pid}, host={holder_host}, "
        f"started_at={started_at}, reason={reason}"
    )
