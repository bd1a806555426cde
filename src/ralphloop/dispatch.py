from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import requests

from ralphloop.constants import DEFAULT_REMOTE_MODEL, REMOTE_API_KEY_ENV, REMOTE_BRANCH_PREFIX
from ralphloop.models import (
    DispatchRequest,
    DispatchResult,
    RemoteConfig,
    SetupError,
    TransientDispatchError,
)
from ralphloop.utils import _compact_log_text, _current_branch, _remote_url


class Dispatcher(Protocol):
    def select_model(self) -> str: ...

    def dispatch(self, request: DispatchRequest) -> DispatchResult: ...


def remote_branch_name(iteration: int) -> str:
    return f"{REMOTE_BRANCH_PREFIX}{iteration}"


def resolve_repository_coordinates(workspace: Path) -> tuple[str, str]:
    """Return ``(repository_url, base_ref)`` or raise ``SetupError``."""
    repository = _remote_url(workspace)
    if not repository:
        raise SetupError(
            f"could not determine repository URL for {workspace}; remote dispatch needs an 'origin' remote"
        )
    return (repository, _current_branch(workspace))


def build_dispatch_payload(request: DispatchRequest) -> dict[str, Any]:
    return {
        "prompt": {"text": request.prompt},
        "source": {"repository": request.repository, "ref": request.ref},
        "target": {"branchName": request.branch_name, "autoCreatePr": False},
        "model": request.model,
    }


class RemoteDispatcher:
    """Fire-and-forget client for the remote agent endpoint.

    ``dispatch`` returns as soon as the endpoint acknowledges the run; the
    run itself is never polled.
    """

    def __init__(self, config: RemoteConfig, *, api_key: str, session: requests.Session | None = None) -> None:
        if not api_key:
            raise SetupError(
                f"remote dispatch is enabled but no API key is configured (set {REMOTE_API_KEY_ENV} "
                "or remote.api_key in .ralph/config.yaml)"
            )
        self.config = config
        self.session = session if session is not None else requests.Session()
        self.session.auth = (api_key, "")

    def select_model(self) -> str:
        if self.config.model:
            return self.config.model
        try:
            response = self.session.get(f"{self.config.api_url}/v0/models", timeout=self.config.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError):
            return DEFAULT_REMOTE_MODEL
        models = payload.get("models") if isinstance(payload, dict) else None
        if isinstance(models, list) and models and isinstance(models[0], str) and models[0].strip():
            return models[0].strip()
        return DEFAULT_REMOTE_MODEL

    def dispatch(self, request: DispatchRequest) -> DispatchResult:
        url = f"{self.config.api_url}/v0/agents"
        try:
            response = self.session.post(
                url,
                json=build_dispatch_payload(request),
                timeout=self.config.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            raise TransientDispatchError(f"remote endpoint unreachable at {url}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        run_id = str(payload.get("id", "") or "").strip()
        if not run_id:
            error = payload.get("error") or payload.get("message") or response.text or "unknown error"
            raise TransientDispatchError(
                f"remote dispatch returned no run identifier (HTTP {response.status_code}): "
                f"{_compact_log_text(str(error))}"
            )
        target = payload.get("target") if isinstance(payload.get("target"), dict) else {}
        return DispatchResult(
            run_id=run_id,
            monitor_url=str(target.get("url", "") or ""),
            branch_name=request.branch_name,
        )
