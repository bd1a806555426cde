"""Ralphloop data models: exceptions, dataclasses, enums, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_float(value: Any, *, default: float) -> float:
    parsed = _coerce_float(value, default=default)
    return parsed if parsed > 0 else default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed >= 0 else default


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RalphError(RuntimeError):
    """Base class for loop errors that terminate a run."""


class SetupError(RalphError):
    """Raised before any invocation when credentials, coordinates or inputs are missing."""


class TaskFormatError(SetupError):
    """Raised when the task document cannot be read or parsed."""


class StateError(RalphError):
    """Raised when durable state cannot be loaded or validated."""


class TransientDispatchError(RalphError):
    """Raised when the remote endpoint is unreachable or returns no run identifier."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RecordKind(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    SHELL = "SHELL"
    TOKEN_REPORT = "TOKEN_REPORT"
    OTHER = "OTHER"


class IterationStatus(str, Enum):
    RUNNING = "RUNNING"
    WARNED = "WARNED"
    ROTATED = "ROTATED"
    GUTTER = "GUTTER"
    COMPLETE = "COMPLETE"


class ControllerState(str, Enum):
    RUNNING = "RUNNING"
    WARN_SENT = "WARN_SENT"
    ROTATE_PENDING = "ROTATE_PENDING"
    GUTTER = "GUTTER"
    DONE = "DONE"


class TerminalSignal(str, Enum):
    ROTATE = "ROTATE"
    GUTTER = "GUTTER"
    DONE = "DONE"


# ---------------------------------------------------------------------------
# Records and state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActivityRecord:
    timestamp: str
    kind: RecordKind
    subject: str
    size_bytes: int
    exit_code: int | None = None
    raw_line: str = ""

    @property
    def failed(self) -> bool:
        return self.kind is RecordKind.SHELL and self.exit_code not in (None, 0)


@dataclass(frozen=True)
class GutterReason:
    rule: str        # "repeated_failure" | "thrashing" | "agent_reported"
    subject: str     # command or path that tripped the rule
    count: int
    detail: str


@dataclass(frozen=True)
class IterationState:
    iteration: int
    status: IterationStatus
    started_at: str


@dataclass(frozen=True)
class Guardrail:
    trigger: str
    instruction: str
    added_after_iteration: str


@dataclass(frozen=True)
class ChecklistItem:
    text: str
    checked: bool
    line_number: int


@dataclass(frozen=True)
class TaskDefinition:
    path: Path
    description: str
    verification_command: str
    max_iterations: int | None
    items: tuple[ChecklistItem, ...]

    @property
    def unchecked_count(self) -> int:
        return sum(1 for item in self.items if not item.checked)

    @property
    def checked_count(self) -> int:
        return sum(1 for item in self.items if item.checked)


@dataclass(frozen=True)
class CompletionResult:
    done: bool
    unchecked: int
    total: int
    verification_exit_code: int | None
    message: str


@dataclass(frozen=True)
class InvocationOutcome:
    signal: TerminalSignal
    iteration: int
    estimate: int
    records: int
    skipped_lines: int
    exit_code: int | None
    reason: str
    warned: bool = False
    gutter: GutterReason | None = None
    gutter_snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchRequest:
    repository: str
    ref: str
    branch_name: str
    prompt: str
    model: str


@dataclass(frozen=True)
class DispatchResult:
    run_id: str
    monitor_url: str
    branch_name: str


@dataclass(frozen=True)
class LoopResult:
    exit_code: int
    signal: TerminalSignal | None
    iteration: int
    invocations: int
    message: str


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThresholdConfig:
    warn_tokens: int
    rotate_tokens: int
    overhead_multiplier: float


@dataclass(frozen=True)
class DetectorConfig:
    failure_threshold: int
    failure_window_size: int
    failure_window_seconds: float
    thrash_threshold: int
    thrash_window_seconds: float


@dataclass(frozen=True)
class AgentConfig:
    command: str
    model: str
    timeout_seconds: float
    max_records: int


@dataclass(frozen=True)
class RemoteConfig:
    enabled: bool
    api_url: str
    model: str
    timeout_seconds: float


@dataclass(frozen=True)
class LoopConfig:
    thresholds: ThresholdConfig
    detector: DetectorConfig
    agent: AgentConfig
    remote: RemoteConfig
    max_iterations: int
    auto_commit: bool
