"""Drive a single agent invocation to exactly one terminal signal.

State machine::

    RUNNING ──warn threshold──▶ WARN_SENT
    RUNNING / WARN_SENT ──rotate threshold or local budget──▶ ROTATE_PENDING
    RUNNING / WARN_SENT ──pattern detector fires──▶ GUTTER
    any ──completion criteria satisfied──▶ DONE

ROTATE_PENDING, GUTTER and DONE stop the agent.  When the output stream ends
the completion criteria are checked once more; what remains maps to ROTATE,
GUTTER or DONE.
"""

from __future__ import annotations

import time
from typing import Callable

from ralphloop.constants import LOCK_HEARTBEAT_SECONDS, SIGIL_PATTERN
from ralphloop.detector import PatternDetector
from ralphloop.handoff import compose_wrapup_instruction
from ralphloop.meter import ResourceMeter
from ralphloop.models import (
    ActivityRecord,
    CompletionResult,
    ControllerState,
    GutterReason,
    InvocationOutcome,
    IterationState,
    IterationStatus,
    LoopConfig,
    RecordKind,
    TaskFormatError,
    TerminalSignal,
)
from ralphloop.runners import AgentProcess
from ralphloop.state import ProgressStore, heartbeat_lock
from ralphloop.stream import parse_record_line
from ralphloop.utils import _compact_log_text

ACTION_CONTINUE = "continue"
ACTION_WARN = "warn"
ACTION_STOP = "stop"

_STOPPING_STATES = frozenset(
    {ControllerState.ROTATE_PENDING, ControllerState.GUTTER, ControllerState.DONE}
)


class IterationController:
    def __init__(
        self,
        config: LoopConfig,
        store: ProgressStore,
        iteration: IterationState,
        *,
        completion_check: Callable[[], CompletionResult],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store
        self.iteration = iteration
        self.completion_check = completion_check
        self._clock = clock
        self.meter = ResourceMeter(config.thresholds)
        self.detector = PatternDetector(config.detector, clock=clock)
        self.state = ControllerState.RUNNING
        self.records = 0
        self.skipped_lines = 0
        self.warned = False
        self.gutter: GutterReason | None = None
        self.reason = ""
        self._started_at = clock()
        self._last_heartbeat = self._started_at

    # -- transitions --------------------------------------------------------

    def _log(self, message: str) -> None:
        self.store.log_activity(f"iteration={self.iteration.iteration} {message}")

    def _heartbeat(self) -> None:
        now = self._clock()
        if now - self._last_heartbeat < LOCK_HEARTBEAT_SECONDS:
            return
        self._last_heartbeat = now
        heartbeat_lock(self.store.lock_path)

    def _enter(self, state: ControllerState, reason: str) -> None:
        if self.state in _STOPPING_STATES:
            return
        self.state = state
        self.reason = reason
        self._log(f"{state.value} {reason}")

    def _check_completion(self, trigger: str) -> CompletionResult | None:
        try:
            result = self.completion_check()
        except TaskFormatError as exc:
            self.store.log_error(f"iteration={self.iteration.iteration} completion check failed ({trigger}): {exc}")
            return None
        self._log(f"completion check ({trigger}): {result.message}")
        return result

    def _local_budget_exhausted(self) -> str:
        agent = self.config.agent
        if agent.max_records and self.records >= agent.max_records:
            return f"record budget exhausted ({self.records}/{agent.max_records})"
        if agent.timeout_seconds and self._clock() - self._started_at >= agent.timeout_seconds:
            return f"time budget exhausted ({agent.timeout_seconds:.0f}s)"
        return ""

    def observe(self, record: ActivityRecord) -> str:
        """Account one record and return the action the caller should take."""
        self.records += 1
        estimate = self.meter.add(record)
        exit_text = "" if record.exit_code is None else f" exit={record.exit_code}"
        self._log(
            f"record#{self.records} {record.kind.value} bytes={record.size_bytes}{exit_text} "
            f"estimate={estimate} subject={_compact_log_text(record.subject, limit=160)}"
        )
        if record.failed:
            self.store.log_error(
                f"iteration={self.iteration.iteration} shell failed exit={record.exit_code}: "
                f"{_compact_log_text(record.subject)}"
            )
        if self.state in _STOPPING_STATES:
            return ACTION_STOP

        reason = self.detector.observe(record)
        if reason is not None:
            self.gutter = reason
            self._enter(ControllerState.GUTTER, f"{reason.rule}: {reason.detail}")
            return ACTION_STOP

        if record.kind is RecordKind.OTHER:
            for match in SIGIL_PATTERN.finditer(record.subject):
                sigil = match.group(1).upper()
                if sigil == "GUTTER":
                    self.gutter = GutterReason("agent_reported", "agent", 1, "agent reported it is stuck")
                    self._enter(ControllerState.GUTTER, "agent_reported: agent emitted GUTTER sigil")
                    return ACTION_STOP
                result = self._check_completion("agent claimed completion")
                if result is not None and result.done:
                    self._enter(ControllerState.DONE, result.message)
                    return ACTION_STOP

        if self.meter.should_rotate():
            self._enter(
                ControllerState.ROTATE_PENDING,
                f"estimate {estimate} crossed rotate threshold {self.config.thresholds.rotate_tokens}",
            )
            return ACTION_STOP

        budget = self._local_budget_exhausted()
        if budget:
            self._enter(ControllerState.ROTATE_PENDING, budget)
            return ACTION_STOP

        if self.meter.should_warn() and not self.warned:
            self.warned = True
            self.state = ControllerState.WARN_SENT
            self._log(
                f"WARN estimate {estimate} crossed warn threshold {self.config.thresholds.warn_tokens}"
            )
            self.iteration = self.store.mark_status(self.iteration, IterationStatus.WARNED)
            return ACTION_WARN
        return ACTION_CONTINUE

    def finish(self, exit_code: int | None) -> TerminalSignal:
        """Map the final state (plus one last completion check) to a signal."""
        if self.state is not ControllerState.DONE:
            result = self._check_completion("invocation ended")
            if result is not None and result.done:
                self.state = ControllerState.DONE
                self.reason = result.message
        if self.state is ControllerState.DONE:
            signal = TerminalSignal.DONE
        elif self.state is ControllerState.GUTTER:
            signal = TerminalSignal.GUTTER
        else:
            if self.state is not ControllerState.ROTATE_PENDING:
                self.reason = f"agent exited (code={exit_code}) before completion"
            signal = TerminalSignal.ROTATE
        self._log(
            f"terminal signal={signal.value} exit_code={exit_code} records={self.records} "
            f"skipped={self.skipped_lines} estimate={self.meter.estimate} reason={self.reason}"
        )
        return signal

    # -- driving an agent ---------------------------------------------------

    def run(self, agent: AgentProcess, *, prompt: str) -> InvocationOutcome:
        self.meter.reset()
        self.meter.add_bytes(len(prompt.encode("utf-8")))
        self._started_at = self._clock()
        self._last_heartbeat = self._started_at
        self._log(f"invocation start estimate={self.meter.estimate}")

        try:
            for line in agent.lines():
                self._heartbeat()
                record = parse_record_line(line)
                if record is None:
                    if line.strip():
                        self.skipped_lines += 1
                    action = ACTION_CONTINUE
                    budget = self._local_budget_exhausted()
                    if budget:
                        self._enter(ControllerState.ROTATE_PENDING, budget)
                        action = ACTION_STOP
                else:
                    action = self.observe(record)
                if action == ACTION_WARN:
                    instruction = compose_wrapup_instruction(
                        self.meter.estimate,
                        self.config.thresholds.rotate_tokens,
                        progress_path=self.store.progress_path,
                    )
                    delivered = agent.send(instruction)
                    self._log(f"wrap-up instruction delivered={delivered}")
                elif action == ACTION_STOP:
                    agent.terminate()
                    break
        except BaseException:
            agent.terminate()
            raise

        exit_code = agent.wait()
        signal = self.finish(exit_code)
        return InvocationOutcome(
            signal=signal,
            iteration=self.iteration.iteration,
            estimate=self.meter.estimate,
            records=self.records,
            skipped_lines=self.skipped_lines,
            exit_code=exit_code,
            reason=self.reason,
            warned=self.warned,
            gutter=self.gutter if signal is TerminalSignal.GUTTER else None,
            gutter_snapshot=self.detector.snapshot() if signal is TerminalSignal.GUTTER else {},
        )
