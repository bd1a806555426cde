"""Stuck-agent detection over a bounded history window.

Two rules, either one is enough to gutter the run:

* repeated failure: the same shell command exits non-zero ``failure_threshold``
  times inside the window with no success of that command in between
* thrashing: the same path is written ``thrash_threshold`` times inside
  ``thrash_window_seconds``

Both windows are deques capped by count and pruned by age on every
observation, so memory stays flat no matter how long an invocation runs.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from ralphloop.models import ActivityRecord, DetectorConfig, GutterReason, RecordKind


@dataclass(frozen=True)
class _CommandEntry:
    at: float
    command: str
    exit_code: int


@dataclass(frozen=True)
class _WriteEntry:
    at: float
    path: str


class FailureWindow:
    def __init__(self, *, max_entries: int, max_age_seconds: float, thrash_age_seconds: float) -> None:
        self.max_age_seconds = max_age_seconds
        self.thrash_age_seconds = thrash_age_seconds
        self.commands: deque[_CommandEntry] = deque(maxlen=max_entries)
        self.writes: deque[_WriteEntry] = deque(maxlen=max_entries)

    def evict(self, now: float) -> None:
        while self.commands and now - self.commands[0].at > self.max_age_seconds:
            self.commands.popleft()
        while self.writes and now - self.writes[0].at > self.thrash_age_seconds:
            self.writes.popleft()

    def add_command(self, at: float, command: str, exit_code: int) -> None:
        self.commands.append(_CommandEntry(at, command, exit_code))

    def add_write(self, at: float, path: str) -> None:
        self.writes.append(_WriteEntry(at, path))

    def failure_streak(self, command: str) -> int:
        # Most recent entries first; a success of the same command ends the streak.
        streak = 0
        for entry in reversed(self.commands):
            if entry.command != command:
                continue
            if entry.exit_code == 0:
                break
            streak += 1
        return streak

    def write_count(self, path: str) -> int:
        return sum(1 for entry in self.writes if entry.path == path)

    def __len__(self) -> int:
        return len(self.commands) + len(self.writes)


class PatternDetector:
    def __init__(self, config: DetectorConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self.window = FailureWindow(
            max_entries=config.failure_window_size,
            max_age_seconds=config.failure_window_seconds,
            thrash_age_seconds=config.thrash_window_seconds,
        )
        self.fired: GutterReason | None = None

    def observe(self, record: ActivityRecord) -> GutterReason | None:
        """Feed one record; return the gutter reason once a rule trips."""
        if self.fired is not None:
            return self.fired
        now = self._clock()
        self.window.evict(now)

        if record.kind is RecordKind.SHELL and record.exit_code is not None:
            self.window.add_command(now, record.subject, record.exit_code)
            if record.failed:
                streak = self.window.failure_streak(record.subject)
                if streak >= self.config.failure_threshold:
                    self.fired = GutterReason(
                        rule="repeated_failure",
                        subject=record.subject,
                        count=streak,
                        detail=(
                            f"command failed {streak} times in a row "
                            f"(last exit={record.exit_code}): {record.subject}"
                        ),
                    )
        elif record.kind is RecordKind.WRITE:
            self.window.add_write(now, record.subject)
            writes = self.window.write_count(record.subject)
            if writes >= self.config.thrash_threshold:
                self.fired = GutterReason(
                    rule="thrashing",
                    subject=record.subject,
                    count=writes,
                    detail=(
                        f"file written {writes} times within "
                        f"{int(self.config.thrash_window_seconds)}s: {record.subject}"
                    ),
                )
        return self.fired

    def snapshot(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "fired": None
            if self.fired is None
            else {
                "rule": self.fired.rule,
                "subject": self.fired.subject,
                "count": self.fired.count,
                "detail": self.fired.detail,
            },
            "commands": [
                {
                    "command": entry.command,
                    "exit_code": entry.exit_code,
                    "age_seconds": round(now - entry.at, 3),
                }
                for entry in self.window.commands
            ],
            "writes": [
                {"path": entry.path, "age_seconds": round(now - entry.at, 3)}
                for entry in self.window.writes
            ],
        }
