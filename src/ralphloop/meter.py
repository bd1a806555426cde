from __future__ import annotations

import math

from ralphloop.models import ActivityRecord, RecordKind, ThresholdConfig

_ACCOUNTED_KINDS = frozenset(
    {RecordKind.READ, RecordKind.WRITE, RecordKind.SHELL, RecordKind.OTHER}
)


class ResourceMeter:
    """Approximate context consumption for the current invocation.

    The agent's tokenizer and system prompt are not visible from outside, so
    every accounted byte is scaled by a fixed ``overhead_multiplier`` and the
    result is treated as token-like units.  An agent-side token report can
    only raise the estimate.
    """

    def __init__(self, thresholds: ThresholdConfig) -> None:
        self.thresholds = thresholds
        self._estimate = 0

    @property
    def estimate(self) -> int:
        return self._estimate

    def reset(self) -> None:
        self._estimate = 0

    def add_bytes(self, size_bytes: int) -> int:
        if size_bytes > 0:
            self._estimate += math.ceil(size_bytes * self.thresholds.overhead_multiplier)
        return self._estimate

    def add(self, record: ActivityRecord) -> int:
        if record.kind is RecordKind.TOKEN_REPORT:
            self._estimate = max(self._estimate, record.size_bytes)
            return self._estimate
        if record.kind in _ACCOUNTED_KINDS:
            return self.add_bytes(record.size_bytes)
        return self._estimate

    def should_warn(self) -> bool:
        return self._estimate >= self.thresholds.warn_tokens

    def should_rotate(self) -> bool:
        return self._estimate >= self.thresholds.rotate_tokens

    def classify(self) -> str:
        if self.should_rotate():
            return "rotate"
        if self.should_warn():
            return "warn"
        return "ok"

    def percent_of_rotate(self) -> int:
        return int(self._estimate * 100 / self.thresholds.rotate_tokens)
