from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable


class PollOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    value: Any = None
    error: Exception | None = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome is PollOutcome.SUCCEEDED


def poll_until(
        check: Callable[[], Any],
        *,
        timeout_s: float,
        interval_s: float,
        sleep_first: bool = False,
        on_attempt: Callable[[int, float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Call ``check`` until it returns a truthy value or the deadline passes.

    A timeout is an expected outcome and is returned, not raised. An exception
    raised by ``check`` ends the loop with ``PollOutcome.FAILED``.
    """
    deadline = clock() + max(0.0, float(timeout_s))
    attempts = 0
    if sleep_first:
        sleep(interval_s)
    while True:
        attempts += 1
        try:
            value = check()
        except Exception as exc:
            return PollResult(PollOutcome.FAILED, error=exc, attempts=attempts)
        if value:
            return PollResult(PollOutcome.SUCCEEDED, value=value, attempts=attempts)
        remaining = deadline - clock()
        if on_attempt:
            on_attempt(attempts, max(0.0, remaining))
        if remaining <= 0:
            return PollResult(PollOutcome.TIMED_OUT, attempts=attempts)
        sleep(min(interval_s, remaining))
