"""Time-based throttling of progress notifications."""

import time
from collections.abc import Callable


class ProgressThrottle:
    """Allow at most one emission per interval."""

    def __init__(self, interval_seconds: float = 0.2, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last_emit: float | None = None

    def should_emit(self, immediate: bool = False) -> bool:
        """Return True and record the time if an emission is due now."""
        now = self._clock()
        if (
            immediate
            or self._last_emit is None
            or now - self._last_emit >= self.interval_seconds
        ):
            self._last_emit = now
            return True
        return False

    @property
    def time_until_next(self) -> float:
        if self._last_emit is None:
            return 0.0
        return max(0.0, self.interval_seconds - (self._clock() - self._last_emit))

    def reset(self) -> None:
        self._last_emit = None
