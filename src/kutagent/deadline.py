"""
Cancellable deadlines for the blocking suspension points.

A run owns one Deadline. The provider call, the subprocess wait and the
HTTP fetch each derive their own timeout from it with bound(), so no
single operation can outlive the run that started it.
"""

import threading
import time


class DeadlineExceeded(Exception):
    """The run deadline elapsed or the run was cancelled."""
    pass


class Deadline:
    """
    A point in monotonic time after which work must stop.

    cancel() may be called from another thread; polling operations see
    it on their next check.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._expires_at = time.monotonic() + timeout
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        """Seconds left, never negative. Zero once cancelled."""
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self._expires_at - time.monotonic())

    def bound(self, seconds: float | None) -> float:
        """Clamp a per-operation timeout to what is left of this deadline."""
        remaining = self.remaining()
        if seconds is None:
            return remaining
        return min(seconds, remaining)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self) -> None:
        """Raise DeadlineExceeded if the deadline is over."""
        if self.cancelled:
            raise DeadlineExceeded("run cancelled")
        if self.expired:
            raise DeadlineExceeded(f"run deadline of {self.timeout:g}s exceeded")

    def __repr__(self) -> str:
        return f"Deadline(timeout={self.timeout!r}, remaining={self.remaining():.3f})"
