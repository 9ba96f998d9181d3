"""Build deadline and cancellation.

A ``Deadline`` is created once per build and threaded through every
blocking step: registry requests, blob reads, and the formatter.  The
clock starts at ``start()``, so constructing a build does not consume
its budget.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from ocirootfs.core.errors import BuildTimeout


class Deadline:
    """An optional wall-clock budget that can also be cancelled.

    Parameters
    ----------
    seconds:
        Budget in seconds, or ``None`` for no limit.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        seconds: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at: float | None = None
        self._cancelled = False

    def start(self) -> None:
        """Start the clock.  Later calls do not restart it."""
        if self.seconds is not None and self._expires_at is None:
            self._expires_at = self._clock() + self.seconds

    def cancel(self) -> None:
        """Cancel the build; the next ``check()`` raises."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def remaining(self) -> float | None:
        """Seconds left, ``0.0`` once expired, ``None`` when unbounded."""
        if self.seconds is None:
            return None
        if self._expires_at is None:
            return self.seconds
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, step: str) -> None:
        """Raise ``BuildTimeout`` if the build was cancelled or ran out of time."""
        if self._cancelled:
            raise BuildTimeout(f"build cancelled during {step}")
        if self.expired:
            raise BuildTimeout(f"build deadline exceeded during {step}")

    def cap(self, timeout: float | None) -> float | None:
        """Clamp a per-operation *timeout* to the time remaining."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
