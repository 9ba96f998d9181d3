"""Progress-tracking reader for layer downloads."""

from __future__ import annotations

import io
import time
from collections.abc import Callable
from typing import BinaryIO

from pydantic import BaseModel, ConfigDict

from ocirootfs.core.deadline import Deadline


class ProgressUpdate(BaseModel):
    """One progress report for a stream being consumed."""

    model_config = ConfigDict(frozen=True)

    title: str
    action: str
    transferred: int
    total: int
    rate: float  # bytes per second since the first read
    done: bool = False

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.transferred / self.total * 100)


ProgressCallback = Callable[[ProgressUpdate], None]


class ProgressReader(io.RawIOBase):
    """Wraps a byte stream, counting bytes and reporting throughput.

    The callback fires at most once per *interval* seconds, and always once
    when the underlying stream reports EOF.
    """

    def __init__(
        self,
        stream: BinaryIO,
        total: int,
        *,
        title: str,
        action: str = "Downloading",
        callback: ProgressCallback | None = None,
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        deadline: Deadline | None = None,
    ) -> None:
        super().__init__()
        self._stream = stream
        self.total = total
        self.title = title
        self.action = action
        self.transferred = 0
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._deadline = deadline
        self._started_at: float | None = None
        self._last_report: float | None = None
        self._finished = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._deadline is not None:
            self._deadline.check(f"{self.action.lower()} {self.title}")
        data = self._stream.read(len(buffer))
        n = len(data)
        buffer[:n] = data

        now = self._clock()
        if self._started_at is None:
            self._started_at = now
        self.transferred += n

        at_eof = n == 0
        due = self._last_report is None or now - self._last_report >= self._interval
        if at_eof and not self._finished:
            self._finished = True
            self._report(now, done=True)
        elif n and due:
            self._report(now, done=False)
        return n

    @property
    def rate(self) -> float:
        if self._started_at is None or self._last_report is None:
            return 0.0
        elapsed = self._last_report - self._started_at
        return self.transferred / elapsed if elapsed > 0 else 0.0

    def _report(self, now: float, *, done: bool) -> None:
        self._last_report = now
        if self._callback is None:
            return
        self._callback(
            ProgressUpdate(
                title=self.title,
                action=self.action,
                transferred=self.transferred,
                total=self.total,
                rate=self.rate,
                done=done,
            )
        )

    def close(self) -> None:
        try:
            self._stream.close()
        finally:
            super().close()

    def finish(self, chunk_size: int = 64 * 1024) -> int:
        """Consume whatever the reader has not read yet.

        Archive readers stop at the end-of-archive marker, which can leave
        padding unread; draining guarantees the final report fires and lets
        verifying streams see EOF.  Returns the number of bytes drained.
        """
        drained = 0
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return drained
            drained += len(chunk)
