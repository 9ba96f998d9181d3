"""Tests for Deadline."""

from __future__ import annotations

import pytest

from ocirootfs.core.deadline import Deadline
from ocirootfs.core.errors import BuildTimeout


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestDeadline:
    def test_unbounded(self):
        deadline = Deadline()
        deadline.start()
        assert deadline.remaining() is None
        assert not deadline.expired
        assert deadline.cap(30.0) == 30.0
        deadline.check("anything")

    def test_clock_starts_at_start(self):
        clock = Clock()
        deadline = Deadline(10, clock=clock)
        clock.now += 50
        assert deadline.remaining() == 10
        deadline.start()
        clock.now += 4
        assert deadline.remaining() == pytest.approx(6)

    def test_start_is_idempotent(self):
        clock = Clock()
        deadline = Deadline(10, clock=clock)
        deadline.start()
        clock.now += 5
        deadline.start()
        assert deadline.remaining() == pytest.approx(5)

    def test_expiry_raises(self):
        clock = Clock()
        deadline = Deadline(1, clock=clock)
        deadline.start()
        clock.now += 2
        assert deadline.expired
        assert deadline.remaining() == 0.0
        with pytest.raises(BuildTimeout, match="deadline exceeded during layer"):
            deadline.check("layer")

    def test_cancel(self):
        deadline = Deadline()
        deadline.cancel()
        assert deadline.cancelled
        with pytest.raises(BuildTimeout, match="cancelled"):
            deadline.check("resolve")

    def test_cap(self):
        clock = Clock()
        deadline = Deadline(20, clock=clock)
        deadline.start()
        assert deadline.cap(30.0) == 20
        assert deadline.cap(5.0) == 5.0
        assert deadline.cap(None) == 20
