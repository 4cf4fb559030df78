"""
Shared pytest fixtures for contextlife tests.

Stores are created under tmp_path; time-dependent store behaviour runs
against a settable clock instead of the wall clock.
"""

from datetime import datetime, timedelta

import pytest

from contextlife.record_store import RecordStore
from contextlife.types import TranscriptionSegment


def local(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    """Aware local datetime for a wall-clock time."""
    return datetime(year, month, day, hour, minute, second).astimezone()


class FakeClock:
    """Settable replacement for local_now()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_segment(timestamp: datetime, duration: float = 900, audio_ref: str = "/audio/segment.m4a") -> TranscriptionSegment:
    return TranscriptionSegment(timestamp=timestamp, duration=duration, audio_ref=audio_ref)


@pytest.fixture
def clock():
    """Clock fixed at 2026-01-28 14:00 local time."""
    return FakeClock(local(2026, 1, 28, 14, 0))


@pytest.fixture
def store(tmp_path, clock):
    """A fresh RecordStore on the fake clock."""
    s = RecordStore(tmp_path / "records.db", clock=clock)
    yield s
    s.close()
