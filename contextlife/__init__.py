"""
ContextLife daily record store

Local persistence for a passive audio journal: recorded segments are
bucketed by calendar day, carry their own transcription state, and are
annotated with location visits matched by time.

Quick Start:
    from contextlife import RecordStore, TranscriptionOutcome

    store = RecordStore(Path("~/.contextlife/records.db").expanduser())
    segment = store.record_finished_segment(started_at, 900, "audio/0915.m4a")
    store.apply_transcription_result(segment, TranscriptionOutcome.completed(text))
    for record in store.recent_history(days=7):
        print(record.formatted_date, record.formatted_total_duration)

CLI Usage:
    contextlife today
    contextlife history --days 3
    contextlife timeline 2026-01-28

Environment Variables:
    CONTEXTLIFE_STORE_PATH   - Override default store location (~/.contextlife)
"""

from .errors import (
    ContextLifeError,
    DuplicateDailyRecordError,
    InvalidTransitionError,
    StoreError,
)
from .record_store import FinishedRecording, RecordStore
from .types import (
    DailyRecord,
    DailyStats,
    LocationVisit,
    OverallStats,
    SegmentStatus,
    TranscriptionOutcome,
    TranscriptionSegment,
    normalized_date,
)

__version__ = "0.1.0"

__all__ = [
    "ContextLifeError",
    "DailyRecord",
    "DailyStats",
    "DuplicateDailyRecordError",
    "FinishedRecording",
    "InvalidTransitionError",
    "LocationVisit",
    "OverallStats",
    "RecordStore",
    "SegmentStatus",
    "StoreError",
    "TranscriptionOutcome",
    "TranscriptionSegment",
    "normalized_date",
]
