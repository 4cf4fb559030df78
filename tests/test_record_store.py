"""Tests for the SQLite-backed daily record store."""

import math
from datetime import timedelta

import pytest

from contextlife.errors import InvalidTransitionError
from contextlife.record_store import FinishedRecording, RecordStore
from contextlife.types import (
    DailyStats,
    OverallStats,
    SegmentStatus,
    TranscriptionOutcome,
)

from tests.conftest import local, make_segment


def _count(store: RecordStore, table: str) -> int:
    return store._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestFindOrCreateDaily:
    """Day bucketing is idempotent."""

    def test_creates_record_at_start_of_day(self, store):
        record = store.find_or_create_daily(local(2026, 1, 28, 14, 30))
        assert record.date == local(2026, 1, 28)
        assert record.segments == []
        assert _count(store, "daily_records") == 1

    def test_same_day_returns_same_record(self, store):
        first = store.find_or_create_daily(local(2026, 1, 28, 8, 0))
        second = store.find_or_create_daily(local(2026, 1, 28, 23, 59))
        assert first.id == second.id
        assert first.date == second.date
        assert _count(store, "daily_records") == 1

    def test_different_days_get_different_records(self, store):
        first = store.find_or_create_daily(local(2026, 1, 28, 23, 59))
        second = store.find_or_create_daily(local(2026, 1, 29, 0, 0))
        assert first.id != second.id
        assert _count(store, "daily_records") == 2

    def test_get_daily_does_not_create(self, store):
        assert store.get_daily(local(2026, 1, 28, 9, 0)) is None
        assert _count(store, "daily_records") == 0

    def test_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "records.db"
        with RecordStore(path, clock=clock) as s:
            created = s.find_or_create_daily(local(2026, 1, 28, 9, 0))
            s.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        with RecordStore(path, clock=clock) as s:
            again = s.find_or_create_daily(local(2026, 1, 28, 18, 0))
            assert again.id == created.id
            assert len(again.segments) == 1


class TestRecordFinishedSegment:
    """Tests for attaching recordings to their day."""

    def test_creates_pending_segment_in_its_day(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/audio/0900.m4a")
        assert segment.status is SegmentStatus.PENDING

        record = store.get_daily(local(2026, 1, 28))
        assert [s.id for s in record.segments] == [segment.id]
        assert record.segments[0].audio_ref == "/audio/0900.m4a"
        assert record.segments[0].timestamp == local(2026, 1, 28, 9, 0)

    def test_uses_segment_day_not_today(self, store):
        """A late-delivered recording from yesterday lands on yesterday."""
        store.record_finished_segment(local(2026, 1, 27, 23, 50), 600, "/late.m4a")
        assert store.get_daily(local(2026, 1, 27)) is not None
        assert store.get_daily(local(2026, 1, 28)) is None

    def test_updated_at_increases_with_each_segment(self, store):
        store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/1.m4a")
        first = store.get_daily(local(2026, 1, 28)).updated_at
        store.record_finished_segment(local(2026, 1, 28, 9, 15), 900, "/2.m4a")
        second = store.get_daily(local(2026, 1, 28)).updated_at
        assert second > first

    def test_segments_kept_in_insertion_order(self, store):
        late = store.record_finished_segment(local(2026, 1, 28, 11, 0), 900, "/late.m4a")
        early = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/early.m4a")
        record = store.get_daily(local(2026, 1, 28))
        assert [s.id for s in record.segments] == [late.id, early.id]

    def test_total_duration(self, store):
        for duration in (900, 600, 300):
            store.record_finished_segment(local(2026, 1, 28, 9, 0), duration, "/x.m4a")
        record = store.get_daily(local(2026, 1, 28))
        assert record.total_duration == 1800
        assert len(record.segments) == 3

    @pytest.mark.parametrize("duration", [0, -60, math.nan, math.inf])
    def test_rejects_invalid_duration_without_writing(self, store, duration):
        with pytest.raises(ValueError):
            store.record_finished_segment(local(2026, 1, 28, 9, 0), duration, "/x.m4a")
        assert _count(store, "daily_records") == 0
        assert _count(store, "segments") == 0

    def test_batch_groups_by_day(self, store):
        segments = store.record_finished_segments([
            FinishedRecording(local(2026, 1, 26, 9, 0), 900, "/a.m4a"),
            FinishedRecording(local(2026, 1, 26, 9, 15), 900, "/b.m4a"),
            FinishedRecording(local(2026, 1, 27, 9, 0), 600, "/c.m4a"),
        ])
        assert len(segments) == 3
        assert len(store.get_daily(local(2026, 1, 26)).segments) == 2
        assert len(store.get_daily(local(2026, 1, 27)).segments) == 1
        assert _count(store, "daily_records") == 2

    def test_empty_batch(self, store):
        assert store.record_finished_segments([]) == []
        assert _count(store, "daily_records") == 0


class TestTranscriptionResults:
    """Tests for applying transcription outcomes."""

    def test_completed_outcome(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        store.apply_transcription_result(segment, TranscriptionOutcome.completed("hello"))

        assert segment.status is SegmentStatus.COMPLETED
        stored = store.get_segment(segment.id)
        assert stored.status is SegmentStatus.COMPLETED
        assert stored.transcript == "hello"

    def test_failed_outcome(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        store.apply_transcription_result(segment, TranscriptionOutcome.failed("decoder crashed"))

        stored = store.get_segment(segment.id)
        assert stored.status is SegmentStatus.FAILED
        assert stored.error_detail == "decoder crashed"
        assert stored.transcript is None

    def test_repeated_results_overwrite(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        store.apply_transcription_result(segment, TranscriptionOutcome.completed("draft"))
        store.apply_transcription_result(segment, TranscriptionOutcome.completed("final"))
        assert store.get_segment(segment.id).transcript == "final"

        store.apply_transcription_result(segment, TranscriptionOutcome.failed("reprocess failed"))
        assert store.get_segment(segment.id).status is SegmentStatus.FAILED

    def test_completing_failed_segment_requires_retry(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        store.apply_transcription_result(segment, TranscriptionOutcome.failed("timeout"))

        with pytest.raises(InvalidTransitionError):
            store.apply_transcription_result(segment, TranscriptionOutcome.completed("late"))
        assert store.get_segment(segment.id).status is SegmentStatus.FAILED
        assert segment.status is SegmentStatus.FAILED

        store.reset_segment_for_retry(segment)
        store.apply_transcription_result(segment, TranscriptionOutcome.completed("late"))
        stored = store.get_segment(segment.id)
        assert stored.status is SegmentStatus.COMPLETED
        assert stored.transcript == "late"
        assert stored.error_detail is None

    def test_stale_caller_object_uses_stored_state(self, store):
        """Transitions are checked against the stored segment."""
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        other_handle = store.get_segment(segment.id)
        store.apply_transcription_result(other_handle, TranscriptionOutcome.failed("timeout"))

        with pytest.raises(InvalidTransitionError):
            store.apply_transcription_result(segment, TranscriptionOutcome.completed("text"))

    def test_unknown_segment(self, store):
        orphan = make_segment(local(2026, 1, 28, 9, 0))
        with pytest.raises(KeyError):
            store.apply_transcription_result(orphan, TranscriptionOutcome.completed("x"))

    def test_pending_is_not_an_outcome(self, store):
        segment = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        with pytest.raises(ValueError):
            store.apply_transcription_result(
                segment, TranscriptionOutcome(SegmentStatus.PENDING, "")
            )

    def test_aggregate_reflects_results(self, store):
        done = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        bad = store.record_finished_segment(local(2026, 1, 28, 9, 15), 900, "/b.m4a")
        store.apply_transcription_result(done, TranscriptionOutcome.completed("text"))
        store.apply_transcription_result(bad, TranscriptionOutcome.failed("error"))

        record = store.get_daily(local(2026, 1, 28))
        assert record.is_fully_processed
        assert record.pending_count == 0
        assert record.combined_transcription == "text"


class TestSegmentQueries:
    """Tests for status and time-range queries."""

    def test_pending_oldest_first_with_limit(self, store):
        for hour in (11, 9, 10, 12):
            store.record_finished_segment(local(2026, 1, 28, hour, 0), 900, f"/{hour}.m4a")
        pending = store.pending_segments(limit=3)
        assert [s.timestamp.hour for s in pending] == [9, 10, 11]

    def test_pending_limit_bounds_result(self, store):
        for hour in (9, 10, 11):
            store.record_finished_segment(local(2026, 1, 28, hour, 0), 900, f"/{hour}.m4a")
        assert store.pending_segments(limit=0) == []
        with pytest.raises(ValueError):
            store.pending_segments(limit=-1)

    def test_pending_excludes_processed(self, store):
        done = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        bad = store.record_finished_segment(local(2026, 1, 28, 10, 0), 900, "/b.m4a")
        waiting = store.record_finished_segment(local(2026, 1, 28, 11, 0), 900, "/c.m4a")
        store.apply_transcription_result(done, TranscriptionOutcome.completed("text"))
        store.apply_transcription_result(bad, TranscriptionOutcome.failed("error"))

        assert [s.id for s in store.pending_segments()] == [waiting.id]
        assert [s.id for s in store.failed_segments()] == [bad.id]

    def test_pending_spans_days(self, store):
        store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/b.m4a")
        store.record_finished_segment(local(2026, 1, 27, 22, 0), 900, "/a.m4a")
        assert [s.owner_day.day for s in store.pending_segments()] == [27, 28]

    def test_failed_oldest_first(self, store):
        for hour in (15, 9, 12):
            segment = store.record_finished_segment(local(2026, 1, 28, hour, 0), 900, "/x.m4a")
            store.apply_transcription_result(segment, TranscriptionOutcome.failed(f"err {hour}"))
        assert [s.error_detail for s in store.failed_segments()] == ["err 9", "err 12", "err 15"]

    def test_reset_all_failed(self, store):
        ok = store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/a.m4a")
        store.apply_transcription_result(ok, TranscriptionOutcome.completed("kept"))
        for hour in (10, 11):
            segment = store.record_finished_segment(local(2026, 1, 28, hour, 0), 900, "/x.m4a")
            store.apply_transcription_result(segment, TranscriptionOutcome.failed("error"))

        assert store.reset_all_failed() == 2
        assert store.failed_segments() == []
        pending = store.pending_segments()
        assert len(pending) == 2
        assert all(s.error_detail is None and s.transcript is None for s in pending)
        assert store.get_segment(ok.id).transcript == "kept"

    def test_reset_all_failed_with_nothing_failed(self, store):
        assert store.reset_all_failed() == 0

    def test_segments_in_range_across_days(self, store):
        store.record_finished_segment(local(2026, 1, 27, 22, 0), 900, "/a.m4a")
        store.record_finished_segment(local(2026, 1, 28, 1, 0), 900, "/b.m4a")
        store.record_finished_segment(local(2026, 1, 28, 9, 0), 900, "/c.m4a")
        result = store.segments_in_range(local(2026, 1, 27, 22, 0), local(2026, 1, 28, 1, 0))
        assert [s.audio_ref for s in result] == ["/a.m4a", "/b.m4a"]


class TestHistory:
    """Tests for history range queries."""

    @pytest.fixture
    def days(self, store):
        for day in (26, 27, 28, 30):
            store.record_finished_segment(local(2026, 1, day, 9, 0), 900, f"/{day}.m4a")
        return store

    def test_range_is_whole_days_inclusive(self, days):
        records = days.history_in_range(local(2026, 1, 27, 10, 0), local(2026, 1, 28, 8, 0))
        assert [r.day.day for r in records] == [27, 28]
        assert all(len(r.segments) == 1 for r in records)

    def test_range_ascending(self, days):
        records = days.history_in_range(local(2026, 1, 1), local(2026, 1, 31))
        assert [r.day.day for r in records] == [26, 27, 28, 30]

    def test_range_without_records(self, days):
        assert days.history_in_range(local(2026, 2, 1), local(2026, 2, 5)) == []

    def test_recent_history(self, days, clock):
        clock.now = local(2026, 1, 30, 12, 0)
        records = days.recent_history(days=3)
        assert [r.day.day for r in records] == [27, 28, 30]


class TestTodayRecord:
    """Tests for the per-store today cache."""

    def test_today_record_is_created_lazily(self, store):
        record = store.today_record()
        assert record.day == local(2026, 1, 28).date()
        assert _count(store, "daily_records") == 1

    def test_today_record_sees_new_segments(self, store, clock):
        store.today_record()
        store.record_finished_segment(clock.now, 900, "/now.m4a")
        assert len(store.today_record().segments) == 1

    def test_cache_rolls_over_at_midnight(self, store, clock):
        first = store.today_record()
        clock.now = local(2026, 1, 29, 0, 1)
        second = store.today_record()
        assert second.id != first.id
        assert second.day == local(2026, 1, 29).date()

    def test_refresh(self, store):
        first = store.today_record()
        assert store.refresh_today_record().id == first.id


class TestStatistics:
    """Tests for roll-up statistics."""

    def test_today_statistics(self, store, clock):
        done = store.record_finished_segment(clock.now - timedelta(hours=2), 900, "/a.m4a")
        bad = store.record_finished_segment(clock.now - timedelta(hours=1), 600, "/b.m4a")
        store.record_finished_segment(clock.now, 300, "/c.m4a")
        store.record_finished_segment(clock.now - timedelta(days=1), 900, "/yesterday.m4a")
        store.apply_transcription_result(done, TranscriptionOutcome.completed("x"))
        store.apply_transcription_result(bad, TranscriptionOutcome.failed("y"))

        stats = store.today_statistics()
        assert stats == DailyStats(
            total_duration=1800, segment_count=3,
            processed_count=1, pending_count=1, failed_count=1,
        )
        assert not stats.is_fully_processed

    def test_overall_statistics(self, store):
        store.record_finished_segment(local(2026, 1, 26, 9, 0), 900, "/a.m4a")
        store.record_finished_segment(local(2026, 1, 26, 10, 0), 900, "/b.m4a")
        store.record_finished_segment(local(2026, 1, 27, 9, 0), 600, "/c.m4a")

        stats = store.overall_statistics()
        assert stats.total_duration == 2400
        assert stats.total_segments == 3
        assert stats.total_days == 2
        assert stats.average_duration_per_day == 1200

    def test_overall_statistics_empty(self, store):
        stats = store.overall_statistics()
        assert stats == OverallStats()
        assert stats.average_duration_per_day == 0
