"""
Daily record store using SQLite.

The record store is the source of truth for:
- Daily records (one per local calendar day)
- Transcription segments and their transcription state
- Location visits

Segments link to their daily record only through ``owner_day``; location
visits link to nothing and are matched to segments by timestamp at read
time.

All connection access is serialized through one lock, and every mutation
runs in a single IMMEDIATE transaction, so concurrent find-or-create calls
for the same day (threads or processes) observe each other and readers
never see a record whose segment list and updated_at disagree.

Mutations raise StoreError when SQLite fails or a stored row no longer
converts to its entity. Queries log the failure, remember it in
``last_query_error`` and return an empty result so query surfaces
always have something to render.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from .errors import DuplicateDailyRecordError, StoreError
from .types import (
    DailyRecord,
    DailyStats,
    LocationVisit,
    OverallStats,
    SegmentStatus,
    TranscriptionOutcome,
    TranscriptionSegment,
    day_key,
    format_utc,
    local_now,
    parse_utc_timestamp,
    start_of_day,
    to_local,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1

# Default number of segments handed to the transcription service at once
DEFAULT_PENDING_LIMIT = 10

_SEGMENT_COLUMNS = (
    "id, owner_day, timestamp, duration, audio_ref, transcript, status, "
    "error_detail, created_at"
)
_VISIT_COLUMNS = (
    "id, place_label, latitude, longitude, arrival, departure, created_at"
)


@dataclass(frozen=True)
class FinishedRecording:
    """A completed recording unit handed over by the audio collaborator."""
    timestamp: datetime
    duration: float
    audio_ref: str


class RecordStore:
    """
    SQLite-backed store for daily records, segments and location visits.

    Designed for one logical writer. Instances may be shared between
    threads; every call takes the instance lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = local_now,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            clock: Source of "now", used for the today cache and open visits
        """
        self._db_path = Path(db_path)
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._today_record: Optional[DailyRecord] = None
        self._reported_duplicates: set[str] = set()
        self.last_query_error: Optional[Exception] = None
        self.consistency_errors: list[DuplicateDailyRecordError] = []
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # isolation_level=None gives us manual transaction control
            # so every mutation can run under BEGIN IMMEDIATE
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row

            self._conn.execute("PRAGMA journal_mode=WAL")
            # Wait up to 5 seconds for locks instead of failing immediately
            self._conn.execute("PRAGMA busy_timeout=5000")

            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._migrate()
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        except sqlite3.Error as e:
            logger.error("Cannot open record store %s: %s", self._db_path, e)
            self.close()
            raise StoreError(f"Cannot open record store {self._db_path}: {e}") from e

    def _migrate(self) -> None:
        """Create or upgrade the schema, tracked by PRAGMA user_version."""
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= SCHEMA_VERSION:
            return

        # No UNIQUE on day: uniqueness comes from serialized find-or-create
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_records (
                id TEXT PRIMARY KEY,
                day TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_daily_records_day
            ON daily_records(day)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS segments (
                id TEXT PRIMARY KEY,
                owner_day TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                duration REAL NOT NULL,
                audio_ref TEXT NOT NULL,
                transcript TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                error_detail TEXT,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_segments_owner_day
            ON segments(owner_day)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_segments_status_timestamp
            ON segments(status, timestamp)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_segments_timestamp
            ON segments(timestamp)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS location_visits (
                id TEXT PRIMARY KEY,
                place_label TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                arrival TEXT NOT NULL,
                departure TEXT,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_location_visits_arrival
            ON location_visits(arrival)
        """)

        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug("Initialized record store schema v%d at %s", SCHEMA_VERSION, self._db_path)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a mutation as one IMMEDIATE transaction.

        SQLite errors become StoreError. Other exceptions roll back and
        propagate unchanged.
        """
        with self._lock:
            if self._conn is None:
                raise StoreError(f"{operation} failed: record store is closed")
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                    self._conn.commit()
                except BaseException:
                    self._conn.rollback()
                    raise
            except sqlite3.Error as e:
                logger.error("%s failed: %s", operation, e)
                raise StoreError(f"{operation} failed: {e}") from e

    def _read(self, operation: str, fn: Callable[[sqlite3.Connection], T], default: T) -> T:
        """
        Run a query in a read snapshot, degrading to ``default`` on failure.

        ``last_query_error`` is reset on entry, so it reflects the outcome
        of the most recent query.
        """
        with self._lock:
            self.last_query_error = None
            if self._conn is None:
                logger.warning("%s on closed record store, returning empty result", operation)
                self.last_query_error = StoreError(f"{operation} failed: record store is closed")
                return default
            try:
                self._conn.execute("BEGIN")
                try:
                    return fn(self._conn)
                finally:
                    self._conn.rollback()
            except (sqlite3.Error, StoreError) as e:
                logger.warning("%s failed, returning empty result: %s", operation, e)
                self.last_query_error = e
                return default

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    @contextmanager
    def _decoding(table: str, row: sqlite3.Row) -> Iterator[None]:
        """Turn a row that no longer converts into a StoreError."""
        try:
            yield
        except (ValueError, TypeError, AttributeError) as e:
            raise StoreError(f"Corrupt row {row['id']!r} in {table}: {e}") from e

    @classmethod
    def _row_to_segment(cls, row: sqlite3.Row) -> TranscriptionSegment:
        with cls._decoding("segments", row):
            return TranscriptionSegment(
                id=row["id"],
                timestamp=parse_utc_timestamp(row["timestamp"]),
                duration=row["duration"],
                audio_ref=row["audio_ref"],
                transcript=row["transcript"],
                status=SegmentStatus(row["status"]),
                error_detail=row["error_detail"],
                created_at=parse_utc_timestamp(row["created_at"]),
                owner_day=date.fromisoformat(row["owner_day"]),
            )

    @classmethod
    def _row_to_record(cls, row: sqlite3.Row, segments: list[TranscriptionSegment]) -> DailyRecord:
        with cls._decoding("daily_records", row):
            return DailyRecord(
                id=row["id"],
                date=start_of_day(date.fromisoformat(row["day"])),
                segments=segments,
                created_at=parse_utc_timestamp(row["created_at"]),
                updated_at=parse_utc_timestamp(row["updated_at"]),
            )

    @classmethod
    def _row_to_visit(cls, row: sqlite3.Row) -> LocationVisit:
        with cls._decoding("location_visits", row):
            return LocationVisit(
                id=row["id"],
                place_label=row["place_label"],
                latitude=row["latitude"],
                longitude=row["longitude"],
                arrival=parse_utc_timestamp(row["arrival"]),
                departure=parse_utc_timestamp(row["departure"]) if row["departure"] else None,
                created_at=parse_utc_timestamp(row["created_at"]),
            )

    # -------------------------------------------------------------------------
    # Internal helpers (caller holds the lock and an open transaction)
    # -------------------------------------------------------------------------

    def _canonical_record_row(self, rows: list[sqlite3.Row]) -> sqlite3.Row:
        """Pick the earliest-created record of a day, reporting duplicates."""
        if len(rows) > 1:
            day = rows[0]["day"]
            if day not in self._reported_duplicates:
                self._reported_duplicates.add(day)
                err = DuplicateDailyRecordError(day, [r["id"] for r in rows])
                self.consistency_errors.append(err)
                logger.error("Consistency error: %s", err)
        return rows[0]

    def _load_segments(self, conn: sqlite3.Connection, day: str) -> list[TranscriptionSegment]:
        rows = conn.execute(f"""
            SELECT {_SEGMENT_COLUMNS} FROM segments
            WHERE owner_day = ?
            ORDER BY rowid
        """, (day,)).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def _find_daily(self, conn: sqlite3.Connection, day: str) -> Optional[DailyRecord]:
        rows = conn.execute("""
            SELECT id, day, created_at, updated_at FROM daily_records
            WHERE day = ?
            ORDER BY created_at, rowid
        """, (day,)).fetchall()
        if not rows:
            return None
        row = self._canonical_record_row(rows)
        return self._row_to_record(row, self._load_segments(conn, day))

    def _find_or_create(self, conn: sqlite3.Connection, day: str) -> DailyRecord:
        record = self._find_daily(conn, day)
        if record is not None:
            return record
        record = DailyRecord(date=start_of_day(date.fromisoformat(day)))
        conn.execute("""
            INSERT INTO daily_records (id, day, created_at, updated_at)
            VALUES (?, ?, ?, ?)
        """, (record.id, day, format_utc(record.created_at), format_utc(record.updated_at)))
        logger.info("Created daily record for %s", day)
        return record

    def _insert_segment(self, conn: sqlite3.Connection, segment: TranscriptionSegment) -> None:
        conn.execute(f"""
            INSERT INTO segments ({_SEGMENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            segment.id,
            segment.owner_day.isoformat(),
            format_utc(segment.timestamp),
            segment.duration,
            segment.audio_ref,
            segment.transcript,
            segment.status.value,
            segment.error_detail,
            format_utc(segment.created_at),
        ))

    def _touch_record(self, conn: sqlite3.Connection, record: DailyRecord) -> None:
        conn.execute(
            "UPDATE daily_records SET updated_at = ? WHERE id = ?",
            (format_utc(record.updated_at), record.id),
        )

    def _get_segment(self, conn: sqlite3.Connection, segment_id: str) -> Optional[TranscriptionSegment]:
        row = conn.execute(
            f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE id = ?",
            (segment_id,),
        ).fetchone()
        return self._row_to_segment(row) if row else None

    def _write_segment_state(self, conn: sqlite3.Connection, segment: TranscriptionSegment) -> None:
        conn.execute("""
            UPDATE segments
            SET transcript = ?, status = ?, error_detail = ?
            WHERE id = ?
        """, (segment.transcript, segment.status.value, segment.error_detail, segment.id))

    @staticmethod
    def _copy_state(source: TranscriptionSegment, target: TranscriptionSegment) -> None:
        target.transcript = source.transcript
        target.status = source.status
        target.error_detail = source.error_detail

    def _segments_where(self, operation: str, where: str, params: tuple, limit: Optional[int] = None) -> list[TranscriptionSegment]:
        sql = f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE {where} ORDER BY timestamp ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, limit)

        def query(conn: sqlite3.Connection) -> list[TranscriptionSegment]:
            return [self._row_to_segment(row) for row in conn.execute(sql, params)]

        return self._read(operation, query, [])

    # -------------------------------------------------------------------------
    # Daily records
    # -------------------------------------------------------------------------

    def find_or_create_daily(self, instant: datetime) -> DailyRecord:
        """
        Get the record for the local calendar day of ``instant``, creating it
        if absent.

        Repeated calls for the same day return the same logical record.

        Raises:
            StoreError: If the record could not be read or created
        """
        day = day_key(instant)
        with self._transaction("find_or_create_daily") as conn:
            return self._find_or_create(conn, day)

    def get_daily(self, instant: datetime) -> Optional[DailyRecord]:
        """Get the record for the day of ``instant`` without creating it."""
        day = day_key(instant)
        return self._read("get_daily", lambda conn: self._find_daily(conn, day), None)

    def history_in_range(self, start: datetime, end: datetime) -> list[DailyRecord]:
        """
        Get records whose date is in [day of start, day after day of end).

        Returns records oldest first, each with its segments loaded.
        """
        first_day = day_key(start)
        stop_day = (to_local(end).date() + timedelta(days=1)).isoformat()

        def query(conn: sqlite3.Connection) -> list[DailyRecord]:
            rows = conn.execute("""
                SELECT id, day, created_at, updated_at FROM daily_records
                WHERE day >= ? AND day < ?
                ORDER BY day ASC, created_at ASC, rowid ASC
            """, (first_day, stop_day)).fetchall()

            by_day: dict[str, list[sqlite3.Row]] = {}
            for row in rows:
                by_day.setdefault(row["day"], []).append(row)

            segments: dict[str, list[TranscriptionSegment]] = {}
            for seg_row in conn.execute(f"""
                SELECT {_SEGMENT_COLUMNS} FROM segments
                WHERE owner_day >= ? AND owner_day < ?
                ORDER BY rowid
            """, (first_day, stop_day)):
                segments.setdefault(seg_row["owner_day"], []).append(
                    self._row_to_segment(seg_row)
                )

            return [
                self._row_to_record(self._canonical_record_row(day_rows), segments.get(day, []))
                for day, day_rows in by_day.items()
            ]

        return self._read("history_in_range", query, [])

    def recent_history(self, days: int) -> list[DailyRecord]:
        """Records from ``days`` days ago through today."""
        end = self._clock()
        return self.history_in_range(end - timedelta(days=days), end)

    def today_record(self) -> DailyRecord:
        """
        Today's record, with freshly loaded segments.

        The record identity is cached on this store instance and replaced
        once the cached date is no longer today.

        Raises:
            StoreError: If today's record could not be created
        """
        today = to_local(self._clock()).date()
        if self._today_record is None or self._today_record.day != today:
            self._today_record = self.find_or_create_daily(self._clock())
        cached = self._today_record
        fresh = self._read(
            "today_record",
            lambda conn: self._find_daily(conn, cached.day.isoformat()),
            None,
        )
        if fresh is not None:
            self._today_record = fresh
        return self._today_record

    def refresh_today_record(self) -> DailyRecord:
        """Drop the cached record and look today up again."""
        self._today_record = None
        return self.today_record()

    # -------------------------------------------------------------------------
    # Segments
    # -------------------------------------------------------------------------

    def record_finished_segment(
        self,
        timestamp: datetime,
        duration: float,
        audio_ref: str,
    ) -> TranscriptionSegment:
        """
        Store a finished recording as a pending segment of its day.

        The day's record is created if absent. ``audio_ref`` is stored as
        given and never opened.

        Raises:
            ValueError: If duration is not positive
            StoreError: If the segment could not be persisted
        """
        segment = TranscriptionSegment(
            timestamp=timestamp, duration=duration, audio_ref=audio_ref,
        )
        with self._transaction("record_finished_segment") as conn:
            record = self._find_or_create(conn, segment.owner_day.isoformat())
            record.add_segment(segment)
            self._insert_segment(conn, segment)
            self._touch_record(conn, record)
        logger.info(
            "Recorded segment %s at %s (%.0fs)",
            segment.id, segment.timestamp.isoformat(), segment.duration,
        )
        return segment

    def record_finished_segments(
        self, recordings: Iterable[FinishedRecording],
    ) -> list[TranscriptionSegment]:
        """
        Store a batch of finished recordings in one commit.

        Used for history backfill. Segments are grouped by day; each day's
        record gets a single updated_at bump.
        """
        segments = [
            TranscriptionSegment(timestamp=r.timestamp, duration=r.duration, audio_ref=r.audio_ref)
            for r in recordings
        ]
        by_day: dict[str, list[TranscriptionSegment]] = {}
        for segment in segments:
            by_day.setdefault(segment.owner_day.isoformat(), []).append(segment)

        with self._transaction("record_finished_segments") as conn:
            for day, day_segments in by_day.items():
                record = self._find_or_create(conn, day)
                record.add_segments(day_segments)
                for segment in day_segments:
                    self._insert_segment(conn, segment)
                self._touch_record(conn, record)
        if segments:
            logger.info("Recorded %d segments across %d days", len(segments), len(by_day))
        return segments

    def apply_transcription_result(
        self,
        segment: TranscriptionSegment,
        outcome: TranscriptionOutcome,
    ) -> TranscriptionSegment:
        """
        Apply a transcription result to a segment and persist it.

        The transition is applied to the stored state of the segment; on
        success the caller's ``segment`` object is updated to match.

        Raises:
            KeyError: If the segment is not in the store
            InvalidTransitionError: If a failed segment is completed
                without a retry reset
            StoreError: If the result could not be persisted
        """
        if outcome.status not in (SegmentStatus.COMPLETED, SegmentStatus.FAILED):
            raise ValueError(f"Not a transcription outcome: {outcome.status}")

        with self._transaction("apply_transcription_result") as conn:
            current = self._get_segment(conn, segment.id)
            if current is None:
                raise KeyError(f"Unknown segment: {segment.id}")
            if outcome.status is SegmentStatus.COMPLETED:
                current.complete(outcome.text)
            else:
                current.fail(outcome.text)
            self._write_segment_state(conn, current)

        self._copy_state(current, segment)
        if current.is_failed:
            logger.info("Transcription failed for %s: %s", segment.id, current.error_detail)
        return segment

    def reset_segment_for_retry(self, segment: TranscriptionSegment) -> TranscriptionSegment:
        """Put one segment back in the transcription queue."""
        with self._transaction("reset_segment_for_retry") as conn:
            current = self._get_segment(conn, segment.id)
            if current is None:
                raise KeyError(f"Unknown segment: {segment.id}")
            current.reset_for_retry()
            self._write_segment_state(conn, current)
        self._copy_state(current, segment)
        return segment

    def reset_all_failed(self) -> int:
        """
        Reset every failed segment back to pending in one commit.

        Returns count of segments reset.
        """
        with self._transaction("reset_all_failed") as conn:
            rows = conn.execute(
                f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE status = ?",
                (SegmentStatus.FAILED.value,),
            ).fetchall()
            failed = [self._row_to_segment(row) for row in rows]
            for segment in failed:
                segment.reset_for_retry()
            conn.executemany("""
                UPDATE segments
                SET transcript = ?, status = ?, error_detail = ?
                WHERE id = ?
            """, [
                (s.transcript, s.status.value, s.error_detail, s.id)
                for s in failed
            ])
        if failed:
            logger.info("Reset %d failed segments back to pending", len(failed))
        return len(failed)

    def get_segment(self, segment_id: str) -> Optional[TranscriptionSegment]:
        """Get a segment by ID."""
        return self._read("get_segment", lambda conn: self._get_segment(conn, segment_id), None)

    def pending_segments(self, limit: int = DEFAULT_PENDING_LIMIT) -> list[TranscriptionSegment]:
        """
        Oldest pending segments first, at most ``limit``.

        Raises:
            ValueError: If limit is negative
        """
        if limit < 0:
            raise ValueError(f"limit must not be negative: {limit}")
        return self._segments_where(
            "pending_segments", "status = ?", (SegmentStatus.PENDING.value,), limit,
        )

    def failed_segments(self) -> list[TranscriptionSegment]:
        """All failed segments, oldest first."""
        return self._segments_where(
            "failed_segments", "status = ?", (SegmentStatus.FAILED.value,),
        )

    def segments_in_range(self, start: datetime, end: datetime) -> list[TranscriptionSegment]:
        """Segments across all days with start <= timestamp <= end, oldest first."""
        return self._segments_where(
            "segments_in_range", "timestamp >= ? AND timestamp <= ?",
            (format_utc(start), format_utc(end)),
        )

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def today_statistics(self) -> DailyStats:
        """Roll-up for today. Empty stats if the store is unavailable."""
        try:
            record = self.today_record()
        except StoreError as e:
            self.last_query_error = e
            return DailyStats()
        return DailyStats.from_record(record)

    def overall_statistics(self) -> OverallStats:
        """Roll-up across all days."""
        def query(conn: sqlite3.Connection) -> OverallStats:
            seg = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(duration), 0) FROM segments"
            ).fetchone()
            days = conn.execute(
                "SELECT COUNT(DISTINCT day) FROM daily_records"
            ).fetchone()[0]
            return OverallStats(
                total_duration=float(seg[1]),
                total_segments=seg[0],
                total_days=days,
            )

        return self._read("overall_statistics", query, OverallStats())

    # -------------------------------------------------------------------------
    # Location visits
    # -------------------------------------------------------------------------

    def record_arrival(
        self,
        place_label: str,
        latitude: float,
        longitude: float,
        arrival: Optional[datetime] = None,
    ) -> LocationVisit:
        """
        Open a visit at a place.

        Another open visit is tolerated but logged; the location monitor is
        expected to close a visit before opening the next.
        """
        visit = LocationVisit(
            place_label=place_label,
            latitude=latitude,
            longitude=longitude,
            arrival=arrival if arrival is not None else self._clock(),
        )
        with self._transaction("record_arrival") as conn:
            open_count = conn.execute(
                "SELECT COUNT(*) FROM location_visits WHERE departure IS NULL"
            ).fetchone()[0]
            if open_count:
                logger.warning(
                    "Arrival at %s while %d visit(s) still open",
                    place_label, open_count,
                )
            conn.execute(f"""
                INSERT INTO location_visits ({_VISIT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, NULL, ?)
            """, (
                visit.id, visit.place_label, visit.latitude, visit.longitude,
                format_utc(visit.arrival), format_utc(visit.created_at),
            ))
        logger.info("Arrived at %s", place_label)
        return visit

    def mark_departure(
        self,
        visit: LocationVisit,
        at: Optional[datetime] = None,
    ) -> LocationVisit:
        """
        Close a visit. The visit is immutable afterwards.

        Raises:
            KeyError: If the visit is not in the store
            ValueError: If the visit is already closed or ``at`` precedes arrival
            StoreError: If the departure could not be persisted
        """
        at = at if at is not None else self._clock()
        with self._transaction("mark_departure") as conn:
            row = conn.execute(
                f"SELECT {_VISIT_COLUMNS} FROM location_visits WHERE id = ?",
                (visit.id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown visit: {visit.id}")
            current = self._row_to_visit(row)
            current.mark_departure(at)
            conn.execute(
                "UPDATE location_visits SET departure = ? WHERE id = ?",
                (format_utc(current.departure), current.id),
            )
        visit.departure = current.departure
        return visit

    def visits_in_range(self, start: datetime, end: datetime) -> list[LocationVisit]:
        """Visits that arrived within [start, end], by arrival."""
        def query(conn: sqlite3.Connection) -> list[LocationVisit]:
            rows = conn.execute(f"""
                SELECT {_VISIT_COLUMNS} FROM location_visits
                WHERE arrival >= ? AND arrival <= ?
                ORDER BY arrival ASC
            """, (format_utc(start), format_utc(end)))
            return [self._row_to_visit(row) for row in rows]

        return self._read("visits_in_range", query, [])

    def visits_for_date(self, instant: datetime) -> list[LocationVisit]:
        """Visits that arrived on the local calendar day of ``instant``."""
        day_start = start_of_day(to_local(instant).date())
        next_start = start_of_day(day_start.date() + timedelta(days=1))

        def query(conn: sqlite3.Connection) -> list[LocationVisit]:
            rows = conn.execute(f"""
                SELECT {_VISIT_COLUMNS} FROM location_visits
                WHERE arrival >= ? AND arrival < ?
                ORDER BY arrival ASC
            """, (format_utc(day_start), format_utc(next_start)))
            return [self._row_to_visit(row) for row in rows]

        return self._read("visits_for_date", query, [])

    def current_visit(self) -> Optional[LocationVisit]:
        """The most recent visit that has not been closed."""
        def query(conn: sqlite3.Connection) -> Optional[LocationVisit]:
            row = conn.execute(f"""
                SELECT {_VISIT_COLUMNS} FROM location_visits
                WHERE departure IS NULL
                ORDER BY arrival DESC
                LIMIT 1
            """).fetchone()
            return self._row_to_visit(row) if row else None

        return self._read("current_visit", query, None)

    def _overlapping_visits(
        self, conn: sqlite3.Connection, start: datetime, end: datetime,
    ) -> list[LocationVisit]:
        """Visits whose stay intersects [start, end], latest arrival first."""
        rows = conn.execute(f"""
            SELECT {_VISIT_COLUMNS} FROM location_visits
            WHERE arrival <= ? AND (departure IS NULL OR departure >= ?)
            ORDER BY arrival DESC
        """, (format_utc(end), format_utc(start)))
        return [self._row_to_visit(row) for row in rows]

    def visit_for_segment(self, segment: TranscriptionSegment) -> Optional[LocationVisit]:
        """The place a segment was recorded at, matched by its start time."""
        now = self._clock()

        def query(conn: sqlite3.Connection) -> Optional[LocationVisit]:
            for visit in self._overlapping_visits(conn, segment.timestamp, segment.timestamp):
                if visit.contains(segment.timestamp, now=now):
                    return visit
            return None

        return self._read("visit_for_segment", query, None)

    def timeline(
        self, instant: datetime,
    ) -> list[tuple[TranscriptionSegment, Optional[LocationVisit]]]:
        """
        A day's segments in time order, each paired with the visit it was
        recorded during (None when no visit covers it).
        """
        day = day_key(instant)
        day_start = start_of_day(date.fromisoformat(day))
        next_start = start_of_day(day_start.date() + timedelta(days=1))
        now = self._clock()

        def query(conn: sqlite3.Connection) -> list[tuple[TranscriptionSegment, Optional[LocationVisit]]]:
            record = self._find_daily(conn, day)
            if record is None:
                return []
            visits = self._overlapping_visits(conn, day_start, next_start)
            entries = []
            for segment in sorted(record.segments, key=lambda s: s.timestamp):
                match = next(
                    (v for v in visits if v.contains(segment.timestamp, now=now)),
                    None,
                )
                entries.append((segment, match))
            return entries

        return self._read("timeline", query, [])

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()
