"""
Data types for the daily record store.

Instants are timezone-aware datetimes in local time. Naive datetimes passed
in from collaborators are interpreted as local time.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from .errors import InvalidTransitionError

# Characters of transcript shown in list previews
PREVIEW_LENGTH = 100
PREVIEW_PLACEHOLDER = "No transcription"

# Stored instants: UTC, fixed width so string order is time order
_UTC_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def new_id() -> str:
    """Opaque identifier for stored entities."""
    return uuid.uuid4().hex


def local_now() -> datetime:
    """Current instant as an aware local datetime."""
    return datetime.now().astimezone()


def to_local(dt: datetime) -> datetime:
    """Convert an instant to aware local time (naive input is taken as local)."""
    return dt.astimezone()


def start_of_day(day: date) -> datetime:
    """Local midnight of a calendar day.

    Goes through the naive date so the UTC offset is the one in effect at
    midnight, not the one of whatever instant the day came from.
    """
    return datetime.combine(day, time()).astimezone()


def normalized_date(dt: datetime) -> datetime:
    """Normalize an instant to the start of its local calendar day."""
    return start_of_day(to_local(dt).date())


def day_key(dt: datetime) -> str:
    """Calendar-day key (YYYY-MM-DD) of an instant in local time."""
    return to_local(dt).date().isoformat()


def format_utc(dt: datetime) -> str:
    """Canonical stored form of an instant: UTC, microseconds, no suffix."""
    return to_local(dt).astimezone(timezone.utc).strftime(_UTC_FORMAT)


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string into an aware local datetime.

    Handles the canonical format (no suffix) as well as 'Z' or '+00:00'
    suffixed strings.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone()


def format_hours_minutes(seconds: float) -> str:
    """Format a duration as '2h 5m', or '45m' when under an hour."""
    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class SegmentStatus(str, Enum):
    """Transcription lifecycle of a segment."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def display_text(self) -> str:
        return self.value.capitalize()


@dataclass
class TranscriptionSegment:
    """
    One fixed-length recording unit and its transcription state.

    State machine: PENDING -> COMPLETED | FAILED, FAILED -> PENDING via
    reset_for_retry(). ``error_detail`` is set only while FAILED and
    ``transcript`` only while COMPLETED.
    """
    timestamp: datetime
    duration: float
    audio_ref: str
    id: str = field(default_factory=new_id)
    transcript: Optional[str] = None
    status: SegmentStatus = SegmentStatus.PENDING
    error_detail: Optional[str] = None
    created_at: datetime = field(default_factory=local_now)
    owner_day: Optional[date] = None

    def __post_init__(self):
        if not self.duration > 0 or math.isinf(self.duration):
            raise ValueError(f"Segment duration must be positive and finite: {self.duration!r}")
        self.timestamp = to_local(self.timestamp)
        self.status = SegmentStatus(self.status)
        # Owning day is fixed at creation, never re-derived from timestamp
        if self.owner_day is None:
            self.owner_day = self.timestamp.date()

    # -- state machine ---------------------------------------------------------

    def complete(self, transcript: str) -> None:
        """Store a transcription result. Repeated calls overwrite.

        An empty transcript is accepted and leaves the segment COMPLETED
        with no visible text.
        """
        if self.status is SegmentStatus.FAILED:
            raise InvalidTransitionError(
                f"Segment {self.id} is failed; reset it for retry before completing"
            )
        self.transcript = transcript
        self.status = SegmentStatus.COMPLETED
        self.error_detail = None

    def fail(self, detail: str) -> None:
        """Record a transcription failure. Allowed from any state."""
        self.transcript = None
        self.status = SegmentStatus.FAILED
        self.error_detail = detail or "unknown error"

    def reset_for_retry(self) -> None:
        """Put the segment back in the transcription queue."""
        self.transcript = None
        self.status = SegmentStatus.PENDING
        self.error_detail = None

    # -- derived ---------------------------------------------------------------

    @property
    def is_processed(self) -> bool:
        return self.status is SegmentStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status is SegmentStatus.FAILED

    @property
    def is_pending(self) -> bool:
        return self.status is SegmentStatus.PENDING

    @property
    def end_timestamp(self) -> datetime:
        return self.timestamp + timedelta(seconds=self.duration)

    @property
    def has_transcription(self) -> bool:
        return bool(self.transcript)

    @property
    def transcript_preview(self) -> str:
        if not self.transcript:
            return PREVIEW_PLACEHOLDER
        if len(self.transcript) <= PREVIEW_LENGTH:
            return self.transcript
        return self.transcript[:PREVIEW_LENGTH] + "..."

    @property
    def formatted_time(self) -> str:
        return self.timestamp.strftime("%H:%M")

    @property
    def formatted_time_range(self) -> str:
        return f"{self.formatted_time} - {self.end_timestamp.strftime('%H:%M')}"

    @property
    def formatted_duration(self) -> str:
        total = int(self.duration)
        return f"{total // 60}:{total % 60:02d}"


@dataclass
class DailyRecord:
    """
    All segments recorded on one calendar day.

    ``date`` is local midnight and is the join key for segments (through
    ``TranscriptionSegment.owner_day``). Statistics are derived from the
    current segment list on every access.
    """
    date: datetime
    id: str = field(default_factory=new_id)
    segments: list[TranscriptionSegment] = field(default_factory=list)
    created_at: datetime = field(default_factory=local_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.date = normalized_date(self.date)
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def day(self) -> date:
        return self.date.date()

    def _touch(self) -> None:
        now = local_now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def _check_owner(self, segment: TranscriptionSegment) -> None:
        if segment.owner_day != self.day:
            raise ValueError(
                f"Segment {segment.id} belongs to {segment.owner_day}, not {self.day}"
            )

    def add_segment(self, segment: TranscriptionSegment) -> None:
        self._check_owner(segment)
        self.segments.append(segment)
        self._touch()

    def add_segments(self, segments: list[TranscriptionSegment]) -> None:
        """Append a batch of segments with a single updated_at bump."""
        for segment in segments:
            self._check_owner(segment)
        self.segments.extend(segments)
        self._touch()

    def segments_in_range(self, start: datetime, end: datetime) -> list[TranscriptionSegment]:
        """Segments with start <= timestamp <= end, oldest first."""
        start, end = to_local(start), to_local(end)
        return sorted(
            (s for s in self.segments if start <= s.timestamp <= end),
            key=lambda s: s.timestamp,
        )

    @property
    def total_duration(self) -> float:
        return sum(s.duration for s in self.segments)

    @property
    def processed_count(self) -> int:
        return sum(1 for s in self.segments if s.is_processed)

    @property
    def pending_count(self) -> int:
        return sum(1 for s in self.segments if s.is_pending)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.segments if s.is_failed)

    @property
    def is_fully_processed(self) -> bool:
        return all(not s.is_pending for s in self.segments)

    @property
    def combined_transcription(self) -> str:
        ordered = sorted(self.segments, key=lambda s: s.timestamp)
        return "\n\n".join(s.transcript for s in ordered if s.transcript)

    @property
    def formatted_date(self) -> str:
        return f"{self.date.month}/{self.date.day} ({self.date.strftime('%a')})"

    @property
    def formatted_total_duration(self) -> str:
        return format_hours_minutes(self.total_duration)


@dataclass
class LocationVisit:
    """
    A stay at one place. Open (ongoing) while ``departure`` is None.

    Visits have no stored link to segments; contains() is the join.
    """
    place_label: str
    latitude: float
    longitude: float
    arrival: datetime
    id: str = field(default_factory=new_id)
    departure: Optional[datetime] = None
    created_at: datetime = field(default_factory=local_now)

    def __post_init__(self):
        self.arrival = to_local(self.arrival)
        if self.departure is not None:
            self.departure = to_local(self.departure)
            if self.departure < self.arrival:
                raise ValueError("Departure precedes arrival")

    def mark_departure(self, at: Optional[datetime] = None) -> None:
        """Close the visit. A visit can only be closed once."""
        if self.departure is not None:
            raise ValueError(f"Visit {self.id} already departed at {self.departure}")
        at = to_local(at) if at is not None else local_now()
        if at < self.arrival:
            raise ValueError("Departure precedes arrival")
        self.departure = at

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def is_current(self) -> bool:
        return self.departure is None

    @property
    def duration(self) -> Optional[float]:
        if self.departure is None:
            return None
        return (self.departure - self.arrival).total_seconds()

    def contains(self, instant: datetime, now: Optional[datetime] = None) -> bool:
        """True if instant falls within [arrival, departure or now]."""
        end = self.departure if self.departure is not None else (now or local_now())
        return self.arrival <= to_local(instant) <= to_local(end)

    @property
    def formatted_duration(self) -> str:
        if self.duration is None:
            return "Staying"
        return format_hours_minutes(self.duration)

    @property
    def formatted_time_range(self) -> str:
        arrival = self.arrival.strftime("%H:%M")
        if self.departure is None:
            return f"{arrival} - now"
        return f"{arrival} - {self.departure.strftime('%H:%M')}"


@dataclass(frozen=True)
class TranscriptionOutcome:
    """Result delivered by the transcription service for one segment."""
    status: SegmentStatus
    text: str = ""

    @classmethod
    def completed(cls, text: str) -> "TranscriptionOutcome":
        return cls(SegmentStatus.COMPLETED, text)

    @classmethod
    def failed(cls, detail: str) -> "TranscriptionOutcome":
        return cls(SegmentStatus.FAILED, detail)


@dataclass(frozen=True)
class DailyStats:
    """Roll-up for a single day."""
    total_duration: float = 0.0
    segment_count: int = 0
    processed_count: int = 0
    pending_count: int = 0
    failed_count: int = 0

    @classmethod
    def from_record(cls, record: DailyRecord) -> "DailyStats":
        return cls(
            total_duration=record.total_duration,
            segment_count=len(record.segments),
            processed_count=record.processed_count,
            pending_count=record.pending_count,
            failed_count=record.failed_count,
        )

    @property
    def is_fully_processed(self) -> bool:
        return self.pending_count == 0

    @property
    def formatted_duration(self) -> str:
        return format_hours_minutes(self.total_duration)


@dataclass(frozen=True)
class OverallStats:
    """Roll-up across all days."""
    total_duration: float = 0.0
    total_segments: int = 0
    total_days: int = 0

    @property
    def average_duration_per_day(self) -> float:
        if self.total_days == 0:
            return 0.0
        return self.total_duration / self.total_days

    @property
    def formatted_duration(self) -> str:
        return format_hours_minutes(self.total_duration)
