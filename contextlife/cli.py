"""
CLI interface for the daily record store.

Usage:
    contextlife today
    contextlife history --days 3
    contextlife timeline 2026-01-28
    contextlife retry
"""

import json
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

import typer
from typing_extensions import Annotated

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .errors import StoreError
from .logging_config import configure_ops_log, enable_debug_mode, remove_ops_log
from .record_store import RecordStore
from .types import (
    DailyRecord,
    DailyStats,
    LocationVisit,
    OverallStats,
    TranscriptionSegment,
    format_hours_minutes,
    local_now,
    start_of_day,
)

# Start of history for plans without a retention limit
_HISTORY_EPOCH = datetime(1970, 1, 1)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="contextlife",
    help="Browse the audio journal by day.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CONTEXTLIFE_STORE_PATH",
        help="Path to the store directory (default: ~/.contextlife/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Browse the audio journal by day."""


@contextmanager
def _open_store() -> Iterator[tuple[StoreConfig, RecordStore]]:
    """Load config and open the record store, with the ops log attached."""
    store_path = _get_store_override() or get_default_store_path()
    try:
        config = load_or_create_config(store_path)
        handler = configure_ops_log(store_path)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    try:
        record_store = RecordStore(config.db_path)
    except StoreError as e:
        remove_ops_log(handler)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    try:
        yield config, record_store
    finally:
        record_store.close()
        remove_ops_log(handler)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _segment_to_dict(segment: TranscriptionSegment, visit: Optional[LocationVisit] = None) -> dict:
    d = {
        "id": segment.id,
        "timestamp": segment.timestamp.isoformat(),
        "duration": segment.duration,
        "audio_ref": segment.audio_ref,
        "status": segment.status.value,
        "transcript": segment.transcript,
        "error": segment.error_detail,
    }
    if visit is not None:
        d["place"] = visit.place_label
    return d


def _record_to_dict(record: DailyRecord) -> dict:
    return {
        "date": record.day.isoformat(),
        "total_duration": record.total_duration,
        "segments": len(record.segments),
        "processed": record.processed_count,
        "pending": record.pending_count,
        "failed": record.failed_count,
        "fully_processed": record.is_fully_processed,
        "updated_at": record.updated_at.isoformat(),
    }


def _stats_to_dict(stats: DailyStats) -> dict:
    return {
        "total_duration": stats.total_duration,
        "segments": stats.segment_count,
        "processed": stats.processed_count,
        "pending": stats.pending_count,
        "failed": stats.failed_count,
        "fully_processed": stats.is_fully_processed,
    }


def _visit_to_dict(visit: LocationVisit) -> dict:
    return {
        "id": visit.id,
        "place": visit.place_label,
        "latitude": visit.latitude,
        "longitude": visit.longitude,
        "arrival": visit.arrival.isoformat(),
        "departure": visit.departure.isoformat() if visit.departure else None,
    }


def render_segment_line(segment: TranscriptionSegment, visit: Optional[LocationVisit] = None) -> str:
    """One line per segment: time range, status, place, transcript preview."""
    parts = [segment.formatted_time_range, f"[{segment.status.display_text}]"]
    if visit is not None:
        parts.append(f"@{visit.place_label}")
    if segment.is_failed:
        parts.append(f"error: {segment.error_detail}")
    else:
        parts.append(segment.transcript_preview)
    return "  ".join(parts)


def render_record_line(record: DailyRecord) -> str:
    """One line per day: date, total time, processing state."""
    state = "done" if record.is_fully_processed else f"{record.pending_count} pending"
    return (
        f"{record.formatted_date}  {record.formatted_total_duration}  "
        f"{len(record.segments)} segments  {state}"
    )


def render_daily_stats(stats: DailyStats) -> str:
    lines = [
        f"recorded: {stats.formatted_duration}",
        f"segments: {stats.segment_count}",
        f"processed: {stats.processed_count}",
        f"pending: {stats.pending_count}",
        f"failed: {stats.failed_count}",
    ]
    return "\n".join(lines)


def render_overall_stats(stats: OverallStats) -> str:
    lines = [
        f"recorded: {stats.formatted_duration}",
        f"segments: {stats.total_segments}",
        f"days: {stats.total_days}",
        f"average per day: {format_hours_minutes(stats.average_duration_per_day)}",
    ]
    return "\n".join(lines)


def _parse_day(value: Optional[str]) -> datetime:
    """Parse 'today', 'yesterday' or YYYY-MM-DD into a local midnight."""
    today = local_now().date()
    if value is None or value == "today":
        return start_of_day(today)
    if value == "yesterday":
        return start_of_day(today - timedelta(days=1))
    try:
        return start_of_day(date.fromisoformat(value))
    except ValueError:
        typer.echo(f"Error: invalid date {value!r} (expected YYYY-MM-DD)", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    Optional[int],
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return (default: transcription batch size)"
    )
]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def today():
    """Show today's recording statistics and segments."""
    with _open_store() as (_config, record_store):
        record = record_store.today_record()
        stats = DailyStats.from_record(record)
        if _get_json_output():
            typer.echo(json.dumps({
                "date": record.day.isoformat(),
                "stats": _stats_to_dict(stats),
                "segments": [_segment_to_dict(s) for s in record.segments],
            }, indent=2))
            return
        typer.echo(record.formatted_date)
        typer.echo(render_daily_stats(stats))
        for segment in sorted(record.segments, key=lambda s: s.timestamp):
            typer.echo(render_segment_line(segment))


@app.command()
def history(
    days: Annotated[Optional[int], typer.Option(
        "--days", "-d",
        help="Number of days to show, counting today (limited by plan)"
    )] = None,
):
    """
    List recorded days, newest first.

    \b
    Examples:
        contextlife history            # Everything the plan allows
        contextlife history --days 3   # Today and the two days before
    """
    with _open_store() as (config, record_store):
        now = local_now()
        start, end = config.history_window(now)
        if days is not None:
            if days < 1:
                typer.echo("Error: --days must be at least 1", err=True)
                raise typer.Exit(1)
            requested = now - timedelta(days=days - 1)
            if start is not None and requested < start:
                typer.echo(
                    f"History is limited to {config.free_days} days on the free plan.",
                    err=True,
                )
            else:
                start = requested
        records = record_store.history_in_range(start or _HISTORY_EPOCH, end)
        records.reverse()

        if _get_json_output():
            typer.echo(json.dumps([_record_to_dict(r) for r in records], indent=2))
            return
        if not records:
            typer.echo("No recordings.")
            return
        for record in records:
            typer.echo(render_record_line(record))


@app.command()
def timeline(
    day: Annotated[Optional[str], typer.Argument(
        help="Day to show: YYYY-MM-DD, 'today' (default) or 'yesterday'"
    )] = None,
):
    """Show one day's segments with the place each was recorded at."""
    instant = _parse_day(day)
    with _open_store() as (config, record_store):
        entries = record_store.timeline(instant)
        visits = record_store.visits_for_date(instant) if config.location_enabled else []
        if not config.location_enabled:
            entries = [(segment, None) for segment, _ in entries]

        if _get_json_output():
            typer.echo(json.dumps({
                "date": instant.date().isoformat(),
                "segments": [_segment_to_dict(s, v) for s, v in entries],
                "visits": [_visit_to_dict(v) for v in visits],
            }, indent=2))
            return
        if not entries and not visits:
            typer.echo(f"No recordings on {instant.date().isoformat()}.")
            return
        total = sum(segment.duration for segment, _ in entries)
        typer.echo(f"{instant.date().isoformat()}  {format_hours_minutes(total)}")
        for visit in visits:
            typer.echo(f"{visit.formatted_time_range}  {visit.place_label}  ({visit.formatted_duration})")
        for segment, visit in entries:
            typer.echo(render_segment_line(segment, visit))


@app.command()
def pending(
    limit: LimitOption = None,
):
    """List segments waiting for transcription, oldest first."""
    if limit is not None and limit < 0:
        typer.echo("Error: --limit must not be negative", err=True)
        raise typer.Exit(1)
    with _open_store() as (config, record_store):
        segments = record_store.pending_segments(config.batch_size if limit is None else limit)
        if _get_json_output():
            typer.echo(json.dumps([_segment_to_dict(s) for s in segments], indent=2))
            return
        if not segments:
            typer.echo("Nothing pending.")
            return
        for segment in segments:
            typer.echo(f"{segment.id}  {segment.timestamp:%Y-%m-%d %H:%M}  {segment.formatted_duration}")


@app.command()
def failed():
    """List segments whose transcription failed."""
    with _open_store() as (_config, record_store):
        segments = record_store.failed_segments()
        if _get_json_output():
            typer.echo(json.dumps([_segment_to_dict(s) for s in segments], indent=2))
            return
        if not segments:
            typer.echo("No failed segments.")
            return
        for segment in segments:
            typer.echo(f"{segment.id}  {segment.timestamp:%Y-%m-%d %H:%M}  {segment.error_detail}")


@app.command()
def retry():
    """Reset all failed segments so they are transcribed again."""
    with _open_store() as (_config, record_store):
        count = record_store.reset_all_failed()
        if _get_json_output():
            typer.echo(json.dumps({"reset": count}))
        else:
            typer.echo(f"Reset {count} failed segment(s).")


@app.command()
def stats():
    """Show totals across all recorded days."""
    with _open_store() as (_config, record_store):
        overall = record_store.overall_statistics()
        if _get_json_output():
            typer.echo(json.dumps({
                "total_duration": overall.total_duration,
                "total_segments": overall.total_segments,
                "total_days": overall.total_days,
                "average_duration_per_day": overall.average_duration_per_day,
            }, indent=2))
            return
        typer.echo(render_overall_stats(overall))


@app.command("config")
def show_config():
    """Show the effective store configuration."""
    with _open_store() as (config, _record_store):
        data = {
            "store": str(config.path),
            "database": str(config.db_path),
            "plan": config.plan,
            "history_days": None if config.history_unlimited else config.free_days,
            "segment_seconds": config.segment_seconds,
            "location_enabled": config.location_enabled,
            "batch_size": config.batch_size,
        }
        if _get_json_output():
            typer.echo(json.dumps(data, indent=2))
            return
        for key, value in data.items():
            typer.echo(f"{key}: {'unlimited' if value is None else value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="contextlife CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
