"""UTC timestamp helpers shared by job persistence and retention."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
  return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
  """Render a timestamp in the sortable ISO form stored on job rows."""
  return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def now_iso() -> str:
  return format_timestamp(utc_now())


def iso_before(now: datetime, seconds: float) -> str:
  """Return the ISO cutoff `seconds` before `now`."""
  return format_timestamp(now - timedelta(seconds=seconds))
