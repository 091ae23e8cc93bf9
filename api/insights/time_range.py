"""Time range resolution.

Turns ``start_date``/``end_date``/``time_zone``/``bucket`` request input (or a
realtime ``since`` timestamp) into a predicate over the event timestamp column
and a bucketing function.

Conventions:
    - Event timestamps are stored as naive UTC datetimes.
    - ``start_date`` is inclusive from local midnight; ``end_date`` includes the
      whole local day, i.e. the upper bound is the next local midnight, exclusive.
    - Buckets are computed in the requested time zone and returned as naive
      local datetimes. Weeks start on Monday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, true
from sqlalchemy.sql import ColumnElement

from .errors import ValidationError


class Bucket(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def parse_bucket(value: str | None) -> Bucket | None:
    if value is None:
        return None
    try:
        return Bucket(value)
    except ValueError:
        raise ValidationError(f"Invalid bucket value: {value}") from None


def parse_time_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Invalid time zone: {name}") from None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid timestamp: {value}") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Wire format for event timestamps; round-trips through parse_timestamp."""
    return value.isoformat(sep=" ", timespec="microseconds")


def _parse_date(value: str, field: str) -> date:
    """Accept a calendar date or a full ISO-8601 datetime; only its date part is used."""
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}") from None


def _local_midnight_utc(day: date, tz: ZoneInfo) -> datetime:
    local = datetime.combine(day, time.min, tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def floor_to_bucket(timestamp: datetime, bucket: Bucket, tz: ZoneInfo) -> datetime:
    """Start of the bucket containing a naive UTC ``timestamp``, in local time."""
    local = timestamp.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)
    if bucket is Bucket.MINUTE:
        return local.replace(second=0, microsecond=0)
    if bucket is Bucket.HOUR:
        return local.replace(minute=0, second=0, microsecond=0)
    day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    if bucket is Bucket.DAY:
        return day
    if bucket is Bucket.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


@dataclass(frozen=True)
class ResolvedTimeRange:
    """Normalized time window: UTC bounds plus optional bucketing."""

    time_zone: ZoneInfo
    start: datetime | None = None  # inclusive
    end: datetime | None = None  # exclusive
    since: datetime | None = None  # exclusive lower bound, realtime mode
    bucket: Bucket | None = None

    @property
    def realtime(self) -> bool:
        return self.since is not None

    def predicate(self, column: ColumnElement[datetime]) -> ColumnElement[bool]:
        clauses = []
        if self.since is not None:
            clauses.append(column > self.since)
        if self.start is not None:
            clauses.append(column >= self.start)
        if self.end is not None:
            clauses.append(column < self.end)
        return and_(*clauses) if clauses else true()

    @property
    def bucket_fn(self) -> Callable[[datetime], datetime] | None:
        if self.bucket is None or self.realtime:
            return None
        bucket, tz = self.bucket, self.time_zone
        return lambda timestamp: floor_to_bucket(timestamp, bucket, tz)


def resolve(
    start_date: str | None = None,
    end_date: str | None = None,
    time_zone: str | None = "UTC",
    bucket: str | None = None,
    since: str | None = None,
) -> ResolvedTimeRange:
    """
    Resolve request time parameters.

    Range mode applies when ``since`` is absent; either date may be omitted for
    an open-ended range, and omitting both means all time. Realtime mode
    applies only ``timestamp > since`` and never buckets.

    Raises:
        ValidationError: unknown bucket or time zone, unparseable input,
            inverted range, or ``since`` combined with a date range
    """
    resolved_bucket = parse_bucket(bucket)
    tz = parse_time_zone(time_zone)
    start_date = start_date or None
    end_date = end_date or None

    if since:
        if start_date or end_date:
            raise ValidationError("since_timestamp cannot be combined with start_date/end_date")
        return ResolvedTimeRange(time_zone=tz, since=parse_timestamp(since))

    start = end = None
    if start_date:
        start_day = _parse_date(start_date, "start_date")
        start = _local_midnight_utc(start_day, tz)
    if end_date:
        end_day = _parse_date(end_date, "end_date")
        end = _local_midnight_utc(end_day + timedelta(days=1), tz)
    if start is not None and end is not None and start >= end:
        raise ValidationError("start_date must not be after end_date")

    return ResolvedTimeRange(time_zone=tz, start=start, end=end, bucket=resolved_bucket)
