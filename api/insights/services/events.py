"""
Event feed and event count queries.

Serves the three read patterns over the event store: realtime polling,
timestamp-cursor pagination and per-bucket counts by event type.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Sequence

from sqlalchemy import Select, select

from .. import settings
from ..errors import ValidationError
from ..filters import Filter, compile_filters
from ..models import EVENT_TYPES, FEED_EVENT_TYPES, Event
from ..stores import StoreClient
from ..time_range import Bucket, ResolvedTimeRange, format_timestamp, parse_bucket, parse_timestamp

logger = logging.getLogger(__name__)

events = Event.__table__

FEED_COLUMNS = (
    events.c.event_id,
    events.c.timestamp,
    events.c.type,
    events.c.event_name,
    events.c.props.label("properties"),
    events.c.session_id,
    events.c.user_id,
    events.c.identified_user_id,
    events.c.hostname,
    events.c.pathname,
    events.c.querystring,
    events.c.page_title,
    events.c.referrer,
    events.c.browser,
    events.c.browser_version,
    events.c.operating_system,
    events.c.operating_system_version,
    events.c.language,
    events.c.country,
    events.c.region,
    events.c.city,
    events.c.lat,
    events.c.lon,
    events.c.screen_width,
    events.c.screen_height,
    events.c.device_type,
)


def _event_row(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    data["timestamp"] = format_timestamp(row["timestamp"])
    return data


@dataclass
class EventPage:
    """One cursor page of events, newest first."""

    data: list[dict[str, Any]]
    has_more: bool
    oldest_timestamp: str | None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "data": self.data,
            "cursor": {
                "hasMore": self.has_more,
                "oldestTimestamp": self.oldest_timestamp,
            },
        }


@dataclass
class BucketCount:
    """Event counts for one bucket."""

    time: datetime  # bucket start, local time
    counts: Counter

    def to_dict(self) -> dict:
        point: dict[str, Any] = {"time": self.time.strftime("%Y-%m-%d %H:%M:%S")}
        for event_type in EVENT_TYPES:
            point[f"{event_type}_count"] = self.counts.get(event_type, 0)
        point["event_count"] = sum(self.counts.values())
        return point


class EventQueryService:
    """Read-only queries over the event store."""

    def __init__(self, event_store: StoreClient):
        self.event_store = event_store

    def _feed_query(self, site_id: int, filters: Sequence[Filter]) -> Select:
        return select(*FEED_COLUMNS).where(
            compile_filters(filters, site_id),
            events.c.type.in_(FEED_EVENT_TYPES),
        )

    async def poll_since(
        self,
        site_id: int,
        since_timestamp: str | datetime,
        filters: Sequence[Filter] = (),
    ) -> list[dict[str, Any]]:
        """
        Get events newer than ``since_timestamp``, newest first.

        Capped at REALTIME_EVENT_LIMIT rows. Callers advance the timestamp to
        the newest one received; there is no pagination.
        """
        if isinstance(since_timestamp, str):
            since_timestamp = parse_timestamp(since_timestamp)

        query = (
            self._feed_query(site_id, filters)
            .where(events.c.timestamp > since_timestamp)
            .order_by(events.c.timestamp.desc(), events.c.event_id.desc())
            .limit(settings.REALTIME_EVENT_LIMIT)
        )
        rows = await self.event_store.fetch_all(query, site_id=site_id)
        return [_event_row(row) for row in rows]

    async def cursor_page(
        self,
        site_id: int,
        filters: Sequence[Filter] = (),
        time_range: ResolvedTimeRange | None = None,
        before_timestamp: str | datetime | None = None,
        page_size: int = settings.DEFAULT_EVENT_PAGE_SIZE,
    ) -> EventPage:
        """
        Get up to ``page_size`` events strictly older than ``before_timestamp``.

        ``has_more`` is ``True`` whenever the page came back full, so a final
        page of exactly ``page_size`` rows still reports more. Clients rely on
        this and page once more to find the end.
        """
        if page_size < 1:
            raise ValidationError("page_size must be at least 1")
        if isinstance(before_timestamp, str):
            before_timestamp = parse_timestamp(before_timestamp)

        query = self._feed_query(site_id, filters)
        if time_range is not None:
            query = query.where(time_range.predicate(events.c.timestamp))
        if before_timestamp is not None:
            query = query.where(events.c.timestamp < before_timestamp)
        query = query.order_by(events.c.timestamp.desc(), events.c.event_id.desc()).limit(page_size)

        rows = [_event_row(row) for row in await self.event_store.fetch_all(query, site_id=site_id)]
        return EventPage(
            data=rows,
            has_more=len(rows) == page_size,
            oldest_timestamp=rows[-1]["timestamp"] if rows else None,
        )

    async def bucketed_count(
        self,
        site_id: int,
        filters: Sequence[Filter],
        time_range: ResolvedTimeRange,
        bucket: Bucket | str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Count events per time bucket, broken out by type, oldest bucket first.

        Buckets without events are omitted. Rows are streamed from the store
        and folded here so buckets follow the requested time zone.
        """
        if isinstance(bucket, str):
            bucket = parse_bucket(bucket)
        bucket = bucket or time_range.bucket
        if bucket is None:
            raise ValidationError("bucket is required")
        if time_range.realtime:
            raise ValidationError("bucketed counts need a date range, not since_timestamp")

        query = select(events.c.timestamp, events.c.type).where(
            compile_filters(filters, site_id),
            events.c.type.in_(EVENT_TYPES),
            time_range.predicate(events.c.timestamp),
        )

        bucket_fn = replace(time_range, bucket=bucket).bucket_fn
        buckets: dict[datetime, Counter] = {}

        def add(row: Mapping[str, Any]) -> None:
            buckets.setdefault(bucket_fn(row["timestamp"]), Counter())[row["type"]] += 1

        await self.event_store.stream(query, add, site_id=site_id)
        logger.debug(f"Event counts for site {site_id}: {len(buckets)} {bucket.value} buckets")

        return [BucketCount(time=start, counts=buckets[start]).to_dict() for start in sorted(buckets)]
