"""Event feed and event count endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from .. import schemas, settings
from ..deps import get_event_service, get_site_id
from ..filters import parse_filters
from ..services.events import EventQueryService
from ..time_range import resolve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites/{site_id}/events", tags=["Events"])


@router.get(
    "",
    response_model=None,
    responses={200: {"model": schemas.CursorEventsResponse}},
)
async def get_events(
    site_id: int = Depends(get_site_id),
    since_timestamp: str | None = Query(None, description="Realtime mode: events newer than this"),
    before_timestamp: str | None = Query(None, description="Cursor mode: events older than this"),
    page_size: int = Query(settings.DEFAULT_EVENT_PAGE_SIZE, ge=1, le=settings.MAX_EVENT_PAGE_SIZE),
    start_date: str | None = None,
    end_date: str | None = None,
    time_zone: str = "UTC",
    filters: str | None = Query(None, description="JSON array of {dimension, operator, values}"),
    service: EventQueryService = Depends(get_event_service),
) -> dict:
    """
    Get events for the site feed.

    **Modes:**
    - Realtime: with `since_timestamp`, returns `{data}` with up to 500 events
      newer than it, newest first. Date parameters must be empty.
    - Cursor: otherwise, returns `{data, cursor: {hasMore, oldestTimestamp}}`.
      Pass `cursor.oldestTimestamp` back as `before_timestamp` for the next page.
    """
    parsed_filters = parse_filters(filters)

    if since_timestamp:
        time_range = resolve(start_date, end_date, time_zone, since=since_timestamp)
        events = await service.poll_since(site_id, time_range.since, parsed_filters)
        return {"data": events}

    time_range = resolve(start_date, end_date, time_zone)
    page = await service.cursor_page(
        site_id,
        parsed_filters,
        time_range=time_range,
        before_timestamp=before_timestamp,
        page_size=page_size,
    )
    return page.to_dict()


@router.get("/count", response_model=schemas.EventCountResponse)
async def get_event_count(
    site_id: int = Depends(get_site_id),
    bucket: str = "day",
    start_date: str | None = None,
    end_date: str | None = None,
    time_zone: str = "UTC",
    filters: str | None = Query(None, description="JSON array of {dimension, operator, values}"),
    service: EventQueryService = Depends(get_event_service),
) -> schemas.EventCountResponse:
    """
    Get event counts per time bucket, broken out by event type.

    Buckets with no events are omitted; callers fill gaps if they need them.
    """
    time_range = resolve(start_date, end_date, time_zone, bucket=bucket)
    parsed_filters = parse_filters(filters)
    points = await service.bucketed_count(site_id, parsed_filters, time_range)
    return schemas.EventCountResponse(data=[schemas.EventCountPoint(**p) for p in points])
