"""User listing endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from .. import schemas, settings
from ..deps import get_site_id, get_user_service
from ..filters import parse_filters
from ..services.users import UserAggregationService
from ..time_range import resolve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites/{site_id}/users", tags=["Users"])


@router.get("", response_model=schemas.UsersResponse)
async def list_users(
    site_id: int = Depends(get_site_id),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_USER_PAGE_SIZE, ge=1, le=settings.MAX_USER_PAGE_SIZE),
    sort_by: str = "last_seen",
    sort_order: str = "desc",
    identified_only: bool = False,
    search: str | None = None,
    search_field: str = "username",
    start_date: str | None = None,
    end_date: str | None = None,
    time_zone: str = "UTC",
    filters: str | None = Query(None, description="JSON array of {dimension, operator, values}"),
    service: UserAggregationService = Depends(get_user_service),
) -> dict:
    """
    List users rolled up from events, newest activity first by default.

    **Query Parameters:**
    - `sort_by`: one of first_seen, last_seen, pageviews, sessions, events.
      Any other value sorts by last_seen descending.
    - `search`: case-insensitive match on the stored profile field named by
      `search_field` (username, name, email or user_id). Implies
      `identified_only`.
    """
    time_range = resolve(start_date, end_date, time_zone)
    parsed_filters = parse_filters(filters)
    result = await service.list_users(
        site_id,
        parsed_filters,
        time_range=time_range,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
        identified_only=identified_only,
        search=search,
        search_field=search_field,
    )
    return result.to_dict()
