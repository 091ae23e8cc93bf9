from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# BASE SCHEMAS
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body returned for 4xx/5xx responses."""

    detail: str


class CamelModel(BaseModel):
    """Response envelope serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FilterParam(BaseModel):
    """One element of the ``filters`` query parameter."""

    dimension: str
    operator: Literal["eq", "neq", "contains", "not_contains", "in"]
    values: list[str | int | float] = Field(min_length=1)


# ============================================================================
# HEALTH
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok"] = "ok"
    uptime_s: float | None = None


# ============================================================================
# EVENT SCHEMAS
# ============================================================================


class EventRow(BaseModel):
    """A single event as returned by the event feed."""

    event_id: str
    timestamp: str
    type: str
    event_name: str
    properties: str
    session_id: str
    user_id: str
    identified_user_id: str
    hostname: str
    pathname: str
    querystring: str
    page_title: str
    referrer: str
    browser: str
    browser_version: str
    operating_system: str
    operating_system_version: str
    language: str
    country: str
    region: str
    city: str
    lat: float
    lon: float
    screen_width: int
    screen_height: int
    device_type: str


class EventCursor(CamelModel):
    """Continuation cursor for the next, older page."""

    has_more: bool
    oldest_timestamp: str | None = None


class NewEventsResponse(BaseModel):
    """Realtime poll result."""

    data: list[EventRow]


class CursorEventsResponse(BaseModel):
    """One page of historical events."""

    data: list[EventRow]
    cursor: EventCursor


class EventCountPoint(BaseModel):
    """Event counts for one time bucket, broken out by type."""

    time: str
    pageview_count: int = 0
    custom_event_count: int = 0
    performance_count: int = 0
    outbound_count: int = 0
    error_count: int = 0
    button_click_count: int = 0
    copy_count: int = 0
    form_submit_count: int = 0
    input_change_count: int = 0
    event_count: int = 0


class EventCountResponse(BaseModel):
    data: list[EventCountPoint]


# ============================================================================
# USER SCHEMAS
# ============================================================================


class UserRow(BaseModel):
    """Per-user rollup of events, enriched with stored traits."""

    effective_user_id: str
    user_id: str  # most recent device id
    identified_user_id: str  # empty string when anonymous
    traits: dict[str, Any] | None = None
    country: str
    region: str
    city: str
    language: str
    browser: str
    browser_version: str
    operating_system: str
    operating_system_version: str
    device_type: str
    screen_width: int
    screen_height: int
    referrer: str
    channel: str
    hostname: str
    pageviews: int
    events: int
    sessions: int
    first_seen: str
    last_seen: str


class UsersResponse(CamelModel):
    """Offset-paginated user listing."""

    data: list[UserRow]
    total_count: int
    page: int
    page_size: int


# ============================================================================
# USER TRAIT SCHEMAS
# ============================================================================


class TraitKey(CamelModel):
    key: str
    user_count: int


class TraitKeysResponse(BaseModel):
    keys: list[TraitKey]


class TraitValue(CamelModel):
    value: str
    user_count: int


class TraitValuesResponse(CamelModel):
    values: list[TraitValue]
    total: int
    has_more: bool


class TraitValueUser(BaseModel):
    """A profile holding a trait value, joined with its event aggregates."""

    user_id: str
    identified_user_id: str
    traits: dict[str, Any] | None = None
    country: str
    region: str
    city: str
    browser: str
    operating_system: str
    device_type: str
    sessions: int


class TraitValueUsersResponse(CamelModel):
    data: list[TraitValueUser]
    total: int
    page: int
    page_size: int
    has_more: bool
