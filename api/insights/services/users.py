"""
Per-user analytics.

Rolls events up by effective user id and joins the rollup with stored trait
profiles. Two views are served:

- ``list_users``: the event store is the source of truth; every rolled-up user
  is returned, with ``traits = None`` when no profile exists.
- ``users_by_trait``: the profile store is the source of truth; every matching
  profile is returned, with zero sessions and empty dimensions when it has no
  events.

Effective user id: the identified id when the event carries one; otherwise the
identified id most recently linked to the event's device id, if any; otherwise
the device id. Anonymous events of a device that never identified stay keyed
by that device.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from sqlalchemy import Integer, case, distinct, func, select
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.expression import CTE, Subquery

from .. import settings
from ..errors import UpstreamQueryError, ValidationError
from ..filters import Filter, compile_filters, split_filters
from ..models import Event
from ..stores import StoreClient
from ..time_range import ResolvedTimeRange, format_timestamp
from .user_traits import DEFAULT_SEARCH_FIELD, TraitIndexService

logger = logging.getLogger(__name__)

events = Event.__table__

# Dimensions reduced last-write-wins (most recent non-empty value) per user.
ROLLUP_DIMENSIONS = (
    "user_id",
    "identified_user_id",
    "country",
    "region",
    "city",
    "language",
    "browser",
    "browser_version",
    "operating_system",
    "operating_system_version",
    "device_type",
    "screen_width",
    "screen_height",
    "referrer",
    "channel",
    "hostname",
)

SORT_FIELDS = ("first_seen", "last_seen", "pageviews", "sessions", "events")
DEFAULT_SORT_FIELD = "last_seen"

TRAIT_USER_DIMENSIONS = ("country", "region", "city", "browser", "operating_system", "device_type")


def device_links(site_id: int) -> CTE:
    """Most recent identified id seen for each device id of a site."""
    ranked = (
        select(
            events.c.user_id,
            events.c.identified_user_id,
            func.row_number()
            .over(
                partition_by=events.c.user_id,
                order_by=(events.c.timestamp.desc(), events.c.identified_user_id.desc()),
            )
            .label("link_rank"),
        )
        .where(events.c.site_id == site_id, events.c.identified_user_id != "")
        .subquery("ranked_links")
    )
    return (
        select(ranked.c.user_id, ranked.c.identified_user_id)
        .where(ranked.c.link_rank == 1)
        .cte("device_links")
    )


def resolved_events(site_id: int, time_range: ResolvedTimeRange | None = None) -> CTE:
    """Tenant events with ``identified_user_id`` and ``effective_user_id`` resolved."""
    links = device_links(site_id)
    identified = func.coalesce(func.nullif(events.c.identified_user_id, ""), links.c.identified_user_id)
    query = (
        select(
            *[c for c in events.c if c.name != "identified_user_id"],
            func.coalesce(identified, "").label("identified_user_id"),
            func.coalesce(identified, events.c.user_id).label("effective_user_id"),
        )
        .select_from(events.outerjoin(links, links.c.user_id == events.c.user_id))
        .where(events.c.site_id == site_id)
    )
    if time_range is not None:
        query = query.where(time_range.predicate(events.c.timestamp))
    return query.cte("resolved_events")


def _latest(column: ColumnElement[Any], partition: ColumnElement[str], timestamp: ColumnElement[Any]):
    """Most recent non-empty value of ``column`` within the partition."""
    empty = 0 if isinstance(column.type, Integer) else ""
    return func.first_value(column, type_=column.type).over(
        partition_by=partition,
        order_by=(case((column == empty, 1), else_=0), timestamp.desc()),
    )


def user_rollup(resolved: CTE, user_ids: Sequence[str] | None = None) -> Subquery:
    """
    Group resolved events by effective user id.

    Each dimension is reduced last-write-wins, preferring non-empty values;
    counts and first/last seen are plain aggregates.
    """
    effective = resolved.c.effective_user_id
    windowed = select(
        resolved.c.site_id,
        effective,
        resolved.c.timestamp,
        resolved.c.type,
        resolved.c.session_id,
        *[_latest(resolved.c[d], effective, resolved.c.timestamp).label(d) for d in ROLLUP_DIMENSIONS],
    )
    if user_ids is not None:
        windowed = windowed.where(effective.in_(list(user_ids)))
    windowed = windowed.subquery("windowed_events")

    return (
        select(
            windowed.c.site_id,
            windowed.c.effective_user_id,
            *[func.max(windowed.c[d]).label(d) for d in ROLLUP_DIMENSIONS],
            func.sum(case((windowed.c.type == "pageview", 1), else_=0)).label("pageviews"),
            func.sum(case((windowed.c.type == "custom_event", 1), else_=0)).label("events"),
            func.count(distinct(windowed.c.session_id)).label("sessions"),
            func.min(windowed.c.timestamp).label("first_seen"),
            func.max(windowed.c.timestamp).label("last_seen"),
        )
        .group_by(windowed.c.site_id, windowed.c.effective_user_id)
        .subquery("aggregated_users")
    )


def sort_clause(rollup: Subquery, sort_by: str | None, sort_order: str | None) -> ColumnElement[Any]:
    """Map a requested sort onto a rollup column; unknown fields sort by last_seen descending."""
    if sort_by not in SORT_FIELDS:
        return rollup.c[DEFAULT_SORT_FIELD].desc()
    column = rollup.c[sort_by]
    return column.asc() if sort_order == "asc" else column.desc()


def _user_row(row: Mapping[str, Any], traits: dict[str, Any] | None) -> dict[str, Any]:
    data = {key: value for key, value in row.items() if key != "site_id"}
    for key in ("pageviews", "events", "sessions", "screen_width", "screen_height"):
        data[key] = int(data[key] or 0)
    data["first_seen"] = format_timestamp(row["first_seen"])
    data["last_seen"] = format_timestamp(row["last_seen"])
    data["traits"] = traits
    return data


@dataclass
class UserPage:
    """One page of rolled-up users plus the unpaginated total."""

    rows: list[dict[str, Any]]
    total_count: int
    page: int
    page_size: int

    def to_dict(self) -> dict:
        return {
            "data": self.rows,
            "totalCount": self.total_count,
            "page": self.page,
            "pageSize": self.page_size,
        }


@dataclass
class TraitUserPage:
    """Profiles holding a trait value, joined with their event aggregates."""

    rows: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "data": self.rows,
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "hasMore": self.has_more,
        }


class UserAggregationService:
    """Per-user rollups across the event store and the profile store."""

    def __init__(self, event_store: StoreClient, trait_index: TraitIndexService):
        self.event_store = event_store
        self.trait_index = trait_index

    async def list_users(
        self,
        site_id: int,
        filters: Sequence[Filter] = (),
        time_range: ResolvedTimeRange | None = None,
        page: int = 1,
        page_size: int = settings.DEFAULT_USER_PAGE_SIZE,
        sort_by: str | None = DEFAULT_SORT_FIELD,
        sort_order: str | None = "desc",
        identified_only: bool = False,
        search: str | None = None,
        search_field: str = DEFAULT_SEARCH_FIELD,
    ) -> UserPage:
        """
        List users rolled up from events, with traits attached.

        A search term is matched against stored profiles first and restricts
        the listing to identified users among the matches; no match returns an
        empty page.

        Filters on dimensions the rollup carries apply to each user's rolled-up
        value. Filters on event-only dimensions (pathname, event_name, ...)
        keep users with at least one matching event.
        """
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be at least 1")

        user_ids: list[str] | None = None
        if search and search.strip():
            user_ids = await self.trait_index.search_profile_ids(site_id, search, search_field)
            if not user_ids:
                return UserPage(rows=[], total_count=0, page=page, page_size=page_size)
            identified_only = True

        resolved = resolved_events(site_id, time_range)
        rollup = user_rollup(resolved, user_ids)
        row_filters, event_filters = split_filters(filters, rollup.c)

        conditions = [compile_filters(row_filters, site_id, rollup.c)]
        if event_filters:
            matching = select(resolved.c.effective_user_id).where(
                compile_filters(event_filters, site_id, resolved.c)
            )
            conditions.append(rollup.c.effective_user_id.in_(matching))
        if identified_only:
            conditions.append(rollup.c.identified_user_id != "")

        filtered = select(rollup).where(*conditions)
        data_query = (
            filtered.order_by(sort_clause(rollup, sort_by, sort_order), rollup.c.effective_user_id)
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        count_query = select(func.count()).select_from(filtered.subquery("filtered_users"))

        rows, total_count = await asyncio.gather(
            self.event_store.fetch_all(data_query, site_id=site_id),
            self.event_store.scalar(count_query, site_id=site_id),
        )

        traits = await self._traits_for(site_id, [r["identified_user_id"] for r in rows if r["identified_user_id"]])
        return UserPage(
            rows=[_user_row(row, traits.get(row["effective_user_id"])) for row in rows],
            total_count=int(total_count or 0),
            page=page,
            page_size=page_size,
        )

    async def _traits_for(self, site_id: int, user_ids: list[str]) -> dict[str, Any]:
        """Trait lookup for enrichment; a failing profile store yields no traits."""
        try:
            return await self.trait_index.get_traits(site_id, user_ids)
        except UpstreamQueryError as e:
            logger.warning(f"Trait enrichment failed for site {site_id}, returning users without traits: {e}")
            return {}

    async def users_by_trait(
        self,
        site_id: int,
        key: str,
        value: str,
        page: int = 1,
        page_size: int = 50,
    ) -> TraitUserPage:
        """
        List profiles whose trait ``key`` equals ``value``, with event aggregates.

        Profiles decide membership: a profile with no events still appears,
        with zero sessions and empty dimensions.
        """
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be at least 1")
        offset = (page - 1) * page_size

        profiles, total = await asyncio.gather(
            self.trait_index.profiles_with_trait(site_id, key, value, limit=page_size, offset=offset),
            self.trait_index.count_profiles_with_trait(site_id, key, value),
        )
        has_more = offset + page_size < total
        if not profiles:
            return TraitUserPage(rows=[], total=total, page=page, page_size=page_size, has_more=has_more)

        user_ids = [p["user_id"] for p in profiles]
        rollup = user_rollup(resolved_events(site_id), user_ids)
        aggregates = await self.event_store.fetch_all(select(rollup), site_id=site_id)
        by_user = {row["effective_user_id"]: row for row in aggregates}

        rows = []
        for profile in profiles:
            aggregate = by_user.get(profile["user_id"])
            row = {
                "user_id": aggregate["user_id"] if aggregate else profile["user_id"],
                "identified_user_id": profile["user_id"],
                "traits": profile["traits"],
                "sessions": int(aggregate["sessions"]) if aggregate else 0,
            }
            for dimension in TRAIT_USER_DIMENSIONS:
                row[dimension] = (aggregate[dimension] or "") if aggregate else ""
            rows.append(row)

        return TraitUserPage(rows=rows, total=total, page=page, page_size=page_size, has_more=has_more)
