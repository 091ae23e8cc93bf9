"""
User trait browsing over the profile store.

Profiles hold one JSON trait map per identified user. This service lists the
trait keys in use, the values of a key, and looks profiles up by search term,
by id, or by trait value for the user aggregation service.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from sqlalchemy import String, distinct, func, literal, select
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.functions import FunctionElement

from .. import settings
from ..errors import ValidationError
from ..models import UserProfile
from ..stores import StoreClient

logger = logging.getLogger(__name__)

profiles = UserProfile.__table__

# Searchable profile fields. Anything else falls back to username.
SEARCH_FIELDS = ("username", "name", "email", "user_id")
DEFAULT_SEARCH_FIELD = "username"


class trait_text(FunctionElement):
    """
    Text of one top-level trait, as ``traits ->> key`` reads it.

    Strings come back unquoted; numbers and booleans as their JSON text
    (``30``, ``true``); a missing key or JSON null as NULL. The key is always a
    bound parameter.
    """

    name = "trait_text"
    type = String()
    inherit_cache = True

    def __init__(self, traits: ColumnElement[Any], key: str):
        super().__init__(traits, literal(key, String()))


def _trait_text_args(element: trait_text, compiler, **kw) -> tuple[str, str]:
    # Arguments are not result columns of their own.
    kw.pop("add_to_result_map", None)
    traits, key = (compiler.process(clause, **kw) for clause in element.clauses)
    return traits, key


@compiles(trait_text)
def _compile_trait_text(element: trait_text, compiler, **kw) -> str:
    traits, key = _trait_text_args(element, compiler, **kw)
    return f"({traits} ->> {key})"


@compiles(trait_text, "sqlite")
def _compile_trait_text_sqlite(element: trait_text, compiler, **kw) -> str:
    # json_extract turns true/false into 1/0 and leaves numbers unstringified.
    traits, key = _trait_text_args(element, compiler, **kw)
    path = f"""('$."' || {key} || '"')"""
    return (
        f"CASE json_type({traits}, {path}) "
        f"WHEN 'true' THEN 'true' WHEN 'false' THEN 'false' "
        f"ELSE CAST(json_extract({traits}, {path}) AS TEXT) END"
    )


def trait_value(key: str) -> ColumnElement[str]:
    """Text value of one trait."""
    return trait_text(profiles.c.traits, key)


def search_condition(term: str, field: str) -> ColumnElement[bool]:
    if field not in SEARCH_FIELDS:
        field = DEFAULT_SEARCH_FIELD
    column = profiles.c.user_id if field == "user_id" else trait_value(field)
    return column.icontains(term, autoescape=True)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _require_key(key: str | None) -> str:
    if not key:
        raise ValidationError("key query parameter is required")
    return key


@dataclass
class TraitValuePage:
    """One page of values for a trait key."""

    values: list[dict[str, Any]]
    total: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "values": [{"value": v["value"], "userCount": v["user_count"]} for v in self.values],
            "total": self.total,
            "hasMore": self.has_more,
        }


class TraitIndexService:
    """Faceted browsing and lookups over stored user traits."""

    def __init__(self, profile_store: StoreClient):
        self.profile_store = profile_store

    async def list_keys(self, site_id: int) -> list[dict[str, Any]]:
        """
        List every trait key in use with the number of profiles holding it.

        Ordered by profile count descending, then key. Keys are counted here,
        not in the store, so every trait map of the site is streamed through
        once: O(profiles) transfer, O(distinct keys) memory. Trait maps that
        are not JSON objects contribute no keys.
        """
        counts: Counter = Counter()

        def add(row: Mapping[str, Any]) -> None:
            traits = row["traits"]
            if isinstance(traits, dict):
                counts.update(traits.keys())

        query = select(profiles.c.traits).where(profiles.c.site_id == site_id)
        await self.profile_store.stream(query, add, site_id=site_id)

        ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [{"key": key, "user_count": count} for key, count in ordered]

    async def list_values(
        self,
        site_id: int,
        key: str,
        limit: int = 1000,
        offset: int = 0,
    ) -> TraitValuePage:
        """
        List distinct values of a trait key with per-value profile counts.

        ``has_more`` is exact: ``offset + limit < total``.
        """
        key = _require_key(key)
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        value = trait_value(key)
        scope = (profiles.c.site_id == site_id, value.is_not(None))
        user_count = func.count().label("user_count")
        values_query = (
            select(value.label("value"), user_count)
            .where(*scope)
            .group_by(value)
            .order_by(user_count.desc(), value)
            .limit(limit)
            .offset(offset)
        )
        total_query = select(func.count(distinct(value))).where(*scope)

        rows, total = await asyncio.gather(
            self.profile_store.fetch_all(values_query, site_id=site_id),
            self.profile_store.scalar(total_query, site_id=site_id),
        )
        total = int(total or 0)
        return TraitValuePage(
            values=[{"value": _stringify(r["value"]), "user_count": int(r["user_count"])} for r in rows],
            total=total,
            has_more=offset + limit < total,
        )

    async def search_profile_ids(
        self,
        site_id: int,
        term: str,
        field: str = DEFAULT_SEARCH_FIELD,
        limit: int | None = None,
    ) -> list[str]:
        """Ids of profiles whose ``field`` contains ``term``, case-insensitively."""
        limit = settings.MAX_SEARCH_MATCHES if limit is None else limit
        query = (
            select(profiles.c.user_id)
            .where(profiles.c.site_id == site_id, search_condition(term.strip(), field))
            .limit(limit)
        )
        rows = await self.profile_store.fetch_all(query, site_id=site_id)
        if len(rows) == limit:
            logger.info(f"User search for site {site_id} hit the {limit} match cap")
        return [row["user_id"] for row in rows]

    async def get_traits(self, site_id: int, user_ids: Sequence[str]) -> dict[str, dict[str, Any] | None]:
        """Trait maps keyed by user id; ids without a profile are absent."""
        if not user_ids:
            return {}
        query = select(profiles.c.user_id, profiles.c.traits).where(
            profiles.c.site_id == site_id,
            profiles.c.user_id.in_(list(user_ids)),
        )
        rows = await self.profile_store.fetch_all(query, site_id=site_id)
        return {row["user_id"]: row["traits"] for row in rows}

    def _trait_match(self, site_id: int, key: str, value: str) -> tuple[ColumnElement[bool], ...]:
        return (profiles.c.site_id == site_id, trait_value(_require_key(key)) == value)

    async def profiles_with_trait(
        self, site_id: int, key: str, value: str, limit: int, offset: int
    ) -> list[dict[str, Any]]:
        """Profiles whose trait ``key`` equals ``value``, ordered by user id."""
        query = (
            select(profiles.c.user_id, profiles.c.traits)
            .where(*self._trait_match(site_id, key, value))
            .order_by(profiles.c.user_id)
            .limit(limit)
            .offset(offset)
        )
        return await self.profile_store.fetch_all(query, site_id=site_id)

    async def count_profiles_with_trait(self, site_id: int, key: str, value: str) -> int:
        query = select(func.count()).select_from(profiles).where(*self._trait_match(site_id, key, value))
        return int(await self.profile_store.scalar(query, site_id=site_id) or 0)
