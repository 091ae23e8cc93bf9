"""Filter compilation.

Request filters arrive as ``{dimension, operator, values}`` objects. They are
parsed into ``Filter`` nodes and compiled here, and only here, into SQLAlchemy
boolean expressions. Every value becomes a bound parameter; dimensions are
resolved through an allow-list so no caller text ever reaches the query as an
identifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, not_, or_, true
from sqlalchemy.engine import Dialect
from sqlalchemy.engine.default import DefaultDialect
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.base import ReadOnlyColumnCollection

from .errors import ValidationError
from .models import Event
from .schemas import FilterParam

OPERATORS = ("eq", "neq", "contains", "not_contains", "in")

# Event columns a caller may filter on. site_id is deliberately absent: tenant
# isolation is compiled in by compile_filters and cannot be filtered on.
EVENT_DIMENSIONS = frozenset(
    {
        "type",
        "event_name",
        "session_id",
        "user_id",
        "identified_user_id",
        "hostname",
        "pathname",
        "querystring",
        "page_title",
        "referrer",
        "channel",
        "browser",
        "browser_version",
        "operating_system",
        "operating_system_version",
        "language",
        "device_type",
        "country",
        "region",
        "city",
    }
)

_filters_adapter = TypeAdapter(list[FilterParam])


@dataclass(frozen=True)
class Filter:
    """A single filter condition: ``dimension <operator> values``."""

    dimension: str
    operator: str
    values: tuple[str, ...]


def make_filter(dimension: str, operator: str, values: Iterable[Any]) -> Filter:
    """Build a validated ``Filter`` node."""
    if dimension not in EVENT_DIMENSIONS:
        raise ValidationError(f"Unknown filter dimension: {dimension}")
    if operator not in OPERATORS:
        raise ValidationError(f"Unknown filter operator: {operator}")
    values = tuple(str(v) for v in values)
    if not values:
        raise ValidationError(f"Filter on {dimension} needs at least one value")
    return Filter(dimension=dimension, operator=operator, values=values)


def parse_filters(raw: str | None) -> list[Filter]:
    """Parse the ``filters`` query parameter (a JSON array)."""
    if raw is None or not raw.strip():
        return []
    try:
        params = _filters_adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed filters: {e.errors()[0]['msg']}") from e
    return [make_filter(p.dimension, p.operator, p.values) for p in params]


def split_filters(
    filters: Sequence[Filter], columns: ReadOnlyColumnCollection
) -> tuple[list[Filter], list[Filter]]:
    """Partition filters into those ``columns`` exposes and the rest."""
    inside = [f for f in filters if f.dimension in columns]
    outside = [f for f in filters if f.dimension not in columns]
    return inside, outside


def compile_filter(f: Filter, columns: ReadOnlyColumnCollection) -> ColumnElement[bool]:
    if f.dimension not in columns:
        raise ValidationError(f"Filter dimension not available here: {f.dimension}")
    column = columns[f.dimension]

    if f.operator in ("eq", "in"):
        return column.in_(f.values)
    if f.operator == "neq":
        return column.not_in(f.values)

    # Substring match is case-insensitive; autoescape keeps % and _ literal.
    matches = or_(*[column.icontains(value, autoescape=True) for value in f.values])
    if f.operator == "contains":
        return matches
    return not_(matches)


def compile_filters(
    filters: Sequence[Filter],
    site_id: int,
    columns: ReadOnlyColumnCollection | None = None,
) -> ColumnElement[bool]:
    """
    Compile filters into one predicate scoped to ``site_id``.

    Args:
        filters: Parsed filter nodes, ANDed together
        site_id: Tenant whose rows may match; always part of the predicate
        columns: Column collection to resolve dimensions against (defaults to
            the events table). Must expose ``site_id``.

    Returns:
        A boolean SQLAlchemy expression with all values as bound parameters
    """
    if columns is None:
        columns = Event.__table__.c
    clauses = [columns["site_id"] == site_id]
    clauses.extend(compile_filter(f, columns) for f in filters)
    return and_(*clauses)


def compile_extra_filters(
    filters: Sequence[Filter], columns: ReadOnlyColumnCollection
) -> ColumnElement[bool]:
    """Compile filters without the tenant predicate, for already-scoped sources."""
    if not filters:
        return true()
    return and_(*[compile_filter(f, columns) for f in filters])


def render(predicate: ColumnElement[Any], dialect: Dialect | None = None) -> tuple[str, dict[str, Any]]:
    """Return the parameterized SQL text of a predicate and its bound values."""
    compiled = predicate.compile(dialect=dialect or DefaultDialect())
    return str(compiled), dict(compiled.params)
