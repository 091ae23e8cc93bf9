"""Centralized environment-driven settings.

Keep this module lightweight: stdlib only, no app imports, to avoid circular deps.
"""

from __future__ import annotations

import os


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# SQLAlchemy URLs for the two stores. The event store is the columnar,
# append-only store; the profile store holds resolved user traits.
EVENT_STORE_URL: str = os.getenv("EVENT_STORE_URL", "sqlite:///./events.db")
PROFILE_STORE_URL: str = os.getenv("PROFILE_STORE_URL", "sqlite:///./profiles.db")

# Per-query timeout (seconds) applied by the store clients.
STORE_QUERY_TIMEOUT: float = _float_env("STORE_QUERY_TIMEOUT", 30.0)

# Hard cap on events returned by a single realtime poll.
REALTIME_EVENT_LIMIT: int = _int_env("REALTIME_EVENT_LIMIT", 500)

# Safety bound on profile ids collected by a user search.
MAX_SEARCH_MATCHES: int = _int_env("MAX_SEARCH_MATCHES", 10_000)

DEFAULT_EVENT_PAGE_SIZE: int = _int_env("DEFAULT_EVENT_PAGE_SIZE", 50)
MAX_EVENT_PAGE_SIZE: int = _int_env("MAX_EVENT_PAGE_SIZE", 1000)
DEFAULT_USER_PAGE_SIZE: int = _int_env("DEFAULT_USER_PAGE_SIZE", 100)
MAX_USER_PAGE_SIZE: int = _int_env("MAX_USER_PAGE_SIZE", 1000)
