"""Domain exceptions raised by the query layer.

Routers never catch these; ``main`` maps them to HTTP responses.
"""

from __future__ import annotations


class InsightsError(Exception):
    """Base exception for query-layer errors."""

    status_code = 500


class ValidationError(InsightsError):
    """Raised when a request cannot be translated into a query (400)."""

    status_code = 400


class UpstreamQueryError(InsightsError):
    """Raised when a store is unreachable, times out, or rejects a query."""

    status_code = 500

    def __init__(self, store: str, message: str = ""):
        self.store = store
        super().__init__(message or f"{store} query failed")
