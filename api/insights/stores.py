"""Store clients for the event store and the profile store.

Each client wraps one SQLAlchemy engine and exposes a small async, read-only
surface. Blocking driver work runs in a worker thread under a timeout so that
independent queries of one request can be awaited together.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Executable

from . import settings
from .errors import UpstreamQueryError

logger = logging.getLogger(__name__)


def create_store_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for one of the stores."""
    return create_engine(
        url,
        future=True,
        echo=echo,
        pool_pre_ping=True,
    )


class StoreClient:
    """Read-only query client bound to a single store."""

    def __init__(self, engine: Engine, name: str, timeout: float | None = None):
        self.engine = engine
        self.name = name
        self.timeout = settings.STORE_QUERY_TIMEOUT if timeout is None else timeout

    async def fetch_all(self, statement: Executable, *, site_id: int | None = None) -> list[dict[str, Any]]:
        """Execute a statement and return every row as a plain dict."""

        def run() -> list[dict[str, Any]]:
            with self.engine.connect() as conn:
                return [dict(row) for row in conn.execute(statement).mappings()]

        return await self._run(run, statement, site_id)

    async def scalar(self, statement: Executable, *, site_id: int | None = None) -> Any:
        """Execute a statement and return the first column of the first row."""

        def run() -> Any:
            with self.engine.connect() as conn:
                return conn.execute(statement).scalar()

        return await self._run(run, statement, site_id)

    async def stream(
        self,
        statement: Executable,
        handle_row: Callable[[Mapping[str, Any]], None],
        *,
        site_id: int | None = None,
    ) -> None:
        """Feed rows to ``handle_row`` one at a time without buffering the result."""

        def run() -> None:
            with self.engine.connect() as conn:
                result = conn.execution_options(stream_results=True).execute(statement)
                for row in result.mappings():
                    handle_row(row)

        await self._run(run, statement, site_id)

    async def _run(self, fn: Callable[[], Any], statement: Executable, site_id: int | None) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                f"{self.name} query timed out after {self.timeout}s for site {site_id}\n"
                f"Query: {self._compiled(statement)}"
            )
            raise UpstreamQueryError(self.name, f"{self.name} query timed out") from e
        except (SQLAlchemyError, ValueError) as e:
            # ValueError covers result decoding, e.g. a corrupt JSON column.
            logger.error(
                f"{self.name} query failed for site {site_id}: {e}\n"
                f"Query: {self._compiled(statement)}",
                exc_info=True,
            )
            raise UpstreamQueryError(self.name) from e

    def _compiled(self, statement: Executable) -> str:
        return str(statement.compile(dialect=self.engine.dialect))

    def dispose(self) -> None:
        self.engine.dispose()


def build_event_store(url: str | None = None) -> StoreClient:
    """Construct the event store client from settings."""
    return StoreClient(create_store_engine(url or settings.EVENT_STORE_URL), "event store")


def build_profile_store(url: str | None = None) -> StoreClient:
    """Construct the profile store client from settings."""
    return StoreClient(create_store_engine(url or settings.PROFILE_STORE_URL), "profile store")
