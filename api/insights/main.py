from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .deps import TenantResolver, allow_positive_site_ids
from .errors import UpstreamQueryError, ValidationError
from .routers import events, system, user_traits, users
from .stores import StoreClient, build_event_store, build_profile_store

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting application...")
    owned: list[StoreClient] = []
    if app.state.event_store is None:
        app.state.event_store = build_event_store()
        owned.append(app.state.event_store)
    if app.state.profile_store is None:
        app.state.profile_store = build_profile_store()
        owned.append(app.state.profile_store)
    logger.info("Insights API server ready")
    yield
    # Shutdown
    logger.info("Shutting down application...")
    for store in owned:
        store.dispose()


async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    logger.debug(f"Rejected {request.url.path}: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def handle_upstream_error(request: Request, exc: UpstreamQueryError) -> JSONResponse:
    # The store client has already logged the query; keep it out of the response.
    return JSONResponse(status_code=exc.status_code, content={"detail": "Failed to fetch analytics data"})


def create_app(
    event_store: StoreClient | None = None,
    profile_store: StoreClient | None = None,
    tenant_resolver: TenantResolver | None = None,
) -> FastAPI:
    """
    Build the API application.

    Stores passed in are used as-is and left open on shutdown; stores left out
    are built from settings at startup and disposed on shutdown.
    """
    app = FastAPI(
        title="Insights API",
        version="1.0.0",
        description="Read-only analytics queries over the event and profile stores",
        lifespan=lifespan,
    )
    app.state.event_store = event_store
    app.state.profile_store = profile_store
    app.state.tenant_resolver = tenant_resolver or allow_positive_site_ids

    # CORS Configuration - restrict to specific origins
    # In production, set CORS_ORIGINS environment variable to comma-separated list of allowed origins
    cors_origins_str = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost")
    if cors_origins_str == "*":
        logger.warning(
            "CORS is configured to allow all origins. "
            "This is insecure for production. Set CORS_ORIGINS to specific domains."
        )
    cors_origins = [origin.strip() for origin in cors_origins_str.split(",")]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
        max_age=600,  # Cache preflight requests for 10 minutes
    )

    app.add_exception_handler(ValidationError, handle_validation_error)
    app.add_exception_handler(UpstreamQueryError, handle_upstream_error)

    app.include_router(system.router)
    app.include_router(events.router)
    app.include_router(users.router)
    app.include_router(user_traits.router)
    return app


app = create_app()
