from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Path, Request, status

from .services.events import EventQueryService
from .services.user_traits import TraitIndexService
from .services.users import UserAggregationService
from .stores import StoreClient

TenantResolver = Callable[[Request, int], bool]


def allow_positive_site_ids(request: Request, site_id: int) -> bool:
    """Default tenant resolver: accepts any positive site id.

    Deployments replace this with the auth layer's check that the caller may
    read ``site_id``.
    """
    return site_id > 0


def get_site_id(request: Request, site_id: int = Path(..., description="Tenant site id")) -> int:
    resolver: TenantResolver = request.app.state.tenant_resolver
    if not resolver(request, site_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Site not found")
    return site_id


def get_event_store(request: Request) -> StoreClient:
    return request.app.state.event_store


def get_profile_store(request: Request) -> StoreClient:
    return request.app.state.profile_store


def get_event_service(request: Request) -> EventQueryService:
    return EventQueryService(get_event_store(request))


def get_trait_index(request: Request) -> TraitIndexService:
    return TraitIndexService(get_profile_store(request))


def get_user_service(request: Request) -> UserAggregationService:
    return UserAggregationService(get_event_store(request), get_trait_index(request))
