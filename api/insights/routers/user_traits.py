"""User trait browsing endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from .. import schemas
from ..deps import get_site_id, get_trait_index, get_user_service
from ..services.user_traits import TraitIndexService
from ..services.users import UserAggregationService

router = APIRouter(prefix="/sites/{site_id}/user-traits", tags=["User Traits"])


@router.get("/keys", response_model=schemas.TraitKeysResponse)
async def get_trait_keys(
    site_id: int = Depends(get_site_id),
    trait_index: TraitIndexService = Depends(get_trait_index),
) -> dict:
    """All trait keys in use, with the number of profiles holding each."""
    return {"keys": await trait_index.list_keys(site_id)}


@router.get("/values", response_model=schemas.TraitValuesResponse)
async def get_trait_values(
    site_id: int = Depends(get_site_id),
    key: str = Query(..., min_length=1),
    limit: int = Query(1000, ge=1, le=10_000),
    offset: int = Query(0, ge=0),
    trait_index: TraitIndexService = Depends(get_trait_index),
) -> dict:
    """Distinct values of a trait key with profile counts."""
    result = await trait_index.list_values(site_id, key, limit=limit, offset=offset)
    return result.to_dict()


@router.get("/users", response_model=schemas.TraitValueUsersResponse)
async def get_trait_value_users(
    site_id: int = Depends(get_site_id),
    key: str = Query(..., min_length=1),
    value: str = Query(...),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    service: UserAggregationService = Depends(get_user_service),
) -> dict:
    """Profiles whose trait `key` equals `value`, with session counts and last known device."""
    result = await service.users_by_trait(site_id, key, value, page=page, page_size=page_size)
    return result.to_dict()
