from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any, Generator

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from sqlalchemy import insert

from insights.main import create_app
from insights.models import Event, EventBase, ProfileBase, UserProfile
from insights.services.events import EventQueryService
from insights.services.user_traits import TraitIndexService
from insights.services.users import UserAggregationService
from insights.stores import StoreClient, create_store_engine

load_dotenv()

SITE_ID = 1
OTHER_SITE_ID = 2

_event_ids = itertools.count(1)


def make_event(timestamp: datetime, **fields: Any) -> dict[str, Any]:
    """A complete ``events`` row for ``SITE_ID``; ``fields`` override the defaults."""
    row: dict[str, Any] = {
        "event_id": f"evt-{next(_event_ids):06d}",
        "site_id": SITE_ID,
        "timestamp": timestamp,
        "type": "pageview",
        "event_name": "",
        "props": "{}",
        "session_id": "s1",
        "user_id": "d1",
        "identified_user_id": "",
        "hostname": "example.com",
        "pathname": "/",
        "querystring": "",
        "page_title": "Home",
        "referrer": "",
        "channel": "direct",
        "browser": "Firefox",
        "browser_version": "128",
        "operating_system": "Linux",
        "operating_system_version": "6",
        "language": "en",
        "device_type": "desktop",
        "screen_width": 1920,
        "screen_height": 1080,
        "country": "US",
        "region": "CA",
        "city": "San Francisco",
        "lat": 37.77,
        "lon": -122.42,
    }
    row.update(fields)
    return row


def add_events(store: StoreClient, *rows: dict[str, Any]) -> None:
    with store.engine.begin() as conn:
        conn.execute(insert(Event.__table__), list(rows))


def add_profiles(store: StoreClient, *profiles: tuple[str, dict[str, Any] | None], site_id: int = SITE_ID) -> None:
    rows = [
        {"site_id": site_id, "user_id": user_id, "traits": traits, "updated_at": datetime(2024, 1, 1)}
        for user_id, traits in profiles
    ]
    with store.engine.begin() as conn:
        conn.execute(insert(UserProfile.__table__), rows)


@pytest.fixture()
def event_store(tmp_path) -> Generator[StoreClient, None, None]:
    store = StoreClient(create_store_engine(f"sqlite:///{tmp_path / 'events.db'}"), "event store", timeout=10)
    EventBase.metadata.create_all(store.engine)
    yield store
    store.dispose()


@pytest.fixture()
def profile_store(tmp_path) -> Generator[StoreClient, None, None]:
    store = StoreClient(create_store_engine(f"sqlite:///{tmp_path / 'profiles.db'}"), "profile store", timeout=10)
    ProfileBase.metadata.create_all(store.engine)
    yield store
    store.dispose()


@pytest.fixture()
def broken_store(tmp_path) -> Generator[StoreClient, None, None]:
    """A reachable store with no schema: every query fails at the driver."""
    store = StoreClient(create_store_engine(f"sqlite:///{tmp_path / 'empty.db'}"), "broken store", timeout=10)
    yield store
    store.dispose()


@pytest.fixture()
def event_service(event_store: StoreClient) -> EventQueryService:
    return EventQueryService(event_store)


@pytest.fixture()
def trait_index(profile_store: StoreClient) -> TraitIndexService:
    return TraitIndexService(profile_store)


@pytest.fixture()
def user_service(event_store: StoreClient, trait_index: TraitIndexService) -> UserAggregationService:
    return UserAggregationService(event_store, trait_index)


@pytest.fixture()
def client(event_store: StoreClient, profile_store: StoreClient) -> Generator[TestClient, None, None]:
    with TestClient(create_app(event_store=event_store, profile_store=profile_store)) as test_client:
        yield test_client
