"""Tests for the event feed and event count queries."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest
from conftest import OTHER_SITE_ID, SITE_ID, add_events, make_event
from fastapi.testclient import TestClient

from insights import settings
from insights.errors import ValidationError
from insights.filters import make_filter
from insights.main import create_app
from insights.time_range import format_timestamp, resolve

T0 = datetime(2024, 3, 1, 12, 0, 0)


def _fail(*args, **kwargs):
    raise AssertionError("store must not be queried")


# ============================================================================
# Cursor pagination
# ============================================================================


@pytest.mark.asyncio
async def test_full_page_reports_more_even_at_the_end(event_store, event_service):
    add_events(event_store, *[make_event(T0 - timedelta(minutes=i)) for i in range(50)])
    add_events(event_store, *[make_event(T0 + timedelta(hours=1, minutes=i)) for i in range(5)])

    page = await event_service.cursor_page(SITE_ID, before_timestamp=T0 + timedelta(seconds=1), page_size=50)
    assert len(page.data) == 50
    assert page.has_more is True
    assert page.oldest_timestamp == format_timestamp(T0 - timedelta(minutes=49))

    next_page = await event_service.cursor_page(SITE_ID, before_timestamp=page.oldest_timestamp, page_size=50)
    assert next_page.data == []
    assert next_page.has_more is False
    assert next_page.oldest_timestamp is None


@pytest.mark.asyncio
async def test_pages_concatenate_to_history(event_store, event_service):
    add_events(event_store, *[make_event(T0 - timedelta(minutes=i)) for i in range(25)])
    add_events(event_store, make_event(T0, site_id=OTHER_SITE_ID))

    seen = []
    cursor = None
    while True:
        page = await event_service.cursor_page(SITE_ID, before_timestamp=cursor, page_size=10)
        seen.extend(page.data)
        if not page.has_more:
            break
        cursor = page.oldest_timestamp

    timestamps = [row["timestamp"] for row in seen]
    assert len(seen) == 25
    assert len({row["event_id"] for row in seen}) == 25
    assert timestamps == sorted(timestamps, reverse=True)


@pytest.mark.asyncio
async def test_cursor_page_applies_range_and_filters(event_store, event_service):
    add_events(
        event_store,
        make_event(datetime(2024, 3, 1, 9), pathname="/pricing"),
        make_event(datetime(2024, 3, 1, 10), pathname="/docs"),
        make_event(datetime(2024, 3, 2, 9), pathname="/pricing"),
        make_event(datetime(2024, 3, 5, 9), pathname="/pricing"),
    )
    page = await event_service.cursor_page(
        SITE_ID,
        [make_filter("pathname", "contains", ["PRICING"])],
        time_range=resolve("2024-03-01", "2024-03-02"),
    )
    assert [row["timestamp"] for row in page.data] == [
        "2024-03-02 09:00:00.000000",
        "2024-03-01 09:00:00.000000",
    ]
    assert page.has_more is False


@pytest.mark.asyncio
async def test_cursor_page_rejects_bad_page_size(event_service):
    with pytest.raises(ValidationError):
        await event_service.cursor_page(SITE_ID, page_size=0)


# ============================================================================
# Realtime polling
# ============================================================================


@pytest.mark.asyncio
async def test_poll_since_returns_newer_feed_events(event_store, event_service):
    add_events(
        event_store,
        make_event(T0 - timedelta(minutes=1)),
        make_event(T0),
        make_event(T0 + timedelta(minutes=1), type="custom_event", event_name="signup"),
        make_event(T0 + timedelta(minutes=2), type="performance"),
        make_event(T0 + timedelta(minutes=3), type="error"),
        make_event(T0 + timedelta(minutes=4)),
        make_event(T0 + timedelta(minutes=5), site_id=OTHER_SITE_ID),
    )
    rows = await event_service.poll_since(SITE_ID, format_timestamp(T0))

    assert [row["timestamp"] for row in rows] == [
        format_timestamp(T0 + timedelta(minutes=4)),
        format_timestamp(T0 + timedelta(minutes=1)),
    ]
    assert rows[1]["event_name"] == "signup"
    assert rows[1]["properties"] == "{}"


@pytest.mark.asyncio
async def test_poll_since_is_capped(event_store, event_service, monkeypatch):
    monkeypatch.setattr(settings, "REALTIME_EVENT_LIMIT", 3)
    add_events(event_store, *[make_event(T0 + timedelta(seconds=i)) for i in range(1, 6)])

    rows = await event_service.poll_since(SITE_ID, T0)
    assert len(rows) == 3
    assert rows[0]["timestamp"] == format_timestamp(T0 + timedelta(seconds=5))


# ============================================================================
# Bucketed counts
# ============================================================================


@pytest.mark.asyncio
async def test_daily_counts_skip_empty_days(event_store, event_service):
    add_events(event_store, *[make_event(datetime(2024, 3, 1, 8) + timedelta(minutes=i)) for i in range(10)])
    add_events(event_store, *[make_event(datetime(2024, 3, 3, 20) + timedelta(minutes=i)) for i in range(5)])

    points = await event_service.bucketed_count(SITE_ID, [], resolve("2024-03-01", "2024-03-03", "UTC", bucket="day"))

    assert [p["time"] for p in points] == ["2024-03-01 00:00:00", "2024-03-03 00:00:00"]
    assert [p["pageview_count"] for p in points] == [10, 5]
    assert [p["event_count"] for p in points] == [10, 5]


@pytest.mark.asyncio
async def test_counts_break_out_every_type(event_store, event_service):
    add_events(
        event_store,
        make_event(T0, type="pageview"),
        make_event(T0, type="performance"),
        make_event(T0, type="error"),
        make_event(T0, type="button_click"),
        make_event(T0, type="button_click"),
    )
    [point] = await event_service.bucketed_count(SITE_ID, [], resolve("2024-03-01", "2024-03-01", bucket="day"))
    assert point["pageview_count"] == 1
    assert point["performance_count"] == 1
    assert point["error_count"] == 1
    assert point["button_click_count"] == 2
    assert point["copy_count"] == 0
    assert point["event_count"] == 5


@pytest.mark.asyncio
async def test_weekly_buckets_start_monday(event_store, event_service):
    add_events(
        event_store,
        make_event(datetime(2024, 3, 4, 1)),  # Monday
        make_event(datetime(2024, 3, 10, 23)),  # Sunday
        make_event(datetime(2024, 3, 11, 0)),  # next Monday
    )
    time_range = resolve("2024-03-01", "2024-03-31")
    points = await event_service.bucketed_count(SITE_ID, [], time_range, bucket="week")
    assert [(p["time"], p["event_count"]) for p in points] == [
        ("2024-03-04 00:00:00", 2),
        ("2024-03-11 00:00:00", 1),
    ]


@pytest.mark.asyncio
async def test_bucketed_count_is_idempotent(event_store, event_service):
    add_events(event_store, *[make_event(T0 + timedelta(hours=i), type="copy") for i in range(30)])
    time_range = resolve("2024-03-01", "2024-03-02", bucket="hour")

    first = await event_service.bucketed_count(SITE_ID, [], time_range)
    second = await event_service.bucketed_count(SITE_ID, [], time_range)
    assert first == second
    assert sum(p["copy_count"] for p in first) == 30


@pytest.mark.asyncio
async def test_fortnight_bucket_issues_no_query(event_store, event_service, monkeypatch):
    monkeypatch.setattr(event_store, "stream", _fail)
    monkeypatch.setattr(event_store, "fetch_all", _fail)

    with pytest.raises(ValidationError, match="fortnight"):
        await event_service.bucketed_count(SITE_ID, [], resolve("2024-03-01", "2024-03-03"), bucket="fortnight")


@pytest.mark.asyncio
async def test_realtime_range_cannot_be_bucketed(event_service):
    with pytest.raises(ValidationError):
        await event_service.bucketed_count(SITE_ID, [], resolve(since="2024-03-01T00:00:00"), bucket="day")


# ============================================================================
# HTTP
# ============================================================================


def test_get_events_cursor_mode(client: TestClient, event_store):
    add_events(event_store, *[make_event(T0 - timedelta(minutes=i)) for i in range(3)])

    response = client.get(f"/sites/{SITE_ID}/events", params={"page_size": 2})
    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 2
    assert body["cursor"] == {"hasMore": True, "oldestTimestamp": format_timestamp(T0 - timedelta(minutes=1))}

    response = client.get(
        f"/sites/{SITE_ID}/events",
        params={"page_size": 2, "before_timestamp": body["cursor"]["oldestTimestamp"]},
    )
    assert response.json()["cursor"]["hasMore"] is False
    assert len(response.json()["data"]) == 1


def test_get_events_realtime_mode(client: TestClient, event_store):
    add_events(event_store, make_event(T0), make_event(T0 + timedelta(minutes=1), country="DE"))

    response = client.get(f"/sites/{SITE_ID}/events", params={"since_timestamp": format_timestamp(T0)})
    assert response.status_code == 200
    body = response.json()
    assert "cursor" not in body
    assert [row["country"] for row in body["data"]] == ["DE"]


def test_get_events_with_filters(client: TestClient, event_store):
    add_events(event_store, make_event(T0, country="US"), make_event(T0, country="FR"))
    filters = json.dumps([{"dimension": "country", "operator": "neq", "values": ["US"]}])

    response = client.get(f"/sites/{SITE_ID}/events", params={"filters": filters})
    assert [row["country"] for row in response.json()["data"]] == ["FR"]


def test_realtime_with_date_range_is_400(client: TestClient):
    response = client.get(
        f"/sites/{SITE_ID}/events",
        params={"since_timestamp": "2024-03-01T00:00:00", "start_date": "2024-03-01"},
    )
    assert response.status_code == 400
    assert "since_timestamp" in response.json()["detail"]


def test_unknown_filter_dimension_is_400(client: TestClient):
    filters = json.dumps([{"dimension": "secret_column", "operator": "eq", "values": ["x"]}])
    response = client.get(f"/sites/{SITE_ID}/events", params={"filters": filters})
    assert response.status_code == 400
    assert response.json() == {"detail": "Unknown filter dimension: secret_column"}


def test_event_count_endpoint(client: TestClient, event_store):
    add_events(event_store, *[make_event(datetime(2024, 3, 1, 8)) for _ in range(10)])
    add_events(event_store, *[make_event(datetime(2024, 3, 3, 8)) for _ in range(5)])

    response = client.get(
        f"/sites/{SITE_ID}/events/count",
        params={"bucket": "day", "start_date": "2024-03-01", "end_date": "2024-03-03", "time_zone": "UTC"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert [(p["time"], p["pageview_count"]) for p in data] == [
        ("2024-03-01 00:00:00", 10),
        ("2024-03-03 00:00:00", 5),
    ]


def test_event_count_fortnight_is_400_without_query(client: TestClient, event_store, monkeypatch):
    monkeypatch.setattr(event_store, "stream", _fail)

    response = client.get(f"/sites/{SITE_ID}/events/count", params={"bucket": "fortnight"})
    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid bucket value: fortnight"}


def test_unknown_site_is_404(client: TestClient):
    response = client.get("/sites/0/events")
    assert response.status_code == 404


def test_tenant_resolver_is_consulted(event_store, profile_store):
    app = create_app(event_store, profile_store, tenant_resolver=lambda request, site_id: site_id == SITE_ID)
    with TestClient(app) as client:
        assert client.get(f"/sites/{SITE_ID}/events").status_code == 200
        assert client.get(f"/sites/{OTHER_SITE_ID}/events").status_code == 404


def test_store_failure_is_500_without_sql(broken_store, profile_store, caplog):
    with TestClient(create_app(broken_store, profile_store)) as client:
        response = client.get(f"/sites/{SITE_ID}/events")

    assert response.status_code == 500
    assert response.json() == {"detail": "Failed to fetch analytics data"}
    assert "SELECT" not in response.text
    assert any("Query:" in r.getMessage() and f"site {SITE_ID}" in r.getMessage() for r in caplog.records)
