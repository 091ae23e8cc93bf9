from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class EventBase(DeclarativeBase):
    """Declarative base for the columnar event store."""


class ProfileBase(DeclarativeBase):
    """Declarative base for the relational profile store."""


# ============================================================================
# EVENT STORE
# ============================================================================


EVENT_TYPES = (
    "pageview",
    "custom_event",
    "outbound",
    "performance",
    "error",
    "button_click",
    "copy",
    "form_submit",
    "input_change",
)

# Types shown in the event feed (realtime poll and cursor pages).
FEED_EVENT_TYPES = (
    "pageview",
    "custom_event",
    "outbound",
    "button_click",
    "copy",
    "form_submit",
    "input_change",
)


class Event(EventBase):
    """Immutable behavioral event, written by the ingestion pipeline only."""

    __tablename__ = "events"

    event_id = Column(String(64), primary_key=True)
    site_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)  # naive UTC
    type = Column(String(32), nullable=False)  # one of EVENT_TYPES
    event_name = Column(String(255), nullable=False, default="")
    props = Column(Text, nullable=False, default="{}")  # raw JSON blob

    # Identity
    session_id = Column(String(64), nullable=False, default="")
    user_id = Column(String(64), nullable=False, default="")  # device-derived
    identified_user_id = Column(String(255), nullable=False, default="")

    # Page
    hostname = Column(String(255), nullable=False, default="")
    pathname = Column(String(2048), nullable=False, default="")
    querystring = Column(String(2048), nullable=False, default="")
    page_title = Column(String(512), nullable=False, default="")
    referrer = Column(String(2048), nullable=False, default="")
    channel = Column(String(64), nullable=False, default="")

    # Device
    browser = Column(String(64), nullable=False, default="")
    browser_version = Column(String(64), nullable=False, default="")
    operating_system = Column(String(64), nullable=False, default="")
    operating_system_version = Column(String(64), nullable=False, default="")
    language = Column(String(32), nullable=False, default="")
    device_type = Column(String(32), nullable=False, default="")
    screen_width = Column(Integer, nullable=False, default=0)
    screen_height = Column(Integer, nullable=False, default=0)

    # Location
    country = Column(String(8), nullable=False, default="")
    region = Column(String(64), nullable=False, default="")
    city = Column(String(128), nullable=False, default="")
    lat = Column(Float, nullable=False, default=0.0)
    lon = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        Index("ix_events_site_timestamp", "site_id", "timestamp"),
        Index("ix_events_site_identified", "site_id", "identified_user_id"),
        Index("ix_events_site_user", "site_id", "user_id"),
    )


# ============================================================================
# PROFILE STORE
# ============================================================================


class UserProfile(ProfileBase):
    """Resolved traits for an identified user (last write wins per key)."""

    __tablename__ = "user_profiles"

    site_id = Column(Integer, primary_key=True)
    user_id = Column(String(255), primary_key=True)  # identified user id
    traits = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=True)
