"""
Beacon Analytics — append-only event models.
"""

import uuid
from enum import IntEnum

from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey, Index

from beacon.database import Base


class EventType(IntEnum):
    PAGE_VIEW = 1
    CUSTOM = 2


class DataType(IntEnum):
    STRING = 1
    NUMBER = 2
    BOOLEAN = 3
    DATE = 4


class WebsiteEvent(Base):
    """A page view (no event_name) or a named custom event."""
    __tablename__ = "website_event"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    website_id = Column(String(36), ForeignKey("website.id"), nullable=False)
    session_id = Column(String(36), ForeignKey("session.id"), nullable=False)
    visit_id = Column(String(36), nullable=False)

    url_path = Column(String(500), nullable=False, default="")
    url_query = Column(String(500), nullable=True)
    referrer_path = Column(String(500), nullable=True)
    referrer_query = Column(String(500), nullable=True)
    referrer_domain = Column(String(500), nullable=True)
    page_title = Column(String(500), nullable=True)
    hostname = Column(String(100), nullable=True)

    event_type = Column(Integer, nullable=False, default=EventType.PAGE_VIEW)
    event_name = Column(String(50), nullable=True)
    tag = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_event_website_created", "website_id", "created_at"),
        Index("ix_event_session_created", "session_id", "created_at"),
        Index("ix_event_visit", "visit_id"),
    )

    def __repr__(self):
        kind = self.event_name or "pageview"
        return f"<WebsiteEvent {kind} {self.url_path}>"


class EventData(Base):
    """One flattened property of a custom event."""
    __tablename__ = "event_data"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    website_id = Column(String(36), ForeignKey("website.id"), nullable=False)
    website_event_id = Column(String(36), ForeignKey("website_event.id"), nullable=False, index=True)

    data_key = Column(String(500), nullable=False)
    # Canonical text for every type; grouping always happens on this column
    string_value = Column(String(500), nullable=True)
    number_value = Column(Numeric(19, 4), nullable=True)
    date_value = Column(DateTime(timezone=True), nullable=True)
    data_type = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_event_data_website_key", "website_id", "data_key"),
    )

    def __repr__(self):
        return f"<EventData {self.data_key}={self.string_value!r}>"
