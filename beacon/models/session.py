"""
Beacon Analytics — visitor session models.

A session row is written once by the ingestion path (insert-or-ignore on
its deterministic id) and never updated.  Identify payloads append typed
``SessionData`` rows instead of mutating the session.
"""

import uuid

from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey, Index

from beacon.database import Base


class VisitorSession(Base):
    """One browsing session for one visitor fingerprint on one website."""
    __tablename__ = "session"

    id = Column(String(36), primary_key=True)
    website_id = Column(String(36), ForeignKey("website.id"), nullable=False)

    # sha256 of the client signals (or of the identity id); never raw PII
    fingerprint = Column(String(64), nullable=False)
    distinct_id = Column(String(50), nullable=True)

    # Resolved at ingestion time
    hostname = Column(String(100), nullable=True)
    browser = Column(String(20), nullable=True)
    os = Column(String(20), nullable=True)
    device = Column(String(20), nullable=True)
    screen = Column(String(11), nullable=True)
    language = Column(String(35), nullable=True)
    country = Column(String(2), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_session_website_created", "website_id", "created_at", "id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "website_id": self.website_id,
            "distinct_id": self.distinct_id,
            "hostname": self.hostname,
            "browser": self.browser,
            "os": self.os,
            "device": self.device,
            "screen": self.screen,
            "language": self.language,
            "country": self.country,
            "created_at": self.created_at,
        }

    def __repr__(self):
        return f"<VisitorSession {self.id} website={self.website_id}>"


class SessionData(Base):
    """Typed property attached to a session by an identify call."""
    __tablename__ = "session_data"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    website_id = Column(String(36), ForeignKey("website.id"), nullable=False)
    session_id = Column(String(36), ForeignKey("session.id"), nullable=False, index=True)

    data_key = Column(String(500), nullable=False)
    string_value = Column(String(500), nullable=True)
    number_value = Column(Numeric(19, 4), nullable=True)
    date_value = Column(DateTime(timezone=True), nullable=True)
    data_type = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<SessionData {self.session_id} {self.data_key}>"
