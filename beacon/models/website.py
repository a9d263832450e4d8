"""
Beacon Analytics — Website model (tenant boundary).

Websites are provisioned outside the query layer; ingestion and reports
only read them.  ``deleted_at`` marks a soft delete.
"""

import uuid

from sqlalchemy import Column, String, DateTime, func

from beacon.database import Base


class Website(Base):
    __tablename__ = "website"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    domain = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<Website {self.id} {self.domain or self.name}>"
