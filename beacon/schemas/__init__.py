"""
Beacon Analytics — Pydantic request/response schemas for collection.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_TIMESTAMP = 253402300799


class CollectPayload(BaseModel):
    """What the tracking script sends for every page view, event or identify."""

    website: str = Field(..., pattern=UUID_PATTERN)
    screen: str | None = Field(None, max_length=11)
    language: str | None = Field(None, max_length=35)
    title: str | None = Field(None, max_length=500)
    hostname: str | None = Field(None, max_length=100)
    url: str | None = Field(None, max_length=500)
    referrer: str | None = Field(None, max_length=500)
    tag: str | None = Field(None, max_length=50)
    name: str | None = Field(None, max_length=50)
    data: dict[str, Any] | None = None
    id: str | None = Field(None, max_length=50)       # identity set via identify()
    timestamp: int | None = Field(None, ge=0, le=MAX_TIMESTAMP)  # unix seconds, defaults to receive time


class CollectRequest(BaseModel):
    type: Literal["event", "identify"]
    payload: CollectPayload


class CollectResponse(BaseModel):
    cache: str | None = None
    disabled: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: str | None = None
    relational: str
    columnar: str | None = None
