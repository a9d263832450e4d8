"""
Query Router — the single entry point for every store operation.

The dispatch table is built once from the engine identity.  An operation
runs on exactly one store, except ``session_list`` which is split across
both when ClickHouse is attached.  There is no fallback between stores.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from beacon.detector import EngineIdentity
from beacon.errors import (
    AnalyticsError,
    ConfigurationError,
    PartialCapabilityError,
    StoreError,
    ValidationError,
    validation_details,
)
from beacon.queries.operations import OPERATIONS, Operation, Placement
from beacon.queries.params import SessionListParams, SessionVolumeParams
from beacon.queries.shape import VOLUME_FIELDS, QueryResult, merge_on_key

logger = logging.getLogger("beacon.router")

Handler = Callable[[Any], Awaitable[Any]]


class QueryRouter:
    def __init__(self, identity: EngineIdentity, relational, columnar=None):
        if identity.has_analytics_store and columnar is None:
            raise ConfigurationError("Analytics store is configured but no columnar implementation was supplied")
        if not identity.has_analytics_store and columnar is not None:
            raise ConfigurationError("Columnar implementation supplied without an analytics store")

        self.identity = identity
        self._relational = relational
        self._columnar = columnar
        self._table: dict[Operation, Handler] = {
            operation: self._resolve(operation, placement)
            for operation, (placement, _) in OPERATIONS.items()
        }

    def _resolve(self, operation: Operation, placement: Placement) -> Handler:
        if placement is Placement.RELATIONAL or self._columnar is None:
            return getattr(self._relational, operation.value)
        if placement is Placement.ANALYTICS:
            return getattr(self._columnar, operation.value)
        return self._split_session_list

    def store_for(self, operation: Operation | str) -> str:
        """Which store answers ``operation`` ("relational", "columnar" or "split")."""
        operation = Operation(operation)
        placement = OPERATIONS[operation][0]
        if placement is Placement.RELATIONAL or self._columnar is None:
            return "relational"
        return "columnar" if placement is Placement.ANALYTICS else "split"

    async def execute(self, operation: Operation | str, params: BaseModel | dict) -> Any:
        try:
            operation = Operation(operation)
        except ValueError as e:
            raise ValidationError(f"Unknown operation '{operation}'") from e

        model = OPERATIONS[operation][1]
        if not isinstance(params, model):
            try:
                params = model.model_validate(params if isinstance(params, dict) else params.model_dump())
            except PydanticValidationError as e:
                raise ValidationError("Invalid parameters", detail=validation_details(e), operation=operation.value) from e

        try:
            return await self._table[operation](params)
        except AnalyticsError as e:
            e.operation = e.operation or operation.value
            if isinstance(e, StoreError):
                logger.error("❌ %s failed on %s store: %s", operation.value, e.store, e.message)
            raise

    async def _split_session_list(self, params: SessionListParams) -> QueryResult:
        page = await self._relational.session_page(params)
        try:
            volume = await self._columnar.session_volume(SessionVolumeParams(
                website_id=params.website_id,
                session_ids=[row["id"] for row in page.rows],
            ))
        except StoreError as e:
            raise PartialCapabilityError(
                "Session volume unavailable from the analytics store",
                store=e.store,
                detail=e.message,
                operation=Operation.SESSION_LIST.value,
            ) from e

        return QueryResult(
            rows=merge_on_key(page.rows, volume.rows, "id", VOLUME_FIELDS),
            approximate=volume.approximate,
            next_cursor=page.next_cursor,
        )
