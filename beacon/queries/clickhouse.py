"""
ClickHouse access over the HTTP interface.

One pooled ``httpx.AsyncClient`` is shared by every request.  Reads go
out with ``readonly=2`` and server-side ``{name:Type}`` parameters;
writes are ``INSERT … FORMAT JSONEachRow`` of immutable event rows.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

import httpx

from beacon.detector import ClickHouseTarget
from beacon.errors import QueryFailedError, StoreUnavailableError
from beacon.timeseries import as_utc

logger = logging.getLogger("beacon.clickhouse")

STORE = "columnar"

_READ_PREFIX = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_UNAVAILABLE_STATUSES = {502, 503, 504}


# ── schema ────────────────────────────────────────────────

WEBSITE_EVENT_DDL = """
CREATE TABLE IF NOT EXISTS website_event (
    website_id UUID,
    session_id UUID,
    visit_id UUID,
    event_id UUID,
    distinct_id String,
    hostname LowCardinality(String),
    browser LowCardinality(String),
    os LowCardinality(String),
    device LowCardinality(String),
    screen LowCardinality(String),
    language LowCardinality(String),
    country LowCardinality(String),
    url_path String,
    url_query String,
    referrer_path String,
    referrer_query String,
    referrer_domain String,
    page_title String,
    event_type UInt32,
    event_name String,
    tag String,
    created_at DateTime64(3, 'UTC')
) ENGINE = MergeTree()
PARTITION BY toYYYYMM(created_at)
ORDER BY (website_id, toStartOfHour(created_at), session_id, created_at)
"""

EVENT_DATA_DDL = """
CREATE TABLE IF NOT EXISTS event_data (
    website_id UUID,
    session_id UUID,
    event_id UUID,
    url_path String,
    event_name String,
    data_key String,
    string_value Nullable(String),
    number_value Nullable(Decimal64(4)),
    date_value Nullable(DateTime('UTC')),
    data_type UInt32,
    created_at DateTime64(3, 'UTC')
) ENGINE = MergeTree()
PARTITION BY toYYYYMM(created_at)
ORDER BY (website_id, event_name, data_key, created_at)
"""

STATS_HOURLY_DDL = """
CREATE TABLE IF NOT EXISTS website_event_stats_hourly (
    website_id UUID,
    bucket_at DateTime('UTC'),
    views SimpleAggregateFunction(sum, UInt64),
    visitors AggregateFunction(uniq, UUID)
) ENGINE = AggregatingMergeTree()
PARTITION BY toYYYYMM(bucket_at)
ORDER BY (website_id, bucket_at)
"""

STATS_HOURLY_MV_DDL = """
CREATE MATERIALIZED VIEW IF NOT EXISTS website_event_stats_hourly_mv
TO website_event_stats_hourly AS
SELECT
    website_id,
    toStartOfHour(created_at) AS bucket_at,
    toUInt64(count()) AS views,
    uniqState(session_id) AS visitors
FROM website_event
WHERE event_type = 1
GROUP BY website_id, bucket_at
"""

ALL_DDLS = [
    WEBSITE_EVENT_DDL,
    EVENT_DATA_DDL,
    STATS_HOURLY_DDL,
    STATS_HOURLY_MV_DDL,
]


# ── value formatting ──────────────────────────────────────


def format_datetime(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def format_param(value: Any) -> str:
    """Render a value for ``param_<name>`` in the HTTP query string."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_quote(str(v)) for v in value) + "]"
    return str(value)


def _json_default(value: Any):
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _error_text(resp: httpx.Response) -> str:
    text = resp.text.strip()
    return text.splitlines()[0][:500] if text else f"HTTP {resp.status_code}"


class ClickHouseClient:
    """Thin async client for the ClickHouse HTTP interface."""

    def __init__(
        self,
        target: ClickHouseTarget,
        timeout: float = 30.0,
        max_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._database = target.database
        auth = (target.user, target.password or "") if target.user else None
        self._client = httpx.AsyncClient(
            base_url=target.base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
        )

    async def _post(self, content: str, params: dict[str, str]) -> httpx.Response:
        params = {"database": self._database, **params}
        try:
            resp = await self._client.post("/", content=content.encode("utf-8"), params=params)
        except httpx.TimeoutException as e:
            raise StoreUnavailableError(f"ClickHouse timed out: {e}", store=STORE) from e
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"ClickHouse unreachable: {e}", store=STORE) from e

        if resp.status_code in _UNAVAILABLE_STATUSES:
            raise StoreUnavailableError(_error_text(resp), store=STORE, detail={"status": resp.status_code})
        if resp.status_code >= 400:
            raise QueryFailedError(_error_text(resp), store=STORE, detail={"status": resp.status_code})
        return resp

    async def query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a read-only SELECT and return its rows as dicts."""
        if not _READ_PREFIX.match(sql):
            raise QueryFailedError("Only SELECT/WITH statements may be sent as reads", store=STORE, code="NOT_READ_ONLY")

        query_params = {
            "readonly": "2",
            "default_format": "JSON",
            "output_format_json_quote_64bit_integers": "0",
            "output_format_json_quote_decimals": "0",
        }
        for name, value in (params or {}).items():
            query_params[f"param_{name}"] = format_param(value)

        resp = await self._post(sql, query_params)
        try:
            return resp.json().get("data", [])
        except ValueError as e:
            raise QueryFailedError("ClickHouse returned a non-JSON body", store=STORE, detail=resp.text[:200]) from e

    async def insert(self, table: str, rows: Iterable[dict]) -> int:
        """Append rows with JSONEachRow. Returns the number of rows sent."""
        lines = [json.dumps(row, default=_json_default) for row in rows]
        if not lines:
            return 0
        await self._post(
            "\n".join(lines),
            {
                "query": f"INSERT INTO {table} FORMAT JSONEachRow",
                "date_time_input_format": "best_effort",
                "input_format_null_as_default": "1",
            },
        )
        return len(lines)

    async def execute(self, sql: str) -> None:
        """DDL / administrative statement with no result rows."""
        await self._post(sql, {})

    async def ping(self) -> bool:
        try:
            resp = await self._client.get("/ping")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()


async def ensure_schema(client: ClickHouseClient) -> None:
    for ddl in ALL_DDLS:
        await client.execute(ddl)
    logger.info("✅ ClickHouse schema ready (%d statements)", len(ALL_DDLS))
