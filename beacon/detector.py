"""
Engine Detector — classify the configured stores by connection-string scheme.

Detection never probes a server.  It runs once in the application lifespan;
the resulting ``EngineIdentity`` is immutable and handed to the router.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote, urlsplit, urlunsplit

from beacon.errors import ConfigurationError

logger = logging.getLogger(__name__)


class EngineKind(str, Enum):
    POSTGRESQL = "postgresql"   # relational-A
    MYSQL = "mysql"             # relational-B
    SQLITE = "sqlite"           # development / tests
    CLICKHOUSE = "clickhouse"   # columnar


RELATIONAL_KINDS = (EngineKind.POSTGRESQL, EngineKind.MYSQL, EngineKind.SQLITE)

# scheme -> (kind, async SQLAlchemy driver scheme)
_RELATIONAL_SCHEMES: dict[str, tuple[EngineKind, str]] = {
    "postgresql": (EngineKind.POSTGRESQL, "postgresql+asyncpg"),
    "postgres": (EngineKind.POSTGRESQL, "postgresql+asyncpg"),
    "postgresql+asyncpg": (EngineKind.POSTGRESQL, "postgresql+asyncpg"),
    "mysql": (EngineKind.MYSQL, "mysql+aiomysql"),
    "mysql+aiomysql": (EngineKind.MYSQL, "mysql+aiomysql"),
    "sqlite": (EngineKind.SQLITE, "sqlite+aiosqlite"),
    "sqlite+aiosqlite": (EngineKind.SQLITE, "sqlite+aiosqlite"),
}

# scheme -> HTTP scheme used to reach ClickHouse
_COLUMNAR_SCHEMES: dict[str, str] = {
    "clickhouse": "http",
    "clickhouses": "https",
    "http": "http",
    "https": "https",
}


@dataclass(frozen=True)
class ClickHouseTarget:
    base_url: str
    database: str = "default"
    user: str | None = None
    password: str | None = None


@dataclass(frozen=True)
class EngineIdentity:
    """Which relational dialect is primary and whether ClickHouse is attached."""

    relational: EngineKind
    relational_url: str
    clickhouse: ClickHouseTarget | None = None

    @property
    def has_analytics_store(self) -> bool:
        return self.clickhouse is not None

    @property
    def query_engine(self) -> EngineKind:
        """Engine that answers analytics-placed operations."""
        return EngineKind.CLICKHOUSE if self.has_analytics_store else self.relational

    def describe(self) -> str:
        parts = [f"relational={self.relational.value}"]
        if self.clickhouse:
            parts.append(f"columnar={self.clickhouse.base_url}/{self.clickhouse.database}")
        return ", ".join(parts)


def _scheme(url: str) -> str:
    if "://" not in url:
        return ""
    return url.split("://", 1)[0].lower()


def _redact(url: str) -> str:
    if "@" not in url:
        return url
    scheme, rest = url.split("://", 1) if "://" in url else ("", url)
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def detect_relational(database_url: str) -> tuple[EngineKind, str]:
    """Return (kind, async URL) for the primary store or raise ConfigurationError."""
    if not database_url or not database_url.strip():
        raise ConfigurationError("DATABASE_URL is required", code="MISSING_DATABASE_URL")

    url = database_url.strip()
    scheme = _scheme(url)
    if scheme in _COLUMNAR_SCHEMES and scheme.startswith("clickhouse"):
        raise ConfigurationError(
            "The primary store must be relational; configure ClickHouse via CLICKHOUSE_URL",
            detail=_redact(url),
        )
    if scheme not in _RELATIONAL_SCHEMES:
        raise ConfigurationError(
            f"Unrecognized database scheme '{scheme or url}'",
            detail=_redact(url),
        )

    kind, driver = _RELATIONAL_SCHEMES[scheme]
    return kind, driver + url[len(scheme):]


def detect_columnar(clickhouse_url: str) -> ClickHouseTarget:
    url = clickhouse_url.strip()
    scheme = _scheme(url)
    if scheme not in _COLUMNAR_SCHEMES:
        raise ConfigurationError(
            f"Unrecognized analytics store scheme '{scheme or url}'",
            detail=_redact(url),
        )

    parts = urlsplit(url)
    if not parts.hostname:
        raise ConfigurationError("Analytics store URL has no host", detail=_redact(url))

    netloc = parts.hostname
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    base_url = urlunsplit((_COLUMNAR_SCHEMES[scheme], netloc, "", "", ""))
    database = parts.path.strip("/") or "default"

    return ClickHouseTarget(
        base_url=base_url,
        database=database,
        user=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


def detect_engine(database_url: str, clickhouse_url: str | None = None) -> EngineIdentity:
    """
    Build the process-wide engine identity.

    Raises ``ConfigurationError`` for a missing or unrecognized descriptor;
    callers treat that as fatal.
    """
    kind, async_url = detect_relational(database_url)
    target = detect_columnar(clickhouse_url) if clickhouse_url and clickhouse_url.strip() else None
    identity = EngineIdentity(relational=kind, relational_url=async_url, clickhouse=target)
    logger.info("Detected engines: %s (primary %s)", identity.describe(), _redact(async_url))
    return identity
