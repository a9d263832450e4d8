"""
Beacon Analytics — Async SQLAlchemy database setup.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from beacon.detector import EngineIdentity, EngineKind


class Base(DeclarativeBase):
    pass


def build_engine(identity: EngineIdentity, echo: bool = False) -> AsyncEngine:
    """Create the relational engine for the detected dialect."""
    return create_async_engine(
        identity.relational_url,
        echo=echo,
        # pool settings only for server dialects
        **(
            {}
            if identity.relational is EngineKind.SQLITE
            else {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_pre_ping": True,       # test connections before use
                "pool_recycle": 300,          # recycle connections every 5 min to avoid stale FDs
            }
        ),
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (used in lifespan and tests)."""
    # models must be imported so their tables are registered on Base.metadata
    import beacon.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    await engine.dispose()
