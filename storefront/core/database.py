# storefront/core/database.py
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from storefront.core.config import SQLITE_BUSY_TIMEOUT_SECONDS, get_database_url


def build_engine(db_url: str) -> AsyncEngine:
    # Configure engine based on database type
    if "sqlite" in db_url:
        engine = create_async_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )

        # SQLite has no row locks: every transaction takes the write lock up
        # front so concurrent read-modify-write units serialize.
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine(get_database_url())
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def init_models(target: AsyncEngine = None) -> None:
    import storefront.models  # noqa: F401  (registers tables on Base.metadata)

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
