"""Database engine and session factory construction with async SQLAlchemy."""
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from credit_ledger.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    PostgreSQL gets a sized connection pool. SQLite gets its transactions
    opened with BEGIN IMMEDIATE so writers serialize on the database lock,
    which is the closest SQLite has to SELECT ... FOR UPDATE.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: Configured engine
    """
    url = make_url(settings.database_url)
    engine_kwargs: dict[str, Any] = {"echo": settings.database_echo}

    if url.get_backend_name() == "sqlite":
        engine_kwargs["connect_args"] = {"timeout": settings.operation_timeout_seconds}
        engine = create_async_engine(url, **engine_kwargs)
        _serialize_sqlite_writers(engine)
        return engine

    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        **engine_kwargs,
    )


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        # pysqlite's own BEGIN is deferred; take over transaction control
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory handed to every ledger component."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Declarative base for all models
Base = declarative_base()
