"""
Database engine and session management.
"""

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    SQLite connections open every transaction with BEGIN IMMEDIATE so writers
    are serialized the same way row/advisory locks serialize them on PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_size", 5)
    kwargs.setdefault("max_overflow", 10)
    return create_async_engine(database_url, **kwargs)


engine = build_engine(settings.DATABASE_URL)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Base class for all models
Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency for getting a database session.
    Usage: db: AsyncSession = Depends(get_db)
    """
    async with async_session_maker() as session:
        yield session


def get_session_maker() -> async_sessionmaker:
    """Dependency for work that must outlive the request session (attempt completion)."""
    return async_session_maker
