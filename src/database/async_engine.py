"""Async database engine for the access-control store.

SQLite (aiosqlite) in development and tests, any async SQLAlchemy driver
in production.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def create_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        url: Database URL. If None, loaded from settings.
        echo: Log SQL statements. If None, loaded from settings.

    Returns:
        AsyncEngine: Configured async engine instance.
    """
    if url is None or echo is None:
        from config import get_settings
        settings = get_settings()
        url = url or settings.database_url
        echo = settings.database_echo if echo is None else echo

    is_sqlite = url.startswith("sqlite")
    kwargs = {}
    if is_sqlite and ":memory:" in url:
        # One shared connection so every session sees the same in-memory database
        kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

    logger.info(f"Creating async database engine for {url.split('://', 1)[0]}")
    engine = create_async_engine(url, echo=echo, **kwargs)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create an async session factory bound to an engine.

    Returns:
        async_sessionmaker: Factory for creating async sessions.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(engine: AsyncEngine) -> None:
    """Create the access-control tables if they do not exist."""
    from database.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Access-control tables initialized")
