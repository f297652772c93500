"""
Postgres access for the match store: one async SQLAlchemy engine per process,
plus read and write session scopes. Tables are created from the ORM metadata
on startup; there is no separate migration step.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.models.orm import Base
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    """Owns the engine and hands out sessions to SqlMatchStore."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    def _engine_options(self) -> dict[str, Any]:
        s = self._settings
        return {
            "pool_size": s.db_pool_min,
            "max_overflow": max(0, s.db_pool_max - s.db_pool_min),
            "pool_pre_ping": True,
            "pool_recycle": 300,
            "echo": s.debug,
            "connect_args": {"timeout": s.db_command_timeout, "command_timeout": s.db_command_timeout},
        }

    async def connect(self) -> None:
        self._engine = create_async_engine(self._settings.database_url_str, **self._engine_options())
        self._sessions = async_sessionmaker(bind=self._engine, expire_on_commit=False)
        # Fail fast when the server is unreachable, so the startup retry loop kicks in.
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def create_schema(self) -> None:
        """Create missing tables (teams, matches and their children, insights, follows)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready", tables=sorted(Base.metadata.tables))

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("database_disconnected")

    async def ping(self) -> bool:
        """Readiness check: True when a trivial query round-trips."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError, RuntimeError) as exc:
            logger.warning("database_ping_failed", error=str(exc))
            return False
        return True

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected. Call connect() first.")
        return self._engine

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            raise RuntimeError("DatabaseManager not connected. Call connect() first.")
        return self._sessions

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Session for queries; never commits."""
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """
        One transaction per block: committed when the block exits cleanly,
        rolled back when it raises. Child-record replacement relies on this to
        swap a match's events or lineups atomically.
        """
        async with self._factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
