"""Async engine and transaction scopes for the manifest store."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./manifests.db"


@dataclass(slots=True)
class DatabaseConfig:
    """Connection settings. PostgreSQL (asyncpg) in production, SQLite (aiosqlite) locally."""

    url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    sqlite_busy_timeout: float = 15.0

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.url).get_backend_name() == "sqlite"

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and make_url(self.url).database in (None, "", ":memory:")

    @property
    def safe_url(self) -> str:
        """The URL with any password masked, for logs and reports."""
        return make_url(self.url).render_as_string(hide_password=True)

    def engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"echo": self.echo}
        if self.is_sqlite:
            # one shared connection keeps an in-memory database alive across sessions
            options["poolclass"] = StaticPool if self.is_memory else NullPool
            options["connect_args"] = {"timeout": self.sqlite_busy_timeout}
        else:
            options.update(
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
                pool_timeout=self.pool_timeout,
                pool_pre_ping=True,
            )
        return options


class DatabaseManager:
    """Owns the engine; hands out one session per unit of work."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            logger.info(f"Connecting to manifest store at {self.config.safe_url}")
            self._engine = create_async_engine(self.config.url, **self.config.engine_options())
        return self._engine

    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False, autoflush=False)
        return self._sessions

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """One transaction: committed on success, rolled back on any error."""
        session = self.session_factory()()
        try:
            yield session
            await session.commit()
        except Exception:  # pylint: disable=broad-except
            await session.rollback()
            raise
        finally:
            await session.close()
