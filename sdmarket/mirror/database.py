"""Async engine and session lifecycle for the mirror database."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

import bittensor as bt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sdmarket.base.errors import NotInitializedError

from .schema import Base


class MirrorDatabase:
    """Owns the engine. SQLite (aiosqlite) for development, any async
    SQLAlchemy URL otherwise."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    async def initialize(self) -> None:
        kwargs: dict = {"echo": self.echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            if ":///" in self.url:
                db_path = self.url.split("///", 1)[1].split("?")[0]
                db_dir = os.path.dirname(db_path)
                if db_dir and db_path != ":memory:":
                    os.makedirs(db_dir, exist_ok=True)
            kwargs["connect_args"] = {"check_same_thread": False}

        self._engine = create_async_engine(self.url, **kwargs)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        bt.logging.info({
            "mirror_database": {
                "status": "initialized",
                "dialect": self.dialect,
                "url": self.url.split("@")[-1].split("?")[0],
            }
        })

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            bt.logging.debug({"mirror_database": "closed"})

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise NotInitializedError("mirror database not initialized")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session: commits on success, rolls back on error."""
        if self._sessions is None:
            raise NotInitializedError("mirror database not initialized")
        async with self._sessions() as session:
            async with session.begin():
                yield session

    async def health_check(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            bt.logging.warning({"mirror_database_unhealthy": str(e)})
            return False


__all__ = ["MirrorDatabase"]
