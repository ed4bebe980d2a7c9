"""Async database managers for the relational and document stores."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gatehouse.common.models import Base, DocumentBase

# Import all model modules so the metadata objects are complete for create_all().
import gatehouse.tenants.models  # noqa: F401
import gatehouse.users.models  # noqa: F401
import gatehouse.audit.models  # noqa: F401


class DatabaseManager:
    """Manages a single async database engine bound to one metadata."""

    def __init__(self, url: str, metadata: MetaData | None = None):
        self.url = url
        self.metadata = metadata if metadata is not None else Base.metadata
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def relational(cls, url: str) -> "DatabaseManager":
        return cls(url, Base.metadata)

    @classmethod
    def documents(cls, url: str) -> "DatabaseManager":
        return cls(url, DocumentBase.metadata)

    async def init(self) -> None:
        self.engine = create_async_engine(self.url, echo=False)
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
