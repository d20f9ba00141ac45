"""Database engine and session management."""
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from billing_events.config import Settings, get_settings
from billing_events.database.models import Base


class Database:
    """
    Owns one async engine and its session factory.

    Constructed once per process (API lifespan or worker) and handed to the
    services that need it.
    """

    def __init__(self, url: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.url = url or self.settings.database_url
        self.engine: AsyncEngine = create_async_engine(self.url, **self._engine_options())
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _engine_options(self) -> Dict[str, Any]:
        if self.url.startswith("sqlite"):
            # One connection per session; SQLite serializes writers itself.
            return {"echo": self.settings.database_echo, "poolclass": NullPool}
        return {
            "echo": self.settings.database_echo,
            "pool_size": self.settings.database_pool_size,
            "max_overflow": self.settings.database_max_overflow,
            "pool_pre_ping": True,  # Verify connections before using
            "pool_recycle": 3600,  # Recycle connections after 1 hour
        }

    async def create_all(self) -> None:
        """Create all tables defined in models if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
