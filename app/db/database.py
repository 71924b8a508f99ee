from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from typing import Optional
import logging
import redis.asyncio as redis

from core.config import Settings
from models.base import Base

logger = logging.getLogger(__name__)


class Database:
    """Async engine plus session factory for the SQL stores."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(url, echo=echo, future=True)

        # Session factory
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.DATABASE_URL, echo=settings.SQL_ECHO)

    async def init(self):
        """Initialize database tables."""
        import models  # noqa: F401  registers every table on Base.metadata

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready")

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


def create_redis_client(settings: Settings) -> redis.Redis:
    """Redis client for the shared rate limit store."""
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


async def close_redis(client: Optional[redis.Redis]):
    if client is not None:
        await client.aclose()
