"""Database configuration and utilities."""
import logging
from datetime import datetime, timezone
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: Async SQLAlchemy URL (asyncpg in production)
            echo: Whether to echo SQL queries
        """
        engine_options = {"echo": echo, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_options.update(pool_size=10, max_overflow=20)

        self.engine = create_async_engine(database_url, **engine_options)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
