"""
Database Layer - Async SQLAlchemy engine + session factory.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from app import config

logger = logging.getLogger("estimator-db")

DATABASE_URL = config.DATABASE_URL


class Base(DeclarativeBase):
    pass


def build_engine(url: str) -> AsyncEngine:
    """Pooled engine for PostgreSQL; SQLite (tests, local runs) takes no pool sizing."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        echo=False,
        pool_timeout=5,
    )


engine = build_engine(DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Create tables. Skips in dev mode when no DATABASE_URL is configured."""
    if not config.DATABASE_URL_CONFIGURED:
        logger.warning("DATABASE_URL not set — skipping init_db() (dev mode)")
        return
    from app.models import orm_models  # noqa: F401
    async with engine.begin() as conn:
        if config.DB_RESET_ON_STARTUP:
            logger.warning("DB_RESET_ON_STARTUP=true — dropping all tables")
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized.")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
