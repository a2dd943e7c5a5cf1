import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from funds_ledger.core.config import settings
from funds_ledger.models import Base

logger = logging.getLogger(__name__)

engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

async def init_db(bind: AsyncEngine = engine) -> None:
    """Creates any missing tables."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")

async def close_db(bind: AsyncEngine = engine) -> None:
    await bind.dispose()
    logger.info("Database connections closed")
