"""
Async SQLAlchemy engine and session factory
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ..config import settings
from ..models.orm import Base

logger = logging.getLogger(__name__)


def get_db_url() -> str:
    """Database URL from settings (asyncpg in production, aiosqlite in tests)"""
    return settings.DATABASE_URL


def create_engine(db_url: Optional[str] = None) -> AsyncEngine:
    url = db_url or get_db_url()
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # SQLite waits on the file lock instead of failing immediately
        kwargs["connect_args"] = {"timeout": 30}
    engine = create_async_engine(url, **kwargs)
    safe_url = url.split("@")[1] if "@" in url else url
    logger.info(f"[DB] Engine created: {safe_url}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Tables ready")
