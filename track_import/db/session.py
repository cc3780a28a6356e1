"""Async database access for the track catalog."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from track_import.settings import settings

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def check_database() -> None:
    """Verify the catalog database is reachable."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
