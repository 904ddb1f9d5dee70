"""Async SQLAlchemy engine and session factory.

Only used when METADATA_STORE_TYPE=database. The default flat JSON snapshot
needs none of this.

Usage:
    engine = build_engine(settings.DATABASE_URL)
    await create_tables(engine)
    repo = SqlRecordRepository(build_session_factory(engine))
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from docvault.models import Base


def build_engine(url: str) -> AsyncEngine:
    kwargs = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20)
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
