from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rewards.config import settings


def build_engine(database_url: str | None = None) -> AsyncEngine:
    return create_async_engine(
        database_url or settings.database_url,
        pool_pre_ping=True,
        pool_size=max(settings.database_pool_size, 1),
        max_overflow=max(settings.database_max_overflow, 0),
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
SessionFactory = build_session_factory(engine)


async def ping_database() -> str:
    async with engine.connect() as connection:
        version = await connection.scalar(text("SHOW server_version"))
    return str(version)


async def dispose_database() -> None:
    await engine.dispose()
