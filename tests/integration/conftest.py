from __future__ import annotations

import os
from urllib.parse import urlsplit

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rewards.db import models  # noqa: F401
from rewards.db.base import Base
from rewards.db.session import build_engine, build_session_factory

if os.getenv("RUN_INTEGRATION_TESTS") != "1":
    pytest.skip("Integration tests are disabled (set RUN_INTEGRATION_TESTS=1)", allow_module_level=True)


def _test_database_url() -> str:
    db_url = (os.getenv("TEST_DATABASE_URL") or "").strip()
    if not db_url:
        pytest.skip("No TEST_DATABASE_URL set")

    db_name = urlsplit(db_url).path.lstrip("/").lower()
    if "test" not in db_name:
        pytest.exit(
            "Refusing to run integration tests: TEST_DATABASE_URL must point to a dedicated test database",
            returncode=2,
        )
    return db_url


@pytest_asyncio.fixture
async def integration_engine() -> AsyncEngine:
    engine = build_engine(_test_database_url())
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:  # pragma: no cover
        await engine.dispose()
        pytest.skip(f"Integration database is unavailable: {exc}")

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(integration_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(integration_engine)
