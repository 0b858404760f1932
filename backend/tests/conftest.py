from __future__ import annotations

import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from circles.core.security import create_access_token
from circles.db.session import get_db
from circles.models.user import User

# Ensure Base + models are registered before create_all
from circles.db.base import Base
import circles.models  # noqa: F401


# ---------------------------------------------------------
# Database config
# ---------------------------------------------------------
@pytest.fixture()
def database_url_async(tmp_path) -> str:
    """
    TEST_DATABASE_URL (e.g. a postgresql+asyncpg URL) when set, otherwise a
    fresh SQLite file per test.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite+aiosqlite:///{tmp_path / 'circles_test.db'}"


# ---------------------------------------------------------
# Engine + schema lifecycle
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def engine(database_url_async: str):
    engine = create_async_engine(
        database_url_async,
        future=True,
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        # clean slate when pointed at a shared database
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())

    yield engine

    await engine.dispose()


@pytest.fixture()
def sessionmaker(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture()
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------
# FastAPI app + dependency override
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker):
    from circles.main import app as fastapi_app

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------
# Factories
# ---------------------------------------------------------
@pytest.fixture()
def make_user(db):
    """
    Create a committed user and return its id.

    Ids (not ORM objects) are handed out because lifecycle calls roll the
    shared session back on failure, which expires loaded instances.
    """

    async def _make(email: str | None = None) -> uuid.UUID:
        user = User(
            email=User.normalize_email(email or f"user-{uuid.uuid4().hex[:10]}@example.com"),
            is_active=True,
        )
        db.add(user)
        await db.commit()
        return user.id

    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user_id: uuid.UUID) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers
