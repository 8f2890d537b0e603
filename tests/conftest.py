"""
Shared fixtures: a throwaway SQLite database per test, a seeded user and
client, and an HTTP client against the app with auth and sessions overridden.
"""

import os

# Must be set before insighthub.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from insighthub.database import Base
from insighthub.models import Client, User
from insighthub.services.auth_service import hash_password


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db):
    user = User(
        email="analyst@agency.test",
        password_hash=hash_password("correct-horse"),
        name="Analyst",
        role="admin",
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def client_row(db, user):
    client = Client(user_id=user.id, name="Acme Coffee", website="https://acme.test")
    db.add(client)
    await db.commit()
    return client


@pytest.fixture
async def api(session_factory, user):
    """AsyncClient for the app, signed in as ``user``."""
    from insighthub.auth import get_current_user
    from insighthub.database import get_db
    from insighthub.main import app
    from insighthub.routers.chat import get_session_factory

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
