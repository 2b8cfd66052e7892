"""
Pytest configuration and fixtures for DevStudio tests.

Database tests run against a SQLite file through aiosqlite; the storage
fixture is parametrised so every storage test runs against both backends.
"""

import pytest
import pytest_asyncio

from devstudio.config import get_settings
from devstudio.database.session import build_engine, get_engine, get_session_maker, init_db
from devstudio.database.storage import DatabaseStorage, MemStorage


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep a developer's DATABASE_URL and cached settings out of the tests."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_maker.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_maker.cache_clear()


@pytest.fixture
def sqlite_path(tmp_path):
    return tmp_path / "devstudio.db"


@pytest.fixture
def sqlite_url(sqlite_path):
    return f"sqlite+aiosqlite:///{sqlite_path}"


@pytest_asyncio.fixture
async def engine(sqlite_url):
    """Async engine with all tables created."""
    engine = build_engine(sqlite_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(params=["database", "memory"])
async def storage(request, engine):
    """Each storage test runs once per backend."""
    if request.param == "database":
        yield DatabaseStorage(engine)
    else:
        yield MemStorage()


@pytest_asyncio.fixture
async def user(storage):
    return await storage.create_user({"username": "ada", "password": "opaque-hash"})


@pytest_asyncio.fixture
async def project(storage, user):
    return await storage.create_project(
        {
            "name": "Chat UI",
            "user_id": user.id,
            "type": "local",
            "path": "/workspace/chat-ui",
        }
    )
