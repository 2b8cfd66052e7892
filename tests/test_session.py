"""
Tests for engine and session management.
"""

import pytest
from sqlalchemy import text
from sqlmodel import select

from devstudio.config import get_settings
from devstudio.database.models import User
from devstudio.database.session import (
    build_engine,
    build_session_maker,
    close_db,
    get_engine,
    get_session,
    get_session_maker,
)


def test_get_engine_requires_database_url():
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        get_engine()


@pytest.mark.asyncio
async def test_sqlite_foreign_keys_enabled(sqlite_url):
    engine = build_engine(sqlite_url)
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("PRAGMA foreign_keys"))
            assert result.scalar() == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pool_options_ignored_for_sqlite(sqlite_url):
    engine = build_engine(sqlite_url, pool_size=3, max_overflow=1)
    await engine.dispose()


@pytest.mark.asyncio
async def test_get_session_commits(engine):
    session_maker = build_session_maker(engine)

    async with get_session(session_maker) as session:
        session.add(User(username="ada", password="x"))

    async with session_maker() as session:
        result = await session.execute(select(User).where(User.username == "ada"))
        assert result.scalar_one_or_none() is not None


@pytest.mark.asyncio
async def test_get_session_rolls_back_on_error(engine):
    session_maker = build_session_maker(engine)

    with pytest.raises(ValueError):
        async with get_session(session_maker) as session:
            session.add(User(username="ada", password="x"))
            await session.flush()
            raise ValueError("boom")

    async with session_maker() as session:
        result = await session.execute(select(User))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_close_db_forgets_cached_engine(monkeypatch, sqlite_url):
    monkeypatch.setenv("DATABASE_URL", sqlite_url)
    get_settings.cache_clear()

    assert get_engine() is get_engine()
    assert get_session_maker() is get_session_maker()

    await close_db()

    assert get_engine.cache_info().currsize == 0
    assert get_session_maker.cache_info().currsize == 0
