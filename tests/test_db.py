"""
Tests for database URL resolution and session helpers.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import inspect

from subledger.billing.subscriptions.entities import PlanTable
from subledger.db import (
    check_database_health,
    drop_all_tables_async,
    get_async_database_url,
    get_async_db,
    set_async_session_maker,
)
from subledger.settings import Environment, Settings

pytestmark = pytest.mark.integration


@pytest.fixture
def installed_session_maker(session_maker):
    set_async_session_maker(session_maker)
    yield session_maker
    set_async_session_maker(None)


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("postgresql://u:p@db/ledger", "postgresql+asyncpg://u:p@db/ledger"),
            ("sqlite:///./ledger.sqlite", "sqlite+aiosqlite:///./ledger.sqlite"),
            ("postgresql+asyncpg://u:p@db/ledger", "postgresql+asyncpg://u:p@db/ledger"),
        ],
    )
    def test_explicit_url_uses_async_driver(self, url, expected):
        custom = Settings(database=Settings.DatabaseSettings(url=url))

        with patch("subledger.db.settings", custom):
            assert get_async_database_url() == expected

    def test_development_without_password_uses_sqlite(self):
        custom = Settings(environment=Environment.DEVELOPMENT)

        with patch("subledger.db.settings", custom):
            assert get_async_database_url() == "sqlite+aiosqlite:///./subledger_dev.sqlite"

    def test_postgres_from_parts(self):
        custom = Settings(
            environment=Environment.PRODUCTION,
            database=Settings.DatabaseSettings(host="db", password="secret", database="ledger"),
        )

        with patch("subledger.db.settings", custom):
            assert get_async_database_url() == (
                "postgresql+asyncpg://subledger:secret@db:5432/ledger"
            )


class TestSessions:
    async def test_health_check(self, installed_session_maker):
        assert await check_database_health() is True

    async def test_session_rolls_back_on_error(self, installed_session_maker):
        with pytest.raises(RuntimeError):
            async with get_async_db() as session:
                session.add(PlanTable(plan_id="broken", name="Broken", base_price=Decimal("1")))
                await session.flush()
                raise RuntimeError("boom")

        async with installed_session_maker() as session:
            assert await session.get(PlanTable, "broken") is None

    async def test_session_commits_on_success(self, installed_session_maker):
        async with get_async_db() as session:
            session.add(PlanTable(plan_id="kept", name="Kept", base_price=Decimal("1")))

        async with installed_session_maker() as session:
            assert (await session.get(PlanTable, "kept")).name == "Kept"

    async def test_drop_all_tables(self, async_engine):
        await drop_all_tables_async(async_engine)

        async with async_engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert tables == []
