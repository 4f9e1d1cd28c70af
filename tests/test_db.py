from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from relaydesk.core.config import get_settings
from relaydesk.core.db import (
    MIGRATIONS_DIR,
    _parse_statements,
    apply_migrations,
    dispose_engine,
    get_engine,
)


@pytest.fixture(autouse=True)
def migrations_db(tmp_path, monkeypatch):
    db_path = tmp_path / "migrations.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    get_settings.cache_clear()
    yield
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


def test_dialect_directives_scope_statements():
    raw = """
    CREATE TABLE shared (id INTEGER);
    -- dialect: sqlite
    CREATE INDEX IF NOT EXISTS ix_a ON shared (id);
    -- dialect: mysql
    CREATE INDEX ix_a ON shared (id);
    """
    assert _parse_statements(raw, "sqlite") == [
        "CREATE TABLE shared (id INTEGER)",
        "CREATE INDEX IF NOT EXISTS ix_a ON shared (id)",
    ]
    assert _parse_statements(raw, "mysql")[-1] == "CREATE INDEX ix_a ON shared (id)"


@pytest.mark.asyncio
async def test_migrations_apply_once():
    engine = await get_engine()
    await apply_migrations(engine)

    async with engine.connect() as conn:
        applied = (await conn.execute(text("SELECT filename FROM schema_migrations"))).scalars().all()
        seeded = (
            await conn.execute(
                text("SELECT COUNT(*) FROM system_settings WHERE setting_key = 'webhook_base_url'")
            )
        ).scalar_one()

    assert sorted(applied) == ["001_seed_webhook_settings.sql", "002_lookup_indexes.sql"]
    assert seeded == 1


def test_semicolons_inside_quotes_do_not_split_statements():
    raw = """
    INSERT INTO notes (body, author) VALUES ('first; second', "a;b");
    INSERT INTO notes (body) VALUES ('it''s; fine');
    """
    assert _parse_statements(raw, "sqlite") == [
        "INSERT INTO notes (body, author) VALUES ('first; second', \"a;b\")",
        "INSERT INTO notes (body) VALUES ('it''s; fine')",
    ]


def test_seed_migration_parses_into_one_insert():
    raw = (MIGRATIONS_DIR / "001_seed_webhook_settings.sql").read_text()
    statements = _parse_statements(raw, "sqlite")
    assert len(statements) == 1
    assert statements[0].startswith("INSERT INTO system_settings")
    assert statements[0].endswith("'string')")
