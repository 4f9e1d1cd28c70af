"""Async engine lifecycle and the SQL migration runner."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import AsyncIterator, Iterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from relaydesk.core.config import get_settings
from relaydesk.models import Base

logger = logging.getLogger(__name__)


def _find_migrations_dir() -> Path:
    for parent in Path(__file__).resolve().parents:
        candidate = parent / "migrations"
        if candidate.is_dir():
            return candidate
    raise RuntimeError("No 'migrations' directory found above the relaydesk package.")


MIGRATIONS_DIR = _find_migrations_dir()

_SCHEMA_MIGRATIONS_DDL = {
    "sqlite": """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT NOT NULL UNIQUE,
            applied_at TIMESTAMP NOT NULL DEFAULT (DATETIME('now'))
        )
    """,
    "mysql": """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id INTEGER PRIMARY KEY AUTO_INCREMENT,
            filename VARCHAR(255) NOT NULL UNIQUE,
            applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

_DIALECT_DIRECTIVE = re.compile(r"^--\s*dialect:\s*(?P<dialects>[a-z0-9_, ]*)$", re.IGNORECASE)
_QUOTES = frozenset("'\"`")


def _split_sql(sql: str) -> list[str]:
    """Split ``sql`` on semicolons that sit outside quoted literals."""

    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for char in sql:
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
            continue
        if char in _QUOTES:
            quote = char
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def _dialect_sections(raw_sql: str) -> Iterator[tuple[frozenset[str], str]]:
    """Yield ``(dialects, sql)`` blocks; an empty set means every dialect."""

    dialects: frozenset[str] = frozenset()
    lines: list[str] = []
    for line in raw_sql.splitlines():
        stripped = line.strip()
        directive = _DIALECT_DIRECTIVE.match(stripped)
        if directive:
            yield dialects, "\n".join(lines)
            dialects = frozenset(
                name.strip().lower()
                for name in directive.group("dialects").split(",")
                if name.strip()
            )
            lines = []
        elif not stripped.startswith("--"):
            lines.append(line)
    yield dialects, "\n".join(lines)


def _parse_statements(raw_sql: str, dialect_name: str) -> list[str]:
    """Split a migration file into statements for the active dialect.

    A ``-- dialect: sqlite, mysql`` line scopes the statements that follow it
    until the next directive; statements before any directive apply to all.
    """

    statements: list[str] = []
    for dialects, sql in _dialect_sections(raw_sql):
        if not dialects or dialect_name in dialects:
            statements.extend(_split_sql(sql))
    return statements


async def _pending_migrations(conn: AsyncConnection) -> list[Path]:
    ddl = _SCHEMA_MIGRATIONS_DDL.get(conn.dialect.name, _SCHEMA_MIGRATIONS_DDL["sqlite"])
    await conn.execute(text(ddl))
    result = await conn.execute(text("SELECT filename FROM schema_migrations"))
    applied = set(result.scalars().all())
    return [path for path in sorted(MIGRATIONS_DIR.glob("*.sql")) if path.name not in applied]


async def apply_migrations(engine: AsyncEngine) -> None:
    """Run every migration file not yet recorded in ``schema_migrations``."""

    async with engine.begin() as conn:
        for migration in await _pending_migrations(conn):
            for statement in _parse_statements(migration.read_text(), conn.dialect.name):
                await conn.execute(text(statement))
            await conn.execute(
                text("INSERT INTO schema_migrations (filename) VALUES (:filename)"),
                {"filename": migration.name},
            )
            logger.info("Applied migration %s.", migration.name)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await apply_migrations(engine)


class _EngineState:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None


_state = _EngineState()


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    factory = _state.session_factory
    if factory is not None:
        return factory
    async with _state.lock:
        if _state.session_factory is None:
            engine = create_async_engine(get_settings().resolved_database_url)
            await init_db(engine)
            _state.engine = engine
            _state.session_factory = async_sessionmaker(engine, expire_on_commit=False)
        return _state.session_factory


async def get_engine() -> AsyncEngine:
    await get_session_factory()
    engine = _state.engine
    if engine is None:
        raise RuntimeError("Database engine was disposed while starting up.")
    return engine


async def dispose_engine() -> None:
    engine = _state.engine
    _state.engine = None
    _state.session_factory = None
    if engine is not None:
        await engine.dispose()


async def get_session() -> AsyncIterator[AsyncSession]:
    factory = await get_session_factory()
    async with factory() as session:
        yield session
