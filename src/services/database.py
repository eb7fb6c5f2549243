import aiosqlite
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional
import logging
import os

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    def __init__(self, path: str):
        self.path = path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path, timeout=30)
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Run a write statement and return the affected row count."""
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: tuple = ()) -> int:
        """Run an INSERT and return the new row id."""
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def executemany(self, query: str, rows: Iterable[tuple]) -> int:
        """Run a batch in a single transaction and return the affected row count."""
        async with self.connect() as conn:
            try:
                cursor = await conn.executemany(query, list(rows))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
            return cursor.rowcount

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def init_tables(self) -> None:
        """Initialize database tables for workspaces, workflows, runs and processed posts."""
        db_dir = os.path.dirname(self.path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

        async with self.connect() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workspaces (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    audience TEXT NOT NULL DEFAULT '',
                    brand_voice TEXT NOT NULL DEFAULT '',
                    domain TEXT NOT NULL DEFAULT '',
                    keywords TEXT NOT NULL DEFAULT '[]',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workspace_credentials (
                    workspace_id INTEGER PRIMARY KEY,
                    source TEXT NOT NULL DEFAULT 'reddit',
                    refresh_token TEXT NOT NULL,
                    account_name TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_definitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workspace_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    stages TEXT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT 1,
                    last_run_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE,
                    UNIQUE(workspace_id, name)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workspace_id INTEGER NOT NULL,
                    definition_id INTEGER,
                    status TEXT NOT NULL CHECK (status IN ('running', 'completed', 'failed')),
                    dry_run BOOLEAN NOT NULL DEFAULT 0,
                    definition_snapshot TEXT NOT NULL,
                    result_summary TEXT,
                    error_message TEXT,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE,
                    FOREIGN KEY (definition_id) REFERENCES workflow_definitions(id) ON DELETE SET NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_posts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workspace_id INTEGER NOT NULL,
                    post_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    post_title TEXT NOT NULL,
                    post_url TEXT NOT NULL,
                    evaluation_score REAL,
                    was_approved BOOLEAN NOT NULL DEFAULT 0,
                    evaluation_reasoning TEXT,
                    reply_content TEXT,
                    reply_posted BOOLEAN NOT NULL DEFAULT 0,
                    reply_posted_at TIMESTAMP,
                    dry_run BOOLEAN NOT NULL DEFAULT 0,
                    definition_id INTEGER,
                    run_id INTEGER NOT NULL,
                    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE,
                    FOREIGN KEY (run_id) REFERENCES workflow_runs(id) ON DELETE CASCADE,
                    UNIQUE(workspace_id, post_id)
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_workflow_runs_definition
                ON workflow_runs(definition_id, started_at)
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_processed_posts_run ON processed_posts(run_id)
            """)
            await conn.commit()
            logger.info("Database tables initialized")
