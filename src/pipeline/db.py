"""Database layer for the SQL chunk store.

Supports two backends:
- PostgreSQL (production, set PIPELINE_DATABASE_URL env var)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite). No ORM.

Thread-safety: Postgres uses a ThreadedConnectionPool for connection reuse.
SQLite uses per-call connections with check_same_thread=False. Each Database
instance owns its connection settings, so tests can point one at a temp file.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("PIPELINE_DATABASE_URL", "")

# SQLite default path
SQLITE_PATH = Path(__file__).parent / "pipeline.db"


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


class Database:
    """Connection settings plus the execute() helper for one database."""

    def __init__(self, url: Optional[str] = None, sqlite_path: Optional[Path] = None):
        self.url = DATABASE_URL if url is None else url
        self.sqlite_path = Path(sqlite_path) if sqlite_path else SQLITE_PATH
        self._pg_pool = None
        self._initialized = False

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgres")

    def _get_pg_pool(self):
        """Get or create the Postgres connection pool (lazy)."""
        if self._pg_pool is None:
            import psycopg2.pool
            self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=5,
                dsn=self.url,
            )
            logger.info("PostgreSQL connection pool initialized (1-5 connections)")
        return self._pg_pool

    @contextmanager
    def get_connection(self):
        """Get a database connection (Postgres or SQLite).

        Usage:
            with db.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(...)
                conn.commit()
        """
        if self.is_postgres:
            pool = self._get_pg_pool()
            conn = pool.getconn()
            try:
                yield conn
            finally:
                pool.putconn(conn)
        else:
            conn = sqlite3.connect(str(self.sqlite_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            try:
                yield conn
            finally:
                conn.close()

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Execute a SQL statement.

        Args:
            sql: SQL statement (use %s placeholders; adapted to ? for SQLite)
            params: Parameters tuple
            fetch: "none", "one", "all", or "rowcount"

        Returns:
            None for "none", dict for "one", list[dict] for "all",
            int for "rowcount"
        """
        adapted_sql = sql if self.is_postgres else sql.replace("%s", "?")

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(adapted_sql, params)

            if fetch == "none":
                conn.commit()
                return None
            elif fetch == "rowcount":
                conn.commit()
                return cursor.rowcount
            elif fetch == "one":
                row = cursor.fetchone()
                if row is None:
                    return None
                if self.is_postgres:
                    columns = [desc[0] for desc in cursor.description]
                    return dict(zip(columns, row))
                return dict(row)
            elif fetch == "all":
                rows = cursor.fetchall()
                if self.is_postgres:
                    columns = [desc[0] for desc in cursor.description]
                    return [dict(zip(columns, row)) for row in rows]
                return [dict(row) for row in rows]

            conn.commit()
            return None

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        if self._initialized:
            return

        if self.is_postgres:
            self._init_postgres()
        else:
            self._init_sqlite()

        self._initialized = True
        backend = "PostgreSQL" if self.is_postgres else f"SQLite ({self.sqlite_path})"
        logger.info(f"Pipeline database initialized: {backend}")

    def close(self) -> None:
        """Release pooled connections."""
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None

    def _init_postgres(self) -> None:
        """Create Postgres tables."""
        ddl = """
        CREATE TABLE IF NOT EXISTS generation_pipelines (
            id VARCHAR(100) PRIMARY KEY,
            project_id VARCHAR(100) NOT NULL,
            name VARCHAR(500) NOT NULL,
            description TEXT DEFAULT '',
            original_prompt TEXT DEFAULT '',
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            total_chunks INTEGER DEFAULT 0,
            completed_chunks INTEGER DEFAULT 0,
            failed_chunks INTEGER DEFAULT 0,
            current_chunk_id VARCHAR(100),
            config JSONB DEFAULT '{}',
            stats JSONB DEFAULT '{}',
            created_at BIGINT NOT NULL,
            updated_at BIGINT NOT NULL,
            started_at BIGINT,
            completed_at BIGINT
        );

        CREATE INDEX IF NOT EXISTS idx_generation_pipelines_project
            ON generation_pipelines(project_id);

        CREATE TABLE IF NOT EXISTS generation_chunks (
            id VARCHAR(100) PRIMARY KEY,
            seq SERIAL,
            pipeline_id VARCHAR(100),
            project_id VARCHAR(100) NOT NULL,
            parent_chunk_id VARCHAR(100),
            chunk_key VARCHAR(200),
            type VARCHAR(30) NOT NULL,
            title VARCHAR(500) NOT NULL,
            description TEXT DEFAULT '',
            prompt TEXT DEFAULT '',
            target_files JSONB DEFAULT '[]',
            dependencies JSONB DEFAULT '[]',
            context_files JSONB DEFAULT '[]',
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            priority INTEGER DEFAULT 0,
            estimated_tokens INTEGER DEFAULT 0,
            actual_tokens INTEGER,
            output TEXT,
            retry_count INTEGER DEFAULT 0,
            max_retries INTEGER DEFAULT 3,
            result JSONB DEFAULT '{}',
            created_at BIGINT NOT NULL,
            started_at BIGINT,
            completed_at BIGINT
        );

        CREATE INDEX IF NOT EXISTS idx_generation_chunks_pipeline
            ON generation_chunks(pipeline_id, status);
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(ddl)
            conn.commit()

    def _init_sqlite(self) -> None:
        """Create SQLite tables."""
        ddl = """
        CREATE TABLE IF NOT EXISTS generation_pipelines (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            original_prompt TEXT DEFAULT '',
            status TEXT NOT NULL DEFAULT 'pending',
            total_chunks INTEGER DEFAULT 0,
            completed_chunks INTEGER DEFAULT 0,
            failed_chunks INTEGER DEFAULT 0,
            current_chunk_id TEXT,
            config TEXT DEFAULT '{}',
            stats TEXT DEFAULT '{}',
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            started_at INTEGER,
            completed_at INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_generation_pipelines_project
            ON generation_pipelines(project_id);

        CREATE TABLE IF NOT EXISTS generation_chunks (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            pipeline_id TEXT,
            project_id TEXT NOT NULL,
            parent_chunk_id TEXT,
            chunk_key TEXT,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT DEFAULT '',
            prompt TEXT DEFAULT '',
            target_files TEXT DEFAULT '[]',
            dependencies TEXT DEFAULT '[]',
            context_files TEXT DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'pending',
            priority INTEGER DEFAULT 0,
            estimated_tokens INTEGER DEFAULT 0,
            actual_tokens INTEGER,
            output TEXT,
            retry_count INTEGER DEFAULT 0,
            max_retries INTEGER DEFAULT 3,
            result TEXT DEFAULT '{}',
            created_at INTEGER NOT NULL,
            started_at INTEGER,
            completed_at INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_generation_chunks_pipeline
            ON generation_chunks(pipeline_id, status);
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.executescript(ddl)
            conn.commit()
