"""Database layer for the executor.

Supports two backends:
- PostgreSQL (production, set PIPELINE_DATABASE_URL env var)
- SQLite (local development and tests, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite).
No ORM. Both backends understand INSERT ... ON CONFLICT, which the
result store relies on for idempotent writes.

Thread-safety: Postgres uses a ThreadedConnectionPool for connection reuse.
SQLite uses per-call connections with check_same_thread=False.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty/sqlite for SQLite
DATABASE_URL = os.environ.get("PIPELINE_DATABASE_URL", "")

SQLITE_PATH = Path(
    os.environ.get("PIPELINE_SQLITE_PATH", str(Path(__file__).parent / "pipeline.db"))
)

_initialized = False
_pg_pool = None


def _is_postgres() -> bool:
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-10 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(str(SQLITE_PATH), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any, default: Any = None) -> Any:
    """Deserialize JSON string from storage."""
    if text is None or text == "":
        return {} if default is None else default
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a SQL statement.

    Args:
        sql: SQL statement (use %s placeholders; adapted for SQLite)
        params: Parameters tuple
        fetch: "none", "one", "all", or "rowcount"

    Returns:
        None for "none", dict for "one", list[dict] for "all",
        int for "rowcount"
    """
    adapted_sql = sql if _is_postgres() else sql.replace("%s", "?")

    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(adapted_sql, params)

        if fetch == "none":
            conn.commit()
            return None
        elif fetch == "rowcount":
            count = cursor.rowcount
            conn.commit()
            return count
        elif fetch == "one":
            row = cursor.fetchone()
            if row is None:
                return None
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return dict(zip(columns, row))
            return dict(row)
        elif fetch == "all":
            rows = cursor.fetchall()
            if _is_postgres():
                columns = [desc[0] for desc in cursor.description]
                return [dict(zip(columns, row)) for row in rows]
            return [dict(row) for row in rows]

        raise ValueError(f"Unknown fetch mode: {fetch}")


def init_db(force: bool = False):
    """Create tables if they don't exist."""
    global _initialized
    if _initialized and not force:
        return

    if _is_postgres():
        _init_postgres()
    else:
        _init_sqlite()

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Pipeline database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS pipeline_jobs (
        job_id VARCHAR(100) PRIMARY KEY,
        pipeline_id VARCHAR(100) NOT NULL DEFAULT '',
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        stages JSONB NOT NULL DEFAULT '[]',
        image_refs JSONB NOT NULL DEFAULT '[]',
        total_images INTEGER DEFAULT 0,
        processed_images INTEGER DEFAULT 0,
        error_message TEXT,
        results_summary JSONB,
        created_at TIMESTAMP DEFAULT NOW(),
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        updated_at TIMESTAMP DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS processing_results (
        id SERIAL PRIMARY KEY,
        job_id VARCHAR(100) NOT NULL REFERENCES pipeline_jobs(job_id),
        stage_id VARCHAR(100) NOT NULL,
        stage_order INTEGER NOT NULL,
        image_id VARCHAR(100) NOT NULL,
        response TEXT DEFAULT '',
        success BOOLEAN NOT NULL,
        error TEXT,
        metadata JSONB DEFAULT '{}',
        duration_ms INTEGER DEFAULT 0,
        executed_at TIMESTAMP DEFAULT NOW(),
        UNIQUE(job_id, stage_id, image_id)
    );

    CREATE INDEX IF NOT EXISTS idx_processing_results_job
        ON processing_results(job_id, stage_order);

    CREATE TABLE IF NOT EXISTS stage_progress (
        id SERIAL PRIMARY KEY,
        job_id VARCHAR(100) NOT NULL REFERENCES pipeline_jobs(job_id),
        stage_id VARCHAR(100) NOT NULL,
        stage_order INTEGER NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        images_total INTEGER DEFAULT 0,
        images_processed INTEGER DEFAULT 0,
        progress_percent INTEGER DEFAULT 0,
        error_count INTEGER DEFAULT 0,
        last_error TEXT,
        failed_images JSONB DEFAULT '[]',
        execution_time_ms INTEGER,
        metadata JSONB DEFAULT '{}',
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        updated_at TIMESTAMP DEFAULT NOW(),
        UNIQUE(job_id, stage_order),
        CHECK (progress_percent >= 0 AND progress_percent <= 100)
    );

    CREATE TABLE IF NOT EXISTS stage_progress_history (
        id SERIAL PRIMARY KEY,
        job_id VARCHAR(100) NOT NULL,
        stage_order INTEGER NOT NULL,
        status VARCHAR(20) NOT NULL,
        images_processed INTEGER DEFAULT 0,
        progress_percent INTEGER DEFAULT 0,
        error_count INTEGER DEFAULT 0,
        execution_time_ms INTEGER,
        last_error TEXT,
        timestamp TIMESTAMP DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_stage_progress_history_job
        ON stage_progress_history(job_id, stage_order, timestamp);

    CREATE TABLE IF NOT EXISTS stage_errors (
        id SERIAL PRIMARY KEY,
        job_id VARCHAR(100) NOT NULL,
        stage_order INTEGER NOT NULL,
        image_id VARCHAR(100),
        error_message TEXT NOT NULL,
        error_type VARCHAR(50) DEFAULT 'unknown',
        error_code VARCHAR(50) DEFAULT 'UNKNOWN_ERROR',
        prompt_id VARCHAR(100),
        execution_time_ms INTEGER,
        metadata JSONB DEFAULT '{}',
        occurred_at TIMESTAMP DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_stage_errors_job
        ON stage_errors(job_id, stage_order);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS pipeline_jobs (
        job_id TEXT PRIMARY KEY,
        pipeline_id TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending',
        stages TEXT NOT NULL DEFAULT '[]',
        image_refs TEXT NOT NULL DEFAULT '[]',
        total_images INTEGER DEFAULT 0,
        processed_images INTEGER DEFAULT 0,
        error_message TEXT,
        results_summary TEXT,
        created_at TEXT,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS processing_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL REFERENCES pipeline_jobs(job_id),
        stage_id TEXT NOT NULL,
        stage_order INTEGER NOT NULL,
        image_id TEXT NOT NULL,
        response TEXT DEFAULT '',
        success INTEGER NOT NULL,
        error TEXT,
        metadata TEXT DEFAULT '{}',
        duration_ms INTEGER DEFAULT 0,
        executed_at TEXT,
        UNIQUE(job_id, stage_id, image_id)
    );

    CREATE INDEX IF NOT EXISTS idx_processing_results_job
        ON processing_results(job_id, stage_order);

    CREATE TABLE IF NOT EXISTS stage_progress (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL REFERENCES pipeline_jobs(job_id),
        stage_id TEXT NOT NULL,
        stage_order INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        images_total INTEGER DEFAULT 0,
        images_processed INTEGER DEFAULT 0,
        progress_percent INTEGER DEFAULT 0,
        error_count INTEGER DEFAULT 0,
        last_error TEXT,
        failed_images TEXT DEFAULT '[]',
        execution_time_ms INTEGER,
        metadata TEXT DEFAULT '{}',
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT,
        UNIQUE(job_id, stage_order)
    );

    CREATE TABLE IF NOT EXISTS stage_progress_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        stage_order INTEGER NOT NULL,
        status TEXT NOT NULL,
        images_processed INTEGER DEFAULT 0,
        progress_percent INTEGER DEFAULT 0,
        error_count INTEGER DEFAULT 0,
        execution_time_ms INTEGER,
        last_error TEXT,
        timestamp TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_stage_progress_history_job
        ON stage_progress_history(job_id, stage_order, timestamp);

    CREATE TABLE IF NOT EXISTS stage_errors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        stage_order INTEGER NOT NULL,
        image_id TEXT,
        error_message TEXT NOT NULL,
        error_type TEXT DEFAULT 'unknown',
        error_code TEXT DEFAULT 'UNKNOWN_ERROR',
        prompt_id TEXT,
        execution_time_ms INTEGER,
        metadata TEXT DEFAULT '{}',
        occurred_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_stage_errors_job
        ON stage_errors(job_id, stage_order);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
