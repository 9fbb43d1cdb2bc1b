"""Database schema and connection management for SQLite."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from orchestrator.config import DATABASE_PATH


def init_database() -> None:
    """
    Initialize database and create tables if they don't exist.
    """
    db_path = Path(DATABASE_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS file_records (
                file_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                original_name TEXT NOT NULL,
                declared_type TEXT,
                detected_type TEXT,
                size_bytes INTEGER NOT NULL,
                content_hash TEXT NOT NULL,
                final_hash TEXT NOT NULL,
                strategy TEXT NOT NULL,
                owner TEXT NOT NULL,
                access_level TEXT NOT NULL,
                download_count INTEGER NOT NULL DEFAULT 0,
                last_accessed_at TEXT,
                last_downloaded_by TEXT,
                description TEXT NOT NULL DEFAULT '',
                tags TEXT NOT NULL DEFAULT '[]',
                category TEXT NOT NULL DEFAULT 'general',
                primary_backend TEXT NOT NULL,
                placements TEXT NOT NULL,
                provenance TEXT NOT NULL,
                ledger_status TEXT NOT NULL,
                ledger_ref TEXT,
                ledger_attempts INTEGER NOT NULL DEFAULT 0,
                ledger_synced_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS file_versions (
                file_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                changed_at TEXT NOT NULL,
                changes TEXT NOT NULL,
                updated_by TEXT,
                previous_version INTEGER,
                PRIMARY KEY(file_id, version)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS share_grants (
                share_id TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                grantee_id TEXT NOT NULL,
                permissions TEXT NOT NULL,
                granted_by TEXT NOT NULL,
                granted_at TEXT NOT NULL,
                expires_at TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                revoked_at TEXT,
                revoked_by TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ledger_queue (
                entry_id TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                queued_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                last_error TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS dedup_index (
                owner TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                file_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (owner, content_hash)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS encryption_keys (
                key_ref TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                wrapped_key TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS orphaned_placements (
                orphan_id TEXT PRIMARY KEY,
                backend_name TEXT NOT NULL,
                object_key TEXT NOT NULL,
                file_id TEXT,
                recorded_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                UNIQUE(backend_name, object_key)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_owner ON file_records(owner)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_category ON file_records(category)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_created_at ON file_records(created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_shares_file_id ON share_grants(file_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_ledger_status ON ledger_queue(status, queued_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_orphans_file_id ON orphaned_placements(file_id)
        """)

        conn.commit()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database connections.
    """
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def connection_scope(conn: Optional[sqlite3.Connection] = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Reuse the caller's connection, or open one that commits on success and
    rolls back on error.
    """
    if conn is not None:
        yield conn
        return

    with get_db_connection() as own_conn:
        try:
            yield own_conn
            own_conn.commit()
        except Exception:
            own_conn.rollback()
            raise
