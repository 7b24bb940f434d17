"""
SQLite database for documents, pages, versions, tags and jobs.

This module owns the schema and hands out transactional scopes. Every store
in the package is a thin repository bound to one connection obtained from
``Database.transaction()``, so a group of store calls either commits together
or rolls back together.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/arcsync.db")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        current_version_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pages (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        document_id TEXT REFERENCES documents(id) ON DELETE SET NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        current_version_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS versions (
        id TEXT PRIMARY KEY,
        owner_kind TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        version_number INTEGER NOT NULL,
        message TEXT,
        content_reference TEXT,
        ocr_data TEXT,
        ocr_text_normalized TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (owner_kind, owner_id, version_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_tags (
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        PRIMARY KEY (document_id, tag_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        associated_entity_id TEXT NOT NULL,
        parameters TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        error_message TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pages_document ON pages(document_id, sort_order)",
    "CREATE INDEX IF NOT EXISTS idx_pages_user ON pages(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id, updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_versions_owner ON versions(owner_kind, owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_submitted_at ON jobs(submitted_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


class Database:
    """
    SQLite database with one connection per transactional scope.

    Write serialization is delegated to SQLite: every scope starts with
    ``BEGIN IMMEDIATE``, which takes the database write lock up front, so
    read-then-write sequences (version number allocation, order validation)
    cannot interleave with another writer.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Open a transactional scope.

        Commits when the block exits normally; rolls back and re-raises on
        any exception so partial writes are never observable.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Database ready at %s", self.db_path)
