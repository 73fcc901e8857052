"""
SQLite store for stream destinations.

This module persists the stream configuration records created through the
configuration API. Bearer tokens are encrypted with SecretCipher before they
reach the database file.

Invariants:
    - One row per destination id
    - token_ciphertext is NULL when the destination has no token
    - Writes are serialized by an asyncio lock; reads open their own connection

How to change safely:
    - Schema migrations must be backward compatible
    - Never store token plaintext, even temporarily

Table schema:
    stream_destinations:
        - id TEXT PRIMARY KEY
        - project_id TEXT
        - url TEXT
        - token_ciphertext TEXT NULL
        - enabled INTEGER (0/1)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - INDEX on (project_id, created_at)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..crypto import SecretCipher
from .base import sort_destinations
from .models import StreamDestination

logger = logging.getLogger(__name__)


class SqliteDestinationStore:
    """SQLite implementation of DestinationStore.

    Example:
        >>> store = SqliteDestinationStore("/var/lib/auditstream/streams.db", cipher)
        >>> await store.initialize()
        >>> await store.put(destination)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        cipher: SecretCipher,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            cipher: Cipher used for tokens at rest
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.cipher = cipher
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at INTEGER NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS stream_destinations (
                        id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        url TEXT NOT NULL,
                        token_ciphertext TEXT,
                        enabled INTEGER NOT NULL DEFAULT 1,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_destinations_project
                        ON stream_destinations(project_id, created_at);

                    INSERT OR IGNORE INTO schema_version (version, applied_at)
                    VALUES (1, strftime('%s', 'now') * 1000);
                """)
            self._initialized = True
        logger.info("Initialized stream destination store", extra={"db_path": str(self.db_path)})

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    def _row_to_destination(self, row: sqlite3.Row) -> StreamDestination:
        ciphertext = row["token_ciphertext"]
        return StreamDestination(
            id=row["id"],
            project_id=row["project_id"],
            url=row["url"],
            token=self.cipher.decrypt(ciphertext) if ciphertext is not None else None,
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, destination_id: str) -> StreamDestination | None:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM stream_destinations WHERE id = ?",
                (destination_id,),
            ).fetchone()
        return self._row_to_destination(row) if row else None

    async def put(self, destination: StreamDestination) -> None:
        await self._ensure_initialized()
        ciphertext = (
            self.cipher.encrypt(destination.token) if destination.token is not None else None
        )
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO stream_destinations (id, project_id, url, token_ciphertext,
                                                     enabled, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        project_id = excluded.project_id,
                        url = excluded.url,
                        token_ciphertext = excluded.token_ciphertext,
                        enabled = excluded.enabled,
                        updated_at = excluded.updated_at
                    """,
                    (
                        destination.id,
                        destination.project_id,
                        destination.url,
                        ciphertext,
                        int(destination.enabled),
                        destination.created_at,
                        destination.updated_at,
                    ),
                )

    async def delete(self, destination_id: str) -> bool:
        await self._ensure_initialized()
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM stream_destinations WHERE id = ?",
                    (destination_id,),
                )
                return cursor.rowcount > 0

    async def list_for_project(self, project_id: str) -> list[StreamDestination]:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM stream_destinations WHERE project_id = ? "
                "ORDER BY created_at, id",
                (project_id,),
            ).fetchall()
        return sort_destinations([self._row_to_destination(row) for row in rows])
