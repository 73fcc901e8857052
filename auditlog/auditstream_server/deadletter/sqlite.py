"""
SQLite dead-letter store.

Durable record of events that exhausted their retries. The event payload is
encrypted with SecretCipher; everything an operator filters on (project,
destination, status, timestamps) stays queryable in clear.

Invariants:
    - add() is durable when it returns (autocommit, synchronous=NORMAL in WAL mode)
    - payload_ciphertext never holds clear text
    - failure_history_json holds DeliveryAttempt.to_dict() records

Table schema:
    dead_letters:
        - entry_id TEXT PRIMARY KEY
        - project_id TEXT
        - destination_id TEXT
        - event_id TEXT
        - sequence_number INTEGER
        - event_timestamp_ms INTEGER
        - payload_ciphertext TEXT
        - failure_history_json TEXT
        - final_failure_reason TEXT
        - status TEXT
        - replay_count INTEGER
        - created_at_ms INTEGER
        - updated_at_ms INTEGER
        - INDEX on (project_id, destination_id, created_at_ms)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..buffer.event_buffer import AuditEvent
from ..crypto import SecretCipher
from ..delivery.outcome import DeliveryAttempt
from .base import DeadLetterEntry, DeadLetterStatus

logger = logging.getLogger(__name__)


class SqliteDeadLetterStore:
    """SQLite implementation of DeadLetterStore."""

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        cipher: SecretCipher,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
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
            isolation_level=None,
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

                    CREATE TABLE IF NOT EXISTS dead_letters (
                        entry_id TEXT PRIMARY KEY,
                        project_id TEXT NOT NULL,
                        destination_id TEXT NOT NULL,
                        event_id TEXT NOT NULL,
                        sequence_number INTEGER,
                        event_timestamp_ms INTEGER NOT NULL,
                        payload_ciphertext TEXT NOT NULL,
                        failure_history_json TEXT NOT NULL DEFAULT '[]',
                        final_failure_reason TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        replay_count INTEGER NOT NULL DEFAULT 0,
                        created_at_ms INTEGER NOT NULL,
                        updated_at_ms INTEGER NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_dead_letters_project
                        ON dead_letters(project_id, destination_id, created_at_ms);
                    CREATE INDEX IF NOT EXISTS idx_dead_letters_status
                        ON dead_letters(status);

                    INSERT OR IGNORE INTO schema_version (version, applied_at)
                    VALUES (1, strftime('%s', 'now') * 1000);
                """)
            self._initialized = True
        logger.info("Initialized dead-letter store", extra={"db_path": str(self.db_path)})

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    def _row_to_entry(self, row: sqlite3.Row) -> DeadLetterEntry:
        payload = json.loads(self.cipher.decrypt(row["payload_ciphertext"]))
        event = AuditEvent(
            project_id=row["project_id"],
            payload=payload,
            sequence_number=row["sequence_number"],
            timestamp_ms=row["event_timestamp_ms"],
            event_id=row["event_id"],
        )
        return DeadLetterEntry(
            entry_id=row["entry_id"],
            project_id=row["project_id"],
            destination_id=row["destination_id"],
            event=event,
            failure_history=[
                DeliveryAttempt.from_dict(a) for a in json.loads(row["failure_history_json"])
            ],
            final_failure_reason=row["final_failure_reason"],
            status=DeadLetterStatus(row["status"]),
            replay_count=row["replay_count"],
            created_at_ms=row["created_at_ms"],
            updated_at_ms=row["updated_at_ms"],
        )

    @staticmethod
    def _history_json(entry: DeadLetterEntry) -> str:
        return json.dumps([a.to_dict() for a in entry.failure_history])

    async def add(self, entry: DeadLetterEntry) -> None:
        await self._ensure_initialized()
        ciphertext = self.cipher.encrypt(json.dumps(entry.event.payload))
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO dead_letters (entry_id, project_id, destination_id, event_id,
                                              sequence_number, event_timestamp_ms,
                                              payload_ciphertext, failure_history_json,
                                              final_failure_reason, status, replay_count,
                                              created_at_ms, updated_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.entry_id,
                        entry.project_id,
                        entry.destination_id,
                        entry.event.event_id,
                        entry.event.sequence_number,
                        entry.event.timestamp_ms,
                        ciphertext,
                        self._history_json(entry),
                        entry.final_failure_reason,
                        entry.status.value,
                        entry.replay_count,
                        entry.created_at_ms,
                        entry.updated_at_ms,
                    ),
                )

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM dead_letters WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    async def update(self, entry: DeadLetterEntry) -> None:
        await self._ensure_initialized()
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    UPDATE dead_letters
                    SET failure_history_json = ?, final_failure_reason = ?, status = ?,
                        replay_count = ?, updated_at_ms = ?
                    WHERE entry_id = ?
                    """,
                    (
                        self._history_json(entry),
                        entry.final_failure_reason,
                        entry.status.value,
                        entry.replay_count,
                        entry.updated_at_ms,
                        entry.entry_id,
                    ),
                )

    async def delete(self, entry_id: str) -> bool:
        await self._ensure_initialized()
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM dead_letters WHERE entry_id = ?", (entry_id,))
                return cursor.rowcount > 0

    async def list(
        self, project_id: str, destination_id: str | None = None
    ) -> list[DeadLetterEntry]:
        await self._ensure_initialized()
        query = "SELECT * FROM dead_letters WHERE project_id = ?"
        params: list[str] = [project_id]
        if destination_id is not None:
            query += " AND destination_id = ?"
            params.append(destination_id)
        query += " ORDER BY created_at_ms, entry_id"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def purge(self, project_id: str, destination_id: str | None = None) -> int:
        await self._ensure_initialized()
        query = "DELETE FROM dead_letters WHERE project_id = ?"
        params: list[str] = [project_id]
        if destination_id is not None:
            query += " AND destination_id = ?"
            params.append(destination_id)

        async with self._lock:
            with self._get_connection() as conn:
                return conn.execute(query, params).rowcount

    async def list_by_status(self, status: DeadLetterStatus) -> list[DeadLetterEntry]:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM dead_letters WHERE status = ? ORDER BY created_at_ms, entry_id",
                (status.value,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]
