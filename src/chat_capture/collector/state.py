"""Dedup index of persisted messages with SQLite persistence."""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Self


class DedupIndex:
    """Tracks which dedup keys have already been persisted.

    The connection is shared by the HTTP handler threads, the drain thread
    and direct calls, so every statement runs under an internal lock. The
    check-then-append sequence across index and journal is serialized by the
    collector, not here.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the index.

        Args:
            db_path: Path to SQLite database file, or ":memory:". Parent
                     directories are created if they don't exist.
        """
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the seen_messages table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS seen_messages (
                    dedup_key TEXT PRIMARY KEY,
                    service_id TEXT NOT NULL,
                    first_seen INTEGER NOT NULL
                )
            """)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_seen_service ON seen_messages(service_id)"
            )
            self._conn.commit()

    def contains(self, dedup_key: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT 1 FROM seen_messages WHERE dedup_key = ?",
                (dedup_key,),
            )
            return cursor.fetchone() is not None

    def mark_seen(self, dedup_key: str, service_id: str) -> bool:
        """Record a key.

        Returns:
            True if the key is new, False if it was already recorded
        """
        return self.mark_batch([dedup_key], service_id)[0]

    def mark_batch(self, dedup_keys: list[str], service_id: str) -> list[bool]:
        """Record several keys in one transaction.

        If any insert fails the whole transaction is rolled back, so a batch
        is either fully recorded or not at all.

        Returns:
            One flag per key, True where the key was new

        Raises:
            sqlite3.Error: If the database rejects the update
        """
        first_seen = int(time.time())
        with self._lock:
            try:
                fresh = []
                for dedup_key in dedup_keys:
                    cursor = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO seen_messages (dedup_key, service_id, first_seen)
                        VALUES (?, ?, ?)
                        """,
                        (dedup_key, service_id, first_seen),
                    )
                    fresh.append(cursor.rowcount == 1)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return fresh

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM seen_messages").fetchone()
            return row["n"]

    def counts_by_service(self) -> dict[str, int]:
        """Number of persisted keys per service."""
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT service_id, COUNT(*) AS n
                FROM seen_messages
                GROUP BY service_id
                ORDER BY service_id
                """
            )
            return {row["service_id"]: row["n"] for row in cursor}

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
