from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import StorePermissionError

logger = logging.getLogger(__name__)

STATS_TABLES = ("lifetime_stats", "monthly_stats")

LAST_RESET_KEY = "lastReset"
LAST_MONTHLY_RESET_KEY = "lastMonthlyReset"


def _check_stats_table(table: str) -> str:
    if table not in STATS_TABLES:
        raise ValueError(f"Unknown stats table: {table}")
    return table


class LeaderboardStore:
    """
    SQLite store for daily logs, running totals and reset markers.

    Connections are opened per call. Writes that touch more than one table go
    through ``transaction()`` so the weekly, monthly and lifetime views move
    together.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._ensure_writable()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_writable(self) -> None:
        db_dir = self.db_path.parent
        os.makedirs(db_dir, exist_ok=True)
        if not os.access(db_dir, os.W_OK):
            raise StorePermissionError(
                f"Database directory {db_dir} is not writable. Please run: chmod -R 755 {db_dir}"
            )
        if self.db_path.exists():
            if not os.access(self.db_path, os.W_OK):
                raise StorePermissionError(
                    f"Database file {self.db_path} is not writable. Please run: chmod 664 {self.db_path}"
                )
            logger.info("Database file is writable")

    def initialize(self, last_reset_ms: int, month_key: str) -> None:
        """Create or migrate the schema and seed missing reset markers."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
        finally:
            conn.close()

        # One write transaction, so concurrent starts see either the old
        # schema or the fully migrated one.
        with self.transaction() as conn:
            self._migrate_logs(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    calories INTEGER NOT NULL,
                    proof TEXT,
                    date TEXT NOT NULL,
                    timestamp INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            for table in STATS_TABLES:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        name TEXT PRIMARY KEY,
                        total_calories INTEGER NOT NULL DEFAULT 0,
                        entries_count INTEGER NOT NULL DEFAULT 0
                    );
                    """
                )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
                """
            )
            conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES (?, ?)",
                (LAST_RESET_KEY, str(last_reset_ms)),
            )
            conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES (?, ?)",
                (LAST_MONTHLY_RESET_KEY, month_key),
            )
        logger.info("Database location: %s", self.db_path)

    def _migrate_logs(self, conn: sqlite3.Connection) -> None:
        # Runs with the write lock held; the column check happens under it.
        columns = conn.execute("PRAGMA table_info(logs)").fetchall()
        if not columns or any(col["name"] == "timestamp" for col in columns):
            return
        logger.info("Migrating database: adding timestamp column...")
        conn.execute("ALTER TABLE logs ADD COLUMN timestamp INTEGER NOT NULL DEFAULT 0")
        backfilled = self._backfill_timestamps(conn)
        logger.info("Migration complete: timestamp column added (%s rows backfilled)", backfilled)

    def _backfill_timestamps(self, conn: sqlite3.Connection) -> int:
        # Dates SQLite cannot parse keep timestamp 0.
        cursor = conn.execute(
            "UPDATE logs SET timestamp = CAST(strftime('%s', date) AS INTEGER) * 1000 "
            "WHERE timestamp = 0 AND strftime('%s', date) IS NOT NULL"
        )
        return cursor.rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Read-only connection; all reads inside see one snapshot."""
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("ROLLBACK")
        finally:
            conn.close()

    # Meta
    def get_meta(self, conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            """
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )

    # Logs
    def find_log_for_day(self, conn: sqlite3.Connection, name: str, day: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT id, name, calories FROM logs WHERE name = ? COLLATE NOCASE AND date = ? ORDER BY id DESC",
            (name, day),
        ).fetchone()

    def insert_log(
        self,
        conn: sqlite3.Connection,
        name: str,
        calories: int,
        proof: Optional[str],
        day: str,
        timestamp_ms: int,
    ) -> int:
        cursor = conn.execute(
            "INSERT INTO logs (name, calories, proof, date, timestamp) VALUES (?, ?, ?, ?, ?)",
            (name, calories, proof, day, timestamp_ms),
        )
        return int(cursor.lastrowid)

    def update_log(
        self,
        conn: sqlite3.Connection,
        log_id: int,
        calories: int,
        proof: Optional[str],
        day: str,
        timestamp_ms: int,
    ) -> None:
        conn.execute(
            "UPDATE logs SET calories = ?, proof = ?, date = ?, timestamp = ? WHERE id = ?",
            (calories, proof, day, timestamp_ms, log_id),
        )

    def list_logs(self, conn: sqlite3.Connection) -> List[sqlite3.Row]:
        return conn.execute(
            "SELECT id, name, calories, proof, date, timestamp FROM logs ORDER BY id"
        ).fetchall()

    def delete_logs(self, conn: sqlite3.Connection) -> int:
        return conn.execute("DELETE FROM logs").rowcount

    def clear_proofs_before(self, conn: sqlite3.Connection, cutoff_ms: int, cutoff_day: str) -> int:
        cursor = conn.execute(
            """
            UPDATE logs SET proof = NULL
            WHERE proof IS NOT NULL
              AND ((timestamp > 0 AND timestamp < ?) OR (timestamp = 0 AND (date < ? OR date(date) IS NULL)))
            """,
            (cutoff_ms, cutoff_day),
        )
        return cursor.rowcount

    # Running totals
    def add_to_stats(
        self,
        conn: sqlite3.Connection,
        table: str,
        name: str,
        calories: int,
        delta: int,
        is_new_entry: bool,
    ) -> None:
        """
        Add ``delta`` to the name's running total, counting a new entry when
        ``is_new_entry``. A missing row starts at ``calories`` with one entry.
        """
        table = _check_stats_table(table)
        row = conn.execute(
            f"SELECT name FROM {table} WHERE name = ? COLLATE NOCASE", (name,)
        ).fetchone()
        if row is None:
            conn.execute(
                f"INSERT INTO {table} (name, total_calories, entries_count) VALUES (?, ?, 1)",
                (name, calories),
            )
            return
        conn.execute(
            f"""
            UPDATE {table}
            SET total_calories = total_calories + ?, entries_count = entries_count + ?
            WHERE name = ?
            """,
            (delta, 1 if is_new_entry else 0, row["name"]),
        )

    def list_stats(self, conn: sqlite3.Connection, table: str) -> List[sqlite3.Row]:
        table = _check_stats_table(table)
        return conn.execute(
            f"SELECT name, total_calories, entries_count FROM {table} "
            "ORDER BY total_calories DESC, name COLLATE NOCASE"
        ).fetchall()

    def clear_stats(self, conn: sqlite3.Connection, table: str) -> int:
        table = _check_stats_table(table)
        return conn.execute(f"DELETE FROM {table}").rowcount
