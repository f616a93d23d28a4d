import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from burnboard import leaderboard
from burnboard import store as store_module
from burnboard.errors import StorePermissionError
from burnboard.store import LeaderboardStore
from tests.conftest import at


def _tables(db_path):
    with closing(sqlite3.connect(db_path)) as conn, conn:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def _meta(db_path):
    with closing(sqlite3.connect(db_path)) as conn, conn:
        return dict(conn.execute("SELECT key, value FROM meta").fetchall())


def test_initialize_creates_tables_and_seeds_meta(store):
    assert {"logs", "lifetime_stats", "monthly_stats", "meta"} <= _tables(store.db_path)
    meta = _meta(store.db_path)
    assert meta["lastMonthlyReset"] == "2026-9"
    assert int(meta["lastReset"]) > 0


def test_initialize_keeps_existing_reset_markers(store):
    before = _meta(store.db_path)
    store.initialize(1, "1999-0")
    assert _meta(store.db_path) == before


def test_legacy_logs_table_gets_timestamp_column(tmp_path):
    db_path = tmp_path / "legacy.db"
    with closing(sqlite3.connect(db_path)) as conn, conn:
        conn.execute(
            "CREATE TABLE logs (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, "
            "calories INTEGER NOT NULL, proof TEXT, date TEXT NOT NULL)"
        )
        conn.execute("INSERT INTO logs (name, calories, proof, date) VALUES ('Ana', 300, 'img', '2026-10-01')")

    legacy = LeaderboardStore(db_path)
    legacy.initialize(0, "2026-9")

    with legacy.reading() as conn:
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(logs)")}
        row = conn.execute("SELECT name, calories, proof, timestamp FROM logs").fetchone()

    expected = int(datetime(2026, 10, 1, tzinfo=ZoneInfo("UTC")).timestamp() * 1000)
    assert "timestamp" in columns
    assert (row["name"], row["calories"], row["proof"], row["timestamp"]) == ("Ana", 300, "img", expected)
    assert "monthly_stats" in _tables(db_path)


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            store.insert_log(conn, "Ana", 100, None, "2026-10-14", 1)
            raise RuntimeError("boom")

    with store.reading() as conn:
        assert store.list_logs(conn) == []


def test_add_to_stats_matches_names_without_case(store):
    with store.transaction() as conn:
        store.add_to_stats(conn, "lifetime_stats", "Ana", 100, 100, is_new_entry=True)
        store.add_to_stats(conn, "lifetime_stats", "ANA", 250, 250, is_new_entry=True)
        store.add_to_stats(conn, "lifetime_stats", "ana", 300, 50, is_new_entry=False)

    with store.reading() as conn:
        rows = store.list_stats(conn, "lifetime_stats")
    assert [(r["name"], r["total_calories"], r["entries_count"]) for r in rows] == [("Ana", 400, 2)]


def test_unknown_stats_table_is_rejected(store):
    with store.reading() as conn:
        with pytest.raises(ValueError):
            store.list_stats(conn, "logs; DROP TABLE meta")


def _legacy_db(db_path, *rows):
    with closing(sqlite3.connect(db_path)) as conn, conn:
        conn.execute(
            "CREATE TABLE logs (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, "
            "calories INTEGER NOT NULL, proof TEXT, date TEXT NOT NULL)"
        )
        conn.executemany("INSERT INTO logs (name, calories, proof, date) VALUES (?, ?, ?, ?)", rows)


def _log_columns(s):
    with s.reading() as conn:
        return {row["name"] for row in conn.execute("PRAGMA table_info(logs)")}


def test_failed_backfill_rolls_back_the_new_column(tmp_path, monkeypatch):
    db_path = tmp_path / "legacy.db"
    _legacy_db(db_path, ("Ana", 300, "img", "2026-10-01"))

    def broken_backfill(self, conn):
        raise sqlite3.OperationalError("disk I/O error")

    legacy = LeaderboardStore(db_path)
    with monkeypatch.context() as patch:
        patch.setattr(LeaderboardStore, "_backfill_timestamps", broken_backfill)
        with pytest.raises(sqlite3.OperationalError):
            legacy.initialize(0, "2026-9")
    assert "timestamp" not in _log_columns(legacy)

    # The next start sees the old schema and migrates it fully.
    legacy.initialize(0, "2026-9")
    with legacy.reading() as conn:
        (row,) = legacy.list_logs(conn)
    assert row["timestamp"] > 0


def test_second_start_on_migrated_file_is_a_no_op(tmp_path):
    db_path = tmp_path / "legacy.db"
    _legacy_db(db_path, ("Ana", 300, "img", "2026-10-01"))

    LeaderboardStore(db_path).initialize(0, "2026-9")
    again = LeaderboardStore(db_path)
    again.initialize(0, "2026-9")

    with again.reading() as conn:
        assert len(again.list_logs(conn)) == 1


def test_unparseable_legacy_dates_keep_zero_timestamp_and_lose_proofs(tmp_path):
    db_path = tmp_path / "legacy.db"
    _legacy_db(db_path, ("Ana", 300, "old-proof", "2026/10/01"), ("Ben", 200, "kept", "2026-10-14"))
    legacy = LeaderboardStore(db_path)
    legacy.initialize(0, "2026-9")

    with legacy.reading() as conn:
        rows = {row["name"]: row for row in legacy.list_logs(conn)}
    assert rows["Ana"]["timestamp"] == 0
    assert rows["Ben"]["timestamp"] > 0

    assert leaderboard.cleanup_old_proofs(legacy, now=at(2026, 10, 14, 12)) == 1
    with legacy.reading() as conn:
        proofs = {row["name"]: row["proof"] for row in legacy.list_logs(conn)}
    assert proofs == {"Ana": None, "Ben": "kept"}


def test_unwritable_directory_is_refused(tmp_path, monkeypatch):
    locked_dir = tmp_path / "locked"
    locked_dir.mkdir()
    monkeypatch.setattr(store_module.os, "access", lambda path, mode: Path(path) != locked_dir)

    with pytest.raises(StorePermissionError, match="chmod -R 755"):
        LeaderboardStore(locked_dir / "leaderboard.db")


def test_unwritable_database_file_is_refused(tmp_path, monkeypatch):
    db_path = tmp_path / "leaderboard.db"
    db_path.touch()
    monkeypatch.setattr(store_module.os, "access", lambda path, mode: Path(path) != db_path)

    with pytest.raises(StorePermissionError, match="chmod 664"):
        LeaderboardStore(db_path)
