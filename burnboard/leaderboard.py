from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .store import LAST_MONTHLY_RESET_KEY, LAST_RESET_KEY, STATS_TABLES, LeaderboardStore

logger = logging.getLogger(__name__)


# ============== TIME HELPERS ==============

def get_leaderboard_tz() -> ZoneInfo:
    name = os.environ.get("LEADERBOARD_TZ") or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown LEADERBOARD_TZ %r, using UTC", name)
        return ZoneInfo("UTC")


def now_lb() -> datetime:
    return datetime.now(get_leaderboard_tz())


def _local(dt: datetime) -> datetime:
    return dt.astimezone(get_leaderboard_tz())


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def day_start(dt: datetime) -> datetime:
    return _local(dt).replace(hour=0, minute=0, second=0, microsecond=0)


def week_start(dt: datetime) -> datetime:
    # Weeks start on Monday 00:00 in the leaderboard timezone.
    return day_start(dt) - timedelta(days=_local(dt).weekday())


def day_end(dt: datetime) -> datetime:
    # Aware arithmetic is wall-clock, so this stays on midnight across DST changes.
    return day_start(dt) + timedelta(days=1)


def week_end(dt: datetime) -> datetime:
    return week_start(dt) + timedelta(days=7)


def month_end(dt: datetime) -> datetime:
    local = _local(dt)
    if local.month == 12:
        return datetime(local.year + 1, 1, 1, tzinfo=local.tzinfo)
    return datetime(local.year, local.month + 1, 1, tzinfo=local.tzinfo)


def month_key(dt: datetime) -> str:
    """Marker of the month a monthly reset happened in, e.g. ``2026-9`` for October 2026."""
    local = _local(dt)
    return f"{local.year}-{local.month - 1}"


def month_label(dt: datetime) -> str:
    return _local(dt).strftime("%B %Y")


def countdown(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _local(now or now_lb())
    targets = {"day": day_end(now), "week": week_end(now), "month": month_end(now)}

    def remaining_seconds(target: datetime) -> int:
        return max(0, int(target.timestamp() - now.timestamp()))

    result: Dict[str, Any] = {"timezone": str(now.tzinfo), "now": now}
    for key, target in targets.items():
        result[f"{key}_end"] = target
        result[f"{key}_remaining_seconds"] = remaining_seconds(target)
    return result


# ============== ENTRIES ==============

@dataclass
class EntryResult:
    id: int
    updated: bool
    message: str


def record_entry(
    store: LeaderboardStore,
    name: str,
    calories: int,
    proof: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EntryResult:
    """
    Store today's entry for ``name`` and fold it into the running totals.

    A second entry on the same day replaces the first (matched without regard
    to case). The totals then move by the difference and the entry counters
    stay put.
    """
    now = _local(now or now_lb())
    day = now.date().isoformat()
    timestamp_ms = to_ms(now)

    with store.transaction() as conn:
        existing = store.find_log_for_day(conn, name, day)
        if existing:
            log_id = int(existing["id"])
            delta = calories - int(existing["calories"])
            store.update_log(conn, log_id, calories, proof, day, timestamp_ms)
            result = EntryResult(id=log_id, updated=True, message="Entry updated for today")
        else:
            log_id = store.insert_log(conn, name, calories, proof, day, timestamp_ms)
            delta = calories
            result = EntryResult(id=log_id, updated=False, message="Entry added")

        # An entry saved before the daily maintenance run must land in the new month.
        _reset_monthly_locked(store, conn, now)
        for table in STATS_TABLES:
            store.add_to_stats(conn, table, name, calories, delta, is_new_entry=not result.updated)

    logger.info(
        "Entry %s: name=%s calories=%s delta=%s", "updated" if result.updated else "added", name, calories, delta
    )
    return result


# ============== LEADERBOARD VIEWS ==============

def weekly_board(store: LeaderboardStore) -> Dict[str, Any]:
    with store.reading() as conn:
        last_reset = store.get_meta(conn, LAST_RESET_KEY)
        rows = store.list_logs(conn)

    # Names group without regard to case, keeping the first spelling seen.
    users: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        user = users.setdefault(
            row["name"].casefold(), {"name": row["name"], "total_calories": 0, "logs": []}
        )
        user["total_calories"] += row["calories"]
        user["logs"].append({"date": row["date"], "calories": row["calories"], "proof": row["proof"]})

    ranked = sorted(users.values(), key=lambda u: -u["total_calories"])
    last_reset_ms = _parse_last_reset(last_reset)
    return {
        "users": ranked,
        "last_reset": last_reset_ms if last_reset_ms is not None else to_ms(now_lb()),
    }


def _stats_board(store: LeaderboardStore, table: str) -> List[Dict[str, Any]]:
    with store.reading() as conn:
        rows = store.list_stats(conn, table)
    return [
        {"name": row["name"], "total_calories": row["total_calories"], "entries": row["entries_count"]}
        for row in rows
    ]


def monthly_board(store: LeaderboardStore, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {"users": _stats_board(store, "monthly_stats"), "month": month_label(now or now_lb())}


def lifetime_board(store: LeaderboardStore) -> Dict[str, Any]:
    return {"users": _stats_board(store, "lifetime_stats")}


# ============== RESETS ==============

def _parse_last_reset(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring malformed lastReset value %r", value)
        return None


def reset_week(store: LeaderboardStore, now: Optional[datetime] = None) -> int:
    """Clear the weekly logs and stamp ``lastReset``. Returns the new stamp in ms."""
    new_reset = to_ms(now or now_lb())
    with store.transaction() as conn:
        deleted = store.delete_logs(conn)
        store.set_meta(conn, LAST_RESET_KEY, str(new_reset))
    logger.info("Weekly leaderboard reset: %s logs cleared", deleted)
    return new_reset


def week_needs_reset(store: LeaderboardStore, now: Optional[datetime] = None) -> bool:
    with store.reading() as conn:
        last_reset = store.get_meta(conn, LAST_RESET_KEY)
    last_reset_ms = _parse_last_reset(last_reset)
    if last_reset_ms is None:
        return True
    return last_reset_ms < to_ms(week_start(now or now_lb()))


def reset_week_if_due(store: LeaderboardStore, now: Optional[datetime] = None) -> bool:
    now = now or now_lb()
    if not week_needs_reset(store, now):
        return False
    logger.info("New week detected (week of %s). Resetting weekly logs", week_start(now).date().isoformat())
    reset_week(store, now)
    return True


def cleanup_old_proofs(store: LeaderboardStore, now: Optional[datetime] = None) -> int:
    """Drop proof images attached to logs from before today."""
    today = day_start(now or now_lb())
    with store.transaction() as conn:
        cleared = store.clear_proofs_before(conn, to_ms(today), today.date().isoformat())
    if cleared > 0:
        logger.info("Cleaned up %s old screenshots", cleared)
    return cleared


def _reset_monthly_locked(store: LeaderboardStore, conn: sqlite3.Connection, now: datetime) -> bool:
    current_key = month_key(now)
    last_key = store.get_meta(conn, LAST_MONTHLY_RESET_KEY)
    if last_key == current_key:
        return False
    store.clear_stats(conn, "monthly_stats")
    store.set_meta(conn, LAST_MONTHLY_RESET_KEY, current_key)
    logger.info("New month detected. Monthly stats reset (was: %s, now: %s)", last_key, current_key)
    return True


def reset_monthly_if_needed(store: LeaderboardStore, now: Optional[datetime] = None) -> bool:
    with store.transaction() as conn:
        return _reset_monthly_locked(store, conn, now or now_lb())


def run_daily_maintenance(store: LeaderboardStore, now: Optional[datetime] = None) -> None:
    now = now or now_lb()
    cleanup_old_proofs(store, now)
    reset_monthly_if_needed(store, now)
