from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from burnboard import leaderboard
from burnboard.store import LeaderboardStore

UTC = ZoneInfo("UTC")


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture(autouse=True)
def leaderboard_env(monkeypatch):
    monkeypatch.setenv("LEADERBOARD_TZ", "UTC")
    monkeypatch.setenv("ENABLE_SCHEDULER", "false")


@pytest.fixture
def store(tmp_path):
    s = LeaderboardStore(tmp_path / "leaderboard.db")
    now = at(2026, 10, 14, 9, 0)
    s.initialize(leaderboard.to_ms(now), leaderboard.month_key(now))
    return s


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "api.db"))
    from burnboard.server import app

    with TestClient(app) as test_client:
        yield test_client
