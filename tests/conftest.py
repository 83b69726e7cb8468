from datetime import datetime, timedelta, timezone

import pytest

from gitdeck.domain.ports import Clock
from gitdeck.infrastructure.adapters.local_client import LocalRepositoryClient
from gitdeck.infrastructure.storage.sqlite_store import (
    LocalDatabase,
    SqliteCardStore,
    SqliteIntroducedTracker,
    SqliteReviewLog,
    SqliteWriteAheadLog,
)


class _ManualTimer:
    def __init__(self, clock: "ManualClock", deadline: datetime, callback):
        self.clock = clock
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock whose time only moves when a test calls advance()."""

    def __init__(self, start: datetime):
        self.current = start
        self.timers: list[_ManualTimer] = []

    def now(self) -> datetime:
        return self.current

    def call_later(self, delay: float, callback) -> _ManualTimer:
        timer = _ManualTimer(self, self.current + timedelta(seconds=delay), callback)
        self.timers.append(timer)
        return timer

    @property
    def pending_timers(self) -> list[_ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move time forward and fire every timer that became due, in deadline order."""
        self.current += timedelta(seconds=seconds)
        due = sorted(
            (t for t in self.pending_timers if t.deadline <= self.current),
            key=lambda t: t.deadline,
        )
        for timer in due:
            timer.cancelled = True
            timer.callback()


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    database = LocalDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def card_store(db):
    return SqliteCardStore(db)


@pytest.fixture
def review_log(db):
    return SqliteReviewLog(db)


@pytest.fixture
def wal(db):
    return SqliteWriteAheadLog(db)


@pytest.fixture
def tracker(db):
    return SqliteIntroducedTracker(db)


@pytest.fixture
def remote(tmp_path):
    """A local directory acting as the remote repository."""
    return LocalRepositoryClient(tmp_path / "remote")


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Mocks Path.home() to point to a temp dir."""
    home = tmp_path / "home"
    home.mkdir()

    # Mocking HOME to a temp directory to isolate config/logs
    monkeypatch.setenv("HOME", str(home))
    for var in ("GITDECK_REPO_URL", "GITDECK_TOKEN", "GITDECK_BACKEND", "GITDECK_LOCAL_ROOT"):
        monkeypatch.delenv(var, raising=False)
    return home
