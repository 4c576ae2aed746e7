"""Pytest configuration shared across the test suite."""

import datetime as dt
import sys
from pathlib import Path
from typing import Dict, List, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from betapp.event_manager import EventManager
from betapp.ledger import RedisLedger, SqlTransactionStore
from betapp.lifecycle import RoundLockRegistry
from betapp.match_manager import MatchManager
from betapp.round_store import Database, SqlRoundStore, SqlWagerStore
from betapp.scheduler import TimerCallback


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: dt.datetime | None = None) -> None:
        self.value = start or dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += dt.timedelta(seconds=seconds)


class ManualScheduler:
    """Scheduler double; timers fire only when a test calls :meth:`fire`."""

    def __init__(self) -> None:
        self.timers: Dict[int, Tuple[float, TimerCallback]] = {}
        self.armed: List[Tuple[int, float]] = []
        self.disarmed: List[int] = []
        self.shut_down = False

    def arm(self, round_id: int, delay_seconds: float, callback: TimerCallback) -> None:
        self.timers[round_id] = (delay_seconds, callback)
        self.armed.append((round_id, delay_seconds))

    def disarm(self, round_id: int) -> None:
        if self.timers.pop(round_id, None) is not None:
            self.disarmed.append(round_id)

    async def shutdown(self) -> None:
        self.timers.clear()
        self.shut_down = True

    async def fire(self, round_id: int) -> None:
        _delay, callback = self.timers.pop(round_id)
        await callback(round_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def redis_client():
    server = fakeredis.FakeServer()
    return fakeredis.aioredis.FakeRedis(server=server)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'bets.sqlite3'}")
    await db.ensure_ready()
    yield db
    await db.close()


@pytest.fixture
def round_store(database, clock) -> SqlRoundStore:
    return SqlRoundStore(database, clock=clock)


@pytest.fixture
def wager_store(database, clock) -> SqlWagerStore:
    return SqlWagerStore(database, clock=clock)


@pytest.fixture
def transaction_store(database) -> SqlTransactionStore:
    return SqlTransactionStore(database)


@pytest.fixture
def ledger(redis_client, transaction_store) -> RedisLedger:
    return RedisLedger(redis_client, transactions=transaction_store, starting_balance=1000)


@pytest.fixture
def engine_kwargs(round_store, wager_store, ledger, scheduler, clock):
    return {
        "rounds": round_store,
        "wagers": wager_store,
        "ledger": ledger,
        "scheduler": scheduler,
        "window_seconds": 300,
        "payout_multiplier": 2,
        "clock": clock,
        "locks": RoundLockRegistry(),
    }


@pytest.fixture
def match_manager(engine_kwargs) -> MatchManager:
    return MatchManager(**engine_kwargs)


@pytest.fixture
def event_manager(engine_kwargs) -> EventManager:
    return EventManager(**engine_kwargs)
