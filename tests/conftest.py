from decimal import Decimal

import pytest
import pytest_asyncio

from aviator_crash.db import init_db, make_engine
from aviator_crash.engine import RoundClock, RoundObserver
from aviator_crash.service import CrashGameService


class FixedCrashPoint:
    """Generator stub: returns the given crash points in order, repeating the last."""

    def __init__(self, *points):
        self._points = [Decimal(str(p)) for p in points]

    def draw(self) -> Decimal:
        if len(self._points) > 1:
            return self._points.pop(0)
        return self._points[0]


class RecordingObserver(RoundObserver):
    def __init__(self):
        self.events = []

    @property
    def ticks(self):
        return [e[2] for e in self.events if e[0] == "tick"]

    async def on_round_start(self, round_id):
        self.events.append(("start", round_id))

    async def on_tick(self, round_id, multiplier):
        self.events.append(("tick", round_id, multiplier))

    async def on_crash(self, round_id, crash_point):
        self.events.append(("crash", round_id, crash_point))


def instant_clock() -> RoundClock:
    return RoundClock(tick_interval=0)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'aviator_test.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def make_service(db_engine):
    def factory(*crash_points, **options):
        options.setdefault("clock_factory", instant_clock)
        options.setdefault("betting_duration", 0)
        options.setdefault("cooldown", 0)
        return CrashGameService(
            db_engine=db_engine,
            generator=FixedCrashPoint(*(crash_points or ("2.50",))),
            **options,
        )

    return factory


@pytest.fixture
def service(make_service):
    return make_service("2.50")


@pytest_asyncio.fixture
async def alice(service):
    """Funded account with the default 1000.00 starting balance."""
    account = await service.init_account("alice")
    return account.id
