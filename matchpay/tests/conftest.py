"""
Shared fixtures: temporary SQLite database, controllable clock, in-memory
collaborators and wired services.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from matchpay.database import build_engine, build_session_factory, init_db
from matchpay.integrations.notification_delivery import InMemoryNotificationDelivery
from matchpay.integrations.payment_capture import InMemoryPaymentCapture
from matchpay.services.container import build_services


START = datetime(2026, 3, 1, 10, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def capture():
    return InMemoryPaymentCapture()


@pytest.fixture
def notifier():
    return InMemoryNotificationDelivery()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'matchpay_test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def services(session_factory, capture, notifier, clock):
    container = build_services(
        session_factory, capture, notifier, clock=clock, instance_id="scheduler-a"
    )
    container.match_payments.backoff_ms = [1, 1, 1]
    return container


@pytest.fixture
def service(services):
    return services.match_payments


@pytest.fixture
def scheduler(services):
    return services.scheduler


async def open_payment_window(service, clock, match_id="m1", players=10, total_cost=1800,
                              min_players=10, max_players=14, hours_until_start=4):
    """Create a match and join `players` users (u1..uN)."""
    await service.create_match(
        match_id, total_cost, min_players, max_players,
        clock() + timedelta(hours=hours_until_start),
    )
    state = None
    for i in range(1, players + 1):
        state = await service.on_participant_join(match_id, f"u{i}")
    return state
