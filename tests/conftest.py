"""
Pytest configuration and shared fixtures.

Environment defaults are set before any sms_relay import so the settings
object, the engine and the app are built for tests: a throwaway SQLite
file and no broker connection at startup.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_sms_relay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RELAY_AUTOSTART", "false")

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Clear settings cache before any app imports to ensure test env vars are used
from sms_relay.config import get_settings
get_settings.cache_clear()

from sms_relay.correlator import ConfirmationCorrelator
from sms_relay.intake import IntakeGate
from sms_relay.relay import RelayService
from sms_relay.storage import Base, DeliveryRecordStore, init_db, make_session_factory


class FakeClock:
    """Virtual time: sleep() advances now instead of waiting."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTransport:
    """Records publishes; answers from `results` first, then True."""

    def __init__(self, clock: FakeClock = None, results=None):
        self.clock = clock
        self.connected = True
        self.fatal = False
        self.results = list(results or [])
        self.published = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def publish(self, topic: str, payload: str) -> bool:
        self.published.append((self.clock.now if self.clock else None, topic, payload))
        if self.results:
            return self.results.pop(0)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(clock):
    return FakeTransport(clock)


@pytest.fixture
def store():
    """Delivery record store on a private in-memory database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield DeliveryRecordStore(make_session_factory(engine))
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def relay(store, transport, clock):
    return RelayService(
        store,
        transport,
        control_topic="sms/send",
        inter_send_delay=45.0,
        tick_interval=5.0,
        publish_attempts=3,
        publish_retry_delay=3.0,
        max_retries=3,
        sleep=clock.sleep,
    )


@pytest.fixture
def intake(store, relay):
    return IntakeGate(store, relay, max_payload_length=140, max_batch_size=1000)


@pytest.fixture
def correlator(store):
    return ConfirmationCorrelator(store)
