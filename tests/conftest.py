"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

import pillbox.storage.db_config as db_config
from pillbox.core.scheduler import Scheduler
from pillbox.core.sms_client import SmsClient
from pillbox.events import Bus, E
from pillbox.notify.emitter import NotificationEmitter
from pillbox.storage.reminder import ReminderStore
from pillbox.utils import to_ms


class FakeClock:
    """Fixed wall clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    @property
    def ms(self) -> int:
        return to_ms(self.now)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def bus():
    return Bus()


@pytest.fixture
def recorded(bus):
    """Collect every fired/missed/removed/toast event published on the bus."""
    events = {E.REMINDER_FIRED: [], E.REMINDER_MISSED: [], E.REMINDER_REMOVED: [], E.UI_TOAST: []}
    bus.on(E.REMINDER_FIRED, lambda event: events[E.REMINDER_FIRED].append(event))
    bus.on(E.REMINDER_MISSED, lambda rid, at: events[E.REMINDER_MISSED].append((rid, at)))
    bus.on(E.REMINDER_REMOVED, lambda rid: events[E.REMINDER_REMOVED].append(rid))
    bus.on(E.UI_TOAST, lambda toast: events[E.UI_TOAST].append(toast))
    return events


@pytest.fixture
async def db(tmp_path):
    await db_config.init_db(str(tmp_path / "pillbox-test.db"))
    yield db_config.conn
    await db_config.close_db()


@pytest.fixture
async def store(db, clock):
    s = ReminderStore(storage_key="test.reminders", clock=clock)
    await s.load()
    return s


@pytest.fixture
def emitter(bus):
    return NotificationEmitter(bus, system_enabled=False, sound_enabled=False)


@pytest.fixture
def sms():
    client = MagicMock(spec=SmsClient)
    client.send = AsyncMock()
    client.send_for_reminder = AsyncMock()
    return client


@pytest.fixture
async def scheduler(store, emitter, sms, bus):
    s = Scheduler(store, emitter, sms, bus=bus, missed_window_minutes=30)
    await s.start()
    yield s
    await s.stop()
