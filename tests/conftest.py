"""Shared fixtures for the slot queue tests.

Service-level tests run twice, once against the in-memory ledger and
once against the SQL ledger on an in-memory SQLite database.
"""
from datetime import date, datetime, time

import pytest

from clock import FixedClock
from ledger import MemoryLedger, default_config
from ledger_sql import SqlLedger, get_engine
from models import Booking, BookingStatus, SessionType
from realtime import LocalChangeFeed
from services import QueueService

TODAY = date(2026, 10, 19)


def at(hour: int, minute: int = 0, second: int = 0, day: date = TODAY) -> datetime:
    return datetime.combine(day, time(hour, minute, second))


def make_booking(
    number: int,
    status: BookingStatus = BookingStatus.waiting,
    session: SessionType = SessionType.morning,
    day: date = TODAY,
    mobile: str = None,
) -> Booking:
    return Booking(
        id=f"b{session.value}{number}",
        mobile=mobile or f"999{0 if session == SessionType.morning else 1}0000{number:02d}",
        patient_name=f"Patient {number}",
        session_type=session,
        queue_number=number,
        booking_date=day,
        status=status,
        created_at=at(9, number, day=day),
        updated_at=at(9, number, day=day),
    )


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def clock():
    return FixedClock(at(9, 5))


@pytest.fixture
def sql_ledger():
    ledger = SqlLedger(get_engine("sqlite://"))
    ledger.init_db()
    yield ledger
    ledger.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def ledger(request):
    if request.param == "memory":
        yield MemoryLedger()
    else:
        yield request.getfixturevalue("sql_ledger")


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def service(ledger, clock, feed):
    return QueueService(ledger, clock, feed)
