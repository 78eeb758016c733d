"""Tests for the SQLModel ledger on in-memory SQLite."""
from datetime import time, timedelta

import pytest

from conftest import TODAY, at, make_booking
from errors import ActiveBookingExists, InfraError, QueueNumberTaken
from ledger_sql import SqlLedger, get_engine
from models import BookingStatus, ConfigUpdate, EventType, SessionType, SessionUpdate


def test_insert_and_read_back(sql_ledger):
    stored = sql_ledger.insert_booking(make_booking(1))
    assert stored.queue_number == 1
    assert sql_ledger.get_booking(stored.id).model_dump() == stored.model_dump()


def test_missing_booking_is_none(sql_ledger):
    assert sql_ledger.get_booking("nope") is None


def test_duplicate_queue_number_is_rejected(sql_ledger):
    sql_ledger.insert_booking(make_booking(1))
    duplicate = make_booking(1).model_copy(update={"id": "other", "mobile": "9000000099"})
    with pytest.raises(QueueNumberTaken):
        sql_ledger.insert_booking(duplicate)
    # the ledger stays usable after the failed insert
    assert len(sql_ledger.query_bookings(booking_date=TODAY)) == 1


def test_same_number_allowed_in_other_partitions(sql_ledger):
    sql_ledger.insert_booking(make_booking(1))
    sql_ledger.insert_booking(make_booking(1, session=SessionType.evening))
    assert len(sql_ledger.query_bookings(booking_date=TODAY)) == 2


def test_query_filters_and_order(sql_ledger):
    for number in (3, 1, 2):
        sql_ledger.insert_booking(make_booking(number))
    sql_ledger.insert_booking(make_booking(1, session=SessionType.evening))

    morning = sql_ledger.query_bookings(session_type=SessionType.morning, booking_date=TODAY)
    assert [b.queue_number for b in morning] == [1, 2, 3]
    assert [b.queue_number for b in sql_ledger.query_bookings(mobile="9990000002")] == [2]


def test_status_update_is_compare_and_set(sql_ledger):
    booking = sql_ledger.insert_booking(make_booking(1))
    assert sql_ledger.update_booking_status(
        booking.id, BookingStatus.consulted, expected=BookingStatus.waiting, at=at(10, 5)
    )
    assert not sql_ledger.update_booking_status(
        booking.id, BookingStatus.no_show, expected=BookingStatus.waiting, at=at(10, 6)
    )
    stored = sql_ledger.get_booking(booking.id)
    assert stored.status == BookingStatus.consulted
    assert stored.consulted_at == at(10, 5)
    assert [e.event_type for e in sql_ledger.booking_events(booking.id)] == [
        EventType.booked,
        EventType.consulted,
    ]


def test_status_update_of_unknown_booking(sql_ledger):
    assert not sql_ledger.update_booking_status(
        "nope", BookingStatus.consulted, expected=BookingStatus.waiting, at=at(10, 0)
    )


def test_seeded_config(sql_ledger, config):
    assert sql_ledger.read_config().model_dump() == config.model_dump()


def test_config_updates_persist(sql_ledger):
    sql_ledger.update_config(
        ConfigUpdate(minutes_per_patient=12, evening=SessionUpdate(booking_close_time=time(19, 0)))
    )
    config = sql_ledger.read_config()
    assert config.minutes_per_patient == 12
    assert config.evening.booking_close_time == time(19, 0)
    assert config.morning.booking_close_time is None


def test_init_db_is_idempotent(sql_ledger):
    sql_ledger.update_config(ConfigUpdate(doctor_available=False))
    sql_ledger.init_db()
    assert sql_ledger.read_config().doctor_available is False


def test_uninitialised_database_is_an_infra_error():
    ledger = SqlLedger(get_engine("sqlite://"))
    with pytest.raises(InfraError):
        ledger.read_config()
    with pytest.raises(InfraError):
        ledger.query_bookings()
    ledger.engine.dispose()


def test_ping(sql_ledger):
    sql_ledger.ping()


def test_postgres_scheme_is_normalised():
    engine = get_engine("postgres://user:pw@localhost:5432/clinic")
    assert engine.url.drivername.startswith("postgresql")
    engine.dispose()


def test_one_active_booking_per_mobile_and_day(sql_ledger):
    sql_ledger.insert_booking(make_booking(1))
    with pytest.raises(ActiveBookingExists):
        sql_ledger.insert_booking(make_booking(2, mobile="9990000001"))
    with pytest.raises(ActiveBookingExists):
        sql_ledger.insert_booking(make_booking(1, session=SessionType.evening, mobile="9990000001"))

    next_day = make_booking(1, day=TODAY + timedelta(days=1), mobile="9990000001")
    tomorrow = sql_ledger.insert_booking(next_day.model_copy(update={"id": "next-day"}))
    assert tomorrow.booking_date == TODAY + timedelta(days=1)


def test_consulted_booking_frees_the_mobile(sql_ledger):
    first = sql_ledger.insert_booking(make_booking(1))
    sql_ledger.update_booking_status(first.id, BookingStatus.consulted, expected=BookingStatus.waiting, at=at(10, 0))
    again = sql_ledger.insert_booking(make_booking(2, mobile="9990000001"))
    assert again.queue_number == 2
