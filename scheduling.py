"""Scheduling rules for the slot queue.

Pure functions only: they take a configuration snapshot, a list of
bookings and the current time, and never touch storage.  ``services``
wires them to a ledger and a clock.

Window checks work at minute resolution on the time-of-day of ``now``;
a window that crosses midnight is not supported.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, Iterable, NamedTuple, Optional, Set

from errors import InvalidTransition
from models import Booking, BookingStatus, ClinicConfig, SessionType


class WindowState(str, Enum):
    open = "open"
    unavailable = "unavailable"
    closed = "closed"
    not_yet_open = "not_yet_open"
    ended = "ended"


WINDOW_MESSAGES: Dict[WindowState, str] = {
    WindowState.unavailable: "The doctor is unavailable today. Booking is closed.",
    WindowState.closed: "Bookings for this session have been closed for today.",
    WindowState.not_yet_open: "Booking is not open for this slot yet.",
    WindowState.ended: "Booking for this slot has ended for today.",
}


class Partition(NamedTuple):
    """Scope of queue numbering and the already-booked check."""

    session_type: SessionType
    booking_date: date


# Allowed status changes.  consulted and no_show are terminal.
TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
    BookingStatus.waiting: {BookingStatus.consulted, BookingStatus.no_show},
    BookingStatus.consulted: set(),
    BookingStatus.no_show: set(),
}


def _minute(now: datetime) -> time:
    return now.time().replace(second=0, microsecond=0)


def partition_key(session_type: SessionType, now: datetime) -> Partition:
    return Partition(SessionType(session_type), now.date())


def window_state(config: ClinicConfig, session_type: SessionType, now: datetime) -> WindowState:
    """Return why booking is refused, or ``WindowState.open``.

    Checks run in a fixed order and the first failing one wins.
    """
    if not config.doctor_available:
        return WindowState.unavailable
    session = config.session(session_type)
    if session.bookings_closed:
        return WindowState.closed
    current = _minute(now)
    if current < session.booking_open_time:
        return WindowState.not_yet_open
    if current > session.effective_close_time:
        return WindowState.ended
    return WindowState.open


def is_booking_open(config: ClinicConfig, session_type: SessionType, now: datetime) -> bool:
    return window_state(config, session_type, now) is WindowState.open


def time_until_open(config: ClinicConfig, session_type: SessionType, now: datetime) -> Optional[timedelta]:
    """Countdown to today's booking open time.

    None unless the only thing keeping the window shut is the clock: an
    unavailable doctor or a closed session will not open at that time.
    """
    if window_state(config, session_type, now) is not WindowState.not_yet_open:
        return None
    session = config.session(session_type)
    opens_at = datetime.combine(now.date(), session.booking_open_time)
    if now >= opens_at:
        return None
    return opens_at - now


def next_queue_number(bookings: Iterable[Booking]) -> int:
    """Next number for a partition.

    Numbers are never reused and bookings are never deleted, so the
    highest assigned number equals the partition's booking count.
    """
    return max((b.queue_number for b in bookings), default=0) + 1


def waiting_ahead(bookings: Iterable[Booking], queue_number: int) -> int:
    return sum(
        1
        for b in bookings
        if b.status == BookingStatus.waiting and b.queue_number < queue_number
    )


def estimate_time(
    config: ClinicConfig,
    session_type: SessionType,
    on_date: date,
    ahead: int,
) -> datetime:
    start = datetime.combine(on_date, config.session(session_type).start_time)
    return start + timedelta(minutes=ahead * config.minutes_per_patient)


def blocks_rebooking(booking: Booking) -> bool:
    # A no-show still counts as booked for the day.
    return booking.status != BookingStatus.consulted


def check_transition(booking: Booking, new_status: BookingStatus) -> None:
    if new_status not in TRANSITIONS[booking.status]:
        raise InvalidTransition(
            f"Booking #{booking.queue_number} is already {booking.status.value} "
            f"and cannot be marked {new_status.value}."
        )
