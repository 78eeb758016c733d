"""Ledger interface and the in-process ledger.

A ledger stores bookings and the clinic configuration.  Implementations
must guarantee that (session_type, booking_date, queue_number) is unique
and raise ``QueueNumberTaken`` on a conflicting insert.  A mobile may hold
at most one booking per date that is not consulted; an insert that would
break this raises ``ActiveBookingExists``.  Status changes are applied as
a compare-and-set on the expected current status.
"""

from __future__ import annotations

import threading
from copy import deepcopy
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from config import DEFAULT_MINUTES_PER_PATIENT, SEED_SESSIONS
from errors import ActiveBookingExists, QueueNumberTaken
from models import (
    Booking,
    BookingEvent,
    BookingStatus,
    ClinicConfig,
    ConfigUpdate,
    EventType,
    SessionType,
)


def default_config() -> ClinicConfig:
    return ClinicConfig(
        doctor_available=True,
        minutes_per_patient=DEFAULT_MINUTES_PER_PATIENT,
        morning=SEED_SESSIONS["morning"],
        evening=SEED_SESSIONS["evening"],
    )


class Ledger:
    def insert_booking(self, booking: Booking) -> Booking:
        raise NotImplementedError

    def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        expected: BookingStatus,
        at: datetime,
    ) -> bool:
        """Set ``status`` only if the booking is currently ``expected``.

        Returns False when the booking is missing or its status differs.
        """
        raise NotImplementedError

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        raise NotImplementedError

    def query_bookings(
        self,
        session_type: Optional[SessionType] = None,
        booking_date: Optional[date] = None,
        status: Optional[BookingStatus] = None,
        mobile: Optional[str] = None,
    ) -> List[Booking]:
        """Bookings matching every given filter, ordered by queue number."""
        raise NotImplementedError

    def read_config(self) -> ClinicConfig:
        raise NotImplementedError

    def update_config(self, update: ConfigUpdate) -> ClinicConfig:
        raise NotImplementedError

    def booking_events(self, booking_id: str) -> List[BookingEvent]:
        raise NotImplementedError

    def ping(self) -> None:
        """Raise if the backing store is unreachable."""


class MemoryLedger(Ledger):
    """Ledger kept in process memory, guarded by a single lock."""

    def __init__(self, config: Optional[ClinicConfig] = None) -> None:
        self._lock = threading.Lock()
        self._bookings: Dict[str, Booking] = {}
        self._numbers: Dict[Tuple[SessionType, date, int], str] = {}
        self._events: List[BookingEvent] = []
        self._config = config or default_config()

    def insert_booking(self, booking: Booking) -> Booking:
        key = (booking.session_type, booking.booking_date, booking.queue_number)
        with self._lock:
            for other in self._bookings.values():
                if (
                    other.mobile == booking.mobile
                    and other.booking_date == booking.booking_date
                    and other.status != BookingStatus.consulted
                ):
                    raise ActiveBookingExists(
                        f"{booking.mobile} already has an active booking on {booking.booking_date}."
                    )
            if key in self._numbers:
                raise QueueNumberTaken(
                    f"Queue number {booking.queue_number} is already taken for "
                    f"{booking.session_type.value} on {booking.booking_date}."
                )
            stored = booking.model_copy(deep=True)
            self._bookings[stored.id] = stored
            self._numbers[key] = stored.id
            self._events.append(
                BookingEvent(booking_id=stored.id, event_type=EventType.booked, at=stored.created_at)
            )
            return stored.model_copy()

    def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        expected: BookingStatus,
        at: datetime,
    ) -> bool:
        with self._lock:
            current = self._bookings.get(booking_id)
            if current is None or current.status != expected:
                return False
            changes = {"status": status, "updated_at": at}
            if status == BookingStatus.consulted:
                changes["consulted_at"] = at
            self._bookings[booking_id] = current.model_copy(update=changes)
            self._events.append(BookingEvent(booking_id=booking_id, event_type=EventType(status.value), at=at))
            return True

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._lock:
            booking = self._bookings.get(booking_id)
            return booking.model_copy() if booking else None

    def query_bookings(
        self,
        session_type: Optional[SessionType] = None,
        booking_date: Optional[date] = None,
        status: Optional[BookingStatus] = None,
        mobile: Optional[str] = None,
    ) -> List[Booking]:
        with self._lock:
            rows = [
                b.model_copy()
                for b in self._bookings.values()
                if (session_type is None or b.session_type == session_type)
                and (booking_date is None or b.booking_date == booking_date)
                and (status is None or b.status == status)
                and (mobile is None or b.mobile == mobile)
            ]
        return sorted(rows, key=lambda b: (b.booking_date, b.session_type.value, b.queue_number))

    def read_config(self) -> ClinicConfig:
        with self._lock:
            return deepcopy(self._config)

    def update_config(self, update: ConfigUpdate) -> ClinicConfig:
        with self._lock:
            self._config = self._config.apply(update)
            return deepcopy(self._config)

    def booking_events(self, booking_id: str) -> List[BookingEvent]:
        with self._lock:
            return [e for e in self._events if e.booking_id == booking_id]
