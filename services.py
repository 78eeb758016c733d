"""Booking and queue operations.

``QueueService`` ties the scheduling rules to a ledger, a clock and a
change feed.  It is the only writer of bookings: it assigns queue
numbers, moves bookings through their lifecycle and applies staff
settings changes.  Positions and estimates are derived on every read
from the current waiting set, so they never go stale when someone ahead
is consulted or marked no-show.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Dict, List, Optional

from clock import Clock
from config import QUEUE_ASSIGN_ATTEMPTS
from errors import (
    ActiveBookingExists,
    AlreadyBooked,
    BookingNotFound,
    InfraError,
    InvalidTransition,
    QueueNumberTaken,
    ValidationError,
    WindowClosed,
)
from ledger import Ledger
from models import (
    Booking,
    BookingEvent,
    BookingStatus,
    ClinicConfig,
    ConfigUpdate,
    SessionType,
    SessionUpdate,
)
from realtime import ChangeFeed, LocalChangeFeed
from scheduling import (
    WINDOW_MESSAGES,
    WindowState,
    blocks_rebooking,
    check_transition,
    estimate_time,
    next_queue_number,
    partition_key,
    time_until_open,
    waiting_ahead,
    window_state,
)
from schemas import BookingView, DailyStats, QueueBoard, SessionOverview, normalize_mobile

logger = logging.getLogger(__name__)

ALREADY_BOOKED_MESSAGE = "You have already booked a slot today. Please visit at your scheduled time."


def parse_session(value) -> SessionType:
    try:
        return SessionType(value)
    except ValueError:
        raise ValidationError(f"Unknown session {value!r}; expected 'morning' or 'evening'.") from None


def generate_booking_id() -> str:
    return uuid.uuid4().hex


class QueueService:
    def __init__(
        self,
        ledger: Ledger,
        clock: Clock,
        feed: Optional[ChangeFeed] = None,
        max_attempts: int = QUEUE_ASSIGN_ATTEMPTS,
    ) -> None:
        self.ledger = ledger
        self.clock = clock
        self.feed = feed if feed is not None else LocalChangeFeed()
        self.max_attempts = max_attempts

    # ----- reads -----

    def read_config(self) -> ClinicConfig:
        return self.ledger.read_config()

    def _active_booking(self, mobile: str, on_date: date) -> Optional[Booking]:
        for booking in self.ledger.query_bookings(booking_date=on_date, mobile=mobile):
            if blocks_rebooking(booking):
                return booking
        return None

    def has_booked_today(self, mobile: str) -> bool:
        return self._active_booking(normalize_mobile(mobile), self.clock.now().date()) is not None

    def _views(self, config: ClinicConfig, partition: List[Booking]) -> List[BookingView]:
        views = []
        for booking in partition:
            ahead = waiting_ahead(partition, booking.queue_number)
            views.append(
                BookingView.build(
                    booking,
                    ahead,
                    estimate_time(config, booking.session_type, booking.booking_date, ahead),
                )
            )
        return views

    def _view(self, booking: Booking, config: Optional[ClinicConfig] = None) -> BookingView:
        config = config or self.ledger.read_config()
        partition = self.ledger.query_bookings(
            session_type=booking.session_type, booking_date=booking.booking_date
        )
        ahead = waiting_ahead(partition, booking.queue_number)
        return BookingView.build(
            booking, ahead, estimate_time(config, booking.session_type, booking.booking_date, ahead)
        )

    def queue_for_session(self, session_type, on_date: Optional[date] = None) -> List[BookingView]:
        session_type = parse_session(session_type)
        on_date = on_date or self.clock.now().date()
        config = self.ledger.read_config()
        partition = self.ledger.query_bookings(session_type=session_type, booking_date=on_date)
        return self._views(config, partition)

    def board(self, on_date: Optional[date] = None) -> QueueBoard:
        on_date = on_date or self.clock.now().date()
        return QueueBoard(
            booking_date=on_date,
            morning=self.queue_for_session(SessionType.morning, on_date),
            evening=self.queue_for_session(SessionType.evening, on_date),
        )

    def get_booking(self, booking_id: str) -> BookingView:
        booking = self.ledger.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(f"No booking found with ID {booking_id}.")
        return self._view(booking)

    def find_active_booking(self, mobile: str) -> Optional[BookingView]:
        """Today's booking for ``mobile`` that still blocks rebooking, if any."""
        booking = self._active_booking(normalize_mobile(mobile), self.clock.now().date())
        return self._view(booking) if booking else None

    def booking_events(self, booking_id: str) -> List[BookingEvent]:
        if self.ledger.get_booking(booking_id) is None:
            raise BookingNotFound(f"No booking found with ID {booking_id}.")
        return self.ledger.booking_events(booking_id)

    def session_overview(self, session_type) -> SessionOverview:
        session_type = parse_session(session_type)
        now = self.clock.now()
        config = self.ledger.read_config()
        partition = self.ledger.query_bookings(session_type=session_type, booking_date=now.date())
        state = window_state(config, session_type, now)
        countdown = time_until_open(config, session_type, now)
        return SessionOverview(
            session=config.session(session_type),
            doctor_available=config.doctor_available,
            minutes_per_patient=config.minutes_per_patient,
            is_open=state is WindowState.open,
            state=state,
            message=WINDOW_MESSAGES.get(state),
            seconds_until_open=int(countdown.total_seconds()) if countdown is not None else None,
            waiting_count=sum(1 for b in partition if b.status == BookingStatus.waiting),
            next_queue_number=next_queue_number(partition),
        )

    def daily_stats(self, on_date: Optional[date] = None) -> DailyStats:
        on_date = on_date or self.clock.now().date()
        bookings = self.ledger.query_bookings(booking_date=on_date)
        counts: Dict[BookingStatus, int] = {status: 0 for status in BookingStatus}
        for booking in bookings:
            counts[booking.status] += 1
        total = len(bookings)
        return DailyStats(
            booking_date=on_date,
            total_bookings=total,
            patients_consulted=counts[BookingStatus.consulted],
            patients_no_show=counts[BookingStatus.no_show],
            patients_waiting=counts[BookingStatus.waiting],
            morning_bookings=sum(1 for b in bookings if b.session_type == SessionType.morning),
            evening_bookings=sum(1 for b in bookings if b.session_type == SessionType.evening),
            consultation_rate=round(counts[BookingStatus.consulted] * 100 / total) if total else 0,
        )

    # ----- booking -----

    def create_booking(self, mobile: str, patient_name: Optional[str], session_type) -> BookingView:
        """Reserve the next queue number in today's partition for ``session_type``.

        Raises ``ValidationError``, ``AlreadyBooked``, ``WindowClosed`` or
        ``InfraError``.  A conflicting insert from a concurrent booking is
        retried with a fresh read, up to ``max_attempts`` times.
        """
        mobile = normalize_mobile(mobile)
        session_type = parse_session(session_type)

        for attempt in range(1, self.max_attempts + 1):
            now = self.clock.now()
            partition = partition_key(session_type, now)

            existing = self._active_booking(mobile, partition.booking_date)
            if existing is not None:
                raise AlreadyBooked(ALREADY_BOOKED_MESSAGE)

            config = self.ledger.read_config()
            state = window_state(config, session_type, now)
            if state is not WindowState.open:
                raise WindowClosed(WINDOW_MESSAGES[state], reason=state.value)

            current = self.ledger.query_bookings(
                session_type=partition.session_type, booking_date=partition.booking_date
            )
            booking = Booking(
                id=generate_booking_id(),
                mobile=mobile,
                patient_name=patient_name,
                session_type=partition.session_type,
                queue_number=next_queue_number(current),
                booking_date=partition.booking_date,
                status=BookingStatus.waiting,
                created_at=now,
                updated_at=now,
            )
            try:
                stored = self.ledger.insert_booking(booking)
            except ActiveBookingExists:
                # A concurrent request from the same mobile got in first.
                logger.info("Duplicate booking for %s on %s rejected", mobile, partition.booking_date)
                raise AlreadyBooked(ALREADY_BOOKED_MESSAGE) from None
            except QueueNumberTaken:
                logger.warning(
                    "Queue number %d for %s on %s taken concurrently (attempt %d/%d)",
                    booking.queue_number,
                    session_type.value,
                    partition.booking_date,
                    attempt,
                    self.max_attempts,
                )
                continue

            logger.info(
                "Booked %s #%d for %s on %s",
                session_type.value,
                stored.queue_number,
                stored.id,
                stored.booking_date,
            )
            self.feed.publish("booking_created")
            current.append(stored)
            ahead = waiting_ahead(current, stored.queue_number)
            return BookingView.build(
                stored, ahead, estimate_time(config, session_type, stored.booking_date, ahead)
            )

        raise InfraError("The queue is busy right now. Please try booking again.")

    # ----- lifecycle -----

    def _transition(self, booking_id: str, new_status: BookingStatus) -> BookingView:
        booking = self.ledger.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(f"No booking found with ID {booking_id}.")
        check_transition(booking, new_status)

        now = self.clock.now()
        if not self.ledger.update_booking_status(booking_id, new_status, expected=booking.status, at=now):
            # Someone else moved it between our read and write.
            latest = self.ledger.get_booking(booking_id)
            if latest is None:
                raise BookingNotFound(f"No booking found with ID {booking_id}.")
            check_transition(latest, new_status)
            raise InvalidTransition(f"Booking #{booking.queue_number} changed while updating; please retry.")

        logger.info(
            "Booking %s (%s #%d) marked %s",
            booking_id,
            booking.session_type.value,
            booking.queue_number,
            new_status.value,
        )
        self.feed.publish(f"booking_{new_status.value}")
        return self.get_booking(booking_id)

    def mark_consulted(self, booking_id: str) -> BookingView:
        return self._transition(booking_id, BookingStatus.consulted)

    def mark_no_show(self, booking_id: str) -> BookingView:
        return self._transition(booking_id, BookingStatus.no_show)

    # ----- staff settings -----

    def update_settings(self, update: ConfigUpdate) -> ClinicConfig:
        config = self.ledger.update_config(update)
        logger.info("Clinic settings updated: %s", update.model_dump(exclude_unset=True))
        self.feed.publish("settings_updated")
        return config

    def set_availability(self, available: bool) -> ClinicConfig:
        return self.update_settings(ConfigUpdate(doctor_available=available))

    def _set_closed(self, session_type, closed: bool) -> ClinicConfig:
        session_type = parse_session(session_type)
        return self.update_settings(
            ConfigUpdate(**{session_type.value: SessionUpdate(bookings_closed=closed)})
        )

    def close_bookings(self, session_type) -> ClinicConfig:
        return self._set_closed(session_type, True)

    def reopen_bookings(self, session_type) -> ClinicConfig:
        return self._set_closed(session_type, False)

    def start_new_day(self) -> ClinicConfig:
        """Clear both sessions' closed flags for a fresh day of bookings."""
        return self.update_settings(
            ConfigUpdate(
                morning=SessionUpdate(bookings_closed=False),
                evening=SessionUpdate(bookings_closed=False),
            )
        )
