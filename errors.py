"""Typed failures raised by the booking core.

Every core operation either returns its value or raises exactly one
``QueueError`` subclass.  ``message`` is safe to show to a patient or a
staff member; ``code`` is a stable machine-readable tag used by the HTTP
layer.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    """Malformed input, rejected before any scheduling rule runs."""

    code = "validation_error"


class AlreadyBooked(QueueError):
    code = "already_booked"


class WindowClosed(QueueError):
    """Booking attempted while the session is not accepting patients."""

    code = "window_closed"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class BookingNotFound(QueueError):
    code = "booking_not_found"


class InvalidTransition(QueueError):
    code = "invalid_transition"


class InfraError(QueueError):
    """Ledger or change feed failure.  The core never retries these."""

    code = "infra_error"


class QueueNumberTaken(QueueError):
    """Raised by a ledger when (session, date, queue number) already exists.

    The assigner absorbs it by re-reading the partition and trying again.
    """

    code = "queue_number_taken"


class ActiveBookingExists(QueueError):
    """Raised by a ledger when the mobile already holds an active booking that day.

    The assigner reports it to the patient as ``AlreadyBooked``.
    """

    code = "active_booking_exists"
