"""Pydantic schemas for requests and responses.

Request bodies are validated here before they reach the booking core;
responses carry the derived values (position, estimate) that are never
stored.
"""
import re
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel

from errors import ValidationError
from models import Booking, BookingStatus, SessionConfig, SessionType
from scheduling import WindowState

_MOBILE_JUNK = re.compile(r"[\s\-().]")
_MOBILE_DIGITS = re.compile(r"^\d{10,15}$")

# Digits kept as the dedup key; anything before them is a country or trunk prefix.
NATIONAL_NUMBER_DIGITS = 10


def normalize_mobile(raw: Optional[str]) -> str:
    """Reduce a mobile number to its canonical 10-digit national form.

    Spaces, dashes, dots, parentheses and a leading ``+`` are dropped.  The
    remaining 10-15 digits may carry a country prefix, so only the trailing
    10 are kept: ``+91 99988 87777`` and ``9998887777`` are the same patient.
    """
    if raw is None or not raw.strip():
        raise ValidationError("Please enter your mobile number.")
    mobile = _MOBILE_JUNK.sub("", raw.strip())
    if mobile.startswith("+"):
        mobile = mobile[1:]
    if not _MOBILE_DIGITS.match(mobile):
        raise ValidationError(
            "Please enter a valid mobile number: 10 digits, optionally with a country code."
        )
    return mobile[-NATIONAL_NUMBER_DIGITS:]


def mask_mobile(mobile: str) -> str:
    return "*" * max(len(mobile) - 4, 0) + mobile[-4:]


class BookingRequest(BaseModel):
    mobile: str
    patient_name: Optional[str] = None
    session: SessionType
    confirmed_human: bool = False


class BookingView(BaseModel):
    id: str
    mobile: str
    patient_name: str
    session_type: SessionType
    queue_number: int
    booking_date: date
    status: BookingStatus
    created_at: datetime
    consulted_at: Optional[datetime] = None
    waiting_ahead: int = 0
    position: Optional[int] = None
    estimated_time: Optional[datetime] = None

    @classmethod
    def build(cls, booking: Booking, ahead: int, estimated_time: Optional[datetime]) -> "BookingView":
        waiting = booking.status == BookingStatus.waiting
        return cls(
            id=booking.id,
            mobile=booking.mobile,
            patient_name=booking.patient_name,
            session_type=booking.session_type,
            queue_number=booking.queue_number,
            booking_date=booking.booking_date,
            status=booking.status,
            created_at=booking.created_at,
            consulted_at=booking.consulted_at,
            waiting_ahead=ahead if waiting else 0,
            position=ahead + 1 if waiting else None,
            estimated_time=estimated_time if waiting else None,
        )

    def masked(self) -> "BookingView":
        return self.model_copy(update={"mobile": mask_mobile(self.mobile)})


class SessionOverview(BaseModel):
    session: SessionConfig
    doctor_available: bool
    minutes_per_patient: int
    is_open: bool
    state: WindowState
    message: Optional[str] = None
    seconds_until_open: Optional[int] = None
    waiting_count: int
    next_queue_number: int


class QueueBoard(BaseModel):
    booking_date: date
    morning: List[BookingView]
    evening: List[BookingView]


class DailyStats(BaseModel):
    booking_date: date
    total_bookings: int
    patients_consulted: int
    patients_no_show: int
    patients_waiting: int
    morning_bookings: int
    evening_bookings: int
    consultation_rate: int


class ActionRequest(BaseModel):
    passcode: str
    action: str
    booking_id: str


class AvailabilityRequest(BaseModel):
    passcode: str
    available: bool
