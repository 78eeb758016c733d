"""Data model for the clinic slot queue.

We use SQLModel for the records that cross the ledger boundary.  The
classes here are plain (non-table) models so every value is validated
when it is built; the relational ledger derives its tables from them.
Bookings hold the immutable queue assignment plus the mutable status,
and ``ClinicConfig`` is the configuration snapshot the scheduling rules
are evaluated against.
"""

import logging
from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic import BaseModel, field_validator
from sqlmodel import Field, SQLModel

from config import DEFAULT_PATIENT_NAME
from errors import ValidationError

logger = logging.getLogger(__name__)


class SessionType(str, Enum):
    """The two fixed daily consultation blocks."""

    morning = "morning"
    evening = "evening"


class BookingStatus(str, Enum):
    """Possible statuses for a booking."""

    waiting = "waiting"
    consulted = "consulted"
    no_show = "no_show"


class EventType(str, Enum):
    booked = "booked"
    consulted = "consulted"
    no_show = "no_show"


class SessionConfig(SQLModel):
    session_type: SessionType
    name: str
    address: str = ""
    start_time: time
    end_time: time
    booking_open_time: time
    # None means booking stays open until end_time.
    booking_close_time: Optional[time] = None
    bookings_closed: bool = False

    @property
    def effective_close_time(self) -> time:
        return self.booking_close_time or self.end_time


class ClinicConfig(SQLModel):
    doctor_available: bool = True
    minutes_per_patient: int = Field(default=10, gt=0)
    morning: SessionConfig
    evening: SessionConfig

    def session(self, session_type: SessionType) -> SessionConfig:
        return self.morning if SessionType(session_type) == SessionType.morning else self.evening

    def apply(self, update: "ConfigUpdate") -> "ClinicConfig":
        """Return a new snapshot with the explicitly set fields of ``update``."""
        data = self.model_dump()
        changes = update.model_dump(exclude_unset=True)
        for key in ("morning", "evening"):
            session_changes = changes.pop(key, None)
            if session_changes:
                data[key].update(session_changes)
        data.update(changes)
        try:
            merged = ClinicConfig.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid clinic settings: {exc.errors()[0]['msg']}") from exc
        for session in (merged.morning, merged.evening):
            if not (session.booking_open_time <= session.effective_close_time <= session.end_time):
                logger.warning(
                    "Session %s has an unusual booking window %s-%s (ends %s)",
                    session.session_type.value,
                    session.booking_open_time,
                    session.effective_close_time,
                    session.end_time,
                )
        return merged


class SessionUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    booking_open_time: Optional[time] = None
    booking_close_time: Optional[time] = None
    bookings_closed: Optional[bool] = None


class ConfigUpdate(BaseModel):
    """Partial settings change.  Only fields that were set are applied."""

    doctor_available: Optional[bool] = None
    minutes_per_patient: Optional[int] = None
    morning: Optional[SessionUpdate] = None
    evening: Optional[SessionUpdate] = None


class Booking(SQLModel):
    id: str
    mobile: str
    patient_name: str = DEFAULT_PATIENT_NAME
    session_type: SessionType
    queue_number: int = Field(ge=1)
    booking_date: date
    status: BookingStatus = BookingStatus.waiting
    created_at: datetime
    updated_at: datetime
    consulted_at: Optional[datetime] = None

    @field_validator("patient_name", mode="before")
    @classmethod
    def _default_name(cls, value: Optional[str]) -> str:
        if value is None or not str(value).strip():
            return DEFAULT_PATIENT_NAME
        return str(value).strip()


class BookingEvent(SQLModel):
    booking_id: str
    event_type: EventType
    at: datetime
