"""Relational ledger backed by SQLModel.

Works against SQLite for local development (the default ``queue.db``
next to this module) and PostgreSQL in production, chosen by
``DATABASE_URL``.  The unique constraint on (session_type, booking_date,
queue_number) is what serialises queue number assignment when several
patients book the same session at once; a partial unique index on
(mobile, booking_date) over bookings that are not consulted does the same
for the one-active-booking-per-day rule.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, List, Optional

from sqlalchemy import Index, UniqueConstraint, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from config import DATABASE_URL
from errors import ActiveBookingExists, InfraError, QueueError, QueueNumberTaken
from ledger import Ledger, default_config
from models import (
    Booking,
    BookingEvent,
    BookingStatus,
    ClinicConfig,
    ConfigUpdate,
    EventType,
    SessionConfig,
    SessionType,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUS_SQL = "status != 'consulted'"


class BookingRow(Booking, table=True):
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("session_type", "booking_date", "queue_number", name="uq_booking_queue_number"),
        # One booking per mobile per day until it is consulted.
        Index(
            "uq_booking_active_mobile",
            "mobile",
            "booking_date",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_SQL),
            postgresql_where=text(ACTIVE_STATUS_SQL),
        ),
    )

    id: str = Field(primary_key=True)
    mobile: str = Field(index=True)
    booking_date: date = Field(index=True)


class SessionRow(SessionConfig, table=True):
    __tablename__ = "clinic_sessions"

    session_type: SessionType = Field(primary_key=True)


class SettingsRow(SQLModel, table=True):
    __tablename__ = "clinic_settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    doctor_available: bool = Field(default=True)
    minutes_per_patient: int = Field(default=10)


class BookingEventRow(SQLModel, table=True):
    __tablename__ = "booking_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: str = Field(foreign_key="bookings.id", index=True)
    event_type: EventType
    at: datetime


def get_engine(url: str = DATABASE_URL) -> Engine:
    """Build an engine for ``url`` (SQLite file, in-memory SQLite or Postgres)."""
    if url.startswith("postgres://"):
        # Hosted providers still hand out the legacy scheme.
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def _to_booking(row: BookingRow) -> Booking:
    return Booking.model_validate(row.model_dump())


class SqlLedger(Ledger):
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self.engine = engine if engine is not None else get_engine()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except QueueError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Ledger operation failed: %s", exc)
            raise InfraError("The booking ledger is unavailable. Please try again.") from exc

    def init_db(self) -> None:
        """Create tables if they do not exist and seed default settings."""
        with self._session() as session:
            SQLModel.metadata.create_all(self.engine)
            if session.get(SettingsRow, 1) is None:
                config = default_config()
                session.add(SettingsRow(id=1, doctor_available=config.doctor_available,
                                        minutes_per_patient=config.minutes_per_patient))
                for seed in (config.morning, config.evening):
                    session.add(SessionRow(**seed.model_dump()))
                session.commit()
                logger.info("Seeded default clinic settings")

    def ping(self) -> None:
        with self._session() as session:
            session.connection().execute(text("SELECT 1"))

    @staticmethod
    def _has_active_booking(session: Session, mobile: str, booking_date: date) -> bool:
        stmt = select(BookingRow.id).where(
            BookingRow.mobile == mobile,
            BookingRow.booking_date == booking_date,
            BookingRow.status != BookingStatus.consulted,
        )
        return session.exec(stmt).first() is not None

    def insert_booking(self, booking: Booking) -> Booking:
        with self._session() as session:
            row = BookingRow(**booking.model_dump())
            try:
                session.add(row)
                session.flush()
                session.add(
                    BookingEventRow(booking_id=booking.id, event_type=EventType.booked, at=booking.created_at)
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if self._has_active_booking(session, booking.mobile, booking.booking_date):
                    raise ActiveBookingExists(
                        f"{booking.mobile} already has an active booking on {booking.booking_date}."
                    ) from exc
                raise QueueNumberTaken(
                    f"Queue number {booking.queue_number} is already taken for "
                    f"{booking.session_type.value} on {booking.booking_date}."
                ) from exc
            session.refresh(row)
            return _to_booking(row)

    def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        expected: BookingStatus,
        at: datetime,
    ) -> bool:
        values = {"status": status, "updated_at": at}
        if status == BookingStatus.consulted:
            values["consulted_at"] = at
        stmt = (
            update(BookingRow)
            .where(BookingRow.id == booking_id, BookingRow.status == expected)
            .values(**values)
        )
        with self._session() as session:
            result = session.connection().execute(stmt)
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(BookingEventRow(booking_id=booking_id, event_type=EventType(status.value), at=at))
            session.commit()
            return True

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._session() as session:
            row = session.get(BookingRow, booking_id)
            return _to_booking(row) if row else None

    def query_bookings(
        self,
        session_type: Optional[SessionType] = None,
        booking_date: Optional[date] = None,
        status: Optional[BookingStatus] = None,
        mobile: Optional[str] = None,
    ) -> List[Booking]:
        stmt = select(BookingRow)
        if session_type is not None:
            stmt = stmt.where(BookingRow.session_type == session_type)
        if booking_date is not None:
            stmt = stmt.where(BookingRow.booking_date == booking_date)
        if status is not None:
            stmt = stmt.where(BookingRow.status == status)
        if mobile is not None:
            stmt = stmt.where(BookingRow.mobile == mobile)
        stmt = stmt.order_by(BookingRow.booking_date, BookingRow.session_type, BookingRow.queue_number)
        with self._session() as session:
            return [_to_booking(row) for row in session.exec(stmt).all()]

    def _load_config(self, session: Session) -> ClinicConfig:
        settings = session.get(SettingsRow, 1)
        sessions = {row.session_type: row for row in session.exec(select(SessionRow)).all()}
        if settings is None or len(sessions) != len(SessionType):
            raise InfraError("Clinic settings have not been initialised.")
        return ClinicConfig(
            doctor_available=settings.doctor_available,
            minutes_per_patient=settings.minutes_per_patient,
            morning=SessionConfig.model_validate(sessions[SessionType.morning].model_dump()),
            evening=SessionConfig.model_validate(sessions[SessionType.evening].model_dump()),
        )

    def read_config(self) -> ClinicConfig:
        with self._session() as session:
            return self._load_config(session)

    def update_config(self, update: ConfigUpdate) -> ClinicConfig:
        with self._session() as session:
            merged = self._load_config(session).apply(update)
            settings = session.get(SettingsRow, 1)
            settings.doctor_available = merged.doctor_available
            settings.minutes_per_patient = merged.minutes_per_patient
            session.add(settings)
            for cfg in (merged.morning, merged.evening):
                row = session.get(SessionRow, cfg.session_type)
                for key, value in cfg.model_dump().items():
                    setattr(row, key, value)
                session.add(row)
            session.commit()
            return merged

    def booking_events(self, booking_id: str) -> List[BookingEvent]:
        stmt = (
            select(BookingEventRow)
            .where(BookingEventRow.booking_id == booking_id)
            .order_by(BookingEventRow.id)
        )
        with self._session() as session:
            return [
                BookingEvent(booking_id=row.booking_id, event_type=row.event_type, at=row.at)
                for row in session.exec(stmt).all()
            ]
