"""Runtime configuration for the clinic slot queue.

Everything is read from environment variables so the same code runs
locally (SQLite file next to this module, no Redis) and in a hosted
deployment (PostgreSQL + Redis).  Seed values for the two sessions are
used only the first time a ledger is initialised; afterwards staff edit
them through the settings endpoints.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Dict

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")
ADMIN_PASS = os.getenv("ADMIN_PASS", "demo")
PORT = int(os.getenv("PORT", 8000))

# IANA zone name, e.g. "Asia/Kolkata".  Empty means the host's local time.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

QUEUE_ASSIGN_ATTEMPTS = int(os.getenv("QUEUE_ASSIGN_ATTEMPTS", 5))
DEFAULT_MINUTES_PER_PATIENT = int(os.getenv("DEFAULT_MINUTES_PER_PATIENT", 10))

# Booking attempts allowed per mobile number inside the window (seconds).
BOOKING_RATE_LIMIT = int(os.getenv("BOOKING_RATE_LIMIT", 10))
BOOKING_RATE_WINDOW = int(os.getenv("BOOKING_RATE_WINDOW", 300))

DEFAULT_PATIENT_NAME = "Guest Patient"

SEED_SESSIONS: Dict[str, Dict[str, Any]] = {
    "morning": {
        "session_type": "morning",
        "name": "Clinic A - Morning Wellness Center",
        "address": "123 Health Street, Medical District",
        "start_time": "10:00",
        "end_time": "13:00",
        "booking_open_time": "09:00",
        "booking_close_time": None,
        "bookings_closed": False,
    },
    "evening": {
        "session_type": "evening",
        "name": "Clinic B - Evening Care Center",
        "address": "456 Healing Avenue, Wellness Park",
        "start_time": "17:00",
        "end_time": "20:00",
        "booking_open_time": "18:00",
        "booking_close_time": None,
        "bookings_closed": False,
    },
}


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
