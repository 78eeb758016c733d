"""FastAPI application for the clinic slot queue.

Patients book a numbered slot in the morning or evening session and
follow their position and expected consultation time.  Staff endpoints
(guarded by the shared ``ADMIN_PASS`` passcode) mark patients consulted
or no-show, toggle doctor availability, close or reopen a session's
intake and edit clinic settings.  ``/events`` streams a fresh queue
snapshot whenever the change feed reports a write.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

import config
from clock import SystemClock
from errors import (
    AlreadyBooked,
    BookingNotFound,
    InfraError,
    InvalidTransition,
    QueueError,
    ValidationError,
    WindowClosed,
)
from ledger_sql import SqlLedger
from models import ClinicConfig, ConfigUpdate
from realtime import build_change_feed, check_rate_limit, get_redis
from schemas import (
    ActionRequest,
    AvailabilityRequest,
    BookingRequest,
    BookingView,
    DailyStats,
    QueueBoard,
    SessionOverview,
    normalize_mobile,
)
from services import QueueService

config.setup_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (ValidationError, 422),
    (AlreadyBooked, 409),
    (WindowClosed, 403),
    (BookingNotFound, 404),
    (InvalidTransition, 409),
    (InfraError, 503),
]

HEARTBEAT_SECONDS = 15.0

router = APIRouter()


def build_service() -> QueueService:
    """Wire the production service: SQL ledger, clinic clock, change feed."""
    ledger = SqlLedger()
    ledger.init_db()
    return QueueService(ledger, SystemClock(config.CLINIC_TIMEZONE or None), build_change_feed())


def _service(request: Request) -> QueueService:
    return request.app.state.service


def _require_staff(passcode: str) -> None:
    if passcode != config.ADMIN_PASS:
        raise HTTPException(status_code=401, detail="Invalid passcode")


def _public_board(board: QueueBoard) -> Dict[str, Any]:
    return {
        "booking_date": board.booking_date.isoformat(),
        "morning": [view.masked().model_dump(mode="json") for view in board.morning],
        "evening": [view.masked().model_dump(mode="json") for view in board.evening],
    }


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    content: Dict[str, Any] = {"error": exc.code, "message": exc.message}
    if isinstance(exc, WindowClosed):
        content["reason"] = exc.reason
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=content)


@router.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint with system status."""
    return {
        "service": "Clinic Slot Queue API",
        "status": "running",
        "version": "1.0.0",
        "endpoints": {
            "sessions": "/sessions/{session}",
            "book": "/bookings",
            "queue": "/queue/{session}",
            "admin_board": "/admin/board",
            "events": "/events",
        },
    }


@router.get("/health")
def health_check(request: Request) -> Dict[str, Any]:
    service = _service(request)
    try:
        service.ledger.ping()
    except InfraError as exc:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {exc.message}")
    return {
        "status": "healthy",
        "database": "connected",
        "redis": "connected" if get_redis() else "unavailable",
    }


@router.get("/sessions/{session}", response_model=SessionOverview)
def session_overview(session: str, request: Request) -> SessionOverview:
    """Booking card data: window state, countdown and queue length."""
    return _service(request).session_overview(session)


@router.post("/bookings", response_model=BookingView, status_code=201)
def create_booking(body: BookingRequest, request: Request) -> BookingView:
    if not body.confirmed_human:
        raise ValidationError("Please confirm you are not a robot.")
    mobile = normalize_mobile(body.mobile)
    if not check_rate_limit(mobile, "booking", limit=config.BOOKING_RATE_LIMIT, window=config.BOOKING_RATE_WINDOW):
        raise HTTPException(status_code=429, detail="Too many requests. Please wait a few minutes before trying again.")
    return _service(request).create_booking(mobile, body.patient_name, body.session)


@router.get("/bookings", response_model=BookingView)
def my_booking(mobile: str, request: Request) -> BookingView:
    """Today's active booking for a mobile number."""
    view = _service(request).find_active_booking(mobile)
    if view is None:
        raise BookingNotFound("No booking found for today. Book a slot to join the queue.")
    return view


@router.get("/bookings/{booking_id}", response_model=BookingView)
def get_booking(booking_id: str, request: Request) -> BookingView:
    return _service(request).get_booking(booking_id)


@router.get("/queue/{session}")
def public_queue(session: str, request: Request) -> Dict[str, Any]:
    views = _service(request).queue_for_session(session)
    return {"session": session, "bookings": [view.masked().model_dump(mode="json") for view in views]}


@router.get("/admin/board", response_model=QueueBoard)
def admin_board(passcode: str, request: Request) -> QueueBoard:
    _require_staff(passcode)
    return _service(request).board()


@router.post("/admin/action", response_model=QueueBoard)
def admin_action(body: ActionRequest, request: Request) -> QueueBoard:
    """Mark a booking consulted or no-show and return the updated board."""
    _require_staff(body.passcode)
    service = _service(request)
    actions = {
        "consulted": service.mark_consulted,
        "no_show": service.mark_no_show,
    }
    handler = actions.get(body.action)
    if handler is None:
        raise HTTPException(status_code=400, detail="Invalid action")
    handler(body.booking_id)
    return service.board()


@router.post("/admin/availability", response_model=ClinicConfig)
def admin_availability(body: AvailabilityRequest, request: Request) -> ClinicConfig:
    _require_staff(body.passcode)
    return _service(request).set_availability(body.available)


@router.post("/admin/sessions/{session}/close", response_model=ClinicConfig)
def admin_close_session(session: str, passcode: str, request: Request) -> ClinicConfig:
    _require_staff(passcode)
    return _service(request).close_bookings(session)


@router.post("/admin/sessions/{session}/reopen", response_model=ClinicConfig)
def admin_reopen_session(session: str, passcode: str, request: Request) -> ClinicConfig:
    _require_staff(passcode)
    return _service(request).reopen_bookings(session)


@router.patch("/admin/settings", response_model=ClinicConfig)
def admin_settings(body: ConfigUpdate, passcode: str, request: Request) -> ClinicConfig:
    _require_staff(passcode)
    return _service(request).update_settings(body)


@router.post("/admin/new-day", response_model=ClinicConfig)
def admin_new_day(passcode: str, request: Request) -> ClinicConfig:
    _require_staff(passcode)
    return _service(request).start_new_day()


@router.get("/admin/stats", response_model=DailyStats)
def admin_stats(passcode: str, request: Request) -> DailyStats:
    _require_staff(passcode)
    return _service(request).daily_stats()


async def queue_event_stream(
    service: QueueService,
    request: Request,
    limit: Optional[int] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames: a snapshot, then a fresh snapshot per change.

    The feed subscription lives only while the generator runs, so a
    response dropped before streaming never leaves a listener behind.
    ``limit`` ends the stream after that many snapshots.
    """
    loop = asyncio.get_running_loop()
    changes: asyncio.Queue = asyncio.Queue()

    def on_change(kind: str) -> None:
        loop.call_soon_threadsafe(changes.put_nowait, kind)

    unsubscribe = service.feed.subscribe(on_change)
    try:
        board = await run_in_threadpool(service.board)
        yield f"data: {json.dumps({'type': 'snapshot', 'data': _public_board(board)})}\n\n"
        sent = 1
        while (limit is None or sent < limit) and not await request.is_disconnected():
            try:
                kind = await asyncio.wait_for(changes.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                continue
            # The feed is only a hint; always send what the ledger says now.
            board = await run_in_threadpool(service.board)
            yield f"data: {json.dumps({'type': kind, 'data': _public_board(board)})}\n\n"
            sent += 1
    finally:
        unsubscribe()


@router.get("/events")
async def queue_events(request: Request, limit: Optional[int] = None) -> StreamingResponse:
    """Server-Sent Events: a masked queue snapshot after every change."""
    if limit is not None and limit < 1:
        raise ValidationError("limit must be at least 1.")
    return StreamingResponse(
        queue_event_stream(_service(request), request, limit),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def create_app(service: Optional[QueueService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            logger.info("🚀 Starting Clinic Slot Queue application...")
            logger.info("🗄️ Database: %s", "PostgreSQL" if config.DATABASE_URL.startswith("postgres") else "SQLite")
            logger.info("⚡ Redis: %s", "configured" if config.REDIS_URL else "not configured")
            app.state.service = build_service()
            logger.info("✅ Clinic Slot Queue started successfully!")
        yield
        app.state.service.feed.close()

    app = FastAPI(
        title="Clinic Slot Queue",
        description="Same-day slot booking with live queue positions for a two-session clinic",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QueueError, queue_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
