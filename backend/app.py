import logging
from contextlib import asynccontextmanager
from datetime import date, datetime

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

import attendance
import config
import day_order
import materializer
import sessions
import timetable
from collaborators import (
    LoggingNotifier,
    StaticAssignments,
    StaticRoster,
    dispatch_session_created,
)
from db import create_db_and_tables, get_session, validate_schema
from errors import EngineError
from otp import OneTimeCodeGate
from schemas import (
    AttendanceRecordOut,
    ConfigOut,
    ConfigUpdateRequest,
    CopyDayRequest,
    CreateSessionRequest,
    DayOrderResolution,
    ExtendSessionRequest,
    IssueCodeRequest,
    IssueCodeResponse,
    MarkAttendanceRequest,
    MarkAttendanceResponse,
    MaterializationResult,
    MaterializeRequest,
    OnDutyRequest,
    OverrideHistoryResponse,
    OverrideOut,
    OverrideRequest,
    OverrideResponse,
    OverviewRow,
    PendingMaterialization,
    PeriodDefinitionOut,
    PeriodsUpdateRequest,
    SaveDayRequest,
    SaveEntryRequest,
    SessionMetadata,
    SessionOut,
    SessionSummary,
    SlotOut,
    SweepResponse,
    TimetableResponse,
    UpcomingResponse,
    VerifySessionRequest,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

code_gate = OneTimeCodeGate()
roster = StaticRoster()
assignments = StaticAssignments()
notifier = LoggingNotifier()


def get_now() -> datetime:
    return config.local_now()


def get_code_gate() -> OneTimeCodeGate:
    return code_gate


def get_roster():
    return roster


def get_assignments():
    return assignments


def get_notifier():
    return notifier


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and validate the database on startup."""
    create_db_and_tables()
    validate_schema()
    logger.info("Database initialized")
    yield


# Create FastAPI app
app = FastAPI(title="Day Order Attendance API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.code, "detail": exc.message},
    )


# ---------------------------------------------------------------------------
# Day order
# ---------------------------------------------------------------------------


@app.get("/day-order/current", response_model=DayOrderResolution)
def get_current_day_order(
    unit_id: str = Query(config.DEFAULT_UNIT),
    on: date | None = Query(None, description="Date to resolve (YYYY-MM-DD), defaults to today"),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Resolve the day order for a unit on a date."""
    return day_order.resolve(session, unit_id, on or now.date())


@app.get("/day-order/upcoming", response_model=UpcomingResponse)
def get_upcoming(
    unit_id: str = Query(config.DEFAULT_UNIT),
    days: int = Query(7, ge=1, le=60),
    start: date | None = Query(None, description="First date of the forecast, defaults to today"),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Forecast of day orders for the next `days` dates."""
    forecast = day_order.upcoming(session, unit_id, start or now.date(), days)
    return UpcomingResponse(unit_id=unit_id, days=forecast)


@app.get("/day-order/config", response_model=ConfigOut)
def get_config(
    unit_id: str = Query(config.DEFAULT_UNIT),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    return day_order.get_or_create_config(session, unit_id, today=now.date())


@app.post("/day-order/config", response_model=ConfigOut)
def update_config(
    request: ConfigUpdateRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Change cycle length / current day order; re-anchors at today."""
    logger.info(f"Config update request for unit {request.unit_id}: cycle={request.cycle_length}")
    return day_order.update_config(
        session,
        request.unit_id,
        request.cycle_length,
        request.anchor_day_order,
        actor=request.actor,
        today=now.date(),
    )


@app.get("/day-order/history", response_model=OverrideHistoryResponse)
def get_override_history(
    unit_id: str = Query(config.DEFAULT_UNIT),
    limit: int = Query(30, ge=1, le=365),
    session: Session = Depends(get_session),
):
    history = day_order.list_overrides(session, unit_id, limit)
    return OverrideHistoryResponse(
        unit_id=unit_id, history=[OverrideOut.model_validate(h) for h in history]
    )


@app.post("/day-order/overrides", response_model=OverrideResponse)
def set_override(request: OverrideRequest, session: Session = Depends(get_session)):
    """Pin a date to a day order or mark it a holiday (replaces any existing entry)."""
    logger.info(f"Override request for unit {request.unit_id} on {request.effective_date}")
    entry, replaced = day_order.set_override(
        session,
        request.unit_id,
        request.effective_date,
        day_order=request.day_order,
        is_holiday=request.is_holiday,
        holiday_name=request.holiday_name,
        reason=request.reason,
        actor=request.actor,
    )
    return OverrideResponse(replaced=replaced, override=OverrideOut.model_validate(entry))


@app.delete("/day-order/overrides")
def delete_override(
    effective_date: date = Query(..., description="Date of the override (YYYY-MM-DD)"),
    unit_id: str = Query(config.DEFAULT_UNIT),
    session: Session = Depends(get_session),
):
    day_order.delete_override(session, unit_id, effective_date)
    return {"ok": True, "message": "Day order override deleted"}


# ---------------------------------------------------------------------------
# Timetable
# ---------------------------------------------------------------------------


@app.get("/timetable/periods", response_model=list[PeriodDefinitionOut])
def get_periods(unit_id: str = Query(config.DEFAULT_UNIT), session: Session = Depends(get_session)):
    return timetable.list_period_definitions(session, unit_id)


@app.put("/timetable/periods", response_model=list[PeriodDefinitionOut])
def update_periods(request: PeriodsUpdateRequest, session: Session = Depends(get_session)):
    return timetable.replace_period_definitions(session, request.unit_id, request.periods)


@app.get("/timetable/overview", response_model=list[OverviewRow])
def get_overview(unit_id: str = Query(config.DEFAULT_UNIT), session: Session = Depends(get_session)):
    return timetable.overview(session, unit_id)


@app.get("/timetable/day", response_model=TimetableResponse)
def get_day_schedule(
    class_id: str,
    day_order: int = Query(..., ge=1),
    unit_id: str = Query(config.DEFAULT_UNIT),
    session: Session = Depends(get_session),
):
    """A day's periods, with period definitions filling unscheduled gaps."""
    return TimetableResponse(
        entries=timetable.get_day_schedule(session, unit_id, class_id, day_order)
    )


@app.get("/timetable", response_model=TimetableResponse)
def get_timetable(
    class_id: str,
    unit_id: str = Query(config.DEFAULT_UNIT),
    day_order: int | None = Query(None, ge=1),
    session: Session = Depends(get_session),
):
    slots = timetable.get_timetable(session, unit_id, class_id, day_order)
    return TimetableResponse(entries=[SlotOut.model_validate(s) for s in slots])


@app.put("/timetable/entry", response_model=SlotOut)
def save_timetable_entry(
    request: SaveEntryRequest,
    session: Session = Depends(get_session),
    assignment_provider=Depends(get_assignments),
):
    slot = timetable.save_entry(
        session,
        request.unit_id,
        request.class_id,
        request.day_order,
        request,
        assignments=assignment_provider,
    )
    return SlotOut.model_validate(slot)


@app.put("/timetable/day", response_model=TimetableResponse)
def save_timetable_day(
    request: SaveDayRequest,
    session: Session = Depends(get_session),
    assignment_provider=Depends(get_assignments),
):
    """Replace the whole schedule of one class for one day order."""
    logger.info(
        f"Save day request for class {request.class_id} day {request.day_order}: "
        f"{len(request.entries)} entries"
    )
    slots = timetable.save_day(
        session,
        request.unit_id,
        request.class_id,
        request.day_order,
        request.entries,
        assignments=assignment_provider,
    )
    return TimetableResponse(entries=[SlotOut.model_validate(s) for s in slots])


@app.post("/timetable/copy", response_model=TimetableResponse)
def copy_timetable_day(request: CopyDayRequest, session: Session = Depends(get_session)):
    slots = timetable.copy_day(
        session,
        request.unit_id,
        request.class_id,
        request.source_day_order,
        request.target_day_order,
    )
    return TimetableResponse(entries=[SlotOut.model_validate(s) for s in slots])


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


@app.get("/materialize/pending", response_model=PendingMaterialization)
def get_pending_materialization(
    unit_id: str = Query(config.DEFAULT_UNIT),
    class_id: str | None = None,
    period_numbers: list[int] = Query(default=[]),
    teacher_id: str | None = None,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Preview today's sessions without creating anything."""
    return materializer.pending_materialization(
        session,
        unit_id,
        class_id=class_id,
        period_numbers=period_numbers,
        teacher_id=teacher_id,
        now=now,
    )


@app.post("/materialize", response_model=MaterializationResult)
def materialize(
    request: MaterializeRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    session_notifier=Depends(get_notifier),
):
    """Create today's sessions from the timetable; safe to call repeatedly."""
    logger.info(
        f"Materialize request for unit {request.unit_id}, class {request.class_id}, "
        f"teacher {request.teacher_id}"
    )
    result = materializer.materialize_today(
        session,
        request.unit_id,
        class_id=request.class_id,
        period_numbers=request.period_numbers,
        teacher_id=request.teacher_id,
        now=now,
    )
    for created in result.created:
        background_tasks.add_task(
            dispatch_session_created, session_notifier, created.id, [created.teacher_id]
        )
    return result


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@app.post("/sessions", response_model=SessionOut)
def create_session(
    request: CreateSessionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    session_notifier=Depends(get_notifier),
):
    """Start an ad-hoc session outside the timetable."""
    created = sessions.create_session(
        session,
        request.unit_id,
        request.class_id,
        request.subject_id,
        request.teacher_id,
        expires_at=request.expires_at,
        duration_minutes=request.duration_minutes,
        actor=request.actor,
        now=now,
    )
    background_tasks.add_task(
        dispatch_session_created, session_notifier, created.id, [created.teacher_id]
    )
    return sessions.to_session_out(created, now)


@app.get("/sessions", response_model=list[SessionOut])
def list_sessions_on(
    unit_id: str = Query(config.DEFAULT_UNIT),
    on: date | None = Query(None, description="Session date (YYYY-MM-DD), defaults to today"),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    return [
        sessions.to_session_out(s, now)
        for s in sessions.sessions_on(session, unit_id, on or now.date())
    ]


@app.get("/sessions/active", response_model=list[SessionOut])
def list_active_sessions(
    unit_id: str | None = None,
    class_id: str | None = None,
    teacher_id: str | None = None,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    active = sessions.list_active_sessions(
        session, unit_id=unit_id, class_id=class_id, teacher_id=teacher_id, now=now
    )
    return [sessions.to_session_out(s, now) for s in active]


@app.post("/sessions/verify", response_model=SessionMetadata)
def verify_session(
    request: VerifySessionRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Look up a live session by code (or id) for display to a participant."""
    return sessions.verify_session(session, code=request.code, session_id=request.session_id, now=now)


@app.post("/sessions/sweep", response_model=SweepResponse)
def sweep_sessions(session: Session = Depends(get_session), now: datetime = Depends(get_now)):
    return SweepResponse(expired=sessions.sweep_expired(session, now=now))


@app.get("/sessions/{session_id}", response_model=SessionOut)
def get_attendance_session(
    session_id: int,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    return sessions.to_session_out(sessions.get_session_by_id(session, session_id), now)


@app.post("/sessions/{session_id}/extend", response_model=SessionOut)
def extend_session(
    session_id: int,
    request: ExtendSessionRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    extended = sessions.extend_session(session, session_id, request.expires_at, now=now)
    return sessions.to_session_out(extended, now)


@app.post("/sessions/{session_id}/complete", response_model=SessionOut)
def complete_session(
    session_id: int,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    completed = sessions.complete_session(session, session_id, now=now)
    return sessions.to_session_out(completed, now)


@app.post("/sessions/{session_id}/codes", response_model=IssueCodeResponse)
def issue_code(
    session_id: int,
    request: IssueCodeRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    gate: OneTimeCodeGate = Depends(get_code_gate),
):
    """Issue a one-time code; delivering it to the participant is the caller's job."""
    issued = attendance.issue_code(session, gate, session_id, request.participant, now=now)
    return IssueCodeResponse(
        session_id=issued.session_id,
        participant=issued.participant,
        code=issued.code,
        expires_at=issued.expires_at,
    )


@app.post("/sessions/{session_id}/attendance", response_model=MarkAttendanceResponse)
def mark_attendance(
    session_id: int,
    request: MarkAttendanceRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    gate: OneTimeCodeGate = Depends(get_code_gate),
):
    record, already_marked = attendance.mark_attendance(
        session, gate, session_id, request.participant, request.code, now=now
    )
    return MarkAttendanceResponse(
        already_marked=already_marked, record=AttendanceRecordOut.model_validate(record)
    )


@app.get("/sessions/{session_id}/attendance", response_model=list[AttendanceRecordOut])
def list_attendance(session_id: int, session: Session = Depends(get_session)):
    return attendance.list_records(session, session_id)


@app.post("/sessions/{session_id}/on-duty", response_model=AttendanceRecordOut)
def grant_on_duty(
    session_id: int,
    request: OnDutyRequest,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    """Hook for the on-duty approval workflow."""
    return attendance.grant_on_duty(session, session_id, request.participant, actor=request.actor, now=now)


@app.get("/sessions/{session_id}/summary", response_model=SessionSummary)
def get_session_summary(
    session_id: int,
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
    roster_provider=Depends(get_roster),
):
    return attendance.session_summary(session, session_id, roster=roster_provider, now=now)


@app.get("/")
def root():
    """Root endpoint."""
    return {"message": "Day Order Attendance API", "docs": "/docs"}
