"""Attendance session lifecycle: creation, verification, extension, completion.

Expiry is derived on read (`now > expires_at`), so no background timer is
needed; `sweep_expired` only persists the derived status for reporting.
State changes are conditional UPDATEs so concurrent callers cannot move a
session out of a terminal state.
"""
import logging
import secrets
from datetime import date, datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import config
from errors import (
    InvalidExtension,
    SessionNotActive,
    SessionNotFound,
    StorageConflict,
    storage_guard,
)
from models import AttendanceSession, SessionStatus
from otp import purge_stale_codes
from schemas import SessionMetadata, SessionOut

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CODE_ATTEMPTS = 5


def generate_session_code(prefix: str) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(config.SESSION_CODE_LENGTH))
    return prefix.upper() + suffix


def effective_status(attendance_session: AttendanceSession, now: datetime) -> str:
    if attendance_session.status == SessionStatus.ACTIVE and now > attendance_session.expires_at:
        return SessionStatus.EXPIRED
    return attendance_session.status


def remaining_seconds(attendance_session: AttendanceSession, now: datetime) -> int:
    return max(0, int((attendance_session.expires_at - now).total_seconds()))


def to_session_out(attendance_session: AttendanceSession, now: datetime) -> SessionOut:
    out = SessionOut.model_validate(attendance_session)
    out.status = effective_status(attendance_session, now)
    return out


def require_active(attendance_session: AttendanceSession, now: datetime) -> None:
    status = effective_status(attendance_session, now)
    if status != SessionStatus.ACTIVE:
        raise SessionNotActive(
            f"Session {attendance_session.session_code} is {status}", status=status
        )


@storage_guard
def get_session_by_id(session: Session, session_id: int) -> AttendanceSession:
    attendance_session = session.get(AttendanceSession, session_id)
    if attendance_session is None:
        raise SessionNotFound(f"Session {session_id} not found")
    return attendance_session


@storage_guard
def get_session_by_code(session: Session, code: str) -> AttendanceSession:
    normalized = (code or "").strip().upper()
    attendance_session = session.exec(
        select(AttendanceSession).where(AttendanceSession.session_code == normalized)
    ).first()
    if attendance_session is None:
        raise SessionNotFound(f"Session {normalized} not found")
    return attendance_session


def insert_session(session: Session, build, ledger_row=None, is_duplicate=None) -> AttendanceSession | None:
    """Insert the session returned by `build()`, retrying on session-code collisions.

    `ledger_row(attendance_session)` returns a row committed in the same
    transaction. When a commit fails and `is_duplicate()` then reports that
    another caller already produced this session, None is returned.
    """
    for _ in range(CODE_ATTEMPTS):
        attendance_session = build()
        session.add(attendance_session)
        try:
            session.flush()
            if ledger_row is not None:
                session.add(ledger_row(attendance_session))
            session.commit()
        except IntegrityError:
            session.rollback()
            if is_duplicate is not None and is_duplicate():
                return None
            continue
        session.refresh(attendance_session)
        return attendance_session
    raise StorageConflict("Could not allocate a unique session code")


@storage_guard
def create_session(
    session: Session,
    unit_id: str,
    class_id: str,
    subject_id: str,
    teacher_id: str,
    expires_at: datetime | None = None,
    duration_minutes: int | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> AttendanceSession:
    """Manual, ad-hoc session outside the timetable."""
    now = now or config.local_now()
    if expires_at is None:
        expires_at = now + timedelta(minutes=duration_minutes or config.MANUAL_SESSION_MINUTES)
    if expires_at <= now:
        raise InvalidExtension("Session must expire in the future")

    def build():
        return AttendanceSession(
            session_code=generate_session_code(config.SESSION_CODE_PREFIX_MANUAL),
            unit_id=unit_id,
            class_id=class_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            session_date=now.date(),
            session_time=now.time().replace(microsecond=0),
            expires_at=expires_at,
            status=SessionStatus.ACTIVE,
            auto_created=False,
            created_by=actor,
            created_at=now,
        )

    created = insert_session(session, build)
    logger.info(
        f"Manual session {created.session_code} created for class {class_id} "
        f"subject {subject_id} by {actor}, expires {created.expires_at}"
    )
    return created


@storage_guard
def verify_session(
    session: Session,
    code: str | None = None,
    session_id: int | None = None,
    now: datetime | None = None,
) -> SessionMetadata:
    """Display metadata for a live session; never mutates it."""
    now = now or config.local_now()
    if session_id is not None:
        attendance_session = get_session_by_id(session, session_id)
    else:
        attendance_session = get_session_by_code(session, code)
    require_active(attendance_session, now)
    return SessionMetadata(
        session_id=attendance_session.id,
        session_code=attendance_session.session_code,
        unit_id=attendance_session.unit_id,
        class_id=attendance_session.class_id,
        subject_id=attendance_session.subject_id,
        teacher_id=attendance_session.teacher_id,
        session_date=attendance_session.session_date,
        expires_at=attendance_session.expires_at,
        remaining_seconds=remaining_seconds(attendance_session, now),
    )


@storage_guard
def extend_session(
    session: Session, session_id: int, new_expires_at: datetime, now: datetime | None = None
) -> AttendanceSession:
    now = now or config.local_now()
    attendance_session = get_session_by_id(session, session_id)
    require_active(attendance_session, now)
    if new_expires_at <= attendance_session.expires_at:
        raise InvalidExtension("New expiry must be later than the current expiry")

    result = session.exec(
        update(AttendanceSession)
        .where(AttendanceSession.id == session_id)
        .where(AttendanceSession.status == SessionStatus.ACTIVE)
        .where(AttendanceSession.expires_at >= now)
        .where(AttendanceSession.expires_at < new_expires_at)
        .values(expires_at=new_expires_at, updated_at=now)
    )
    session.commit()
    session.refresh(attendance_session)
    if result.rowcount == 0:
        # Someone completed, expired or extended it further in the meantime
        require_active(attendance_session, now)
        raise InvalidExtension("New expiry must be later than the current expiry")

    logger.info(f"Session {attendance_session.session_code} extended to {new_expires_at}")
    return attendance_session


@storage_guard
def complete_session(session: Session, session_id: int, now: datetime | None = None) -> AttendanceSession:
    now = now or config.local_now()
    attendance_session = get_session_by_id(session, session_id)
    require_active(attendance_session, now)

    result = session.exec(
        update(AttendanceSession)
        .where(AttendanceSession.id == session_id)
        .where(AttendanceSession.status == SessionStatus.ACTIVE)
        .where(AttendanceSession.expires_at >= now)
        .values(status=SessionStatus.COMPLETED, completed_at=now, updated_at=now)
    )
    session.commit()
    session.refresh(attendance_session)
    if result.rowcount == 0:
        raise SessionNotActive(
            f"Session {attendance_session.session_code} is {effective_status(attendance_session, now)}",
            status=effective_status(attendance_session, now),
        )

    logger.info(f"Session {attendance_session.session_code} completed")
    return attendance_session


@storage_guard
def sweep_expired(session: Session, now: datetime | None = None) -> int:
    """Persist the derived `expired` status for sessions past their deadline.

    Also drops one-time codes that are long past their own expiry.
    """
    now = now or config.local_now()
    result = session.exec(
        update(AttendanceSession)
        .where(AttendanceSession.status == SessionStatus.ACTIVE)
        .where(AttendanceSession.expires_at < now)
        .values(status=SessionStatus.EXPIRED, updated_at=now)
    )
    session.commit()
    count = result.rowcount or 0
    if count:
        logger.info(f"Expiry sweep marked {count} session(s) expired")
    purge_stale_codes(session, now=now)
    return count


@storage_guard
def list_active_sessions(
    session: Session,
    unit_id: str | None = None,
    class_id: str | None = None,
    teacher_id: str | None = None,
    now: datetime | None = None,
) -> list[AttendanceSession]:
    now = now or config.local_now()
    stmt = (
        select(AttendanceSession)
        .where(AttendanceSession.status == SessionStatus.ACTIVE)
        .where(AttendanceSession.expires_at >= now)
    )
    if unit_id:
        stmt = stmt.where(AttendanceSession.unit_id == unit_id)
    if class_id:
        stmt = stmt.where(AttendanceSession.class_id == class_id)
    if teacher_id:
        stmt = stmt.where(AttendanceSession.teacher_id == teacher_id)
    stmt = stmt.order_by(AttendanceSession.created_at.desc(), AttendanceSession.id.desc())
    return list(session.exec(stmt).all())


@storage_guard
def sessions_on(session: Session, unit_id: str, day: date) -> list[AttendanceSession]:
    return list(
        session.exec(
            select(AttendanceSession)
            .where(AttendanceSession.unit_id == unit_id)
            .where(AttendanceSession.session_date == day)
            .order_by(AttendanceSession.session_time)
        ).all()
    )
