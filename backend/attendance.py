"""Attendance records: code-gated marking, on-duty grants and session scoring."""
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import config
from collaborators import RosterProvider
from errors import CodeAlreadyUsed, InvalidAdmission, storage_guard
from models import AttendanceRecord, AttendanceStatus, normalize_participant
from otp import IssuedCode, OneTimeCodeGate, decode_admission_token
from schemas import ParticipantStatus, SessionSummary
from sessions import effective_status, get_session_by_id, require_active

logger = logging.getLogger(__name__)


def _find_record(session: Session, session_id: int, participant: str) -> AttendanceRecord | None:
    return session.exec(
        select(AttendanceRecord)
        .where(AttendanceRecord.session_id == session_id)
        .where(AttendanceRecord.participant == participant)
    ).first()


@storage_guard
def issue_code(
    session: Session,
    gate: OneTimeCodeGate,
    session_id: int,
    participant: str,
    now: datetime | None = None,
) -> IssuedCode:
    now = now or config.local_now()
    require_active(get_session_by_id(session, session_id), now)
    return gate.issue(session, session_id, participant, now=now)


@storage_guard
def record_attendance(
    session: Session, token: str, session_id: int, now: datetime | None = None
) -> tuple[AttendanceRecord, bool]:
    """Write a present record authorized by an admission token.

    Returns (record, already_marked). The (session, participant) unique
    constraint decides races; the loser gets the winner's row back.
    """
    now = now or config.local_now()
    claims = decode_admission_token(token, now)
    if claims["sid"] != session_id:
        raise InvalidAdmission("Admission token was issued for another session")
    participant = claims["sub"]

    record = AttendanceRecord(
        session_id=session_id,
        participant=participant,
        status=AttendanceStatus.PRESENT,
        code_verified=True,
        marked_at=now,
    )
    session.add(record)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = _find_record(session, session_id, participant)
        if existing is None:
            raise
        logger.info(f"Duplicate attendance for {participant} on session {session_id}, already marked")
        return existing, True

    session.refresh(record)
    logger.info(f"Attendance marked for {participant} on session {session_id}")
    return record, False


@storage_guard
def mark_attendance(
    session: Session,
    gate: OneTimeCodeGate,
    session_id: int,
    participant: str,
    code: str,
    now: datetime | None = None,
) -> tuple[AttendanceRecord, bool]:
    """Verify the session is live, spend the code, then write the record.

    A retry after a successful mark answers with the existing record rather
    than an AlreadyUsed error. A retry that lands while the first request
    is still writing is readmitted and the record constraint picks one row.
    """
    now = now or config.local_now()
    participant = normalize_participant(participant)
    require_active(get_session_by_id(session, session_id), now)

    try:
        token = gate.consume(session, participant, code, now=now, session_id=session_id)
    except CodeAlreadyUsed:
        existing = _find_record(session, session_id, participant)
        if existing is not None:
            return existing, True
        token = gate.readmit(session, participant, code, now=now, session_id=session_id)
    return record_attendance(session, token, session_id, now=now)


@storage_guard
def grant_on_duty(
    session: Session,
    session_id: int,
    participant: str,
    actor: str | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    """Record an approved on-duty absence; upgrades any existing row."""
    now = now or config.local_now()
    get_session_by_id(session, session_id)
    participant = normalize_participant(participant)

    record = _find_record(session, session_id, participant)
    if record is None:
        record = AttendanceRecord(
            session_id=session_id,
            participant=participant,
            status=AttendanceStatus.ON_DUTY,
            code_verified=False,
            marked_at=now,
        )
        session.add(record)
        try:
            session.commit()
            session.refresh(record)
            logger.info(f"On-duty granted to {participant} on session {session_id} by {actor}")
            return record
        except IntegrityError:
            session.rollback()
            record = _find_record(session, session_id, participant)
            if record is None:
                raise

    old_status = record.status
    record.status = AttendanceStatus.ON_DUTY
    record.updated_at = now
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(
        f"On-duty granted to {participant} on session {session_id} by {actor} (was {old_status})"
    )
    return record


@storage_guard
def list_records(session: Session, session_id: int) -> list[AttendanceRecord]:
    get_session_by_id(session, session_id)
    return list(
        session.exec(
            select(AttendanceRecord)
            .where(AttendanceRecord.session_id == session_id)
            .order_by(AttendanceRecord.marked_at, AttendanceRecord.id)
        ).all()
    )


@storage_guard
def session_summary(
    session: Session,
    session_id: int,
    roster: RosterProvider | None = None,
    now: datetime | None = None,
) -> SessionSummary:
    """Score a session: roster members without a record count as absent."""
    now = now or config.local_now()
    attendance_session = get_session_by_id(session, session_id)
    records = {r.participant: r for r in list_records(session, session_id)}

    members = set(records)
    if roster is not None:
        members |= {normalize_participant(p) for p in roster.list_participants(attendance_session.class_id)}

    participants = []
    for participant in sorted(members):
        record = records.get(participant)
        participants.append(
            ParticipantStatus(
                participant=participant,
                status=record.status if record else AttendanceStatus.ABSENT,
                marked_at=record.marked_at if record else None,
            )
        )

    def count(status):
        return sum(1 for p in participants if p.status == status)

    return SessionSummary(
        session_id=session_id,
        status=effective_status(attendance_session, now),
        total=len(participants),
        present=count(AttendanceStatus.PRESENT),
        absent=count(AttendanceStatus.ABSENT),
        on_duty=count(AttendanceStatus.ON_DUTY),
        participants=participants,
    )
