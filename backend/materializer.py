"""Turn today's resolved day order into dated attendance sessions.

Safe to run repeatedly and concurrently: each session is committed together
with its MaterializationRecord, whose unique (slot, date) constraint turns a
racing duplicate into an IntegrityError that is reported as a skip.
"""
import logging
from datetime import date, datetime

from sqlmodel import Session, select

import config
from collaborators import Notifier, dispatch_session_created
from day_order import resolve
from errors import storage_guard
from models import AttendanceSession, MaterializationRecord, SessionStatus
from schemas import (
    MaterializationResult,
    PendingMaterialization,
    PendingSlot,
    SkippedSlot,
    SkipReason,
    SlotOut,
)
from sessions import generate_session_code, insert_session, to_session_out
from timetable import teaching_slots

logger = logging.getLogger(__name__)


def _slot_key(slot: SlotOut) -> tuple[str, int, int]:
    return slot.class_id, slot.day_order, slot.period_number


def _records_on(session: Session, unit_id: str, day: date) -> dict[tuple[str, int, int], int]:
    records = session.exec(
        select(MaterializationRecord)
        .where(MaterializationRecord.unit_id == unit_id)
        .where(MaterializationRecord.scheduled_date == day)
    ).all()
    return {(r.class_id, r.day_order, r.period_number): r.session_id for r in records}


def _record_for(session: Session, unit_id: str, slot: SlotOut, day: date) -> MaterializationRecord | None:
    return session.exec(
        select(MaterializationRecord)
        .where(MaterializationRecord.unit_id == unit_id)
        .where(MaterializationRecord.class_id == slot.class_id)
        .where(MaterializationRecord.day_order == slot.day_order)
        .where(MaterializationRecord.period_number == slot.period_number)
        .where(MaterializationRecord.scheduled_date == day)
    ).first()


def _slot_end(slot: SlotOut, day: date) -> datetime:
    return datetime.combine(day, slot.end_time)


def _planned_slots(
    session, unit_id, day_order, class_id, period_numbers, teacher_id=None
) -> list[SlotOut]:
    # Plain copies so a rollback mid-run never reloads (or loses) timetable rows
    return [
        SlotOut.model_validate(s)
        for s in teaching_slots(session, unit_id, day_order, class_id, period_numbers, teacher_id)
    ]


@storage_guard
def pending_materialization(
    session: Session,
    unit_id: str,
    class_id: str | None = None,
    period_numbers: list[int] | None = None,
    teacher_id: str | None = None,
    now: datetime | None = None,
) -> PendingMaterialization:
    """Preview what materialize_today would do, without writing anything."""
    now = now or config.local_now()
    today = now.date()
    resolution = resolve(session, unit_id, today)
    preview = PendingMaterialization(
        unit_id=unit_id,
        date=today,
        day_order=resolution.day_order,
        is_holiday=resolution.is_holiday,
        holiday_name=resolution.holiday_name,
    )
    if resolution.is_holiday:
        return preview

    existing = _records_on(session, unit_id, today)
    for slot in _planned_slots(
        session, unit_id, resolution.day_order, class_id, period_numbers, teacher_id
    ):
        session_id = existing.get(_slot_key(slot))
        preview.slots.append(
            PendingSlot(
                **slot.model_dump(),
                already_created=session_id is not None,
                is_past=now > _slot_end(slot, today),
                session_id=session_id,
            )
        )
    preview.total_entries = len(preview.slots)
    preview.already_created_count = sum(1 for s in preview.slots if s.already_created)
    preview.pending_count = sum(
        1 for s in preview.slots if not s.already_created and not s.is_past
    )
    return preview


def _create_for_slot(
    session: Session, unit_id: str, slot: SlotOut, today: date, now: datetime
) -> AttendanceSession | None:
    def build():
        return AttendanceSession(
            session_code=generate_session_code(config.SESSION_CODE_PREFIX_AUTO),
            unit_id=unit_id,
            class_id=slot.class_id,
            subject_id=slot.subject_id,
            teacher_id=slot.teacher_id,
            session_date=today,
            session_time=slot.start_time,
            expires_at=_slot_end(slot, today),
            status=SessionStatus.ACTIVE,
            auto_created=True,
            created_by="materializer",
            created_at=now,
        )

    def ledger_row(attendance_session):
        return MaterializationRecord(
            unit_id=unit_id,
            class_id=slot.class_id,
            day_order=slot.day_order,
            period_number=slot.period_number,
            scheduled_date=today,
            period_slot_id=slot.id,
            session_id=attendance_session.id,
            created_at=now,
        )

    def is_duplicate():
        return _record_for(session, unit_id, slot, today) is not None

    return insert_session(session, build, ledger_row=ledger_row, is_duplicate=is_duplicate)


@storage_guard
def materialize_today(
    session: Session,
    unit_id: str,
    class_id: str | None = None,
    period_numbers: list[int] | None = None,
    teacher_id: str | None = None,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> MaterializationResult:
    """Create one session per teaching slot of today's day order that lacks one."""
    now = now or config.local_now()
    today = now.date()
    resolution = resolve(session, unit_id, today)
    result = MaterializationResult(
        unit_id=unit_id,
        date=today,
        day_order=resolution.day_order,
        is_holiday=resolution.is_holiday,
        holiday_name=resolution.holiday_name,
    )
    if resolution.is_holiday:
        logger.info(
            f"Materialization for {unit_id} on {today} skipped: holiday ({resolution.holiday_name})"
        )
        result.skipped.append(SkippedSlot(reason=SkipReason.HOLIDAY_NO_OP))
        return result

    slots = _planned_slots(
        session, unit_id, resolution.day_order, class_id, period_numbers, teacher_id
    )
    existing = _records_on(session, unit_id, today)

    for slot in slots:
        skip = SkippedSlot(
            slot_id=slot.id,
            class_id=slot.class_id,
            period_number=slot.period_number,
            reason=SkipReason.ALREADY_EXISTS,
        )
        if _slot_key(slot) in existing:
            skip.session_id = existing[_slot_key(slot)]
            result.skipped.append(skip)
            continue
        if now > _slot_end(slot, today):
            skip.reason = SkipReason.SLOT_ALREADY_PAST
            result.skipped.append(skip)
            continue

        created = _create_for_slot(session, unit_id, slot, today, now)
        if created is None:
            record = _record_for(session, unit_id, slot, today)
            skip.reason = SkipReason.DUPLICATE_MATERIALIZATION
            skip.session_id = record.session_id if record else None
            logger.info(
                f"Concurrent materialization detected for class {slot.class_id} "
                f"period {slot.period_number} on {today}"
            )
            result.skipped.append(skip)
            continue
        result.created.append(to_session_out(created, now))

    logger.info(
        f"Materialized {unit_id} day {resolution.day_order} on {today}: "
        f"{len(result.created)} created, {len(result.skipped)} skipped"
    )
    for created in result.created:
        dispatch_session_created(notifier, created.id, [created.teacher_id])
    return result
