"""Period definitions and per-class, per-day-order period slots."""
import logging
from datetime import time

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, delete, select

import config
from collaborators import AssignmentProvider
from day_order import get_or_create_config
from errors import InvalidTimetableEntry, TimetableNotFound, storage_guard
from models import PeriodDefinition, PeriodSlot
from schemas import OverviewRow, PeriodDefinitionIn, SlotIn, SlotOut

logger = logging.getLogger(__name__)


@storage_guard
def list_period_definitions(session: Session, unit_id: str) -> list[PeriodDefinition]:
    return list(
        session.exec(
            select(PeriodDefinition)
            .where(PeriodDefinition.unit_id == unit_id)
            .order_by(PeriodDefinition.period_number)
        ).all()
    )


@storage_guard
def replace_period_definitions(
    session: Session, unit_id: str, periods: list[PeriodDefinitionIn]
) -> list[PeriodDefinition]:
    """Replace the unit's period template in one transaction."""
    session.exec(delete(PeriodDefinition).where(PeriodDefinition.unit_id == unit_id))
    rows = [
        PeriodDefinition(
            unit_id=unit_id,
            period_number=p.period_number,
            name=p.name,
            start_time=p.start_time,
            end_time=p.end_time,
            is_break=p.is_break,
        )
        for p in periods
    ]
    session.add_all(rows)
    session.commit()
    logger.info(f"Replaced period definitions for unit {unit_id}: {len(rows)} periods")
    return list_period_definitions(session, unit_id)


def _check_day_order(session: Session, unit_id: str, day_order: int) -> None:
    cycle_length = get_or_create_config(session, unit_id).cycle_length
    if not 1 <= day_order <= cycle_length:
        raise InvalidTimetableEntry(f"Day order must be between 1 and {cycle_length}")


def _window(
    entry: SlotIn, templates: dict[int, PeriodDefinition]
) -> tuple[time, time]:
    template = templates.get(entry.period_number)
    start = entry.start_time or (template.start_time if template else None)
    end = entry.end_time or (template.end_time if template else None)
    if start is None or end is None:
        raise InvalidTimetableEntry(
            f"Period {entry.period_number} has no time window and no period definition"
        )
    if start >= end:
        raise InvalidTimetableEntry(f"Period {entry.period_number} starts after it ends")
    return start, end


def _check_assignment(
    assignments: AssignmentProvider | None, class_id: str, entry: SlotIn
) -> None:
    if assignments is None or entry.is_break:
        return
    allowed = assignments.list_assignments(class_id)
    if allowed and (entry.subject_id, entry.teacher_id) not in set(allowed):
        raise InvalidTimetableEntry(
            f"Teacher {entry.teacher_id} is not assigned to subject {entry.subject_id} "
            f"for class {class_id}"
        )


def _templates(session: Session, unit_id: str) -> dict[int, PeriodDefinition]:
    return {p.period_number: p for p in list_period_definitions(session, unit_id)}


def _apply(slot: PeriodSlot, entry: SlotIn, start: time, end: time) -> PeriodSlot:
    slot.start_time = start
    slot.end_time = end
    slot.is_break = entry.is_break
    slot.break_name = entry.break_name if entry.is_break else None
    slot.subject_id = None if entry.is_break else entry.subject_id
    slot.teacher_id = None if entry.is_break else entry.teacher_id
    return slot


def _find_slot(
    session: Session, unit_id: str, class_id: str, day_order: int, period_number: int
) -> PeriodSlot | None:
    return session.exec(
        select(PeriodSlot)
        .where(PeriodSlot.unit_id == unit_id)
        .where(PeriodSlot.class_id == class_id)
        .where(PeriodSlot.day_order == day_order)
        .where(PeriodSlot.period_number == period_number)
    ).first()


@storage_guard
def save_entry(
    session: Session,
    unit_id: str,
    class_id: str,
    day_order: int,
    entry: SlotIn,
    assignments: AssignmentProvider | None = None,
) -> PeriodSlot:
    """Upsert a single period slot on (unit, class, day order, period)."""
    _check_day_order(session, unit_id, day_order)
    _check_assignment(assignments, class_id, entry)
    start, end = _window(entry, _templates(session, unit_id))

    slot = _find_slot(session, unit_id, class_id, day_order, entry.period_number)
    if slot is None:
        slot = PeriodSlot(
            unit_id=unit_id,
            class_id=class_id,
            day_order=day_order,
            period_number=entry.period_number,
            start_time=start,
            end_time=end,
        )
        _apply(slot, entry, start, end)
        session.add(slot)
        try:
            session.commit()
            session.refresh(slot)
            return slot
        except IntegrityError:
            session.rollback()
            slot = _find_slot(session, unit_id, class_id, day_order, entry.period_number)
            if slot is None:
                raise

    _apply(slot, entry, start, end)
    slot.updated_at = config.local_now()
    session.add(slot)
    session.commit()
    session.refresh(slot)
    return slot


@storage_guard
def save_day(
    session: Session,
    unit_id: str,
    class_id: str,
    day_order: int,
    entries: list[SlotIn],
    assignments: AssignmentProvider | None = None,
) -> list[PeriodSlot]:
    """Replace a class's whole schedule for one day order (delete-then-insert)."""
    _check_day_order(session, unit_id, day_order)
    templates = _templates(session, unit_id)
    rows = []
    for entry in entries:
        _check_assignment(assignments, class_id, entry)
        start, end = _window(entry, templates)
        slot = PeriodSlot(
            unit_id=unit_id,
            class_id=class_id,
            day_order=day_order,
            period_number=entry.period_number,
            start_time=start,
            end_time=end,
        )
        rows.append(_apply(slot, entry, start, end))

    session.exec(
        delete(PeriodSlot)
        .where(PeriodSlot.unit_id == unit_id)
        .where(PeriodSlot.class_id == class_id)
        .where(PeriodSlot.day_order == day_order)
    )
    session.add_all(rows)
    session.commit()
    logger.info(
        f"Saved day {day_order} for class {class_id} ({unit_id}): {len(rows)} periods"
    )
    return get_timetable(session, unit_id, class_id, day_order)


@storage_guard
def copy_day(
    session: Session, unit_id: str, class_id: str, source_day_order: int, target_day_order: int
) -> list[PeriodSlot]:
    _check_day_order(session, unit_id, target_day_order)
    source = get_timetable(session, unit_id, class_id, source_day_order)
    if not source:
        raise TimetableNotFound(
            f"No timetable for class {class_id} on day order {source_day_order}"
        )
    copies = [
        PeriodSlot(
            unit_id=unit_id,
            class_id=class_id,
            day_order=target_day_order,
            period_number=s.period_number,
            start_time=s.start_time,
            end_time=s.end_time,
            is_break=s.is_break,
            break_name=s.break_name,
            subject_id=s.subject_id,
            teacher_id=s.teacher_id,
        )
        for s in source
    ]
    session.exec(
        delete(PeriodSlot)
        .where(PeriodSlot.unit_id == unit_id)
        .where(PeriodSlot.class_id == class_id)
        .where(PeriodSlot.day_order == target_day_order)
    )
    session.add_all(copies)
    session.commit()
    logger.info(
        f"Copied day {source_day_order} -> {target_day_order} for class {class_id} ({unit_id})"
    )
    return get_timetable(session, unit_id, class_id, target_day_order)


@storage_guard
def get_timetable(
    session: Session, unit_id: str, class_id: str, day_order: int | None = None
) -> list[PeriodSlot]:
    stmt = (
        select(PeriodSlot)
        .where(PeriodSlot.unit_id == unit_id)
        .where(PeriodSlot.class_id == class_id)
    )
    if day_order is not None:
        stmt = stmt.where(PeriodSlot.day_order == day_order)
    stmt = stmt.order_by(PeriodSlot.day_order, PeriodSlot.period_number)
    return list(session.exec(stmt).all())


@storage_guard
def get_day_schedule(session: Session, unit_id: str, class_id: str, day_order: int) -> list[SlotOut]:
    """A day's slots with period-definition placeholders filling any gaps."""
    templates = _templates(session, unit_id)
    slots = {s.period_number: s for s in get_timetable(session, unit_id, class_id, day_order)}

    merged = []
    for number in sorted(set(slots) | set(templates)):
        template = templates.get(number)
        if number in slots:
            out = SlotOut.model_validate(slots[number])
            out.name = template.name if template else None
        else:
            out = SlotOut(
                unit_id=unit_id,
                class_id=class_id,
                day_order=day_order,
                period_number=number,
                start_time=template.start_time,
                end_time=template.end_time,
                is_break=template.is_break,
                break_name=template.name if template.is_break else None,
                name=template.name,
                is_template=True,
            )
        merged.append(out)
    return merged


@storage_guard
def overview(session: Session, unit_id: str) -> list[OverviewRow]:
    rows = session.exec(
        select(PeriodSlot.class_id, PeriodSlot.day_order)
        .where(PeriodSlot.unit_id == unit_id)
        .distinct()
    ).all()
    grouped: dict[str, set[int]] = {}
    for class_id, day_order in rows:
        grouped.setdefault(class_id, set()).add(day_order)
    return [
        OverviewRow(class_id=class_id, day_orders_configured=sorted(days))
        for class_id, days in sorted(grouped.items())
    ]


@storage_guard
def teaching_slots(
    session: Session,
    unit_id: str,
    day_order: int,
    class_id: str | None = None,
    period_numbers: list[int] | None = None,
    teacher_id: str | None = None,
) -> list[PeriodSlot]:
    """Non-break slots with a subject and teacher, in class/period order."""
    stmt = (
        select(PeriodSlot)
        .where(PeriodSlot.unit_id == unit_id)
        .where(PeriodSlot.day_order == day_order)
        .where(PeriodSlot.is_break == False)  # noqa: E712
        .where(PeriodSlot.subject_id.is_not(None))
        .where(PeriodSlot.teacher_id.is_not(None))
    )
    if class_id:
        stmt = stmt.where(PeriodSlot.class_id == class_id)
    if teacher_id:
        stmt = stmt.where(PeriodSlot.teacher_id == teacher_id)
    if period_numbers:
        stmt = stmt.where(PeriodSlot.period_number.in_(period_numbers))
    stmt = stmt.order_by(PeriodSlot.class_id, PeriodSlot.period_number)
    return list(session.exec(stmt).all())
