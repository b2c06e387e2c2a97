"""Day-order configuration, override ledger and calendar resolution."""
import logging
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import config
from errors import (
    InvalidCycleLength,
    InvalidDayOrder,
    InvalidOverride,
    OverrideNotFound,
    storage_guard,
)
from models import DayOrderConfig, DayOrderConfigRevision, DayOrderOverride
from schemas import DayOrderResolution

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def compute_day_order(anchor_day_order: int, anchor_date: date, day: date, cycle_length: int) -> int:
    """Rotate forward (or backward, for dates before the anchor) from a known day order."""
    elapsed_days = (day - anchor_date).days
    # Python's % already yields a non-negative result for a positive modulus
    return ((anchor_day_order - 1 + elapsed_days) % cycle_length) + 1


def is_weekly_rest_day(day: date) -> bool:
    return day.weekday() == config.WEEKLY_REST_DAY


def _today() -> date:
    return config.local_now().date()


def _fetch_config(session: Session, unit_id: str) -> DayOrderConfig | None:
    return session.exec(
        select(DayOrderConfig).where(DayOrderConfig.unit_id == unit_id)
    ).first()


@storage_guard
def get_or_create_config(session: Session, unit_id: str, today: date | None = None) -> DayOrderConfig:
    """Return the unit's configuration, synthesizing the default on first access."""
    existing = _fetch_config(session, unit_id)
    if existing:
        return existing

    today = today or _today()
    default = DayOrderConfig(
        unit_id=unit_id,
        cycle_length=config.DEFAULT_CYCLE_LENGTH,
        anchor_day_order=1,
        anchor_date=today,
    )
    session.add(default)
    session.add(
        DayOrderConfigRevision(
            unit_id=unit_id,
            cycle_length=default.cycle_length,
            anchor_day_order=default.anchor_day_order,
            anchor_date=today,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        # Another caller created it first
        session.rollback()
        existing = _fetch_config(session, unit_id)
        if existing is None:
            raise
        return existing

    session.refresh(default)
    logger.info(
        f"Created default day order config for unit {unit_id}: "
        f"cycle={default.cycle_length}, anchor={default.anchor_date}"
    )
    return default


def _revisions(session: Session, unit_id: str) -> list[DayOrderConfigRevision]:
    return list(
        session.exec(
            select(DayOrderConfigRevision)
            .where(DayOrderConfigRevision.unit_id == unit_id)
            .order_by(DayOrderConfigRevision.anchor_date)
        ).all()
    )


@storage_guard
def revision_in_force(session: Session, unit_id: str, day: date) -> DayOrderConfigRevision:
    """The configuration revision that governs `day`.

    Dates before the first revision use the first one, rotating backward.
    """
    current = get_or_create_config(session, unit_id)
    revisions = _revisions(session, unit_id)
    if not revisions:
        return DayOrderConfigRevision(
            unit_id=unit_id,
            cycle_length=current.cycle_length,
            anchor_day_order=current.anchor_day_order,
            anchor_date=current.anchor_date,
        )

    chosen = revisions[0]
    for revision in revisions:
        if revision.anchor_date <= day:
            chosen = revision
        else:
            break
    return chosen


@storage_guard
def update_config(
    session: Session,
    unit_id: str,
    cycle_length: int,
    anchor_day_order: int | None = None,
    actor: str | None = None,
    today: date | None = None,
) -> DayOrderConfig:
    """Change the cycle length / current day order, re-anchoring at today."""
    if cycle_length is None or not 1 <= cycle_length <= config.MAX_CYCLE_LENGTH:
        raise InvalidCycleLength(
            f"Cycle length must be between 1 and {config.MAX_CYCLE_LENGTH}"
        )
    anchor_day_order = anchor_day_order or 1
    if not 1 <= anchor_day_order <= cycle_length:
        raise InvalidDayOrder(f"Day order must be between 1 and {cycle_length}")

    today = today or _today()
    current = get_or_create_config(session, unit_id, today=today)
    old = (current.cycle_length, current.anchor_day_order, current.anchor_date)

    current.cycle_length = cycle_length
    current.anchor_day_order = anchor_day_order
    current.anchor_date = today
    current.updated_by = actor
    current.updated_at = config.local_now()
    session.add(current)

    revision = session.exec(
        select(DayOrderConfigRevision)
        .where(DayOrderConfigRevision.unit_id == unit_id)
        .where(DayOrderConfigRevision.anchor_date == today)
    ).first()
    if revision:
        revision.cycle_length = cycle_length
        revision.anchor_day_order = anchor_day_order
        revision.actor = actor
    else:
        revision = DayOrderConfigRevision(
            unit_id=unit_id,
            cycle_length=cycle_length,
            anchor_day_order=anchor_day_order,
            anchor_date=today,
            actor=actor,
        )
    session.add(revision)
    session.commit()
    session.refresh(current)

    logger.info(
        f"Day order config for unit {unit_id} changed by {actor}: "
        f"(cycle, day, anchor) {old} -> "
        f"{(current.cycle_length, current.anchor_day_order, current.anchor_date)}"
    )
    return current


@storage_guard
def get_override(session: Session, unit_id: str, effective_date: date) -> DayOrderOverride | None:
    return session.exec(
        select(DayOrderOverride)
        .where(DayOrderOverride.unit_id == unit_id)
        .where(DayOrderOverride.effective_date == effective_date)
    ).first()


@storage_guard
def set_override(
    session: Session,
    unit_id: str,
    effective_date: date,
    day_order: int | None = None,
    is_holiday: bool = False,
    holiday_name: str | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> tuple[DayOrderOverride, bool]:
    """Pin a date to a day order or holiday. Returns (override, replaced).

    An existing entry for the same date is overwritten (last writer wins).
    """
    if is_holiday:
        day_order = None
        holiday_name = (holiday_name or "").strip() or "Holiday"
    else:
        if day_order is None:
            raise InvalidOverride("Day order is required unless the date is a holiday")
        cycle_length = revision_in_force(session, unit_id, effective_date).cycle_length
        if not 1 <= day_order <= cycle_length:
            raise InvalidDayOrder(f"Day order must be between 1 and {cycle_length}")
        holiday_name = None

    now = config.local_now()
    existing = get_override(session, unit_id, effective_date)
    if existing is None:
        entry = DayOrderOverride(
            unit_id=unit_id,
            effective_date=effective_date,
            day_order=day_order,
            is_holiday=is_holiday,
            holiday_name=holiday_name,
            reason=reason,
            actor=actor,
        )
        session.add(entry)
        try:
            session.commit()
            session.refresh(entry)
            logger.info(
                f"Override set for unit {unit_id} on {effective_date} by {actor}: "
                f"day_order={day_order}, holiday={holiday_name}"
            )
            return entry, False
        except IntegrityError:
            # Lost the insert race to another administrator; fall through to update
            session.rollback()
            existing = get_override(session, unit_id, effective_date)
            if existing is None:
                raise

    old = (existing.day_order, existing.is_holiday, existing.holiday_name, existing.actor)
    existing.day_order = day_order
    existing.is_holiday = is_holiday
    existing.holiday_name = holiday_name
    existing.reason = reason
    existing.actor = actor
    existing.updated_at = now
    session.add(existing)
    session.commit()
    session.refresh(existing)
    logger.info(
        f"Override replaced for unit {unit_id} on {effective_date}: "
        f"(day_order, holiday, name, actor) {old} -> "
        f"{(day_order, is_holiday, holiday_name, actor)}"
    )
    return existing, True


@storage_guard
def delete_override(session: Session, unit_id: str, effective_date: date) -> DayOrderOverride:
    existing = get_override(session, unit_id, effective_date)
    if existing is None:
        raise OverrideNotFound(f"No override for {unit_id} on {effective_date}")
    session.delete(existing)
    session.commit()
    logger.info(f"Override removed for unit {unit_id} on {effective_date}")
    return existing


@storage_guard
def list_overrides(session: Session, unit_id: str, limit: int = 30) -> list[DayOrderOverride]:
    """Override history, newest date first."""
    return list(
        session.exec(
            select(DayOrderOverride)
            .where(DayOrderOverride.unit_id == unit_id)
            .order_by(DayOrderOverride.effective_date.desc())
            .limit(limit)
        ).all()
    )


def _latest_day_order_override_before(
    session: Session, unit_id: str, day: date
) -> DayOrderOverride | None:
    return session.exec(
        select(DayOrderOverride)
        .where(DayOrderOverride.unit_id == unit_id)
        .where(DayOrderOverride.effective_date < day)
        .where(DayOrderOverride.is_holiday == False)  # noqa: E712
        .order_by(DayOrderOverride.effective_date.desc())
        .limit(1)
    ).first()


@storage_guard
def resolve(session: Session, unit_id: str, day: date | None = None) -> DayOrderResolution:
    """Resolve the day order for a unit on a date.

    Priority: explicit override, then the weekly rest day, then rotation from
    the most recent anchor (override or configuration revision).
    """
    day = day or _today()

    explicit = get_override(session, unit_id, day)
    revision = revision_in_force(session, unit_id, day)
    if explicit:
        return DayOrderResolution(
            unit_id=unit_id,
            date=day,
            day_order=explicit.day_order,
            is_holiday=explicit.is_holiday,
            holiday_name=explicit.holiday_name,
            is_explicit=True,
            cycle_length=revision.cycle_length,
        )

    if is_weekly_rest_day(day):
        return DayOrderResolution(
            unit_id=unit_id,
            date=day,
            day_order=None,
            is_holiday=True,
            holiday_name=WEEKDAY_NAMES[day.weekday()],
            is_explicit=False,
            cycle_length=revision.cycle_length,
        )

    anchor_day_order, anchor_date = revision.anchor_day_order, revision.anchor_date
    previous = _latest_day_order_override_before(session, unit_id, day)
    if previous and (revision.anchor_date > day or previous.effective_date >= revision.anchor_date):
        anchor_day_order, anchor_date = previous.day_order, previous.effective_date

    day_order = compute_day_order(anchor_day_order, anchor_date, day, revision.cycle_length)
    logger.debug(
        f"Resolved {unit_id} {day}: day {day_order} from anchor "
        f"({anchor_day_order}, {anchor_date}), cycle {revision.cycle_length}"
    )
    return DayOrderResolution(
        unit_id=unit_id,
        date=day,
        day_order=day_order,
        is_holiday=False,
        holiday_name=None,
        is_explicit=False,
        cycle_length=revision.cycle_length,
    )


@storage_guard
def upcoming(session: Session, unit_id: str, start: date | None = None, days: int = 7) -> list[DayOrderResolution]:
    """Forecast of resolutions for `days` consecutive dates starting at `start`."""
    start = start or _today()
    return [resolve(session, unit_id, start + timedelta(days=i)) for i in range(max(days, 0))]
