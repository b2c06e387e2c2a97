from datetime import date, datetime, time
from enum import StrEnum

from sqlmodel import Field, SQLModel, UniqueConstraint

from config import local_now


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class AttendanceStatus(StrEnum):
    PRESENT = "present"
    ABSENT = "absent"
    ON_DUTY = "on_duty"


class DayOrderConfig(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("unit_id", name="uniq_dayorderconfig_unit"),)

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    cycle_length: int = Field(default=6)
    anchor_day_order: int = Field(default=1)
    anchor_date: date
    updated_by: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=local_now)
    updated_at: datetime | None = Field(default=None)


class DayOrderConfigRevision(SQLModel, table=True):
    """Configuration in force from anchor_date until the next revision."""

    __table_args__ = (
        UniqueConstraint("unit_id", "anchor_date", name="uniq_configrevision_unit_date"),
    )

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    cycle_length: int
    anchor_day_order: int
    anchor_date: date = Field(index=True)
    actor: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=local_now)


class DayOrderOverride(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("unit_id", "effective_date", name="uniq_override_unit_date"),
    )

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    effective_date: date = Field(index=True)
    day_order: int | None = Field(default=None)  # None when is_holiday
    is_holiday: bool = Field(default=False, index=True)
    holiday_name: str | None = Field(default=None)
    reason: str | None = Field(default=None)
    actor: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=local_now)
    updated_at: datetime | None = Field(default=None)


class PeriodDefinition(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("unit_id", "period_number", name="uniq_perioddef_unit_period"),
    )

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    period_number: int
    name: str | None = Field(default=None)
    start_time: time
    end_time: time
    is_break: bool = Field(default=False)


class PeriodSlot(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint(
            "unit_id", "class_id", "day_order", "period_number",
            name="uniq_periodslot_unit_class_day_period",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    class_id: str = Field(index=True)
    day_order: int = Field(index=True)
    period_number: int
    start_time: time
    end_time: time
    is_break: bool = Field(default=False)
    break_name: str | None = Field(default=None)
    subject_id: str | None = Field(default=None)  # None for breaks
    teacher_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=local_now)
    updated_at: datetime | None = Field(default=None)


class AttendanceSession(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("session_code", name="uniq_session_code"),)

    id: int | None = Field(default=None, primary_key=True)
    session_code: str = Field(index=True)
    unit_id: str = Field(index=True)
    class_id: str = Field(index=True)
    subject_id: str
    teacher_id: str = Field(index=True)
    session_date: date = Field(index=True)
    session_time: time
    expires_at: datetime
    status: str = Field(default=SessionStatus.ACTIVE, index=True)
    auto_created: bool = Field(default=False)
    created_by: str | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=local_now)
    updated_at: datetime | None = Field(default=None)


class MaterializationRecord(SQLModel, table=True):
    """Ledger row linking one dated occurrence of a period slot to its session.

    The slot is identified by its natural key rather than the row id so that
    bulk timetable replacement on the same day cannot re-materialize a period.
    """

    __table_args__ = (
        UniqueConstraint(
            "unit_id", "class_id", "day_order", "period_number", "scheduled_date",
            name="uniq_materialization_slot_date",
        ),
        UniqueConstraint("session_id", name="uniq_materialization_session"),
    )

    id: int | None = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True)
    class_id: str
    day_order: int
    period_number: int
    scheduled_date: date = Field(index=True)
    period_slot_id: int | None = Field(default=None)
    session_id: int = Field(foreign_key="attendancesession.id")
    created_at: datetime = Field(default_factory=local_now)


class AttendanceRecord(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("session_id", "participant", name="uniq_record_session_participant"),
    )

    id: int | None = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="attendancesession.id", index=True)
    participant: str = Field(index=True)  # Normalized: lower(trim(identity))
    status: str = Field(default=AttendanceStatus.PRESENT)
    code_verified: bool = Field(default=False)
    marked_at: datetime = Field(default_factory=local_now)
    updated_at: datetime | None = Field(default=None)


class OneTimeCode(SQLModel, table=True):
    """The latest code issued to a participant; reissuing overwrites the row."""

    __table_args__ = (UniqueConstraint("participant", name="uniq_onetimecode_participant"),)

    id: int | None = Field(default=None, primary_key=True)
    participant: str = Field(index=True)  # Normalized like AttendanceRecord.participant
    code: str
    session_id: int = Field(foreign_key="attendancesession.id", index=True)
    issued_at: datetime
    expires_at: datetime = Field(index=True)
    used_at: datetime | None = Field(default=None)


class SchemaVersion(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    version: int
    applied_at: datetime = Field(default_factory=local_now)


def normalize_participant(identity: str) -> str:
    return (identity or "").strip().lower()
