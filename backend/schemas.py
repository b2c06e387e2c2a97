import datetime as dt
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlmodel import SQLModel

import config


class SkipReason(StrEnum):
    HOLIDAY_NO_OP = "holiday_no_op"
    ALREADY_EXISTS = "already_exists"
    SLOT_ALREADY_PAST = "slot_already_past"
    DUPLICATE_MATERIALIZATION = "duplicate_materialization"


# ---------------------------------------------------------------------------
# Day order
# ---------------------------------------------------------------------------


class DayOrderResolution(BaseModel):
    unit_id: str
    date: dt.date
    day_order: int | None = None  # None on holidays
    is_holiday: bool = False
    holiday_name: str | None = None
    is_explicit: bool = False
    cycle_length: int


class UpcomingResponse(BaseModel):
    unit_id: str
    days: list[DayOrderResolution]


class OverrideRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    effective_date: dt.date
    day_order: int | None = Field(default=None, ge=1)
    is_holiday: bool = False
    holiday_name: str | None = None
    reason: str | None = None
    actor: str | None = None

    @model_validator(mode="after")
    def validate_target(self):
        if not self.is_holiday and self.day_order is None:
            raise ValueError("day_order is required unless is_holiday is set")
        return self


class OverrideOut(SQLModel):
    id: int
    unit_id: str
    effective_date: dt.date
    day_order: int | None = None
    is_holiday: bool
    holiday_name: str | None = None
    reason: str | None = None
    actor: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime | None = None


class OverrideResponse(BaseModel):
    ok: bool = True
    replaced: bool
    override: OverrideOut


class OverrideHistoryResponse(BaseModel):
    unit_id: str
    history: list[OverrideOut]


class ConfigUpdateRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    # Range is checked by the engine so the error surfaces as invalid_cycle_length
    cycle_length: int
    anchor_day_order: int | None = None
    actor: str | None = None


class ConfigOut(SQLModel):
    unit_id: str
    cycle_length: int
    anchor_day_order: int
    anchor_date: dt.date
    updated_by: str | None = None
    updated_at: dt.datetime | None = None


# ---------------------------------------------------------------------------
# Timetable
# ---------------------------------------------------------------------------


class PeriodDefinitionIn(BaseModel):
    period_number: int = Field(ge=1)
    name: str | None = None
    start_time: dt.time
    end_time: dt.time
    is_break: bool = False

    @model_validator(mode="after")
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class PeriodDefinitionOut(PeriodDefinitionIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    unit_id: str


class PeriodsUpdateRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    periods: list[PeriodDefinitionIn]

    @field_validator("periods")
    @classmethod
    def validate_unique_numbers(cls, v):
        numbers = [p.period_number for p in v]
        if len(numbers) != len(set(numbers)):
            raise ValueError("period_number values must be unique")
        return v


class SlotIn(BaseModel):
    period_number: int = Field(ge=1)
    start_time: dt.time | None = None  # Taken from the period definition when omitted
    end_time: dt.time | None = None
    is_break: bool = False
    break_name: str | None = None
    subject_id: str | None = None
    teacher_id: str | None = None

    @model_validator(mode="after")
    def validate_slot(self):
        if not self.is_break and (not self.subject_id or not self.teacher_id):
            raise ValueError("subject_id and teacher_id are required for a teaching period")
        if self.start_time and self.end_time and self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class SaveEntryRequest(SlotIn):
    unit_id: str = config.DEFAULT_UNIT
    class_id: str
    day_order: int = Field(ge=1)


class SaveDayRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    class_id: str
    day_order: int = Field(ge=1)
    entries: list[SlotIn]

    @field_validator("entries")
    @classmethod
    def validate_entries(cls, v):
        if not v:
            raise ValueError("No entries provided")
        numbers = [e.period_number for e in v]
        if len(numbers) != len(set(numbers)):
            raise ValueError("period_number values must be unique")
        return v


class CopyDayRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    class_id: str
    source_day_order: int = Field(ge=1)
    target_day_order: int = Field(ge=1)


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    unit_id: str
    class_id: str
    day_order: int
    period_number: int
    start_time: dt.time
    end_time: dt.time
    is_break: bool = False
    break_name: str | None = None
    subject_id: str | None = None
    teacher_id: str | None = None
    name: str | None = None
    is_template: bool = False


class TimetableResponse(BaseModel):
    ok: bool = True
    entries: list[SlotOut]


class OverviewRow(BaseModel):
    class_id: str
    day_orders_configured: list[int]


# ---------------------------------------------------------------------------
# Sessions and materialization
# ---------------------------------------------------------------------------


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_code: str
    unit_id: str
    class_id: str
    subject_id: str
    teacher_id: str
    session_date: dt.date
    session_time: dt.time
    expires_at: dt.datetime
    status: str
    auto_created: bool = False
    completed_at: dt.datetime | None = None


class SkippedSlot(BaseModel):
    slot_id: int | None = None
    class_id: str | None = None
    period_number: int | None = None
    reason: SkipReason
    session_id: int | None = None


class MaterializeRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    class_id: str | None = None
    teacher_id: str | None = None
    period_numbers: list[int] = Field(default_factory=list)


class MaterializationResult(BaseModel):
    unit_id: str
    date: dt.date
    day_order: int | None = None
    is_holiday: bool = False
    holiday_name: str | None = None
    created: list[SessionOut] = Field(default_factory=list)
    skipped: list[SkippedSlot] = Field(default_factory=list)


class PendingSlot(SlotOut):
    already_created: bool = False
    is_past: bool = False
    session_id: int | None = None


class PendingMaterialization(BaseModel):
    unit_id: str
    date: dt.date
    day_order: int | None = None
    is_holiday: bool = False
    holiday_name: str | None = None
    total_entries: int = 0
    pending_count: int = 0
    already_created_count: int = 0
    slots: list[PendingSlot] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    unit_id: str = config.DEFAULT_UNIT
    class_id: str
    subject_id: str
    teacher_id: str
    duration_minutes: int | None = Field(default=None, ge=1)
    expires_at: dt.datetime | None = None
    actor: str | None = None


class ExtendSessionRequest(BaseModel):
    expires_at: dt.datetime


class VerifySessionRequest(BaseModel):
    code: str | None = None
    session_id: int | None = None

    @model_validator(mode="after")
    def validate_reference(self):
        if not self.code and self.session_id is None:
            raise ValueError("Either code or session_id is required")
        return self


class SessionMetadata(BaseModel):
    session_id: int
    session_code: str
    unit_id: str
    class_id: str
    subject_id: str
    teacher_id: str
    session_date: dt.date
    expires_at: dt.datetime
    remaining_seconds: int


class SweepResponse(BaseModel):
    ok: bool = True
    expired: int


# ---------------------------------------------------------------------------
# Codes and attendance
# ---------------------------------------------------------------------------


class IssueCodeRequest(BaseModel):
    participant: str

    @field_validator("participant")
    @classmethod
    def validate_participant(cls, v):
        if not v or not v.strip():
            raise ValueError("participant is required")
        return v


class IssueCodeResponse(BaseModel):
    ok: bool = True
    session_id: int
    participant: str
    code: str
    expires_at: dt.datetime


class MarkAttendanceRequest(IssueCodeRequest):
    code: str


class OnDutyRequest(IssueCodeRequest):
    actor: str | None = None


class AttendanceRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    participant: str
    status: str
    code_verified: bool
    marked_at: dt.datetime


class MarkAttendanceResponse(BaseModel):
    ok: bool = True
    already_marked: bool = False
    record: AttendanceRecordOut


class ParticipantStatus(BaseModel):
    participant: str
    status: str
    marked_at: dt.datetime | None = None


class SessionSummary(BaseModel):
    session_id: int
    status: str
    total: int
    present: int
    absent: int
    on_duty: int
    participants: list[ParticipantStatus]
