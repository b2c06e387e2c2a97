from datetime import time

import pytest
from pydantic import ValidationError

from collaborators import StaticAssignments
from conftest import CLASS_ID, UNIT
from errors import InvalidTimetableEntry, TimetableNotFound
from schemas import PeriodDefinitionIn, SlotIn
from timetable import (
    copy_day,
    get_day_schedule,
    get_timetable,
    overview,
    replace_period_definitions,
    save_day,
    save_entry,
    teaching_slots,
)


@pytest.fixture
def periods(test_session, anchored):
    return replace_period_definitions(
        test_session,
        UNIT,
        [
            PeriodDefinitionIn(period_number=1, name="Period 1", start_time=time(9, 0), end_time=time(9, 50)),
            PeriodDefinitionIn(period_number=2, name="Period 2", start_time=time(9, 50), end_time=time(10, 40)),
            PeriodDefinitionIn(period_number=3, name="Tea", start_time=time(10, 40), end_time=time(11, 0), is_break=True),
            PeriodDefinitionIn(period_number=4, name="Period 3", start_time=time(11, 0), end_time=time(11, 50)),
        ],
    )


def test_save_day_returns_slots_in_period_order(test_session, day_two_timetable):
    assert [s.period_number for s in day_two_timetable] == [1, 2, 3]
    assert day_two_timetable[2].is_break is True
    assert day_two_timetable[2].subject_id is None


def test_save_day_replaces_previous_schedule(test_session, day_two_timetable):
    save_day(
        test_session,
        UNIT,
        CLASS_ID,
        2,
        [SlotIn(period_number=4, start_time=time(11, 0), end_time=time(11, 50),
                subject_id="CS101", teacher_id="t.arjun")],
    )
    slots = get_timetable(test_session, UNIT, CLASS_ID, 2)
    assert [(s.period_number, s.subject_id) for s in slots] == [(4, "CS101")]


def test_save_entry_takes_times_from_period_definition(test_session, periods):
    slot = save_entry(test_session, UNIT, CLASS_ID, 1, SlotIn(period_number=2, subject_id="ENG101", teacher_id="t.mary"))
    assert slot.start_time == time(9, 50)
    assert slot.end_time == time(10, 40)


def test_save_entry_upserts_on_natural_key(test_session, periods):
    first = save_entry(test_session, UNIT, CLASS_ID, 1, SlotIn(period_number=1, subject_id="ENG101", teacher_id="t.mary"))
    second = save_entry(test_session, UNIT, CLASS_ID, 1, SlotIn(period_number=1, is_break=True, break_name="Assembly"))

    assert second.id == first.id
    assert second.is_break is True
    assert second.subject_id is None
    assert second.teacher_id is None
    assert len(get_timetable(test_session, UNIT, CLASS_ID, 1)) == 1


def test_entry_without_window_or_definition_is_rejected(test_session, anchored):
    with pytest.raises(InvalidTimetableEntry):
        save_entry(test_session, UNIT, CLASS_ID, 1, SlotIn(period_number=7, subject_id="X", teacher_id="Y"))


def test_day_order_outside_cycle_is_rejected(test_session, periods):
    with pytest.raises(InvalidTimetableEntry):
        save_entry(test_session, UNIT, CLASS_ID, 7, SlotIn(period_number=1, subject_id="X", teacher_id="Y"))


def test_teaching_slot_needs_subject_and_teacher():
    with pytest.raises(ValidationError):
        SlotIn(period_number=1, subject_id="MATH101")


def test_assignments_are_enforced(test_session, periods):
    assignments = StaticAssignments({CLASS_ID: [("MATH101", "t.raman")]})

    save_entry(
        test_session, UNIT, CLASS_ID, 1,
        SlotIn(period_number=1, subject_id="MATH101", teacher_id="t.raman"),
        assignments=assignments,
    )
    with pytest.raises(InvalidTimetableEntry):
        save_entry(
            test_session, UNIT, CLASS_ID, 1,
            SlotIn(period_number=2, subject_id="MATH101", teacher_id="t.devi"),
            assignments=assignments,
        )
    # Breaks and unrestricted classes pass
    save_entry(test_session, UNIT, CLASS_ID, 1, SlotIn(period_number=3, is_break=True), assignments=assignments)
    save_entry(
        test_session, UNIT, "BSC-CS-B", 1,
        SlotIn(period_number=1, subject_id="ANY", teacher_id="anyone"),
        assignments=assignments,
    )


def test_copy_day(test_session, day_two_timetable):
    copied = copy_day(test_session, UNIT, CLASS_ID, 2, 5)
    assert [(s.day_order, s.period_number, s.subject_id) for s in copied] == [
        (5, 1, "MATH101"),
        (5, 2, "PHY101"),
        (5, 3, None),
    ]
    # Source untouched
    assert len(get_timetable(test_session, UNIT, CLASS_ID, 2)) == 3


def test_copy_empty_day_is_not_found(test_session, anchored):
    with pytest.raises(TimetableNotFound):
        copy_day(test_session, UNIT, CLASS_ID, 4, 5)


def test_day_schedule_fills_gaps_from_period_definitions(test_session, periods):
    save_entry(test_session, UNIT, CLASS_ID, 3, SlotIn(period_number=2, subject_id="CS101", teacher_id="t.arjun"))

    schedule = get_day_schedule(test_session, UNIT, CLASS_ID, 3)
    assert [s.period_number for s in schedule] == [1, 2, 3, 4]
    assert [s.is_template for s in schedule] == [True, False, True, True]
    assert schedule[1].subject_id == "CS101"
    assert schedule[1].name == "Period 2"
    assert schedule[2].is_break is True


def test_overview_groups_day_orders_by_class(test_session, day_two_timetable):
    copy_day(test_session, UNIT, CLASS_ID, 2, 4)
    save_day(
        test_session, UNIT, "BSC-CS-B", 1,
        [SlotIn(period_number=1, start_time=time(9, 0), end_time=time(9, 50), subject_id="S", teacher_id="T")],
    )

    rows = overview(test_session, UNIT)
    assert [(r.class_id, r.day_orders_configured) for r in rows] == [
        ("BSC-CS-A", [2, 4]),
        ("BSC-CS-B", [1]),
    ]


def test_teaching_slots_skip_breaks_and_filter(test_session, day_two_timetable):
    assert [s.period_number for s in teaching_slots(test_session, UNIT, 2)] == [1, 2]
    assert [s.period_number for s in teaching_slots(test_session, UNIT, 2, period_numbers=[2])] == [2]
    assert teaching_slots(test_session, UNIT, 2, class_id="OTHER") == []


def test_teaching_slots_filter_by_teacher(test_session, day_two_timetable):
    slots = teaching_slots(test_session, UNIT, 2, teacher_id="t.devi")
    assert [(s.period_number, s.subject_id) for s in slots] == [(2, "PHY101")]
    assert teaching_slots(test_session, UNIT, 2, teacher_id="t.nobody") == []
