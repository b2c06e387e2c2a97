from datetime import date, timedelta

import pytest
from sqlmodel import select

import config
from conftest import UNIT
from day_order import (
    compute_day_order,
    delete_override,
    get_or_create_config,
    list_overrides,
    resolve,
    set_override,
    update_config,
    upcoming,
)
from errors import InvalidCycleLength, InvalidDayOrder, InvalidOverride, OverrideNotFound
from models import DayOrderConfigRevision, DayOrderOverride


@pytest.fixture
def new_year(test_session):
    """Cycle of 6, day 1 on Monday 2024-01-01."""
    return update_config(test_session, UNIT, 6, 1, actor="admin", today=date(2024, 1, 1))


def test_compute_day_order_walks_backward():
    assert compute_day_order(1, date(2024, 1, 10), date(2024, 1, 8), 6) == 5
    assert compute_day_order(1, date(2024, 1, 10), date(2024, 1, 4), 6) == 1


def test_anchor_date_resolves_to_anchor_day_order(test_session):
    update_config(test_session, UNIT, 6, 3, today=date(2024, 1, 3))
    resolution = resolve(test_session, UNIT, date(2024, 1, 3))
    assert resolution.day_order == 3
    assert resolution.is_holiday is False
    assert resolution.is_explicit is False


def test_rotation_between_weekdays(test_session, new_year):
    d1, d2 = date(2024, 1, 2), date(2024, 1, 5)
    first = resolve(test_session, UNIT, d1).day_order
    second = resolve(test_session, UNIT, d2).day_order
    assert second == ((first - 1 + (d2 - d1).days) % 6) + 1


def test_weekly_rest_day_is_a_holiday(test_session, new_year):
    sunday = resolve(test_session, UNIT, date(2024, 1, 7))
    assert sunday.is_holiday is True
    assert sunday.holiday_name == "Sunday"
    assert sunday.day_order is None

    # Rest days still count as elapsed days for the rotation
    assert resolve(test_session, UNIT, date(2024, 1, 6)).day_order == 6
    assert resolve(test_session, UNIT, date(2024, 1, 8)).day_order == 2


def test_override_becomes_the_new_anchor(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 10), day_order=3, actor="admin")

    pinned = resolve(test_session, UNIT, date(2024, 1, 10))
    assert pinned.day_order == 3
    assert pinned.is_explicit is True

    assert resolve(test_session, UNIT, date(2024, 1, 12)).day_order == 5


def test_override_beats_weekly_rest_day(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 7), day_order=4, reason="Compensatory working day")
    resolution = resolve(test_session, UNIT, date(2024, 1, 7))
    assert resolution.is_holiday is False
    assert resolution.day_order == 4
    assert resolution.is_explicit is True


def test_holiday_override_does_not_anchor_rotation(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 9), is_holiday=True, holiday_name="Pongal")

    holiday = resolve(test_session, UNIT, date(2024, 1, 9))
    assert holiday.is_holiday is True
    assert holiday.holiday_name == "Pongal"
    assert holiday.is_explicit is True

    assert resolve(test_session, UNIT, date(2024, 1, 10)).day_order == 4


def test_setting_override_twice_replaces_it(test_session, new_year):
    _, replaced = set_override(test_session, UNIT, date(2024, 1, 10), day_order=3, actor="a")
    assert replaced is False
    entry, replaced = set_override(test_session, UNIT, date(2024, 1, 10), day_order=5, actor="b")
    assert replaced is True
    assert entry.day_order == 5
    assert entry.actor == "b"

    rows = test_session.exec(select(DayOrderOverride)).all()
    assert len(rows) == 1


def test_holiday_override_gets_default_name(test_session, new_year):
    entry, _ = set_override(test_session, UNIT, date(2024, 1, 11), is_holiday=True)
    assert entry.holiday_name == "Holiday"
    assert entry.day_order is None


def test_override_validation(test_session, new_year):
    with pytest.raises(InvalidOverride):
        set_override(test_session, UNIT, date(2024, 1, 10))
    with pytest.raises(InvalidDayOrder):
        set_override(test_session, UNIT, date(2024, 1, 10), day_order=7)


def test_delete_override(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 10), day_order=3)
    delete_override(test_session, UNIT, date(2024, 1, 10))
    assert resolve(test_session, UNIT, date(2024, 1, 10)).is_explicit is False

    with pytest.raises(OverrideNotFound):
        delete_override(test_session, UNIT, date(2024, 1, 10))


def test_update_config_rejects_bad_values(test_session):
    with pytest.raises(InvalidCycleLength):
        update_config(test_session, UNIT, 0, today=date(2024, 1, 1))
    with pytest.raises(InvalidCycleLength):
        update_config(test_session, UNIT, config.MAX_CYCLE_LENGTH + 1, today=date(2024, 1, 1))
    with pytest.raises(InvalidDayOrder):
        update_config(test_session, UNIT, 6, 7, today=date(2024, 1, 1))

    # No partial write
    assert test_session.exec(select(DayOrderConfigRevision)).all() == []


def test_config_change_does_not_rewrite_history(test_session, new_year):
    update_config(test_session, UNIT, 5, 1, actor="admin", today=date(2024, 1, 15))

    assert resolve(test_session, UNIT, date(2024, 1, 10)).day_order == 4
    assert resolve(test_session, UNIT, date(2024, 1, 10)).cycle_length == 6
    assert resolve(test_session, UNIT, date(2024, 1, 15)).day_order == 1
    assert resolve(test_session, UNIT, date(2024, 1, 16)).day_order == 2
    assert resolve(test_session, UNIT, date(2024, 1, 20)).day_order == 1


def test_config_change_outranks_older_override(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 3), day_order=5)
    update_config(test_session, UNIT, 6, 2, today=date(2024, 1, 15))

    assert resolve(test_session, UNIT, date(2024, 1, 16)).day_order == 3
    # Before the change the override still anchors
    assert resolve(test_session, UNIT, date(2024, 1, 4)).day_order == 6


def test_same_day_config_updates_keep_one_revision(test_session, new_year):
    update_config(test_session, UNIT, 5, 2, today=date(2024, 1, 15))
    update_config(test_session, UNIT, 4, 3, today=date(2024, 1, 15))

    revisions = test_session.exec(
        select(DayOrderConfigRevision).where(DayOrderConfigRevision.anchor_date == date(2024, 1, 15))
    ).all()
    assert len(revisions) == 1
    assert resolve(test_session, UNIT, date(2024, 1, 15)).day_order == 3


def test_date_before_anchor_walks_backward(test_session):
    update_config(test_session, UNIT, 6, 1, today=date(2024, 1, 10))
    assert resolve(test_session, UNIT, date(2024, 1, 8)).day_order == 5


def test_default_config_is_created_lazily(test_session):
    created = get_or_create_config(test_session, "Physics", today=date(2024, 2, 1))
    assert created.cycle_length == 6
    assert created.anchor_day_order == 1
    assert created.anchor_date == date(2024, 2, 1)

    again = get_or_create_config(test_session, "Physics", today=date(2024, 3, 1))
    assert again.id == created.id
    assert again.anchor_date == date(2024, 2, 1)


def test_unknown_unit_resolves_to_day_one_today(test_session):
    today = config.local_now().date()
    resolution = resolve(test_session, "Never-Seen")
    if today.weekday() == config.WEEKLY_REST_DAY:
        assert resolution.is_holiday is True
    else:
        assert resolution.day_order == 1
        assert resolution.is_holiday is False


def test_upcoming_forecast(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 9), is_holiday=True, holiday_name="Pongal")
    forecast = upcoming(test_session, UNIT, date(2024, 1, 5), days=7)

    assert [f.date for f in forecast] == [date(2024, 1, 5) + timedelta(days=i) for i in range(7)]
    by_date = {f.date: f for f in forecast}
    assert by_date[date(2024, 1, 5)].day_order == 5
    assert by_date[date(2024, 1, 7)].holiday_name == "Sunday"
    assert by_date[date(2024, 1, 9)].holiday_name == "Pongal"
    assert by_date[date(2024, 1, 11)].day_order == 5


def test_history_lists_newest_first(test_session, new_year):
    set_override(test_session, UNIT, date(2024, 1, 3), day_order=2)
    set_override(test_session, UNIT, date(2024, 1, 10), day_order=3)
    set_override(test_session, "Other", date(2024, 1, 11), day_order=1)

    history = list_overrides(test_session, UNIT)
    assert [h.effective_date for h in history] == [date(2024, 1, 10), date(2024, 1, 3)]
    assert len(list_overrides(test_session, UNIT, limit=1)) == 1
