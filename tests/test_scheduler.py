"""Unit tests for weekly occurrence math and the timer engine."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from conftest import WARSAW, FakeClock
from lotterybot.errors import ConfigurationError
from lotterybot.scheduler import (
    ScheduleEngine,
    TimerKind,
    WeeklySlot,
    advance_by_days,
    compute_next_occurrence,
    parse_day_of_week,
)

# Sunday 12:00 in Warsaw (CEST, UTC+2)
SUNDAY_NOON = datetime(2024, 6, 9, 10, 0, tzinfo=UTC)


def test_next_occurrence_later_today_stays_on_same_day():
    result = compute_next_occurrence("sunday", 19, 0, SUNDAY_NOON, WARSAW)
    assert result == datetime(2024, 6, 9, 17, 0, tzinfo=UTC)


def test_next_occurrence_elapsed_today_moves_exactly_one_week():
    result = compute_next_occurrence(6, 11, 0, SUNDAY_NOON, WARSAW)
    assert result == datetime(2024, 6, 16, 9, 0, tzinfo=UTC)


def test_next_occurrence_at_current_instant_is_never_returned():
    result = compute_next_occurrence(6, 12, 0, SUNDAY_NOON, WARSAW)
    assert result == SUNDAY_NOON + timedelta(days=7)
    assert result > SUNDAY_NOON


def test_next_occurrence_for_following_weekday():
    result = compute_next_occurrence("Monday", 19, 0, SUNDAY_NOON, WARSAW)
    assert result == datetime(2024, 6, 10, 17, 0, tzinfo=UTC)


def test_next_occurrence_respects_winter_offset():
    winter_sunday = datetime(2024, 1, 7, 11, 0, tzinfo=UTC)  # 12:00 CET
    result = compute_next_occurrence("mon", 19, 0, winter_sunday, WARSAW)
    assert result == datetime(2024, 1, 8, 18, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "token, expected",
    [
        ("Monday", 0),
        ("mon", 0),
        ("  FRIDAY ", 4),
        ("sat", 5),
        ("niedziela", 6),
        ("Środa", 2),
        ("3", 3),
        (6, 6),
    ],
)
def test_parse_day_of_week_accepts_known_tokens(token, expected):
    assert parse_day_of_week(token) == expected


@pytest.mark.parametrize("token", ["funday", "", 7, -1, True, "mo", 2.5])
def test_parse_day_of_week_rejects_unknown_tokens(token):
    with pytest.raises(ConfigurationError):
        parse_day_of_week(token)


def test_invalid_time_of_day_is_configuration_error():
    with pytest.raises(ConfigurationError):
        compute_next_occurrence("monday", 24, 0, SUNDAY_NOON, WARSAW)
    with pytest.raises(ConfigurationError):
        compute_next_occurrence("monday", 10, 60, SUNDAY_NOON, WARSAW)


def test_weekly_slot_borrows_across_hour_and_day():
    assert WeeklySlot(0, 19, 0).shifted_back(30) == WeeklySlot(0, 18, 30)
    assert WeeklySlot(0, 19, 0).shifted_back(90) == WeeklySlot(0, 17, 30)
    assert WeeklySlot(0, 0, 20).shifted_back(90) == WeeklySlot(6, 22, 50)
    assert WeeklySlot(3, 1, 15).shifted_back(15) == WeeklySlot(3, 1, 0)


def test_advance_by_days_steps_from_previous_draw():
    previous = datetime(2024, 6, 10, 17, 0, tzinfo=UTC)
    result = advance_by_days(previous, 7, 19, 0, previous, WARSAW)
    assert result == datetime(2024, 6, 17, 17, 0, tzinfo=UTC)


def test_advance_by_days_skips_past_elapsed_periods():
    previous = datetime(2024, 6, 10, 17, 0, tzinfo=UTC)
    now = datetime(2024, 6, 30, 12, 0, tzinfo=UTC)
    result = advance_by_days(previous, 7, 19, 0, now, WARSAW)
    assert result == datetime(2024, 7, 1, 17, 0, tzinfo=UTC)
    assert result > now


def test_advance_by_days_rejects_non_positive_frequency():
    with pytest.raises(ValueError):
        advance_by_days(SUNDAY_NOON, 0, 19, 0, SUNDAY_NOON, WARSAW)


async def _noop(lottery_id, kind):
    return None


async def test_schedule_then_cancel_leaves_no_pending_timers():
    engine = ScheduleEngine(_noop, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    engine.schedule("lot", datetime(2024, 6, 10, 17, 0, tzinfo=UTC), "monday", 19, 0)
    assert engine.pending("lot") == set(TimerKind)

    assert engine.cancel("lot") is True
    assert engine.pending("lot") == set()
    assert engine.scheduled_ids() == []
    assert engine.cancel("lot") is False


async def test_schedule_computes_warning_offsets():
    engine = ScheduleEngine(_noop, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    draw_at = datetime(2024, 6, 10, 17, 0, tzinfo=UTC)
    engine.schedule("lot", draw_at, 0, 19, 0)
    try:
        assert engine.next_fire("lot", TimerKind.DRAW) == draw_at
        assert engine.next_fire("lot", TimerKind.CLOSING_WARNING) == draw_at - timedelta(minutes=30)
        assert engine.next_fire("lot", TimerKind.FINAL_WARNING) == draw_at - timedelta(minutes=90)
    finally:
        engine.cancel_all()


async def test_warning_already_elapsed_moves_to_next_week():
    engine = ScheduleEngine(_noop, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    # draw at 12:10 local today; both warnings are already in the past
    draw_at = SUNDAY_NOON + timedelta(minutes=10)
    engine.schedule("lot", draw_at, 6, 12, 10)
    try:
        assert engine.next_fire("lot", TimerKind.DRAW) == draw_at
        assert engine.next_fire("lot", TimerKind.FINAL_WARNING) == datetime(
            2024, 6, 16, 8, 40, tzinfo=UTC
        )
        assert engine.next_fire("lot", TimerKind.CLOSING_WARNING) == datetime(
            2024, 6, 16, 9, 40, tzinfo=UTC
        )
    finally:
        engine.cancel_all()


async def test_invalid_day_fails_before_any_timer_exists():
    engine = ScheduleEngine(_noop, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    with pytest.raises(ConfigurationError):
        engine.schedule("lot", SUNDAY_NOON + timedelta(days=1), "someday", 19, 0)
    assert engine.pending("lot") == set()


async def test_reschedule_replaces_existing_timer_set():
    engine = ScheduleEngine(_noop, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    engine.schedule("lot", datetime(2024, 6, 10, 17, 0, tzinfo=UTC), 0, 19, 0)
    engine.reschedule("lot", datetime(2024, 6, 11, 17, 0, tzinfo=UTC), 1, 19, 0)
    try:
        assert engine.scheduled_ids() == ["lot"]
        assert engine.pending("lot") == set(TimerKind)
        assert engine.next_fire("lot", TimerKind.DRAW) == datetime(2024, 6, 11, 17, 0, tzinfo=UTC)
    finally:
        engine.cancel_all()


async def test_due_timer_fires_and_rearms_for_next_week():
    fired = []

    async def handler(lottery_id, kind):
        fired.append((lottery_id, kind))

    clock = FakeClock(SUNDAY_NOON)
    engine = ScheduleEngine(handler, timezone=WARSAW, clock=clock)
    draw_at = SUNDAY_NOON + timedelta(milliseconds=20)
    engine.schedule("lot", draw_at, 6, 12, 0)
    try:
        await asyncio.sleep(0.2)
        await engine.drain()
        assert fired == [("lot", TimerKind.DRAW)]
        assert engine.next_fire("lot", TimerKind.DRAW) == SUNDAY_NOON + timedelta(days=7)
        assert TimerKind.DRAW in engine.pending("lot")
    finally:
        engine.cancel_all()


async def test_handler_may_cancel_its_own_timers():
    done = []
    engine = None

    async def handler(lottery_id, kind):
        engine.cancel(lottery_id)
        await asyncio.sleep(0)
        done.append(kind)

    engine = ScheduleEngine(handler, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    engine.schedule("lot", SUNDAY_NOON + timedelta(milliseconds=20), 6, 12, 0)
    await asyncio.sleep(0.2)
    await engine.drain()
    assert done == [TimerKind.DRAW]
    assert engine.pending("lot") == set()


async def test_failing_handler_is_logged_not_raised(caplog):
    async def handler(lottery_id, kind):
        raise RuntimeError("boom")

    engine = ScheduleEngine(handler, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    engine.schedule("lot", SUNDAY_NOON + timedelta(milliseconds=20), 6, 12, 0)
    try:
        await asyncio.sleep(0.2)
        await engine.drain()
        assert "handler for lottery lot failed" in caplog.text
        assert TimerKind.DRAW in engine.pending("lot")
    finally:
        engine.cancel_all()


async def test_cancel_all_stops_running_callbacks():
    started = asyncio.Event()
    outcome = []

    async def handler(lottery_id, kind):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            outcome.append("cancelled")
            raise
        outcome.append("finished")

    engine = ScheduleEngine(handler, timezone=WARSAW, clock=FakeClock(SUNDAY_NOON))
    engine.schedule("lot", SUNDAY_NOON + timedelta(milliseconds=20), 6, 12, 0)
    await asyncio.wait_for(started.wait(), timeout=1)

    engine.cancel_all()
    await engine.drain()

    assert outcome == ["cancelled"]
    assert engine.scheduled_ids() == []
