"""Weekly timer orchestration for lottery draws and their pre-draw warnings."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import Awaitable, Callable, Dict, Optional, Union

from .errors import ConfigurationError

log = logging.getLogger(__name__)

DayToken = Union[int, str]
TimerHandler = Callable[[str, "TimerKind"], Awaitable[None]]
Clock = Callable[[], datetime]

_DAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
    "poniedziałek": 0,
    "wtorek": 1,
    "środa": 2,
    "czwartek": 3,
    "piątek": 4,
    "sobota": 5,
    "niedziela": 6,
}


class TimerKind(enum.Enum):
    FINAL_WARNING = "final"
    CLOSING_WARNING = "closing"
    DRAW = "draw"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_day_of_week(value: DayToken) -> int:
    """Translate a weekday token into ``datetime.weekday()`` numbering."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Unrecognised day of week: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ConfigurationError(f"Day of week must be between 0 and 6, got {value}.")
    if isinstance(value, str):
        token = value.strip().lower()
        if token.isdigit():
            return parse_day_of_week(int(token))
        if token in _DAY_NAMES:
            return _DAY_NAMES[token]
        if len(token) == 3:
            for name, weekday in _DAY_NAMES.items():
                if name.isascii() and name.startswith(token):
                    return weekday
    raise ConfigurationError(f"Unrecognised day of week: {value!r}")


def _validate_time_of_day(hour: int, minute: int) -> None:
    if not 0 <= hour <= 23:
        raise ConfigurationError(f"Hour must be between 0 and 23, got {hour}.")
    if not 0 <= minute <= 59:
        raise ConfigurationError(f"Minute must be between 0 and 59, got {minute}.")


@dataclass(slots=True, frozen=True)
class WeeklySlot:
    """A fixed weekday/hour/minute position within the local week."""
    weekday: int
    hour: int
    minute: int

    def shifted_back(self, minutes: int) -> "WeeklySlot":
        """Move the slot earlier, borrowing from the hour and then the day."""
        weekday, hour, minute = self.weekday, self.hour, self.minute - minutes
        while minute < 0:
            minute += 60
            hour -= 1
        while hour < 0:
            hour += 24
            weekday = (weekday - 1) % 7
        return WeeklySlot(weekday, hour, minute)


def compute_next_occurrence(
    day_of_week: DayToken,
    hour: int,
    minute: int,
    now: datetime,
    timezone: tzinfo,
) -> datetime:
    """Return the first UTC instant strictly after ``now`` matching the local slot."""
    weekday = parse_day_of_week(day_of_week)
    _validate_time_of_day(hour, minute)
    local_now = now.astimezone(timezone)
    days_ahead = (weekday - local_now.weekday()) % 7
    target_date = local_now.date() + timedelta(days=days_ahead)
    candidate = datetime.combine(target_date, time(hour, minute), tzinfo=timezone)
    if candidate <= local_now:
        candidate = datetime.combine(
            target_date + timedelta(days=7), time(hour, minute), tzinfo=timezone
        )
    return candidate.astimezone(UTC)


def advance_by_days(
    previous: datetime,
    days: int,
    hour: int,
    minute: int,
    now: datetime,
    timezone: tzinfo,
) -> datetime:
    """Step ``previous`` forward in ``days`` increments until it is after ``now``."""
    if days <= 0:
        raise ValueError("days must be greater than zero")
    local_date = previous.astimezone(timezone).date()
    while True:
        local_date += timedelta(days=days)
        candidate = datetime.combine(local_date, time(hour, minute), tzinfo=timezone)
        if candidate > now:
            return candidate.astimezone(UTC)


class WeeklyTimer:
    """Fires a callback at one weekly slot, starting from a given instant."""

    def __init__(
        self,
        engine: "ScheduleEngine",
        lottery_id: str,
        kind: TimerKind,
        slot: WeeklySlot,
        first_fire: datetime,
    ) -> None:
        self.engine = engine
        self.lottery_id = lottery_id
        self.kind = kind
        self.slot = slot
        self.next_fire = first_fire
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        try:
            while True:
                delay = (self.next_fire - self.engine.clock()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)
                fired_at = self.next_fire
                self.next_fire = compute_next_occurrence(
                    self.slot.weekday,
                    self.slot.hour,
                    self.slot.minute,
                    fired_at,
                    self.engine.timezone,
                )
                self.engine._dispatch(self.lottery_id, self.kind)
        except asyncio.CancelledError:
            log.debug("%s timer for lottery %s cancelled", self.kind.value, self.lottery_id)
            raise


class ScheduleEngine:
    """Owns the three weekly timers of every scheduled lottery."""

    def __init__(
        self,
        handler: TimerHandler,
        *,
        timezone: tzinfo,
        final_warning: timedelta = timedelta(minutes=90),
        closing_warning: timedelta = timedelta(minutes=30),
        clock: Clock = utcnow,
    ) -> None:
        self._handler = handler
        self.timezone = timezone
        self.offsets: Dict[TimerKind, timedelta] = {
            TimerKind.FINAL_WARNING: final_warning,
            TimerKind.CLOSING_WARNING: closing_warning,
            TimerKind.DRAW: timedelta(0),
        }
        self.clock = clock
        self._timers: Dict[str, Dict[TimerKind, WeeklyTimer]] = {}
        self._inflight: set[asyncio.Task] = set()

    def schedule(
        self,
        lottery_id: str,
        next_draw_at: datetime,
        day_of_week: DayToken,
        hour: int,
        minute: int,
    ) -> None:
        weekday = parse_day_of_week(day_of_week)
        _validate_time_of_day(hour, minute)
        draw_slot = WeeklySlot(weekday, hour, minute)

        if lottery_id in self._timers:
            log.debug("Replacing existing timers for lottery %s", lottery_id)
            self.cancel(lottery_id)

        now = self.clock()
        timers: Dict[TimerKind, WeeklyTimer] = {}
        for kind, offset in self.offsets.items():
            slot = draw_slot.shifted_back(int(offset.total_seconds() // 60))
            first_fire = next_draw_at - offset
            if first_fire <= now:
                first_fire = compute_next_occurrence(
                    slot.weekday, slot.hour, slot.minute, now, self.timezone
                )
            timers[kind] = WeeklyTimer(self, lottery_id, kind, slot, first_fire)

        self._timers[lottery_id] = timers
        for timer in timers.values():
            timer.start()
        log.info(
            "Scheduled lottery %s: final warning %s, closing warning %s, draw %s",
            lottery_id,
            timers[TimerKind.FINAL_WARNING].next_fire.isoformat(),
            timers[TimerKind.CLOSING_WARNING].next_fire.isoformat(),
            timers[TimerKind.DRAW].next_fire.isoformat(),
        )

    def cancel(self, lottery_id: str) -> bool:
        timers = self._timers.pop(lottery_id, None)
        if not timers:
            return False
        for timer in timers.values():
            timer.cancel()
        log.debug("Cancelled timers for lottery %s", lottery_id)
        return True

    def reschedule(
        self,
        lottery_id: str,
        next_draw_at: datetime,
        day_of_week: DayToken,
        hour: int,
        minute: int,
    ) -> None:
        self.cancel(lottery_id)
        self.schedule(lottery_id, next_draw_at, day_of_week, hour, minute)

    def cancel_all(self) -> None:
        """Cancel every timer and every callback that is still running."""
        for lottery_id in list(self._timers):
            self.cancel(lottery_id)
        for task in list(self._inflight):
            task.cancel()

    def pending(self, lottery_id: str) -> set[TimerKind]:
        timers = self._timers.get(lottery_id, {})
        return {kind for kind, timer in timers.items() if timer.active}

    def next_fire(self, lottery_id: str, kind: TimerKind) -> Optional[datetime]:
        timer = self._timers.get(lottery_id, {}).get(kind)
        return timer.next_fire if timer else None

    def scheduled_ids(self) -> list[str]:
        return list(self._timers)

    async def drain(self) -> None:
        """Wait for every fired callback that is still running."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _dispatch(self, lottery_id: str, kind: TimerKind) -> None:
        # Callbacks run outside the timer task so a reschedule issued from
        # inside the callback cannot cancel the callback itself.
        task = asyncio.create_task(self._run_handler(lottery_id, kind))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_handler(self, lottery_id: str, kind: TimerKind) -> None:
        try:
            await self._handler(lottery_id, kind)
        except Exception:
            log.exception("%s handler for lottery %s failed", kind.value, lottery_id)
