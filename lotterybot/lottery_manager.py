from __future__ import annotations

import enum
import logging
import random
import secrets
import string
from datetime import datetime, timedelta, tzinfo
from typing import Dict, List, Optional

from .config import LotteryConfig
from .draw import draw_winners
from .eligibility import EligibilityResolver, MembershipSource
from .errors import ConfigurationError, PersistenceError
from .models import DrawResult, HistoryEntry, LotteryDefinition, RerollRecord
from .notifications import Notification, NotificationKind, Notifier
from .reroll import RerollEngine
from .scheduler import (
    Clock,
    DayToken,
    ScheduleEngine,
    TimerKind,
    advance_by_days,
    compute_next_occurrence,
    parse_day_of_week,
    utcnow,
)
from .storage import StateStorage

log = logging.getLogger(__name__)

FIRE_TOLERANCE = timedelta(minutes=2)
WARNING_MEMORY = timedelta(hours=24)
_ID_ALPHABET = string.ascii_lowercase + string.digits


class LotteryPhase(enum.Enum):
    SCHEDULED = "scheduled"
    FINAL_WARNING_SENT = "final_warning_sent"
    CLOSING_WARNING_SENT = "closing_warning_sent"
    DRAWING = "drawing"
    COMPLETED = "completed"
    REMOVED = "removed"


class LotteryManager:
    """Coordinates lottery lifecycle, persistence, timers and notifications."""

    def __init__(
        self,
        config: LotteryConfig,
        storage: StateStorage,
        membership: MembershipSource,
        notifier: Notifier,
        *,
        timezone: tzinfo,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
        logger_channel_id: Optional[int] = None,
        resolver: Optional[EligibilityResolver] = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.membership = membership
        self.notifier = notifier
        self.timezone = timezone
        self.clock = clock
        self.logger_channel_id = logger_channel_id
        self._rng = rng
        self.scheduler = ScheduleEngine(
            self.on_timer,
            timezone=timezone,
            final_warning=timedelta(minutes=config.final_warning_minutes),
            closing_warning=timedelta(minutes=config.closing_warning_minutes),
            clock=clock,
        )
        self.resolver = resolver or EligibilityResolver(
            blocked_role_id=config.blocked_role_id,
            fetch_timeout=config.member_fetch_timeout_seconds,
            fetch_attempts=config.member_fetch_attempts,
        )
        self.rerolls = RerollEngine(rng)
        self._lotteries: Dict[str, LotteryDefinition] = {}
        self._phases: Dict[str, LotteryPhase] = {}
        self._executing: set[str] = set()
        self._sent_warnings: Dict[str, datetime] = {}

    # --- Startup / shutdown -----------------------------------------------

    async def recover(self) -> None:
        """Reload persisted lotteries and rebuild their timers.

        Draws missed while the process was offline are not executed; their
        next draw is moved to the first future occurrence instead.
        """
        active = await self.storage.load_active()
        now = self.clock()
        skipped: List[LotteryDefinition] = []
        for lottery in active.values():
            if lottery.next_draw_at <= now:
                missed = lottery.next_draw_at
                lottery.next_draw_at = self._following_draw(lottery, now)
                log.warning(
                    "Lottery %s missed its draw at %s while offline; next draw moved to %s.",
                    lottery.id,
                    missed.isoformat(),
                    lottery.next_draw_at.isoformat(),
                )
                skipped.append(lottery)
            self._lotteries[lottery.id] = lottery
            self._schedule(lottery)

        for lottery in skipped:
            try:
                await self.storage.upsert_active(lottery)
            except PersistenceError:
                log.exception("Failed to persist recovered schedule for lottery %s", lottery.id)

        if self._lotteries:
            log.info("Restored %d active lotteries", len(self._lotteries))

    def stop(self) -> None:
        self.scheduler.cancel_all()
        self._sent_warnings.clear()
        log.info("Lottery manager stopped")

    # --- Commands ---------------------------------------------------------

    async def create(
        self,
        *,
        target_role_id: int,
        clan_key: str,
        frequency_days: int,
        day_of_week: DayToken,
        hour: int,
        minute: int,
        winners_count: int,
        channel_id: int,
        created_by: int,
        target_role_name: Optional[str] = None,
    ) -> LotteryDefinition:
        clan = self.config.clans.get(clan_key)
        if clan is None:
            raise ConfigurationError(f"Unknown clan key: {clan_key}")
        weekday = parse_day_of_week(day_of_week)
        if frequency_days < 0:
            raise ConfigurationError("frequency_days must be zero or positive.")
        if winners_count <= 0:
            raise ConfigurationError("winners_count must be at least 1.")

        now = self.clock()
        next_draw_at = compute_next_occurrence(weekday, hour, minute, now, self.timezone)
        role_label = target_role_name or str(target_role_id)
        lottery = LotteryDefinition(
            id=self._generate_lottery_id(next_draw_at, role_label, clan.key),
            name=f"Lottery {role_label} - {clan.display_name}",
            target_role_id=target_role_id,
            clan_role_id=clan.role_id,
            clan_key=clan.key,
            clan_name=clan.name,
            frequency_days=frequency_days,
            day_of_week=weekday,
            hour=hour,
            minute=minute,
            winners_count=winners_count,
            channel_id=channel_id,
            created_by=created_by,
            created_at=now,
            next_draw_at=next_draw_at,
        )

        await self.storage.upsert_active(lottery)
        self._lotteries[lottery.id] = lottery
        self._schedule(lottery)
        log.info("Created lottery %s (%s)", lottery.id, lottery.name)
        await self._notify_logger(
            f"Lottery `{lottery.id}` created, first draw {lottery.next_draw_at.isoformat()}."
        )
        return lottery

    async def remove(self, lottery_id: str) -> bool:
        self.scheduler.cancel(lottery_id)
        lottery = self._lotteries.pop(lottery_id, None)
        persisted = await self.storage.remove_active(lottery_id)
        if lottery is None and not persisted:
            return False
        self._phases[lottery_id] = LotteryPhase.REMOVED
        log.info("Removed lottery %s", lottery_id)
        await self._notify_logger(f"Lottery `{lottery_id}` removed.")
        return True

    async def reroll(
        self,
        result_index: int,
        additional_winners: int = 1,
        *,
        rerolled_by: Optional[int] = None,
    ) -> RerollRecord:
        history = await self.storage.load_history()
        record = self.rerolls.reroll(
            history,
            result_index,
            additional_winners,
            now=self.clock(),
            rerolled_by=rerolled_by,
        )
        await self.storage.append_reroll(record)
        winners = ", ".join(f"<@{winner.id}>" for winner in record.new_winners)
        await self._notify_logger(
            f"Lottery `{record.base_id}` rerolled as `{record.lottery_id}`. Winners: {winners}."
        )
        return record

    def list_active(self) -> List[LotteryDefinition]:
        return sorted(self._lotteries.values(), key=lambda lottery: lottery.next_draw_at)

    def get_lottery(self, lottery_id: str) -> Optional[LotteryDefinition]:
        return self._lotteries.get(lottery_id)

    def find_active(
        self, target_role_id: int, clan_role_id: Optional[int] = None
    ) -> Optional[LotteryDefinition]:
        """Return the active lottery for ``target_role_id`` open to ``clan_role_id``."""
        for lottery in self._lotteries.values():
            if lottery.target_role_id != target_role_id:
                continue
            if lottery.clan_role_id is None or lottery.clan_role_id == clan_role_id:
                return lottery
        return None

    def phase(self, lottery_id: str) -> Optional[LotteryPhase]:
        return self._phases.get(lottery_id)

    async def get_history(self) -> List[HistoryEntry]:
        return await self.storage.load_history()

    async def remove_history(self, index: int) -> HistoryEntry:
        entry = await self.storage.remove_history(index)
        log.info("Removed history entry %d (%s)", index, entry.history_id)
        await self._notify_logger(f"History entry `{entry.history_id}` removed.")
        return entry

    # --- Timer handling ---------------------------------------------------

    async def on_timer(self, lottery_id: str, kind: TimerKind) -> None:
        lottery = self._lotteries.get(lottery_id)
        if lottery is None:
            log.warning("Timer %s fired for unknown lottery %s", kind.value, lottery_id)
            return

        remaining = lottery.next_draw_at - self.clock()
        if kind is TimerKind.DRAW:
            if remaining > FIRE_TOLERANCE:
                log.debug("Skipping off-cycle draw fire for lottery %s", lottery_id)
                return
            try:
                await self.execute(lottery_id)
            except PersistenceError:
                log.exception("Draw for lottery %s could not be persisted", lottery_id)
            return

        offset = self.scheduler.offsets[kind]
        if remaining < timedelta(0) or remaining > offset + FIRE_TOLERANCE:
            log.debug("Skipping off-cycle %s warning for lottery %s", kind.value, lottery_id)
            return
        await self._send_warning(lottery, kind)

    async def execute(self, lottery_id: str) -> Optional[DrawResult]:
        """Run the draw for ``lottery_id`` and move it to its next state.

        Returns the persisted result, or ``None`` when nobody was eligible or
        the lottery is unknown or already drawing. A lottery removed while its
        draw is running is neither rescheduled nor announced. A
        ``PersistenceError`` is raised only after timers and notifications
        have been handled.
        """
        lottery = self._lotteries.get(lottery_id)
        if lottery is None:
            log.warning("Cannot execute unknown lottery %s", lottery_id)
            return None
        if lottery_id in self._executing:
            log.warning("Lottery %s is already drawing; ignoring duplicate fire", lottery_id)
            return None

        self._executing.add(lottery_id)
        try:
            return await self._execute(lottery)
        finally:
            self._executing.discard(lottery_id)

    async def _execute(self, lottery: LotteryDefinition) -> Optional[DrawResult]:
        self._phases[lottery.id] = LotteryPhase.DRAWING
        now = self.clock()
        failure: Optional[PersistenceError] = None

        pool = await self.resolver.resolve(lottery, self.membership)
        if not self._is_active(lottery):
            log.info("Lottery %s was removed during its draw; discarding the draw", lottery.id)
            return None

        result: Optional[DrawResult] = None
        if pool:
            winners = draw_winners(pool, lottery.winners_count, rng=self._rng)
            result = DrawResult.from_draw(lottery, pool, winners, date=now)
            try:
                await self.storage.append_result(result)
            except PersistenceError as exc:
                log.error("Failed to store result of lottery %s: %s", lottery.id, exc)
                failure = exc
        else:
            log.warning("Lottery %s had no eligible participants", lottery.id)

        if not self._is_active(lottery):
            log.info("Lottery %s was removed during its draw; not rescheduling", lottery.id)
            if failure is not None:
                raise failure
            return result

        try:
            await self._advance(lottery, now)
        except PersistenceError as exc:
            log.error("Failed to store schedule of lottery %s: %s", lottery.id, exc)
            failure = failure or exc

        next_draw_at = None if lottery.is_one_shot else lottery.next_draw_at
        if result is not None:
            await self._notify(
                lottery.channel_id,
                Notification(
                    NotificationKind.RESULT,
                    lottery=lottery,
                    result=result,
                    next_draw_at=next_draw_at,
                ),
            )
            log.info(
                "Lottery %s drawn: %d winner(s) from %d participant(s)",
                lottery.id,
                len(result.winners),
                result.participant_count,
            )
            await self._notify_logger(
                f"Lottery `{lottery.id}` drawn: {len(result.winners)} winner(s) "
                f"from {result.participant_count} participant(s)."
            )
        else:
            await self._notify(
                lottery.channel_id,
                Notification(
                    NotificationKind.NO_PARTICIPANTS,
                    lottery=lottery,
                    next_draw_at=next_draw_at,
                ),
            )

        if failure is not None:
            raise failure
        return result

    def _is_active(self, lottery: LotteryDefinition) -> bool:
        return self._lotteries.get(lottery.id) is lottery

    async def _advance(self, lottery: LotteryDefinition, now: datetime) -> None:
        if lottery.is_one_shot:
            self.scheduler.cancel(lottery.id)
            self._lotteries.pop(lottery.id, None)
            self._phases[lottery.id] = LotteryPhase.COMPLETED
            log.info("One-shot lottery %s completed", lottery.id)
            await self.storage.remove_active(lottery.id)
            return

        lottery.last_draw_at = now
        lottery.next_draw_at = advance_by_days(
            lottery.next_draw_at,
            lottery.frequency_days,
            lottery.hour,
            lottery.minute,
            now,
            self.timezone,
        )
        self._schedule(lottery)
        await self.storage.upsert_active(lottery)

    async def _send_warning(self, lottery: LotteryDefinition, kind: TimerKind) -> None:
        now = self.clock()
        channel_id = self.config.warning_channels.get(
            lottery.target_role_id, lottery.channel_id
        )
        self._prune_warnings(now)
        stamp = now.astimezone(self.timezone).strftime("%Y%m%d%H%M")
        key = f"{kind.value}:{channel_id}:{stamp}"
        if kind is TimerKind.FINAL_WARNING:
            self._phases[lottery.id] = LotteryPhase.FINAL_WARNING_SENT
            notification_kind = NotificationKind.FINAL_WARNING
            ping_role_ids = self._final_warning_roles(lottery)
        else:
            self._phases[lottery.id] = LotteryPhase.CLOSING_WARNING_SENT
            notification_kind = NotificationKind.CLOSING_WARNING
            ping_role_ids = (lottery.target_role_id,)

        if key in self._sent_warnings:
            log.info(
                "%s warning already sent to channel %s this minute; skipping lottery %s",
                kind.value,
                channel_id,
                lottery.id,
            )
            return
        self._sent_warnings[key] = now
        await self._notify(
            channel_id,
            Notification(
                notification_kind,
                lottery=lottery,
                ping_role_ids=ping_role_ids,
                next_draw_at=lottery.next_draw_at,
            ),
        )
        log.info("Sent %s warning for lottery %s to channel %s", kind.value, lottery.id, channel_id)

    def _final_warning_roles(self, lottery: LotteryDefinition) -> tuple[int, ...]:
        roles: Dict[int, None] = {}
        for other in self._lotteries.values():
            if other.target_role_id != lottery.target_role_id:
                continue
            if other.clan_role_id is not None:
                roles.setdefault(other.clan_role_id)
            else:
                for role_id in self.config.clan_role_ids:
                    roles.setdefault(role_id)
        return tuple(roles)

    def _prune_warnings(self, now: datetime) -> None:
        cutoff = now - WARNING_MEMORY
        for key, sent_at in list(self._sent_warnings.items()):
            if sent_at < cutoff:
                del self._sent_warnings[key]

    # --- Helpers ----------------------------------------------------------

    def _schedule(self, lottery: LotteryDefinition) -> None:
        # weekly timers follow the local slot of the concrete next draw
        local = lottery.next_draw_at.astimezone(self.timezone)
        self.scheduler.schedule(
            lottery.id, lottery.next_draw_at, local.weekday(), local.hour, local.minute
        )
        self._phases[lottery.id] = LotteryPhase.SCHEDULED

    def _following_draw(self, lottery: LotteryDefinition, now: datetime) -> datetime:
        if lottery.is_one_shot:
            return compute_next_occurrence(
                lottery.day_of_week, lottery.hour, lottery.minute, now, self.timezone
            )
        return advance_by_days(
            lottery.next_draw_at,
            lottery.frequency_days,
            lottery.hour,
            lottery.minute,
            now,
            self.timezone,
        )

    def _generate_lottery_id(self, draw_at: datetime, role_label: str, clan_key: str) -> str:
        date_part = draw_at.astimezone(self.timezone).strftime("%Y%m%d")
        role_part = "".join(ch for ch in role_label.lower() if ch in _ID_ALPHABET)[:6]
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(4))
        return f"{date_part}_{role_part or 'role'}_{clan_key.lower()}_{suffix}"

    async def _notify(self, channel_id: int, notification: Notification) -> None:
        try:
            await self.notifier.send_notification(channel_id, notification)
        except Exception:
            log.exception(
                "Failed to deliver %s notification to channel %s",
                notification.kind.value,
                channel_id,
            )

    async def _notify_logger(self, message: str) -> None:
        if not self.logger_channel_id:
            return
        await self._notify(
            self.logger_channel_id,
            Notification(NotificationKind.LOG, message=f"[Lottery] {message}"),
        )
