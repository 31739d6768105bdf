"""Data models used for lottery persistence and runtime state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

REROLL_MARKER = "_reroll"


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


def lineage_base_id(lottery_id: str) -> str:
    """Strip a trailing reroll suffix (``_reroll``, ``_reroll2`` ...) from a history id."""
    base, marker, number = lottery_id.rpartition(REROLL_MARKER)
    if marker and (not number or number.isdigit()):
        return base
    return lottery_id


@dataclass(slots=True, frozen=True)
class Participant:
    """Snapshot of a member as it was recorded in a draw."""
    id: int
    username: str
    display_name: str

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "Participant":
        username = str(payload.get("username", ""))
        return cls(
            id=int(payload["id"]),
            username=username,
            display_name=str(payload.get("displayName") or username),
        )


@dataclass(slots=True, frozen=True)
class Candidate:
    """Live member view handed over by the membership source."""
    id: int
    username: str
    display_name: str
    role_ids: FrozenSet[int] = frozenset()
    is_bot: bool = False

    def has_role(self, role_id: Optional[int]) -> bool:
        return role_id is not None and role_id in self.role_ids

    def to_participant(self) -> Participant:
        return Participant(
            id=self.id, username=self.username, display_name=self.display_name
        )


@dataclass(slots=True)
class LotteryDefinition:
    """A persisted recurring or one-shot lottery rule."""
    id: str
    name: str
    target_role_id: int
    clan_role_id: Optional[int]
    clan_key: str
    clan_name: str
    frequency_days: int
    day_of_week: int
    hour: int
    minute: int
    winners_count: int
    channel_id: int
    created_by: int
    created_at: datetime
    next_draw_at: datetime
    last_draw_at: Optional[datetime] = None

    @property
    def is_one_shot(self) -> bool:
        return self.frequency_days == 0

    @property
    def is_server_wide(self) -> bool:
        return self.clan_role_id is None

    def to_payload(self) -> dict:
        """Serialize the definition to a JSON-serialisable structure."""
        return {
            "id": self.id,
            "name": self.name,
            "targetRoleId": self.target_role_id,
            "clanRoleId": self.clan_role_id,
            "clanKey": self.clan_key,
            "clanName": self.clan_name,
            "frequencyDays": self.frequency_days,
            "dayOfWeek": self.day_of_week,
            "hour": self.hour,
            "minute": self.minute,
            "winnersCount": self.winners_count,
            "channelId": self.channel_id,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat(),
            "lastDrawAt": self.last_draw_at.isoformat() if self.last_draw_at else None,
            "nextDrawAt": self.next_draw_at.isoformat(),
        }

    @classmethod
    def from_payload(
        cls, payload: dict, *, timezone: Optional[tzinfo] = None
    ) -> "LotteryDefinition":
        """Reconstruct a definition, accepting the older key names as well."""
        next_draw_at = _parse_datetime(payload.get("nextDrawAt") or payload["nextDraw"])
        last_raw = payload.get("lastDrawAt", payload.get("lastDraw"))
        frequency = payload.get("frequencyDays", payload.get("frequency", 7))
        day_of_week = payload.get("dayOfWeek")
        if not isinstance(day_of_week, int):
            # older records only kept the concrete draw date
            local = next_draw_at.astimezone(timezone) if timezone else next_draw_at
            day_of_week = local.weekday()
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            target_role_id=int(payload["targetRoleId"]),
            clan_role_id=_optional_int(payload.get("clanRoleId")),
            clan_key=str(payload.get("clanKey", "")),
            clan_name=str(payload.get("clanName", "")),
            frequency_days=int(frequency),
            day_of_week=day_of_week,
            hour=int(payload["hour"]),
            minute=int(payload["minute"]),
            winners_count=int(payload["winnersCount"]),
            channel_id=int(payload["channelId"]),
            created_by=int(payload.get("createdBy") or 0),
            created_at=_parse_datetime(
                payload.get("createdAt") or next_draw_at.isoformat()
            ),
            next_draw_at=next_draw_at,
            last_draw_at=_parse_datetime(last_raw) if last_raw else None,
        )


@dataclass(slots=True, frozen=True)
class DrawResult:
    """Immutable record of one executed draw."""
    lottery_id: str
    lottery_name: str
    date: datetime
    participants: Tuple[Participant, ...]
    winners: Tuple[Participant, ...]
    target_role_id: int
    clan_role_id: Optional[int]
    clan_name: str

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @property
    def history_id(self) -> str:
        return self.lottery_id

    @property
    def sort_date(self) -> datetime:
        return self.date

    @property
    def lineage_key(self) -> Tuple[str, datetime]:
        # recurring lotteries reuse one id, so the draw date tells weeks apart
        return (self.lottery_id, self.date)

    @classmethod
    def from_draw(
        cls,
        lottery: LotteryDefinition,
        pool: Iterable[Candidate],
        winners: Sequence[Candidate],
        *,
        date: datetime,
    ) -> "DrawResult":
        return cls(
            lottery_id=lottery.id,
            lottery_name=lottery.name,
            date=date,
            participants=tuple(
                candidate.to_participant()
                for candidate in sorted(pool, key=lambda c: c.id)
            ),
            winners=tuple(winner.to_participant() for winner in winners),
            target_role_id=lottery.target_role_id,
            clan_role_id=lottery.clan_role_id,
            clan_name=lottery.clan_name,
        )

    def to_payload(self) -> dict:
        return {
            "lotteryId": self.lottery_id,
            "lotteryName": self.lottery_name,
            "date": self.date.isoformat(),
            "participantCount": self.participant_count,
            "participants": [p.to_payload() for p in self.participants],
            "winners": [w.to_payload() for w in self.winners],
            "targetRole": self.target_role_id,
            "clanRole": self.clan_role_id,
            "clanName": self.clan_name,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "DrawResult":
        return cls(
            lottery_id=str(payload["lotteryId"]),
            lottery_name=str(payload.get("lotteryName", payload["lotteryId"])),
            date=_parse_datetime(payload["date"]),
            participants=tuple(
                Participant.from_payload(p) for p in payload.get("participants", [])
            ),
            winners=tuple(Participant.from_payload(w) for w in payload.get("winners", [])),
            target_role_id=int(payload["targetRole"]),
            clan_role_id=_optional_int(payload.get("clanRole")),
            clan_name=str(payload.get("clanName") or ""),
        )


@dataclass(slots=True, frozen=True)
class RerollRecord:
    """Supplementary draw derived from a DrawResult or another reroll."""
    lottery_id: str
    base_id: str
    lottery_name: str
    original_date: datetime
    reroll_date: datetime
    participants: Tuple[Participant, ...]
    original_winners: Tuple[Participant, ...]
    prior_winners: Tuple[Participant, ...]
    new_winners: Tuple[Participant, ...]
    reroll_participant_count: int
    target_role_id: int
    clan_role_id: Optional[int]
    clan_name: str
    rerolled_by: Optional[int] = None

    @property
    def original_participant_count(self) -> int:
        return len(self.participants)

    @property
    def history_id(self) -> str:
        return self.lottery_id

    @property
    def sort_date(self) -> datetime:
        return self.original_date

    @property
    def lineage_key(self) -> Tuple[str, datetime]:
        return (self.base_id, self.original_date)

    @property
    def awarded_winners(self) -> Tuple[Participant, ...]:
        """Every winner of the lineage once this reroll is applied."""
        return self.prior_winners + self.new_winners

    def to_payload(self) -> dict:
        return {
            "lotteryId": self.lottery_id,
            "baseId": self.base_id,
            "lotteryName": self.lottery_name,
            "originalDate": self.original_date.isoformat(),
            "rerollDate": self.reroll_date.isoformat(),
            "originalParticipantCount": self.original_participant_count,
            "rerollParticipantCount": self.reroll_participant_count,
            "participants": [p.to_payload() for p in self.participants],
            "originalWinners": [w.to_payload() for w in self.original_winners],
            "priorWinners": [w.to_payload() for w in self.prior_winners],
            "newWinners": [w.to_payload() for w in self.new_winners],
            "targetRole": self.target_role_id,
            "clanRole": self.clan_role_id,
            "clanName": self.clan_name,
            "rerolledBy": self.rerolled_by,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "RerollRecord":
        lottery_id = str(payload["lotteryId"])
        original_winners = tuple(
            Participant.from_payload(w) for w in payload.get("originalWinners", [])
        )
        prior_raw = payload.get("priorWinners")
        prior_winners = (
            tuple(Participant.from_payload(w) for w in prior_raw)
            if prior_raw is not None
            else original_winners
        )
        participants = tuple(
            Participant.from_payload(p) for p in payload.get("participants", [])
        )
        return cls(
            lottery_id=lottery_id,
            base_id=str(payload.get("baseId") or lineage_base_id(lottery_id)),
            lottery_name=str(payload.get("lotteryName", lottery_id)),
            original_date=_parse_datetime(payload["originalDate"]),
            reroll_date=_parse_datetime(payload["rerollDate"]),
            participants=participants,
            original_winners=original_winners,
            prior_winners=prior_winners,
            new_winners=tuple(
                Participant.from_payload(w) for w in payload.get("newWinners", [])
            ),
            reroll_participant_count=int(
                payload.get("rerollParticipantCount", len(participants))
            ),
            target_role_id=int(payload["targetRole"]),
            clan_role_id=_optional_int(payload.get("clanRole")),
            clan_name=str(payload.get("clanName") or ""),
            rerolled_by=_optional_int(payload.get("rerolledBy")),
        )


HistoryEntry = Union[DrawResult, RerollRecord]


@dataclass(slots=True)
class LotteryState:
    """Root container mirroring the persisted JSON document."""
    active: Dict[str, LotteryDefinition] = field(default_factory=dict)
    results: List[DrawResult] = field(default_factory=list)
    rerolls: List[RerollRecord] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_payload(self) -> dict:
        return {
            "activeLotteries": {
                lottery_id: lottery.to_payload()
                for lottery_id, lottery in self.active.items()
            },
            "results": [result.to_payload() for result in self.results],
            "rerolls": [record.to_payload() for record in self.rerolls],
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_payload(
        cls, payload: dict, *, timezone: Optional[tzinfo] = None
    ) -> "LotteryState":
        active = {
            str(lottery_id): LotteryDefinition.from_payload(entry, timezone=timezone)
            for lottery_id, entry in (payload.get("activeLotteries") or {}).items()
        }
        last_updated = payload.get("lastUpdated")
        return cls(
            active=active,
            results=[DrawResult.from_payload(r) for r in payload.get("results") or []],
            rerolls=[RerollRecord.from_payload(r) for r in payload.get("rerolls") or []],
            last_updated=_parse_datetime(last_updated) if last_updated else None,
        )

    def append_result(self, result: DrawResult, *, limit: int) -> None:
        """Append a result, evicting the oldest entries beyond ``limit``."""
        self.results.append(result)
        if len(self.results) > limit:
            del self.results[: len(self.results) - limit]

    def history(self) -> List[HistoryEntry]:
        """Results and rerolls ordered by original draw date."""
        entries: List[HistoryEntry] = [*self.results, *self.rerolls]
        # stable sort keeps a base result ahead of rerolls sharing its date
        return sorted(entries, key=lambda entry: entry.sort_date)

    def remove_history(self, index: int) -> HistoryEntry:
        """Remove one history entry; a base result takes its rerolls with it."""
        entries = self.history()
        if index < 0 or index >= len(entries):
            raise IndexError(index)
        entry = entries[index]
        if isinstance(entry, RerollRecord):
            self.rerolls = [r for r in self.rerolls if r.lottery_id != entry.lottery_id]
        else:
            self.results = [r for r in self.results if r is not entry]
            self.rerolls = [r for r in self.rerolls if r.lineage_key != entry.lineage_key]
        return entry
