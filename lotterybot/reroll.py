from __future__ import annotations

import logging
import random
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .draw import draw_winners
from .errors import EmptyPoolError, HistoryIndexError
from .models import (
    REROLL_MARKER,
    HistoryEntry,
    Participant,
    RerollRecord,
)

log = logging.getLogger(__name__)

_NAME_SUFFIX_RE = re.compile(r" \(Reroll \d+\)$")


def next_reroll_number(base_id: str, existing_ids: Iterable[str]) -> int:
    """Return the first unused reroll suffix number for ``base_id``."""
    used = 0
    prefix = base_id + REROLL_MARKER
    for lottery_id in existing_ids:
        if not lottery_id.startswith(prefix):
            continue
        suffix = lottery_id[len(prefix):]
        if suffix == "":
            used = max(used, 1)
        elif suffix.isdigit():
            used = max(used, int(suffix))
    return used + 1


def reroll_id(base_id: str, number: int) -> str:
    if number == 1:
        return base_id + REROLL_MARKER
    return f"{base_id}{REROLL_MARKER}{number}"


class RerollEngine:
    """Draws extra winners from the participants a lineage has not rewarded yet."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng

    def reroll(
        self,
        history: Sequence[HistoryEntry],
        result_index: int,
        additional_winners: int,
        *,
        now: datetime,
        rerolled_by: Optional[int] = None,
    ) -> RerollRecord:
        if additional_winners <= 0:
            raise ValueError("additional_winners must be greater than zero")
        if result_index < 0 or result_index >= len(history):
            raise HistoryIndexError(
                f"History index {result_index} is out of range (0-{len(history) - 1})."
            )

        target = history[result_index]
        if isinstance(target, RerollRecord):
            base_id = target.base_id
            original_winners = target.original_winners
            original_date = target.original_date
        else:
            base_id = target.lottery_id
            original_winners = target.winners
            original_date = target.date

        lineage = [
            entry
            for entry in history
            if isinstance(entry, RerollRecord) and entry.lineage_key == (base_id, original_date)
        ]
        already_won = self._union(original_winners, lineage)
        already_won_ids = {winner.id for winner in already_won}
        remaining = [p for p in target.participants if p.id not in already_won_ids]
        if not remaining:
            raise EmptyPoolError(
                f"Every participant of {target.lottery_id} has already won."
            )

        new_winners = draw_winners(
            remaining, min(additional_winners, len(remaining)), rng=self._rng
        )
        number = next_reroll_number(
            base_id,
            (entry.lottery_id for entry in history if isinstance(entry, RerollRecord)),
        )
        base_name = _NAME_SUFFIX_RE.sub("", target.lottery_name)
        record = RerollRecord(
            lottery_id=reroll_id(base_id, number),
            base_id=base_id,
            lottery_name=f"{base_name} (Reroll {number})",
            original_date=original_date,
            reroll_date=now,
            participants=tuple(target.participants),
            original_winners=tuple(original_winners),
            prior_winners=tuple(already_won),
            new_winners=tuple(new_winners),
            reroll_participant_count=len(remaining),
            target_role_id=target.target_role_id,
            clan_role_id=target.clan_role_id,
            clan_name=target.clan_name,
            rerolled_by=rerolled_by,
        )
        log.info(
            "Rerolled %s as %s: %d new winner(s) from %d remaining participant(s).",
            target.lottery_id,
            record.lottery_id,
            len(new_winners),
            len(remaining),
        )
        return record

    @staticmethod
    def _union(
        original_winners: Sequence[Participant], lineage: Iterable[RerollRecord]
    ) -> List[Participant]:
        winners: Dict[int, Participant] = {w.id: w for w in original_winners}
        for record in lineage:
            for winner in record.new_winners:
                winners.setdefault(winner.id, winner)
        return list(winners.values())
