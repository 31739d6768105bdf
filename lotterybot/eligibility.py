"""Draw-time snapshot of the candidates allowed into a lottery."""

from __future__ import annotations

import asyncio
import logging
from typing import FrozenSet, Optional, Protocol, Set

from .errors import TransientFetchError
from .models import Candidate, LotteryDefinition

log = logging.getLogger(__name__)


class MembershipSource(Protocol):
    async def fetch_members_with_role(self, role_id: int) -> Set[Candidate]:
        """Return the currently known members holding ``role_id``."""

    async def refresh(self) -> None:
        """Best-effort bulk refresh of the member cache."""


class EligibilityResolver:
    """Resolves the eligibility pool for a lottery against a membership source."""

    def __init__(
        self,
        *,
        blocked_role_id: Optional[int],
        fetch_timeout: float = 30.0,
        fetch_attempts: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self.blocked_role_id = blocked_role_id
        self.fetch_timeout = fetch_timeout
        self.fetch_attempts = fetch_attempts
        self.retry_delay = retry_delay

    def is_eligible(self, lottery: LotteryDefinition, candidate: Candidate) -> bool:
        if candidate.is_bot:
            return False
        if candidate.has_role(self.blocked_role_id):
            return False
        if not candidate.has_role(lottery.target_role_id):
            return False
        if lottery.clan_role_id is not None and not candidate.has_role(lottery.clan_role_id):
            return False
        return True

    async def resolve(
        self, lottery: LotteryDefinition, source: MembershipSource
    ) -> FrozenSet[Candidate]:
        # Clan-scoped lotteries start from the clan role, server-wide ones from the target role.
        anchor_role_id = (
            lottery.clan_role_id if lottery.clan_role_id is not None else lottery.target_role_id
        )
        members = await self._members_with_role(source, anchor_role_id)

        attempt = 0
        while not members and attempt < self.fetch_attempts:
            attempt += 1
            log.info(
                "No cached members hold role %s for lottery %s; bulk fetch attempt %d/%d.",
                anchor_role_id,
                lottery.id,
                attempt,
                self.fetch_attempts,
            )
            try:
                await asyncio.wait_for(source.refresh(), timeout=self.fetch_timeout)
            except asyncio.TimeoutError:
                log.warning(
                    "Member fetch timed out after %.1fs for lottery %s; continuing with cached data.",
                    self.fetch_timeout,
                    lottery.id,
                )
                members = await self._members_with_role(source, anchor_role_id)
                break
            except TransientFetchError as exc:
                log.warning("Member fetch failed for lottery %s: %s", lottery.id, exc)
                if attempt < self.fetch_attempts:
                    await asyncio.sleep(self.retry_delay)
                continue
            members = await self._members_with_role(source, anchor_role_id)

        eligible = frozenset(m for m in members if self.is_eligible(lottery, m))
        log.info(
            "Lottery %s: %d member(s) checked, %d eligible.",
            lottery.id,
            len(members),
            len(eligible),
        )
        return eligible

    async def _members_with_role(
        self, source: MembershipSource, role_id: int
    ) -> Set[Candidate]:
        try:
            return set(await source.fetch_members_with_role(role_id))
        except TransientFetchError as exc:
            log.warning("Unable to read members with role %s: %s", role_id, exc)
            return set()
