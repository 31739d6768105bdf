"""Pytest configuration and fixtures."""

from __future__ import annotations

import random
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

import pytest

from lotterybot.config import ClanConfig, LotteryConfig
from lotterybot.errors import TransientFetchError
from lotterybot.lottery_manager import LotteryManager
from lotterybot.models import Candidate
from lotterybot.notifications import Notification
from lotterybot.storage import StateStorage

WARSAW = ZoneInfo("Europe/Warsaw")
TARGET_ROLE = 500
CLAN_ROLE = 600
OTHER_CLAN_ROLE = 601
BLOCKED_ROLE = 999


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class FakeMembershipSource:
    """In-memory membership source with an optional cold cache."""

    def __init__(self, members: Optional[List[Candidate]] = None, *, cold: bool = False) -> None:
        self.members = list(members or [])
        self.cold = cold
        self.refresh_calls = 0
        self.fail_refresh = False

    async def fetch_members_with_role(self, role_id: int) -> Set[Candidate]:
        if self.cold:
            return set()
        return {member for member in self.members if role_id in member.role_ids}

    async def refresh(self) -> None:
        self.refresh_calls += 1
        if self.fail_refresh:
            raise TransientFetchError("gateway unavailable")
        self.cold = False


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[int, Notification]] = []

    async def send_notification(self, channel_id: int, payload: Notification) -> None:
        self.sent.append((channel_id, payload))


def make_member(
    member_id: int,
    *roles: int,
    is_bot: bool = False,
) -> Candidate:
    return Candidate(
        id=member_id,
        username=f"user{member_id}",
        display_name=f"User {member_id}",
        role_ids=frozenset(roles),
        is_bot=is_bot,
    )


@pytest.fixture
def clock() -> FakeClock:
    # Sunday 2024-06-09 12:00 in Warsaw
    return FakeClock(datetime(2024, 6, 9, 10, 0, tzinfo=UTC))


@pytest.fixture
def lottery_config(tmp_path: Path) -> LotteryConfig:
    clans: Dict[str, ClanConfig] = {
        "alpha": ClanConfig(key="alpha", name="Alpha", display_name="Alpha Clan", role_id=CLAN_ROLE),
        "beta": ClanConfig(key="beta", name="Beta", display_name="Beta Clan", role_id=OTHER_CLAN_ROLE),
        "server": ClanConfig(key="server", name="Server", display_name="Whole Server", role_id=None),
    }
    return LotteryConfig(
        data_file=tmp_path / "lottery.json",
        blocked_role_id=BLOCKED_ROLE,
        clans=clans,
    )


@pytest.fixture
def storage(lottery_config: LotteryConfig) -> StateStorage:
    return StateStorage(
        lottery_config.data_file,
        history_limit=lottery_config.history_limit,
        timezone=WARSAW,
    )


@pytest.fixture
def membership() -> FakeMembershipSource:
    return FakeMembershipSource(
        [make_member(member_id, TARGET_ROLE, CLAN_ROLE) for member_id in range(1, 6)]
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def manager(lottery_config, storage, membership, notifier, clock):
    lottery_manager = LotteryManager(
        lottery_config,
        storage,
        membership,
        notifier,
        timezone=WARSAW,
        clock=clock,
        rng=random.Random(1234),
        logger_channel_id=42,
    )
    yield lottery_manager
    lottery_manager.stop()
