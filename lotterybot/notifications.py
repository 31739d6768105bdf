"""Outbound notification payloads handed to the notifier collaborator."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple, Union

from .models import DrawResult, LotteryDefinition, RerollRecord


class NotificationKind(enum.Enum):
    FINAL_WARNING = "final_warning"
    CLOSING_WARNING = "closing_warning"
    RESULT = "result"
    NO_PARTICIPANTS = "no_participants"
    REROLL = "reroll"
    LOG = "log"


@dataclass(slots=True, frozen=True)
class Notification:
    kind: NotificationKind
    lottery: Optional[LotteryDefinition] = None
    result: Optional[Union[DrawResult, RerollRecord]] = None
    ping_role_ids: Tuple[int, ...] = ()
    message: Optional[str] = None
    next_draw_at: Optional[datetime] = None


class Notifier(Protocol):
    async def send_notification(self, channel_id: int, payload: Notification) -> None:
        """Deliver ``payload`` to ``channel_id``; formatting is up to the implementation."""
