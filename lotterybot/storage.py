"""JSON persistence helpers for lottery state."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import UTC, datetime, tzinfo
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

from .errors import HistoryIndexError, PersistenceError
from .models import (
    DrawResult,
    HistoryEntry,
    LotteryDefinition,
    LotteryState,
    RerollRecord,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class StateStorage:
    """Async read/modify/write wrapper around the single lottery state document."""

    def __init__(
        self,
        path: Path,
        *,
        history_limit: int = 50,
        timezone: Optional[tzinfo] = None,
    ) -> None:
        """Initialise the storage helper with the state file location.

        ``timezone`` is used to read the local weekday of older records that
        were saved without one.
        """
        self.path = path
        self.history_limit = history_limit
        self.timezone = timezone
        self._lock = asyncio.Lock()

    async def load(self) -> LotteryState:
        """Load the whole persisted state (empty state when no file exists yet)."""
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def load_active(self) -> Dict[str, LotteryDefinition]:
        state = await self.load()
        return dict(state.active)

    async def load_history(self) -> List[HistoryEntry]:
        """Return results and rerolls ordered by their original draw date."""
        state = await self.load()
        return state.history()

    async def save_active(self, active: Mapping[str, LotteryDefinition]) -> None:
        """Replace the set of active lottery definitions."""

        def apply(state: LotteryState) -> None:
            state.active = dict(active)

        await self._mutate(apply)

    async def upsert_active(self, lottery: LotteryDefinition) -> None:
        def apply(state: LotteryState) -> None:
            state.active[lottery.id] = lottery

        await self._mutate(apply)

    async def remove_active(self, lottery_id: str) -> bool:
        def apply(state: LotteryState) -> bool:
            return state.active.pop(lottery_id, None) is not None

        return await self._mutate(apply)

    async def append_result(self, result: DrawResult) -> None:
        """Append a draw result, keeping only the most recent ``history_limit`` entries."""

        def apply(state: LotteryState) -> None:
            state.append_result(result, limit=self.history_limit)

        await self._mutate(apply)

    async def append_reroll(self, record: RerollRecord) -> None:
        def apply(state: LotteryState) -> None:
            state.rerolls.append(record)

        await self._mutate(apply)

    async def remove_history(self, index: int) -> HistoryEntry:
        """Delete one history entry; deleting a draw result also drops its rerolls."""

        def apply(state: LotteryState) -> HistoryEntry:
            try:
                return state.remove_history(index)
            except IndexError as exc:
                raise HistoryIndexError(f"History index {index} is out of range.") from exc

        return await self._mutate(apply)

    # --- Internal helpers -------------------------------------------------

    async def _mutate(self, apply: Callable[[LotteryState], T]) -> T:
        async with self._lock:
            state = await asyncio.to_thread(self._read)
            outcome = apply(state)
            state.last_updated = datetime.now(tz=UTC)
            await asyncio.to_thread(self._write, state)
            return outcome

    def _read(self) -> LotteryState:
        if not self.path.exists():
            return LotteryState()
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Unable to read {self.path}: {exc}") from exc
        try:
            payload = json.loads(raw) if raw.strip() else {}
            if not isinstance(payload, dict):
                raise ValueError("state document must be a JSON object")
            return LotteryState.from_payload(payload, timezone=self.timezone)
        except (ValueError, KeyError, TypeError) as exc:
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            LOGGER.error(
                "State file %s is corrupt (%s); moving it to %s and starting fresh.",
                self.path,
                exc,
                backup,
            )
            try:
                self.path.replace(backup)
            except OSError as move_exc:
                raise PersistenceError(
                    f"Unable to move corrupt state file {self.path}: {move_exc}"
                ) from move_exc
            return LotteryState()

    def _write(self, state: LotteryState) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(state.to_payload(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as exc:
            LOGGER.error("Failed to write lottery state to %s: %s", self.path, exc)
            raise PersistenceError(f"Unable to write {self.path}: {exc}") from exc
