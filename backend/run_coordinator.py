"""
Run coordination for lifecycle passes.

Rule runs and queue processing share one key, so at most one pass mutates
library state at a time. A second caller gets RunInProgressError instead of
waiting.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from exceptions import RunInProgressError
from models import utcnow

logger = logging.getLogger(__name__)

LIFECYCLE_KEY = "lifecycle"


@dataclass
class RunHolder:
    key: str
    holder: str
    started_at: datetime

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "holder": self.holder,
            "started_at": self.started_at.isoformat() + "Z",
        }


class RunCoordinator:
    def __init__(self):
        self._held: dict[str, RunHolder] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, key: str, holder: str) -> RunHolder:
        async with self._lock:
            current = self._held.get(key)
            if current is not None:
                logger.info(f"[RUN] '{holder}' refused: '{key}' held by '{current.holder}'")
                raise RunInProgressError(key, current.holder)
            entry = RunHolder(key=key, holder=holder, started_at=utcnow())
            self._held[key] = entry
            logger.debug(f"[RUN] '{holder}' acquired '{key}'")
            return entry

    async def release(self, entry: RunHolder) -> None:
        async with self._lock:
            if self._held.get(entry.key) is entry:
                del self._held[entry.key]
                logger.debug(f"[RUN] '{entry.holder}' released '{entry.key}'")

    @asynccontextmanager
    async def hold(self, key: str, holder: str):
        """Hold a key for the duration of a block; raises RunInProgressError if taken."""
        entry = await self.acquire(key, holder)
        try:
            yield entry
        finally:
            await self.release(entry)

    def is_running(self, key: str) -> bool:
        return key in self._held

    def holder(self, key: str) -> Optional[RunHolder]:
        return self._held.get(key)

    def force_reset(self, key: Optional[str] = None) -> int:
        """Drop held keys after a crash left them behind. Returns how many were dropped."""
        if key is None:
            count = len(self._held)
            self._held.clear()
        else:
            count = 1 if self._held.pop(key, None) is not None else 0
        if count:
            logger.warning(f"[RUN] Force-reset {count} run lock(s)")
        return count


_coordinator: Optional[RunCoordinator] = None


def get_run_coordinator() -> RunCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = RunCoordinator()
    return _coordinator


def set_run_coordinator(coordinator: Optional[RunCoordinator]) -> None:
    global _coordinator
    _coordinator = coordinator
