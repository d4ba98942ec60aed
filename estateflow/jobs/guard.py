"""Single-flight guards so overlapping ticks never run a stage twice."""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StageGuard:
    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self, func: Callable[[], Awaitable[T]]) -> T | None:
        """Run ``func`` unless the stage is already running; a skipped tick returns ``None``."""
        if not self._lock.acquire(blocking=False):
            logger.debug("Stage %s still running; tick skipped", self.name)
            return None
        try:
            return await func()
        finally:
            self._lock.release()
