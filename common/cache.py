"""
Toko Storefront - Cache Service
================================
Process-local TTL cache plus an in-flight request registry.

Callers depend only on get/set/delete and run_once, so a shared
key-value store can replace MemoryCache for multi-instance deployments.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger("toko.cache")


class MemoryCache:
    """Dict-backed cache with per-entry TTL (seconds)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._data[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries. Returns number removed."""
        now = self._clock()
        expired = [k for k, (exp, _) in self._data.items() if now >= exp]
        for k in expired:
            self._data.pop(k, None)
        return len(expired)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class InFlightRegistry:
    """
    Shares one pending upstream call among concurrent callers of the same key.

    The first caller starts the task; later callers await the same task.
    Waiters go through asyncio.shield so one caller being cancelled does not
    cancel the shared call. The entry is removed when the task finishes,
    success or failure, so a failed call never poisons the key.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    async def run_once(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, factory))
            self._tasks[key] = task
        else:
            logger.debug(f"Joining in-flight request: {key}")
        return await asyncio.shield(task)

    async def _run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await factory()
        finally:
            self._tasks.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
