"""
In-process keyed mutexes for the engine's critical sections.

A lock exists only while somebody holds or waits for it, so locking by
mentor, user or appointment id does not grow without bound.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

logger = logging.getLogger(__name__)


class KeyedLock:
    """Serialize coroutines that share a key; different keys run freely."""

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, waiters = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, waiters + 1)

        try:
            async with lock:
                logger.debug("%s lock acquired for %s", self.namespace, key)
                yield
        finally:
            current, remaining = self._locks[key]
            if remaining <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (current, remaining - 1)
