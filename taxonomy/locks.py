"""Per-category exclusive locks for writers.

Every mutating operation holds exactly one category lock, so writers on
different categories never wait on each other and cannot deadlock.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .config import settings

logger = logging.getLogger(__name__)


class CategoryBusyError(Exception):
    """Raised when a category lock cannot be acquired in time. Retryable."""

    def __init__(self, category_id: str, timeout: float | None = None):
        self.category_id = category_id
        self.timeout = timeout
        detail = f" after {timeout:.2f}s" if timeout is not None else ""
        super().__init__(f"Category {category_id} is busy{detail}")


class CategoryLockManager:
    """Hands out one asyncio.Lock per category id."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout if timeout is not None else settings.locks.acquire_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, category_id: str) -> asyncio.Lock:
        lock = self._locks.get(category_id)
        if lock is None:
            lock = self._locks[category_id] = asyncio.Lock()
        return lock

    def is_locked(self, category_id: str) -> bool:
        lock = self._locks.get(category_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, category_id: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the category lock for the duration of the block.

        Raises:
            CategoryBusyError: If the lock is not obtained within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        lock = self._lock_for(category_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out waiting {wait:.2f}s for category lock {category_id}")
            raise CategoryBusyError(category_id, wait) from e

        logger.debug(f"Acquired category lock {category_id}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released category lock {category_id}")
