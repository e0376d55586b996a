"""Throttled refresh of the derived daily-rates table."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..interfaces import EventRepository, RefreshCoordinator

logger = logging.getLogger(__name__)


class LocalRefreshCoordinator:
    """In-process coordinator: one refresher at a time, at most once per interval."""

    def __init__(
        self,
        interval_minutes: int = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_seconds = interval_minutes * 60
        self._clock = clock
        self._lock = asyncio.Lock()
        self._in_progress = False
        self._last_refresh: float | None = None

    async def try_acquire(self) -> bool:
        async with self._lock:
            if self._in_progress:
                return False
            now = self._clock()
            if self._last_refresh is not None and now - self._last_refresh < self.interval_seconds:
                return False
            self._in_progress = True
            return True

    async def release(self, refreshed: bool) -> None:
        async with self._lock:
            self._in_progress = False
            if refreshed:
                self._last_refresh = self._clock()


class DailyRatesRefresher:
    """Refresh daily rates when no other request is doing it.

    Skipping a refresh means serving slightly stale rates, never an error.
    """

    def __init__(self, repository: EventRepository, coordinator: RefreshCoordinator) -> None:
        self.repository = repository
        self.coordinator = coordinator

    async def ensure_fresh(self) -> bool:
        """Returns True if this call performed a refresh."""
        if not await self.coordinator.try_acquire():
            logger.debug("Daily rates refresh skipped")
            return False

        refreshed = False
        try:
            await self.repository.refresh_daily_rates()
            refreshed = True
            logger.info("Daily rates refreshed")
        except Exception as e:
            logger.warning("Daily rates refresh failed, continuing with stale rates: %s", e)
        finally:
            await self.coordinator.release(refreshed)
        return refreshed
