"""Refresh coordinator protocol — at most one daily-rates refresher at a time."""
from typing import Protocol


class RefreshCoordinator(Protocol):
    """Abstract interface for the shared refresh lock."""

    async def try_acquire(self) -> bool: ...

    async def release(self, refreshed: bool) -> None: ...
