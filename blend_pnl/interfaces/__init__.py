"""Protocol interfaces for the P&L engine."""
from .refresh import RefreshCoordinator
from .repository import EventRepository

__all__ = ["EventRepository", "RefreshCoordinator"]
