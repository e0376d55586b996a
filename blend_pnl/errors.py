"""Exceptions raised to callers of the P&L engine."""
from __future__ import annotations


class PnlError(Exception):
    """Base class for engine failures."""


class MissingParameterError(PnlError, ValueError):
    """A required request parameter (address, date) is missing."""


class RepositoryUnavailableError(PnlError):
    """The event/price store could not be reached at all."""
