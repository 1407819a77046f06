"""Exception taxonomy for the signal intelligence engine."""
from __future__ import annotations


class PulseError(Exception):
    """Base class for engine errors."""


class StoreUnavailable(PulseError):
    """The signal store could not answer a query (connection, timeout, SQL error)."""


class InvariantViolation(PulseError):
    """A signal arrived with out-of-domain sentiment or intensity."""
