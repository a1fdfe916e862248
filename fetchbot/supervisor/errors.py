"""Supervisor exception types."""

from __future__ import annotations


class SupervisorError(Exception):
    """Base class for supervisor failures."""


class EventLogError(SupervisorError):
    """The event log could not be written."""


class StatePersistenceError(SupervisorError):
    """Restart state could not be saved."""
