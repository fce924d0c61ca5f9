"""
Error taxonomy for the tracking engine.

ConflictError and NotFoundError are reported back to whoever called the
operation. StoreError is fatal to the triggering operation and never retried.
NotificationError only ever reaches the log.
"""

from __future__ import annotations


class PresenceError(Exception):
    """Base class for every engine error."""


class ConflictError(PresenceError):
    """An event is already active for the guild."""


class NotFoundError(PresenceError):
    """Nothing to act on (no active event, no open session)."""


class StoreError(PresenceError):
    """The database was unavailable or a write failed."""


class NotificationError(PresenceError):
    """Direct notification delivery failed."""
