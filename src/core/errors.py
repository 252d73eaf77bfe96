"""Domain errors.

User-facing errors carry the reply text as their message. The remaining
errors are logged where they occur and never reach a user.
"""

from __future__ import annotations


class ScanBotError(Exception):
    """Base class for all domain errors."""


class NotFoundError(ScanBotError):
    """No subscription or conversation state exists for the key."""


class AlreadyExistsError(ScanBotError):
    """A subscription already exists for the key."""


class ValidationError(ScanBotError):
    """A filter URL is malformed or points to a foreign host."""


class TransportError(ScanBotError):
    """A page fetch or a message send failed."""


class PersistenceError(ScanBotError):
    """A durable store call failed or timed out."""


class DecodeError(ScanBotError):
    """A persisted record or key could not be decoded."""
