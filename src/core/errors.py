# src/core/errors.py


class SchedulingError(Exception):
    """Base class for everything the scheduling core reports to its callers."""


class NotFound(SchedulingError):
    """The requested guild, scrim or game does not exist."""


class DuplicateSlot(SchedulingError):
    """A scrim or game already exists for this (guild, timestamp)."""


class DuplicateReference(SchedulingError):
    """The event or message reference is already attached to another game."""


class Conflict(SchedulingError):
    """The record changed since it was read; the write was rejected."""


class InvalidState(SchedulingError):
    """A write would break a Game invariant. This is a programming error."""


class IllegalTransition(SchedulingError):
    """The requested operation is not allowed from the game's current state."""


class AlreadyDecided(SchedulingError):
    """Another request already decided how this game is provisioned."""

    def __init__(self, message: str, game=None):
        super().__init__(message)
        self.game = game


class MissingCredential(SchedulingError):
    """The guild has no reservation provider key configured."""


class ReservationUnavailable(SchedulingError):
    """The reservation provider could not be reached or had no server."""


class ConfigurationFailed(SchedulingError):
    """The game server could not be configured over rcon."""


class FetchFailed(SchedulingError):
    """The match page could not be fetched (transient)."""


class UnparseableResult(SchedulingError):
    """The match page was fetched but has an unexpected shape."""
