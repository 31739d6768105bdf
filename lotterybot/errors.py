from __future__ import annotations


class LotteryError(RuntimeError):
    """Base class for lottery engine failures."""


class ConfigurationError(LotteryError, ValueError):
    """Raised when a lottery definition or schedule request is invalid."""


class TransientFetchError(LotteryError):
    """Raised when the membership source fails or times out."""


class PersistenceError(LotteryError):
    """Raised when the state file cannot be read or written."""


class EmptyPoolError(LotteryError):
    """Raised when a reroll has no remaining candidates to draw from."""


class HistoryIndexError(LotteryError, IndexError):
    """Raised when a history index is out of range."""
