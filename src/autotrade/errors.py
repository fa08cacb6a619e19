"""Error taxonomy shared by the scheduler, pipeline and control surface."""

from __future__ import annotations


class AutotradeError(Exception):
    """Base error for the trading core."""


class BrokerUnavailable(AutotradeError):
    """Raised when the broker session is not connected or the broker API fails."""


class SymbolNotFound(BrokerUnavailable):
    """Raised when the broker rejects the requested symbol."""


class InvalidStrategyConfig(AutotradeError):
    """Raised for an unknown strategy id or invalid strategy parameters."""


class InvalidTimeframe(AutotradeError):
    """Raised for a timeframe value the scheduler does not support."""


class TradeRejected(AutotradeError):
    """Raised when the executor refuses to open or close a position."""


class PersistenceFailure(AutotradeError):
    """Raised when the persistent store cannot be read or written."""


class LockUnavailable(AutotradeError):
    """Raised when the execution lock cannot be obtained."""


class LockLost(LockUnavailable):
    """Raised when a held execution lock expired and was taken by another run."""


class BotNotFound(AutotradeError):
    """Raised for an unknown bot id."""


class AIReviewError(AutotradeError):
    """Raised when the AI signal reviewer cannot be reached."""
