"""
HRVD Engine - Exception Hierarchy

Raised only at programming-error seams (bad config, unknown position,
illegal state transition). Per-bar and per-tick processing catches these,
logs them, and degrades to no-trade.

The single exception that stops the engine for the session is
RunawayHaltError.
"""


class EngineError(Exception):
    """Base exception for decision engine errors."""
    pass


class ConfigurationError(EngineError):
    """Raised when configuration values are inconsistent or invalid."""
    pass


class InvalidBarError(EngineError):
    """Raised when a bar carries impossible prices or volume."""
    pass


class UnknownPositionError(EngineError):
    """Raised when a position identifier is not registered."""
    pass


class IllegalTransitionError(EngineError):
    """Raised when the position state machine is driven into an invalid state."""
    pass


class OrderRejectedError(EngineError):
    """Raised by an order sink when the boundary refuses an intent."""
    
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RunawayHaltError(EngineError):
    """
    Raised when the daily order ceiling is exceeded.
    
    This indicates a logic bug or feed anomaly, not a market condition.
    The engine halts all order issuance until the next trading day.
    """
    pass
