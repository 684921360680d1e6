"""Base exception hierarchy for BTC-Swarm.

Component-specific errors (exchange, feeds, analysis) subclass
``SwarmError`` in the module that raises them.
"""


class SwarmError(Exception):
    """Base exception for all swarm errors."""


class TradingUnavailableError(SwarmError):
    """Raised when a trading operation is requested without an authenticated exchange."""
