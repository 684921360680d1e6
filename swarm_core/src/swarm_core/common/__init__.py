"""Common domain types and primitives for BTC-Swarm."""

from swarm_core.common.errors import SwarmError, TradingUnavailableError
from swarm_core.common.types import (
    Candle,
    Direction,
    DomainModel,
    ExecutedTrade,
    Timeframe,
    TradeSignal,
    TradeStatus,
    VolatilityLevel,
    clamp_confidence,
    new_id,
    utc_now,
)

__all__ = [
    "Candle",
    "Direction",
    "DomainModel",
    "ExecutedTrade",
    "SwarmError",
    "Timeframe",
    "TradeSignal",
    "TradeStatus",
    "TradingUnavailableError",
    "VolatilityLevel",
    "clamp_confidence",
    "new_id",
    "utc_now",
]
