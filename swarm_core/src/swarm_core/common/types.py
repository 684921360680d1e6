"""Domain primitives and value objects for BTC-Swarm.

This module defines the immutable core types shared by the bus, the agents
and the coordinator. All domain objects are frozen Pydantic models so that a
record published on the bus can never be changed by a consumer.

Architectural Decision:
    Confidence values are clamped into [0, 100] at construction time instead
    of being rejected. Agents compute confidences additively and a bonus that
    overshoots the cap is expected, not an error.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Final
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ==============================================================================
# Constants
# ==============================================================================
MIN_CONFIDENCE: Final[float] = 0.0
MAX_CONFIDENCE: Final[float] = 100.0

SATS_PER_BTC: Final[int] = 100_000_000


# ==============================================================================
# Helpers
# ==============================================================================
def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier (e.g. ``msg-3f2a...``)."""
    return f"{prefix}-{uuid4().hex[:16]}"


def clamp_confidence(value: float) -> float:
    """Clamp a confidence score into [0, 100]."""
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, float(value)))


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ==============================================================================
# Enumerations
# ==============================================================================
class Direction(str, Enum):
    """Direction of a trade or signal."""

    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> Direction:
        """The other direction."""
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class Timeframe(str, Enum):
    """Candle intervals supported by the analysis agents."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    W1 = "1w"

    @property
    def seconds(self) -> int:
        """Duration of one candle in seconds."""
        return TIMEFRAME_SECONDS[self.value]


TIMEFRAME_SECONDS: Final[dict[str, int]] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "30m": 30 * 60,
    "1h": 60 * 60,
    "4h": 4 * 60 * 60,
    "1d": 24 * 60 * 60,
    "1w": 7 * 24 * 60 * 60,
}


class VolatilityLevel(str, Enum):
    """Coarse volatility regime used for sizing."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ==============================================================================
# Base Domain Model
# ==============================================================================
class DomainModel(BaseModel):
    """Base model for all domain objects.

    Design Decisions:
    - frozen=True: records are shared between agents and must not change
    - extra="forbid": catch typos and schema drift early
    - use_enum_values: enums serialize as their string values
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        use_enum_values=True,
    )


# ==============================================================================
# Market Data
# ==============================================================================
class Candle(DomainModel):
    """One OHLCV bar.

    Attributes:
        time: Bar open time (UTC).
        open: Opening price.
        high: Highest price in the period.
        low: Lowest price in the period.
        close: Closing price.
        volume: Traded volume.
    """

    time: datetime
    open: float = Field(..., gt=0)  # noqa: A003
    high: float = Field(..., gt=0)
    low: float = Field(..., gt=0)
    close: float = Field(..., gt=0)
    volume: float = Field(default=0.0, ge=0)

    @field_validator("time")
    @classmethod
    def normalize_time(cls, v: datetime) -> datetime:
        """Ensure bar time is timezone-aware UTC."""
        return ensure_utc(v)


# ==============================================================================
# Trade Signal
# ==============================================================================
class TradeSignal(DomainModel):
    """A directional trade recommendation with provenance.

    Produced by any agent (or the coordinator on an agent's behalf) and
    consumed by the Execution Agent's pending queue.

    Attributes:
        id: Unique signal identifier.
        timestamp: When the signal was produced (UTC).
        direction: Long or short.
        confidence: Score in [0, 100]; out-of-range input is clamped.
        rationale: Human readable reason.
        source: Producing agent id.
        reference_price: Price at signal time (0 when unknown).
    """

    id: str = Field(default_factory=lambda: new_id("sig"))  # noqa: A003
    timestamp: datetime = Field(default_factory=utc_now)
    direction: Direction
    confidence: float
    rationale: str = ""
    source: str = Field(..., min_length=1)
    reference_price: float = Field(default=0.0, ge=0)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: float) -> float:
        """Clamp confidence into [0, 100]."""
        return clamp_confidence(v)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Ensure timestamp is timezone-aware UTC."""
        return ensure_utc(v)


# ==============================================================================
# Executed Trade
# ==============================================================================
class TradeStatus(str, Enum):
    """Lifecycle of an executed trade."""

    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ExecutedTrade(DomainModel):
    """Record of a position opened by the Execution Agent.

    Updated by replacement (``model_copy``) when P&L changes or the
    position closes.

    Attributes:
        id: Trade identifier.
        signal_id: Signal that triggered the trade.
        position_id: Exchange position id.
        direction: Long or short.
        entry_price: Fill reference price.
        margin: Margin committed (sats).
        leverage: Leverage used.
        stop_loss: Stop-loss price, if any.
        take_profit: Take-profit price, if any.
        executed_at: Open time (UTC).
        status: Open, closed or cancelled.
        closed_at: Close time, if closed.
        close_reason: Why the trade closed.
        pnl: Last known P&L (sats).
    """

    id: str = Field(default_factory=lambda: new_id("trade"))  # noqa: A003
    signal_id: str
    position_id: str
    direction: Direction
    entry_price: float
    margin: int
    leverage: float
    stop_loss: float | None = None
    take_profit: float | None = None
    executed_at: datetime = Field(default_factory=utc_now)
    status: TradeStatus = TradeStatus.OPEN
    closed_at: datetime | None = None
    close_reason: str | None = None
    pnl: float | None = None
