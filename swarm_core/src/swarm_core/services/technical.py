"""Technical analysis over BTC candles.

``TechnicalAnalysisService.analyze`` turns at least 200 candles into a
``TechnicalSummary``: indicator snapshot, trend/momentum/volatility
classification and an overall score in [-100, 100] bucketed into a
five-level signal. Pattern detection and support/resistance levels are
separate calls because the Market Analyst reports them independently.

Score composition:
    trend       +/- confidence * 0.40
    momentum    +/- 20 for oversold/overbought
    RSI         (50 - rsi) / 50 * 10
    MACD        +/- 15 by histogram sign
    CCI         -10 above 100, +10 below -100
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict

from swarm_core.common.errors import SwarmError
from swarm_core.common.types import VolatilityLevel
from swarm_core.services.indicators import candles_to_frame, indicator_frame, latest_values

if TYPE_CHECKING:
    from collections.abc import Sequence

    from swarm_core.common.types import Candle

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
MIN_CANDLES: Final[int] = 200
PATTERN_LOOKBACK: Final[int] = 50
LEVEL_CLUSTER_THRESHOLD: Final[float] = 0.02
MAX_LEVELS: Final[int] = 5


class InsufficientDataError(SwarmError):
    """Raised when too few candles are available for an analysis."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Need at least {required} candles for full analysis, got {available}")


# ==============================================================================
# Enumerations
# ==============================================================================
class TrendDirection(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class MomentumState(str, Enum):
    OVERBOUGHT = "overbought"
    OVERSOLD = "oversold"
    NEUTRAL = "neutral"


class SignalStrength(str, Enum):
    """Five-level signal derived from the overall score."""

    STRONG_BUY = "strong_buy"
    BUY = "buy"
    NEUTRAL = "neutral"
    SELL = "sell"
    STRONG_SELL = "strong_sell"


class ChartPattern(str, Enum):
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    BULLISH_ENGULFING = "bullish_engulfing"
    BEARISH_ENGULFING = "bearish_engulfing"
    DOJI = "doji"
    HAMMER = "hammer"
    SHOOTING_STAR = "shooting_star"


# ==============================================================================
# Models
# ==============================================================================
class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)


class TrendSignal(_Frozen):
    trend: TrendDirection
    strength: float
    confidence: float


class MomentumSignal(_Frozen):
    momentum: MomentumState
    value: float
    divergence: bool = False


class VolatilitySignal(_Frozen):
    volatility: VolatilityLevel
    atr: float
    atr_percent: float
    squeeze: bool


class SupportResistance(_Frozen):
    """Clustered levels: supports ascending, resistances descending."""

    supports: list[float]
    resistances: list[float]
    pivot: float


class MacdValues(_Frozen):
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class BollingerValues(_Frozen):
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0


class StochasticValues(_Frozen):
    k: float = 0.0
    d: float = 0.0


class IndicatorSnapshot(_Frozen):
    """Latest value of every indicator."""

    sma20: float = 0.0
    sma50: float = 0.0
    sma200: float = 0.0
    ema9: float = 0.0
    ema21: float = 0.0
    rsi: float = 50.0
    macd: MacdValues = MacdValues()
    bollinger: BollingerValues = BollingerValues()
    adx: float = 0.0
    atr: float = 0.0
    stochastic: StochasticValues = StochasticValues()
    williams_r: float = -50.0
    cci: float = 0.0
    obv: float = 0.0
    mfi: float = 50.0


class PriceAction(_Frozen):
    current_price: float
    price_vs_sma20: float = 0.0
    price_vs_sma50: float = 0.0
    price_vs_sma200: float = 0.0
    distance_from_bb_upper: float = 0.0
    distance_from_bb_lower: float = 0.0


class TechnicalSummary(_Frozen):
    """Result of a full analysis.

    Attributes:
        signal: Five-level signal.
        score: Overall score in [-100, 100].
        trend: Trend classification.
        momentum: Momentum classification.
        volatility: Volatility classification.
        indicators: Latest indicator values.
        price_action: Price relative to averages and bands (percent).
    """

    signal: SignalStrength
    score: float
    trend: TrendSignal
    momentum: MomentumSignal
    volatility: VolatilitySignal
    indicators: IndicatorSnapshot
    price_action: PriceAction


# ==============================================================================
# Analyzer Protocol
# ==============================================================================
@runtime_checkable
class TechnicalAnalyzer(Protocol):
    """What the Market Analyst needs from a TA implementation."""

    def analyze(self, candles: Sequence[Candle]) -> TechnicalSummary:
        ...

    def detect_patterns(self, candles: Sequence[Candle]) -> list[str]:
        ...

    def calculate_support_resistance(self, candles: Sequence[Candle]) -> SupportResistance:
        ...


# ==============================================================================
# Scoring
# ==============================================================================
def compute_signal_score(
    trend: TrendSignal,
    momentum: MomentumSignal,
    macd_histogram: float,
    cci: float,
) -> float:
    """Overall score in [-100, 100]."""
    score = 0.0

    if trend.trend == TrendDirection.BULLISH:
        score += trend.confidence / 100 * 40
    elif trend.trend == TrendDirection.BEARISH:
        score -= trend.confidence / 100 * 40

    if momentum.momentum == MomentumState.OVERSOLD:
        score += 20
    elif momentum.momentum == MomentumState.OVERBOUGHT:
        score -= 20

    score += (50 - momentum.value) / 50 * 10

    if macd_histogram > 0:
        score += 15
    elif macd_histogram < 0:
        score -= 15

    if cci > 100:
        score -= 10
    elif cci < -100:
        score += 10

    return max(-100.0, min(100.0, score))


def score_to_signal(score: float) -> SignalStrength:
    """Bucket a score into a five-level signal."""
    if score >= 50:
        return SignalStrength.STRONG_BUY
    if score >= 20:
        return SignalStrength.BUY
    if score <= -50:
        return SignalStrength.STRONG_SELL
    if score <= -20:
        return SignalStrength.SELL
    return SignalStrength.NEUTRAL


def classify_trend(
    price: float,
    sma20: float,
    sma50: float,
    sma200: float,
    ema9: float,
    ema21: float,
    adx: float,
) -> TrendSignal:
    """Point-based trend vote across moving averages."""
    bullish = 0
    bearish = 0

    for average, weight in ((sma20, 1), (sma50, 1), (sma200, 2)):
        if price > average:
            bullish += weight
        else:
            bearish += weight

    # Golden/death alignment
    if sma20 > sma50 > sma200:
        bullish += 3
    elif sma20 < sma50 < sma200:
        bearish += 3

    if ema9 > ema21:
        bullish += 1
    else:
        bearish += 1

    confidence = max(bullish, bearish) / (bullish + bearish) * 100
    if bullish > bearish + 2:
        trend = TrendDirection.BULLISH
    elif bearish > bullish + 2:
        trend = TrendDirection.BEARISH
    else:
        trend = TrendDirection.NEUTRAL

    return TrendSignal(trend=trend, strength=adx, confidence=confidence)


def classify_momentum(rsi: float, stoch_k: float, williams_r: float, mfi: float) -> MomentumSignal:
    """Overbought/oversold when at least two oscillators agree."""
    overbought = sum((rsi > 70, stoch_k > 80, williams_r > -20, mfi > 80))
    oversold = sum((rsi < 30, stoch_k < 20, williams_r < -80, mfi < 20))

    if overbought >= 2:
        state = MomentumState.OVERBOUGHT
    elif oversold >= 2:
        state = MomentumState.OVERSOLD
    else:
        state = MomentumState.NEUTRAL
    return MomentumSignal(momentum=state, value=rsi)


def classify_volatility(atr: float, price: float, bollinger: BollingerValues) -> VolatilitySignal:
    """ATR% and Bollinger width regime."""
    atr_percent = atr / price * 100 if price else 0.0
    bb_width = (bollinger.upper - bollinger.lower) / bollinger.middle * 100 if bollinger.middle else 0.0

    if atr_percent > 3 or bb_width > 8:
        level = VolatilityLevel.HIGH
    elif atr_percent < 1.5 or bb_width < 4:
        level = VolatilityLevel.LOW
    else:
        level = VolatilityLevel.MEDIUM

    return VolatilitySignal(volatility=level, atr=atr, atr_percent=atr_percent, squeeze=bb_width < 4)


def cluster_levels(levels: Sequence[float], threshold: float = LEVEL_CLUSTER_THRESHOLD) -> list[float]:
    """Merge sorted levels within ``threshold`` (relative) of the running cluster mean."""
    clusters: list[float] = []
    current: list[float] = []
    for level in sorted(levels):
        if current:
            mean = sum(current) / len(current)
            if abs(level - mean) / mean < threshold:
                current.append(level)
                continue
            clusters.append(mean)
        current = [level]
    if current:
        clusters.append(sum(current) / len(current))
    return clusters


def _pct(a: float, b: float) -> float:
    return (a - b) / b * 100 if b else 0.0


# ==============================================================================
# Service
# ==============================================================================
class TechnicalAnalysisService:
    """Indicator-based analysis of BTC candles."""

    def __init__(self, min_candles: int = MIN_CANDLES) -> None:
        self.min_candles = min_candles

    def analyze(self, candles: Sequence[Candle]) -> TechnicalSummary:
        """Full analysis.

        Args:
            candles: OHLCV bars, oldest first.

        Returns:
            TechnicalSummary for the last bar.

        Raises:
            InsufficientDataError: Fewer than ``min_candles`` bars.
        """
        if len(candles) < self.min_candles:
            raise InsufficientDataError(self.min_candles, len(candles))

        v = latest_values(indicator_frame(candles_to_frame(candles)))
        price = candles[-1].close

        indicators = IndicatorSnapshot(
            sma20=v["sma20"],
            sma50=v["sma50"],
            sma200=v["sma200"],
            ema9=v["ema9"],
            ema21=v["ema21"],
            rsi=v["rsi"],
            macd=MacdValues(macd=v["macd"], signal=v["macd_signal"], histogram=v["macd_histogram"]),
            bollinger=BollingerValues(upper=v["bb_upper"], middle=v["bb_middle"], lower=v["bb_lower"]),
            adx=v["adx"],
            atr=v["atr"],
            stochastic=StochasticValues(k=v["stoch_k"], d=v["stoch_d"]),
            williams_r=v["williams_r"],
            cci=v["cci"],
            obv=v["obv"],
            mfi=v["mfi"],
        )

        trend = classify_trend(
            price,
            indicators.sma20,
            indicators.sma50,
            indicators.sma200,
            indicators.ema9,
            indicators.ema21,
            indicators.adx,
        )
        momentum = classify_momentum(
            indicators.rsi, indicators.stochastic.k, indicators.williams_r, indicators.mfi
        )
        volatility = classify_volatility(indicators.atr, price, indicators.bollinger)
        price_action = PriceAction(
            current_price=price,
            price_vs_sma20=_pct(price, indicators.sma20),
            price_vs_sma50=_pct(price, indicators.sma50),
            price_vs_sma200=_pct(price, indicators.sma200),
            distance_from_bb_upper=(indicators.bollinger.upper - price) / price * 100,
            distance_from_bb_lower=(price - indicators.bollinger.lower) / price * 100,
        )

        score = compute_signal_score(trend, momentum, indicators.macd.histogram, indicators.cci)
        return TechnicalSummary(
            signal=score_to_signal(score),
            score=score,
            trend=trend,
            momentum=momentum,
            volatility=volatility,
            indicators=indicators,
            price_action=price_action,
        )

    def detect_patterns(self, candles: Sequence[Candle]) -> list[str]:
        """Chart and candlestick patterns on the latest bars."""
        if len(candles) < 2:
            return []

        patterns: list[str] = []
        recent = candles[-PATTERN_LOOKBACK:]
        highs = [c.high for c in recent]
        lows = [c.low for c in recent]

        max_high = max(highs)
        if sum(1 for h in highs if abs(h - max_high) / max_high < LEVEL_CLUSTER_THRESHOLD) >= 2:
            patterns.append(ChartPattern.DOUBLE_TOP.value)
        min_low = min(lows)
        if sum(1 for low in lows if abs(low - min_low) / min_low < LEVEL_CLUSTER_THRESHOLD) >= 2:
            patterns.append(ChartPattern.DOUBLE_BOTTOM.value)

        prev, last = candles[-2], candles[-1]
        if (
            prev.close < prev.open
            and last.close > last.open
            and last.close > prev.open
            and last.open < prev.close
        ):
            patterns.append(ChartPattern.BULLISH_ENGULFING.value)
        if (
            prev.close > prev.open
            and last.close < last.open
            and last.close < prev.open
            and last.open > prev.close
        ):
            patterns.append(ChartPattern.BEARISH_ENGULFING.value)

        body = abs(last.close - last.open)
        if body < (last.high - last.low) * 0.1:
            patterns.append(ChartPattern.DOJI.value)

        lower_wick = min(last.open, last.close) - last.low
        upper_wick = last.high - max(last.open, last.close)
        if lower_wick > body * 2 and upper_wick < body * 0.5:
            patterns.append(ChartPattern.HAMMER.value)
        if upper_wick > body * 2 and lower_wick < body * 0.5:
            patterns.append(ChartPattern.SHOOTING_STAR.value)

        return patterns

    def calculate_support_resistance(self, candles: Sequence[Candle]) -> SupportResistance:
        """Pivot levels merged with swing highs/lows."""
        last = candles[-1]
        pivot = (last.high + last.low + last.close) / 3
        span = last.high - last.low

        resistances = [2 * pivot - last.low, pivot + span, last.high + 2 * (pivot - last.low)]
        supports = [2 * pivot - last.high, pivot - span, last.low - 2 * (last.high - pivot)]

        for i in range(2, len(candles) - 2):
            window = candles[i - 2 : i + 3]
            high = candles[i].high
            low = candles[i].low
            if all(high > c.high for j, c in enumerate(window) if j != 2):
                resistances.append(high)
            if all(low < c.low for j, c in enumerate(window) if j != 2):
                supports.append(low)

        clustered_resistances = cluster_levels([r for r in resistances if r > 0])
        clustered_supports = cluster_levels([s for s in supports if s > 0])
        return SupportResistance(
            supports=clustered_supports[:MAX_LEVELS],
            resistances=list(reversed(clustered_resistances[-MAX_LEVELS:])),
            pivot=pivot,
        )
