"""Market Analyst agent: technical analysis per timeframe.

Each tick fetches candles for every configured timeframe, runs the
technical analysis, derives a per-timeframe recommendation and combines
them into one weighted call published on topic ``recommendation``.

Confidence of a per-timeframe recommendation is built additively:
    base               |score|
    trend confirmation +10 (ADX > 25 and trend agrees)
    momentum           +15 (oversold for long, overbought for short)
    engulfing          +10
    hammer / star      +5
capped at 100.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field

from swarm_core.agents.protocol import (
    AgentSettings,
    AgentType,
    OpinionStance,
    ProposalAssessment,
    TradeOpinion,
)
from swarm_core.bus.message_bus import MessageType, Topic, VoteDecision
from swarm_core.common.errors import SwarmError
from swarm_core.common.types import Direction, Timeframe, utc_now
from swarm_core.services.technical import (
    ChartPattern,
    MomentumState,
    SignalStrength,
    SupportResistance,
    TechnicalSummary,
    TrendDirection,
)

if TYPE_CHECKING:
    from swarm_core.bus.message_bus import MessageBus, TradeProposal
    from swarm_core.services.exchange import ExchangeClient
    from swarm_core.services.technical import TechnicalAnalyzer

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
TIMEFRAME_WEIGHTS: Final[dict[str, int]] = {"1h": 1, "4h": 2, "1d": 3}
TREND_STRENGTH_THRESHOLD: Final[float] = 25.0
MIN_OPINION_CONFIDENCE: Final[float] = 50.0
KEYWORDS: Final[tuple[str, ...]] = (
    "analysis",
    "technical",
    "chart",
    "rsi",
    "macd",
    "trend",
    "support",
    "resistance",
    "indicator",
    "pattern",
    "bullish",
    "bearish",
    "price",
    "market",
    "signal",
)


# ==============================================================================
# Models
# ==============================================================================
class RecommendationAction(str, Enum):
    LONG = "long"
    SHORT = "short"
    HOLD = "hold"
    CLOSE_LONGS = "close_longs"
    CLOSE_SHORTS = "close_shorts"


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    action: RecommendationAction
    confidence: float
    reason: str = ""


class MarketAnalysis(BaseModel):
    """Full result for one timeframe."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    timestamp: datetime = Field(default_factory=utc_now)
    timeframe: Timeframe
    price: float
    summary: TechnicalSummary
    patterns: list[str]
    support_resistance: SupportResistance
    recommendation: Recommendation


class CombinedRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    action: RecommendationAction
    confidence: float
    timeframes: dict[str, Recommendation] = Field(default_factory=dict)


class MarketAnalystSettings(AgentSettings):
    """Market Analyst parameters.

    Attributes:
        timeframes: Candle intervals analyzed each tick.
        min_confidence: Combined confidence the call must exceed.
        candle_count: Candles requested per timeframe.
    """

    interval_seconds: float = Field(default=300.0, gt=0)
    timeframes: list[Timeframe] = Field(default_factory=lambda: [Timeframe.H1, Timeframe.H4])
    min_confidence: float = Field(default=60.0, ge=0, le=100)
    candle_count: int = Field(default=250, ge=200)


# ==============================================================================
# Recommendation Logic
# ==============================================================================
def build_recommendation(summary: TechnicalSummary, patterns: list[str]) -> Recommendation:
    """Derive a per-timeframe recommendation from a technical summary."""
    action = RecommendationAction.HOLD
    confidence = abs(summary.score)
    reasons: list[str] = []

    if summary.signal in (SignalStrength.STRONG_BUY, SignalStrength.BUY):
        action = RecommendationAction.LONG
        reasons.append(f"TA signal: {summary.signal}")
    elif summary.signal in (SignalStrength.STRONG_SELL, SignalStrength.SELL):
        action = RecommendationAction.SHORT
        reasons.append(f"TA signal: {summary.signal}")

    trend = summary.trend
    if trend.trend == TrendDirection.BULLISH and trend.strength > TREND_STRENGTH_THRESHOLD:
        if action == RecommendationAction.LONG:
            confidence += 10
        reasons.append(f"Strong bullish trend (ADX: {trend.strength:.1f})")
    elif trend.trend == TrendDirection.BEARISH and trend.strength > TREND_STRENGTH_THRESHOLD:
        if action == RecommendationAction.SHORT:
            confidence += 10
        reasons.append(f"Strong bearish trend (ADX: {trend.strength:.1f})")

    momentum = summary.momentum.momentum
    if momentum == MomentumState.OVERSOLD and action == RecommendationAction.LONG:
        confidence += 15
        reasons.append(f"Oversold RSI: {summary.indicators.rsi:.1f}")
    elif momentum == MomentumState.OVERBOUGHT and action == RecommendationAction.SHORT:
        confidence += 15
        reasons.append(f"Overbought RSI: {summary.indicators.rsi:.1f}")

    if ChartPattern.BULLISH_ENGULFING.value in patterns and action == RecommendationAction.LONG:
        confidence += 10
        reasons.append("Bullish engulfing pattern")
    elif ChartPattern.BEARISH_ENGULFING.value in patterns and action == RecommendationAction.SHORT:
        confidence += 10
        reasons.append("Bearish engulfing pattern")

    if ChartPattern.HAMMER.value in patterns and action == RecommendationAction.LONG:
        confidence += 5
        reasons.append("Hammer candle")
    elif ChartPattern.SHOOTING_STAR.value in patterns and action == RecommendationAction.SHORT:
        confidence += 5
        reasons.append("Shooting star candle")

    # Exit hints
    if action == RecommendationAction.HOLD and momentum == MomentumState.OVERBOUGHT:
        action = RecommendationAction.CLOSE_LONGS
        reasons.append("Overbought conditions - consider taking profits")
    elif action == RecommendationAction.HOLD and momentum == MomentumState.OVERSOLD:
        action = RecommendationAction.CLOSE_SHORTS
        reasons.append("Oversold conditions - consider covering shorts")

    return Recommendation(action=action, confidence=min(100.0, confidence), reason="; ".join(reasons))


def combine_recommendations(
    recommendations: dict[str, Recommendation],
    min_confidence: float,
) -> CombinedRecommendation:
    """Weight per-timeframe calls (1d > 4h > 1h) into one.

    Acts only when the normalized side exceeds ``min_confidence`` and
    dominates the opposite side.
    """
    if not recommendations:
        return CombinedRecommendation(action=RecommendationAction.HOLD, confidence=0.0)

    long_score = 0.0
    short_score = 0.0
    total_weight = 0
    for timeframe, rec in recommendations.items():
        weight = TIMEFRAME_WEIGHTS.get(timeframe, 1)
        total_weight += weight
        if rec.action == RecommendationAction.LONG:
            long_score += weight * rec.confidence / 100
        elif rec.action == RecommendationAction.SHORT:
            short_score += weight * rec.confidence / 100

    normalized_long = long_score / total_weight * 100
    normalized_short = short_score / total_weight * 100

    action = RecommendationAction.HOLD
    confidence = 0.0
    if normalized_long > min_confidence and normalized_long > normalized_short:
        action, confidence = RecommendationAction.LONG, normalized_long
    elif normalized_short > min_confidence and normalized_short > normalized_long:
        action, confidence = RecommendationAction.SHORT, normalized_short

    return CombinedRecommendation(action=action, confidence=confidence, timeframes=dict(recommendations))


# ==============================================================================
# Agent
# ==============================================================================
class MarketAnalystAgent:
    """Technical analysis agent.

    Attributes:
        last_analysis: Latest ``MarketAnalysis`` per timeframe value.
    """

    agent_type = AgentType.MARKET_ANALYST
    keywords = KEYWORDS
    description = "Technical analysis, chart patterns, support/resistance, indicators"
    role = "technical market analyst"

    def __init__(
        self,
        agent_id: str,
        name: str,
        bus: MessageBus,
        exchange: ExchangeClient,
        ta: TechnicalAnalyzer,
        settings: MarketAnalystSettings | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.bus = bus
        self.exchange = exchange
        self.ta = ta
        self.settings = settings or MarketAnalystSettings()
        self.last_analysis: dict[str, MarketAnalysis] = {}

    async def execute(self) -> None:
        """Analyze every timeframe and publish the combined call.

        Raises:
            SwarmError: When no timeframe could be analyzed.
        """
        failures: dict[str, str] = {}
        for timeframe in self.settings.timeframes:
            tf = Timeframe(timeframe)
            try:
                analysis = await self.analyze_timeframe(tf)
            except Exception as exc:
                failures[tf.value] = str(exc)
                log.warning("Timeframe analysis failed", agent_id=self.agent_id, timeframe=tf.value, error=str(exc))
                continue

            self.last_analysis[tf.value] = analysis
            self.bus.broadcast(
                self.agent_id,
                MessageType.ANALYSIS,
                {
                    "timeframe": tf.value,
                    "price": analysis.price,
                    "signal": analysis.summary.signal,
                    "score": analysis.summary.score,
                    "patterns": analysis.patterns,
                    "recommendation": analysis.recommendation.model_dump(mode="json"),
                },
                topic=Topic.MARKET_ANALYSIS,
            )
            log.info(
                "Timeframe analysis complete",
                agent_id=self.agent_id,
                timeframe=tf.value,
                signal=analysis.summary.signal,
                score=round(analysis.summary.score, 1),
                action=analysis.recommendation.action,
            )

        if failures and len(failures) == len(self.settings.timeframes):
            raise SwarmError(f"All timeframe analyses failed: {failures}")

        combined = self.combined_recommendation()
        payload = combined.model_dump(mode="json")
        latest = self._latest_price()
        if latest is not None:
            payload["price"] = latest
        self.bus.broadcast(self.agent_id, MessageType.ANALYSIS, payload, topic=Topic.RECOMMENDATION)

    async def analyze_timeframe(self, timeframe: Timeframe) -> MarketAnalysis:
        """Fetch candles and analyze one timeframe."""
        end = utc_now()
        start = end - timedelta(seconds=timeframe.seconds * self.settings.candle_count)
        candles = await self.exchange.get_candles(start, end, timeframe.value)

        summary = self.ta.analyze(candles)
        patterns = self.ta.detect_patterns(candles)
        levels = self.ta.calculate_support_resistance(candles)
        return MarketAnalysis(
            timeframe=timeframe,
            price=candles[-1].close,
            summary=summary,
            patterns=patterns,
            support_resistance=levels,
            recommendation=build_recommendation(summary, patterns),
        )

    def combined_recommendation(self) -> CombinedRecommendation:
        return combine_recommendations(
            {tf: a.recommendation for tf, a in self.last_analysis.items()},
            self.settings.min_confidence,
        )

    def _latest_price(self) -> float | None:
        if not self.last_analysis:
            return None
        return max(self.last_analysis.values(), key=lambda a: a.timestamp).price

    async def force_analysis(self) -> dict[str, MarketAnalysis]:
        """Run an analysis cycle outside the schedule."""
        await self.execute()
        return dict(self.last_analysis)

    # ------------------------------------------------------------------
    # Swarm participation
    # ------------------------------------------------------------------
    async def evaluate_trade_proposal(self, proposal: TradeProposal) -> ProposalAssessment:
        combined = self.combined_recommendation()
        if combined.action not in (RecommendationAction.LONG, RecommendationAction.SHORT):
            return ProposalAssessment(
                decision=VoteDecision.ABSTAIN,
                confidence=50,
                reason="Market conditions do not favor a clear direction",
            )

        direction = Direction(proposal.direction).value
        if combined.action == direction:
            return ProposalAssessment(
                decision=VoteDecision.APPROVE,
                confidence=combined.confidence,
                reason=f"Technical analysis supports {direction} with {combined.confidence:.0f}% confidence",
            )
        return ProposalAssessment(
            decision=VoteDecision.REJECT,
            confidence=combined.confidence,
            reason=f"Technical analysis suggests {combined.action}, not {direction}",
        )

    async def get_trade_opinion(self, direction: Direction, context: str | None) -> TradeOpinion:
        combined = self.combined_recommendation()
        if combined.action == RecommendationAction.HOLD or combined.confidence < MIN_OPINION_CONFIDENCE:
            return TradeOpinion(
                opinion=OpinionStance.NEUTRAL,
                confidence=combined.confidence,
                reason="Technical signals are mixed or weak",
            )

        wanted = Direction(direction).value
        if combined.action == wanted:
            calls = ", ".join(f"{tf}: {rec.action}" for tf, rec in combined.timeframes.items())
            return TradeOpinion(
                opinion=OpinionStance.APPROVE,
                confidence=combined.confidence,
                reason=f"TA supports {wanted} ({calls})",
            )
        return TradeOpinion(
            opinion=OpinionStance.REJECT,
            confidence=combined.confidence,
            reason=f"TA suggests {combined.action} instead of {wanted}",
        )

    async def rule_based_response(self, query: str) -> str:
        if not self.last_analysis:
            try:
                await self.execute()
            except Exception as exc:
                return f"I don't have current analysis available. Error: {exc}"

        lines = ["**Market Analyst Report**", ""]
        for timeframe, analysis in self.last_analysis.items():
            summary = analysis.summary
            rec = analysis.recommendation
            lines.extend(
                [
                    f"**{timeframe.upper()} Timeframe:**",
                    f"- Signal: {summary.signal} (score: {summary.score:.1f})",
                    f"- Trend: {summary.trend.trend} (strength: {summary.trend.strength:.1f})",
                    f"- RSI: {summary.indicators.rsi:.1f} | MACD histogram: {summary.indicators.macd.histogram:+.2f}",
                    f"- Recommendation: **{str(rec.action).upper()}** ({rec.confidence:.0f}% confidence)",
                    f"- Reason: {rec.reason}",
                    "",
                ]
            )

        combined = self.combined_recommendation()
        lines.append(
            f"**Overall Recommendation:** {str(combined.action).upper()} @ {combined.confidence:.0f}% confidence"
        )
        return "\n".join(lines)

    def ai_context(self) -> dict[str, Any]:
        return {
            "combined": self.combined_recommendation().model_dump(mode="json"),
            "timeframes": {
                tf: {
                    "price": a.price,
                    "signal": a.summary.signal,
                    "score": a.summary.score,
                    "trend": a.summary.trend.model_dump(mode="json"),
                    "rsi": a.summary.indicators.rsi,
                    "patterns": a.patterns,
                    "supports": a.support_resistance.supports,
                    "resistances": a.support_resistance.resistances,
                }
                for tf, a in self.last_analysis.items()
            },
        }
