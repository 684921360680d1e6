"""External-signal agent: third-party technical ratings per timeframe.

Ratings are combined with the same timeframe weighting as the Market
Analyst (1d=3, 4h=2, else 1). A strong rating counts double. The combined
rating is published on topic ``combined_signal``; the coordinator maps
non-neutral ratings to execution signals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import Field

from swarm_core.agents.protocol import AgentSettings, AgentType
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.services.feeds import SignalRating

if TYPE_CHECKING:
    from swarm_core.bus.message_bus import MessageBus
    from swarm_core.services.feeds import ExternalAnalysis, ExternalSignalClient

log = structlog.get_logger()

BASE_THRESHOLD: Final[int] = 2
STRONG_THRESHOLD: Final[int] = 4
KEYWORDS: Final[tuple[str, ...]] = ("tradingview", "tv", "external", "signal")


class ExternalSignalSettings(AgentSettings):
    """External feed parameters.

    Attributes:
        api_url: Base URL of the rating API.
        symbol: Instrument symbol on the source exchange.
        exchange: Source exchange name.
        timeframes: Timeframes fetched each tick.
        require_strong_signal: Doubles the threshold a side must reach.
    """

    interval_seconds: float = Field(default=60.0, gt=0)
    api_url: str = "http://localhost:8080"
    symbol: str = "BTCUSD"
    exchange: str = "COINBASE"
    timeframes: list[str] = Field(default_factory=lambda: ["1h", "4h"])
    require_strong_signal: bool = False


def timeframe_weight(timeframe: str) -> int:
    if "1d" in timeframe:
        return 3
    if "4h" in timeframe:
        return 2
    return 1


def combine_ratings(analyses: dict[str, ExternalAnalysis], require_strong: bool = False) -> SignalRating:
    """Weighted vote of per-timeframe ratings; buy side is checked first."""
    if not analyses:
        return SignalRating.NEUTRAL

    buy_score = 0
    sell_score = 0
    for timeframe, analysis in analyses.items():
        weight = timeframe_weight(timeframe)
        rating = SignalRating(analysis.recommendation)
        if rating == SignalRating.STRONG_BUY:
            buy_score += 2 * weight
        elif rating == SignalRating.BUY:
            buy_score += weight
        elif rating == SignalRating.STRONG_SELL:
            sell_score += 2 * weight
        elif rating == SignalRating.SELL:
            sell_score += weight

    threshold = STRONG_THRESHOLD if require_strong else BASE_THRESHOLD
    if buy_score >= threshold * 2:
        return SignalRating.STRONG_BUY
    if buy_score >= threshold:
        return SignalRating.BUY
    if sell_score >= threshold * 2:
        return SignalRating.STRONG_SELL
    if sell_score >= threshold:
        return SignalRating.SELL
    return SignalRating.NEUTRAL


class ExternalSignalAgent:
    """Polls an external rating API and publishes a combined rating."""

    agent_type = AgentType.EXTERNAL_SIGNAL
    keywords = KEYWORDS
    description = "External technical ratings (TradingView-style)"
    role = "external signal analyst relaying third-party technical ratings"

    def __init__(
        self,
        agent_id: str,
        name: str,
        bus: MessageBus,
        client: ExternalSignalClient,
        settings: ExternalSignalSettings | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.bus = bus
        self.client = client
        self.settings = settings or ExternalSignalSettings()
        self.last_analysis: dict[str, ExternalAnalysis] = {}
        self.current_signal = SignalRating.NEUTRAL

    async def execute(self) -> None:
        for timeframe in self.settings.timeframes:
            try:
                analysis = await self.client.fetch(timeframe)
            except Exception as exc:
                log.error(
                    "Failed to fetch external signal",
                    agent_id=self.agent_id,
                    timeframe=timeframe,
                    error=str(exc),
                )
                continue
            self.last_analysis[timeframe] = analysis
            log.info(
                "External signal received",
                agent_id=self.agent_id,
                timeframe=timeframe,
                recommendation=analysis.recommendation,
                buy=analysis.buy,
                sell=analysis.sell,
                neutral=analysis.neutral,
            )

        self.current_signal = combine_ratings(self.last_analysis, self.settings.require_strong_signal)
        self.bus.broadcast(
            self.agent_id,
            MessageType.ANALYSIS,
            {
                "signal": self.current_signal.value,
                "timeframes": {tf: a.recommendation for tf, a in self.last_analysis.items()},
            },
            topic=Topic.COMBINED_SIGNAL,
        )

    async def force_update(self) -> SignalRating:
        await self.execute()
        return self.current_signal

    async def rule_based_response(self, query: str) -> str:
        if not self.last_analysis:
            return "No external signals available yet."
        lines = ["**External Signals**", ""]
        for timeframe, a in self.last_analysis.items():
            lines.append(
                f"- {timeframe}: {a.recommendation} (buy {a.buy} / neutral {a.neutral} / sell {a.sell}; "
                f"oscillators {a.oscillators.recommendation}, MAs {a.moving_averages.recommendation})"
            )
        lines.append("")
        lines.append(f"**Combined:** {self.current_signal.value}")
        return "\n".join(lines)

    def ai_context(self) -> dict[str, Any]:
        return {
            "combined_signal": self.current_signal.value,
            "timeframes": {tf: a.model_dump(mode="json") for tf, a in self.last_analysis.items()},
        }
