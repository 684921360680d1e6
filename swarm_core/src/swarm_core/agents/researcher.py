"""Researcher agent: news and market sentiment."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field

from swarm_core.agents.protocol import AgentSettings, AgentType
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.common.types import utc_now
from swarm_core.services.feeds import FeedError, NewsItem, NewsSentiment

if TYPE_CHECKING:
    from swarm_core.bus.message_bus import MessageBus
    from swarm_core.services.feeds import FearGreedClient, NewsSource

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
NEWS_WINDOW: Final[timedelta] = timedelta(hours=24)
EVENT_WINDOW: Final[timedelta] = timedelta(hours=1)
NEWS_CACHE_SIZE: Final[int] = 100
KEY_EVENT_RELEVANCE: Final[float] = 80.0
SENTIMENT_SCORES: Final[dict[str, float]] = {"bullish": 75.0, "bearish": 25.0, "neutral": 50.0}
EXTREME_GREED_EVENT: Final[str] = "Extreme greed - potential reversal risk"
EXTREME_FEAR_EVENT: Final[str] = "Extreme fear - potential buying opportunity"
KEYWORDS: Final[tuple[str, ...]] = (
    "news",
    "sentiment",
    "onchain",
    "on-chain",
    "funding",
    "volume",
    "whale",
    "exchange",
    "flow",
    "fundamental",
)


class SentimentLevel(str, Enum):
    EXTREME_FEAR = "extreme_fear"
    FEAR = "fear"
    NEUTRAL = "neutral"
    GREED = "greed"
    EXTREME_GREED = "extreme_greed"


_SENTIMENT_TEXT: Final[dict[str, str]] = {
    "extreme_fear": "Market is in extreme fear",
    "fear": "Market sentiment is fearful",
    "neutral": "Market sentiment is neutral",
    "greed": "Market sentiment is greedy",
    "extreme_greed": "Market is in extreme greed",
}


class MarketSentiment(BaseModel):
    """Composite sentiment.

    Attributes:
        overall: Bucketed level.
        score: Mean of the available indicators, 0-100.
        fear_greed_index: Latest index value, None when the feed failed.
        news_score: Relevance-weighted news score.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    overall: SentimentLevel
    score: float
    fear_greed_index: int | None = None
    news_score: float | None = None


class ResearchReport(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    timestamp: datetime = Field(default_factory=utc_now)
    news: list[NewsItem] = Field(default_factory=list)
    sentiment: MarketSentiment
    summary: str
    recommendation: NewsSentiment
    confidence: float
    key_events: list[str] = Field(default_factory=list)


class ResearcherSettings(AgentSettings):
    interval_seconds: float = Field(default=900.0, gt=0)


def score_to_sentiment(score: float) -> SentimentLevel:
    if score <= 20:
        return SentimentLevel.EXTREME_FEAR
    if score <= 40:
        return SentimentLevel.FEAR
    if score <= 60:
        return SentimentLevel.NEUTRAL
    if score <= 80:
        return SentimentLevel.GREED
    return SentimentLevel.EXTREME_GREED


def news_sentiment_score(news: list[NewsItem], now: datetime | None = None) -> float:
    """Relevance-weighted sentiment of the last 24 hours of news (50 when empty)."""
    cutoff = (now or utc_now()) - NEWS_WINDOW
    weighted = 0.0
    total = 0.0
    for item in news:
        if item.published_at <= cutoff:
            continue
        weight = item.relevance / 100
        weighted += SENTIMENT_SCORES.get(item.sentiment, 50.0) * weight
        total += weight
    return weighted / total if total > 0 else 50.0


def build_report(news: list[NewsItem], sentiment: MarketSentiment) -> ResearchReport:
    """Recommendation with contrarian overrides at the extremes."""
    key_events = [n.title for n in news if n.relevance > KEY_EVENT_RELEVANCE]

    recommendation = NewsSentiment.NEUTRAL
    confidence = 50.0
    if sentiment.score >= 60:
        recommendation = NewsSentiment.BULLISH
        confidence = min(90.0, sentiment.score)
    elif sentiment.score <= 40:
        recommendation = NewsSentiment.BEARISH
        confidence = min(90.0, 100 - sentiment.score)

    if sentiment.overall == SentimentLevel.EXTREME_GREED:
        recommendation = NewsSentiment.NEUTRAL
        key_events.append(EXTREME_GREED_EVENT)
    elif sentiment.overall == SentimentLevel.EXTREME_FEAR:
        recommendation = NewsSentiment.BULLISH
        key_events.append(EXTREME_FEAR_EVENT)

    summary = (
        f"{_SENTIMENT_TEXT[SentimentLevel(sentiment.overall).value]} (score: {sentiment.score:.0f}). "
        f"Analyzed {len(news)} news items. "
        f"{len(key_events)} key events identified."
    )
    return ResearchReport(
        news=news,
        sentiment=sentiment,
        summary=summary,
        recommendation=recommendation,
        confidence=confidence,
        key_events=key_events,
    )


class ResearcherAgent:
    """Periodic sentiment research.

    Combines the Fear & Greed index with a relevance-weighted news score
    and publishes a ``ResearchReport`` on topic ``research_report``.
    """

    agent_type = AgentType.RESEARCHER
    keywords = KEYWORDS
    description = "News, sentiment analysis, market events"
    role = "market researcher focusing on news, sentiment, and fundamental analysis"

    def __init__(
        self,
        agent_id: str,
        name: str,
        bus: MessageBus,
        news_source: NewsSource,
        fear_greed: FearGreedClient | None = None,
        settings: ResearcherSettings | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.bus = bus
        self.news_source = news_source
        self.fear_greed = fear_greed
        self.settings = settings or ResearcherSettings()
        self.last_report: ResearchReport | None = None
        self.news_cache: list[NewsItem] = []

    async def execute(self) -> None:
        news = await self.fetch_news()
        sentiment = await self.analyze_sentiment()
        report = build_report(news, sentiment)
        self.last_report = report

        self.bus.broadcast(
            self.agent_id, MessageType.ANALYSIS, report.model_dump(mode="json"), topic=Topic.RESEARCH_REPORT
        )
        log.info(
            "Research report generated",
            agent_id=self.agent_id,
            news_count=len(news),
            sentiment=sentiment.overall,
            recommendation=report.recommendation,
        )

    async def fetch_news(self) -> list[NewsItem]:
        try:
            news = await self.news_source.fetch_news()
        except Exception as exc:
            log.warning("Failed to fetch news", agent_id=self.agent_id, error=str(exc))
            return []

        fresh_ids = {n.id for n in news}
        self.news_cache = (news + [n for n in self.news_cache if n.id not in fresh_ids])[:NEWS_CACHE_SIZE]
        return news

    async def analyze_sentiment(self) -> MarketSentiment:
        index: int | None = None
        if self.fear_greed is not None:
            try:
                index = await self.fear_greed.fetch()
            except FeedError as exc:
                log.debug("Failed to fetch Fear & Greed Index", agent_id=self.agent_id, error=str(exc))

        news_score = news_sentiment_score(self.news_cache)
        values = [v for v in (index, news_score) if v is not None]
        score = sum(values) / len(values) if values else 50.0
        return MarketSentiment(
            overall=score_to_sentiment(score),
            score=score,
            fear_greed_index=index,
            news_score=news_score,
        )

    async def force_research(self) -> ResearchReport | None:
        await self.execute()
        return self.last_report

    def get_recent_news(self, limit: int = 20) -> list[NewsItem]:
        return self.news_cache[:limit]

    async def check_for_market_events(self) -> list[str]:
        """Flags derived from news volume and skew within the last hour."""
        cutoff = utc_now() - EVENT_WINDOW
        recent = [n for n in self.news_cache if n.published_at > cutoff]

        events: list[str] = []
        if len(recent) > 5:
            events.append("High news activity detected")
        if sum(1 for n in recent if n.sentiment == NewsSentiment.BEARISH) >= 3:
            events.append("Multiple bearish news items")
        if sum(1 for n in recent if n.sentiment == NewsSentiment.BULLISH) >= 3:
            events.append("Multiple bullish news items")
        return events

    async def rule_based_response(self, query: str) -> str:
        if self.last_report is None:
            try:
                await self.execute()
            except Exception as exc:
                return f"No research report available. Error: {exc}"

        report = self.last_report
        if report is None:
            return "No research report available."
        sentiment = report.sentiment
        lines = [
            "**Research Report**",
            "",
            f"**Sentiment:** {str(sentiment.overall).replace('_', ' ').title()} (score: {sentiment.score:.0f})",
        ]
        if sentiment.fear_greed_index is not None:
            lines.append(f"- Fear & Greed Index: {sentiment.fear_greed_index}")
        if sentiment.news_score is not None:
            lines.append(f"- News sentiment: {sentiment.news_score:.0f}")
        lines.extend(
            [
                "",
                f"**Recommendation:** {str(report.recommendation).upper()} ({report.confidence:.0f}% confidence)",
                "",
                report.summary,
            ]
        )
        if report.key_events:
            lines.append("")
            lines.append("**Key Events:**")
            lines.extend(f"- {event}" for event in report.key_events)
        return "\n".join(lines)

    def ai_context(self) -> dict[str, Any]:
        if self.last_report is None:
            return {"status": "no report available"}
        return {
            "summary": self.last_report.summary,
            "sentiment": self.last_report.sentiment.model_dump(mode="json"),
            "recommendation": self.last_report.recommendation,
            "confidence": self.last_report.confidence,
            "key_events": self.last_report.key_events,
            "recent_headlines": [n.title for n in self.news_cache[:10]],
        }
