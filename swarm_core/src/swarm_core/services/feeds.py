"""External data feeds: Fear & Greed index, external TA ratings, news.

HTTP feeds use ``httpx.AsyncClient`` with a tenacity retry on transport
errors. Non-success responses and malformed payloads raise ``FeedError``
without retrying.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Final, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from swarm_core.common.errors import SwarmError
from swarm_core.common.types import new_id, utc_now

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
FEAR_GREED_URL: Final[str] = "https://api.alternative.me/fng/?limit=1"
DEFAULT_TIMEOUT: Final[float] = 10.0
USER_AGENT: Final[str] = "btc-swarm"


class FeedError(SwarmError):
    """Raised when an external feed returns no usable data."""


# ==============================================================================
# Models
# ==============================================================================
class SignalRating(str, Enum):
    """Normalized external TA recommendation."""

    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    NEUTRAL = "NEUTRAL"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


def parse_rating(raw: str | None) -> SignalRating:
    """Normalize a recommendation string; unknown values map to NEUTRAL."""
    if not raw:
        return SignalRating.NEUTRAL
    try:
        return SignalRating(raw.upper())
    except ValueError:
        return SignalRating.NEUTRAL


class RatingBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    recommendation: SignalRating = SignalRating.NEUTRAL
    buy: int = 0
    sell: int = 0
    neutral: int = 0


class ExternalAnalysis(BaseModel):
    """One timeframe of the external TA feed."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    timestamp: datetime = Field(default_factory=utc_now)
    timeframe: str
    recommendation: SignalRating
    buy: int = 0
    sell: int = 0
    neutral: int = 0
    oscillators: RatingBreakdown = RatingBreakdown()
    moving_averages: RatingBreakdown = RatingBreakdown()


class NewsSentiment(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class NewsItem(BaseModel):
    """A news headline scored for sentiment and relevance."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=lambda: new_id("news"))  # noqa: A003
    title: str
    source: str = ""
    url: str = ""
    published_at: datetime = Field(default_factory=utc_now)
    sentiment: NewsSentiment = NewsSentiment.NEUTRAL
    relevance: float = Field(default=50.0, ge=0, le=100)
    summary: str | None = None


# ==============================================================================
# HTTP helpers
# ==============================================================================
async def _get_json(
    url: str,
    *,
    timeout: float,
    max_retries: int,
    transport: httpx.AsyncBaseTransport | None,
) -> Any:
    @retry(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch() -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, headers={"User-Agent": USER_AGENT}
        ) as client:
            return await client.get(url)

    try:
        response = await _fetch()
    except httpx.TransportError as exc:
        raise FeedError(f"Request to {url} failed: {exc}") from exc

    if response.status_code != 200:
        raise FeedError(f"Feed {url} returned HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise FeedError(f"Feed {url} returned invalid JSON") from exc


# ==============================================================================
# Fear & Greed
# ==============================================================================
class FearGreedClient:
    """Client for the public Fear & Greed index (0-100)."""

    def __init__(
        self,
        url: str = FEAR_GREED_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport

    async def fetch(self) -> int:
        """Latest index value.

        Raises:
            FeedError: Unreachable feed or unexpected payload.
        """
        data = await _get_json(
            self.url, timeout=self.timeout, max_retries=self.max_retries, transport=self.transport
        )
        try:
            return int(data["data"][0]["value"])
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise FeedError("Unexpected Fear & Greed payload") from exc


# ==============================================================================
# External Technical Ratings
# ==============================================================================
class ExternalSignalClient:
    """Client for a TradingView-style technical-rating API.

    Endpoint layout: ``{api_url}/{symbol}/crypto/{exchange}/{timeframe}``.
    """

    def __init__(
        self,
        api_url: str,
        symbol: str = "BTCUSD",
        exchange: str = "BITSTAMP",
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.symbol = symbol
        self.exchange = exchange
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport

    def url_for(self, timeframe: str) -> str:
        return f"{self.api_url}/{self.symbol}/crypto/{self.exchange}/{timeframe}"

    async def fetch(self, timeframe: str) -> ExternalAnalysis:
        """Rating for one timeframe."""
        data = await _get_json(
            self.url_for(timeframe),
            timeout=self.timeout,
            max_retries=self.max_retries,
            transport=self.transport,
        )
        if not isinstance(data, dict):
            raise FeedError(f"Unexpected rating payload for {timeframe}")

        return ExternalAnalysis(
            timeframe=timeframe,
            recommendation=parse_rating(data.get("RECOMMENDATION")),
            buy=int(data.get("BUY") or 0),
            sell=int(data.get("SELL") or 0),
            neutral=int(data.get("NEUTRAL") or 0),
            oscillators=_breakdown(data.get("OSCILLATORS")),
            moving_averages=_breakdown(data.get("MOVING_AVERAGES")),
        )


def _breakdown(raw: dict[str, Any] | None) -> RatingBreakdown:
    raw = raw or {}
    return RatingBreakdown(
        recommendation=parse_rating(raw.get("RECOMMENDATION")),
        buy=int(raw.get("BUY") or 0),
        sell=int(raw.get("SELL") or 0),
        neutral=int(raw.get("NEUTRAL") or 0),
    )


# ==============================================================================
# News
# ==============================================================================
@runtime_checkable
class NewsSource(Protocol):
    """Source of scored news items."""

    async def fetch_news(self) -> list[NewsItem]:
        ...


_DEFAULT_HEADLINES: Final[tuple[tuple[str, NewsSentiment, float], ...]] = (
    ("Bitcoin institutional adoption continues to grow", NewsSentiment.BULLISH, 85),
    ("Federal Reserve signals interest rate decision", NewsSentiment.NEUTRAL, 75),
    ("Major exchange reports record trading volume", NewsSentiment.BULLISH, 70),
)


class StaticNewsSource:
    """News source serving a fixed list.

    Without explicit items it serves a small set of generic market
    headlines stamped one hour apart, ending now.
    """

    def __init__(self, items: list[NewsItem] | None = None) -> None:
        self.items = items

    async def fetch_news(self) -> list[NewsItem]:
        if self.items is not None:
            return list(self.items)

        now = utc_now()
        return [
            NewsItem(
                title=title,
                source="Market Analysis",
                published_at=now - timedelta(hours=i),
                sentiment=sentiment,
                relevance=relevance,
            )
            for i, (title, sentiment, relevance) in enumerate(_DEFAULT_HEADLINES)
        ]
