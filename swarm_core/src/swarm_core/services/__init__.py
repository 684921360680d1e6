"""Collaborators reached by the agents through narrow interfaces."""

from swarm_core.services.ai import AIBackend, AIMessage, DisabledAIBackend, OpenAIBackend
from swarm_core.services.exchange import (
    CCXTExchange,
    ExchangeClient,
    ExchangeConnectionError,
    ExchangeCredentials,
    ExchangeError,
    OrderSide,
    OrderType,
    PaperExchange,
    Position,
    Ticker,
    UnauthenticatedError,
)
from swarm_core.services.feeds import (
    ExternalSignalClient,
    FearGreedClient,
    FeedError,
    NewsItem,
    NewsSource,
    StaticNewsSource,
)
from swarm_core.services.technical import (
    InsufficientDataError,
    TechnicalAnalysisService,
    TechnicalAnalyzer,
    TechnicalSummary,
)

__all__ = [
    "AIBackend",
    "AIMessage",
    "CCXTExchange",
    "DisabledAIBackend",
    "ExchangeClient",
    "ExchangeConnectionError",
    "ExchangeCredentials",
    "ExchangeError",
    "ExternalSignalClient",
    "FearGreedClient",
    "FeedError",
    "InsufficientDataError",
    "NewsItem",
    "NewsSource",
    "OpenAIBackend",
    "OrderSide",
    "OrderType",
    "PaperExchange",
    "Position",
    "StaticNewsSource",
    "TechnicalAnalysisService",
    "TechnicalAnalyzer",
    "TechnicalSummary",
    "Ticker",
    "UnauthenticatedError",
]
