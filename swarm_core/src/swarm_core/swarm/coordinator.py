"""Swarm Coordinator: builds the agents, wires them, exposes controls.

Cross-agent routing is fixed and goes through the bus only:

    market-analyst  analysis/recommendation (long|short) -> execution.add_signal
    external-signal analysis/combined_signal (!= NEUTRAL) -> execution.add_signal
    risk-manager    alert/risk_alert (critical daily_loss_limit)
                    alert/stop_trading                    -> halt trading
    researcher      analysis/research_report (extreme)    -> log

The coordinator never touches an agent's status; it only calls public
methods on the agents and their runtimes.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field

from swarm_core.agents.execution import ExecutionAgent
from swarm_core.agents.external_signal import ExternalSignalAgent
from swarm_core.agents.market_analyst import MarketAnalystAgent, RecommendationAction
from swarm_core.agents.protocol import AgentStatus, AgentType
from swarm_core.agents.researcher import ResearcherAgent, SentimentLevel
from swarm_core.agents.risk_manager import AlertLevel, AlertType, RiskManagerAgent
from swarm_core.agents.runtime import AgentRuntime
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.common.errors import TradingUnavailableError
from swarm_core.common.types import Direction, TradeSignal, new_id, utc_now
from swarm_core.persistence.repository import SwarmState
from swarm_core.services.exchange import ExchangeConnectionError, OrderSide, OrderType
from swarm_core.services.feeds import (
    ExternalSignalClient,
    FearGreedClient,
    SignalRating,
    StaticNewsSource,
)
from swarm_core.services.technical import TechnicalAnalysisService

if TYPE_CHECKING:
    from collections.abc import Callable

    from swarm_core.bus.message_bus import Message, MessageBus
    from swarm_core.config import SwarmConfig
    from swarm_core.persistence.repository import SwarmRepository
    from swarm_core.services.ai import AIBackend
    from swarm_core.services.exchange import ExchangeClient, ExchangeCredentials, Position
    from swarm_core.services.feeds import NewsSource
    from swarm_core.services.technical import TechnicalAnalyzer

    ExchangeFactory = Callable[[ExchangeCredentials | None], ExchangeClient]

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
MARKET_ANALYST_ID: Final[str] = "market-analyst"
RISK_MANAGER_ID: Final[str] = "risk-manager"
EXECUTION_ID: Final[str] = "execution"
RESEARCHER_ID: Final[str] = "researcher"
EXTERNAL_SIGNAL_ID: Final[str] = "external-signal"

STRONG_EXTERNAL_CONFIDENCE: Final[float] = 85.0
EXTERNAL_CONFIDENCE: Final[float] = 65.0


# ==============================================================================
# Status Models
# ==============================================================================
class AgentStatusView(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str  # noqa: A003
    name: str
    type: AgentType  # noqa: A003
    status: AgentStatus
    enabled: bool
    last_run_at: datetime | None = None


class SwarmStatus(BaseModel):
    """Point-in-time swarm snapshot.

    Account fields are None in public mode or when their fetch failed.
    """

    model_config = ConfigDict(frozen=True)

    running: bool
    authenticated: bool
    auto_execute: bool
    agents: list[AgentStatusView] = Field(default_factory=list)
    balance: int | None = None
    open_positions: int | None = None
    daily_pl: float | None = None


# ==============================================================================
# Coordinator
# ==============================================================================
class SwarmCoordinator:
    """Owns the five agents and their runtimes.

    Attributes:
        config: Swarm configuration.
        bus: Shared message bus.
        exchange: Current exchange client (public until ``initialize``
            succeeds with credentials).
        runtimes: Runtime per agent id, in start order.
        running: True between ``start`` and ``stop``.
        authenticated: True when an authenticated exchange is injected.
    """

    def __init__(
        self,
        config: SwarmConfig,
        bus: MessageBus,
        *,
        repository: SwarmRepository | None = None,
        ai: AIBackend | None = None,
        ta: TechnicalAnalyzer | None = None,
        exchange_factory: ExchangeFactory | None = None,
        news_source: NewsSource | None = None,
        fear_greed: FearGreedClient | None = None,
        external_client: ExternalSignalClient | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self.repository = repository
        self.exchange_factory: ExchangeFactory = exchange_factory or config.exchange.build
        self.exchange: ExchangeClient = self.exchange_factory(None)
        self.running = False
        self.authenticated = False
        self._last_started_at: datetime | None = None
        self._unsubscribers: list[Callable[[], None]] = []

        feeds = config.feeds
        ext = config.external_signal
        self.market_analyst = MarketAnalystAgent(
            MARKET_ANALYST_ID,
            "Market Analyst",
            bus,
            self.exchange,
            ta or TechnicalAnalysisService(),
            config.market_analyst,
        )
        self.risk_manager = RiskManagerAgent(RISK_MANAGER_ID, "Risk Manager", bus, config.risk_manager)
        self.execution = ExecutionAgent(
            EXECUTION_ID, "Execution Agent", bus, config.execution, repository=repository
        )
        self.researcher = ResearcherAgent(
            RESEARCHER_ID,
            "Market Researcher",
            bus,
            news_source or StaticNewsSource(),
            fear_greed
            or FearGreedClient(feeds.fear_greed_url, timeout=feeds.timeout_seconds, max_retries=feeds.max_retries),
            config.researcher,
        )
        self.external_signal = ExternalSignalAgent(
            EXTERNAL_SIGNAL_ID,
            "External Signals",
            bus,
            external_client
            or ExternalSignalClient(
                ext.api_url,
                symbol=ext.symbol,
                exchange=ext.exchange,
                timeout=feeds.timeout_seconds,
                max_retries=ext.max_retries,
            ),
            ext,
        )

        self.runtimes: dict[str, AgentRuntime] = {}
        for agent, settings in (
            (self.market_analyst, config.market_analyst),
            (self.risk_manager, config.risk_manager),
            (self.execution, config.execution),
            (self.researcher, config.researcher),
            (self.external_signal, config.external_signal),
        ):
            runtime = AgentRuntime(
                agent,
                bus,
                settings.agent_config(agent.agent_id, agent.name),
                repository=repository,
                ai=ai,
            )
            runtime.attach()
            self.runtimes[agent.agent_id] = runtime

        self._wire()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def _wire(self) -> None:
        self._unsubscribers = [
            self.bus.subscribe(self._on_analysis, message_type=MessageType.ANALYSIS),
            self.bus.subscribe(self._on_alert, message_type=MessageType.ALERT),
        ]

    def close(self) -> None:
        """Detach every bus subscription owned by the swarm."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for runtime in self.runtimes.values():
            runtime.detach()

    def _on_analysis(self, message: Message) -> None:
        if message.topic == Topic.RECOMMENDATION and message.sender == MARKET_ANALYST_ID:
            self._on_recommendation(message.payload)
        elif message.topic == Topic.COMBINED_SIGNAL and message.sender == EXTERNAL_SIGNAL_ID:
            self._on_external_signal(message.payload)
        elif message.topic == Topic.RESEARCH_REPORT:
            sentiment = message.payload.get("sentiment", {})
            if sentiment.get("overall") in (SentimentLevel.EXTREME_FEAR, SentimentLevel.EXTREME_GREED):
                log.warning(
                    "Extreme market sentiment",
                    sentiment=sentiment.get("overall"),
                    score=sentiment.get("score"),
                )

    def _on_recommendation(self, payload: dict[str, Any]) -> None:
        if not self.config.signal_sources.use_market_analyst:
            return
        action = payload.get("action")
        if action not in (RecommendationAction.LONG, RecommendationAction.SHORT):
            return
        self.execution.add_signal(
            TradeSignal(
                id=new_id("ma"),
                direction=Direction(action),
                confidence=float(payload.get("confidence", 0.0)),
                rationale="Market Analyst recommendation across timeframes",
                source=MARKET_ANALYST_ID,
                reference_price=float(payload.get("price") or 0.0),
            )
        )

    def _on_external_signal(self, payload: dict[str, Any]) -> None:
        if not self.config.signal_sources.use_external_signals:
            return
        rating = SignalRating(payload.get("signal", SignalRating.NEUTRAL))
        if rating == SignalRating.NEUTRAL:
            return

        direction = Direction.LONG if rating in (SignalRating.BUY, SignalRating.STRONG_BUY) else Direction.SHORT
        strong = rating in (SignalRating.STRONG_BUY, SignalRating.STRONG_SELL)
        confidence = STRONG_EXTERNAL_CONFIDENCE if strong else EXTERNAL_CONFIDENCE
        log.info("External signal received", signal=rating.value, direction=direction.value, confidence=confidence)
        self.execution.add_signal(
            TradeSignal(
                id=new_id("ext"),
                direction=direction,
                confidence=confidence,
                rationale=f"External signal: {rating.value}",
                source=EXTERNAL_SIGNAL_ID,
            )
        )

    def _on_alert(self, message: Message) -> None:
        if message.topic == Topic.STOP_TRADING:
            self.halt_trading(str(message.payload.get("reason", "Stop trading requested")))
        elif message.topic == Topic.RISK_ALERT:
            payload = message.payload
            if payload.get("level") == AlertLevel.CRITICAL and payload.get("type") == AlertType.DAILY_LOSS_LIMIT:
                self.halt_trading(str(payload.get("message", "Daily loss limit exceeded")))
        elif message.topic == Topic.AGENT_ERROR:
            log.warning(
                "Agent reported an error",
                agent_id=message.sender,
                error=message.payload.get("error"),
                error_count=message.payload.get("error_count"),
            )

    def halt_trading(self, reason: str) -> None:
        """Disable auto-execute and drop every pending signal."""
        self.execution.set_auto_execute(False)
        self.execution.clear_pending_signals()
        self._save_state()
        log.warning("Trading halted", reason=reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self, credentials: ExchangeCredentials | None = None) -> None:
        """Connect the exchange.

        With credentials (explicit or from config) an authenticated client
        is built, pinged and injected into the risk and execution agents.
        Without, the swarm runs on public data and never trades.

        Raises:
            ExchangeConnectionError: The authenticated client is unreachable.
        """
        credentials = credentials or self.config.exchange.credentials()
        if credentials is None:
            log.info("Swarm initialized in public data mode")
        else:
            exchange = self.exchange_factory(credentials)
            if not await exchange.ping():
                raise ExchangeConnectionError("Failed to connect to exchange")

            await self._close_exchange()
            self.exchange = exchange
            self.market_analyst.exchange = exchange
            self.risk_manager.set_exchange(exchange)
            self.execution.set_services(exchange, self.risk_manager)
            self.authenticated = True
            log.info("Swarm initialized with authenticated exchange")

        if self.config.auto_start:
            self.start()

    def start(self) -> None:
        """Start every agent runtime. Must run inside an event loop."""
        if self.running:
            log.info("Swarm is already running")
            return

        log.info("Starting trading swarm", agents=list(self.runtimes))
        self.running = True
        self._last_started_at = utc_now()
        for runtime in self.runtimes.values():
            runtime.start()
        self._save_state(last_started_at=self._last_started_at)

    def stop(self) -> None:
        if not self.running:
            log.info("Swarm is not running")
            return

        log.info("Stopping trading swarm")
        for runtime in self.runtimes.values():
            runtime.stop()
        self.running = False
        self._save_state(last_stopped_at=utc_now())

    async def shutdown(self) -> None:
        """Stop, wait for in-flight ticks and bus handlers, close the exchange."""
        self.stop()
        for runtime in self.runtimes.values():
            await runtime.wait_idle()
        await self.bus.drain()
        self.close()
        await self._close_exchange()

    async def _close_exchange(self) -> None:
        closer = getattr(self.exchange, "stop", None)
        if closer is not None:
            await closer()

    def _save_state(self, **extra: Any) -> None:
        if self.repository is None:
            return
        self.repository.save_swarm_state(
            SwarmState(
                running=self.running,
                auto_execute=self.execution.auto_execute,
                config=self.config.public_view(),
                last_started_at=extra.get("last_started_at", self._last_started_at),
                last_stopped_at=extra.get("last_stopped_at"),
            )
        )

    def restore_state(self) -> bool:
        """Reload agent snapshots and resume if the swarm was running.

        Returns:
            True when a swarm state was found.
        """
        if self.repository is None:
            return False

        for runtime in self.runtimes.values():
            runtime.load_state()
        self.execution.load_from_repository()

        state = self.repository.load_swarm_state()
        if state is None:
            log.info("No saved swarm state")
            return False

        self._last_started_at = state.last_started_at
        self.execution.set_auto_execute(state.auto_execute)
        log.info("Swarm state restored", was_running=state.running, auto_execute=self.execution.auto_execute)
        if state.running:
            self.start()
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    async def get_status(self) -> SwarmStatus:
        """Agents' state plus account figures when authenticated."""
        agents = [
            AgentStatusView(
                id=runtime.agent_id,
                name=runtime.name,
                type=runtime.agent_type,
                status=runtime.status,
                enabled=runtime.config.enabled,
                last_run_at=runtime.metrics.last_run_at,
            )
            for runtime in self.runtimes.values()
        ]

        balance: int | None = None
        open_positions: int | None = None
        daily_pl: float | None = None
        if self.authenticated:
            try:
                balance = await self.exchange.get_balance()
            except Exception as exc:
                log.warning("Failed to fetch balance for status", error=str(exc))
            try:
                open_positions = len(await self.exchange.get_running_positions())
            except Exception as exc:
                log.warning("Failed to fetch positions for status", error=str(exc))
            if self.risk_manager.last_assessment is not None:
                daily_pl = self.risk_manager.last_assessment.daily_pl

        return SwarmStatus(
            running=self.running,
            authenticated=self.authenticated,
            auto_execute=self.execution.auto_execute,
            agents=agents,
            balance=balance,
            open_positions=open_positions,
            daily_pl=daily_pl,
        )

    def get_agent(self, agent_id: str) -> AgentRuntime | None:
        return self.runtimes.get(agent_id)

    # ------------------------------------------------------------------
    # Manual Controls
    # ------------------------------------------------------------------
    async def execute_manual_trade(
        self,
        direction: Direction,
        margin_percent: float,
        leverage: float,
        stop_loss_percent: float | None = None,
        take_profit_percent: float | None = None,
    ) -> Position | None:
        """Open a market position sized as a share of the balance.

        The order goes through the execution agent's single-flight guard so
        it never races an automated order.

        Returns:
            The opened position, or None when the execution agent was busy.

        Raises:
            TradingUnavailableError: Not authenticated.
        """
        if not self.authenticated:
            raise TradingUnavailableError("Trading not available - not authenticated")

        async def place() -> Position:
            balance = await self.exchange.get_balance()
            price = (await self.exchange.get_ticker()).last_price
            margin = int(balance * margin_percent / 100)
            is_long = Direction(direction) == Direction.LONG

            stop_loss = None
            if stop_loss_percent:
                factor = 1 - stop_loss_percent / 100 if is_long else 1 + stop_loss_percent / 100
                stop_loss = round(price * factor)
            take_profit = None
            if take_profit_percent:
                factor = 1 + take_profit_percent / 100 if is_long else 1 - take_profit_percent / 100
                take_profit = round(price * factor)

            log.info("Manual trade requested", direction=Direction(direction).value, margin=margin, leverage=leverage)
            return await self.exchange.open_position(
                OrderType.MARKET,
                OrderSide.BUY if is_long else OrderSide.SELL,
                margin,
                leverage,
                stop_loss=stop_loss,
                take_profit=take_profit,
            )

        position = await self.runtimes[EXECUTION_ID].run_exclusive(place)
        if position is None:
            log.warning("Manual trade rejected, execution agent busy", direction=Direction(direction).value)
        return position

    async def close_all_positions(self, reason: str = "Manual close") -> int:
        if not self.authenticated:
            raise TradingUnavailableError("Trading not available - not authenticated")
        return await self.execution.close_all_positions(reason)

    def set_auto_execute(self, enabled: bool) -> None:
        self.execution.set_auto_execute(enabled)
        self._save_state()

    def is_auto_execute_enabled(self) -> bool:
        return self.execution.auto_execute
