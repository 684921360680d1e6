"""Tests for the swarm coordinator.

Tests cover:
- Routing of analyst recommendations and external signals into execution
- Trading halts on stop-trading and daily-loss alerts
- Exchange initialization in public and authenticated mode
- Lifecycle guards, persistence and restore
- Status reporting and manual controls
"""

from __future__ import annotations

import asyncio

import pytest
from pydantic import SecretStr

from swarm_core.agents import (
    AgentStatus,
    ExecutionSettings,
    ExternalSignalSettings,
    MarketAnalystSettings,
    ResearcherSettings,
    RiskManagerSettings,
)
from swarm_core.bus import MessageBus
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.common.errors import TradingUnavailableError
from swarm_core.common.types import Direction, TradeSignal
from swarm_core.config import ExchangeConfig, SignalSourcesConfig, SwarmConfig
from swarm_core.persistence import MemoryStore, SwarmRepository
from swarm_core.services.exchange import (
    ExchangeConnectionError,
    ExchangeCredentials,
    ExchangeError,
    PaperExchange,
)
from swarm_core.swarm import SwarmCoordinator
from swarm_core.swarm.coordinator import EXECUTION_ID, EXTERNAL_SIGNAL_ID, MARKET_ANALYST_ID, RISK_MANAGER_ID


# ==============================================================================
# Test Doubles
# ==============================================================================
class UnreachableExchange(PaperExchange):
    async def ping(self) -> bool:
        return False


class NoBalanceExchange(PaperExchange):
    async def get_balance(self) -> int:
        raise ExchangeError("balance endpoint down")


def _config(execution: ExecutionSettings | None = None, **overrides: object) -> SwarmConfig:
    """Every agent disabled so starting the swarm schedules no ticks."""
    return SwarmConfig(
        market_analyst=MarketAnalystSettings(enabled=False),
        risk_manager=RiskManagerSettings(enabled=False),
        execution=execution or ExecutionSettings(enabled=False),
        researcher=ResearcherSettings(enabled=False),
        external_signal=ExternalSignalSettings(enabled=False),
        **overrides,
    )


def _coordinator(
    config: SwarmConfig | None = None,
    exchange_cls: type[PaperExchange] = PaperExchange,
    repository: SwarmRepository | None = None,
) -> SwarmCoordinator:
    return SwarmCoordinator(
        config or _config(),
        MessageBus(),
        repository=repository,
        exchange_factory=lambda credentials: exchange_cls(credentials=credentials, seed=1),
    )


@pytest.fixture
def credentials() -> ExchangeCredentials:
    return ExchangeCredentials(api_key="key", api_secret=SecretStr("secret"))


@pytest.fixture
def repository() -> SwarmRepository:
    return SwarmRepository(MemoryStore())


# ==============================================================================
# Signal Routing Tests
# ==============================================================================
class TestSignalRouting:
    """Tests for bus messages turning into execution signals."""

    def test_recommendation_becomes_signal(self) -> None:
        """A long recommendation from the analyst is queued."""
        swarm = _coordinator()

        swarm.bus.broadcast(
            MARKET_ANALYST_ID,
            MessageType.ANALYSIS,
            {"action": "long", "confidence": 80, "price": 61_000.0},
            topic=Topic.RECOMMENDATION,
        )

        [signal] = swarm.execution.pending_signals
        assert signal.id.startswith("ma-")
        assert signal.direction == Direction.LONG
        assert signal.confidence == 80
        assert signal.reference_price == 61_000.0
        assert signal.source == MARKET_ANALYST_ID

    def test_hold_and_foreign_senders_are_ignored(self) -> None:
        """Only long/short recommendations from the analyst count."""
        swarm = _coordinator()

        swarm.bus.broadcast(
            MARKET_ANALYST_ID, MessageType.ANALYSIS, {"action": "hold", "confidence": 90}, topic=Topic.RECOMMENDATION
        )
        swarm.bus.broadcast(
            "someone-else", MessageType.ANALYSIS, {"action": "long", "confidence": 90}, topic=Topic.RECOMMENDATION
        )

        assert swarm.execution.pending_signals == []

    def test_analyst_source_can_be_disabled(self) -> None:
        """Signal source switch blocks analyst recommendations."""
        swarm = _coordinator(_config(signal_sources=SignalSourcesConfig(use_market_analyst=False)))

        swarm.bus.broadcast(
            MARKET_ANALYST_ID, MessageType.ANALYSIS, {"action": "short", "confidence": 90}, topic=Topic.RECOMMENDATION
        )

        assert swarm.execution.pending_signals == []

    def test_strong_external_signal(self) -> None:
        """STRONG_SELL maps to a short at the strong confidence."""
        swarm = _coordinator()

        swarm.bus.broadcast(
            EXTERNAL_SIGNAL_ID, MessageType.ANALYSIS, {"signal": "STRONG_SELL"}, topic=Topic.COMBINED_SIGNAL
        )

        [signal] = swarm.execution.pending_signals
        assert signal.id.startswith("ext-")
        assert signal.direction == Direction.SHORT
        assert signal.confidence == 85

    def test_plain_external_signal_below_default_threshold(self) -> None:
        """A plain BUY at 65 only passes when execution accepts it."""
        strict = _coordinator()
        lenient = _coordinator(_config(ExecutionSettings(enabled=False, min_confidence=60)))

        for swarm in (strict, lenient):
            swarm.bus.broadcast(EXTERNAL_SIGNAL_ID, MessageType.ANALYSIS, {"signal": "BUY"}, topic=Topic.COMBINED_SIGNAL)

        assert strict.execution.pending_signals == []
        [signal] = lenient.execution.pending_signals
        assert (signal.direction, signal.confidence) == (Direction.LONG, 65)

    def test_neutral_external_signal_is_dropped(self) -> None:
        """NEUTRAL never reaches execution."""
        swarm = _coordinator()

        swarm.bus.broadcast(EXTERNAL_SIGNAL_ID, MessageType.ANALYSIS, {"signal": "NEUTRAL"}, topic=Topic.COMBINED_SIGNAL)

        assert swarm.execution.pending_signals == []


# ==============================================================================
# Trading Halt Tests
# ==============================================================================
class TestTradingHalt:
    """Tests for alerts that stop trading."""

    @pytest.fixture
    def swarm(self) -> SwarmCoordinator:
        swarm = _coordinator()
        swarm.execution.set_auto_execute(True)
        swarm.execution.add_signal(TradeSignal(direction=Direction.LONG, confidence=90, source="test"))
        return swarm

    def test_stop_trading(self, swarm: SwarmCoordinator) -> None:
        """Stop-trading disables auto-execute and clears the queue."""
        swarm.bus.broadcast(RISK_MANAGER_ID, MessageType.ALERT, {"reason": "limit hit"}, topic=Topic.STOP_TRADING)

        assert not swarm.is_auto_execute_enabled()
        assert swarm.execution.pending_signals == []

    def test_critical_daily_loss_alert(self, swarm: SwarmCoordinator) -> None:
        """A critical daily-loss alert halts as well."""
        swarm.bus.broadcast(
            RISK_MANAGER_ID,
            MessageType.ALERT,
            {"level": "critical", "type": "daily_loss_limit", "message": "Daily loss 6%"},
            topic=Topic.RISK_ALERT,
        )

        assert not swarm.is_auto_execute_enabled()
        assert swarm.execution.pending_signals == []

    def test_warning_alert_keeps_trading(self, swarm: SwarmCoordinator) -> None:
        """Non-critical alerts leave execution alone."""
        swarm.bus.broadcast(
            RISK_MANAGER_ID,
            MessageType.ALERT,
            {"level": "warning", "type": "over_exposed", "message": "Exposure high"},
            topic=Topic.RISK_ALERT,
        )

        assert swarm.is_auto_execute_enabled()
        assert len(swarm.execution.pending_signals) == 1


# ==============================================================================
# Initialization Tests
# ==============================================================================
class TestInitialize:
    """Tests for exchange connection."""

    @pytest.mark.asyncio
    async def test_public_mode(self) -> None:
        """No credentials leaves the swarm unauthenticated."""
        swarm = _coordinator()

        await swarm.initialize()

        assert not swarm.authenticated
        assert swarm.risk_manager.exchange is None
        with pytest.raises(TradingUnavailableError):
            await swarm.execute_manual_trade(Direction.LONG, 5, 10)

    @pytest.mark.asyncio
    async def test_authenticated_mode(self, credentials: ExchangeCredentials) -> None:
        """Credentials inject one client into every trading agent."""
        swarm = _coordinator()

        await swarm.initialize(credentials)

        assert swarm.authenticated
        assert swarm.exchange.is_authenticated
        assert swarm.market_analyst.exchange is swarm.exchange
        assert swarm.risk_manager.exchange is swarm.exchange
        assert swarm.execution.exchange is swarm.exchange
        assert swarm.execution.risk_manager is swarm.risk_manager

    @pytest.mark.asyncio
    async def test_credentials_from_config(self) -> None:
        """Configured API keys are used when none are passed."""
        config = _config(exchange=ExchangeConfig(api_key="key", api_secret=SecretStr("secret")))
        swarm = _coordinator(config)

        await swarm.initialize()

        assert swarm.authenticated

    @pytest.mark.asyncio
    async def test_unreachable_exchange(self, credentials: ExchangeCredentials) -> None:
        """A failing ping raises and keeps public mode."""
        swarm = _coordinator(exchange_cls=UnreachableExchange)

        with pytest.raises(ExchangeConnectionError):
            await swarm.initialize(credentials)
        assert not swarm.authenticated

    @pytest.mark.asyncio
    async def test_auto_start(self) -> None:
        """auto_start starts the swarm after connecting."""
        swarm = _coordinator(_config(auto_start=True))

        await swarm.initialize()

        assert swarm.running
        await swarm.shutdown()


# ==============================================================================
# Lifecycle Tests
# ==============================================================================
class TestLifecycle:
    """Tests for start, stop, persistence and restore."""

    @pytest.mark.asyncio
    async def test_start_stop_are_guarded(self, repository: SwarmRepository) -> None:
        """Repeated start/stop are no-ops; each transition is persisted."""
        swarm = _coordinator(repository=repository)

        swarm.start()
        swarm.start()
        assert swarm.running
        saved = repository.load_swarm_state()
        assert saved is not None and saved.running
        assert saved.last_started_at is not None

        swarm.stop()
        swarm.stop()
        saved = repository.load_swarm_state()
        assert saved is not None and not saved.running
        assert saved.last_stopped_at is not None
        await swarm.shutdown()

    @pytest.mark.asyncio
    async def test_enabled_runtime_starts(self) -> None:
        """Enabled agents get a scheduling loop; disabled ones do not."""
        swarm = _coordinator(_config(ExecutionSettings(interval_seconds=3600)))

        swarm.start()

        assert swarm.get_agent("execution").is_running
        assert not swarm.get_agent(MARKET_ANALYST_ID).is_running
        await swarm.shutdown()
        assert not swarm.get_agent("execution").is_running

    def test_saved_config_hides_secrets(self, repository: SwarmRepository) -> None:
        """The persisted config never contains the API key."""
        config = _config(exchange=ExchangeConfig(api_key="top-secret", api_secret=SecretStr("s")))
        swarm = _coordinator(config, repository=repository)

        swarm.set_auto_execute(True)
        saved = repository.load_swarm_state()

        assert saved is not None and saved.auto_execute
        assert "api_key" not in saved.config["exchange"]

    def test_restore_without_repository(self) -> None:
        """Nothing to restore without a repository."""
        assert _coordinator().restore_state() is False

    def test_restore_without_saved_state(self, repository: SwarmRepository) -> None:
        """An empty repository restores nothing."""
        assert _coordinator(repository=repository).restore_state() is False

    @pytest.mark.asyncio
    async def test_restore_resumes_running_swarm(self, repository: SwarmRepository) -> None:
        """A swarm saved while running starts again with its flags."""
        first = _coordinator(repository=repository)
        first.set_auto_execute(True)
        first.start()
        first.close()

        second = _coordinator(repository=repository)
        assert second.restore_state() is True

        assert second.running
        assert second.is_auto_execute_enabled()
        await second.shutdown()
        first.stop()

    @pytest.mark.asyncio
    async def test_shutdown_detaches_routing(self) -> None:
        """After shutdown the swarm no longer routes bus messages."""
        swarm = _coordinator()
        swarm.start()

        await swarm.shutdown()
        swarm.bus.broadcast(
            MARKET_ANALYST_ID, MessageType.ANALYSIS, {"action": "long", "confidence": 90}, topic=Topic.RECOMMENDATION
        )

        assert not swarm.running
        assert swarm.execution.pending_signals == []


# ==============================================================================
# Status & Manual Control Tests
# ==============================================================================
class TestStatusAndControls:
    """Tests for status snapshots and manual trading."""

    @pytest.mark.asyncio
    async def test_public_status(self) -> None:
        """Public mode reports agents but no account figures."""
        status = await _coordinator().get_status()

        assert not status.authenticated
        assert [a.id for a in status.agents] == [
            "market-analyst",
            "risk-manager",
            "execution",
            "researcher",
            "external-signal",
        ]
        assert all(a.status == AgentStatus.DISABLED for a in status.agents)
        assert status.balance is None
        assert status.open_positions is None

    @pytest.mark.asyncio
    async def test_authenticated_status(self, credentials: ExchangeCredentials) -> None:
        """Balance and position count appear once authenticated."""
        swarm = _coordinator()
        await swarm.initialize(credentials)

        status = await swarm.get_status()

        assert status.balance == 1_000_000
        assert status.open_positions == 0
        assert status.daily_pl is None

    @pytest.mark.asyncio
    async def test_status_survives_failing_balance(self, credentials: ExchangeCredentials) -> None:
        """A failing account call degrades that field only."""
        swarm = _coordinator(exchange_cls=NoBalanceExchange)
        await swarm.initialize(credentials)

        status = await swarm.get_status()

        assert status.balance is None
        assert status.open_positions == 0

    @pytest.mark.asyncio
    async def test_manual_trade_sizing(self, credentials: ExchangeCredentials) -> None:
        """Margin is a share of balance; stops are percent offsets from the price."""
        swarm = _coordinator()
        await swarm.initialize(credentials)

        position = await swarm.execute_manual_trade(
            Direction.LONG, 5, 10, stop_loss_percent=2, take_profit_percent=4
        )

        assert position.margin == 50_000
        assert position.leverage == 10
        assert (position.stop_loss, position.take_profit) == (58_800, 62_400)

    @pytest.mark.asyncio
    async def test_manual_short_stops(self, credentials: ExchangeCredentials) -> None:
        """Short stops sit above the price and targets below."""
        swarm = _coordinator()
        await swarm.initialize(credentials)

        position = await swarm.execute_manual_trade(
            Direction.SHORT, 10, 5, stop_loss_percent=2, take_profit_percent=4
        )

        assert (position.stop_loss, position.take_profit) == (61_200, 57_600)

    @pytest.mark.asyncio
    async def test_manual_trade_rejected_while_execution_busy(self, credentials: ExchangeCredentials) -> None:
        """A manual order is refused while the execution agent holds its guard."""
        swarm = _coordinator()
        await swarm.initialize(credentials)
        release = asyncio.Event()
        held = asyncio.create_task(swarm.get_agent(EXECUTION_ID).run_exclusive(release.wait))
        await asyncio.sleep(0)

        position = await swarm.execute_manual_trade(Direction.LONG, 5, 10)

        assert position is None
        assert await swarm.exchange.get_running_positions() == []
        release.set()
        await held
        assert await swarm.execute_manual_trade(Direction.LONG, 5, 10) is not None

    @pytest.mark.asyncio
    async def test_close_all_positions(self, credentials: ExchangeCredentials) -> None:
        """Every open position is closed and counted."""
        swarm = _coordinator()
        await swarm.initialize(credentials)
        await swarm.execute_manual_trade(Direction.LONG, 5, 10)
        await swarm.execute_manual_trade(Direction.SHORT, 5, 10)

        assert await swarm.close_all_positions() == 2
        assert await swarm.exchange.get_running_positions() == []

    @pytest.mark.asyncio
    async def test_close_all_requires_authentication(self) -> None:
        """Public mode cannot close positions."""
        with pytest.raises(TradingUnavailableError):
            await _coordinator().close_all_positions()

    def test_get_agent(self) -> None:
        """Runtimes are looked up by agent id."""
        swarm = _coordinator()

        assert swarm.get_agent(RISK_MANAGER_ID).name == "Risk Manager"
        assert swarm.get_agent("unknown") is None
