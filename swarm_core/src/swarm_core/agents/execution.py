"""Execution agent: pending signal queue and order placement.

Signals reach the queue through ``add_signal`` (normally called by the
coordinator). When auto-execute is on, each tick picks the strongest fresh
signal and places a market order sized by the Risk Manager. Every tick
also reconciles tracked trades against live positions.

Execution Flow:
    1. Cooldown and open-position cap
    2. Highest-confidence signal; drop it if older than 5 minutes
    3. Risk gate (fresh assessment)
    4. Ticker -> sizing -> market order (never retried)
    5. ExecutedTrade record, signal removed
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import Field

from swarm_core.agents.protocol import AgentSettings, AgentType
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.common.errors import TradingUnavailableError
from swarm_core.common.types import (
    Direction,
    ExecutedTrade,
    TradeSignal,
    TradeStatus,
    VolatilityLevel,
    utc_now,
)
from swarm_core.services.exchange import OrderSide, OrderType

if TYPE_CHECKING:
    from swarm_core.agents.risk_manager import RiskManagerAgent
    from swarm_core.bus.message_bus import MessageBus
    from swarm_core.persistence.repository import SwarmRepository
    from swarm_core.services.exchange import ExchangeClient

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
SIGNAL_MAX_AGE: Final[timedelta] = timedelta(minutes=5)
CONFLICT_WINDOW: Final[timedelta] = timedelta(minutes=5)
SLTP_CLOSE_REASON: Final[str] = "SL/TP triggered"
KEYWORDS: Final[tuple[str, ...]] = (
    "trade",
    "execute",
    "order",
    "position",
    "open",
    "close",
    "buy",
    "sell",
    "long",
    "short",
    "entry",
    "exit",
)


class ExecutionSettings(AgentSettings):
    """Execution parameters.

    Attributes:
        auto_execute: Place orders on tick without human confirmation.
        min_confidence: Signals below this are dropped on arrival.
        max_open_positions: No new order at or above this many positions.
        cooldown_seconds: Minimum time between two executed trades.
    """

    interval_seconds: float = Field(default=10.0, gt=0)
    auto_execute: bool = False
    min_confidence: float = Field(default=70.0, ge=0, le=100)
    max_open_positions: int = Field(default=3, ge=1)
    cooldown_seconds: float = Field(default=60.0, ge=0)


class ExecutionAgent:
    """Turns queued signals into exchange positions.

    Attributes:
        pending_signals: Queue in arrival order.
        executed_trades: Trade records keyed by exchange position id.
        last_trade_at: Time of the last successful execution.
    """

    agent_type = AgentType.EXECUTION
    keywords = KEYWORDS
    description = "Trade execution, order management, pending signals"
    role = "trade execution specialist handling order placement and position management"

    def __init__(
        self,
        agent_id: str,
        name: str,
        bus: MessageBus,
        settings: ExecutionSettings | None = None,
        exchange: ExchangeClient | None = None,
        risk_manager: RiskManagerAgent | None = None,
        repository: SwarmRepository | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.bus = bus
        self.settings = settings or ExecutionSettings()
        self.exchange = exchange
        self.risk_manager = risk_manager
        self.repository = repository

        self.auto_execute = self.settings.auto_execute
        self.pending_signals: list[TradeSignal] = []
        self.executed_trades: dict[str, ExecutedTrade] = {}
        self.last_trade_at: datetime | None = None

    def set_services(self, exchange: ExchangeClient | None, risk_manager: RiskManagerAgent | None) -> None:
        self.exchange = exchange
        self.risk_manager = risk_manager

    @property
    def is_configured(self) -> bool:
        return self.exchange is not None and self.risk_manager is not None

    async def execute(self) -> None:
        if not self.is_configured:
            log.debug("Execution services not configured", agent_id=self.agent_id)
            return

        if self.pending_signals and self.auto_execute:
            await self.process_pending_signals()
        await self.monitor_positions()

    # ------------------------------------------------------------------
    # Signal queue
    # ------------------------------------------------------------------
    def add_signal(self, signal: TradeSignal) -> bool:
        """Queue a signal.

        Returns:
            False when the signal was dropped (low confidence or a recent
            signal in the opposite direction).
        """
        if signal.confidence < self.settings.min_confidence:
            log.debug(
                "Signal rejected: confidence too low",
                agent_id=self.agent_id,
                signal_id=signal.id,
                confidence=signal.confidence,
            )
            return False

        cutoff = utc_now() - CONFLICT_WINDOW
        if any(s.direction != signal.direction and s.timestamp > cutoff for s in self.pending_signals):
            log.warning("Conflicting signals detected, holding", agent_id=self.agent_id, signal_id=signal.id)
            return False

        self.pending_signals.append(signal)
        log.info(
            "Signal added",
            agent_id=self.agent_id,
            signal_id=signal.id,
            direction=signal.direction,
            confidence=signal.confidence,
            source=signal.source,
        )
        self._persist_queue()
        return True

    def clear_pending_signals(self) -> None:
        self.pending_signals = []
        log.info("Pending signals cleared", agent_id=self.agent_id)
        self._persist_queue()

    def _remove_signal(self, signal_id: str) -> None:
        self.pending_signals = [s for s in self.pending_signals if s.id != signal_id]
        self._persist_queue()

    def cooldown_active(self, now: datetime | None = None) -> bool:
        if self.last_trade_at is None:
            return False
        now = now or utc_now()
        return (now - self.last_trade_at).total_seconds() < self.settings.cooldown_seconds

    async def process_pending_signals(self) -> ExecutedTrade | None:
        """Execute the strongest fresh signal if the gates allow it."""
        if not self.pending_signals or self.exchange is None:
            return None

        if self.cooldown_active():
            log.debug("Trade cooldown active", agent_id=self.agent_id)
            return None

        positions = await self.exchange.get_running_positions()
        if len(positions) >= self.settings.max_open_positions:
            log.debug("Max open positions reached", agent_id=self.agent_id, open_positions=len(positions))
            return None

        signal = max(self.pending_signals, key=lambda s: s.confidence)
        if utc_now() - signal.timestamp > SIGNAL_MAX_AGE:
            self._remove_signal(signal.id)
            log.debug("Signal expired", agent_id=self.agent_id, signal_id=signal.id)
            return None

        return await self.execute_trade(signal)

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------
    async def execute_trade(self, signal: TradeSignal) -> ExecutedTrade | None:
        """Place one market order for ``signal``.

        Returns:
            The trade record, or None when blocked or failed. Failures keep
            the signal queued and publish ``trade_failed``.

        Raises:
            TradingUnavailableError: No exchange or risk manager configured.
        """
        if self.exchange is None or self.risk_manager is None:
            raise TradingUnavailableError("Execution services not configured")

        log.info("Executing trade", agent_id=self.agent_id, signal_id=signal.id)
        try:
            assessment = await self.risk_manager.force_assessment()
            if assessment is None or not assessment.can_open_new_position:
                log.warning("Risk manager blocked trade", agent_id=self.agent_id, signal_id=signal.id)
                return None

            ticker = await self.exchange.get_ticker()
            price = ticker.last_price
            direction = Direction(signal.direction)
            sizing = self.risk_manager.calculate_position_size(
                direction, price, signal.confidence, VolatilityLevel.MEDIUM
            )
            if sizing is None:
                log.warning("Position sizing failed", agent_id=self.agent_id, signal_id=signal.id)
                return None

            position = await self.exchange.open_position(
                OrderType.MARKET,
                OrderSide.BUY if direction == Direction.LONG else OrderSide.SELL,
                sizing.recommended_margin,
                sizing.recommended_leverage,
                stop_loss=sizing.stop_loss,
                take_profit=sizing.take_profit,
            )
        except Exception as exc:
            log.error("Trade execution failed", agent_id=self.agent_id, signal_id=signal.id, error=str(exc))
            self.bus.broadcast(
                self.agent_id,
                MessageType.ALERT,
                {"signal": signal.model_dump(mode="json"), "error": str(exc)},
                topic=Topic.TRADE_FAILED,
            )
            return None

        trade = ExecutedTrade(
            signal_id=signal.id,
            position_id=position.id,
            direction=direction,
            entry_price=price,
            margin=sizing.recommended_margin,
            leverage=sizing.recommended_leverage,
            stop_loss=sizing.stop_loss,
            take_profit=sizing.take_profit,
        )
        self.executed_trades[position.id] = trade
        self.last_trade_at = trade.executed_at
        self._remove_signal(signal.id)
        self._persist_trade(trade)

        log.info(
            "Trade executed successfully",
            agent_id=self.agent_id,
            position_id=position.id,
            direction=trade.direction,
            margin=trade.margin,
            leverage=trade.leverage,
        )
        self.bus.broadcast(
            self.agent_id, MessageType.DECISION, trade.model_dump(mode="json"), topic=Topic.TRADE_EXECUTED
        )
        return trade

    async def close_position(self, position_id: str, reason: str) -> None:
        """Close one position at market.

        Raises:
            TradingUnavailableError: No exchange configured.
            ExchangeError: The exchange refused the close.
        """
        if self.exchange is None:
            raise TradingUnavailableError("Exchange not configured")

        log.info("Closing position", agent_id=self.agent_id, position_id=position_id, reason=reason)
        await self.exchange.close_position(position_id)
        self._mark_closed(position_id, reason)

    async def close_all_positions(self, reason: str) -> int:
        """Close every running position; individual failures are logged.

        Returns:
            Number of positions closed.
        """
        if self.exchange is None:
            raise TradingUnavailableError("Exchange not configured")

        log.warning("Closing all positions", agent_id=self.agent_id, reason=reason)
        closed = 0
        for position in await self.exchange.get_running_positions():
            try:
                await self.close_position(position.id, reason)
            except Exception as exc:
                log.error("Failed to close position", agent_id=self.agent_id, position_id=position.id, error=str(exc))
                continue
            closed += 1
        return closed

    async def monitor_positions(self) -> None:
        """Refresh P&L of open trades and close the ones gone from the exchange."""
        if self.exchange is None:
            return

        positions = {p.id: p for p in await self.exchange.get_running_positions()}
        for position_id, trade in list(self.executed_trades.items()):
            if trade.status != TradeStatus.OPEN:
                continue
            live = positions.get(position_id)
            if live is None:
                log.info("Position closed externally", agent_id=self.agent_id, position_id=position_id)
                self._mark_closed(position_id, SLTP_CLOSE_REASON)
            elif live.pl != trade.pnl:
                updated = trade.model_copy(update={"pnl": live.pl})
                self.executed_trades[position_id] = updated
                self._persist_trade(updated)

    def _mark_closed(self, position_id: str, reason: str) -> None:
        trade = self.executed_trades.get(position_id)
        if trade is None or trade.status != TradeStatus.OPEN:
            return
        closed = trade.model_copy(
            update={"status": TradeStatus.CLOSED, "closed_at": utc_now(), "close_reason": reason}
        )
        self.executed_trades[position_id] = closed
        self._persist_trade(closed)
        self.bus.broadcast(
            self.agent_id,
            MessageType.DECISION,
            {"position_id": position_id, "reason": reason, "trade": closed.model_dump(mode="json")},
            topic=Topic.POSITION_CLOSED,
        )

    def set_auto_execute(self, enabled: bool) -> None:
        self.auto_execute = enabled
        log.info("Auto-execute changed", agent_id=self.agent_id, enabled=enabled)

    def get_open_trades(self) -> list[ExecutedTrade]:
        return [t for t in self.executed_trades.values() if t.status == TradeStatus.OPEN]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _persist_queue(self) -> None:
        if self.repository is not None:
            self.repository.save_pending_signals(self.pending_signals)

    def _persist_trade(self, trade: ExecutedTrade) -> None:
        if self.repository is not None:
            self.repository.save_executed_trade(trade)

    def load_from_repository(self) -> None:
        """Reload the pending queue and open trades after a restart."""
        if self.repository is None:
            return
        self.pending_signals = self.repository.load_pending_signals()
        for trade in self.repository.load_executed_trades():
            if trade.status == TradeStatus.OPEN:
                self.executed_trades.setdefault(trade.position_id, trade)
        log.info(
            "Execution state loaded",
            agent_id=self.agent_id,
            pending=len(self.pending_signals),
            open_trades=len(self.get_open_trades()),
        )

    def get_agent_state(self) -> dict[str, Any]:
        return {
            "auto_execute": self.auto_execute,
            "last_trade_at": self.last_trade_at.isoformat() if self.last_trade_at else None,
        }

    def restore_agent_state(self, state: dict[str, Any]) -> None:
        self.auto_execute = bool(state.get("auto_execute", self.auto_execute))
        if state.get("last_trade_at"):
            self.last_trade_at = datetime.fromisoformat(state["last_trade_at"])

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def rule_based_response(self, query: str) -> str:
        lines = [
            "**Execution Agent Status**",
            "",
            f"- Auto-execute: {'ON' if self.auto_execute else 'OFF'}",
            f"- Exchange connected: {'Yes' if self.exchange is not None else 'No'}",
            f"- Pending signals: {len(self.pending_signals)}",
        ]
        for s in sorted(self.pending_signals, key=lambda s: s.confidence, reverse=True)[:5]:
            lines.append(f"  - {str(s.direction).upper()} @ {s.confidence:.0f}% from {s.source}")

        open_trades = self.get_open_trades()
        lines.append(f"- Open trades: {len(open_trades)}")
        for t in open_trades:
            pnl = f"{t.pnl:+,.0f} sats" if t.pnl is not None else "n/a"
            lines.append(
                f"  - {str(t.direction).upper()} {t.margin:,} sats x{t.leverage:g} from {t.entry_price:,.0f}, P&L {pnl}"
            )
        if self.last_trade_at is not None:
            lines.append(f"- Last trade: {self.last_trade_at.isoformat()}")
        return "\n".join(lines)

    def ai_context(self) -> dict[str, Any]:
        return {
            "auto_execute": self.auto_execute,
            "pending_signals": [s.model_dump(mode="json") for s in self.pending_signals],
            "open_trades": [t.model_dump(mode="json") for t in self.get_open_trades()],
            "last_trade_at": self.last_trade_at.isoformat() if self.last_trade_at else None,
            "config": self.settings.model_dump(mode="json"),
        }
