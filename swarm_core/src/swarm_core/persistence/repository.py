"""Swarm persistence: agent state, signal queue, trade log, swarm on/off.

Every operation is best-effort. A failing backend is logged and the
in-memory operation that triggered the write carries on; reads degrade to
``None`` or an empty list.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field

from swarm_core.agents.protocol import AgentState
from swarm_core.common.types import ExecutedTrade, TradeSignal, utc_now

if TYPE_CHECKING:
    from swarm_core.persistence.store import StateStore

log = structlog.get_logger()

# ==============================================================================
# Keys
# ==============================================================================
SWARM_STATE_KEY: Final[str] = "SWARM:STATE"
PENDING_SIGNALS_KEY: Final[str] = "EXECUTION:PENDING_SIGNALS"
EXECUTED_TRADES_KEY: Final[str] = "EXECUTION:TRADES"
MAX_TRADE_HISTORY: Final[int] = 500


def agent_state_key(agent_id: str) -> str:
    """Store key of an agent snapshot."""
    return f"AGENT:{agent_id}:STATE"


# ==============================================================================
# Persisted Records
# ==============================================================================
class SwarmState(BaseModel):
    """Swarm-level on/off state used to resume after a restart."""

    model_config = ConfigDict(frozen=True)

    running: bool = False
    auto_execute: bool = False
    config: dict[str, Any] = Field(default_factory=dict)
    last_started_at: datetime | None = None
    last_stopped_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class _SignalQueue(BaseModel):
    signals: list[TradeSignal] = Field(default_factory=list)


class _TradeLog(BaseModel):
    trades: list[ExecutedTrade] = Field(default_factory=list)


# ==============================================================================
# Repository
# ==============================================================================
class SwarmRepository:
    """Typed persistence facade over a ``StateStore``."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    # Agent state -------------------------------------------------------
    def save_agent_state(self, state: AgentState) -> bool:
        """Upsert an agent snapshot keyed by agent id."""
        try:
            self.store.save(agent_state_key(state.agent_id), state)
        except Exception as exc:
            log.warning("Failed to save agent state", agent_id=state.agent_id, error=str(exc))
            return False
        return True

    def load_agent_state(self, agent_id: str) -> AgentState | None:
        """Load an agent snapshot."""
        try:
            return self.store.load(agent_state_key(agent_id), AgentState)
        except Exception as exc:
            log.warning("Failed to load agent state", agent_id=agent_id, error=str(exc))
            return None

    def saved_agent_ids(self) -> list[str]:
        """Ids of agents that have a snapshot."""
        try:
            keys = self.store.keys(agent_state_key("*"))
        except Exception as exc:
            log.warning("Failed to list agent states", error=str(exc))
            return []
        return [key.split(":", 2)[1] for key in keys]

    # Swarm state -------------------------------------------------------
    def save_swarm_state(self, state: SwarmState) -> bool:
        """Upsert the swarm on/off state."""
        try:
            self.store.save(SWARM_STATE_KEY, state)
        except Exception as exc:
            log.warning("Failed to save swarm state", error=str(exc))
            return False
        return True

    def load_swarm_state(self) -> SwarmState | None:
        """Load the swarm on/off state."""
        try:
            return self.store.load(SWARM_STATE_KEY, SwarmState)
        except Exception as exc:
            log.warning("Failed to load swarm state", error=str(exc))
            return None

    # Pending signals ---------------------------------------------------
    def save_pending_signals(self, signals: list[TradeSignal]) -> bool:
        """Replace the persisted pending-signal queue."""
        try:
            self.store.save(PENDING_SIGNALS_KEY, _SignalQueue(signals=list(signals)))
        except Exception as exc:
            log.warning("Failed to save pending signals", count=len(signals), error=str(exc))
            return False
        return True

    def load_pending_signals(self) -> list[TradeSignal]:
        """Load the persisted pending-signal queue."""
        try:
            queue = self.store.load(PENDING_SIGNALS_KEY, _SignalQueue)
        except Exception as exc:
            log.warning("Failed to load pending signals", error=str(exc))
            return []
        return list(queue.signals) if queue else []

    # Executed trades ---------------------------------------------------
    def save_executed_trade(self, trade: ExecutedTrade) -> bool:
        """Upsert a trade record by id, keeping the newest entries."""
        try:
            log_model = self.store.load(EXECUTED_TRADES_KEY, _TradeLog) or _TradeLog()
            trades = [t for t in log_model.trades if t.id != trade.id]
            trades.append(trade)
            trades.sort(key=lambda t: t.executed_at)
            self.store.save(EXECUTED_TRADES_KEY, _TradeLog(trades=trades[-MAX_TRADE_HISTORY:]))
        except Exception as exc:
            log.warning("Failed to save executed trade", trade_id=trade.id, error=str(exc))
            return False
        return True

    def load_executed_trades(self, limit: int = 100) -> list[ExecutedTrade]:
        """Most recent trades, newest first."""
        try:
            log_model = self.store.load(EXECUTED_TRADES_KEY, _TradeLog)
        except Exception as exc:
            log.warning("Failed to load executed trades", error=str(exc))
            return []
        if log_model is None:
            return []
        return sorted(log_model.trades, key=lambda t: t.executed_at, reverse=True)[:limit]
