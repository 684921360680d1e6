"""Risk Manager agent: exposure, daily loss and position sizing.

Each tick pulls balance and open positions, recomputes a ``RiskAssessment``
and broadcasts it. A breached daily-loss limit is escalated as a critical
``risk_alert`` followed by a ``stop_trading`` message; the coordinator
turns those into a trading halt.

The last assessment is also the gate for sizing: ``calculate_position_size``
refuses to size anything while ``can_open_new_position`` is false.
"""

from __future__ import annotations

from datetime import date, datetime
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
from swarm_core.common.types import Direction, VolatilityLevel, utc_now
from swarm_core.services.exchange import OrderSide

if TYPE_CHECKING:
    from swarm_core.bus.message_bus import MessageBus, TradeProposal
    from swarm_core.services.exchange import ExchangeClient, Position

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
MIN_AVAILABLE_MARGIN: Final[int] = 1000
VOLATILITY_SIZE_MULTIPLIER: Final[dict[str, float]] = {"high": 0.5, "medium": 0.75, "low": 1.0}
VOLATILITY_LEVERAGE_CAP: Final[dict[str, int]] = {"high": 10, "medium": 15, "low": 25}
HIGH_VOLATILITY_STOP_FACTOR: Final[float] = 1.5
REWARD_TO_RISK: Final[float] = 2.0
KEYWORDS: Final[tuple[str, ...]] = (
    "risk",
    "position",
    "size",
    "exposure",
    "stop",
    "loss",
    "margin",
    "leverage",
    "drawdown",
    "limit",
    "safe",
)


# ==============================================================================
# Models
# ==============================================================================
class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(str, Enum):
    POSITION_CRITICAL = "position_critical"
    POSITION_HIGH_RISK = "position_high_risk"
    OVER_EXPOSED = "over_exposed"
    DAILY_LOSS_LIMIT = "daily_loss_limit"


class RiskAlert(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    level: AlertLevel
    type: AlertType  # noqa: A003
    message: str
    position_id: str | None = None
    action: str | None = None


class PositionRisk(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str  # noqa: A003
    side: OrderSide
    margin: int
    pl: float
    pl_percent: float
    risk_level: RiskLevel


class RiskAssessment(BaseModel):
    """Portfolio risk snapshot. Replaced on every tick."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    balance: int
    total_exposure: int
    exposure_percent: float
    positions: list[PositionRisk] = Field(default_factory=list)
    daily_pl: float
    daily_pl_percent: float
    alerts: list[RiskAlert] = Field(default_factory=list)
    can_open_new_position: bool
    available_margin: float


class PositionSizing(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommended_margin: int
    recommended_leverage: int
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float
    max_loss: int
    potential_profit: int


class RiskParameters(BaseModel):
    """Risk limits, all percentages of balance unless noted."""

    model_config = ConfigDict(frozen=True)

    max_position_size_percent: float = Field(default=10.0, gt=0, le=100)
    max_total_exposure_percent: float = Field(default=50.0, gt=0, le=100)
    max_leverage: int = Field(default=25, ge=1)
    default_stop_loss_percent: float = Field(default=5.0, gt=0)
    default_take_profit_percent: float = Field(default=10.0, gt=0)
    trailing_stop_percent: float | None = Field(default=None, gt=0)
    max_daily_loss_percent: float = Field(default=10.0, gt=0)
    max_drawdown_percent: float = Field(default=20.0, gt=0)


class RiskManagerSettings(AgentSettings):
    interval_seconds: float = Field(default=30.0, gt=0)
    risk: RiskParameters = Field(default_factory=RiskParameters)


def classify_position_risk(pl_percent: float) -> RiskLevel:
    """Risk tier from the unrealized loss percentage."""
    loss = abs(min(0.0, pl_percent))
    if loss > 50:
        return RiskLevel.CRITICAL
    if loss > 30:
        return RiskLevel.HIGH
    if loss > 15:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# ==============================================================================
# Agent
# ==============================================================================
class RiskManagerAgent:
    """Portfolio risk control.

    Attributes:
        exchange: Authenticated exchange, injected by the coordinator.
        params: Current risk limits.
        last_assessment: Most recent assessment, None before the first tick.
        daily_start_balance: Balance at the start of the current UTC day.
        daily_start_date: UTC date of the daily baseline.
    """

    agent_type = AgentType.RISK_MANAGER
    keywords = KEYWORDS
    description = "Position sizing, exposure, stop-loss, risk assessment"
    role = "risk management specialist focusing on position sizing, exposure limits, and portfolio risk"

    def __init__(
        self,
        agent_id: str,
        name: str,
        bus: MessageBus,
        settings: RiskManagerSettings | None = None,
        exchange: ExchangeClient | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.bus = bus
        self.settings = settings or RiskManagerSettings()
        self.params = self.settings.risk
        self.exchange = exchange
        self.last_assessment: RiskAssessment | None = None
        self.daily_start_balance = 0
        self.daily_start_date: date = utc_now().date()

    def set_exchange(self, exchange: ExchangeClient | None) -> None:
        self.exchange = exchange

    async def execute(self) -> None:
        if self.exchange is None:
            log.warning("Exchange not configured, skipping risk assessment", agent_id=self.agent_id)
            return

        assessment = await self.assess_risk()
        self.last_assessment = assessment
        self.bus.broadcast(
            self.agent_id,
            MessageType.ANALYSIS,
            assessment.model_dump(mode="json"),
            topic=Topic.RISK_ASSESSMENT,
        )

        for alert in assessment.alerts:
            level = "error" if alert.level == AlertLevel.CRITICAL else "warning"
            getattr(log, level)(alert.message, agent_id=self.agent_id, alert_type=alert.type)
            self.bus.broadcast(
                self.agent_id, MessageType.ALERT, alert.model_dump(mode="json"), topic=Topic.RISK_ALERT
            )

        if any(a.type == AlertType.DAILY_LOSS_LIMIT for a in assessment.alerts):
            self.bus.broadcast(
                self.agent_id,
                MessageType.ALERT,
                {"reason": "Daily loss limit exceeded", "daily_pl_percent": assessment.daily_pl_percent},
                topic=Topic.STOP_TRADING,
            )

        if self.params.trailing_stop_percent:
            await self.update_trailing_stops()

    async def assess_risk(self) -> RiskAssessment:
        """Compute a fresh assessment from live balance and positions."""
        if self.exchange is None:
            raise RuntimeError("Risk assessment requires an exchange")

        balance = await self.exchange.get_balance()
        positions = await self.exchange.get_running_positions()

        today = utc_now().date()
        if today != self.daily_start_date:
            self.daily_start_balance = balance
            self.daily_start_date = today
        if self.daily_start_balance == 0:
            self.daily_start_balance = balance

        return self.build_assessment(balance, positions)

    def build_assessment(self, balance: int, positions: list[Position]) -> RiskAssessment:
        """Assessment for a given balance and position set against the daily baseline."""
        params = self.params
        total_exposure = sum(p.margin for p in positions)
        if balance > 0:
            exposure_percent = total_exposure / balance * 100
        else:
            exposure_percent = 100.0 if total_exposure else 0.0

        daily_pl = balance - self.daily_start_balance
        daily_pl_percent = daily_pl / self.daily_start_balance * 100 if self.daily_start_balance else 0.0

        alerts: list[RiskAlert] = []
        assessed: list[PositionRisk] = []
        for p in positions:
            risk_level = classify_position_risk(p.pl_percent)
            if risk_level == RiskLevel.CRITICAL:
                alerts.append(
                    RiskAlert(
                        level=AlertLevel.CRITICAL,
                        type=AlertType.POSITION_CRITICAL,
                        message=f"Position {p.id} is at critical risk ({p.pl_percent:.1f}% loss)",
                        position_id=p.id,
                        action="Consider closing position",
                    )
                )
            elif risk_level == RiskLevel.HIGH:
                alerts.append(
                    RiskAlert(
                        level=AlertLevel.WARNING,
                        type=AlertType.POSITION_HIGH_RISK,
                        message=f"Position {p.id} is at high risk ({p.pl_percent:.1f}% loss)",
                        position_id=p.id,
                    )
                )
            assessed.append(
                PositionRisk(
                    id=p.id,
                    side=p.side,
                    margin=p.margin,
                    pl=p.pl,
                    pl_percent=p.pl_percent,
                    risk_level=risk_level,
                )
            )

        if exposure_percent > params.max_total_exposure_percent:
            alerts.append(
                RiskAlert(
                    level=AlertLevel.WARNING,
                    type=AlertType.OVER_EXPOSED,
                    message=(
                        f"Total exposure ({exposure_percent:.1f}%) exceeds limit "
                        f"({params.max_total_exposure_percent}%)"
                    ),
                    action="Reduce position sizes",
                )
            )
        if daily_pl_percent < -params.max_daily_loss_percent:
            alerts.append(
                RiskAlert(
                    level=AlertLevel.CRITICAL,
                    type=AlertType.DAILY_LOSS_LIMIT,
                    message=(
                        f"Daily loss ({daily_pl_percent:.1f}%) exceeds limit "
                        f"(-{params.max_daily_loss_percent}%)"
                    ),
                    action="Stop trading for today",
                )
            )

        available_margin = balance * params.max_total_exposure_percent / 100 - total_exposure
        can_open = (
            available_margin > 0
            and daily_pl_percent > -params.max_daily_loss_percent
            and exposure_percent < params.max_total_exposure_percent
        )

        return RiskAssessment(
            balance=balance,
            total_exposure=total_exposure,
            exposure_percent=exposure_percent,
            positions=assessed,
            daily_pl=daily_pl,
            daily_pl_percent=daily_pl_percent,
            alerts=alerts,
            can_open_new_position=can_open,
            available_margin=max(0.0, available_margin),
        )

    async def force_assessment(self) -> RiskAssessment | None:
        await self.execute()
        return self.last_assessment

    def update_params(self, **changes: Any) -> RiskParameters:
        """Merge new limits (validated)."""
        self.params = RiskParameters.model_validate({**self.params.model_dump(), **changes})
        log.info("Risk parameters updated", agent_id=self.agent_id, **changes)
        return self.params

    # ------------------------------------------------------------------
    # Sizing & stops
    # ------------------------------------------------------------------
    def calculate_position_size(
        self,
        direction: Direction,
        entry_price: float,
        confidence: float,
        volatility: VolatilityLevel = VolatilityLevel.MEDIUM,
    ) -> PositionSizing | None:
        """Size a new position from the last assessment.

        Returns:
            Sizing, or None when no assessment exists or trading is blocked.
        """
        assessment = self.last_assessment
        if assessment is None:
            log.warning("No risk assessment available", agent_id=self.agent_id)
            return None
        if not assessment.can_open_new_position:
            log.warning("Cannot open new position - risk limits exceeded", agent_id=self.agent_id)
            return None

        level = VolatilityLevel(volatility).value
        confidence_factor = confidence / 100
        max_margin = assessment.balance * self.params.max_position_size_percent / 100
        margin = min(
            max_margin * confidence_factor * VOLATILITY_SIZE_MULTIPLIER[level],
            assessment.available_margin,
        )

        base_leverage = min(self.params.max_leverage, VOLATILITY_LEVERAGE_CAP[level])
        leverage = max(1, int(base_leverage * confidence_factor))

        stop_percent = self.params.default_stop_loss_percent
        if level == VolatilityLevel.HIGH.value:
            stop_percent *= HIGH_VOLATILITY_STOP_FACTOR
        take_percent = stop_percent * REWARD_TO_RISK

        if Direction(direction) == Direction.LONG:
            stop_loss = entry_price * (1 - stop_percent / 100)
            take_profit = entry_price * (1 + take_percent / 100)
        else:
            stop_loss = entry_price * (1 + stop_percent / 100)
            take_profit = entry_price * (1 - take_percent / 100)

        return PositionSizing(
            recommended_margin=int(margin),
            recommended_leverage=leverage,
            stop_loss=round(stop_loss),
            take_profit=round(take_profit),
            risk_reward_ratio=take_percent / stop_percent,
            max_loss=int(margin * stop_percent * leverage / 100),
            potential_profit=int(margin * take_percent * leverage / 100),
        )

    async def update_trailing_stops(self) -> int:
        """Trail stops of profitable positions; stops only move in the trade's favor.

        Returns:
            Number of stops moved.
        """
        trail = self.params.trailing_stop_percent
        if self.exchange is None or not trail:
            return 0

        positions = await self.exchange.get_running_positions()
        price = (await self.exchange.get_ticker()).last_price
        moved = 0
        for position in positions:
            if position.pl <= 0:
                continue
            if position.side == OrderSide.BUY:
                new_stop = price * (1 - trail / 100)
                improves = new_stop > position.entry_price and (
                    position.stop_loss is None or new_stop > position.stop_loss
                )
            else:
                new_stop = price * (1 + trail / 100)
                improves = new_stop < position.entry_price and (
                    position.stop_loss is None or new_stop < position.stop_loss
                )
            if improves:
                await self.exchange.update_stop_loss(position.id, round(new_stop))
                moved += 1
                log.info("Trailing stop updated", agent_id=self.agent_id, position_id=position.id, stop=round(new_stop))
        return moved

    # ------------------------------------------------------------------
    # Swarm participation
    # ------------------------------------------------------------------
    async def _ensure_assessment(self) -> RiskAssessment | None:
        if self.last_assessment is None and self.exchange is not None:
            try:
                await self.force_assessment()
            except Exception as exc:
                log.warning("On-demand risk assessment failed", agent_id=self.agent_id, error=str(exc))
        return self.last_assessment

    async def evaluate_trade_proposal(self, proposal: TradeProposal) -> ProposalAssessment:
        return await self._risk_verdict()

    async def _risk_verdict(self) -> ProposalAssessment:
        assessment = await self._ensure_assessment()
        if assessment is None:
            return ProposalAssessment(
                decision=VoteDecision.REJECT,
                confidence=100,
                reason="Cannot assess risk - no data available",
            )
        if not assessment.can_open_new_position:
            return ProposalAssessment(
                decision=VoteDecision.REJECT,
                confidence=100,
                reason=(
                    f"Risk limits exceeded: exposure {assessment.exposure_percent:.1f}%, "
                    f"daily P&L {assessment.daily_pl_percent:.1f}%"
                ),
            )
        if assessment.available_margin < MIN_AVAILABLE_MARGIN:
            return ProposalAssessment(
                decision=VoteDecision.REJECT,
                confidence=90,
                reason=f"Insufficient available margin: {assessment.available_margin:.0f} sats",
            )
        if assessment.daily_pl_percent < -self.params.max_daily_loss_percent / 2:
            return ProposalAssessment(
                decision=VoteDecision.REJECT,
                confidence=85,
                reason=f"Already at {assessment.daily_pl_percent:.1f}% daily loss - reducing risk",
            )

        headroom = self.params.max_total_exposure_percent - assessment.exposure_percent
        return ProposalAssessment(
            decision=VoteDecision.APPROVE,
            confidence=min(90.0, 50 + headroom),
            reason=(
                f"Risk checks passed. Available margin: {assessment.available_margin:.0f} sats, "
                f"exposure: {assessment.exposure_percent:.1f}%"
            ),
        )

    async def get_trade_opinion(self, direction: Direction, context: str | None) -> TradeOpinion:
        verdict = await self._risk_verdict()
        stance = {
            VoteDecision.APPROVE.value: OpinionStance.APPROVE,
            VoteDecision.REJECT.value: OpinionStance.REJECT,
        }.get(verdict.decision, OpinionStance.NEUTRAL)
        return TradeOpinion(opinion=stance, confidence=verdict.confidence, reason=verdict.reason)

    async def rule_based_response(self, query: str) -> str:
        a = await self._ensure_assessment()
        if a is None:
            return "Risk assessment not available - exchange may not be connected."

        lines = [
            "**Risk Manager Report**",
            "",
            "**Portfolio Status:**",
            f"- Balance: {a.balance:,} sats",
            f"- Exposure: {a.total_exposure:,} sats ({a.exposure_percent:.1f}%)",
            f"- Available Margin: {a.available_margin:,.0f} sats",
            f"- Daily P&L: {a.daily_pl:+,.0f} sats ({a.daily_pl_percent:.2f}%)",
            "",
            f"**Open Positions ({len(a.positions)}):**",
        ]
        for p in a.positions:
            lines.append(
                f"- [{str(p.risk_level).upper()}] {str(p.side).upper()}: {p.margin:,} sats, "
                f"P&L: {p.pl:+,.0f} ({p.pl_percent:.1f}%)"
            )
        if a.alerts:
            lines.append("")
            lines.append("**Alerts:**")
            lines.extend(f"- [{alert.level}] {alert.message}" for alert in a.alerts)
        lines.append("")
        lines.append(f"**Can Open New Position:** {'Yes' if a.can_open_new_position else 'No'}")
        return "\n".join(lines)

    def ai_context(self) -> dict[str, Any]:
        a = self.last_assessment
        if a is None:
            return {"status": "no assessment available"}
        return {
            "balance": a.balance,
            "total_exposure": a.total_exposure,
            "exposure_percent": a.exposure_percent,
            "daily_pl": a.daily_pl,
            "daily_pl_percent": a.daily_pl_percent,
            "open_positions": len(a.positions),
            "can_open_new_position": a.can_open_new_position,
            "available_margin": a.available_margin,
            "alerts": [alert.model_dump(mode="json") for alert in a.alerts],
            "risk_params": self.params.model_dump(),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def get_agent_state(self) -> dict[str, Any]:
        return {
            "params": self.params.model_dump(),
            "daily_start_balance": self.daily_start_balance,
            "daily_start_date": self.daily_start_date.isoformat(),
        }

    def restore_agent_state(self, state: dict[str, Any]) -> None:
        if "params" in state:
            self.params = RiskParameters.model_validate(state["params"])
        if "daily_start_date" in state:
            restored = date.fromisoformat(state["daily_start_date"])
            if restored == utc_now().date():
                self.daily_start_date = restored
                self.daily_start_balance = int(state.get("daily_start_balance", 0))
