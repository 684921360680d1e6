"""Agent capability protocols and runtime records.

This module defines the contract between an agent and the runtime that
schedules it. An agent is anything satisfying ``Agent``: an identity, a
static type tag, a keyword list for chat routing and an async ``execute``.
Everything else is an optional capability the runtime discovers with
``isinstance`` checks against the runtime-checkable protocols below and
replaces with a default when absent.

Capability Flow:
    AgentRuntime.tick -> Agent.execute
    vote request      -> ProposalEvaluator.evaluate_trade_proposal -> Vote
    trade question    -> OpinionProvider.get_trade_opinion -> TradeOpinion
    chat message      -> AI backend (ChatPersona) | RuleBasedResponder.rule_based_response
    persistence       -> StatefulAgent.get_agent_state / restore_agent_state
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from swarm_core.bus.message_bus import VoteDecision
from swarm_core.common.types import clamp_confidence, utc_now

if TYPE_CHECKING:
    from swarm_core.bus.message_bus import Message, TradeProposal
    from swarm_core.common.types import Direction


# ==============================================================================
# Enumerations
# ==============================================================================
class AgentStatus(str, Enum):
    """Runtime status of an agent. Only the runtime transitions it."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    EXECUTING = "executing"
    ERROR = "error"
    DISABLED = "disabled"


class AgentType(str, Enum):
    """Static tag of an agent implementation."""

    MARKET_ANALYST = "market_analyst"
    RISK_MANAGER = "risk_manager"
    EXECUTION = "execution"
    RESEARCHER = "researcher"
    EXTERNAL_SIGNAL = "external_signal"


class OpinionStance(str, Enum):
    """Answer to a trade-opinion poll."""

    APPROVE = "approve"
    REJECT = "reject"
    NEUTRAL = "neutral"


class LogLevel(str, Enum):
    """Severity of an agent log ring entry."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# ==============================================================================
# Runtime Records
# ==============================================================================
class AgentConfig(BaseModel):
    """Scheduling configuration of one agent.

    Attributes:
        agent_id: Stable identifier (also the persistence key).
        name: Display name.
        enabled: Disabled agents never tick.
        interval_seconds: Period between ticks.
        max_retries: Attempts for retried read-only fetches.
        timeout_seconds: Upper bound on a single ``execute`` call.
    """

    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    enabled: bool = True
    interval_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)


class AgentSettings(BaseModel):
    """Construction-time knobs shared by every agent.

    Agent modules subclass this with their own domain parameters and
    interval default; ``agent_config`` extracts the runtime part.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)

    def agent_config(self, agent_id: str, name: str) -> AgentConfig:
        """Scheduling configuration for the runtime."""
        return AgentConfig(
            agent_id=agent_id,
            name=name,
            enabled=self.enabled,
            interval_seconds=self.interval_seconds,
            max_retries=self.max_retries,
            timeout_seconds=self.timeout_seconds,
        )


class AgentMetrics(BaseModel):
    """Run bookkeeping maintained by the runtime."""

    model_config = ConfigDict(frozen=True)

    success_count: int = 0
    error_count: int = 0
    average_execution_ms: float = 0.0
    last_run_at: datetime | None = None
    last_error: str | None = None

    @property
    def total_runs(self) -> int:
        """Completed runs, successful or not."""
        return self.success_count + self.error_count


class AgentState(BaseModel):
    """Persisted snapshot of an agent.

    ``agent_state`` carries the agent-specific extension (e.g. a pending
    signal queue) produced by ``StatefulAgent.get_agent_state``.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    agent_id: str
    enabled: bool
    status: AgentStatus
    config: AgentConfig
    metrics: AgentMetrics
    agent_state: dict[str, Any] = Field(default_factory=dict)
    saved_at: datetime = Field(default_factory=utc_now)


class AgentLogEntry(BaseModel):
    """One entry of an agent's in-memory log ring."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class ProposalAssessment(BaseModel):
    """An agent's verdict on a proposal before it becomes a ``Vote``."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    decision: VoteDecision
    confidence: float
    reason: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: float) -> float:
        """Clamp confidence into [0, 100]."""
        return clamp_confidence(v)


class TradeOpinion(BaseModel):
    """Structured answer to a trade-opinion poll."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    opinion: OpinionStance = OpinionStance.NEUTRAL
    confidence: float = 50.0
    reason: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: float) -> float:
        """Clamp confidence into [0, 100]."""
        return clamp_confidence(v)


# ==============================================================================
# Capability Protocols
# ==============================================================================
@runtime_checkable
class Agent(Protocol):
    """Minimal contract every agent satisfies.

    Example:
        ```python
        class MyAgent:
            agent_id = "my-agent"
            name = "My Agent"
            agent_type = AgentType.RESEARCHER
            keywords = ("news",)

            async def execute(self) -> None:
                ...
        ```
    """

    agent_id: str
    name: str

    @property
    def agent_type(self) -> AgentType:
        """Static type tag."""
        ...

    @property
    def keywords(self) -> tuple[str, ...]:
        """Lowercase keywords used by the chat router."""
        ...

    async def execute(self) -> None:
        """Run one unit of periodic work. Exceptions are handled by the runtime."""
        ...


@runtime_checkable
class ProposalEvaluator(Protocol):
    """Agents that vote on trade proposals with an opinion of their own."""

    async def evaluate_trade_proposal(self, proposal: TradeProposal) -> ProposalAssessment | None:
        """Return a verdict, or None to fall back to abstaining."""
        ...


@runtime_checkable
class OpinionProvider(Protocol):
    """Agents that answer trade-opinion polls."""

    async def get_trade_opinion(self, direction: Direction, context: str | None) -> TradeOpinion:
        """Return a structured opinion on a hypothetical trade."""
        ...


@runtime_checkable
class RuleBasedResponder(Protocol):
    """Agents with a deterministic chat answer."""

    async def rule_based_response(self, query: str) -> str | None:
        """Return a deterministic report, or None when nothing to say."""
        ...


@runtime_checkable
class StatefulAgent(Protocol):
    """Agents persisting fields beyond generic config and metrics."""

    def get_agent_state(self) -> dict[str, Any]:
        """Serialize agent-specific state (JSON-compatible)."""
        ...

    def restore_agent_state(self, state: dict[str, Any]) -> None:
        """Restore what ``get_agent_state`` produced."""
        ...


@runtime_checkable
class MessageHandler(Protocol):
    """Agents reacting to messages addressed to them directly."""

    async def handle_message(self, message: Message) -> None:
        """Handle a directed message."""
        ...


@runtime_checkable
class ChatPersona(Protocol):
    """Agents giving the AI backend a role and a data context."""

    role: str

    def ai_context(self) -> dict[str, Any]:
        """JSON-compatible snapshot of what the agent currently knows."""
        ...
