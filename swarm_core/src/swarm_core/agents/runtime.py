"""Agent runtime: scheduling, metrics, persistence and bus participation.

``AgentRuntime`` wraps any object satisfying the ``Agent`` protocol. The
agent only implements its domain logic; the runtime owns everything around
it:

- a periodic asyncio task that spawns one tick task per interval
- single-flight execution guarded by ``AgentStatus``
- run metrics and a bounded in-memory log ring
- state snapshots through ``SwarmRepository``
- default answers to vote requests, chat messages and trade-opinion polls

Lifecycle:
    IDLE --tick--> ANALYZING --ok--> IDLE
                             --error--> ERROR --tick--> ANALYZING ...
    any --disable--> DISABLED --enable--> IDLE
    IDLE --run_exclusive--> EXECUTING --> IDLE
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Final, TypeVar

import structlog
from pydantic import ValidationError

from swarm_core.agents.protocol import (
    AgentConfig,
    AgentLogEntry,
    AgentMetrics,
    AgentState,
    AgentStatus,
    ChatPersona,
    LogLevel,
    MessageHandler,
    OpinionProvider,
    OpinionStance,
    ProposalAssessment,
    ProposalEvaluator,
    RuleBasedResponder,
    StatefulAgent,
    TradeOpinion,
)
from swarm_core.bus.message_bus import (
    REQUEST_VOTE,
    MessageType,
    Topic,
    TradeProposal,
    Vote,
    VoteDecision,
)
from swarm_core.common.types import Direction, utc_now
from swarm_core.services.ai import DisabledAIBackend, generate_agent_response

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from swarm_core.agents.protocol import Agent, AgentType
    from swarm_core.bus.message_bus import Message, MessageBus
    from swarm_core.persistence.repository import SwarmRepository
    from swarm_core.services.ai import AIBackend

log = structlog.get_logger()

T = TypeVar("T")

# ==============================================================================
# Constants
# ==============================================================================
MAX_LOG_ENTRIES: Final[int] = 1000
DEFAULT_ROLE: Final[str] = "trading agent"
_BUSY: Final[frozenset[str]] = frozenset({AgentStatus.ANALYZING.value, AgentStatus.EXECUTING.value})


class AgentRuntime:
    """Schedules one agent and connects it to the swarm.

    Attributes:
        agent: The wrapped agent.
        bus: Shared message bus.
        config: Current scheduling configuration.
        status: Current status (only the runtime changes it).
        metrics: Run bookkeeping.
    """

    def __init__(
        self,
        agent: Agent,
        bus: MessageBus,
        config: AgentConfig,
        repository: SwarmRepository | None = None,
        ai: AIBackend | None = None,
        max_logs: int = MAX_LOG_ENTRIES,
    ) -> None:
        self.agent = agent
        self.bus = bus
        self.config = config
        self.repository = repository
        self.ai = ai or DisabledAIBackend()
        self.status = AgentStatus.IDLE if config.enabled else AgentStatus.DISABLED
        self.metrics = AgentMetrics()

        self._logs: deque[AgentLogEntry] = deque(maxlen=max_logs)
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_tasks: set[asyncio.Task[bool]] = set()
        self._unsubscribers: list[Callable[[], None]] = []
        self._log = log.bind(agent_id=agent.agent_id)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    @property
    def name(self) -> str:
        return self.agent.name

    @property
    def agent_type(self) -> AgentType:
        return self.agent.agent_type

    @property
    def is_running(self) -> bool:
        """True while the scheduling task is alive."""
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_busy(self) -> bool:
        return self.status in _BUSY

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Tick immediately, then every ``interval_seconds``.

        Must be called from a running event loop.
        """
        if not self.config.enabled:
            self._record(LogLevel.WARNING, f"Agent {self.name} is disabled")
            return
        if self.is_running:
            self._record(LogLevel.INFO, f"Agent {self.name} already running")
            return

        self._record(LogLevel.INFO, f"Starting agent: {self.name}", interval=self.config.interval_seconds)
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name=f"agent-loop:{self.agent_id}"
        )

    def stop(self) -> None:
        """Cancel the scheduling task. In-flight ticks run to completion."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
            self._record(LogLevel.INFO, f"Stopping agent: {self.name}")
        self.status = AgentStatus.IDLE

    async def wait_idle(self) -> None:
        """Wait for every in-flight tick to finish."""
        while self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)

    async def _run_loop(self) -> None:
        while True:
            task = asyncio.get_running_loop().create_task(self.tick(), name=f"agent-tick:{self.agent_id}")
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            await asyncio.sleep(self.config.interval_seconds)

    def enable(self) -> None:
        self.config = self.config.model_copy(update={"enabled": True})
        self.status = AgentStatus.IDLE
        self._record(LogLevel.INFO, "Agent enabled")

    def disable(self) -> None:
        self.stop()
        self.config = self.config.model_copy(update={"enabled": False})
        self.status = AgentStatus.DISABLED
        self._record(LogLevel.INFO, "Agent disabled")

    def update_config(self, **changes: Any) -> AgentConfig:
        """Merge configuration changes, restarting when the agent was running.

        Raises:
            ValidationError: Invalid values; the current config is kept.
        """
        changes.pop("agent_id", None)
        merged = AgentConfig.model_validate({**self.config.model_dump(), **changes})

        was_running = self.is_running
        if was_running:
            self.stop()

        self.config = merged
        self._record(LogLevel.INFO, "Config updated", **changes)

        if was_running and self.config.enabled:
            self.start()
        return self.config

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def tick(self) -> bool:
        """Run one unit of work.

        ``timeout_seconds`` is a watchdog, not a deadline: an overrunning
        ``execute`` is logged and awaited to completion, never cancelled,
        since it may already have placed an order.

        Returns:
            True when ``execute`` completed successfully. Errors never
            escape; they are recorded, logged and broadcast as alerts.
        """
        if self.is_busy:
            self._record(LogLevel.DEBUG, "Agent is busy, skipping tick")
            return False

        started = time.perf_counter()
        self.status = AgentStatus.ANALYZING
        work = asyncio.get_running_loop().create_task(self.agent.execute(), name=f"agent-execute:{self.agent_id}")
        try:
            done, _ = await asyncio.wait({work}, timeout=self.config.timeout_seconds)
            if not done:
                self._record(
                    LogLevel.WARNING,
                    f"Execution exceeded {self.config.timeout_seconds}s, waiting for it to finish",
                )
            await asyncio.shield(work)
        except asyncio.CancelledError:
            if work.done():
                self.status = AgentStatus.IDLE
            else:
                work.add_done_callback(self._release_after_orphan)
            raise
        except Exception as exc:
            self._record_failure(str(exc) or type(exc).__name__, exc_info=True)
            return False

        self._record_success((time.perf_counter() - started) * 1000)
        self.save_state()
        return True

    def _release_after_orphan(self, work: asyncio.Task[None]) -> None:
        # The tick was cancelled but its execute kept running; free the guard only now.
        if not work.cancelled() and work.exception() is not None:
            self._record(LogLevel.ERROR, "Orphaned execution failed", error=str(work.exception()))
        self.status = AgentStatus.IDLE if self.config.enabled else AgentStatus.DISABLED

    async def run_exclusive(self, operation: Callable[[], Awaitable[T]]) -> T | None:
        """Run an out-of-band operation under the single-flight guard.

        Returns:
            The operation result, or None when the agent was busy.
        """
        if self.is_busy:
            self._record(LogLevel.DEBUG, "Agent is busy, rejecting exclusive operation")
            return None

        self.status = AgentStatus.EXECUTING
        try:
            return await operation()
        finally:
            self.status = AgentStatus.IDLE if self.config.enabled else AgentStatus.DISABLED

    def _record_success(self, elapsed_ms: float) -> None:
        success_count = self.metrics.success_count + 1
        total = success_count + self.metrics.error_count
        average = (self.metrics.average_execution_ms * (total - 1) + elapsed_ms) / total
        self.metrics = self.metrics.model_copy(
            update={
                "success_count": success_count,
                "last_error": None,
                "average_execution_ms": average,
                "last_run_at": utc_now(),
            }
        )
        self.status = AgentStatus.IDLE

    def _record_failure(self, error: str, *, exc_info: bool = False) -> None:
        self.metrics = self.metrics.model_copy(
            update={"error_count": self.metrics.error_count + 1, "last_error": error}
        )
        self.status = AgentStatus.ERROR
        self._logs.append(AgentLogEntry(level=LogLevel.ERROR, message=f"Agent execution failed: {error}"))
        self._log.error("Agent execution failed", error=error, exc_info=exc_info)
        self.bus.broadcast(
            self.agent_id,
            MessageType.ALERT,
            {"agent_name": self.name, "error": error, "error_count": self.metrics.error_count},
            topic=Topic.AGENT_ERROR,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def snapshot(self) -> AgentState:
        """Current state as a persistable record."""
        extension = self.agent.get_agent_state() if isinstance(self.agent, StatefulAgent) else {}
        return AgentState(
            agent_id=self.agent_id,
            enabled=self.config.enabled,
            status=self.status,
            config=self.config,
            metrics=self.metrics,
            agent_state=extension,
        )

    def save_state(self) -> bool:
        """Persist a snapshot. Failures are logged, never raised."""
        if self.repository is None:
            return False
        try:
            snapshot = self.snapshot()
        except Exception as exc:
            self._record(LogLevel.ERROR, "Failed to build agent state", error=str(exc))
            return False
        return self.repository.save_agent_state(snapshot)

    def load_state(self) -> bool:
        """Restore config, metrics and agent-specific state.

        Returns:
            True when a snapshot was found and applied.
        """
        if self.repository is None:
            return False
        state = self.repository.load_agent_state(self.agent_id)
        if state is None:
            self._record(LogLevel.DEBUG, "No saved state found")
            return False

        self.config = state.config.model_copy(update={"agent_id": self.agent_id, "enabled": state.enabled})
        self.metrics = state.metrics
        self.status = AgentStatus.IDLE if state.enabled else AgentStatus.DISABLED
        if state.agent_state and isinstance(self.agent, StatefulAgent):
            try:
                self.agent.restore_agent_state(state.agent_state)
            except (ValidationError, KeyError, TypeError, ValueError) as exc:
                self._record(LogLevel.ERROR, "Failed to restore agent state", error=str(exc))
                return False

        self._record(LogLevel.INFO, "State restored")
        return True

    # ------------------------------------------------------------------
    # Bus participation
    # ------------------------------------------------------------------
    def attach(self) -> None:
        """Subscribe the default bus handlers (idempotent)."""
        if self._unsubscribers:
            return
        self._unsubscribers.extend(
            [
                self.bus.subscribe(self._on_direct, recipient=self.agent_id),
                self.bus.subscribe(self._on_vote_request, message_type=MessageType.VOTE),
                self.bus.subscribe(self._on_chat, message_type=MessageType.CHAT),
                self.bus.subscribe(self._on_question, message_type=MessageType.QUESTION),
            ]
        )

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def _on_direct(self, message: Message) -> None:
        if isinstance(self.agent, MessageHandler):
            await self.agent.handle_message(message)
            return
        self._record(LogLevel.DEBUG, f"Received message from {message.sender}", type=message.type)

    async def _on_vote_request(self, message: Message) -> None:
        if message.topic != Topic.TRADE_PROPOSAL or message.payload.get("action") != REQUEST_VOTE:
            return
        proposal = TradeProposal.model_validate(message.payload["proposal"])
        assessment = await self.evaluate_trade_proposal(proposal)
        self.bus.vote(
            proposal.id,
            Vote(
                agent_id=self.agent_id,
                decision=assessment.decision,
                confidence=assessment.confidence,
                reason=assessment.reason,
            ),
        )

    async def _on_chat(self, message: Message) -> None:
        if message.recipients and self.agent_id not in message.recipients:
            return
        query = message.payload.get("text")
        if not isinstance(query, str):
            query = json.dumps(message.payload, default=str)

        response = await self.generate_chat_response(query)
        if response:
            self.bus.reply(self.agent_id, message, {"text": response, "agent_name": self.name})

    async def _on_question(self, message: Message) -> None:
        if message.topic != Topic.TRADE_OPINION:
            return
        direction = Direction(message.payload["direction"])
        opinion = await self.get_trade_opinion(direction, message.payload.get("context"))
        payload = opinion.model_dump(mode="json")
        payload["agent_name"] = self.name
        self.bus.reply(self.agent_id, message, payload)

    # ------------------------------------------------------------------
    # Capabilities with defaults
    # ------------------------------------------------------------------
    async def evaluate_trade_proposal(self, proposal: TradeProposal) -> ProposalAssessment:
        """The agent's verdict, abstaining when it has none."""
        if isinstance(self.agent, ProposalEvaluator):
            assessment = await self.agent.evaluate_trade_proposal(proposal)
            if assessment is not None:
                return assessment
        return ProposalAssessment(
            decision=VoteDecision.ABSTAIN,
            confidence=50,
            reason=f"{self.name} has no opinion on this trade",
        )

    async def get_trade_opinion(self, direction: Direction, context: str | None = None) -> TradeOpinion:
        if isinstance(self.agent, OpinionProvider):
            return await self.agent.get_trade_opinion(direction, context)
        return TradeOpinion(
            opinion=OpinionStance.NEUTRAL,
            confidence=50,
            reason=f"{self.name} has no strong opinion",
        )

    async def generate_chat_response(self, query: str) -> str | None:
        """AI answer when available, otherwise the deterministic report."""
        if self.ai.is_enabled():
            role = self.agent.role if isinstance(self.agent, ChatPersona) else DEFAULT_ROLE
            context = self.ai_context()
            try:
                answer = await generate_agent_response(self.ai, self.name, role, query, context)
            except Exception as exc:
                self._record(LogLevel.WARNING, "AI response failed", error=str(exc))
                answer = None
            if answer:
                return answer

        if isinstance(self.agent, RuleBasedResponder):
            return await self.agent.rule_based_response(query)
        return f"[{self.name}] I received your message but don't have a specific response."

    def ai_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "agent_id": self.agent_id,
            "status": self.status,
            "metrics": self.metrics.model_dump(mode="json"),
        }
        if isinstance(self.agent, ChatPersona):
            context.update(self.agent.ai_context())
        return context

    # ------------------------------------------------------------------
    # Logs & Introspection
    # ------------------------------------------------------------------
    def _record(self, level: LogLevel, message: str, **data: Any) -> None:
        self._logs.append(AgentLogEntry(level=level, message=message, data=data))
        getattr(self._log, level.value)(message, **data)

    def get_logs(self, limit: int = 100) -> list[AgentLogEntry]:
        """Most recent log entries, oldest first."""
        if limit <= 0:
            return []
        return list(self._logs)[-limit:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.name,
            "type": self.agent_type,
            "status": self.status,
            "enabled": self.config.enabled,
            "config": self.config.model_dump(mode="json"),
            "metrics": self.metrics.model_dump(mode="json"),
        }
