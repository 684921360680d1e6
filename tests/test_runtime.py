"""Tests for the agent runtime.

Tests cover:
- Single-flight ticks, failures and timeouts
- Periodic scheduling and cancellation
- Enable/disable and config updates
- State snapshots through the repository
- Default vote, chat and trade-opinion handling
- Directed messages reaching handle_message or the log
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pydantic import ValidationError

from swarm_core.agents import (
    AgentConfig,
    AgentRuntime,
    AgentStatus,
    AgentType,
    OpinionStance,
    ProposalAssessment,
    TradeOpinion,
)
from swarm_core.bus import Message, MessageBus, MessageType, Topic, VoteDecision
from swarm_core.common.types import Direction
from swarm_core.persistence import MemoryStore, SwarmRepository
from swarm_core.services.ai import AIMessage


# ==============================================================================
# Test Doubles
# ==============================================================================
class CountingAgent:
    """Minimal agent whose execute can block or fail on demand."""

    agent_type = AgentType.RESEARCHER
    keywords = ("news",)

    def __init__(self, agent_id: str = "counter", name: str = "Counter") -> None:
        self.agent_id = agent_id
        self.name = name
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.restored: dict[str, Any] | None = None

    async def execute(self) -> None:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    def get_agent_state(self) -> dict[str, Any]:
        return {"calls": self.calls}

    def restore_agent_state(self, state: dict[str, Any]) -> None:
        self.restored = state


class OpinionatedAgent(CountingAgent):
    """Agent implementing every optional capability."""

    role = "test analyst"

    async def evaluate_trade_proposal(self, proposal: Any) -> ProposalAssessment:
        return ProposalAssessment(decision=VoteDecision.APPROVE, confidence=88, reason="Looks good")

    async def get_trade_opinion(self, direction: Direction, context: str | None) -> TradeOpinion:
        return TradeOpinion(opinion=OpinionStance.REJECT, confidence=70, reason=f"No {direction}")

    async def rule_based_response(self, query: str) -> str:
        return f"rule answer to {query}"

    def ai_context(self) -> dict[str, Any]:
        return {"calls": self.calls}


class ListeningAgent(CountingAgent):
    """Agent keeping every message addressed to it."""

    def __init__(self) -> None:
        super().__init__("listener", "Listener")
        self.inbox: list[Message] = []

    async def handle_message(self, message: Message) -> None:
        self.inbox.append(message)


class StaticAI:
    """AI backend returning a fixed completion."""

    def __init__(self, answer: str | None) -> None:
        self.answer = answer
        self.prompts: list[list[AIMessage]] = []

    def is_enabled(self) -> bool:
        return True

    async def chat(self, messages: list[AIMessage], system_prompt: str | None = None) -> str | None:
        self.prompts.append(messages)
        return self.answer


# ==============================================================================
# Fixtures
# ==============================================================================
@pytest.fixture
def bus() -> MessageBus:
    return MessageBus(min_votes_required=10)


@pytest.fixture
def repository() -> SwarmRepository:
    return SwarmRepository(MemoryStore())


def _runtime(agent: Any, bus: MessageBus, **kwargs: Any) -> AgentRuntime:
    config = AgentConfig(agent_id=agent.agent_id, name=agent.name, interval_seconds=0.01, timeout_seconds=1.0)
    return AgentRuntime(agent, bus, config, **kwargs)


# ==============================================================================
# Execution Tests
# ==============================================================================
class TestTick:
    """Tests for single ticks."""

    @pytest.mark.asyncio
    async def test_successful_tick_updates_metrics(self, bus: MessageBus) -> None:
        """A successful tick counts and returns to idle."""
        runtime = _runtime(CountingAgent(), bus)

        assert await runtime.tick()

        assert runtime.status == AgentStatus.IDLE
        assert runtime.metrics.success_count == 1
        assert runtime.metrics.last_run_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_tick_is_skipped(self, bus: MessageBus) -> None:
        """A tick while busy returns False without calling execute."""
        agent = CountingAgent()
        agent.gate = asyncio.Event()
        runtime = _runtime(agent, bus)

        first = asyncio.create_task(runtime.tick())
        await asyncio.sleep(0)
        assert runtime.is_busy

        assert not await runtime.tick()
        agent.gate.set()
        assert await first
        assert agent.calls == 1

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_broadcast(self, bus: MessageBus) -> None:
        """Errors set ERROR status, count, and publish an agent_error alert."""
        alerts: list[Message] = []
        bus.subscribe(alerts.append, message_type=MessageType.ALERT)
        agent = CountingAgent()
        agent.error = RuntimeError("exchange down")
        runtime = _runtime(agent, bus)

        assert not await runtime.tick()

        assert runtime.status == AgentStatus.ERROR
        assert runtime.metrics.error_count == 1
        assert runtime.metrics.last_error == "exchange down"
        assert alerts[0].topic == Topic.AGENT_ERROR
        assert alerts[0].payload["error_count"] == 1

    @pytest.mark.asyncio
    async def test_error_status_recovers_on_next_tick(self, bus: MessageBus) -> None:
        """An errored agent runs again on the next tick."""
        agent = CountingAgent()
        agent.error = RuntimeError("boom")
        runtime = _runtime(agent, bus)
        await runtime.tick()

        agent.error = None
        assert await runtime.tick()
        assert runtime.status == AgentStatus.IDLE
        assert runtime.metrics.last_error is None

    @pytest.mark.asyncio
    async def test_overrun_is_awaited_not_cancelled(self, bus: MessageBus) -> None:
        """Execute exceeding timeout_seconds is logged and allowed to finish."""
        agent = CountingAgent()
        agent.gate = asyncio.Event()
        config = AgentConfig(agent_id="counter", name="Counter", timeout_seconds=0.02)
        runtime = AgentRuntime(agent, bus, config)

        tick = asyncio.create_task(runtime.tick())
        await asyncio.sleep(0.08)

        assert not tick.done()
        assert runtime.is_busy
        assert not await runtime.tick()
        assert any("exceeded" in entry.message for entry in runtime.get_logs())

        agent.gate.set()
        assert await tick
        assert agent.calls == 1
        assert runtime.metrics.success_count == 1
        assert runtime.metrics.error_count == 0

    @pytest.mark.asyncio
    async def test_run_exclusive_respects_busy_guard(self, bus: MessageBus) -> None:
        """Exclusive operations run when idle and are refused when busy."""
        agent = CountingAgent()
        runtime = _runtime(agent, bus)

        async def operation() -> str:
            assert runtime.status == AgentStatus.EXECUTING
            return "done"

        assert await runtime.run_exclusive(operation) == "done"
        assert runtime.status == AgentStatus.IDLE

        agent.gate = asyncio.Event()
        tick = asyncio.create_task(runtime.tick())
        await asyncio.sleep(0)
        assert await runtime.run_exclusive(operation) is None
        agent.gate.set()
        await tick


# ==============================================================================
# Lifecycle Tests
# ==============================================================================
class TestLifecycle:
    """Tests for start/stop/enable/disable."""

    @pytest.mark.asyncio
    async def test_start_ticks_until_stopped(self, bus: MessageBus) -> None:
        """The loop ticks immediately and periodically until cancelled."""
        agent = CountingAgent()
        runtime = _runtime(agent, bus)

        runtime.start()
        await asyncio.sleep(0.05)
        runtime.stop()
        await runtime.wait_idle()
        calls = agent.calls
        await asyncio.sleep(0.03)

        assert calls >= 2
        assert agent.calls == calls
        assert not runtime.is_running

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self, bus: MessageBus) -> None:
        """Starting a running agent keeps the same loop task."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.start()
        task = runtime._loop_task

        runtime.start()

        assert runtime._loop_task is task
        runtime.stop()

    @pytest.mark.asyncio
    async def test_disabled_agent_does_not_start(self, bus: MessageBus) -> None:
        """Disable stops the loop and blocks start until enabled."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.disable()
        runtime.start()

        assert runtime.status == AgentStatus.DISABLED
        assert not runtime.is_running

        runtime.enable()
        runtime.start()
        assert runtime.is_running
        runtime.stop()

    @pytest.mark.asyncio
    async def test_update_config_restarts_running_agent(self, bus: MessageBus) -> None:
        """Config changes restart a running loop with the new interval."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.start()
        old_task = runtime._loop_task

        config = runtime.update_config(interval_seconds=5.0)

        assert config.interval_seconds == 5.0
        assert runtime.is_running
        assert runtime._loop_task is not old_task
        runtime.stop()

    def test_update_config_validates(self, bus: MessageBus) -> None:
        """Invalid values raise and keep the current config."""
        runtime = _runtime(CountingAgent(), bus)

        with pytest.raises(ValidationError):
            runtime.update_config(interval_seconds=-1)
        assert runtime.config.interval_seconds == 0.01


# ==============================================================================
# Persistence Tests
# ==============================================================================
class TestPersistence:
    """Tests for save_state/load_state."""

    @pytest.mark.asyncio
    async def test_tick_saves_and_load_restores(self, bus: MessageBus, repository: SwarmRepository) -> None:
        """Successful ticks persist a snapshot that a fresh runtime restores."""
        runtime = _runtime(CountingAgent(), bus, repository=repository)
        await runtime.tick()
        runtime.update_config(interval_seconds=42.0)
        assert runtime.save_state()

        agent = CountingAgent()
        restored = _runtime(agent, bus, repository=repository)
        assert restored.load_state()

        assert restored.config.interval_seconds == 42.0
        assert restored.metrics.success_count == 1
        assert agent.restored == {"calls": 1}

    def test_load_without_snapshot(self, bus: MessageBus, repository: SwarmRepository) -> None:
        """No saved state means nothing is applied."""
        runtime = _runtime(CountingAgent(), bus, repository=repository)
        assert not runtime.load_state()

    def test_disabled_state_round_trips(self, bus: MessageBus, repository: SwarmRepository) -> None:
        """A disabled agent comes back disabled."""
        runtime = _runtime(CountingAgent(), bus, repository=repository)
        runtime.disable()
        runtime.save_state()

        restored = _runtime(CountingAgent(), bus, repository=repository)
        restored.load_state()

        assert restored.status == AgentStatus.DISABLED
        assert not restored.config.enabled


# ==============================================================================
# Bus Participation Tests
# ==============================================================================
class TestBusParticipation:
    """Tests for default vote/chat/question handlers."""

    @pytest.mark.asyncio
    async def test_agent_without_opinion_abstains(self, bus: MessageBus) -> None:
        """Vote requests get an abstention from agents without an evaluator."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.attach()

        proposal = bus.create_proposal("someone", Direction.LONG, 80, "Test")
        await bus.drain()

        vote = bus.get_proposal(proposal.id).votes["counter"]
        assert vote.decision == VoteDecision.ABSTAIN

    @pytest.mark.asyncio
    async def test_evaluator_vote_is_cast(self, bus: MessageBus) -> None:
        """Agents with an evaluator vote with their verdict."""
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus)
        runtime.attach()

        proposal = bus.create_proposal("someone", Direction.LONG, 80, "Test")
        await bus.drain()

        vote = bus.get_proposal(proposal.id).votes["opinion"]
        assert vote.decision == VoteDecision.APPROVE
        assert vote.confidence == 88

    @pytest.mark.asyncio
    async def test_chat_uses_rule_based_response(self, bus: MessageBus) -> None:
        """Chat without AI falls back to the deterministic answer."""
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus)
        runtime.attach()

        collector = bus.reply_collector(1)
        outgoing = bus.send("human", MessageType.CHAT, {"text": "status"}, recipients=["opinion"], topic=Topic.CHAT)
        replies = await collector.wait(outgoing.id, timeout=1.0)

        assert replies[0].payload == {"text": "rule answer to status", "agent_name": "Opinion"}

    @pytest.mark.asyncio
    async def test_chat_prefers_ai_answer(self, bus: MessageBus) -> None:
        """An enabled AI backend answers first, with the agent context."""
        ai = StaticAI("ai answer")
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus, ai=ai)

        answer = await runtime.generate_chat_response("status")

        assert answer == "ai answer"
        assert "status" in ai.prompts[0][0].content

    @pytest.mark.asyncio
    async def test_empty_ai_answer_falls_back(self, bus: MessageBus) -> None:
        """An AI returning nothing falls back to the rule-based answer."""
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus, ai=StaticAI(None))

        assert await runtime.generate_chat_response("x") == "rule answer to x"

    @pytest.mark.asyncio
    async def test_chat_for_other_agent_is_ignored(self, bus: MessageBus) -> None:
        """Chat messages addressed to others get no reply."""
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus)
        runtime.attach()

        collector = bus.reply_collector(1)
        outgoing = bus.send("human", MessageType.CHAT, {"text": "hi"}, recipients=["someone-else"])
        replies = await collector.wait(outgoing.id, timeout=0.05)

        assert replies == []

    @pytest.mark.asyncio
    async def test_trade_opinion_question(self, bus: MessageBus) -> None:
        """Trade-opinion questions are answered with a structured opinion."""
        runtime = _runtime(OpinionatedAgent("opinion", "Opinion"), bus)
        runtime.attach()

        collector = bus.reply_collector(1)
        outgoing = bus.send(
            "human",
            MessageType.QUESTION,
            {"direction": "short", "context": None},
            recipients=["opinion"],
            topic=Topic.TRADE_OPINION,
        )
        replies = await collector.wait(outgoing.id, timeout=1.0)

        assert replies[0].payload["opinion"] == "reject"
        assert replies[0].payload["confidence"] == 70
        assert replies[0].payload["agent_name"] == "Opinion"

    @pytest.mark.asyncio
    async def test_default_trade_opinion_is_neutral(self, bus: MessageBus) -> None:
        """Agents without an opinion provider answer neutral."""
        runtime = _runtime(CountingAgent(), bus)

        opinion = await runtime.get_trade_opinion(Direction.LONG)

        assert opinion.opinion == OpinionStance.NEUTRAL
        assert opinion.confidence == 50

    @pytest.mark.asyncio
    async def test_directed_message_is_logged(self, bus: MessageBus) -> None:
        """Agents without a handler note directed messages in their log."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.attach()

        bus.send("coordinator", MessageType.ALERT, {"state": "ping"}, recipients=["counter"])
        await bus.drain()

        assert any(entry.message == "Received message from coordinator" for entry in runtime.get_logs())

    @pytest.mark.asyncio
    async def test_directed_message_reaches_handler(self, bus: MessageBus) -> None:
        """Agents with handle_message receive only messages addressed to them."""
        agent = ListeningAgent()
        runtime = _runtime(agent, bus)
        runtime.attach()

        bus.send("coordinator", MessageType.ALERT, {"state": "ping"}, recipients=["listener"])
        bus.send("coordinator", MessageType.ALERT, {"state": "other"}, recipients=["counter"])
        await bus.drain()

        assert [m.payload for m in agent.inbox] == [{"state": "ping"}]

    def test_detach_removes_handlers(self, bus: MessageBus) -> None:
        """Detached runtimes no longer vote."""
        runtime = _runtime(CountingAgent(), bus)
        runtime.attach()
        runtime.detach()

        proposal = bus.create_proposal("someone", Direction.LONG, 80, "Test")

        assert bus.get_proposal(proposal.id).votes == {}


# ==============================================================================
# Log Ring Tests
# ==============================================================================
class TestLogs:
    """Tests for the in-memory log ring."""

    def test_log_ring_is_bounded(self, bus: MessageBus) -> None:
        """Only the newest max_logs entries are kept."""
        agent = CountingAgent()
        runtime = AgentRuntime(agent, bus, AgentConfig(agent_id="counter", name="Counter"), max_logs=3)
        for _ in range(5):
            runtime.enable()

        logs = runtime.get_logs()

        assert len(logs) == 3
        assert runtime.get_logs(limit=0) == []

    def test_to_dict(self, bus: MessageBus) -> None:
        """Serializable summary of the runtime."""
        runtime = _runtime(CountingAgent(), bus)

        data = runtime.to_dict()

        assert data["id"] == "counter"
        assert data["type"] == AgentType.RESEARCHER
        assert data["enabled"] is True
