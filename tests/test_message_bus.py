"""Tests for the message bus.

Tests cover:
- Subscriptions, directed and broadcast delivery
- History ring buffer, filters and threads
- Proposal voting and consensus evaluation
- Reply collection with timeout
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from swarm_core.bus import (
    CONSENSUS_ENGINE,
    REQUEST_VOTE,
    Message,
    MessageBus,
    MessageType,
    ProposalStatus,
    Topic,
    Vote,
    VoteDecision,
)
from swarm_core.common.types import Direction, utc_now


# ==============================================================================
# Fixtures
# ==============================================================================
@pytest.fixture
def bus() -> MessageBus:
    """Bus that never auto-evaluates during a test."""
    return MessageBus(consensus_threshold=0.6, min_votes_required=10)


def _vote(agent_id: str, decision: VoteDecision, confidence: float) -> Vote:
    return Vote(agent_id=agent_id, decision=decision, confidence=confidence, reason=f"{agent_id} says {decision}")


# ==============================================================================
# Delivery Tests
# ==============================================================================
class TestDelivery:
    """Tests for send/broadcast routing."""

    def test_broadcast_reaches_type_subscribers(self, bus: MessageBus) -> None:
        """Type subscribers receive every message of that type."""
        received: list[Message] = []
        bus.subscribe(received.append, message_type=MessageType.ANALYSIS)

        bus.broadcast("market-analyst", MessageType.ANALYSIS, {"x": 1}, topic=Topic.MARKET_ANALYSIS)
        bus.broadcast("market-analyst", MessageType.ALERT, {"x": 2})

        assert len(received) == 1
        assert received[0].payload == {"x": 1}
        assert received[0].is_broadcast

    def test_directed_message_reaches_recipient(self, bus: MessageBus) -> None:
        """Recipient subscribers only see messages addressed to them."""
        to_risk: list[Message] = []
        to_exec: list[Message] = []
        bus.subscribe(to_risk.append, recipient="risk-manager")
        bus.subscribe(to_exec.append, recipient="execution")

        bus.send_to("human", "risk-manager", MessageType.QUESTION, {"q": "exposure?"})

        assert len(to_risk) == 1
        assert to_exec == []
        assert to_risk[0].recipients == ("risk-manager",)

    def test_wildcard_subscriber_sees_everything(self, bus: MessageBus) -> None:
        """A subscriber without filters receives all messages."""
        received: list[Message] = []
        bus.subscribe(received.append)

        bus.broadcast("a", MessageType.ANALYSIS)
        bus.send_to("a", "b", MessageType.CHAT)

        assert [m.type for m in received] == [MessageType.ANALYSIS, MessageType.CHAT]

    def test_unsubscribe(self, bus: MessageBus) -> None:
        """Unsubscribed handlers are no longer called."""
        received: list[Message] = []
        unsubscribe = bus.subscribe(received.append, message_type=MessageType.ALERT)
        unsubscribe()

        bus.broadcast("a", MessageType.ALERT)

        assert received == []

    def test_subscribe_rejects_both_filters(self, bus: MessageBus) -> None:
        """Recipient and type filters are mutually exclusive."""
        with pytest.raises(ValueError):
            bus.subscribe(lambda m: None, recipient="a", message_type=MessageType.CHAT)

    def test_failing_handler_does_not_block_others(self, bus: MessageBus) -> None:
        """Handler exceptions are logged and delivery continues."""
        received: list[Message] = []

        def boom(message: Message) -> None:
            raise RuntimeError("handler failure")

        bus.subscribe(boom, message_type=MessageType.ALERT)
        bus.subscribe(received.append, message_type=MessageType.ALERT)

        bus.broadcast("a", MessageType.ALERT)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_handlers_are_scheduled_and_drained(self, bus: MessageBus) -> None:
        """Coroutine handlers run as tasks; drain waits for them."""
        received: list[str] = []

        async def handler(message: Message) -> None:
            await asyncio.sleep(0)
            received.append(message.id)

        bus.subscribe(handler, message_type=MessageType.ANALYSIS)
        message = bus.broadcast("a", MessageType.ANALYSIS)
        await bus.drain()

        assert received == [message.id]

    def test_reply_targets_original_sender(self, bus: MessageBus) -> None:
        """Replies are responses directed at the original sender."""
        original = bus.send("human", MessageType.CHAT, {"text": "hi"}, recipients=["researcher"], topic=Topic.CHAT)
        reply = bus.reply("researcher", original, {"text": "hello"})

        assert reply.type == MessageType.RESPONSE
        assert reply.recipients == ("human",)
        assert reply.reply_to == original.id
        assert reply.topic == Topic.CHAT


# ==============================================================================
# History Tests
# ==============================================================================
class TestHistory:
    """Tests for history queries."""

    def test_ring_buffer_bounds_history(self) -> None:
        """Oldest messages are dropped beyond max_history."""
        bus = MessageBus(max_history=3)
        for i in range(5):
            bus.broadcast("a", MessageType.ANALYSIS, {"i": i})

        assert bus.history_size == 3
        assert [m.payload["i"] for m in bus.get_messages()] == [4, 3, 2]

    def test_get_messages_filters_newest_first(self, bus: MessageBus) -> None:
        """Filters combine and results are newest first."""
        bus.broadcast("a", MessageType.ANALYSIS, {"n": 1}, topic=Topic.MARKET_ANALYSIS)
        bus.broadcast("b", MessageType.ANALYSIS, {"n": 2}, topic=Topic.MARKET_ANALYSIS)
        bus.broadcast("a", MessageType.ANALYSIS, {"n": 3}, topic=Topic.RECOMMENDATION)

        by_sender = bus.get_messages(sender="a")
        by_topic = bus.get_messages(topic=Topic.MARKET_ANALYSIS, limit=1)

        assert [m.payload["n"] for m in by_sender] == [3, 1]
        assert [m.payload["n"] for m in by_topic] == [2]

    def test_get_thread_collects_transitive_replies(self, bus: MessageBus) -> None:
        """A thread contains the root and replies of replies, in order."""
        root = bus.send("human", MessageType.CHAT, {"text": "q"}, recipients=["a"])
        first = bus.reply("a", root, {"text": "a1"})
        second = bus.reply("human", first, {"text": "a2"})
        bus.broadcast("other", MessageType.ANALYSIS)

        thread = bus.get_thread(root.id)

        assert [m.id for m in thread] == [root.id, first.id, second.id]


# ==============================================================================
# Consensus Tests
# ==============================================================================
class TestConsensus:
    """Tests for proposals and consensus."""

    def test_create_proposal_broadcasts_vote_request(self, bus: MessageBus) -> None:
        """Creating a proposal stores it pending and asks for votes."""
        requests: list[Message] = []
        bus.subscribe(requests.append, message_type=MessageType.VOTE)

        proposal = bus.create_proposal("market-analyst", Direction.LONG, 75, "Breakout")

        assert proposal.status == ProposalStatus.PENDING
        assert requests[0].topic == Topic.TRADE_PROPOSAL
        assert requests[0].payload["action"] == REQUEST_VOTE
        assert requests[0].payload["proposal"]["id"] == proposal.id

    def test_three_approvals_one_reject_one_abstain_is_approved(self, bus: MessageBus) -> None:
        """Abstentions do not count towards the approval rate."""
        proposal = bus.create_proposal("market-analyst", Direction.LONG, 80, "Trend")
        bus.vote(proposal.id, _vote("a", VoteDecision.APPROVE, 70))
        bus.vote(proposal.id, _vote("b", VoteDecision.APPROVE, 80))
        bus.vote(proposal.id, _vote("c", VoteDecision.APPROVE, 90))
        bus.vote(proposal.id, _vote("d", VoteDecision.REJECT, 60))
        bus.vote(proposal.id, _vote("e", VoteDecision.ABSTAIN, 50))

        result = bus.evaluate_consensus(proposal.id)

        assert result is not None
        assert result.approved
        assert result.approval_rate == pytest.approx(0.75)
        assert result.average_confidence == pytest.approx(80.0)
        assert (result.approve_votes, result.reject_votes, result.abstain_votes) == (3, 1, 1)
        assert bus.get_proposal(proposal.id).status == ProposalStatus.APPROVED

    def test_low_confidence_approvals_are_rejected(self, bus: MessageBus) -> None:
        """Unanimous approvals still fail below the confidence floor."""
        proposal = bus.create_proposal("a", Direction.SHORT, 55, "Weak")
        bus.vote(proposal.id, _vote("a", VoteDecision.APPROVE, 50))
        bus.vote(proposal.id, _vote("b", VoteDecision.APPROVE, 55))

        result = bus.evaluate_consensus(proposal.id)

        assert result is not None
        assert not result.approved
        assert bus.get_proposal(proposal.id).status == ProposalStatus.REJECTED

    def test_only_abstentions_is_rejected(self, bus: MessageBus) -> None:
        """No effective votes means an approval rate of zero."""
        proposal = bus.create_proposal("a", Direction.LONG, 70, "?")
        bus.vote(proposal.id, _vote("a", VoteDecision.ABSTAIN, 50))

        result = bus.evaluate_consensus(proposal.id)

        assert result is not None
        assert result.approval_rate == 0.0
        assert not result.approved

    def test_revote_overwrites(self, bus: MessageBus) -> None:
        """A second vote from the same agent replaces the first."""
        proposal = bus.create_proposal("a", Direction.LONG, 70, "?")
        bus.vote(proposal.id, _vote("risk-manager", VoteDecision.APPROVE, 80))
        bus.vote(proposal.id, _vote("risk-manager", VoteDecision.REJECT, 90))

        stored = bus.get_proposal(proposal.id)

        assert len(stored.votes) == 1
        assert stored.votes["risk-manager"].decision == VoteDecision.REJECT

    def test_quorum_triggers_evaluation_and_decision(self) -> None:
        """Reaching min_votes_required resolves the proposal and broadcasts it."""
        bus = MessageBus(min_votes_required=3)
        decisions: list[Message] = []
        bus.subscribe(decisions.append, message_type=MessageType.DECISION)

        proposal = bus.create_proposal("a", Direction.LONG, 80, "Trend")
        for agent_id in ("a", "b", "c"):
            bus.vote(proposal.id, _vote(agent_id, VoteDecision.APPROVE, 75))

        assert bus.get_proposal(proposal.id).status == ProposalStatus.APPROVED
        assert len(decisions) == 1
        assert decisions[0].sender == CONSENSUS_ENGINE
        assert decisions[0].topic == Topic.TRADE_DECISION
        assert decisions[0].payload["result"]["approved"] is True

    def test_resolved_proposal_ignores_votes_and_reevaluation(self) -> None:
        """Once resolved, votes are ignored and evaluation returns None."""
        bus = MessageBus(min_votes_required=1)
        proposal = bus.create_proposal("a", Direction.LONG, 80, "Trend")
        bus.vote(proposal.id, _vote("a", VoteDecision.APPROVE, 90))

        bus.vote(proposal.id, _vote("b", VoteDecision.REJECT, 90))

        assert len(bus.get_proposal(proposal.id).votes) == 1
        assert bus.evaluate_consensus(proposal.id) is None

    def test_mark_executed_only_from_approved(self) -> None:
        """Only approved proposals can be marked executed."""
        bus = MessageBus(min_votes_required=1)
        approved = bus.create_proposal("a", Direction.LONG, 80, "Trend")
        bus.vote(approved.id, _vote("a", VoteDecision.APPROVE, 90))
        rejected = bus.create_proposal("a", Direction.SHORT, 80, "Trend")
        bus.vote(rejected.id, _vote("a", VoteDecision.REJECT, 90))

        assert bus.mark_executed(approved.id)
        assert not bus.mark_executed(approved.id)
        assert not bus.mark_executed(rejected.id)
        assert bus.get_proposal(approved.id).status == ProposalStatus.EXECUTED

    def test_returned_proposals_are_copies(self, bus: MessageBus) -> None:
        """Mutating a returned proposal does not affect the bus."""
        proposal = bus.create_proposal("a", Direction.LONG, 80, "Trend")
        proposal.votes["intruder"] = _vote("intruder", VoteDecision.APPROVE, 100)

        assert bus.get_proposal(proposal.id).votes == {}

    def test_pending_and_old_proposals(self, bus: MessageBus) -> None:
        """Pending listing and age-based purge."""
        first = bus.create_proposal("a", Direction.LONG, 80, "1")
        bus.create_proposal("a", Direction.SHORT, 80, "2")

        assert len(bus.get_pending_proposals()) == 2
        assert bus.clear_old_proposals(timedelta(hours=1)) == 0

        bus._proposals[first.id].timestamp = utc_now() - timedelta(hours=2)
        assert bus.clear_old_proposals(timedelta(hours=1)) == 1
        assert bus.get_proposal(first.id) is None

    def test_threshold_and_quorum_are_clamped(self, bus: MessageBus) -> None:
        """Threshold stays in [0.5, 1.0] and quorum at least 1."""
        bus.set_consensus_threshold(0.2)
        assert bus.consensus_threshold == 0.5
        bus.set_consensus_threshold(1.7)
        assert bus.consensus_threshold == 1.0
        bus.set_min_votes_required(0)
        assert bus.min_votes_required == 1

    def test_confidence_is_clamped(self) -> None:
        """Out-of-range vote confidence is clamped, not rejected."""
        assert _vote("a", VoteDecision.APPROVE, 140).confidence == 100.0
        assert _vote("a", VoteDecision.APPROVE, -5).confidence == 0.0


# ==============================================================================
# Reply Collector Tests
# ==============================================================================
class TestReplyCollector:
    """Tests for event-based reply waiting."""

    @pytest.mark.asyncio
    async def test_resolves_when_expected_replies_arrive(self, bus: MessageBus) -> None:
        """Synchronous replies produced during dispatch are captured."""
        for agent_id in ("a", "b"):
            bus.subscribe(
                lambda m, agent_id=agent_id: bus.reply(agent_id, m, {"text": agent_id}),
                recipient=agent_id,
            )

        collector = bus.reply_collector(2)
        outgoing = bus.send("human", MessageType.CHAT, {"text": "hi"}, recipients=["a", "b"])
        replies = await collector.wait(outgoing.id, timeout=1.0)

        assert sorted(m.sender for m in replies) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_times_out_with_partial_replies(self, bus: MessageBus) -> None:
        """Missing replies end the wait at the timeout."""
        bus.subscribe(lambda m: bus.reply("a", m, {"text": "a"}), recipient="a")

        collector = bus.reply_collector(2)
        outgoing = bus.send("human", MessageType.CHAT, {"text": "hi"}, recipients=["a", "silent"])
        replies = await collector.wait(outgoing.id, timeout=0.05)

        assert [m.sender for m in replies] == ["a"]

    @pytest.mark.asyncio
    async def test_ignores_replies_to_other_messages(self, bus: MessageBus) -> None:
        """Only replies to the awaited message count."""
        collector = bus.reply_collector(1)
        other = bus.send("human", MessageType.CHAT, recipients=["a"])
        bus.reply("a", other, {"text": "unrelated"})
        outgoing = bus.send("human", MessageType.CHAT, recipients=["a"])

        replies = await collector.wait(outgoing.id, timeout=0.05)

        assert replies == []
