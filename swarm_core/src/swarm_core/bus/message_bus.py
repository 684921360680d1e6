"""In-process message bus with proposal voting and consensus.

The bus is the central nervous system of the swarm:
1. Stamps, records and fans out every message (directed, broadcast, reply)
2. Lets agents subscribe narrowly (by recipient id) or broadly (by type)
3. Owns trade proposals and is the sole authority on their consensus

Dispatch is synchronous: ``send`` invokes every listener during the call.
Coroutine listeners are scheduled as tasks on the running loop and tracked
so that ``drain`` can await them. A failing listener is logged and never
reaches the sender.

Consensus Gates:
- approval rate = approve / (approve + reject), abstains excluded
- average confidence = mean confidence of approve votes only
- approved iff rate >= threshold AND average confidence >= 60
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict, deque
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from swarm_core.common.types import Direction, clamp_confidence, ensure_utc, new_id, utc_now

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
MAX_HISTORY: Final[int] = 1000
DEFAULT_CONSENSUS_THRESHOLD: Final[float] = 0.6
DEFAULT_MIN_VOTES: Final[int] = 3
MIN_APPROVE_CONFIDENCE: Final[float] = 60.0
MIN_THRESHOLD: Final[float] = 0.5
MAX_THRESHOLD: Final[float] = 1.0
DEFAULT_PROPOSAL_MAX_AGE: Final[timedelta] = timedelta(hours=24)

CONSENSUS_ENGINE: Final[str] = "consensus-engine"
REQUEST_VOTE: Final[str] = "request_vote"


# ==============================================================================
# Enumerations
# ==============================================================================
class MessageType(str, Enum):
    """Kinds of messages carried by the bus."""

    ANALYSIS = "analysis"
    OPINION = "opinion"
    ALERT = "alert"
    QUESTION = "question"
    VOTE = "vote"
    DECISION = "decision"
    CHAT = "chat"
    RESPONSE = "response"


class Topic(str, Enum):
    """Typed topics agents and the coordinator agree on."""

    TRADE_PROPOSAL = "trade_proposal"
    TRADE_DECISION = "trade_decision"
    VOTE_CAST = "vote_cast"
    RECOMMENDATION = "recommendation"
    MARKET_ANALYSIS = "market_analysis"
    RISK_ASSESSMENT = "risk_assessment"
    RISK_ALERT = "risk_alert"
    STOP_TRADING = "stop_trading"
    RESEARCH_REPORT = "research_report"
    COMBINED_SIGNAL = "combined_signal"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    POSITION_CLOSED = "position_closed"
    AGENT_ERROR = "agent_error"
    CHAT = "chat"
    TRADE_OPINION = "trade_opinion"
    GENERAL = "general"


class VoteDecision(str, Enum):
    """A single agent's stance on a proposal."""

    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"


class ProposalStatus(str, Enum):
    """Lifecycle of a trade proposal.

    Transitions are one-way: PENDING -> APPROVED | REJECTED, and
    APPROVED -> EXECUTED only through an explicit call.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


# ==============================================================================
# Records
# ==============================================================================
class Message(BaseModel):
    """Immutable bus message.

    Attributes:
        id: Unique id (``msg-...``), stamped by the bus.
        timestamp: Send time (UTC), stamped by the bus.
        sender: Sending agent id (or ``human`` / ``consensus-engine``).
        recipients: Target agent ids; None means broadcast.
        type: Message kind.
        topic: Typed topic.
        payload: Message body.
        reply_to: Id of the message this one answers.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str  # noqa: A003
    timestamp: datetime
    sender: str
    recipients: tuple[str, ...] | None = None
    type: MessageType  # noqa: A003
    topic: Topic = Topic.GENERAL
    payload: dict[str, Any] = Field(default_factory=dict)
    reply_to: str | None = None

    @property
    def is_broadcast(self) -> bool:
        """True when the message has no explicit recipients."""
        return self.recipients is None


class Vote(BaseModel):
    """One agent's vote on a proposal."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    agent_id: str = Field(..., min_length=1)
    decision: VoteDecision
    confidence: float
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: float) -> float:
        """Clamp confidence into [0, 100]."""
        return clamp_confidence(v)


class TradeProposal(BaseModel):
    """A candidate trade submitted for multi-agent voting.

    Owned by the bus. Callers receive copies; only the bus mutates the
    vote map and status.
    """

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=lambda: new_id("prop"))  # noqa: A003
    direction: Direction
    confidence: float
    rationale: str = ""
    proposer: str
    timestamp: datetime = Field(default_factory=utc_now)
    votes: dict[str, Vote] = Field(default_factory=dict)
    status: ProposalStatus = ProposalStatus.PENDING

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, v: float) -> float:
        """Clamp confidence into [0, 100]."""
        return clamp_confidence(v)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Ensure timestamp is timezone-aware UTC."""
        return ensure_utc(v)


class ConsensusResult(BaseModel):
    """Full tally of a consensus evaluation."""

    model_config = ConfigDict(frozen=True)

    proposal_id: str
    approved: bool
    total_votes: int
    approve_votes: int
    reject_votes: int
    abstain_votes: int
    approval_rate: float
    average_confidence: float
    reasons: list[str] = Field(default_factory=list)


# ==============================================================================
# Reply Collector
# ==============================================================================
class ReplyCollector:
    """Collects ``response`` messages answering one outgoing message.

    Created before the outgoing message is sent so that replies produced
    synchronously during dispatch are not missed. Resolves as soon as the
    expected number of replies arrived, or when the timeout elapses.
    """

    def __init__(self, bus: MessageBus, expected: int) -> None:
        self._expected = max(0, expected)
        self._buffer: list[Message] = []
        self._message_id: str | None = None
        self._done = asyncio.Event()
        self._unsubscribe = bus.subscribe(self._on_response, message_type=MessageType.RESPONSE)

    @property
    def replies(self) -> list[Message]:
        """Replies matched so far."""
        if self._message_id is None:
            return []
        return [m for m in self._buffer if m.reply_to == self._message_id]

    def _on_response(self, message: Message) -> None:
        self._buffer.append(message)
        self._check()

    def _check(self) -> None:
        if self._message_id is not None and len(self.replies) >= self._expected:
            self._done.set()

    async def wait(self, message_id: str, timeout: float) -> list[Message]:
        """Wait for replies to ``message_id``.

        Args:
            message_id: Id of the outgoing message.
            timeout: Hard upper bound in seconds.

        Returns:
            Replies received before the count was reached or time ran out.
        """
        self._message_id = message_id
        self._check()
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.debug(
                "Reply collection timed out",
                message_id=message_id,
                received=len(self.replies),
                expected=self._expected,
            )
        finally:
            self._unsubscribe()
        return self.replies


# ==============================================================================
# Message Bus
# ==============================================================================
class MessageBus:
    """Pub/sub, directed messaging and consensus engine shared by all agents.

    Attributes:
        consensus_threshold: Minimum approval rate, clamped to [0.5, 1.0].
        min_votes_required: Distinct voters needed to auto-evaluate, >= 1.
        max_history: Size of the message ring buffer.
    """

    def __init__(
        self,
        consensus_threshold: float = DEFAULT_CONSENSUS_THRESHOLD,
        min_votes_required: int = DEFAULT_MIN_VOTES,
        max_history: int = MAX_HISTORY,
    ) -> None:
        self.consensus_threshold = DEFAULT_CONSENSUS_THRESHOLD
        self.min_votes_required = DEFAULT_MIN_VOTES
        self.set_consensus_threshold(consensus_threshold)
        self.set_min_votes_required(min_votes_required)

        self.max_history = max_history
        self._history: deque[Message] = deque(maxlen=max_history)
        self._proposals: dict[str, TradeProposal] = {}

        self._by_recipient: dict[str, list[Callable[[Message], Any]]] = defaultdict(list)
        self._by_type: dict[str, list[Callable[[Message], Any]]] = defaultdict(list)
        self._all: list[Callable[[Message], Any]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

        log.info(
            "Message bus initialized",
            threshold=self.consensus_threshold,
            min_votes=self.min_votes_required,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(
        self,
        handler: Callable[[Message], Any],
        *,
        recipient: str | None = None,
        message_type: MessageType | None = None,
    ) -> Callable[[], None]:
        """Register a listener.

        With ``recipient`` the handler receives messages addressed to that
        id; with ``message_type`` every message of that type; with neither,
        every message.

        Returns:
            Callable that removes the subscription.
        """
        if recipient is not None and message_type is not None:
            raise ValueError("Subscribe by recipient or by type, not both")

        if recipient is not None:
            bucket = self._by_recipient[recipient]
        elif message_type is not None:
            bucket = self._by_type[MessageType(message_type).value]
        else:
            bucket = self._all
        bucket.append(handler)

        def unsubscribe() -> None:
            if handler in bucket:
                bucket.remove(handler)

        return unsubscribe

    def reply_collector(self, expected: int) -> ReplyCollector:
        """Create a collector to register before sending a request."""
        return ReplyCollector(self, expected)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    def send(
        self,
        sender: str,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
        *,
        recipients: Iterable[str] | None = None,
        topic: Topic = Topic.GENERAL,
        reply_to: str | None = None,
    ) -> Message:
        """Stamp, record and dispatch a message.

        Returns:
            The immutable message as recorded.
        """
        message = Message(
            id=new_id("msg"),
            timestamp=utc_now(),
            sender=sender,
            recipients=tuple(recipients) if recipients is not None else None,
            type=message_type,
            topic=topic,
            payload=dict(payload or {}),
            reply_to=reply_to,
        )
        self._history.append(message)

        if message.recipients is not None:
            for recipient in message.recipients:
                self._dispatch(self._by_recipient.get(recipient, ()), message)
        self._dispatch(self._all, message)
        self._dispatch(self._by_type.get(message.type, ()), message)

        return message

    def broadcast(
        self,
        sender: str,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
        *,
        topic: Topic = Topic.GENERAL,
    ) -> Message:
        """Send to everyone."""
        return self.send(sender, message_type, payload, topic=topic)

    def send_to(
        self,
        sender: str,
        recipient: str,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
        *,
        topic: Topic = Topic.GENERAL,
    ) -> Message:
        """Send to a single agent."""
        return self.send(sender, message_type, payload, recipients=[recipient], topic=topic)

    def reply(
        self,
        sender: str,
        original: Message,
        payload: dict[str, Any] | None = None,
    ) -> Message:
        """Answer ``original``: directed to its sender, type response."""
        return self.send(
            sender,
            MessageType.RESPONSE,
            payload,
            recipients=[original.sender],
            topic=Topic(original.topic),
            reply_to=original.id,
        )

    def _dispatch(self, handlers: Iterable[Callable[[Message], Any]], message: Message) -> None:
        for handler in list(handlers):
            try:
                result = handler(message)
            except Exception as exc:
                log.error(
                    "Message handler failed",
                    message_id=message.id,
                    type=message.type,
                    error=str(exc),
                    exc_info=True,
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, message)

    def _schedule(self, awaitable: Awaitable[Any], message: Message) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning(
                "No running loop for async handler; dropping",
                message_id=message.id,
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(_guarded(awaitable, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Proposals & Voting
    # ------------------------------------------------------------------
    def create_proposal(
        self,
        proposer: str,
        direction: Direction,
        confidence: float,
        rationale: str,
    ) -> TradeProposal:
        """Open a proposal and broadcast a vote request.

        Returns:
            A copy of the new pending proposal.
        """
        proposal = TradeProposal(
            direction=direction,
            confidence=confidence,
            rationale=rationale,
            proposer=proposer,
        )
        self._proposals[proposal.id] = proposal

        log.info(
            "Trade proposal created",
            proposal_id=proposal.id,
            proposer=proposer,
            direction=proposal.direction,
            confidence=proposal.confidence,
        )

        self.broadcast(
            proposer,
            MessageType.VOTE,
            {"action": REQUEST_VOTE, "proposal": proposal.model_dump(mode="json")},
            topic=Topic.TRADE_PROPOSAL,
        )
        return proposal.model_copy(deep=True)

    def vote(self, proposal_id: str, vote: Vote) -> None:
        """Record (or overwrite) an agent's vote on a pending proposal."""
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.PENDING:
            log.debug("Vote ignored", proposal_id=proposal_id, agent_id=vote.agent_id)
            return

        proposal.votes[vote.agent_id] = vote

        self.broadcast(
            vote.agent_id,
            MessageType.VOTE,
            {"proposal_id": proposal_id, "vote": vote.model_dump(mode="json")},
            topic=Topic.VOTE_CAST,
        )

        if len(proposal.votes) >= self.min_votes_required:
            self.evaluate_consensus(proposal_id)

    def evaluate_consensus(self, proposal_id: str) -> ConsensusResult | None:
        """Tally votes and resolve a pending proposal.

        Returns:
            The tally, or None when the proposal is missing or already
            resolved.
        """
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.PENDING:
            return None

        votes = list(proposal.votes.values())
        approve = [v for v in votes if v.decision == VoteDecision.APPROVE]
        reject = [v for v in votes if v.decision == VoteDecision.REJECT]
        abstain = [v for v in votes if v.decision == VoteDecision.ABSTAIN]

        effective = len(approve) + len(reject)
        approval_rate = len(approve) / effective if effective else 0.0
        average_confidence = (
            sum(v.confidence for v in approve) / len(approve) if approve else 0.0
        )

        approved = (
            approval_rate >= self.consensus_threshold
            and average_confidence >= MIN_APPROVE_CONFIDENCE
        )
        proposal.status = ProposalStatus.APPROVED if approved else ProposalStatus.REJECTED

        result = ConsensusResult(
            proposal_id=proposal_id,
            approved=approved,
            total_votes=len(votes),
            approve_votes=len(approve),
            reject_votes=len(reject),
            abstain_votes=len(abstain),
            approval_rate=approval_rate,
            average_confidence=average_confidence,
            reasons=[f"{v.agent_id}: {v.reason}" for v in votes],
        )

        log.info(
            "Consensus reached",
            proposal_id=proposal_id,
            approved=approved,
            approval_rate=round(approval_rate, 3),
            average_confidence=round(average_confidence, 1),
            votes=len(votes),
        )

        self.broadcast(
            CONSENSUS_ENGINE,
            MessageType.DECISION,
            {"proposal": proposal.model_dump(mode="json"), "result": result.model_dump(mode="json")},
            topic=Topic.TRADE_DECISION,
        )
        return result

    def mark_executed(self, proposal_id: str) -> bool:
        """Move an approved proposal to executed.

        Returns:
            True if the transition happened.
        """
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.APPROVED:
            return False
        proposal.status = ProposalStatus.EXECUTED
        return True

    def set_consensus_threshold(self, threshold: float) -> None:
        """Set the approval-rate gate, clamped to [0.5, 1.0]."""
        self.consensus_threshold = max(MIN_THRESHOLD, min(MAX_THRESHOLD, float(threshold)))

    def set_min_votes_required(self, min_votes: int) -> None:
        """Set the auto-evaluation quorum, at least 1."""
        self.min_votes_required = max(1, int(min_votes))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_messages(
        self,
        *,
        message_type: MessageType | None = None,
        sender: str | None = None,
        topic: Topic | None = None,
        limit: int = 100,
    ) -> list[Message]:
        """Filter history, newest first."""
        messages = [
            m
            for m in reversed(self._history)
            if (message_type is None or m.type == message_type)
            and (sender is None or m.sender == sender)
            and (topic is None or m.topic == topic)
        ]
        return messages[:limit]

    def get_thread(self, root_id: str) -> list[Message]:
        """Root message plus all transitive replies, chronological."""
        order = {m.id: i for i, m in enumerate(self._history)}
        by_id = {m.id: m for m in self._history}
        children: dict[str, list[Message]] = defaultdict(list)
        for m in self._history:
            if m.reply_to is not None:
                children[m.reply_to].append(m)

        thread: list[Message] = []
        seen: set[str] = set()

        def walk(message_id: str) -> None:
            if message_id in seen:
                return
            seen.add(message_id)
            if message_id in by_id:
                thread.append(by_id[message_id])
            for child in children.get(message_id, ()):
                walk(child.id)

        walk(root_id)
        thread.sort(key=lambda m: (m.timestamp, order[m.id]))
        return thread

    def get_proposal(self, proposal_id: str) -> TradeProposal | None:
        """Copy of a proposal, or None."""
        proposal = self._proposals.get(proposal_id)
        return proposal.model_copy(deep=True) if proposal else None

    def get_pending_proposals(self) -> list[TradeProposal]:
        """Copies of all pending proposals."""
        return [
            p.model_copy(deep=True)
            for p in self._proposals.values()
            if p.status == ProposalStatus.PENDING
        ]

    def clear_old_proposals(self, max_age: timedelta = DEFAULT_PROPOSAL_MAX_AGE) -> int:
        """Purge proposals older than ``max_age``.

        Returns:
            Number of proposals removed.
        """
        cutoff = utc_now() - max_age
        stale = [pid for pid, p in self._proposals.items() if p.timestamp < cutoff]
        for pid in stale:
            del self._proposals[pid]
        if stale:
            log.info("Old proposals purged", count=len(stale))
        return len(stale)

    @property
    def history_size(self) -> int:
        """Number of messages currently retained."""
        return len(self._history)


async def _guarded(awaitable: Awaitable[Any], message: Message) -> None:
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.error(
            "Async message handler failed",
            message_id=message.id,
            type=message.type,
            error=str(exc),
            exc_info=True,
        )
