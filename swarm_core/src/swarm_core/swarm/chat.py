"""Chat router between a human operator and the agent swarm.

Messages are routed by keyword to the agents whose capabilities match
(every agent when none does), sent over the bus as ``chat`` messages and
answered through ``response`` replies collected with a timeout.
Sessions keep the conversation history; idle sessions expire and the
least recently used are evicted beyond a cap.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from swarm_core.agents.protocol import OpinionStance
from swarm_core.bus.message_bus import MessageType, Topic
from swarm_core.common.types import Direction, new_id, utc_now
from swarm_core.config import ChatConfig

if TYPE_CHECKING:
    from collections.abc import Iterable

    from swarm_core.agents.runtime import AgentRuntime
    from swarm_core.bus.message_bus import Message, MessageBus

log = structlog.get_logger()

HUMAN_SENDER: Final[str] = "human"
GO_MIN_CONFIDENCE: Final[float] = 60.0


# ==============================================================================
# Records
# ==============================================================================
class AgentCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str
    name: str
    keywords: tuple[str, ...]
    description: str = ""


class ChatMessage(BaseModel):
    """One entry of a chat session."""

    model_config = ConfigDict(frozen=True)

    id: str  # noqa: A003
    timestamp: datetime = Field(default_factory=utc_now)
    sender: str
    sender_name: str
    text: str
    is_human: bool


class AgentReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str
    agent_name: str
    text: str


class ChatResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    responses: list[AgentReply] = Field(default_factory=list)
    targeted_agents: list[str] = Field(default_factory=list)


class AgentOpinion(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    agent_id: str
    agent_name: str
    opinion: OpinionStance
    confidence: float
    reason: str = ""


class OpinionPoll(BaseModel):
    """Aggregated answers to a trade-opinion question.

    ``consensus`` is ``go`` when approvals outnumber rejections and the
    average confidence is at least 60, ``no-go`` when rejections outnumber
    approvals, ``split`` otherwise.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    direction: Direction
    consensus: Literal["go", "no-go", "split"]
    opinions: list[AgentOpinion] = Field(default_factory=list)
    average_confidence: float = 0.0


class _Session:
    __slots__ = ("messages", "last_active")

    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []
        self.last_active = time.monotonic()


# ==============================================================================
# Chat Router
# ==============================================================================
class SwarmChat:
    """Routes operator messages to agents and collects their answers."""

    def __init__(
        self,
        bus: MessageBus,
        runtimes: Iterable[AgentRuntime],
        config: ChatConfig | None = None,
    ) -> None:
        self.bus = bus
        self.config = config or ChatConfig()
        self.runtimes: dict[str, AgentRuntime] = {r.agent_id: r for r in runtimes}
        self.capabilities: list[AgentCapability] = [
            AgentCapability(
                agent_id=r.agent_id,
                name=r.name,
                keywords=tuple(k.lower() for k in getattr(r.agent, "keywords", ())),
                description=getattr(r.agent, "description", ""),
            )
            for r in self.runtimes.values()
        ]
        self._sessions: OrderedDict[str, _Session] = OrderedDict()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def route(self, text: str) -> list[str]:
        """Agent ids whose keywords occur in ``text``; all agents when none."""
        lowered = text.lower()
        matched = [c.agent_id for c in self.capabilities if any(k in lowered for k in c.keywords)]
        return matched or [c.agent_id for c in self.capabilities]

    async def chat(self, text: str, session_id: str | None = None) -> ChatResult:
        """Send ``text`` to the matching agents and wait for their replies.

        Agents that do not answer within the response timeout are left out
        of ``responses``.
        """
        session_id = session_id or new_id("chat")
        session = self._session(session_id)
        session.messages.append(
            ChatMessage(id=new_id("cm"), sender=HUMAN_SENDER, sender_name="You", text=text, is_human=True)
        )

        targets = self.route(text)
        collector = self.bus.reply_collector(len(targets))
        outgoing = self.bus.send(
            HUMAN_SENDER,
            MessageType.CHAT,
            {"text": text, "session_id": session_id},
            recipients=targets,
            topic=Topic.CHAT,
        )
        replies = await collector.wait(outgoing.id, self.config.response_timeout_seconds)

        responses = [self._to_reply(m) for m in replies if m.sender in targets]
        for reply in responses:
            session.messages.append(
                ChatMessage(
                    id=new_id("cm"),
                    sender=reply.agent_id,
                    sender_name=reply.agent_name,
                    text=reply.text,
                    is_human=False,
                )
            )
        session.last_active = time.monotonic()

        if len(responses) < len(targets):
            log.info(
                "Some agents did not answer in time",
                session_id=session_id,
                expected=len(targets),
                received=len(responses),
            )
        return ChatResult(session_id=session_id, responses=responses, targeted_agents=targets)

    def _to_reply(self, message: Message) -> AgentReply:
        runtime = self.runtimes.get(message.sender)
        default_name = runtime.name if runtime is not None else message.sender
        return AgentReply(
            agent_id=message.sender,
            agent_name=str(message.payload.get("agent_name", default_name)),
            text=str(message.payload.get("text", "")),
        )

    async def ask_for_trade_opinion(self, direction: Direction, context: str | None = None) -> OpinionPoll:
        """Poll every agent on a hypothetical trade."""
        direction = Direction(direction)
        collector = self.bus.reply_collector(len(self.runtimes))
        outgoing = self.bus.send(
            HUMAN_SENDER,
            MessageType.QUESTION,
            {"direction": direction.value, "context": context},
            recipients=list(self.runtimes),
            topic=Topic.TRADE_OPINION,
        )
        replies = await collector.wait(outgoing.id, self.config.opinion_timeout_seconds)

        opinions: list[AgentOpinion] = []
        for message in replies:
            payload = message.payload
            opinions.append(
                AgentOpinion(
                    agent_id=message.sender,
                    agent_name=str(payload.get("agent_name", message.sender)),
                    opinion=OpinionStance(payload.get("opinion", OpinionStance.NEUTRAL)),
                    confidence=float(payload.get("confidence", 50.0)),
                    reason=str(payload.get("reason", "")),
                )
            )

        approvals = sum(1 for o in opinions if o.opinion == OpinionStance.APPROVE)
        rejections = sum(1 for o in opinions if o.opinion == OpinionStance.REJECT)
        average = sum(o.confidence for o in opinions) / len(opinions) if opinions else 0.0
        if approvals > rejections and average >= GO_MIN_CONFIDENCE:
            consensus = "go"
        elif rejections > approvals:
            consensus = "no-go"
        else:
            consensus = "split"

        log.info(
            "Trade opinion poll",
            direction=direction.value,
            consensus=consensus,
            approvals=approvals,
            rejections=rejections,
            average_confidence=round(average, 1),
        )
        return OpinionPoll(direction=direction, consensus=consensus, opinions=opinions, average_confidence=average)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def _evict(self) -> None:
        cutoff = time.monotonic() - self.config.session_ttl_seconds
        expired = [sid for sid, s in self._sessions.items() if s.last_active < cutoff]
        for sid in expired:
            del self._sessions[sid]
        while len(self._sessions) > self.config.max_sessions:
            self._sessions.popitem(last=False)

    def _session(self, session_id: str) -> _Session:
        self._evict()
        session = self._sessions.get(session_id)
        if session is None:
            session = _Session()
            self._sessions[session_id] = session
            self._evict()
        else:
            session.last_active = time.monotonic()
        self._sessions.move_to_end(session_id)
        return session

    def get_session_history(self, session_id: str, limit: int = 50) -> list[ChatMessage]:
        session = self._sessions.get(session_id)
        if session is None or limit <= 0:
            return []
        return session.messages[-limit:]

    def clear_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get_swarm_summary(self) -> dict[str, Any]:
        """Agents with their status, chat keywords and description."""
        return {
            "agents": [
                {
                    **self.runtimes[c.agent_id].to_dict(),
                    "keywords": list(c.keywords),
                    "description": c.description,
                }
                for c in self.capabilities
            ],
            "sessions": self.session_count,
        }
