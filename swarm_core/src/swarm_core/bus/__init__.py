"""Message bus for inter-agent communication and proposal consensus.

Example:
    ```python
    from swarm_core.bus import MessageBus, MessageType, Topic, Vote, VoteDecision

    bus = MessageBus(consensus_threshold=0.6, min_votes_required=3)
    proposal = bus.create_proposal("market-analyst", Direction.LONG, 75, "Breakout")
    bus.vote(proposal.id, Vote(agent_id="risk-manager", decision=VoteDecision.APPROVE,
                               confidence=80, reason="Within limits"))
    ```
"""

from swarm_core.bus.message_bus import (
    CONSENSUS_ENGINE,
    REQUEST_VOTE,
    ConsensusResult,
    Message,
    MessageBus,
    MessageType,
    ProposalStatus,
    ReplyCollector,
    Topic,
    TradeProposal,
    Vote,
    VoteDecision,
)

__all__ = [
    "CONSENSUS_ENGINE",
    "REQUEST_VOTE",
    "ConsensusResult",
    "Message",
    "MessageBus",
    "MessageType",
    "ProposalStatus",
    "ReplyCollector",
    "Topic",
    "TradeProposal",
    "Vote",
    "VoteDecision",
]
