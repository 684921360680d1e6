"""Swarm orchestration: coordinator and chat router.

Example:
    ```python
    from swarm_core.bus import MessageBus
    from swarm_core.config import SwarmConfig
    from swarm_core.swarm import SwarmChat, SwarmCoordinator

    config = SwarmConfig()
    bus = MessageBus(**config.bus.model_dump())
    swarm = SwarmCoordinator(config, bus)
    await swarm.initialize()
    chat = SwarmChat(bus, swarm.runtimes.values(), config.chat)
    result = await chat.chat("What is the risk exposure?")
    ```
"""

from swarm_core.swarm.chat import (
    AgentCapability,
    AgentOpinion,
    AgentReply,
    ChatMessage,
    ChatResult,
    OpinionPoll,
    SwarmChat,
)
from swarm_core.swarm.coordinator import AgentStatusView, SwarmCoordinator, SwarmStatus

__all__ = [
    "AgentCapability",
    "AgentOpinion",
    "AgentReply",
    "AgentStatusView",
    "ChatMessage",
    "ChatResult",
    "OpinionPoll",
    "SwarmChat",
    "SwarmCoordinator",
    "SwarmStatus",
]
