"""Swarm agents and the runtime that schedules them.

Every agent is a plain class satisfying the ``Agent`` protocol; optional
capabilities (voting, opinions, chat reports, extra state) are discovered
by ``AgentRuntime`` through runtime-checkable protocols.

Architecture:
    AgentRuntime --tick--> Agent.execute --publish--> MessageBus
                                                    |
    SwarmCoordinator <--subscribe-------------------+

Quick Start:
    ```python
    from swarm_core.agents import AgentRuntime, ResearcherAgent
    from swarm_core.bus import MessageBus
    from swarm_core.services import StaticNewsSource

    bus = MessageBus()
    agent = ResearcherAgent("researcher", "Market Researcher", bus, StaticNewsSource())
    runtime = AgentRuntime(agent, bus, agent.settings.agent_config(agent.agent_id, agent.name))
    await runtime.tick()
    ```
"""

from swarm_core.agents.execution import ExecutionAgent, ExecutionSettings
from swarm_core.agents.external_signal import ExternalSignalAgent, ExternalSignalSettings
from swarm_core.agents.market_analyst import MarketAnalystAgent, MarketAnalystSettings
from swarm_core.agents.protocol import (
    Agent,
    AgentConfig,
    AgentMetrics,
    AgentSettings,
    AgentState,
    AgentStatus,
    AgentType,
    OpinionStance,
    ProposalAssessment,
    TradeOpinion,
)
from swarm_core.agents.researcher import ResearcherAgent, ResearcherSettings
from swarm_core.agents.risk_manager import RiskManagerAgent, RiskManagerSettings, RiskParameters
from swarm_core.agents.runtime import AgentRuntime


__all__ = [
    "Agent",
    "AgentConfig",
    "AgentMetrics",
    "AgentRuntime",
    "AgentSettings",
    "AgentState",
    "AgentStatus",
    "AgentType",
    "ExecutionAgent",
    "ExecutionSettings",
    "ExternalSignalAgent",
    "ExternalSignalSettings",
    "MarketAnalystAgent",
    "MarketAnalystSettings",
    "OpinionStance",
    "ProposalAssessment",
    "ResearcherAgent",
    "ResearcherSettings",
    "RiskManagerAgent",
    "RiskManagerSettings",
    "RiskParameters",
    "TradeOpinion",
]
