"""LLM backends for agent chat responses.

The swarm never depends on an LLM being available: every agent has a
deterministic rule-based answer, and the runtime only prefers the AI text
when a backend is enabled and returns something.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict

log = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = "You are a helpful trading assistant."


class AIRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AIMessage(BaseModel):
    """One chat-completion message."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: AIRole
    content: str


@runtime_checkable
class AIBackend(Protocol):
    """Minimal LLM interface."""

    def is_enabled(self) -> bool:
        """True when the backend is configured and switched on."""
        ...

    async def chat(self, messages: list[AIMessage], system_prompt: str | None = None) -> str | None:
        """Return the completion text, or None when unavailable."""
        ...


class DisabledAIBackend:
    """Backend used when no LLM is configured."""

    def is_enabled(self) -> bool:
        return False

    async def chat(self, messages: list[AIMessage], system_prompt: str | None = None) -> str | None:
        return None


class OpenAIBackend:
    """OpenAI chat-completions backend.

    Attributes:
        model: Chat model name.
        max_tokens: Completion token cap.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        temperature: float = 0.7,
        enabled: bool = True,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.enabled = enabled
        self._client: Any = None

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def chat(self, messages: list[AIMessage], system_prompt: str | None = None) -> str | None:
        """Send a chat completion request.

        API failures are logged and reported as None so that callers fall
        back to their deterministic answer.
        """
        if not self.is_enabled():
            return None

        from openai import OpenAIError

        payload = [{"role": AIRole.SYSTEM.value, "content": system_prompt or DEFAULT_SYSTEM_PROMPT}]
        payload.extend({"role": m.role, "content": m.content} for m in messages)

        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=payload,
            )
        except OpenAIError as exc:
            log.warning("AI request failed", model=self.model, error=str(exc))
            return None

        content = response.choices[0].message.content if response.choices else None
        return content or None


def agent_system_prompt(agent_name: str, agent_role: str) -> str:
    """System prompt giving an agent its persona."""
    return (
        f"You are {agent_name}, a {agent_role} in a Bitcoin trading swarm.\n"
        "You analyze data and provide insights based on your specialty.\n"
        "Be concise, direct, and use trading terminology appropriately.\n"
        "Format responses in markdown for readability."
    )


async def generate_agent_response(
    backend: AIBackend,
    agent_name: str,
    agent_role: str,
    query: str,
    context: dict[str, Any],
) -> str | None:
    """Ask the backend to answer ``query`` as the given agent."""
    if not backend.is_enabled():
        return None

    prompt = (
        f"Query: {query}\n\n"
        f"Your current data:\n{json.dumps(context, indent=2, default=str)}\n\n"
        f"Provide your analysis as {agent_name}."
    )
    return await backend.chat(
        [AIMessage(role=AIRole.USER, content=prompt)],
        agent_system_prompt(agent_name, agent_role),
    )
