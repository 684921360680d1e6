"""Typed swarm configuration.

Hydra composes ``conf/main.yaml``; the ``swarm`` node is validated into
``SwarmConfig`` so the rest of the code never touches ``DictConfig``.
Agent-specific settings models live next to their agents and are only
composed here.

Example:
    ```python
    cfg = SwarmConfig.model_validate(OmegaConf.to_container(hydra_cfg.swarm, resolve=True))
    bus = MessageBus(**cfg.bus.model_dump())
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from swarm_core.agents.execution import ExecutionSettings
from swarm_core.agents.external_signal import ExternalSignalSettings
from swarm_core.agents.market_analyst import MarketAnalystSettings
from swarm_core.agents.researcher import ResearcherSettings
from swarm_core.agents.risk_manager import RiskManagerSettings
from swarm_core.services.ai import DisabledAIBackend, OpenAIBackend
from swarm_core.services.exchange import CCXTExchange, ExchangeCredentials, PaperExchange
from swarm_core.services.feeds import FEAR_GREED_URL

if TYPE_CHECKING:
    from swarm_core.services.ai import AIBackend
    from swarm_core.services.exchange import ExchangeClient


class _Config(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BusConfig(_Config):
    consensus_threshold: float = Field(default=0.6, ge=0.5, le=1.0)
    min_votes_required: int = Field(default=3, ge=1)
    max_history: int = Field(default=1000, ge=1)


class ChatConfig(_Config):
    """Chat router limits.

    Attributes:
        response_timeout_seconds: Wait for agent chat replies.
        opinion_timeout_seconds: Wait for trade-opinion replies.
        session_ttl_seconds: Idle time after which a session is evicted.
        max_sessions: Least recently used sessions beyond this are evicted.
    """

    response_timeout_seconds: float = Field(default=10.0, gt=0)
    opinion_timeout_seconds: float = Field(default=15.0, gt=0)
    session_ttl_seconds: float = Field(default=3600.0, gt=0)
    max_sessions: int = Field(default=100, ge=1)


class ExchangeConfig(_Config):
    """Exchange selection and credentials.

    ``paper`` runs against the in-memory ``PaperExchange``; ``ccxt`` uses
    the ccxt adapter for ``exchange_id``. Empty ``api_key`` means public
    mode.
    """

    mode: Literal["paper", "ccxt"] = "paper"
    exchange_id: str = "bitmex"
    symbol: str = "BTC/USD:BTC"
    sandbox: bool = True
    api_key: str = ""
    api_secret: SecretStr = SecretStr("")
    passphrase: SecretStr = SecretStr("")
    max_retries: int = Field(default=3, ge=1)
    initial_balance: int = Field(default=1_000_000, gt=0)
    start_price: float = Field(default=60_000.0, gt=0)

    def credentials(self) -> ExchangeCredentials | None:
        if not self.api_key:
            return None
        return ExchangeCredentials(
            api_key=self.api_key,
            api_secret=self.api_secret,
            passphrase=self.passphrase if self.passphrase.get_secret_value() else None,
            testnet=self.sandbox,
        )

    def build(self, credentials: ExchangeCredentials | None = None) -> ExchangeClient:
        """Exchange client, authenticated when ``credentials`` is given."""
        if self.mode == "ccxt":
            return CCXTExchange(
                exchange_id=self.exchange_id,
                symbol=self.symbol,
                credentials=credentials,
                sandbox=self.sandbox,
                max_retries=self.max_retries,
            )
        return PaperExchange(
            credentials=credentials,
            initial_balance=self.initial_balance,
            start_price=self.start_price,
        )


class AIConfig(_Config):
    enabled: bool = False
    api_key: str = ""
    model: str = "gpt-4o-mini"
    max_tokens: int = Field(default=1024, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)

    def build(self) -> AIBackend:
        if not (self.enabled and self.api_key):
            return DisabledAIBackend()
        return OpenAIBackend(
            api_key=self.api_key,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


class FeedsConfig(_Config):
    fear_greed_url: str = FEAR_GREED_URL
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1)


class SignalSourcesConfig(_Config):
    """Which agents may enqueue execution signals."""

    use_market_analyst: bool = True
    use_external_signals: bool = True


class SwarmConfig(_Config):
    """Root configuration of the swarm."""

    auto_start: bool = False
    market_analyst: MarketAnalystSettings = Field(default_factory=MarketAnalystSettings)
    risk_manager: RiskManagerSettings = Field(default_factory=RiskManagerSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    researcher: ResearcherSettings = Field(default_factory=ResearcherSettings)
    external_signal: ExternalSignalSettings = Field(default_factory=ExternalSignalSettings)
    signal_sources: SignalSourcesConfig = Field(default_factory=SignalSourcesConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    feeds: FeedsConfig = Field(default_factory=FeedsConfig)

    def public_view(self) -> dict[str, Any]:
        """Serializable config without secrets, persisted with the swarm state."""
        return self.model_dump(mode="json", exclude={"exchange": {"api_key"}, "ai": {"api_key"}})
