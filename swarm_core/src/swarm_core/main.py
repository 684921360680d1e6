"""BTC-Swarm Application Entrypoint.

Bootstraps the swarm with Hydra. Runtime parameters live in
``conf/main.yaml``; secrets are read from environment variables there.

Usage:
    # Paper exchange, public data, auto-execute off
    python -m swarm_core.main

    # Authenticated ccxt exchange, JSON logs
    BTC_SWARM_API_KEY=... BTC_SWARM_API_SECRET=... \\
        python -m swarm_core.main env=prod swarm.exchange.mode=ccxt

    # Faster analyst ticks
    python -m swarm_core.main swarm.market_analyst.interval_seconds=60
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

import hydra
import structlog
from hydra.utils import instantiate
from omegaconf import OmegaConf

from swarm_core.bus.message_bus import MessageBus
from swarm_core.config import SwarmConfig
from swarm_core.persistence.repository import SwarmRepository
from swarm_core.swarm.coordinator import SwarmCoordinator

if TYPE_CHECKING:
    from omegaconf import DictConfig

    from swarm_core.persistence.store import StateStore

# ==============================================================================
# Constants
# ==============================================================================
APP_NAME: str = "BTC-Swarm"
APP_VERSION: str = "0.1.0"


# ==============================================================================
# Logging Configuration
# ==============================================================================
def configure_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog.

    Args:
        json_output: If True, output JSON. If False, output human-readable logs.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# Swarm Assembly
# ==============================================================================
def build_swarm(config: SwarmConfig, store: StateStore) -> SwarmCoordinator:
    """Wire bus, repository, AI backend and coordinator."""
    bus = MessageBus(**config.bus.model_dump())
    return SwarmCoordinator(
        config,
        bus,
        repository=SwarmRepository(store),
        ai=config.ai.build(),
    )


async def run_swarm(coordinator: SwarmCoordinator) -> None:
    """Restore, connect and run until cancelled."""
    log = structlog.get_logger()
    try:
        restored = coordinator.restore_state()
        await coordinator.initialize()
        if not restored and not coordinator.running:
            coordinator.start()

        status = await coordinator.get_status()
        log.info(
            "Swarm running",
            authenticated=status.authenticated,
            auto_execute=status.auto_execute,
            agents=[a.id for a in status.agents],
        )
        await asyncio.Event().wait()
    finally:
        log.info("Shutting down swarm...")
        await coordinator.shutdown()


@hydra.main(version_base=None, config_path="conf", config_name="main")
def main(cfg: DictConfig) -> None:
    """Hydra entrypoint.

    Args:
        cfg: Resolved configuration from Hydra.
    """
    is_debug: bool = bool(cfg.get("debug", False))
    env: str = str(cfg.get("env", "dev"))
    log_level: str = "DEBUG" if is_debug else "INFO"
    json_output: bool = env != "dev"

    configure_logging(json_output=json_output, log_level=log_level)
    log = structlog.get_logger()

    log.info(
        "Initializing application",
        app=APP_NAME,
        version=APP_VERSION,
        env=env,
        debug=is_debug,
    )

    try:
        OmegaConf.resolve(cfg)
    except Exception as e:
        log.error("Configuration resolution failed", error=str(e))
        raise

    config = SwarmConfig.model_validate(OmegaConf.to_container(cfg.swarm, resolve=True))
    if is_debug:
        log.debug("Resolved configuration", config=config.public_view())

    store: StateStore = instantiate(cfg.store)
    coordinator = build_swarm(config, store)

    try:
        asyncio.run(run_swarm(coordinator))
    except KeyboardInterrupt:
        log.info("Manual Shutdown Requested")


if __name__ == "__main__":
    main()
