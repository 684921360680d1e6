"""Persistence layer: key-value backends and the swarm repository.

Example:
    ```python
    from swarm_core.persistence import SwarmRepository, create_store

    repository = SwarmRepository(create_store(use_redis=False))
    repository.save_pending_signals(signals)
    ```
"""

from swarm_core.persistence.repository import SwarmRepository, SwarmState
from swarm_core.persistence.store import (
    MemoryStore,
    RedisStore,
    StateStore,
    StoreConnectionError,
    create_store,
)

__all__ = [
    "MemoryStore",
    "RedisStore",
    "StateStore",
    "StoreConnectionError",
    "SwarmRepository",
    "SwarmState",
    "create_store",
]
