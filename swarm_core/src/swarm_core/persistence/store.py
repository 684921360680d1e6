"""Key-value backends under the swarm repository.

The repository writes a handful of well-known keys (``SWARM:STATE``,
``AGENT:<id>:STATE``, ``EXECUTION:PENDING_SIGNALS``, ``EXECUTION:TRADES``)
as JSON documents. Backends only need raw string access plus key listing;
JSON encoding of records is shared.

Redis keys are namespaced (``btc-swarm:AGENT:risk-manager:STATE``) so several
swarms can share one database. The in-memory store keeps bare keys since
it is private to the process.
"""

from __future__ import annotations

import fnmatch
import time
from typing import Protocol, TypeVar, runtime_checkable

import redis
import structlog
from pydantic import BaseModel, ValidationError

log = structlog.get_logger()

R = TypeVar("R", bound=BaseModel)

DEFAULT_NAMESPACE = "btc-swarm"


class StoreConnectionError(Exception):
    """The configured backend did not answer."""


# ==============================================================================
# Backend Protocol
# ==============================================================================
@runtime_checkable
class StateStore(Protocol):
    """What ``SwarmRepository`` needs from a backend."""

    def save(self, key: str, model: BaseModel, ttl_seconds: int | None = None) -> None: ...

    def load(self, key: str, model_cls: type[R]) -> R | None: ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...  # noqa: A003

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def keys(self, pattern: str = "*") -> list[str]:
        """Stored keys matching a glob, without any namespace."""
        ...


class _JsonRecords:
    """Record encoding on top of a backend's ``get``/``set``."""

    def save(self, key: str, model: BaseModel, ttl_seconds: int | None = None) -> None:
        self.set(key, model.model_dump_json(), ttl_seconds)  # type: ignore[attr-defined]

    def load(self, key: str, model_cls: type[R]) -> R | None:
        """Validated record, or None when missing or corrupt."""
        raw = self.get(key)  # type: ignore[attr-defined]
        if raw is None:
            return None
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError as exc:
            log.error("Stored record is unreadable", key=key, record=model_cls.__name__, error=str(exc))
            return None


# ==============================================================================
# Redis
# ==============================================================================
class RedisStore(_JsonRecords):
    """Swarm records in Redis, one string per key under ``namespace``.

    Attributes:
        redis_url: Connection URL.
        namespace: Key prefix; empty for bare keys.
        client: The ``redis.Redis`` client (responses decoded to str).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        namespace: str = DEFAULT_NAMESPACE,
        connection_timeout: float = 5.0,
        socket_timeout: float = 5.0,
    ) -> None:
        """Open the client and PING it.

        Raises:
            StoreConnectionError: Redis refused or timed out.
        """
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connection_timeout,
            socket_timeout=socket_timeout,
        )
        try:
            self.client.ping()
        except redis.RedisError as exc:
            raise StoreConnectionError(f"Redis at {redis_url} is unreachable: {exc}") from exc
        log.info("Swarm store connected", backend="redis", url=redis_url, namespace=namespace)

    def _qualify(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _unqualify(self, key: str) -> str:
        prefix = f"{self.namespace}:" if self.namespace else ""
        return key[len(prefix):]

    def get(self, key: str) -> str | None:
        return self.client.get(self._qualify(key))

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:  # noqa: A003
        # SET with EX replaces any earlier TTL; no EX clears it.
        self.client.set(self._qualify(key), value, ex=ttl_seconds if ttl_seconds and ttl_seconds > 0 else None)

    def delete(self, key: str) -> None:
        self.client.delete(self._qualify(key))

    def exists(self, key: str) -> bool:
        return self.client.exists(self._qualify(key)) > 0

    def keys(self, pattern: str = "*") -> list[str]:
        """Keys in this namespace, found with SCAN."""
        return sorted(self._unqualify(k) for k in self.client.scan_iter(match=self._qualify(pattern)))

    def clear(self) -> None:
        """Delete every key in this namespace, leaving other tenants alone."""
        stale = list(self.client.scan_iter(match=self._qualify("*")))
        if stale:
            self.client.delete(*stale)
        log.info("Swarm store cleared", backend="redis", keys=len(stale))

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            log.warning("Redis health check failed", url=self.redis_url, error=str(exc))
            return False


# ==============================================================================
# In-process
# ==============================================================================
class MemoryStore(_JsonRecords):
    """Dict-backed store for paper runs and tests; nothing survives a restart.

    Expiry is checked on access against ``time.monotonic``.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        log.warning("Swarm store is in memory; state will not survive a restart")

    def _read(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and time.monotonic() >= deadline:
            del self._entries[key]
            return None
        return value

    def get(self, key: str) -> str | None:
        return self._read(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:  # noqa: A003
        deadline = time.monotonic() + ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._entries[key] = (value, deadline)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        return self._read(key) is not None

    def keys(self, pattern: str = "*") -> list[str]:
        return sorted(k for k in list(self._entries) if fnmatch.fnmatchcase(k, pattern) and self._read(k) is not None)

    def clear(self) -> None:
        self._entries.clear()

    def health_check(self) -> bool:
        return True


def create_store(
    redis_url: str = "redis://localhost:6379/0",
    use_redis: bool = True,
    fallback_to_memory: bool = True,
    namespace: str = DEFAULT_NAMESPACE,
) -> RedisStore | MemoryStore:
    """Backend for the swarm repository.

    With ``use_redis`` the Redis store is tried first; an unreachable
    server either degrades to memory (paper trading keeps working, state is
    lost on restart) or raises when ``fallback_to_memory`` is off.

    Raises:
        StoreConnectionError: Redis is required and unreachable.
    """
    if not use_redis:
        return MemoryStore()
    try:
        return RedisStore(redis_url=redis_url, namespace=namespace)
    except StoreConnectionError:
        if not fallback_to_memory:
            raise
        log.warning("Redis unreachable, swarm state falls back to memory", url=redis_url)
        return MemoryStore()
