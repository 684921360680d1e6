"""Tests for the persistence layer.

Tests cover:
- MemoryStore raw values, models, TTL and key listing
- Store factory fallback
- SwarmRepository round-trips for every record type
- Best-effort behaviour on a failing backend
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import BaseModel

from swarm_core.agents.protocol import AgentConfig, AgentMetrics, AgentState, AgentStatus
from swarm_core.common.types import Direction, ExecutedTrade, TradeSignal, TradeStatus, utc_now
from swarm_core.persistence import (
    MemoryStore,
    StateStore,
    StoreConnectionError,
    SwarmRepository,
    SwarmState,
    create_store,
)
from swarm_core.persistence import store as store_module


# ==============================================================================
# Fixtures
# ==============================================================================
class Sample(BaseModel):
    name: str
    value: int


class BrokenStore(MemoryStore):
    """Store whose every call fails like a dropped Redis connection."""

    def get(self, key: str) -> str | None:
        raise ConnectionError("store down")

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:  # noqa: A003
        raise ConnectionError("store down")


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def repository(store: MemoryStore) -> SwarmRepository:
    return SwarmRepository(store)


def _trade(position_id: str, minutes_ago: int = 0) -> ExecutedTrade:
    return ExecutedTrade(
        signal_id="sig-1",
        position_id=position_id,
        direction=Direction.LONG,
        entry_price=60_000.0,
        margin=10_000,
        leverage=5,
        executed_at=utc_now() - timedelta(minutes=minutes_ago),
    )


# ==============================================================================
# Store Tests
# ==============================================================================
class TestMemoryStore:
    """Tests for the in-process backend."""

    def test_satisfies_protocol(self, store: MemoryStore) -> None:
        """MemoryStore is a StateStore."""
        assert isinstance(store, StateStore)

    def test_raw_values(self, store: MemoryStore) -> None:
        """Set, get, exists and delete on strings."""
        store.set("k", "v")

        assert store.get("k") == "v"
        assert store.exists("k")
        store.delete("k")
        assert store.get("k") is None
        assert not store.exists("k")

    def test_model_round_trip(self, store: MemoryStore) -> None:
        """Models are stored as JSON and validated on load."""
        store.save("sample", Sample(name="btc", value=42))

        assert store.load("sample", Sample) == Sample(name="btc", value=42)
        assert store.load("missing", Sample) is None

    def test_unreadable_model_is_none(self, store: MemoryStore) -> None:
        """Corrupt JSON loads as None instead of raising."""
        store.set("sample", "{not json")

        assert store.load("sample", Sample) is None

    def test_ttl_expires(self, store: MemoryStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """Entries vanish once their TTL has elapsed."""
        now = [1000.0]
        monkeypatch.setattr(store_module.time, "monotonic", lambda: now[0])
        store.set("k", "v", ttl_seconds=30)

        now[0] += 29
        assert store.get("k") == "v"
        now[0] += 2
        assert store.get("k") is None

    def test_keys_match_glob(self, store: MemoryStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """Listing filters by glob and skips expired entries."""
        now = [1000.0]
        monkeypatch.setattr(store_module.time, "monotonic", lambda: now[0])
        store.set("AGENT:risk-manager:STATE", "{}")
        store.set("AGENT:execution:STATE", "{}", ttl_seconds=5)
        store.set("SWARM:STATE", "{}")

        assert store.keys("AGENT:*") == ["AGENT:execution:STATE", "AGENT:risk-manager:STATE"]
        now[0] += 10
        assert store.keys("AGENT:*") == ["AGENT:risk-manager:STATE"]
        assert len(store.keys()) == 2

    def test_clear(self, store: MemoryStore) -> None:
        """Clear drops all keys."""
        store.set("a", "1")
        store.clear()

        assert not store.exists("a")
        assert store.health_check()


class TestCreateStore:
    """Tests for the store factory."""

    def test_memory_when_redis_disabled(self) -> None:
        """use_redis=False always yields a MemoryStore."""
        assert isinstance(create_store(use_redis=False), MemoryStore)

    def test_falls_back_when_redis_unreachable(self) -> None:
        """An unreachable Redis falls back to memory."""
        assert isinstance(create_store(redis_url="redis://127.0.0.1:1/0"), MemoryStore)

    def test_raises_without_fallback(self) -> None:
        """Without fallback the connection error propagates."""
        with pytest.raises(StoreConnectionError):
            create_store(redis_url="redis://127.0.0.1:1/0", fallback_to_memory=False)


# ==============================================================================
# Repository Tests
# ==============================================================================
class TestSwarmRepository:
    """Tests for typed record persistence."""

    def test_agent_state_round_trip(self, repository: SwarmRepository) -> None:
        """Agent snapshots are keyed by agent id."""
        state = AgentState(
            agent_id="risk-manager",
            enabled=False,
            status=AgentStatus.IDLE,
            config=AgentConfig(agent_id="risk-manager", name="Risk Manager", interval_seconds=30),
            metrics=AgentMetrics(success_count=4, error_count=1),
            agent_state={"daily_start_balance": 1_000_000},
        )

        assert repository.save_agent_state(state)
        loaded = repository.load_agent_state("risk-manager")

        assert loaded is not None
        assert loaded.enabled is False
        assert loaded.metrics.total_runs == 5
        assert loaded.agent_state == {"daily_start_balance": 1_000_000}
        assert repository.load_agent_state("execution") is None

    def test_saved_agent_ids(self, repository: SwarmRepository) -> None:
        """Agents with a snapshot are listed by id; other records are not."""
        for agent_id in ("risk-manager", "execution"):
            repository.save_agent_state(
                AgentState(
                    agent_id=agent_id,
                    enabled=True,
                    status=AgentStatus.IDLE,
                    config=AgentConfig(agent_id=agent_id, name=agent_id),
                    metrics=AgentMetrics(),
                )
            )
        repository.save_swarm_state(SwarmState(running=True))

        assert repository.saved_agent_ids() == ["execution", "risk-manager"]

    def test_swarm_state_round_trip(self, repository: SwarmRepository) -> None:
        """The swarm on/off flag survives a restart."""
        repository.save_swarm_state(SwarmState(running=True, auto_execute=True, last_started_at=utc_now()))

        loaded = repository.load_swarm_state()

        assert loaded is not None
        assert loaded.running and loaded.auto_execute

    def test_pending_signals_replace(self, repository: SwarmRepository) -> None:
        """Saving the queue replaces the previous one."""
        first = TradeSignal(direction=Direction.LONG, confidence=80, source="market-analyst")
        second = TradeSignal(direction=Direction.SHORT, confidence=75, source="external-signal")

        repository.save_pending_signals([first])
        repository.save_pending_signals([second])

        assert repository.load_pending_signals() == [second]

    def test_trades_upsert_newest_first(self, repository: SwarmRepository) -> None:
        """Trades are upserted by id and listed newest first."""
        older, newer = _trade("pos-1", minutes_ago=10), _trade("pos-2")
        repository.save_executed_trade(older)
        repository.save_executed_trade(newer)
        repository.save_executed_trade(older.model_copy(update={"status": TradeStatus.CLOSED}))

        trades = repository.load_executed_trades()

        assert [t.position_id for t in trades] == ["pos-2", "pos-1"]
        assert trades[1].status == TradeStatus.CLOSED
        assert len(repository.load_executed_trades(limit=1)) == 1

    def test_empty_reads(self, repository: SwarmRepository) -> None:
        """Nothing saved reads as None or empty."""
        assert repository.load_swarm_state() is None
        assert repository.load_pending_signals() == []
        assert repository.load_executed_trades() == []

    def test_failing_backend_is_best_effort(self) -> None:
        """Backend errors never escape the repository."""
        repository = SwarmRepository(BrokenStore())

        assert repository.save_swarm_state(SwarmState()) is False
        assert repository.save_pending_signals([]) is False
        assert repository.save_executed_trade(_trade("pos-1")) is False
        assert repository.load_swarm_state() is None
        assert repository.load_pending_signals() == []
        assert repository.load_executed_trades() == []
