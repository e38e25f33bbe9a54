"""
Gatekeeper Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- In-memory key-value store (no Redis required)
- Deterministic clock, id and random sources
- Fully wired ledger, threshold store, experiment engine and orchestrator
- Optional Redis client for backend tests

Usage:
    pytest tests/ -v -s
"""

import itertools
import os
from typing import Iterator, List

import pytest

from core.experiments import ExperimentEngine
from core.orchestrator import GatekeeperOrchestrator
from core.processors.telemetry import EventDispatcher
from core.schemas.inputs import InteractionEvent, InteractionType, SignalSnapshot
from core.sessions import TrackingSessionRegistry
from persistence.attempt_ledger import AttemptLedger
from persistence.experiment_repository import ExperimentRepository
from persistence.storage import InMemoryKeyValueStore
from persistence.threshold_store import ThresholdStore


# =============================================================================
# Deterministic Sources
# =============================================================================

class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class SequenceRandom:
    """Returns the given draws in order, cycling."""

    def __init__(self, values: List[float]) -> None:
        self._values: Iterator[float] = itertools.cycle(values)

    def __call__(self) -> float:
        return next(self._values)


def sequential_ids(prefix: str):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def make_snapshot(**overrides) -> SignalSnapshot:
    """Human-looking snapshot that triggers no rule, with overrides applied."""
    values = dict(
        movement_count=40,
        velocity_samples=[10.0, 150.0, 300.0, 20.0, 500.0],
        keystroke_count=12,
        interval_samples=[120.0, 180.0, 95.0, 240.0, 160.0],
        paste_count=0,
        click_count=3,
        gap_samples=[800.0, 1500.0, 600.0, 2400.0],
        elapsed_ms=25_000.0,
    )
    values.update(overrides)
    return SignalSnapshot(**values)


def move(x: float, y: float, ts: float) -> InteractionEvent:
    return InteractionEvent(event_type=InteractionType.POINTER_MOVE, x=x, y=y, timestamp=ts)


def key(ts: float) -> InteractionEvent:
    return InteractionEvent(event_type=InteractionType.KEY_DOWN, timestamp=ts)


def click(ts: float) -> InteractionEvent:
    return InteractionEvent(event_type=InteractionType.CLICK, timestamp=ts)


def paste(ts: float) -> InteractionEvent:
    return InteractionEvent(event_type=InteractionType.PASTE, timestamp=ts)


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def thresholds(store) -> ThresholdStore:
    return ThresholdStore(store)


@pytest.fixture
def ledger(store, thresholds, clock) -> AttemptLedger:
    return AttemptLedger(
        store,
        thresholds,
        capacity=AttemptLedger.DEFAULT_CAPACITY,
        clock=clock,
        id_factory=sequential_ids("attempt")
    )


@pytest.fixture
def repository(store) -> ExperimentRepository:
    return ExperimentRepository(store)


@pytest.fixture
def engine(repository, thresholds, clock) -> ExperimentEngine:
    """Experiment engine whose draws alternate variant, control, variant, ..."""
    return ExperimentEngine(
        repository,
        thresholds,
        random_source=SequenceRandom([0.1, 0.9]),
        clock=clock,
        id_factory=sequential_ids("exp")
    )


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def orchestrator(ledger, thresholds, engine, clock) -> GatekeeperOrchestrator:
    return GatekeeperOrchestrator(
        ledger=ledger,
        thresholds=thresholds,
        experiments=engine,
        sessions=TrackingSessionRegistry(clock=clock)
    )


# =============================================================================
# Redis Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def redis_client():
    """
    Session-scoped Redis client for backend tests.

    Skipped unless a Redis server is reachable.
    """
    import redis

    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    password = os.environ.get("REDIS_PASSWORD")

    client = redis.Redis(
        host=host,
        port=port,
        password=password,
        decode_responses=True,
        socket_timeout=1.0,
    )
    try:
        client.ping()
    except redis.RedisError:
        pytest.skip(f"Redis not available at {host}:{port}")
    yield client
    client.close()


@pytest.fixture
def clean_redis(redis_client):
    """
    Function-scoped fixture that provides a clean Redis state.
    Flushes the database after each test for isolation.
    """
    yield redis_client
    redis_client.flushdb()
