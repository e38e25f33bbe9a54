"""
Gatekeeper Persistence Layer

Public exports for the Redis connection, key-value backends and the
ledger/threshold/experiment stores built on them.
"""

from .connection import get_redis_client
from .storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
    build_store,
)
from .threshold_store import DEFAULT_THRESHOLDS, ThresholdStore
from .attempt_ledger import AttemptLedger
from .experiment_repository import ExperimentRepository

__all__ = [
    "get_redis_client",
    "KeyValueStore",
    "RedisKeyValueStore",
    "InMemoryKeyValueStore",
    "build_store",
    "DEFAULT_THRESHOLDS",
    "ThresholdStore",
    "AttemptLedger",
    "ExperimentRepository",
]
