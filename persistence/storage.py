"""
Gatekeeper Key-Value Storage

Durable storage of JSON-serializable blobs under named keys, shared by the
attempt ledger, threshold store and experiment repository.

Backends:
    RedisKeyValueStore     # production; redis-py client from connection.py
    InMemoryKeyValueStore  # tests and single-process deployments

Both surface a distinguishable CapacityError when a write does not fit,
so the ledger can shrink itself instead of failing the scoring path.

Read-modify-write:
    update(key, mutator) is how callers change a blob based on its current
    contents. The mutator receives the decoded value (or None) and returns
    (new_value, result); a new_value of None writes nothing. Redis runs it
    under WATCH/MULTI/EXEC and retries on conflict, so the mutator may run
    more than once and must not have side effects.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis
from redis.exceptions import RedisError, ResponseError, WatchError

from core.exceptions import CapacityError, StorageError
from .connection import get_redis_client


logger = logging.getLogger(__name__)


# Default per-value quota
DEFAULT_MAX_VALUE_BYTES = 5 * 1024 * 1024

Mutator = Callable[[Optional[Any]], Tuple[Optional[Any], Any]]


class KeyValueStore(Protocol):
    """Get/set/delete/update of JSON-serializable values."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def update(self, key: str, mutator: Mutator, ttl: Optional[int] = None) -> Any:
        ...


def _encode(key: str, value: Any, max_value_bytes: Optional[int]) -> str:
    data = json.dumps(value)
    if max_value_bytes is not None and len(data.encode("utf-8")) > max_value_bytes:
        raise CapacityError(
            f"Value for {key} is {len(data)} bytes, quota is {max_value_bytes}"
        )
    return data


def _is_oom(error: ResponseError) -> bool:
    # Pipelined replies prefix the server message with the failing command
    return "OOM" in str(error)


# =============================================================================
# Redis Backend
# =============================================================================

class RedisKeyValueStore:
    """
    Redis-backed store.

    Redis OOM rejections (maxmemory reached) and values over the configured
    quota raise CapacityError; other Redis failures raise StorageError.
    """

    MAX_RETRIES: int = 5

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        max_value_bytes: Optional[int] = DEFAULT_MAX_VALUE_BYTES
    ) -> None:
        self.client = client or get_redis_client()
        self.max_value_bytes = max_value_bytes

    def get(self, key: str) -> Optional[Any]:
        try:
            data = self.client.get(key)
        except RedisError as e:
            logger.error(f"Failed to read {key}: {e}")
            raise StorageError(str(e)) from e
        return self._decode(key, data)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        data = _encode(key, value, self.max_value_bytes)
        try:
            if ttl:
                self.client.setex(key, ttl, data)
            else:
                self.client.set(key, data)
        except ResponseError as e:
            if _is_oom(e):
                raise CapacityError(str(e)) from e
            logger.error(f"Failed to write {key}: {e}")
            raise StorageError(str(e)) from e
        except RedisError as e:
            logger.error(f"Failed to write {key}: {e}")
            raise StorageError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as e:
            logger.warning(f"Failed to delete {key}: {e}")
            raise StorageError(str(e)) from e

    def update(self, key: str, mutator: Mutator, ttl: Optional[int] = None) -> Any:
        """
        Atomic read-modify-write of one key.

        Uses WATCH/MULTI/EXEC; a concurrent write between the read and the
        EXEC aborts the transaction and the mutator runs again on fresh data.

        Raises:
            CapacityError: new value over quota, or Redis out of memory.
            StorageError: Redis failure, or MAX_RETRIES conflicts in a row.
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                with self.client.pipeline(True) as pipe:
                    pipe.watch(key)
                    current = self._decode(key, pipe.get(key))

                    new_value, result = mutator(current)
                    if new_value is None:
                        return result
                    data = _encode(key, new_value, self.max_value_bytes)

                    pipe.multi()
                    if ttl:
                        pipe.setex(key, ttl, data)
                    else:
                        pipe.set(key, data)
                    pipe.execute()
                    return result

            except WatchError:
                logger.debug(f"Watch conflict on {key}, attempt {attempt + 1}")
                continue
            except ResponseError as e:
                if _is_oom(e):
                    raise CapacityError(str(e)) from e
                logger.error(f"Failed to update {key}: {e}")
                raise StorageError(str(e)) from e
            except RedisError as e:
                logger.error(f"Failed to update {key}: {e}")
                raise StorageError(str(e)) from e

        logger.warning(f"Max retries exceeded for {key}")
        raise StorageError(f"Too many concurrent updates to {key}")

    @staticmethod
    def _decode(key: str, data: Optional[str]) -> Optional[Any]:
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted value under {key}: {e}")
            return None


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryKeyValueStore:
    """
    Thread-safe dict-backed store.

    Values are kept JSON-encoded so callers never share mutable state with
    the store. TTLs are accepted and ignored. update() holds the lock for
    the whole read-modify-write.
    """

    def __init__(self, max_value_bytes: Optional[int] = None) -> None:
        self.max_value_bytes = max_value_bytes
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            data = self._data.get(key)
        if data is None:
            return None
        return json.loads(data)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        data = _encode(key, value, self.max_value_bytes)
        with self._lock:
            self._data[key] = data

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, mutator: Mutator, ttl: Optional[int] = None) -> Any:
        with self._lock:
            new_value, result = mutator(self.get(key))
            if new_value is not None:
                self.set(key, new_value, ttl)
            return result

    def keys(self) -> list:
        with self._lock:
            return list(self._data)


# =============================================================================
# Factory
# =============================================================================

def build_store() -> KeyValueStore:
    """
    Build the configured backend.

    Reads configuration from environment variables:
    - GATEKEEPER_STORAGE: "redis" or "memory" (default: memory)
    - REDIS_MAX_VALUE_BYTES: per-value quota (default: 5 MiB)
    """
    backend = os.getenv("GATEKEEPER_STORAGE", "memory").lower()
    max_value_bytes = int(os.getenv("REDIS_MAX_VALUE_BYTES", DEFAULT_MAX_VALUE_BYTES))

    if backend == "redis":
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore(max_value_bytes=max_value_bytes)
    if backend != "memory":
        logger.warning(f"Unknown GATEKEEPER_STORAGE '{backend}', falling back to memory")
    logger.info("Using in-memory key-value store")
    return InMemoryKeyValueStore(max_value_bytes=max_value_bytes)
