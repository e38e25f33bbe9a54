"""
Key-Value Storage Tests

In-memory backend semantics, Redis error mapping and WATCH/MULTI updates
(with a mocked client) and backend selection. The live Redis round-trip is skipped when no server
is reachable.
"""

import json
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, WatchError

from core.exceptions import CapacityError, StorageError
from persistence.storage import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    build_store,
)


# =============================================================================
# In-Memory Backend
# =============================================================================

class TestInMemoryStore:

    def test_round_trip(self):
        store = InMemoryKeyValueStore()
        store.set("k", {"a": [1, 2]})
        assert store.get("k") == {"a": [1, 2]}

    def test_missing_key(self):
        assert InMemoryKeyValueStore().get("nope") is None

    def test_values_are_copied(self):
        store = InMemoryKeyValueStore()
        value = {"a": [1]}
        store.set("k", value)
        value["a"].append(2)

        assert store.get("k") == {"a": [1]}

    def test_quota_raises_capacity_error(self):
        store = InMemoryKeyValueStore(max_value_bytes=16)
        with pytest.raises(CapacityError):
            store.set("k", ["x" * 32])
        assert store.get("k") is None

    def test_delete(self):
        store = InMemoryKeyValueStore()
        store.set("k", 1)
        store.delete("k")
        store.delete("k")
        assert store.keys() == []

    def test_update_writes_new_value(self):
        store = InMemoryKeyValueStore()
        store.set("k", [1])

        result = store.update("k", lambda current: (current + [2], len(current)))

        assert result == 1
        assert store.get("k") == [1, 2]

    def test_update_missing_key_sees_none(self):
        store = InMemoryKeyValueStore()
        seen = []

        def mutator(current):
            seen.append(current)
            return {"a": 1}, "created"

        assert store.update("k", mutator) == "created"
        assert seen == [None]
        assert store.get("k") == {"a": 1}

    def test_update_none_writes_nothing(self):
        store = InMemoryKeyValueStore()
        assert store.update("k", lambda current: (None, "skipped")) == "skipped"
        assert store.keys() == []

    def test_update_respects_quota(self):
        store = InMemoryKeyValueStore(max_value_bytes=16)
        store.set("k", [1])

        with pytest.raises(CapacityError):
            store.update("k", lambda current: (["x" * 32], None))
        assert store.get("k") == [1]


# =============================================================================
# Redis Backend (mocked client)
# =============================================================================

class TestRedisStoreErrors:

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = json.dumps({"challenge": 35})
        assert RedisKeyValueStore(client=client).get("k") == {"challenge": 35}

    def test_corrupted_value_reads_as_missing(self):
        client = MagicMock()
        client.get.return_value = "{not json"
        assert RedisKeyValueStore(client=client).get("k") is None

    def test_ttl_uses_setex(self):
        client = MagicMock()
        RedisKeyValueStore(client=client).set("k", {"a": 1}, ttl=60)
        client.setex.assert_called_once_with("k", 60, json.dumps({"a": 1}))

    def test_oom_maps_to_capacity_error(self):
        client = MagicMock()
        client.set.side_effect = ResponseError("OOM command not allowed when used memory > 'maxmemory'.")
        with pytest.raises(CapacityError):
            RedisKeyValueStore(client=client).set("k", [1])

    def test_other_failures_map_to_storage_error(self):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("refused")
        with pytest.raises(StorageError) as exc_info:
            RedisKeyValueStore(client=client).set("k", [1])
        assert not isinstance(exc_info.value, CapacityError)

    def test_quota_checked_before_write(self):
        client = MagicMock()
        with pytest.raises(CapacityError):
            RedisKeyValueStore(client=client, max_value_bytes=4).set("k", "too long")
        client.set.assert_not_called()


def pipelined_client(current=None):
    """Mocked client whose pipeline() context yields a recording pipe."""
    client = MagicMock()
    pipe = MagicMock()
    pipe.get.return_value = None if current is None else json.dumps(current)
    client.pipeline.return_value.__enter__.return_value = pipe
    return client, pipe


class TestRedisStoreUpdate:
    """WATCH/MULTI/EXEC read-modify-write with a mocked pipeline."""

    def test_update_watches_and_writes(self):
        client, pipe = pipelined_client([1])

        result = RedisKeyValueStore(client=client).update("k", lambda c: (c + [2], "ok"))

        assert result == "ok"
        client.pipeline.assert_called_with(True)
        pipe.watch.assert_called_once_with("k")
        pipe.multi.assert_called_once()
        pipe.set.assert_called_once_with("k", json.dumps([1, 2]))
        pipe.execute.assert_called_once()

    def test_update_with_ttl_uses_setex(self):
        client, pipe = pipelined_client()

        RedisKeyValueStore(client=client).update("k", lambda c: ({"a": "control"}, None), ttl=1800)

        pipe.setex.assert_called_once_with("k", 1800, json.dumps({"a": "control"}))

    def test_watch_conflict_reruns_mutator(self):
        client, pipe = pipelined_client([1])
        pipe.execute.side_effect = [WatchError(), [True]]
        calls = []

        def mutator(current):
            calls.append(current)
            return current + [2], len(calls)

        assert RedisKeyValueStore(client=client).update("k", mutator) == 2
        assert calls == [[1], [1]]
        assert pipe.execute.call_count == 2

    def test_persistent_conflict_raises_storage_error(self):
        client, pipe = pipelined_client([1])
        pipe.execute.side_effect = WatchError()
        store = RedisKeyValueStore(client=client)

        with pytest.raises(StorageError):
            store.update("k", lambda c: (c + [2], None))
        assert pipe.execute.call_count == store.MAX_RETRIES

    def test_no_new_value_skips_transaction(self):
        client, pipe = pipelined_client({"a": "variant"})

        assert RedisKeyValueStore(client=client).update("k", lambda c: (None, c["a"])) == "variant"
        pipe.multi.assert_not_called()
        pipe.execute.assert_not_called()

    def test_oom_during_exec_maps_to_capacity_error(self):
        client, pipe = pipelined_client([1])
        pipe.execute.side_effect = ResponseError(
            "Command # 1 (SET k [1, 2]) of pipeline caused error: OOM command not allowed"
        )
        with pytest.raises(CapacityError):
            RedisKeyValueStore(client=client).update("k", lambda c: (c + [2], None))

    def test_quota_checked_before_exec(self):
        client, pipe = pipelined_client([1])
        with pytest.raises(CapacityError):
            RedisKeyValueStore(client=client, max_value_bytes=4).update("k", lambda c: ("too long", None))
        pipe.execute.assert_not_called()

    def test_connection_failure_maps_to_storage_error(self):
        client, pipe = pipelined_client()
        pipe.watch.side_effect = RedisConnectionError("refused")
        with pytest.raises(StorageError):
            RedisKeyValueStore(client=client).update("k", lambda c: ([1], None))


class TestRedisStoreLive:
    """Round-trip against a real server."""

    def test_round_trip(self, clean_redis):
        store = RedisKeyValueStore(client=clean_redis)
        store.set("BOT_TEST:k", {"a": 1})
        assert store.get("BOT_TEST:k") == {"a": 1}
        store.delete("BOT_TEST:k")
        assert store.get("BOT_TEST:k") is None

    def test_update_round_trip(self, clean_redis):
        store = RedisKeyValueStore(client=clean_redis)

        store.update("BOT_TEST:k", lambda current: ([1], None))
        store.update("BOT_TEST:k", lambda current: (current + [2], None))

        assert store.get("BOT_TEST:k") == [1, 2]

    def test_update_with_ttl(self, clean_redis):
        store = RedisKeyValueStore(client=clean_redis)
        store.update("BOT_TEST:k", lambda current: ({"a": "control"}, None), ttl=60)
        assert 0 < clean_redis.ttl("BOT_TEST:k") <= 60

    def test_concurrent_appends_are_not_lost(self, clean_redis):
        store = RedisKeyValueStore(client=clean_redis)
        store.MAX_RETRIES = 100

        def append(i):
            store.update("BOT_TEST:k", lambda current: ((current or []) + [i], None))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(append, range(50)))

        assert sorted(store.get("BOT_TEST:k")) == list(range(50))


# =============================================================================
# Factory
# =============================================================================

class TestBuildStore:

    def test_memory_is_default(self, monkeypatch):
        monkeypatch.delenv("GATEKEEPER_STORAGE", raising=False)
        assert isinstance(build_store(), InMemoryKeyValueStore)

    def test_unknown_backend_falls_back_to_memory(self, monkeypatch):
        monkeypatch.setenv("GATEKEEPER_STORAGE", "sqlite")
        assert isinstance(build_store(), InMemoryKeyValueStore)

    def test_quota_from_environment(self, monkeypatch):
        monkeypatch.setenv("GATEKEEPER_STORAGE", "memory")
        monkeypatch.setenv("REDIS_MAX_VALUE_BYTES", "128")
        assert build_store().max_value_bytes == 128
