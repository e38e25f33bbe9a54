"""
Redis Connection Tests

Settings from the environment and client construction, with the pool and
client classes mocked out.
"""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from persistence.connection import RedisSettings, get_redis_client


@pytest.fixture(autouse=True)
def fresh_client_cache():
    get_redis_client.cache_clear()
    yield
    get_redis_client.cache_clear()


class TestRedisSettings:

    def test_defaults(self, monkeypatch):
        for name in ("REDIS_HOST", "REDIS_PORT", "REDIS_DB", "REDIS_PASSWORD",
                     "REDIS_MAX_CONNECTIONS", "REDIS_SOCKET_TIMEOUT"):
            monkeypatch.delenv(name, raising=False)

        settings = RedisSettings.from_env()

        assert (settings.host, settings.port, settings.db) == ("localhost", 6379, 0)
        assert settings.password is None
        assert settings.max_connections == 20
        assert settings.socket_timeout == 5.0

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("REDIS_HOST", "cache")
        monkeypatch.setenv("REDIS_DB", "3")
        monkeypatch.setenv("REDIS_SOCKET_TIMEOUT", "0.5")

        settings = RedisSettings.from_env()

        assert settings.host == "cache"
        assert settings.db == 3
        assert settings.socket_timeout == 0.5


class TestGetRedisClient:

    def test_password_required(self, monkeypatch):
        monkeypatch.delenv("REDIS_PASSWORD", raising=False)
        with pytest.raises(ValueError):
            get_redis_client()

    def test_pool_built_from_settings(self, monkeypatch):
        monkeypatch.setenv("REDIS_PASSWORD", "secret")
        monkeypatch.setenv("REDIS_MAX_CONNECTIONS", "7")

        with patch("persistence.connection.redis") as redis_module:
            client = get_redis_client()

        kwargs = redis_module.ConnectionPool.call_args.kwargs
        assert kwargs["password"] == "secret"
        assert kwargs["max_connections"] == 7
        assert kwargs["decode_responses"] is True
        client.ping.assert_called_once()
        assert client is redis_module.Redis.return_value

    def test_client_is_cached(self, monkeypatch):
        monkeypatch.setenv("REDIS_PASSWORD", "secret")

        with patch("persistence.connection.redis"):
            assert get_redis_client() is get_redis_client()

    def test_unreachable_server_raises(self, monkeypatch):
        monkeypatch.setenv("REDIS_PASSWORD", "secret")
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with patch("persistence.connection.redis") as redis_module:
            redis_module.Redis.return_value = client
            with pytest.raises(RedisConnectionError):
                get_redis_client()
