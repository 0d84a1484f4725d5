"""
Tests for RedisClient retry handling and Config.redis_url
"""

from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError, ResponseError

from cartsync.config import Config
from cartsync.exceptions import RedisConnectionError
from cartsync.redis_client import RedisClient


@pytest.fixture
def mock_redis():
    """Patch the pool factory and client class; yields the client instance mock"""
    with patch("cartsync.redis_client.redis.ConnectionPool.from_url") as from_url, \
            patch("cartsync.redis_client.redis.Redis") as redis_cls, \
            patch("cartsync.redis_client.time.sleep") as sleep:
        instance = redis_cls.return_value
        instance.from_url = from_url
        instance.sleep = sleep
        yield instance


class TestRedisClient:
    """Tests for the pooled Redis wrapper."""

    def test_connects_lazily(self, mock_redis):
        client = RedisClient(url="redis://localhost:6379/0")
        mock_redis.from_url.assert_not_called()

        mock_redis.get.return_value = "value"
        assert client.get("key") == "value"
        mock_redis.from_url.assert_called_once()

    def test_set_passes_ttl(self, mock_redis):
        client = RedisClient(url="redis://localhost:6379/0")
        client.set("key", "value", ex=30)
        mock_redis.set.assert_called_once_with("key", "value", ex=30)

    def test_retries_connection_errors(self, mock_redis):
        """A transient failure is retried after a reconnect."""
        mock_redis.get.side_effect = [ConnectionError("reset"), "value"]
        client = RedisClient(url="redis://localhost:6379/0")

        assert client.get("key") == "value"
        assert mock_redis.from_url.call_count == 2
        assert mock_redis.sleep.call_count == 1

    def test_gives_up_after_max_retries(self, mock_redis):
        mock_redis.delete.side_effect = ConnectionError("down")
        client = RedisClient(url="redis://localhost:6379/0")

        with pytest.raises(RedisConnectionError):
            client.delete("key")
        assert mock_redis.delete.call_count == 3

    def test_non_retryable_errors(self, mock_redis):
        mock_redis.get.side_effect = ResponseError("WRONGTYPE")
        client = RedisClient(url="redis://localhost:6379/0")

        with pytest.raises(RedisConnectionError):
            client.get("key")
        assert mock_redis.get.call_count == 1

    def test_ping_reports_failure(self, mock_redis):
        mock_redis.ping.side_effect = ConnectionError("refused")
        client = RedisClient(url="redis://localhost:6379/0")
        assert client.ping() is False


class TestRedisUrl:
    """Tests for connection URL assembly."""

    def test_plain(self, monkeypatch):
        monkeypatch.setattr(Config, "REDIS_HOST", "cache.local")
        monkeypatch.setattr(Config, "REDIS_PORT", 6380)
        monkeypatch.setattr(Config, "REDIS_DB", 2)
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", None)
        monkeypatch.setattr(Config, "REDIS_USE_TLS", False)

        assert Config.redis_url() == "redis://cache.local:6380/2"

    def test_tls_with_auth(self, monkeypatch):
        monkeypatch.setattr(Config, "REDIS_HOST", "cache.local")
        monkeypatch.setattr(Config, "REDIS_PORT", 6379)
        monkeypatch.setattr(Config, "REDIS_DB", 0)
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", "secret")
        monkeypatch.setattr(Config, "REDIS_USE_TLS", True)

        assert Config.redis_url() == "rediss://:secret@cache.local:6379/0"
