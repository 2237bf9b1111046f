"""
Test the served-config cache (memory fallback and Redis path)
"""
import json
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache_manager import CacheManager


def test_memory_set_get_delete(cache):
    assert cache.set("chat-config", {"version": "2.0.0"}) is False
    assert cache.get("chat-config") == {"version": "2.0.0"}

    assert cache.delete("chat-config") is True
    assert cache.get("chat-config") is None
    assert cache.delete("chat-config") is False


def test_values_are_copies(cache):
    value = {"features": ["markdown"]}
    cache.set("chat-config", value)
    value["features"].append("leak")

    assert cache.get("chat-config") == {"features": ["markdown"]}


def test_expired_entries_are_dropped(cache):
    cache.set("chat-config", {"version": "2.0.0"})
    cache.memory_cache["rollout-test:chat-config"]["expires"] = datetime.utcnow() - timedelta(seconds=1)

    assert cache.get("chat-config") is None


def test_unserializable_value_rejected(cache):
    with pytest.raises(ValueError):
        cache.set("chat-config", {"when": datetime.utcnow()})


def test_invalidate_counts_existing_keys(cache):
    cache.set("chat-config", {})
    cache.set("feature-flags", [])

    assert cache.invalidate(["chat-config", "feature-flags", "unknown"]) == 2
    assert cache.get_stats()["memory_cache_size"] == 0


def test_eviction_at_capacity():
    cache = CacheManager(max_memory_cache=2)
    cache.set("a", 1, ttl=10)
    cache.set("b", 2, ttl=1000)
    cache.set("c", 3, ttl=1000)

    # Entry closest to expiry goes first
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_namespaces_are_isolated():
    first = CacheManager(namespace="one")
    second = CacheManager(namespace="two")
    first.set("chat-config", {"v": 1})

    assert second.get("chat-config") is None


def test_redis_path_used_when_available():
    redis_client = MagicMock()
    redis_client.get.return_value = json.dumps({"version": "2.0.0"}).encode("utf-8")

    with patch("cache_manager.Redis", return_value=redis_client), \
            patch("cache_manager.ConnectionPool.from_url"):
        cache = CacheManager(redis_url="redis://localhost:6379/0", namespace="rollout")

    assert cache.redis_available
    assert cache.set("chat-config", {"version": "2.0.0"}, ttl=60) is True
    redis_client.setex.assert_called_once_with(
        "rollout:chat-config", 60, json.dumps({"version": "2.0.0"}).encode("utf-8")
    )
    assert cache.get("chat-config") == {"version": "2.0.0"}
    redis_client.get.assert_called_with("rollout:chat-config")


def test_unreachable_redis_falls_back_to_memory():
    redis_client = MagicMock()
    redis_client.ping.side_effect = RedisConnectionError("refused")

    with patch("cache_manager.Redis", return_value=redis_client), \
            patch("cache_manager.ConnectionPool.from_url"):
        cache = CacheManager(redis_url="redis://localhost:6379/0")

    assert not cache.redis_available
    assert cache.set("chat-config", {"version": "2.0.0"}) is False
    assert cache.get("chat-config") == {"version": "2.0.0"}
    redis_client.setex.assert_not_called()
