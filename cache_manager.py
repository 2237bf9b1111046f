"""
cache_manager.py - Cache of served deployment configuration with Redis and memory fallback

Values are JSON-serialized; keys are namespaced so rollbacks can invalidate
exactly the entries they own.
"""
import json
from typing import Optional, Any, Dict, Iterable
from datetime import datetime, timedelta
import threading
import time

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from logger import get_logger

logger = get_logger(__name__)


class CacheManager:
    """
    Namespaced key/value cache

    Redis is used when configured and reachable; the in-process memory cache
    is always written as well, so reads keep working while Redis is down.

    Example:
        cache = CacheManager(redis_url=None, namespace="rollout")
        cache.set("chat-config", {"version": "2.0.0"})
        cache.invalidate(["chat-config", "feature-flags"])
    """

    def __init__(self, redis_url: Optional[str] = None, ttl: int = 3600,
                 max_memory_cache: int = 1000, namespace: str = "rollout",
                 max_retries: int = 3):
        self.ttl = ttl
        self.max_memory_cache = max_memory_cache
        self.namespace = namespace
        self.max_retries = max_retries
        self.memory_cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.redis_client = None
        self.redis_available = False
        self.last_redis_check = datetime.utcnow()
        self.redis_check_interval = timedelta(seconds=30)

        if redis_url:
            self._initialize_redis(redis_url)

    def _initialize_redis(self, redis_url: str):
        try:
            pool = ConnectionPool.from_url(
                redis_url,
                max_connections=20,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.redis_client = Redis(connection_pool=pool)
            self.redis_client.ping()
            self.redis_available = True
            logger.info("Redis cache connected")

        except RedisError as e:
            logger.warning(f"Redis connection failed, using memory cache: {str(e)}")
            self.redis_client = None
            self.redis_available = False

    def _check_redis_health(self) -> bool:
        """Periodic Redis health check"""
        if not self.redis_client:
            return False

        if (datetime.utcnow() - self.last_redis_check) < self.redis_check_interval:
            return self.redis_available

        try:
            self.redis_client.ping()
            self.redis_available = True
        except RedisError:
            self.redis_available = False
            logger.warning("Redis health check failed")

        self.last_redis_check = datetime.utcnow()
        return self.redis_available

    def _with_retry(self, func, *args, **kwargs) -> Any:
        """Retry connection errors with exponential backoff"""
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                return func(*args, **kwargs)
            except RedisConnectionError as e:
                last_exception = e
                if attempt < self.max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.debug(f"Redis operation failed, retrying in {wait_time}s...")
                    time.sleep(wait_time)

        logger.error(f"Redis operation failed after {self.max_retries} attempts: {last_exception}")
        self.redis_available = False
        raise last_exception

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache with fallback"""
        full_key = self._key(key)

        if self._check_redis_health():
            try:
                value = self._with_retry(self.redis_client.get, full_key)
                if value is not None:
                    return json.loads(value.decode("utf-8"))
            except (RedisError, ValueError) as e:
                logger.debug(f"Redis get error, falling back to memory: {e}")

        with self._lock:
            item = self.memory_cache.get(full_key)
            if item is None:
                return None
            if item["expires"] <= datetime.utcnow():
                del self.memory_cache[full_key]
                return None
            return item["value"]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Store a JSON-serializable value

        Returns:
            True if the value also reached Redis

        Raises:
            ValueError: Value is not JSON-serializable
        """
        ttl = ttl or self.ttl
        full_key = self._key(key)
        try:
            serialized = json.dumps(value)
        except TypeError as e:
            raise ValueError(f"Failed to serialize value for {key}: {e}")

        stored = False
        if self._check_redis_health():
            try:
                self._with_retry(self.redis_client.setex, full_key, ttl, serialized.encode("utf-8"))
                stored = True
            except RedisError as e:
                logger.debug(f"Redis set error, falling back to memory: {e}")

        with self._lock:
            if full_key not in self.memory_cache and len(self.memory_cache) >= self.max_memory_cache:
                # Evict the entry closest to expiry
                oldest = min(self.memory_cache, key=lambda k: self.memory_cache[k]["expires"])
                del self.memory_cache[oldest]
            self.memory_cache[full_key] = {
                "value": json.loads(serialized),
                "expires": datetime.utcnow() + timedelta(seconds=ttl),
            }

        return stored

    def delete(self, key: str) -> bool:
        """Delete a key; True if it existed anywhere"""
        full_key = self._key(key)
        deleted = False

        if self._check_redis_health():
            deleted = bool(self._with_retry(self.redis_client.delete, full_key))

        with self._lock:
            if self.memory_cache.pop(full_key, None) is not None:
                deleted = True

        return deleted

    def invalidate(self, keys: Iterable[str]) -> int:
        """Delete several keys, returning how many existed"""
        keys = list(keys)
        count = sum(1 for key in keys if self.delete(key))
        logger.info(f"Invalidated {count}/{len(keys)} cache keys in namespace '{self.namespace}'")
        return count

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            memory_size = len(self.memory_cache)
        return {
            "namespace": self.namespace,
            "memory_cache_size": memory_size,
            "memory_cache_max": self.max_memory_cache,
            "redis_available": self.redis_available,
            "ttl": self.ttl,
        }

    def close(self):
        """Clean up resources"""
        if self.redis_client:
            try:
                self.redis_client.close()
            except RedisError as e:
                logger.debug(f"Error closing Redis client: {e}")
            self.redis_client = None
            self.redis_available = False
        with self._lock:
            self.memory_cache.clear()
