"""
Per-service runtime context.

One `AgentContext` is built at service start and passed by reference to the pieces that
need shared state. It owns:
- the loaded `AgentConfig`
- a two-tier cache: a bounded in-process TTL map in front of an optional redis store
- the redis client (also used by the conversation store)
- one circuit breaker per provider name
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from sleuth.config import AgentConfig, load_agent_config
from sleuth.llm.resilience import CircuitBreaker

logger = logging.getLogger(__name__)

_CACHE_PREFIX = "sleuth:cache:"


class TTLCache:
    """Bounded LRU map whose entries expire after a per-entry TTL."""

    def __init__(self, max_entries: int = 512, default_ttl: float = 300.0) -> None:
        self.max_entries = max(1, int(max_entries))
        self.default_ttl = float(default_ttl)
        self._data: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= time.monotonic():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl_s = self.default_ttl if ttl is None else float(ttl)
        with self._lock:
            self._data[key] = (time.monotonic() + ttl_s, value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


def create_redis_client(url: str) -> Any:
    import redis.asyncio as redis

    return redis.Redis.from_url(url, decode_responses=True)


class AgentContext:
    def __init__(self, config: Optional[AgentConfig] = None, *, redis_client: Any = None) -> None:
        self.config = config or load_agent_config()
        self.memory = TTLCache(self.config.cache_max_entries, self.config.cache_ttl_seconds)
        if redis_client is None and self.config.redis_url:
            redis_client = create_redis_client(self.config.redis_url)
        self.redis = redis_client
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker_for(self, provider: str) -> CircuitBreaker:
        cb = self._breakers.get(provider)
        if cb is None:
            cb = CircuitBreaker(provider)
            self._breakers[provider] = cb
        return cb

    async def cache_get(self, key: str) -> Any:
        value = self.memory.get(key)
        if value is not None:
            return value
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(_CACHE_PREFIX + key)
        except Exception as e:
            logger.warning("cache: redis get failed key=%s error=%s", key, type(e).__name__)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            return None
        self.memory.set(key, value)
        return value

    async def cache_set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl_s = int(ttl if ttl is not None else self.config.cache_ttl_seconds)
        self.memory.set(key, value, ttl_s)
        if self.redis is None:
            return
        try:
            await self.redis.set(_CACHE_PREFIX + key, json.dumps(value, default=str), ex=ttl_s)
        except Exception as e:
            logger.warning("cache: redis set failed key=%s error=%s", key, type(e).__name__)

    async def close(self) -> None:
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as e:
                logger.warning("context: redis close failed error=%s", type(e).__name__)
