"""
Redis connection manager for LiveFoot.
Provides the async connection pool, the JSON cache capability and the key namespace.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_LOOKUPS

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
LIVE_MATCHES_KEY = "matches:live"
MATCH_KEY = "match:{match_id}"
TEAM_KEY = "team:{team_id}"
AI_INSIGHT_KEY = "ai:{match_id}:{insight_type}"
MATCH_RANGE_KEY = "matches:range:{date_from}:{date_to}"
TEAM_SEARCH_KEY = "teams:search:{query}"
MATCH_QUERY_KEY = "matches:query:{digest}"

# ── TTLs (seconds) ──────────────────────────────────────────────────────
TTL_LIVE_LISTING = 30
TTL_FIXTURE_IN_PROGRESS = 60
TTL_FIXTURE_FINISHED = 3600
TTL_TEAM = 86400


def fmt_key(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class Cache(Protocol):
    """Key-value capability injected into the gateway, query layer and insights."""

    async def get_json(self, key: str) -> Any: ...

    async def set_json(self, key: str, value: Any, ttl_s: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class RedisManager:
    """Manages the async Redis connection pool and implements the JSON cache."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── JSON cache ──────────────────────────────────────────────────────
    # Cache failures are treated as misses; a Redis outage must never stop a sync.
    async def get_json(self, key: str) -> Any:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            CACHE_LOOKUPS.labels(result="error").inc()
            return None
        if raw is None:
            CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        CACHE_LOOKUPS.labels(result="hit").inc()
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("cache_value_corrupt", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_s: int | None = None) -> None:
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl_s)
        except RedisError as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            logger.warning("cache_delete_failed", key=key, error=str(exc))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, RuntimeError):
            return False
