"""
Dependency injection for the API service.
Provides the store, cache, gateway, scheduler, fan-out and insight service to route handlers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from fastapi import Header, HTTPException

from shared.store.base import MatchStore
from shared.utils.redis_manager import Cache

from api.ws.manager import FanoutManager
from builder.insights.service import InsightService
from ingest.providers.football_data import FootballDataGateway
from scheduler.service import MatchSyncService


@dataclass
class AppServices:
    store: MatchStore
    cache: Cache
    gateway: FootballDataGateway
    sync: MatchSyncService
    fanout: FanoutManager
    insights: InsightService
    # Readiness checks by name, e.g. {"redis": redis.ping, "database": db.ping}
    health_checks: dict[str, Callable[[], Awaitable[bool]]] = field(default_factory=dict)


# Module-level singleton, initialized at startup
_services: AppServices | None = None


def init_dependencies(services: AppServices) -> None:
    """Initialize the module-level singleton. Called once at startup."""
    global _services
    _services = services


def _require() -> AppServices:
    if _services is None:
        raise RuntimeError("Services not initialized, call init_dependencies first")
    return _services


def get_services() -> AppServices:
    return _require()


def get_store() -> MatchStore:
    return _require().store


def get_cache() -> Cache:
    return _require().cache


def get_gateway() -> FootballDataGateway:
    return _require().gateway


def get_sync_service() -> MatchSyncService:
    return _require().sync


def get_fanout() -> FanoutManager:
    return _require().fanout


def get_insight_service() -> InsightService:
    return _require().insights


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity as forwarded by the auth gateway in X-User-Id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()
