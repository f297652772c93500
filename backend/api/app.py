"""
FastAPI application factory for the LiveFoot API service.

Creates the app with:
- REST routes (matches, teams, sync)
- WebSocket endpoint for real-time fan-out
- Middleware stack
- Health check endpoint
- Lifespan management: infrastructure, the match sync scheduler and the
  fan-out all live in this process
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, WebSocket

from shared.config import get_settings
from shared.store.postgres import SqlMatchStore
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from api.dependencies import AppServices, get_fanout, get_services, init_dependencies
from api.middleware import setup_middleware
from api.routes.matches import router as matches_router
from api.routes.sync import router as sync_router
from api.routes.teams import router as teams_router
from api.ws.manager import FanoutManager
from builder.insights.generator import OpenAIChatGenerator
from builder.insights.service import InsightService
from ingest.normalization.reconciler import FixtureReconciler
from ingest.providers.football_data import FootballDataGateway, build_http_client
from scheduler.service import MatchSyncService

logger = get_logger(__name__)

_CONNECT_RETRY_ATTEMPTS = 5
_CONNECT_RETRY_BASE_DELAY_S = 2.0


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, _CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == _CONNECT_RETRY_ATTEMPTS:
                raise
            delay = _CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=_CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: connect Redis and Postgres, create tables, wire the gateway,
    reconciler, fan-out, insights and scheduler, then start the scheduler.
    Shutdown runs in reverse.
    """
    settings = get_settings()
    setup_logging("api")
    start_metrics_server(settings.metrics_port)

    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await _connect_with_retry(redis.connect, "Redis")
    await _connect_with_retry(db.connect, "Database")
    await db.create_schema()

    store = SqlMatchStore(db)
    http = build_http_client(settings)
    await http.start()
    gateway = FootballDataGateway(http, redis, settings)

    fanout = FanoutManager(settings)
    await fanout.start()

    generator: OpenAIChatGenerator | None = None
    if settings.ai_api_key:
        generator = OpenAIChatGenerator(settings)
        await generator.start()
    else:
        logger.info("insights_disabled", reason="no_ai_api_key")

    insights = InsightService(store, redis, generator, fanout)
    sync = MatchSyncService(
        gateway,
        FixtureReconciler(store, gateway),
        store,
        fanout,
        settings,
        event_insights=insights if generator and settings.ai_event_insights else None,
    )
    init_dependencies(
        AppServices(
            store=store,
            cache=redis,
            gateway=gateway,
            sync=sync,
            fanout=fanout,
            insights=insights,
            health_checks={"redis": redis.ping, "database": db.ping},
        )
    )

    if settings.sync_enabled:
        sync.start()
    else:
        logger.info("match_sync_disabled_by_flag")

    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await sync.stop()
    await fanout.stop()
    if generator:
        await generator.close()
    await http.close()
    await db.disconnect()
    await redis.disconnect()
    logger.info("api_service_stopped")


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False for testing without DB/Redis."""
    app = FastAPI(
        title="LiveFoot API",
        description="Live soccer scores, match detail and real-time updates",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)

    app.include_router(matches_router)
    app.include_router(teams_router)
    app.include_router(sync_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/ready", tags=["system"])
    async def readiness(services: AppServices = Depends(get_services)) -> dict[str, Any]:
        """Readiness check: downstream dependencies plus scheduler state."""
        checks = {name: await check() for name, check in services.health_checks.items()}
        return {
            "status": "ok" if all(checks.values()) else "degraded",
            **checks,
            "sync_running": services.sync.is_running,
        }

    @app.websocket("/v1/ws")
    async def websocket_endpoint(ws: WebSocket, fanout: FanoutManager = Depends(get_fanout)) -> None:
        """
        Real-time match updates.

        Client operations:
        - {"op": "subscribe_match", "matchId": 501} / {"op": "unsubscribe_match", "matchId": 501}
        - {"op": "subscribe_team", "teamId": 57} / {"op": "unsubscribe_team", "teamId": 57}
        - {"op": "ping"}

        Server messages: match_update, match_started, match_ended, match_event,
        ai_insight, plus state/pong/ping/error control frames.
        """
        await fanout.handle_connection(ws)

    return app


app = create_app()
