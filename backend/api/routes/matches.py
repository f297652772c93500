"""
Match REST endpoints.

GET  /v1/matches                - Filtered, paginated match list (major matches only).
GET  /v1/matches/live           - Every major match of one day (today by default), unpaginated.
GET  /v1/matches/{id}           - Fully hydrated match (events, lineups, statistics, insights).
POST /v1/matches/sync           - Run today's sync now.
POST /v1/matches/sync/range     - Backfill a date range.
GET  /v1/matches/{id}/insights  - Stored AI insights, newest first.
POST /v1/matches/{id}/insights  - Generate an insight of the given type, or a deep analysis.
"""
from __future__ import annotations

import hashlib
import json
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from shared.models.domain import MatchQuery, utcnow
from shared.models.enums import InsightType, MatchStatus
from shared.store.base import MatchStore
from shared.utils.logging import get_logger
from shared.utils.redis_manager import MATCH_QUERY_KEY, Cache, fmt_key

from api.dependencies import get_cache, get_insight_service, get_store, get_sync_service
from builder.insights.generator import GenerationError
from builder.insights.service import InsightService, InsightsUnavailableError, MatchNotFoundError
from scheduler.service import MatchSyncService

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/matches", tags=["matches"])

QUERY_TTL_SEARCH_S = 30
QUERY_TTL_S = 60
LIVE_LIMIT = 100


def query_cache_key(query: MatchQuery) -> str:
    raw = json.dumps(query.model_dump(mode="json"), sort_keys=True)
    return fmt_key(MATCH_QUERY_KEY, digest=hashlib.sha1(raw.encode()).hexdigest()[:20])


def _parse_date(value: Any, field: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


@router.get("")
async def list_matches(
    league: Optional[int] = Query(default=None),
    on_date: Optional[date] = Query(default=None, alias="date"),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    date_from_alias: Optional[date] = Query(default=None, alias="dateFrom", include_in_schema=False),
    date_to_alias: Optional[date] = Query(default=None, alias="dateTo", include_in_schema=False),
    search: Optional[str] = Query(default=None, max_length=100),
    status: Optional[MatchStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    store: MatchStore = Depends(get_store),
    cache: Cache = Depends(get_cache),
) -> dict[str, Any]:
    query = MatchQuery(
        league_id=league,
        on_date=on_date,
        date_from=date_from or date_from_alias,
        date_to=date_to or date_to_alias,
        search=(search or "").strip() or None,
        status=status,
        page=page,
        limit=limit,
    )

    key = query_cache_key(query)
    cached = await cache.get_json(key)
    if cached is not None:
        return {"success": True, "data": cached}

    result = (await store.query_matches(query)).model_dump(mode="json")
    await cache.set_json(key, result, QUERY_TTL_SEARCH_S if query.search else QUERY_TTL_S)
    return {"success": True, "data": result}


@router.get("/live")
async def live_matches(
    league: Optional[int] = Query(default=None),
    on_date: Optional[date] = Query(default=None, alias="date"),
    store: MatchStore = Depends(get_store),
    cache: Cache = Depends(get_cache),
) -> dict[str, Any]:
    query = MatchQuery(league_id=league, on_date=on_date or utcnow().date(), limit=LIVE_LIMIT)

    key = query_cache_key(query)
    cached = await cache.get_json(key)
    if cached is None:
        cached = (await store.query_matches(query)).model_dump(mode="json")
        await cache.set_json(key, cached, QUERY_TTL_S)
    return {"success": True, "data": cached["matches"]}


@router.post("/sync")
async def trigger_sync(sync: MatchSyncService = Depends(get_sync_service)) -> dict[str, Any]:
    summary = await sync.sync_now()
    return {"success": True, "message": "Match sync completed", "data": summary.model_dump()}


@router.post("/sync/range")
async def trigger_range_sync(
    payload: Optional[dict[str, Any]] = Body(default=None),
    sync: MatchSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    payload = payload or {}
    raw_from = payload.get("date_from") or payload.get("dateFrom")
    raw_to = payload.get("date_to") or payload.get("dateTo")
    if not raw_from or not raw_to:
        raise HTTPException(status_code=400, detail="date_from and date_to are required")

    date_from = _parse_date(raw_from, "date_from")
    date_to = _parse_date(raw_to, "date_to")
    try:
        summary = await sync.sync_date_range(date_from, date_to)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {
        "success": True,
        "message": f"Synced {summary.synced} matches from {date_from} to {date_to}",
        "data": summary.model_dump(),
    }


@router.get("/{match_id}")
async def get_match(match_id: int, store: MatchStore = Depends(get_store)) -> dict[str, Any]:
    match = await store.get_match_detail(match_id)
    if match is None:
        raise HTTPException(status_code=404, detail="Match not found")
    return {"success": True, "data": match.model_dump(mode="json")}


@router.get("/{match_id}/insights")
async def list_insights(
    match_id: int, insights: InsightService = Depends(get_insight_service)
) -> dict[str, Any]:
    records = await insights.list_insights(match_id)
    return {"success": True, "data": [r.model_dump(mode="json") for r in records]}


@router.post("/{match_id}/insights")
async def generate_insight(
    match_id: int,
    payload: Optional[dict[str, Any]] = Body(default=None),
    insights: InsightService = Depends(get_insight_service),
) -> dict[str, Any]:
    payload = payload or {}
    deep = bool(payload.get("deep_analysis") or payload.get("deepAnalysis"))
    insight_type: Optional[InsightType] = None
    if not deep:
        try:
            insight_type = InsightType(payload.get("type"))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid insight type")

    try:
        if insight_type is None:
            insight = await insights.generate_deep_analysis(match_id)
        else:
            insight = await insights.generate(match_id, insight_type)
    except MatchNotFoundError:
        raise HTTPException(status_code=404, detail="Match not found")
    except InsightsUnavailableError:
        raise HTTPException(status_code=503, detail="Insights are not configured")
    except GenerationError as exc:
        logger.warning("insight_request_failed", match_id=match_id, error=str(exc))
        raise HTTPException(status_code=502, detail="Insight generation failed")

    return {"success": True, "data": insight.model_dump(mode="json")}
