"""
Team REST endpoints.

GET    /v1/teams/search?q=     - Name search: stored major teams first, then upstream.
GET    /v1/teams/following     - Teams followed by the caller.
GET    /v1/teams/{id}/follow   - Whether the caller follows a team.
POST   /v1/teams/{id}/follow   - Follow (or update notification preferences).
DELETE /v1/teams/{id}/follow   - Unfollow.

The caller is identified by the X-User-Id header.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from shared.models.domain import FollowPreferences, TeamOut
from shared.store.base import MatchStore
from shared.utils.logging import get_logger

from api.dependencies import get_gateway, get_store, get_user_id
from ingest.normalization.reconciler import build_team
from ingest.providers.football_data import FootballDataGateway

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/teams", tags=["teams"])

SEARCH_LIMIT = 10


async def search_teams(
    store: MatchStore, gateway: FootballDataGateway, query: str
) -> list[TeamOut]:
    """
    Stored major teams win. Otherwise ask the provider, keep up to
    ``SEARCH_LIMIT`` of its hits as non-major teams, and search again.
    """
    found = await store.search_teams(query, major_only=True, limit=SEARCH_LIMIT)
    if found:
        return found

    discovered = await gateway.search_teams(query)
    for raw in discovered[:SEARCH_LIMIT]:
        await store.upsert_team(build_team(raw), is_major=False)
    if discovered:
        logger.info("teams_discovered", query=query, count=min(len(discovered), SEARCH_LIMIT))

    return await store.search_teams(query, major_only=False, limit=SEARCH_LIMIT)


@router.get("/search")
async def search(
    q: str = Query(..., min_length=2, max_length=100),
    store: MatchStore = Depends(get_store),
    gateway: FootballDataGateway = Depends(get_gateway),
) -> dict[str, Any]:
    teams = await search_teams(store, gateway, q.strip())
    return {"success": True, "data": [t.model_dump() for t in teams]}


@router.get("/following")
async def following(
    user_id: str = Depends(get_user_id),
    store: MatchStore = Depends(get_store),
) -> dict[str, Any]:
    follows = await store.list_follows(user_id)
    return {"success": True, "data": [f.model_dump(mode="json") for f in follows]}


@router.get("/{team_id}/follow")
async def follow_status(
    team_id: int,
    user_id: str = Depends(get_user_id),
    store: MatchStore = Depends(get_store),
) -> dict[str, Any]:
    return {"success": True, "data": {"following": await store.is_following(user_id, team_id)}}


@router.post("/{team_id}/follow")
async def follow(
    team_id: int,
    prefs: Optional[FollowPreferences] = Body(default=None),
    user_id: str = Depends(get_user_id),
    store: MatchStore = Depends(get_store),
) -> dict[str, Any]:
    if await store.get_team(team_id) is None:
        raise HTTPException(status_code=404, detail="Team not found")
    record = await store.follow_team(user_id, team_id, prefs or FollowPreferences())
    logger.info("team_followed", user_id=user_id, team_id=team_id)
    return {"success": True, "data": record.model_dump(mode="json")}


@router.delete("/{team_id}/follow")
async def unfollow(
    team_id: int,
    user_id: str = Depends(get_user_id),
    store: MatchStore = Depends(get_store),
) -> dict[str, Any]:
    if not await store.unfollow_team(user_id, team_id):
        raise HTTPException(status_code=404, detail="Not following this team")
    logger.info("team_unfollowed", user_id=user_id, team_id=team_id)
    return {"success": True, "message": "Team unfollowed"}
