"""
Sync scheduler control.

GET  /v1/sync/status   - Scheduler state and run counters.
POST /v1/sync/enabled  - Pause or resume scheduled ticks ({"enabled": bool}).
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from api.dependencies import get_sync_service
from scheduler.service import MatchSyncService

router = APIRouter(prefix="/v1/sync", tags=["sync"])


@router.get("/status")
async def sync_status(sync: MatchSyncService = Depends(get_sync_service)) -> dict[str, Any]:
    return {"success": True, "data": sync.get_stats().model_dump(mode="json")}


@router.post("/enabled")
async def set_enabled(
    enabled: bool = Body(..., embed=True),
    sync: MatchSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    sync.set_enabled(enabled)
    return {"success": True, "data": sync.get_stats().model_dump(mode="json")}
