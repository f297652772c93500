"""
Match sync scheduler for LiveFoot.
Pulls today's fixtures on a fixed cadence inside the daily active window,
reconciles each one into the store, and pushes detected transitions to the
real-time fan-out. Also hosts the on-demand date-range and backfill runs.
"""
from __future__ import annotations

import asyncio
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from shared.config import Settings, get_settings
from shared.models.domain import MatchEventRecord, MatchRecord, SyncStats, SyncSummary
from shared.models.enums import EventType
from shared.store.base import MatchStore
from shared.utils.http_client import is_rate_limit_error
from shared.utils.logging import get_logger, in_sync_run
from shared.utils.metrics import FIXTURE_SYNC_ERRORS, SYNC_DURATION, SYNC_TICKS, atrack_latency

from ingest.normalization.reconciler import FixtureReconciler
from scheduler.engine.changes import detect_changes
from scheduler.engine.window import RecurringTimer, SyncWindow

logger = get_logger(__name__)


class FixtureGateway(Protocol):
    async def fetch_today_fixtures(self) -> list[dict[str, Any]]: ...

    async def fetch_fixtures_by_date_range(
        self, date_from: date, date_to: date
    ) -> list[dict[str, Any]]: ...

    async def fetch_fixture_by_id(self, fixture_id: int) -> dict[str, Any]: ...


class Fanout(Protocol):
    async def emit_match_update(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int: ...

    async def emit_match_started(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int: ...

    async def emit_match_ended(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int: ...

    async def emit_match_event(
        self, match_id: int, payload: dict[str, Any], team_ids: Iterable[int] = ()
    ) -> int: ...


class EventInsights(Protocol):
    async def generate_event_insight(self, match_id: int, event: MatchEventRecord) -> Any: ...


# ── Payloads ────────────────────────────────────────────────────────────

def match_update_payload(match: MatchRecord) -> dict[str, Any]:
    return {
        "matchId": match.id,
        "homeScore": match.home_score,
        "awayScore": match.away_score,
        "status": match.status.value,
        "elapsedTime": match.elapsed_time,
        "lastUpdated": match.last_updated.isoformat(),
    }


def match_event_payload(match_id: int, event: MatchEventRecord) -> dict[str, Any]:
    return {
        "matchId": match_id,
        "type": event.event_type.value,
        "teamId": event.team_id,
        "minute": event.minute,
        "injuryTime": event.injury_time,
        "player": event.player_name,
        "assist": event.assist_name,
        "detail": event.detail,
    }


class MatchSyncService:
    """
    Explicit {stopped, running} state machine around the recurring sync.

    - ``start()`` arms the timer and fires one run right away
    - ``stop()`` disarms the timer; a run already in flight finishes
    - ``set_enabled(False)`` makes armed ticks no-ops without disarming

    The composing process owns exactly one instance.
    """

    def __init__(
        self,
        gateway: FixtureGateway,
        reconciler: FixtureReconciler,
        store: MatchStore,
        fanout: Fanout,
        settings: Settings | None = None,
        window: SyncWindow | None = None,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        event_insights: Optional[EventInsights] = None,
    ) -> None:
        self._gateway = gateway
        self._reconciler = reconciler
        self._store = store
        self._fanout = fanout
        self._settings = settings or get_settings()
        self._window = window or SyncWindow.from_settings(self._settings)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._event_insights = event_insights

        self._timer: Optional[RecurringTimer] = None
        self._initial_run: Optional[asyncio.Task[Any]] = None
        self._enabled = True
        self._last_sync_time: Optional[datetime] = None
        self._sync_count = 0
        self._error_count = 0

    # ── State machine ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def initial_run(self) -> Optional[asyncio.Task[Any]]:
        """The run fired by the last ``start()``, if any."""
        return self._initial_run

    def start(self) -> None:
        if self._timer is not None:
            logger.warning("match_sync_already_running")
            return

        self._timer = RecurringTimer(
            self._settings.sync_interval_s, self._scheduled_tick, name="match-sync"
        )
        self._timer.arm()
        self._initial_run = asyncio.create_task(self._guarded_run(), name="match-sync-initial")
        logger.info(
            "match_sync_started",
            interval_s=self._settings.sync_interval_s,
            window_start_hour=self._window.start_hour,
            window_end_hour=self._window.end_hour,
        )

    async def stop(self) -> None:
        if self._timer is None:
            return
        timer, self._timer = self._timer, None
        await timer.cancel()
        logger.info("match_sync_stopped")

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("match_sync_enabled" if enabled else "match_sync_disabled")

    def get_stats(self) -> SyncStats:
        since: Optional[int] = None
        if self._last_sync_time is not None:
            since = int((self._now() - self._last_sync_time).total_seconds())
        return SyncStats(
            is_enabled=self._enabled,
            is_running=self.is_running,
            last_sync_time=self._last_sync_time,
            sync_count=self._sync_count,
            error_count=self._error_count,
            seconds_since_last_sync=since,
        )

    async def sync_now(self) -> SyncSummary:
        """Run one today-sync immediately, outside the timer and window."""
        return await self._sync_today()

    # ── Recurring tick ──────────────────────────────────────────────────

    async def _scheduled_tick(self) -> None:
        if not self._enabled:
            logger.debug("match_sync_tick_skipped", reason="disabled")
            return
        if not self._window.is_active(self._now()):
            logger.debug("match_sync_tick_skipped", reason="outside_window")
            return
        await self._guarded_run()

    async def _guarded_run(self) -> Optional[SyncSummary]:
        try:
            return await self._sync_today()
        except Exception as exc:
            self._error_count += 1
            SYNC_TICKS.labels(kind="today", outcome="error").inc()
            logger.error("match_sync_tick_failed", error=str(exc), exc_info=True)
            return None

    @in_sync_run("today")
    async def _sync_today(self) -> SyncSummary:
        started = time.perf_counter()
        summary = SyncSummary()

        async with atrack_latency(SYNC_DURATION, kind="today"):
            fixtures = await self._gateway.fetch_today_fixtures()
            if not fixtures:
                logger.info("match_sync_no_fixtures")

            for fixture in fixtures:
                try:
                    updated = await self._sync_and_notify(fixture)
                except Exception as exc:
                    summary.errors += 1
                    FIXTURE_SYNC_ERRORS.labels(kind="today").inc()
                    logger.error(
                        "fixture_sync_failed",
                        fixture_id=fixture.get("id") if isinstance(fixture, dict) else None,
                        error=str(exc),
                    )
                    continue
                summary.synced += 1
                if updated:
                    summary.updated += 1

        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        self._last_sync_time = self._now()
        self._sync_count += 1
        SYNC_TICKS.labels(kind="today", outcome="ok").inc()
        logger.info(
            "match_sync_completed",
            synced=summary.synced,
            updated=summary.updated,
            errors=summary.errors,
            duration_ms=summary.duration_ms,
        )
        return summary

    async def _sync_and_notify(self, fixture: dict[str, Any]) -> bool:
        """Reconcile one fixture and emit its transitions. True when it changed."""
        result = await self._reconciler.sync_fixture(fixture)
        match = result.match
        changes = detect_changes(result.previous, match)
        teams = (match.home_team.id, match.away_team.id)

        if changes.any:
            logger.info(
                "match_updated",
                match_id=match.id,
                home=match.home_team.name,
                away=match.away_team.name,
                score=match.final_score,
                status=match.status.value,
            )
            await self._fanout.emit_match_update(match.id, match_update_payload(match), teams)

            if changes.just_started:
                logger.info("match_started", match_id=match.id)
                await self._fanout.emit_match_started(match.id, {"matchId": match.id}, teams)

            if changes.just_finished:
                logger.info("match_finished", match_id=match.id, score=match.final_score)
                await self._fanout.emit_match_ended(
                    match.id, {"matchId": match.id, "finalScore": match.final_score}, teams
                )

        # First observations replay the whole timeline; only later syncs announce events.
        if result.previous is not None:
            for event in result.new_events:
                await self._fanout.emit_match_event(
                    match.id, match_event_payload(match.id, event), teams
                )
                if event.event_type is EventType.GOAL:
                    await self._comment_on(match.id, event)

        return changes.any

    async def _comment_on(self, match_id: int, event: MatchEventRecord) -> None:
        """Best-effort goal commentary; a failed generation never fails the fixture."""
        if self._event_insights is None:
            return
        try:
            await self._event_insights.generate_event_insight(match_id, event)
        except Exception as exc:
            logger.warning(
                "event_insight_failed", match_id=match_id, minute=event.minute, error=str(exc)
            )

    # ── On-demand bulk runs ─────────────────────────────────────────────

    @in_sync_run("range")
    async def sync_date_range(self, date_from: date, date_to: date) -> SyncSummary:
        """
        Reconcile every fixture in ``[date_from, date_to]``. No change detection
        and no fan-out: this is a backfill path.
        """
        if date_from > date_to:
            raise ValueError("date_from must not be after date_to")

        started = time.perf_counter()
        summary = SyncSummary()
        logger.info("range_sync_started", date_from=date_from.isoformat(), date_to=date_to.isoformat())

        async with atrack_latency(SYNC_DURATION, kind="range"):
            fixtures = await self._gateway.fetch_fixtures_by_date_range(date_from, date_to)
            for fixture in fixtures:
                try:
                    result = await self._reconciler.sync_fixture(fixture)
                except Exception as exc:
                    summary.errors += 1
                    FIXTURE_SYNC_ERRORS.labels(kind="range").inc()
                    logger.error("fixture_sync_failed", fixture_id=fixture.get("id"), error=str(exc))
                    if is_rate_limit_error(exc):
                        await self._cool_down()
                    continue
                summary.synced += 1
                # The match row is stored but its timeline fetch hit the rate limit.
                if result.detail_rate_limited:
                    await self._cool_down()

        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        SYNC_TICKS.labels(kind="range", outcome="ok").inc()
        logger.info("range_sync_completed", synced=summary.synced, errors=summary.errors)
        return summary

    @in_sync_run("resync")
    async def resync_finished_matches(self, limit: int | None = None) -> SyncSummary:
        """
        Backfill timelines for finished matches stored without any events.
        Requests are spaced out to stay under the provider's per-minute budget.
        """
        started = time.perf_counter()
        summary = SyncSummary()
        match_ids = await self._store.finished_match_ids_without_events(limit)
        logger.info("resync_started", pending=len(match_ids))

        async with atrack_latency(SYNC_DURATION, kind="resync"):
            for match_id in match_ids:
                try:
                    fixture = await self._gateway.fetch_fixture_by_id(match_id)
                    result = await self._reconciler.sync_fixture(fixture)
                except Exception as exc:
                    summary.errors += 1
                    FIXTURE_SYNC_ERRORS.labels(kind="resync").inc()
                    logger.error("resync_match_failed", match_id=match_id, error=str(exc))
                    if is_rate_limit_error(exc):
                        await self._cool_down()
                    continue

                summary.synced += 1
                if result.new_events:
                    summary.updated += 1
                logger.info("resync_match_done", match_id=match_id, events=len(result.new_events))
                await self._sleep(self._settings.backfill_request_delay_s)

        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        SYNC_TICKS.labels(kind="resync", outcome="ok").inc()
        logger.info("resync_completed", synced=summary.synced, failed=summary.errors)
        return summary

    async def _cool_down(self) -> None:
        logger.warning("rate_limit_cooldown", seconds=self._settings.rate_limit_cooldown_s)
        await self._sleep(self._settings.rate_limit_cooldown_s)
