"""
Fixture reconciliation for the ingest path.
Takes one upstream football-data fixture and brings the store in line with it:
teams, the match row, lineups, statistics and the event timeline.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from shared.models.domain import (
    LineupEntry,
    MatchEventRecord,
    MatchStatisticsRecord,
    MatchWrite,
    SyncResult,
    TeamWrite,
)
from shared.models.enums import EventType, MatchStatus
from shared.store.base import MatchStore
from shared.utils.http_client import is_rate_limit_error
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class FixtureSource(Protocol):
    async def fetch_fixture_by_id(self, fixture_id: int) -> dict[str, Any]: ...


# Upstream status strings. The short codes are the legacy feed's vocabulary
# and are still accepted.
STATUS_MAP: dict[str, MatchStatus] = {
    "SCHEDULED": MatchStatus.NOT_STARTED,
    "TIMED": MatchStatus.NOT_STARTED,
    "IN_PLAY": MatchStatus.LIVE,
    "PAUSED": MatchStatus.HALF_TIME,
    "FINISHED": MatchStatus.FULL_TIME,
    "SUSPENDED": MatchStatus.POSTPONED,
    "POSTPONED": MatchStatus.POSTPONED,
    "CANCELLED": MatchStatus.CANCELLED,
    "AWARDED": MatchStatus.FULL_TIME,
    "NS": MatchStatus.NOT_STARTED,
    "1H": MatchStatus.LIVE,
    "HT": MatchStatus.HALF_TIME,
    "2H": MatchStatus.LIVE,
    "ET": MatchStatus.LIVE,
    "P": MatchStatus.LIVE,
    "FT": MatchStatus.FULL_TIME,
    "AET": MatchStatus.FULL_TIME,
    "PEN": MatchStatus.FULL_TIME,
    "PST": MatchStatus.POSTPONED,
    "CANC": MatchStatus.CANCELLED,
    "ABD": MatchStatus.CANCELLED,
    "AWD": MatchStatus.FULL_TIME,
    "WO": MatchStatus.FULL_TIME,
    "TBD": MatchStatus.TO_BE_DEFINED,
}

# Upstream statistic key -> column suffix on MatchStatisticsRecord.
STAT_KEYS: dict[str, str] = {
    "BALL_POSSESSION": "possession",
    "SHOTS": "shots_total",
    "SHOTS_ON_GOAL": "shots_on_target",
    "SHOTS_OFF_GOAL": "shots_off_target",
    "CORNER_KICKS": "corner_kicks",
    "FOULS": "fouls",
    "OFFSIDES": "offsides",
    "YELLOW_CARDS": "yellow_cards",
    "RED_CARDS": "red_cards",
    "SAVES": "saves",
}


def map_status(raw: Optional[str]) -> MatchStatus:
    """Normalize an upstream status string. Unknown or missing values are NOT_STARTED."""
    return STATUS_MAP.get(raw or "", MatchStatus.NOT_STARTED)


def parse_utc(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def estimate_elapsed(fixture: dict[str, Any], now: datetime) -> Optional[int]:
    """Whole minutes since kickoff for in-play fixtures, never negative."""
    if map_status(fixture.get("status")) != MatchStatus.LIVE or not fixture.get("utcDate"):
        return None
    seconds = (now - parse_utc(fixture["utcDate"])).total_seconds()
    return max(0, int(seconds // 60))


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().rstrip("%")
    try:
        return int(float(text))
    except ValueError:
        return None


def _stat_values(block: Any) -> dict[str, Any]:
    # The feed has shipped both [{"type": ..., "value": ...}] and a flat mapping.
    if isinstance(block, dict):
        return {str(k).upper(): v for k, v in block.items()}
    values: dict[str, Any] = {}
    for item in block or []:
        if isinstance(item, dict) and item.get("type"):
            values[str(item["type"]).upper()] = item.get("value")
    return values


def build_team(raw: dict[str, Any]) -> TeamWrite:
    return TeamWrite(
        id=raw["id"],
        name=raw.get("name") or raw.get("shortName") or f"Team {raw['id']}",
        short_name=raw.get("shortName") or raw.get("tla"),
        logo_url=raw.get("crest") or raw.get("logo"),
        country=(raw.get("area") or {}).get("name"),
    )


def build_match(fixture: dict[str, Any], now: datetime) -> MatchWrite:
    home = fixture["homeTeam"]
    away = fixture["awayTeam"]
    competition = fixture.get("competition") or {}
    score = fixture.get("score") or {}
    full_time = score.get("fullTime") or {}
    half_time = score.get("halfTime") or {}
    referee = next(
        (r.get("name") for r in fixture.get("referees") or [] if r.get("type") == "REFEREE"),
        None,
    )
    return MatchWrite(
        id=fixture["id"],
        home_team_id=home["id"],
        away_team_id=away["id"],
        league_id=competition.get("id") or 0,
        league_name=competition.get("name") or "Unknown",
        match_date=parse_utc(fixture["utcDate"]),
        status=map_status(fixture.get("status")),
        home_score=full_time.get("home") or 0,
        away_score=full_time.get("away") or 0,
        half_time_home_score=half_time.get("home"),
        half_time_away_score=half_time.get("away"),
        venue=fixture.get("venue"),
        attendance=fixture.get("attendance"),
        referee=referee,
        home_formation=home.get("formation"),
        away_formation=away.get("formation"),
        home_coach=(home.get("coach") or {}).get("name"),
        away_coach=(away.get("coach") or {}).get("name"),
        elapsed_time=estimate_elapsed(fixture, now),
    )


def build_lineups(home: dict[str, Any], away: dict[str, Any]) -> list[LineupEntry]:
    entries: list[LineupEntry] = []
    for team in (home, away):
        for key, starting in (("lineup", True), ("bench", False)):
            for player in team.get(key) or []:
                if not player.get("name"):
                    continue
                entries.append(
                    LineupEntry(
                        team_id=team["id"],
                        player_name=player["name"],
                        shirt_number=player.get("shirtNumber"),
                        position=player.get("position"),
                        is_starting=starting,
                    )
                )
    return entries


def build_statistics(home_block: Any, away_block: Any) -> MatchStatisticsRecord:
    home = _stat_values(home_block)
    away = _stat_values(away_block)
    fields: dict[str, Optional[int]] = {}
    for upstream_key, column in STAT_KEYS.items():
        fields[f"home_{column}"] = _coerce_int(home.get(upstream_key))
        fields[f"away_{column}"] = _coerce_int(away.get(upstream_key))
    return MatchStatisticsRecord(**fields)


def build_events(detail: dict[str, Any]) -> list[MatchEventRecord]:
    """Flatten goals, bookings and substitutions into one timeline."""
    events: list[MatchEventRecord] = []

    for goal in detail.get("goals") or []:
        events.append(
            MatchEventRecord(
                event_type=EventType.GOAL,
                team_id=(goal.get("team") or {}).get("id"),
                minute=goal.get("minute"),
                injury_time=goal.get("injuryTime"),
                player_name=(goal.get("scorer") or {}).get("name"),
                assist_name=(goal.get("assist") or {}).get("name"),
                detail=goal.get("type"),
            )
        )

    for booking in detail.get("bookings") or []:
        events.append(
            MatchEventRecord(
                event_type=EventType.CARD,
                team_id=(booking.get("team") or {}).get("id"),
                minute=booking.get("minute"),
                injury_time=booking.get("injuryTime"),
                player_name=(booking.get("player") or {}).get("name"),
                detail=booking.get("card"),
            )
        )

    for sub in detail.get("substitutions") or []:
        player_in = (sub.get("playerIn") or {}).get("name")
        player_out = (sub.get("playerOut") or {}).get("name")
        events.append(
            MatchEventRecord(
                event_type=EventType.SUBSTITUTION,
                team_id=(sub.get("team") or {}).get("id"),
                minute=sub.get("minute"),
                injury_time=sub.get("injuryTime"),
                player_name=player_in,
                assist_name=player_out,
                detail=f"{player_out} → {player_in}",
            )
        )

    return events


def _has_timeline(detail: dict[str, Any]) -> bool:
    return any(detail.get(key) for key in ("goals", "bookings", "substitutions"))


class FixtureReconciler:
    """
    Applies one upstream fixture to the store.

    Responsibilities:
    - Upsert both teams (major flag set on creation only)
    - Upsert the match, refreshing only mutable fields on existing rows
    - Replace lineups, upsert statistics when the fixture carries them
    - For in-progress and finished matches, pull the detail record and replace events

    Concurrent syncs of the same fixture are serialized so a manual trigger and
    a scheduled tick cannot interleave their child replacements.
    """

    def __init__(
        self,
        store: MatchStore,
        source: FixtureSource,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._source = source
        self._now = now or (lambda: datetime.now(timezone.utc))
        # fixture id -> (lock, callers holding or awaiting it)
        self._locks: dict[int, tuple[asyncio.Lock, int]] = {}

    @property
    def locked_fixtures(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _serialized(self, match_id: int) -> AsyncIterator[None]:
        lock, users = self._locks.get(match_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[match_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[match_id]
            if users == 1:
                del self._locks[match_id]
            else:
                self._locks[match_id] = (lock, users - 1)

    async def sync_fixture(self, fixture: dict[str, Any]) -> SyncResult:
        """
        Reconcile one fixture and report what the store looked like before.

        Raises on malformed fixtures and store failures. A failing detail fetch
        is logged and leaves the stored events untouched; when the failure was
        the upstream rate limit, the result says so.
        """
        match_id = fixture["id"]
        async with self._serialized(match_id):
            previous = await self._store.get_match(match_id)

            home_raw = fixture["homeTeam"]
            away_raw = fixture["awayTeam"]
            await self._store.upsert_team(build_team(home_raw), is_major=True)
            await self._store.upsert_team(build_team(away_raw), is_major=True)

            match = await self._store.upsert_match(build_match(fixture, self._now()))

            if home_raw.get("lineup") or away_raw.get("lineup"):
                count = await self._store.replace_lineups(
                    match_id, build_lineups(home_raw, away_raw)
                )
                logger.debug("lineups_replaced", match_id=match_id, players=count)

            if home_raw.get("statistics") or away_raw.get("statistics"):
                await self._store.upsert_statistics(
                    match_id,
                    build_statistics(home_raw.get("statistics"), away_raw.get("statistics")),
                )

            result = SyncResult(previous=previous, match=match)
            if match.status.needs_detail:
                await self._sync_events(result)
            return result

    async def _sync_events(self, result: SyncResult) -> None:
        match_id = result.match.id
        try:
            detail = await self._source.fetch_fixture_by_id(match_id)
        except Exception as exc:
            result.detail_rate_limited = is_rate_limit_error(exc)
            logger.warning(
                "fixture_detail_fetch_failed",
                match_id=match_id,
                rate_limited=result.detail_rate_limited,
                error=str(exc),
            )
            return

        if not _has_timeline(detail):
            return

        events = build_events(detail)
        replaced = await self._store.replace_events(match_id, events)
        known = {event.fingerprint for event in replaced}
        result.new_events = [event for event in events if event.fingerprint not in known]
        logger.debug(
            "events_replaced",
            match_id=match_id,
            goals=len(detail.get("goals") or []),
            bookings=len(detail.get("bookings") or []),
            substitutions=len(detail.get("substitutions") or []),
            new=len(result.new_events),
        )
