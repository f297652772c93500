"""
Football-Data.org (football-data.org) gateway.
Soccer only: fixture listings, fixture detail (goals/bookings/substitutions), teams.
Uses v4 API with X-Auth-Token. Free tier: 10 requests/min, so every read is cache-first.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable

from shared.config import Settings, get_settings
from shared.utils.http_client import ProviderError, ProviderHTTPClient
from shared.utils.logging import get_logger
from shared.utils.redis_manager import (
    LIVE_MATCHES_KEY,
    MATCH_KEY,
    MATCH_RANGE_KEY,
    TEAM_KEY,
    TEAM_SEARCH_KEY,
    TTL_FIXTURE_FINISHED,
    TTL_FIXTURE_IN_PROGRESS,
    TTL_LIVE_LISTING,
    TTL_TEAM,
    Cache,
    fmt_key,
)

logger = get_logger(__name__)

PROVIDER_NAME = "football_data"

UpstreamFixture = dict[str, Any]
UpstreamTeam = dict[str, Any]


def _listed(data: Any, field: str) -> list[dict[str, Any]] | None:
    """The ``field`` array of a listing body, or None when the body has another shape."""
    if not isinstance(data, dict):
        return None
    items = data.get(field) or []
    return list(items) if isinstance(items, list) else None


def _expect_object(data: Any, path: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProviderError(PROVIDER_NAME, path, f"expected a JSON object, got {type(data).__name__}")
    return data


def build_http_client(settings: Settings | None = None) -> ProviderHTTPClient:
    """HTTP client preconfigured with the football-data auth headers."""
    settings = settings or get_settings()
    headers: dict[str, str] = {"X-Unfold-Lineups": "true"}
    if settings.football_data_api_key:
        headers["X-Auth-Token"] = settings.football_data_api_key
    return ProviderHTTPClient(
        provider_name=PROVIDER_NAME,
        base_url=settings.football_data_base_url,
        headers=headers,
        timeout_s=settings.provider_request_timeout_s,
        max_retries=settings.provider_max_retries,
    )


class FootballDataGateway:
    """
    Cache-first reads against football-data.org v4.

    Listing reads degrade to an empty list when the provider fails; single
    fixture and team lookups raise, so callers can tell "missing" from "failed".
    Rate-limit rejections surface as RateLimitedError.
    """

    def __init__(
        self,
        http: ProviderHTTPClient,
        cache: Cache,
        settings: Settings | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._http = http
        self._cache = cache
        self._settings = settings or get_settings()
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    async def fetch_today_fixtures(self) -> list[UpstreamFixture]:
        cached = await self._cache.get_json(LIVE_MATCHES_KEY)
        if cached is not None:
            logger.debug("today_fixtures_cache_hit", count=len(cached))
            return cached

        day = self._today().isoformat()
        try:
            data = await self._http.get_json("/matches", params={"date": day}, endpoint="matches")
        except ProviderError as exc:
            logger.error("today_fixtures_fetch_failed", date=day, error=str(exc))
            return []

        fixtures = _listed(data, "matches")
        if fixtures is None:
            logger.error("today_fixtures_unexpected_body", date=day)
            return []
        await self._cache.set_json(LIVE_MATCHES_KEY, fixtures, TTL_LIVE_LISTING)
        return fixtures

    async def fetch_fixture_by_id(self, fixture_id: int) -> UpstreamFixture:
        key = fmt_key(MATCH_KEY, match_id=fixture_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached

        path = f"/matches/{fixture_id}"
        fixture = _expect_object(await self._http.get_json(path, endpoint="match"), path)
        ttl = TTL_FIXTURE_FINISHED if fixture.get("status") == "FINISHED" else TTL_FIXTURE_IN_PROGRESS
        await self._cache.set_json(key, fixture, ttl)
        return fixture

    async def fetch_fixtures_by_date_range(
        self, date_from: date, date_to: date
    ) -> list[UpstreamFixture]:
        key = fmt_key(MATCH_RANGE_KEY, date_from=date_from.isoformat(), date_to=date_to.isoformat())
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached

        try:
            data = await self._http.get_json(
                "/matches",
                params={"dateFrom": date_from.isoformat(), "dateTo": date_to.isoformat()},
                endpoint="matches",
            )
        except ProviderError as exc:
            logger.error(
                "range_fixtures_fetch_failed",
                date_from=date_from.isoformat(),
                date_to=date_to.isoformat(),
                error=str(exc),
            )
            return []

        fixtures = _listed(data, "matches")
        if fixtures is None:
            logger.error(
                "range_fixtures_unexpected_body",
                date_from=date_from.isoformat(),
                date_to=date_to.isoformat(),
            )
            return []
        await self._cache.set_json(key, fixtures, TTL_LIVE_LISTING)
        return fixtures

    async def fetch_team_by_id(self, team_id: int) -> UpstreamTeam:
        key = fmt_key(TEAM_KEY, team_id=team_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached

        path = f"/teams/{team_id}"
        team = _expect_object(await self._http.get_json(path, endpoint="team"), path)
        await self._cache.set_json(key, team, TTL_TEAM)
        return team

    async def fetch_competitions(self) -> list[dict[str, Any]]:
        try:
            data = await self._http.get_json("/competitions", endpoint="competitions")
        except ProviderError as exc:
            logger.error("competitions_fetch_failed", error=str(exc))
            return []
        competitions = _listed(data, "competitions")
        if competitions is None:
            logger.error("competitions_unexpected_body")
            return []
        return competitions

    async def search_teams(self, query: str) -> list[UpstreamTeam]:
        """
        Case-insensitive name search across the major competitions.

        The provider has no search endpoint, so each competition's team list is
        fetched and filtered locally. One failing competition is skipped.
        """
        needle = query.strip().lower()
        if not needle:
            return []

        key = fmt_key(TEAM_SEARCH_KEY, query=needle)
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached

        teams: list[UpstreamTeam] = []
        for code in self._settings.major_competitions:
            try:
                data = await self._http.get_json(
                    f"/competitions/{code}/teams", endpoint="competition_teams"
                )
            except ProviderError as exc:
                logger.warning("competition_teams_fetch_failed", competition=code, error=str(exc))
                continue
            squad = _listed(data, "teams")
            if squad is None:
                logger.warning("competition_teams_unexpected_body", competition=code)
                continue
            teams.extend(squad)

        seen: set[int] = set()
        matches: list[UpstreamTeam] = []
        for team in teams:
            if needle in (team.get("name") or "").lower() and team.get("id") not in seen:
                seen.add(team["id"])
                matches.append(team)

        if teams:
            await self._cache.set_json(key, matches, TTL_TEAM)
        return matches
