"""
Tests for the football-data gateway: cache-first reads, TTL selection,
degradation of listing reads, and the team search fan-in.

Run: pytest backend/tests/test_gateway.py -v
"""
from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from shared.config import Settings
from shared.utils.http_client import ProviderError, ProviderHTTPClient, RateLimitedError
from shared.utils.redis_manager import (
    TTL_FIXTURE_FINISHED,
    TTL_FIXTURE_IN_PROGRESS,
    TTL_LIVE_LISTING,
    TTL_TEAM,
)
from ingest.providers.football_data import FootballDataGateway, build_http_client

from conftest import make_fixture, make_team

TODAY = date(2026, 10, 18)


@pytest.fixture
def http():
    client = MagicMock()
    client.get_json = AsyncMock()
    return client


@pytest.fixture
def settings():
    return Settings(major_competitions=["PL", "PD", "SA"], football_data_api_key="secret")


@pytest.fixture
def football_data(http, cache, settings):
    return FootballDataGateway(http, cache, settings, today=lambda: TODAY)


# ── Client construction ─────────────────────────────────────────────────

def test_http_client_carries_auth_headers(settings):
    client = build_http_client(settings)
    assert client._default_headers["X-Auth-Token"] == "secret"
    assert client._default_headers["X-Unfold-Lineups"] == "true"


def test_http_client_without_key_sends_no_token():
    client = build_http_client(Settings(football_data_api_key=""))
    assert "X-Auth-Token" not in client._default_headers


# ── Today's fixtures ────────────────────────────────────────────────────

class TestTodayFixtures:
    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, football_data, http, cache):
        http.get_json.return_value = {"matches": [make_fixture()]}

        fixtures = await football_data.fetch_today_fixtures()

        assert [f["id"] for f in fixtures] == [501]
        http.get_json.assert_awaited_once_with("/matches", params={"date": "2026-10-18"}, endpoint="matches")
        assert cache.ttls["matches:live"] == TTL_LIVE_LISTING

    @pytest.mark.asyncio
    async def test_hit_skips_provider(self, football_data, http, cache):
        await cache.set_json("matches:live", [make_fixture()])
        fixtures = await football_data.fetch_today_fixtures()
        assert fixtures[0]["id"] == 501
        http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_degrades_to_empty(self, football_data, http, cache):
        http.get_json.side_effect = ProviderError("football_data", "/matches", "server error 503", 503)
        assert await football_data.fetch_today_fixtures() == []
        assert "matches:live" not in cache.data

    @pytest.mark.asyncio
    async def test_missing_matches_field(self, football_data, http):
        http.get_json.return_value = {}
        assert await football_data.fetch_today_fixtures() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["not", "an", "object"], {"matches": "oops"}, "maintenance"])
    async def test_unexpected_body_shape_degrades(self, football_data, http, cache, body):
        http.get_json.return_value = body
        assert await football_data.fetch_today_fixtures() == []
        assert "matches:live" not in cache.data

    @pytest.mark.asyncio
    async def test_html_maintenance_page_degrades(self, cache, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        client = ProviderHTTPClient(
            "football_data", "https://api.example.test/v4", transport=httpx.MockTransport(handler)
        )
        await client.start()
        try:
            gateway = FootballDataGateway(client, cache, settings, today=lambda: TODAY)
            assert await gateway.fetch_today_fixtures() == []
            assert await gateway.fetch_fixtures_by_date_range(TODAY, TODAY) == []
        finally:
            await client.close()


# ── Single fixture ──────────────────────────────────────────────────────

class TestFixtureById:
    @pytest.mark.asyncio
    async def test_finished_fixture_cached_for_an_hour(self, football_data, http, cache):
        http.get_json.return_value = make_fixture(status="FINISHED")
        await football_data.fetch_fixture_by_id(501)
        assert cache.ttls["match:501"] == TTL_FIXTURE_FINISHED

    @pytest.mark.asyncio
    async def test_running_fixture_cached_briefly(self, football_data, http, cache):
        http.get_json.return_value = make_fixture(status="IN_PLAY")
        await football_data.fetch_fixture_by_id(501)
        assert cache.ttls["match:501"] == TTL_FIXTURE_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_errors_propagate(self, football_data, http):
        http.get_json.side_effect = RateLimitedError("football_data", "/matches/501")
        with pytest.raises(RateLimitedError):
            await football_data.fetch_fixture_by_id(501)

    @pytest.mark.asyncio
    async def test_cached_fixture_returned(self, football_data, http, cache):
        await cache.set_json("match:501", make_fixture(status="PAUSED"))
        fixture = await football_data.fetch_fixture_by_id(501)
        assert fixture["status"] == "PAUSED"
        http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_object_detail_raises_provider_error(self, football_data, http, cache):
        http.get_json.return_value = [make_fixture()]
        with pytest.raises(ProviderError):
            await football_data.fetch_fixture_by_id(501)
        assert "match:501" not in cache.data


# ── Range and teams ─────────────────────────────────────────────────────

class TestRangeAndTeams:
    @pytest.mark.asyncio
    async def test_range_params_and_cache_key(self, football_data, http, cache):
        http.get_json.return_value = {"matches": [make_fixture(), make_fixture(fixture_id=502)]}

        fixtures = await football_data.fetch_fixtures_by_date_range(date(2026, 10, 1), date(2026, 10, 7))

        assert len(fixtures) == 2
        http.get_json.assert_awaited_once_with(
            "/matches", params={"dateFrom": "2026-10-01", "dateTo": "2026-10-07"}, endpoint="matches"
        )
        assert cache.ttls["matches:range:2026-10-01:2026-10-07"] == TTL_LIVE_LISTING

    @pytest.mark.asyncio
    async def test_range_failure_degrades(self, football_data, http):
        http.get_json.side_effect = ProviderError("football_data", "/matches", "timeout")
        assert await football_data.fetch_fixtures_by_date_range(TODAY, TODAY) == []

    @pytest.mark.asyncio
    async def test_team_cached_for_a_day(self, football_data, http, cache):
        http.get_json.return_value = make_team(57, "Arsenal FC")
        team = await football_data.fetch_team_by_id(57)
        assert team["name"] == "Arsenal FC"
        assert cache.ttls["team:57"] == TTL_TEAM

    @pytest.mark.asyncio
    async def test_team_errors_propagate(self, football_data, http):
        http.get_json.side_effect = ProviderError("football_data", "/teams/57", "client error 404", 404)
        with pytest.raises(ProviderError):
            await football_data.fetch_team_by_id(57)

    @pytest.mark.asyncio
    async def test_competitions_degrade(self, football_data, http):
        http.get_json.side_effect = ProviderError("football_data", "/competitions", "server error 500", 500)
        assert await football_data.fetch_competitions() == []


# ── Team search ─────────────────────────────────────────────────────────

class TestTeamSearch:
    @pytest.mark.asyncio
    async def test_blank_query_makes_no_calls(self, football_data, http):
        assert await football_data.search_teams("   ") == []
        http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_filters_and_dedupes_across_competitions(self, football_data, http, cache):
        http.get_json.side_effect = [
            {"teams": [make_team(64, "Liverpool FC"), make_team(57, "Arsenal FC")]},
            {"teams": [make_team(86, "Real Madrid CF")]},
            # Liverpool again, as a Champions League entrant listed elsewhere.
            {"teams": [make_team(64, "Liverpool FC")]},
        ]

        teams = await football_data.search_teams("  LIVER ")

        assert [t["id"] for t in teams] == [64]
        assert cache.ttls["teams:search:liver"] == TTL_TEAM

    @pytest.mark.asyncio
    async def test_failing_competition_is_skipped(self, football_data, http):
        http.get_json.side_effect = [
            ProviderError("football_data", "/competitions/PL/teams", "server error 502", 502),
            {"teams": [make_team(86, "Real Madrid CF")]},
            {"teams": []},
        ]
        teams = await football_data.search_teams("madrid")
        assert [t["name"] for t in teams] == ["Real Madrid CF"]
        assert http.get_json.await_count == 3

    @pytest.mark.asyncio
    async def test_total_outage_is_not_cached(self, football_data, http, cache):
        http.get_json.side_effect = ProviderError("football_data", "/competitions", "server error 503", 503)
        assert await football_data.search_teams("arsenal") == []
        assert "teams:search:arsenal" not in cache.data
