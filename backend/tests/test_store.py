"""
Tests for the PostgreSQL store: the upsert and listing statements compiled
with the PostgreSQL dialect, child replacement against a recording session,
and (when LF_TEST_DATABASE_URL points at a scratch database) the real thing.

Run: pytest backend/tests/test_store.py -v
"""
from __future__ import annotations

import os
import re
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.dialects import postgresql

from shared.config import Settings
from shared.models.domain import (
    MATCH_MUTABLE_FIELDS,
    FollowPreferences,
    MatchEventRecord,
    MatchQuery,
    MatchStatisticsRecord,
    MatchWrite,
    TeamWrite,
)
from shared.models.enums import EventType, MatchStatus
from shared.models.orm import Base, MatchEventORM
from shared.store.postgres import (
    SqlMatchStore,
    follow_upsert,
    lock_match,
    match_listing,
    match_upsert,
    statistics_upsert,
    team_upsert,
)
from shared.utils.database import DatabaseManager

from conftest import KICKOFF

DIALECT = postgresql.dialect()


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=DIALECT))


def _conflict_set(stmt) -> tuple[str, set[str]]:
    """The ON CONFLICT .. DO UPDATE SET clause and the columns it assigns."""
    clause = _sql(stmt).split("DO UPDATE SET", 1)[1]
    clause = re.split(r"\sRETURNING\s", clause, maxsplit=1)[0].strip()
    return clause, set(re.findall(r"(?:^|, )(\w+) = ", clause))


def _match(**overrides: Any) -> MatchWrite:
    values: dict[str, Any] = {
        "id": 501,
        "home_team_id": 57,
        "away_team_id": 61,
        "league_id": 2021,
        "league_name": "Premier League",
        "match_date": KICKOFF,
        "venue": "Emirates Stadium",
    }
    values.update(overrides)
    return MatchWrite(**values)


def _goal(minute: int, scorer: str) -> MatchEventRecord:
    return MatchEventRecord(event_type=EventType.GOAL, team_id=57, minute=minute, player_name=scorer)


# ── Upsert statements ───────────────────────────────────────────────────

class TestUpsertStatements:
    def test_team_keeps_major_flag_on_conflict(self):
        stmt = team_upsert(TeamWrite(id=57, name="Arsenal FC"), is_major=True)
        clause, columns = _conflict_set(stmt)

        assert "ON CONFLICT (id)" in _sql(stmt)
        assert columns == {"name", "logo_url", "short_name", "country", "updated_at"}
        assert "is_major" not in columns
        # Missing optional fields never blank stored ones.
        assert "coalesce(excluded.short_name, teams.short_name)" in clause
        assert "coalesce(excluded.country, teams.country)" in clause
        assert "RETURNING" in _sql(stmt)

    def test_match_refreshes_only_mutable_fields(self):
        clause, columns = _conflict_set(match_upsert(_match()))

        assert columns == set(MATCH_MUTABLE_FIELDS) | {"last_updated"}
        for fixed in ("match_date", "venue", "league_id", "league_name", "home_team_id", "is_major_match"):
            assert fixed not in columns

    def test_match_last_updated_moves_only_on_change(self):
        clause, _ = _conflict_set(match_upsert(_match()))

        assert "last_updated = CASE WHEN" in clause
        assert "matches.home_score IS DISTINCT FROM excluded.home_score" in clause
        assert "matches.status IS DISTINCT FROM excluded.status" in clause
        assert "ELSE matches.last_updated END" in clause

    def test_match_insert_stores_status_code(self):
        compiled = match_upsert(_match(status=MatchStatus.LIVE)).compile(dialect=DIALECT)
        assert compiled.params["status"] == "LIVE"
        assert compiled.params["is_major_match"] is True

    def test_statistics_overwrite_every_column(self):
        stmt = statistics_upsert(501, MatchStatisticsRecord(home_possession=55, away_possession=45))
        _, columns = _conflict_set(stmt)

        assert "ON CONFLICT (match_id)" in _sql(stmt)
        assert columns == set(MatchStatisticsRecord.model_fields) | {"updated_at"}

    def test_follow_updates_preferences_on_constraint(self):
        stmt = follow_upsert("user-1", 57, FollowPreferences(notify_goals=False))
        _, columns = _conflict_set(stmt)

        assert "ON CONFLICT ON CONSTRAINT uq_team_follow" in _sql(stmt)
        assert columns == set(FollowPreferences.model_fields)

    def test_lock_takes_row_lock(self):
        assert _sql(lock_match(501)).endswith("FOR UPDATE")


# ── Listing ─────────────────────────────────────────────────────────────

class TestMatchListing:
    def test_defaults_to_major_matches_newest_first(self):
        count_stmt, page_stmt = match_listing(MatchQuery())
        sql = _sql(page_stmt)

        assert "matches.is_major_match IS true" in sql
        assert "ORDER BY matches.match_date DESC, matches.status ASC" in sql
        assert "count(*)" in _sql(count_stmt)

    def test_search_covers_both_teams_and_league(self):
        _, page_stmt = match_listing(MatchQuery(search="Arsenal"))
        compiled = page_stmt.compile(dialect=DIALECT)

        assert str(compiled).count("ILIKE") == 3
        assert list(compiled.params.values()).count("%Arsenal%") == 3

    def test_filters_and_paging(self):
        query = MatchQuery(
            league_id=2021, status=MatchStatus.LIVE, on_date=date(2026, 10, 18), page=3, limit=10
        )
        _, page_stmt = match_listing(query)
        compiled = page_stmt.compile(dialect=DIALECT)
        params = list(compiled.params.values())

        assert 2021 in params
        assert "LIVE" in params
        assert KICKOFF.replace(hour=0) in params
        assert KICKOFF.replace(hour=0) + timedelta(days=1) in params
        assert "LIMIT" in str(compiled) and "OFFSET" in str(compiled)
        assert 10 in params and 20 in params


# ── Child replacement ───────────────────────────────────────────────────

class _Scalars:
    def __init__(self, rows: list[Any]) -> None:
        self._rows = rows

    def all(self) -> list[Any]:
        return self._rows


class RecordingSession:
    """Records the SQL each call would run; ``scalars`` serves canned rows."""

    def __init__(self, rows: list[Any]) -> None:
        self.rows = rows
        self.calls: list[tuple[str, Any]] = []

    async def execute(self, stmt, params: Any = None) -> None:
        self.calls.append((_sql(stmt), params))

    async def scalars(self, stmt) -> _Scalars:
        self.calls.append((_sql(stmt), None))
        return _Scalars(self.rows)


class RecordingDatabase:
    def __init__(self, rows: list[Any] | None = None) -> None:
        self.session = RecordingSession(rows or [])
        self.writes = 0

    @asynccontextmanager
    async def write_session(self):
        self.writes += 1
        yield self.session


class TestChildReplacement:
    @pytest.mark.asyncio
    async def test_replace_events_locks_then_swaps(self):
        stored = [
            MatchEventORM(match_id=501, event_type="Goal", team_id=57, minute=12, player_name="Saka"),
        ]
        db = RecordingDatabase(stored)
        store = SqlMatchStore(db)  # type: ignore[arg-type]

        replaced = await store.replace_events(501, [_goal(12, "Saka"), _goal(70, "Havertz")])

        assert db.writes == 1
        statements = [sql for sql, _ in db.session.calls]
        assert statements[0].endswith("FOR UPDATE")
        assert statements[1].startswith("SELECT match_events.")
        assert statements[2].startswith("DELETE FROM match_events")
        assert statements[3].startswith("INSERT INTO match_events")

        rows = db.session.calls[3][1]
        assert [r["player_name"] for r in rows] == ["Saka", "Havertz"]
        assert all(r["match_id"] == 501 and r["event_type"] == "Goal" for r in rows)
        assert replaced == [_goal(12, "Saka")]

    @pytest.mark.asyncio
    async def test_replace_with_nothing_skips_insert(self):
        db = RecordingDatabase()
        store = SqlMatchStore(db)  # type: ignore[arg-type]

        assert await store.replace_events(501, []) == []
        assert await store.replace_lineups(501, []) == 0

        statements = [sql for sql, _ in db.session.calls]
        assert not any(s.startswith("INSERT") for s in statements)
        assert sum(s.endswith("FOR UPDATE") for s in statements) == 2


# ── Against PostgreSQL ──────────────────────────────────────────────────

TEST_DATABASE_URL = os.getenv("LF_TEST_DATABASE_URL")


@pytest_asyncio.fixture
async def pg_store():
    db = DatabaseManager(Settings(database_url=TEST_DATABASE_URL))
    await db.connect()
    await db.create_schema()
    try:
        yield SqlMatchStore(db)
    finally:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await db.disconnect()


@pytest.mark.skipif(not TEST_DATABASE_URL, reason="LF_TEST_DATABASE_URL not set")
class TestAgainstPostgres:
    @pytest.mark.asyncio
    async def test_team_major_flag_survives_minor_sighting(self, pg_store):
        await pg_store.upsert_team(TeamWrite(id=57, name="Arsenal", short_name="ARS"), is_major=True)
        team = await pg_store.upsert_team(TeamWrite(id=57, name="Arsenal FC"), is_major=False)

        assert team.is_major is True
        assert team.name == "Arsenal FC"
        assert team.short_name == "ARS"

    @pytest.mark.asyncio
    async def test_match_last_updated_tracks_real_changes(self, pg_store):
        for team_id, name in ((57, "Arsenal"), (61, "Chelsea")):
            await pg_store.upsert_team(TeamWrite(id=team_id, name=name), is_major=True)

        first = await pg_store.upsert_match(_match())
        same = await pg_store.upsert_match(_match(venue="Somewhere Else"))
        scored = await pg_store.upsert_match(_match(status=MatchStatus.LIVE, home_score=1))

        assert same.last_updated == first.last_updated
        assert same.venue == "Emirates Stadium"
        assert scored.last_updated > first.last_updated
        assert scored.home_score == 1

    @pytest.mark.asyncio
    async def test_replace_events_returns_previous_timeline(self, pg_store):
        for team_id, name in ((57, "Arsenal"), (61, "Chelsea")):
            await pg_store.upsert_team(TeamWrite(id=team_id, name=name), is_major=True)
        await pg_store.upsert_match(_match())

        assert await pg_store.replace_events(501, [_goal(12, "Saka")]) == []
        previous = await pg_store.replace_events(501, [_goal(12, "Saka"), _goal(70, "Havertz")])

        assert previous == [_goal(12, "Saka")]
        detail = await pg_store.get_match_detail(501)
        assert [e.player_name for e in detail.events] == ["Saka", "Havertz"]
