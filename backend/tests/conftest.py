"""
Shared fixtures and in-memory fakes.

The fakes implement the same interfaces the services depend on (MatchStore,
the Cache protocol, the gateway and fan-out surfaces), so unit tests run
without Postgres, Redis or the network.
"""
from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from starlette.websockets import WebSocketDisconnect, WebSocketState

from shared.models.domain import (
    MATCH_MUTABLE_FIELDS,
    FollowPreferences,
    InsightRecord,
    LineupEntry,
    MatchDetail,
    MatchEventRecord,
    MatchPage,
    MatchQuery,
    MatchRecord,
    MatchStatisticsRecord,
    MatchWrite,
    Pagination,
    TeamFollowRecord,
    TeamOut,
    TeamWrite,
    utcnow,
)
from shared.models.enums import MatchStatus
from shared.store.base import MatchStore

KICKOFF = datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)


# ── Upstream payload builders ───────────────────────────────────────────

def make_team(team_id: int, name: str, **extra: Any) -> dict[str, Any]:
    team = {"id": team_id, "name": name, "shortName": name.split()[0], "crest": f"https://crests/{team_id}.png"}
    team.update(extra)
    return team


def make_fixture(
    fixture_id: int = 501,
    status: str = "IN_PLAY",
    home_score: Optional[int] = 1,
    away_score: Optional[int] = 0,
    utc_date: datetime = KICKOFF,
    **extra: Any,
) -> dict[str, Any]:
    fixture: dict[str, Any] = {
        "id": fixture_id,
        "utcDate": utc_date.isoformat().replace("+00:00", "Z"),
        "status": status,
        "venue": "Emirates Stadium",
        "competition": {"id": 2021, "name": "Premier League"},
        "homeTeam": make_team(57, "Arsenal FC"),
        "awayTeam": make_team(61, "Chelsea FC"),
        "score": {
            "fullTime": {"home": home_score, "away": away_score},
            "halfTime": {"home": None, "away": None},
        },
        "referees": [
            {"id": 1, "name": "Jarred Gillett", "type": "ASSISTANT_REFEREE_N1"},
            {"id": 2, "name": "Michael Oliver", "type": "REFEREE"},
        ],
    }
    fixture.update(extra)
    return fixture


def make_goal(minute: int, scorer: str, team_id: int = 57, assist: Optional[str] = None) -> dict[str, Any]:
    return {
        "minute": minute,
        "injuryTime": None,
        "type": "REGULAR",
        "team": {"id": team_id},
        "scorer": {"name": scorer},
        "assist": {"name": assist} if assist else None,
    }


# ── Fakes ───────────────────────────────────────────────────────────────

class FakeCache:
    """Dict-backed Cache; remembers the TTL of every write."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.ttls: dict[str, Optional[int]] = {}

    async def get_json(self, key: str) -> Any:
        value = self.data.get(key)
        return copy.deepcopy(value)

    async def set_json(self, key: str, value: Any, ttl_s: int | None = None) -> None:
        # Round-trip through JSON like the real cache does.
        self.data[key] = json.loads(json.dumps(value, default=str))
        self.ttls[key] = ttl_s

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
        self.ttls.pop(key, None)


class FakeStore(MatchStore):
    """In-memory MatchStore with the same update rules as the SQL store."""

    def __init__(self) -> None:
        self.teams: dict[int, TeamOut] = {}
        self.matches: dict[int, dict[str, Any]] = {}
        self.events: dict[int, list[MatchEventRecord]] = {}
        self.lineups: dict[int, list[LineupEntry]] = {}
        self.statistics: dict[int, MatchStatisticsRecord] = {}
        self.insights: list[InsightRecord] = []
        self.follows: dict[tuple[str, int], TeamFollowRecord] = {}
        self.replace_events_calls = 0
        self.replace_lineups_calls = 0
        self.fail_upsert_for: set[int] = set()

    # ── Teams ───────────────────────────────────────────────────────────
    async def upsert_team(self, team: TeamWrite, *, is_major: bool) -> TeamOut:
        existing = self.teams.get(team.id)
        major = existing.is_major if existing else is_major
        out = TeamOut(**team.model_dump(), is_major=major)
        self.teams[team.id] = out
        return out

    async def get_team(self, team_id: int) -> Optional[TeamOut]:
        return self.teams.get(team_id)

    async def search_teams(self, query: str, *, major_only: bool = True, limit: int = 20) -> list[TeamOut]:
        needle = query.lower()
        hits = [
            t for t in self.teams.values()
            if needle in t.name.lower() and (t.is_major or not major_only)
        ]
        return sorted(hits, key=lambda t: t.name)[:limit]

    # ── Matches ─────────────────────────────────────────────────────────
    def _record(self, match_id: int) -> MatchRecord:
        row = self.matches[match_id]
        return MatchRecord(
            home_team=self.teams[row["home_team_id"]],
            away_team=self.teams[row["away_team_id"]],
            **{k: v for k, v in row.items() if k not in ("home_team_id", "away_team_id")},
        )

    async def get_match(self, match_id: int) -> Optional[MatchRecord]:
        if match_id not in self.matches:
            return None
        return self._record(match_id)

    async def get_match_detail(self, match_id: int) -> Optional[MatchDetail]:
        if match_id not in self.matches:
            return None
        events = sorted(
            self.events.get(match_id, []),
            key=lambda e: (e.minute is None, e.minute or 0, e.injury_time or 0),
        )
        lineups = sorted(
            self.lineups.get(match_id, []), key=lambda l: (not l.is_starting, l.position or "")
        )
        return MatchDetail(
            **self._record(match_id).model_dump(exclude={"home_team", "away_team"}),
            home_team=self.teams[self.matches[match_id]["home_team_id"]],
            away_team=self.teams[self.matches[match_id]["away_team_id"]],
            events=events,
            lineups=lineups,
            statistics=self.statistics.get(match_id),
            insights=await self.list_insights(match_id),
        )

    async def upsert_match(self, match: MatchWrite) -> MatchRecord:
        if match.id in self.fail_upsert_for:
            raise RuntimeError(f"write failed for match {match.id}")
        values = match.model_dump()
        row = self.matches.get(match.id)
        if row is None:
            row = {**values, "is_major_match": True, "last_updated": utcnow()}
            self.matches[match.id] = row
        else:
            changed = any(row[f] != values[f] for f in MATCH_MUTABLE_FIELDS)
            for field in MATCH_MUTABLE_FIELDS:
                row[field] = values[field]
            if changed:
                row["last_updated"] = utcnow()
        return self._record(match.id)

    async def query_matches(self, query: MatchQuery) -> MatchPage:
        rows = [self._record(mid) for mid in self.matches if self.matches[mid]["is_major_match"]]
        if query.league_id is not None:
            rows = [m for m in rows if m.league_id == query.league_id]
        if query.status is not None:
            rows = [m for m in rows if m.status == query.status]
        if query.on_date is not None:
            rows = [m for m in rows if m.match_date.date() == query.on_date]
        else:
            if query.date_from is not None:
                rows = [m for m in rows if m.match_date.date() >= query.date_from]
            if query.date_to is not None:
                rows = [m for m in rows if m.match_date.date() <= query.date_to]
        if query.search:
            needle = query.search.lower()
            rows = [
                m for m in rows
                if needle in m.home_team.name.lower()
                or needle in m.away_team.name.lower()
                or needle in m.league_name.lower()
            ]
        rows.sort(key=lambda m: m.match_date, reverse=True)
        total = len(rows)
        return MatchPage(
            matches=rows[query.offset:query.offset + query.limit],
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=-(-total // query.limit),
            ),
        )

    async def finished_match_ids_without_events(self, limit: int | None = None) -> list[int]:
        ids = [
            mid for mid, row in sorted(
                self.matches.items(), key=lambda kv: kv[1]["match_date"], reverse=True
            )
            if row["status"] == MatchStatus.FULL_TIME and not self.events.get(mid)
        ]
        return ids[:limit] if limit is not None else ids

    # ── Children ────────────────────────────────────────────────────────
    async def replace_lineups(self, match_id: int, lineups: list[LineupEntry]) -> int:
        self.replace_lineups_calls += 1
        self.lineups[match_id] = list(lineups)
        return len(lineups)

    async def replace_events(self, match_id: int, events: list[MatchEventRecord]) -> list[MatchEventRecord]:
        self.replace_events_calls += 1
        previous = self.events.get(match_id, [])
        self.events[match_id] = list(events)
        return previous

    async def upsert_statistics(self, match_id: int, stats: MatchStatisticsRecord) -> None:
        self.statistics[match_id] = stats

    # ── Insights ────────────────────────────────────────────────────────
    async def add_insight(self, insight: InsightRecord) -> InsightRecord:
        self.insights.append(insight)
        return insight

    async def list_insights(self, match_id: int) -> list[InsightRecord]:
        return sorted(
            (i for i in self.insights if i.match_id == match_id),
            key=lambda i: i.created_at,
            reverse=True,
        )

    # ── Follows ─────────────────────────────────────────────────────────
    async def follow_team(self, user_id: str, team_id: int, prefs: FollowPreferences) -> TeamFollowRecord:
        existing = self.follows.get((user_id, team_id))
        record = TeamFollowRecord(
            user_id=user_id,
            team=self.teams[team_id],
            created_at=existing.created_at if existing else utcnow(),
            **prefs.model_dump(),
        )
        self.follows[(user_id, team_id)] = record
        return record

    async def unfollow_team(self, user_id: str, team_id: int) -> bool:
        return self.follows.pop((user_id, team_id), None) is not None

    async def list_follows(self, user_id: str) -> list[TeamFollowRecord]:
        return sorted(
            (f for (uid, _), f in self.follows.items() if uid == user_id),
            key=lambda f: f.created_at,
            reverse=True,
        )

    async def is_following(self, user_id: str, team_id: int) -> bool:
        return (user_id, team_id) in self.follows


class FakeGateway:
    """Serves canned upstream payloads; errors can be injected per call type."""

    def __init__(self) -> None:
        self.today: list[dict[str, Any]] = []
        self.range: list[dict[str, Any]] = []
        self.details: dict[int, dict[str, Any]] = {}
        self.detail_errors: dict[int, Exception] = {}
        self.search_results: list[dict[str, Any]] = []
        self.detail_calls: list[int] = []
        self.range_calls: list[tuple[Any, Any]] = []
        self.search_calls: list[str] = []

    async def fetch_today_fixtures(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.today)

    async def fetch_fixtures_by_date_range(self, date_from: Any, date_to: Any) -> list[dict[str, Any]]:
        self.range_calls.append((date_from, date_to))
        return copy.deepcopy(self.range)

    async def fetch_fixture_by_id(self, fixture_id: int) -> dict[str, Any]:
        self.detail_calls.append(fixture_id)
        if fixture_id in self.detail_errors:
            raise self.detail_errors[fixture_id]
        if fixture_id not in self.details:
            raise LookupError(f"no detail for {fixture_id}")
        return copy.deepcopy(self.details[fixture_id])

    async def search_teams(self, query: str) -> list[dict[str, Any]]:
        self.search_calls.append(query)
        return copy.deepcopy(self.search_results)


class RecordingFanout:
    """Captures every emit as (event, match_id, payload, team_ids)."""

    def __init__(self) -> None:
        self.emitted: list[tuple[str, int, dict[str, Any], tuple[int, ...]]] = []

    def events(self, name: str) -> list[tuple[str, int, dict[str, Any], tuple[int, ...]]]:
        return [e for e in self.emitted if e[0] == name]

    async def emit_match_update(self, match_id: int, payload: dict[str, Any], team_ids: Any = ()) -> int:
        self.emitted.append(("match_update", match_id, payload, tuple(team_ids)))
        return 1

    async def emit_match_started(self, match_id: int, payload: dict[str, Any], team_ids: Any = ()) -> int:
        self.emitted.append(("match_started", match_id, payload, tuple(team_ids)))
        return 1

    async def emit_match_ended(self, match_id: int, payload: dict[str, Any], team_ids: Any = ()) -> int:
        self.emitted.append(("match_ended", match_id, payload, tuple(team_ids)))
        return 1

    async def emit_match_event(self, match_id: int, payload: dict[str, Any], team_ids: Any = ()) -> int:
        self.emitted.append(("match_event", match_id, payload, tuple(team_ids)))
        return 1

    async def emit_insight(self, match_id: int, payload: dict[str, Any]) -> int:
        self.emitted.append(("ai_insight", match_id, payload, ()))
        return 1


class FakeWebSocket:
    """
    Scripted WebSocket: ``incoming`` frames are returned by receive_text in
    order, then the client disconnects. Sent frames are decoded into ``sent``.
    """

    def __init__(self, incoming: Optional[list[Any]] = None, fail_send: bool = False) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        for frame in incoming or []:
            self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))
        self.sent: list[dict[str, Any]] = []
        self.client_state = WebSocketState.CONNECTING
        self.client = None
        self.fail_send = fail_send
        self.closed_with: Optional[int] = None

    async def accept(self) -> None:
        self.client_state = WebSocketState.CONNECTED

    async def receive_text(self) -> str:
        if self.incoming.empty():
            raise WebSocketDisconnect(code=1000)
        return self.incoming.get_nowait()

    async def send_text(self, data: str) -> None:
        if self.fail_send:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code
        self.client_state = WebSocketState.DISCONNECTED

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == kind]


class Clock:
    """Mutable clock for code that takes a ``now`` callable."""

    def __init__(self, start: datetime = KICKOFF) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current = self.current + timedelta(**delta)


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fanout() -> RecordingFanout:
    return RecordingFanout()


@pytest.fixture
def clock() -> Clock:
    return Clock(KICKOFF + timedelta(minutes=30, seconds=20))
