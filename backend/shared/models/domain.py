"""
Pydantic v2 domain models shared across the LiveFoot services.
These are the canonical wire/internal representations, not ORM models.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import EventType, InsightType, MatchStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Teams ───────────────────────────────────────────────────────────────
class TeamWrite(DomainModel):
    """Team fields taken from an upstream payload."""
    id: int
    name: str
    short_name: Optional[str] = None
    logo_url: Optional[str] = None
    country: Optional[str] = None


class TeamOut(DomainModel):
    id: int
    name: str
    short_name: Optional[str] = None
    logo_url: Optional[str] = None
    country: Optional[str] = None
    is_major: bool = False


# ── Matches ─────────────────────────────────────────────────────────────
class MatchWrite(DomainModel):
    """Full set of match fields derived from one upstream fixture."""
    id: int
    home_team_id: int
    away_team_id: int
    league_id: int = 0
    league_name: str = "Unknown"
    match_date: datetime
    status: MatchStatus = MatchStatus.NOT_STARTED
    home_score: int = 0
    away_score: int = 0
    half_time_home_score: Optional[int] = None
    half_time_away_score: Optional[int] = None
    venue: Optional[str] = None
    attendance: Optional[int] = None
    referee: Optional[str] = None
    home_formation: Optional[str] = None
    away_formation: Optional[str] = None
    home_coach: Optional[str] = None
    away_coach: Optional[str] = None
    elapsed_time: Optional[int] = None


# Fields refreshed when a match row already exists. Schedule, venue and
# league identity are fixed at creation.
MATCH_MUTABLE_FIELDS: tuple[str, ...] = (
    "status",
    "home_score",
    "away_score",
    "half_time_home_score",
    "half_time_away_score",
    "attendance",
    "referee",
    "home_formation",
    "away_formation",
    "home_coach",
    "away_coach",
    "elapsed_time",
)


class MatchRecord(DomainModel):
    """Persisted match snapshot with its team associations."""
    id: int
    home_team: TeamOut
    away_team: TeamOut
    league_id: int
    league_name: str
    match_date: datetime
    status: MatchStatus
    home_score: int = 0
    away_score: int = 0
    half_time_home_score: Optional[int] = None
    half_time_away_score: Optional[int] = None
    venue: Optional[str] = None
    attendance: Optional[int] = None
    referee: Optional[str] = None
    home_formation: Optional[str] = None
    away_formation: Optional[str] = None
    home_coach: Optional[str] = None
    away_coach: Optional[str] = None
    elapsed_time: Optional[int] = None
    is_major_match: bool = True
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def final_score(self) -> str:
        return f"{self.home_score}-{self.away_score}"


# ── Match children ──────────────────────────────────────────────────────
class MatchEventRecord(DomainModel):
    """Timeline entry. Has no stable identity across syncs."""
    event_type: EventType
    team_id: Optional[int] = None
    minute: Optional[int] = None
    injury_time: Optional[int] = None
    player_name: Optional[str] = None
    assist_name: Optional[str] = None
    detail: Optional[str] = None

    @property
    def fingerprint(self) -> tuple[Any, ...]:
        """Content key used to tell newly observed events from replayed ones."""
        return (
            self.event_type.value,
            self.team_id,
            self.minute,
            self.injury_time,
            self.player_name,
            self.assist_name,
            self.detail,
        )


class LineupEntry(DomainModel):
    team_id: int
    player_name: str
    shirt_number: Optional[int] = None
    position: Optional[str] = None
    is_starting: bool = True


class MatchStatisticsRecord(DomainModel):
    home_possession: Optional[int] = None
    away_possession: Optional[int] = None
    home_shots_total: Optional[int] = None
    away_shots_total: Optional[int] = None
    home_shots_on_target: Optional[int] = None
    away_shots_on_target: Optional[int] = None
    home_shots_off_target: Optional[int] = None
    away_shots_off_target: Optional[int] = None
    home_corner_kicks: Optional[int] = None
    away_corner_kicks: Optional[int] = None
    home_fouls: Optional[int] = None
    away_fouls: Optional[int] = None
    home_offsides: Optional[int] = None
    away_offsides: Optional[int] = None
    home_yellow_cards: Optional[int] = None
    away_yellow_cards: Optional[int] = None
    home_red_cards: Optional[int] = None
    away_red_cards: Optional[int] = None
    home_saves: Optional[int] = None
    away_saves: Optional[int] = None


class InsightRecord(DomainModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    match_id: int
    insight_type: InsightType
    content: str
    tokens_used: Optional[int] = None
    generated_at_minute: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class MatchDetail(MatchRecord):
    """Fully hydrated match for the match detail endpoint."""
    events: list[MatchEventRecord] = Field(default_factory=list)
    lineups: list[LineupEntry] = Field(default_factory=list)
    statistics: Optional[MatchStatisticsRecord] = None
    insights: list[InsightRecord] = Field(default_factory=list)


# ── Follows ─────────────────────────────────────────────────────────────
class FollowPreferences(DomainModel):
    notify_match_start: bool = True
    notify_goals: bool = True
    notify_final_score: bool = True


class TeamFollowRecord(FollowPreferences):
    user_id: str
    team: TeamOut
    created_at: datetime = Field(default_factory=utcnow)


# ── Queries ─────────────────────────────────────────────────────────────
class MatchQuery(DomainModel):
    league_id: Optional[int] = None
    on_date: Optional[date] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None
    status: Optional[MatchStatus] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class Pagination(DomainModel):
    page: int
    limit: int
    total: int
    total_pages: int


class MatchPage(DomainModel):
    matches: list[MatchRecord]
    pagination: Pagination


# ── Sync bookkeeping ────────────────────────────────────────────────────
class SyncResult(DomainModel):
    """Outcome of reconciling one fixture."""
    previous: Optional[MatchRecord] = None
    match: MatchRecord
    new_events: list[MatchEventRecord] = Field(default_factory=list)
    detail_rate_limited: bool = False


class SyncSummary(DomainModel):
    synced: int = 0
    updated: int = 0
    errors: int = 0
    duration_ms: int = 0


class SyncStats(DomainModel):
    is_enabled: bool
    is_running: bool
    last_sync_time: Optional[datetime] = None
    sync_count: int = 0
    error_count: int = 0
    seconds_since_last_sync: Optional[int] = None
