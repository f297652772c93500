"""
Persistence interface for matches, teams and their children.

The reconciler, scheduler, insight service and routes depend on this
interface only; the Postgres implementation lives in shared.store.postgres.
Child collections (events, lineups) are only ever replaced as a whole, and
each replacement is a single transaction.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from shared.models.domain import (
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
    TeamFollowRecord,
    TeamOut,
    TeamWrite,
)


class MatchStore(ABC):
    # ── Teams ───────────────────────────────────────────────────────────
    @abstractmethod
    async def upsert_team(self, team: TeamWrite, *, is_major: bool) -> TeamOut:
        """Create or refresh a team. ``is_major`` only applies when the row is created."""

    @abstractmethod
    async def get_team(self, team_id: int) -> Optional[TeamOut]: ...

    @abstractmethod
    async def search_teams(
        self, query: str, *, major_only: bool = True, limit: int = 20
    ) -> list[TeamOut]: ...

    # ── Matches ─────────────────────────────────────────────────────────
    @abstractmethod
    async def get_match(self, match_id: int) -> Optional[MatchRecord]: ...

    @abstractmethod
    async def get_match_detail(self, match_id: int) -> Optional[MatchDetail]: ...

    @abstractmethod
    async def upsert_match(self, match: MatchWrite) -> MatchRecord:
        """Insert every field on create; refresh only mutable fields on update."""

    @abstractmethod
    async def query_matches(self, query: MatchQuery) -> MatchPage: ...

    @abstractmethod
    async def finished_match_ids_without_events(self, limit: int | None = None) -> list[int]: ...

    # ── Children ────────────────────────────────────────────────────────
    @abstractmethod
    async def replace_lineups(self, match_id: int, lineups: list[LineupEntry]) -> int:
        """Atomically swap the match's lineup set. Returns the number of rows written."""

    @abstractmethod
    async def replace_events(
        self, match_id: int, events: list[MatchEventRecord]
    ) -> list[MatchEventRecord]:
        """Atomically swap the match's event set. Returns the events it replaced."""

    @abstractmethod
    async def upsert_statistics(self, match_id: int, stats: MatchStatisticsRecord) -> None: ...

    # ── Insights ────────────────────────────────────────────────────────
    @abstractmethod
    async def add_insight(self, insight: InsightRecord) -> InsightRecord: ...

    @abstractmethod
    async def list_insights(self, match_id: int) -> list[InsightRecord]:
        """Newest first."""

    # ── Follows ─────────────────────────────────────────────────────────
    @abstractmethod
    async def follow_team(
        self, user_id: str, team_id: int, prefs: FollowPreferences
    ) -> TeamFollowRecord: ...

    @abstractmethod
    async def unfollow_team(self, user_id: str, team_id: int) -> bool: ...

    @abstractmethod
    async def list_follows(self, user_id: str) -> list[TeamFollowRecord]: ...

    @abstractmethod
    async def is_following(self, user_id: str, team_id: int) -> bool: ...
