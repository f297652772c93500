"""
PostgreSQL implementation of MatchStore on the SQLAlchemy 2.0 async engine.
Upserts use INSERT .. ON CONFLICT so repeated syncs of one fixture are idempotent.
"""
from __future__ import annotations

import math
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import Select, case, delete, exists, func, insert, or_, select
from sqlalchemy.dialects.postgresql import Insert as PgInsert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import aliased

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
)
from shared.models.enums import MatchStatus
from shared.models.orm import (
    AIInsightORM,
    MatchEventORM,
    MatchLineupORM,
    MatchORM,
    MatchStatisticsORM,
    TeamFollowORM,
    TeamORM,
)
from shared.store.base import MatchStore
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_STAT_COLUMNS = tuple(MatchStatisticsRecord.model_fields)


def _day_start(d: Any) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def _team_out(team: TeamORM) -> TeamOut:
    return TeamOut.model_validate(team)


def _match_record(row: MatchORM) -> MatchRecord:
    return MatchRecord(
        id=row.id,
        home_team=_team_out(row.home_team),
        away_team=_team_out(row.away_team),
        league_id=row.league_id,
        league_name=row.league_name,
        match_date=row.match_date,
        status=MatchStatus(row.status),
        home_score=row.home_score,
        away_score=row.away_score,
        half_time_home_score=row.half_time_home_score,
        half_time_away_score=row.half_time_away_score,
        venue=row.venue,
        attendance=row.attendance,
        referee=row.referee,
        home_formation=row.home_formation,
        away_formation=row.away_formation,
        home_coach=row.home_coach,
        away_coach=row.away_coach,
        elapsed_time=row.elapsed_time,
        is_major_match=row.is_major_match,
        last_updated=row.last_updated,
    )


def _event_record(row: MatchEventORM) -> MatchEventRecord:
    return MatchEventRecord.model_validate(row)


def _insight_record(row: AIInsightORM) -> InsightRecord:
    return InsightRecord.model_validate(row)


def _follow_record(row: TeamFollowORM) -> TeamFollowRecord:
    return TeamFollowRecord(
        user_id=row.user_id,
        team=_team_out(row.team),
        notify_match_start=row.notify_match_start,
        notify_goals=row.notify_goals,
        notify_final_score=row.notify_final_score,
        created_at=row.created_at,
    )


# ── Statements ──────────────────────────────────────────────────────────

def team_upsert(team: TeamWrite, *, is_major: bool) -> PgInsert:
    """Insert or refresh a team. ``is_major`` is written on creation only."""
    stmt = pg_insert(TeamORM).values(
        id=team.id,
        name=team.name,
        short_name=team.short_name,
        logo_url=team.logo_url,
        country=team.country,
        is_major=is_major,
    )
    return stmt.on_conflict_do_update(
        index_elements=[TeamORM.id],
        set_={
            "name": stmt.excluded.name,
            "logo_url": stmt.excluded.logo_url,
            "short_name": func.coalesce(stmt.excluded.short_name, TeamORM.short_name),
            "country": func.coalesce(stmt.excluded.country, TeamORM.country),
            "updated_at": func.now(),
        },
    ).returning(*TeamORM.__table__.c)


def match_upsert(match: MatchWrite) -> PgInsert:
    values = match.model_dump()
    values["status"] = match.status.value
    values["is_major_match"] = True

    stmt = pg_insert(MatchORM).values(**values)
    table = MatchORM.__table__
    # last_updated only moves when a mutable field actually changed
    changed = or_(*[table.c[f].is_distinct_from(stmt.excluded[f]) for f in MATCH_MUTABLE_FIELDS])
    update_set: dict[str, Any] = {f: stmt.excluded[f] for f in MATCH_MUTABLE_FIELDS}
    update_set["last_updated"] = case((changed, func.now()), else_=table.c.last_updated)
    return stmt.on_conflict_do_update(index_elements=[MatchORM.id], set_=update_set)


def statistics_upsert(match_id: int, stats: MatchStatisticsRecord) -> PgInsert:
    stmt = pg_insert(MatchStatisticsORM).values(match_id=match_id, **stats.model_dump())
    set_: dict[str, Any] = {col: stmt.excluded[col] for col in _STAT_COLUMNS}
    set_["updated_at"] = func.now()
    return stmt.on_conflict_do_update(index_elements=[MatchStatisticsORM.match_id], set_=set_)


def follow_upsert(user_id: str, team_id: int, prefs: FollowPreferences) -> PgInsert:
    values = prefs.model_dump()
    stmt = pg_insert(TeamFollowORM).values(user_id=user_id, team_id=team_id, **values)
    return stmt.on_conflict_do_update(
        constraint="uq_team_follow",
        set_={k: stmt.excluded[k] for k in values},
    )


def match_listing(query: MatchQuery) -> tuple[Select[Any], Select[Any]]:
    """(count, page) statements for a filtered listing of major matches."""
    home = aliased(TeamORM)
    away = aliased(TeamORM)
    conditions: list[Any] = [MatchORM.is_major_match.is_(True)]

    if query.league_id is not None:
        conditions.append(MatchORM.league_id == query.league_id)
    if query.status is not None:
        conditions.append(MatchORM.status == query.status.value)
    if query.on_date is not None:
        start = _day_start(query.on_date)
        conditions.append(MatchORM.match_date >= start)
        conditions.append(MatchORM.match_date < start + timedelta(days=1))
    if query.date_from is not None:
        conditions.append(MatchORM.match_date >= _day_start(query.date_from))
    if query.date_to is not None:
        conditions.append(MatchORM.match_date < _day_start(query.date_to) + timedelta(days=1))
    if query.search:
        pattern = f"%{query.search}%"
        conditions.append(
            or_(
                home.name.ilike(pattern),
                away.name.ilike(pattern),
                MatchORM.league_name.ilike(pattern),
            )
        )

    base = (
        select(MatchORM)
        .join(home, MatchORM.home_team_id == home.id)
        .join(away, MatchORM.away_team_id == away.id)
        .where(*conditions)
    )
    count_stmt = select(func.count()).select_from(base.with_only_columns(MatchORM.id).subquery())
    page_stmt = (
        base.order_by(MatchORM.match_date.desc(), MatchORM.status.asc())
        .offset(query.offset)
        .limit(query.limit)
    )
    return count_stmt, page_stmt


def lock_match(match_id: int) -> Select[Any]:
    """Row lock on the parent match; concurrent replacements of its children serialize on it."""
    return select(MatchORM.id).where(MatchORM.id == match_id).with_for_update()


class SqlMatchStore(MatchStore):
    """MatchStore backed by PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ── Teams ───────────────────────────────────────────────────────────

    async def upsert_team(self, team: TeamWrite, *, is_major: bool) -> TeamOut:
        stmt = team_upsert(team, is_major=is_major)

        async with self._db.write_session() as session:
            row = (await session.execute(stmt)).mappings().one()
        return TeamOut.model_validate(dict(row))

    async def get_team(self, team_id: int) -> Optional[TeamOut]:
        async with self._db.read_session() as session:
            team = await session.get(TeamORM, team_id)
            return _team_out(team) if team else None

    async def search_teams(
        self, query: str, *, major_only: bool = True, limit: int = 20
    ) -> list[TeamOut]:
        stmt = select(TeamORM).where(TeamORM.name.ilike(f"%{query}%"))
        if major_only:
            stmt = stmt.where(TeamORM.is_major.is_(True))
        stmt = stmt.order_by(TeamORM.name).limit(limit)
        async with self._db.read_session() as session:
            teams = (await session.scalars(stmt)).all()
        return [_team_out(t) for t in teams]

    # ── Matches ─────────────────────────────────────────────────────────

    async def get_match(self, match_id: int) -> Optional[MatchRecord]:
        async with self._db.read_session() as session:
            row = await session.get(MatchORM, match_id)
            return _match_record(row) if row else None

    async def get_match_detail(self, match_id: int) -> Optional[MatchDetail]:
        async with self._db.read_session() as session:
            row = await session.get(MatchORM, match_id)
            if row is None:
                return None

            events = (
                await session.scalars(
                    select(MatchEventORM)
                    .where(MatchEventORM.match_id == match_id)
                    .order_by(
                        MatchEventORM.minute.asc().nulls_last(),
                        MatchEventORM.injury_time.asc().nulls_first(),
                    )
                )
            ).all()
            lineups = (
                await session.scalars(
                    select(MatchLineupORM)
                    .where(MatchLineupORM.match_id == match_id)
                    .order_by(MatchLineupORM.is_starting.desc(), MatchLineupORM.position.asc())
                )
            ).all()
            stats = await session.get(MatchStatisticsORM, match_id)
            insights = (
                await session.scalars(
                    select(AIInsightORM)
                    .where(AIInsightORM.match_id == match_id)
                    .order_by(AIInsightORM.created_at.desc())
                )
            ).all()

            base = _match_record(row)
            return MatchDetail(
                **base.model_dump(),
                events=[_event_record(e) for e in events],
                lineups=[LineupEntry.model_validate(entry) for entry in lineups],
                statistics=MatchStatisticsRecord.model_validate(stats) if stats else None,
                insights=[_insight_record(i) for i in insights],
            )

    async def upsert_match(self, match: MatchWrite) -> MatchRecord:
        async with self._db.write_session() as session:
            await session.execute(match_upsert(match))
            row = (
                await session.execute(
                    select(MatchORM)
                    .where(MatchORM.id == match.id)
                    .execution_options(populate_existing=True)
                )
            ).unique().scalar_one()
            return _match_record(row)

    async def query_matches(self, query: MatchQuery) -> MatchPage:
        count_stmt, page_stmt = match_listing(query)

        async with self._db.read_session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            rows = (await session.execute(page_stmt)).unique().scalars().all()

        return MatchPage(
            matches=[_match_record(r) for r in rows],
            pagination=Pagination(
                page=query.page,
                limit=query.limit,
                total=total,
                total_pages=math.ceil(total / query.limit) if total else 0,
            ),
        )

    async def finished_match_ids_without_events(self, limit: int | None = None) -> list[int]:
        has_events = exists().where(MatchEventORM.match_id == MatchORM.id)
        stmt = (
            select(MatchORM.id)
            .where(MatchORM.status == MatchStatus.FULL_TIME.value, ~has_events)
            .order_by(MatchORM.match_date.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self._db.read_session() as session:
            return list((await session.scalars(stmt)).all())

    # ── Children ────────────────────────────────────────────────────────

    async def replace_lineups(self, match_id: int, lineups: list[LineupEntry]) -> int:
        async with self._db.write_session() as session:
            await session.execute(lock_match(match_id))
            await session.execute(delete(MatchLineupORM).where(MatchLineupORM.match_id == match_id))
            if lineups:
                await session.execute(
                    insert(MatchLineupORM),
                    [{"match_id": match_id, **entry.model_dump()} for entry in lineups],
                )
        return len(lineups)

    async def replace_events(
        self, match_id: int, events: list[MatchEventRecord]
    ) -> list[MatchEventRecord]:
        async with self._db.write_session() as session:
            await session.execute(lock_match(match_id))
            previous = (
                await session.scalars(
                    select(MatchEventORM).where(MatchEventORM.match_id == match_id)
                )
            ).all()
            replaced = [_event_record(e) for e in previous]
            await session.execute(delete(MatchEventORM).where(MatchEventORM.match_id == match_id))
            if events:
                rows = []
                for event in events:
                    data = event.model_dump()
                    data["event_type"] = event.event_type.value
                    rows.append({"match_id": match_id, **data})
                await session.execute(insert(MatchEventORM), rows)
        return replaced

    async def upsert_statistics(self, match_id: int, stats: MatchStatisticsRecord) -> None:
        async with self._db.write_session() as session:
            await session.execute(statistics_upsert(match_id, stats))

    # ── Insights ────────────────────────────────────────────────────────

    async def add_insight(self, insight: InsightRecord) -> InsightRecord:
        row = AIInsightORM(
            id=insight.id,
            match_id=insight.match_id,
            insight_type=insight.insight_type.value,
            content=insight.content,
            tokens_used=insight.tokens_used,
            generated_at_minute=insight.generated_at_minute,
            created_at=insight.created_at,
        )
        async with self._db.write_session() as session:
            session.add(row)
        return insight

    async def list_insights(self, match_id: int) -> list[InsightRecord]:
        async with self._db.read_session() as session:
            rows = (
                await session.scalars(
                    select(AIInsightORM)
                    .where(AIInsightORM.match_id == match_id)
                    .order_by(AIInsightORM.created_at.desc())
                )
            ).all()
        return [_insight_record(r) for r in rows]

    # ── Follows ─────────────────────────────────────────────────────────

    async def follow_team(
        self, user_id: str, team_id: int, prefs: FollowPreferences
    ) -> TeamFollowRecord:
        async with self._db.write_session() as session:
            await session.execute(follow_upsert(user_id, team_id, prefs))
            row = (
                await session.execute(
                    select(TeamFollowORM)
                    .where(TeamFollowORM.user_id == user_id, TeamFollowORM.team_id == team_id)
                    .execution_options(populate_existing=True)
                )
            ).unique().scalar_one()
            return _follow_record(row)

    async def unfollow_team(self, user_id: str, team_id: int) -> bool:
        async with self._db.write_session() as session:
            result = await session.execute(
                delete(TeamFollowORM).where(
                    TeamFollowORM.user_id == user_id, TeamFollowORM.team_id == team_id
                )
            )
        return bool(result.rowcount)

    async def list_follows(self, user_id: str) -> list[TeamFollowRecord]:
        async with self._db.read_session() as session:
            rows = (
                await session.execute(
                    select(TeamFollowORM)
                    .where(TeamFollowORM.user_id == user_id)
                    .order_by(TeamFollowORM.created_at.desc())
                )
            ).unique().scalars().all()
            return [_follow_record(r) for r in rows]

    async def is_following(self, user_id: str, team_id: int) -> bool:
        stmt = select(
            exists().where(TeamFollowORM.user_id == user_id, TeamFollowORM.team_id == team_id)
        )
        async with self._db.read_session() as session:
            return bool((await session.execute(stmt)).scalar())
