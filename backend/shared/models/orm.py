"""
SQLAlchemy 2.0 ORM models for LiveFoot.
Teams and matches are keyed by their upstream (football-data.org) integer ids.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class TeamORM(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    short_name: Mapped[Optional[str]] = mapped_column(String(100))
    logo_url: Mapped[Optional[str]] = mapped_column(Text)
    country: Mapped[Optional[str]] = mapped_column(String(100))
    is_major: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class MatchORM(Base):
    __tablename__ = "matches"
    __table_args__ = (
        CheckConstraint("home_team_id != away_team_id", name="chk_different_teams"),
        Index("ix_matches_match_date", "match_date"),
        Index("ix_matches_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    home_team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("teams.id"), nullable=False)
    away_team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("teams.id"), nullable=False)
    league_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    league_name: Mapped[str] = mapped_column(String(200), nullable=False, default="Unknown")
    match_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="NS")
    home_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    away_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    half_time_home_score: Mapped[Optional[int]] = mapped_column(Integer)
    half_time_away_score: Mapped[Optional[int]] = mapped_column(Integer)
    venue: Mapped[Optional[str]] = mapped_column(String(200))
    attendance: Mapped[Optional[int]] = mapped_column(Integer)
    referee: Mapped[Optional[str]] = mapped_column(String(200))
    home_formation: Mapped[Optional[str]] = mapped_column(String(20))
    away_formation: Mapped[Optional[str]] = mapped_column(String(20))
    home_coach: Mapped[Optional[str]] = mapped_column(String(200))
    away_coach: Mapped[Optional[str]] = mapped_column(String(200))
    elapsed_time: Mapped[Optional[int]] = mapped_column(SmallInteger)
    is_major_match: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    home_team: Mapped["TeamORM"] = relationship(foreign_keys=[home_team_id], lazy="joined")
    away_team: Mapped["TeamORM"] = relationship(foreign_keys=[away_team_id], lazy="joined")


class MatchEventORM(Base):
    __tablename__ = "match_events"
    __table_args__ = (Index("ix_match_events_match_id", "match_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    match_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    team_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    minute: Mapped[Optional[int]] = mapped_column(SmallInteger)
    injury_time: Mapped[Optional[int]] = mapped_column(SmallInteger)
    player_name: Mapped[Optional[str]] = mapped_column(String(200))
    assist_name: Mapped[Optional[str]] = mapped_column(String(200))
    detail: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MatchLineupORM(Base):
    __tablename__ = "match_lineups"
    __table_args__ = (Index("ix_match_lineups_match_id", "match_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    match_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False
    )
    team_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    player_name: Mapped[str] = mapped_column(String(200), nullable=False)
    shirt_number: Mapped[Optional[int]] = mapped_column(SmallInteger)
    position: Mapped[Optional[str]] = mapped_column(String(50))
    is_starting: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class MatchStatisticsORM(Base):
    __tablename__ = "match_statistics"

    match_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("matches.id", ondelete="CASCADE"), primary_key=True
    )
    home_possession: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_possession: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_shots_total: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_shots_total: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_shots_on_target: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_shots_on_target: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_shots_off_target: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_shots_off_target: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_corner_kicks: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_corner_kicks: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_fouls: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_fouls: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_offsides: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_offsides: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_yellow_cards: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_yellow_cards: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_red_cards: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_red_cards: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_saves: Mapped[Optional[int]] = mapped_column(SmallInteger)
    away_saves: Mapped[Optional[int]] = mapped_column(SmallInteger)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AIInsightORM(Base):
    __tablename__ = "ai_insights"
    __table_args__ = (Index("ix_ai_insights_match_id", "match_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    match_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False
    )
    insight_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer)
    generated_at_minute: Mapped[Optional[int]] = mapped_column(SmallInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TeamFollowORM(Base):
    __tablename__ = "team_follows"
    __table_args__ = (
        UniqueConstraint("user_id", "team_id", name="uq_team_follow"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("teams.id"), nullable=False)
    notify_match_start: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_goals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_final_score: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    team: Mapped["TeamORM"] = relationship(lazy="joined")
