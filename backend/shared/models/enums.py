"""Domain enumerations for the LiveFoot platform."""
from __future__ import annotations

from enum import Enum


class MatchStatus(str, Enum):
    """Normalized match state, decoupled from the upstream vocabulary."""

    NOT_STARTED = "NS"
    LIVE = "LIVE"
    HALF_TIME = "HT"
    FULL_TIME = "FT"
    POSTPONED = "PST"
    CANCELLED = "CANC"
    TO_BE_DEFINED = "TBD"

    @property
    def is_live(self) -> bool:
        return self in (MatchStatus.LIVE, MatchStatus.HALF_TIME)

    @property
    def needs_detail(self) -> bool:
        """Statuses for which the per-fixture detail (goals, bookings, subs) is fetched."""
        return self in (MatchStatus.LIVE, MatchStatus.HALF_TIME, MatchStatus.FULL_TIME)


class EventType(str, Enum):
    GOAL = "Goal"
    CARD = "Card"
    SUBSTITUTION = "Substitution"
    VAR = "VAR"


class InsightType(str, Enum):
    PRE_MATCH = "pre_match"
    LIVE_UPDATE = "live_update"
    HALFTIME = "halftime"
    POST_MATCH = "post_match"


class WSClientOp(str, Enum):
    SUBSCRIBE_MATCH = "subscribe_match"
    UNSUBSCRIBE_MATCH = "unsubscribe_match"
    SUBSCRIBE_TEAM = "subscribe_team"
    UNSUBSCRIBE_TEAM = "unsubscribe_team"
    PING = "ping"


class WSServerMsgType(str, Enum):
    MATCH_UPDATE = "match_update"
    MATCH_STARTED = "match_started"
    MATCH_ENDED = "match_ended"
    MATCH_EVENT = "match_event"
    AI_INSIGHT = "ai_insight"
    STATE = "state"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
