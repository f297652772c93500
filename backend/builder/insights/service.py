"""
AI match insights.
Builds a prompt per insight type from the stored match, asks the text backend
for commentary, persists the result and pushes it to subscribers of the match.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from shared.models.domain import InsightRecord, MatchDetail, MatchEventRecord
from shared.models.enums import InsightType
from shared.store.base import MatchStore
from shared.utils.logging import get_logger
from shared.utils.metrics import INSIGHTS_GENERATED
from shared.utils.redis_manager import AI_INSIGHT_KEY, Cache, fmt_key

from builder.insights.generator import TextGenerator

logger = get_logger(__name__)


class MatchNotFoundError(LookupError):
    pass


class InsightsUnavailableError(RuntimeError):
    """No text backend is configured."""


class InsightFanout(Protocol):
    async def emit_insight(self, match_id: int, payload: dict[str, Any]) -> int: ...


@dataclass(frozen=True)
class InsightProfile:
    system: str
    max_tokens: int
    temperature: float
    cache_ttl_s: int
    build_prompt: Callable[[MatchDetail], str]
    minute: Callable[[MatchDetail], Optional[int]]


def _events_summary(events: list[MatchEventRecord]) -> str:
    return "\n".join(
        f"{e.minute}' - {e.event_type.value}: {e.player_name or 'Unknown'}" for e in events
    )


def _fixture_line(match: MatchDetail) -> str:
    return (
        f"{match.home_team.name} {match.home_score} - {match.away_score} {match.away_team.name}"
    )


def _pre_match_prompt(match: MatchDetail) -> str:
    return (
        f"Analyze the upcoming match between {match.home_team.name} and "
        f"{match.away_team.name} in {match.league_name}.\n\n"
        f"Match Details:\n"
        f"- Date: {match.match_date.date().isoformat()}\n"
        f"- Venue: {match.venue or 'Unknown'}\n\n"
        "Please provide:\n"
        "1. Brief team form analysis\n"
        "2. Key players to watch\n"
        "3. Tactical approach prediction\n"
        "4. Match prediction with confidence level\n\n"
        "Keep the analysis under 200 words and engaging for soccer fans."
    )


def _live_prompt(match: MatchDetail) -> str:
    return (
        f"Provide a live match update for {_fixture_line(match)}.\n"
        f"Current minute: {match.elapsed_time if match.elapsed_time is not None else 'Unknown'}\n\n"
        f"Match events so far:\n{_events_summary(match.events) or 'No events yet'}\n\n"
        "Analyze the current flow of the game, key moments, and what to watch for. "
        "Keep under 150 words."
    )


def _halftime_prompt(match: MatchDetail) -> str:
    first_half = [e for e in match.events if e.minute is None or e.minute <= 45]
    return (
        f"Provide halftime analysis for {_fixture_line(match)}.\n\n"
        f"First half events:\n{_events_summary(first_half) or 'No events'}\n\n"
        "What should teams adjust in the second half? Keep under 150 words."
    )


def _post_match_prompt(match: MatchDetail) -> str:
    return (
        f"Provide post-match analysis for {_fixture_line(match)}.\n\n"
        f"Key events:\n{_events_summary(match.events) or 'No events'}\n\n"
        "Provide:\n"
        "1. Match summary\n"
        "2. Key moments analysis\n"
        "3. Man of the match suggestion\n"
        "4. Impact on league standings (if applicable)\n\n"
        "Keep it engaging and under 200 words."
    )


def _deep_analysis_prompt(match: MatchDetail) -> str:
    return (
        f"Perform comprehensive analysis of {match.home_team.name} vs {match.away_team.name} "
        f"in {match.league_name}.\n\n"
        "Provide detailed sections on:\n"
        "1. Team Form Analysis - Recent performance trends\n"
        "2. Tactical Breakdown - Expected formations and key matchups\n"
        "3. Key Player Analysis - Players who could decide the match\n"
        "4. Historical Head-to-Head - Recent meetings between these teams\n"
        "5. Prediction with detailed reasoning\n\n"
        "Make it comprehensive and engaging, around 400-500 words."
    )


def _event_prompt(match: MatchDetail, event: MatchEventRecord) -> str:
    by = f" by {event.player_name}" if event.player_name else ""
    return (
        f"Provide quick tactical insight on this event: {event.event_type.value}{by} "
        f"at {event.minute}' in {match.home_team.name} vs {match.away_team.name} match.\n\n"
        f"Current score: {match.home_score} - {match.away_score}\n\n"
        "Keep it under 50 words, punchy and insightful."
    )


PROFILES: dict[InsightType, InsightProfile] = {
    InsightType.PRE_MATCH: InsightProfile(
        system="You are an expert soccer analyst providing insightful match predictions and analysis.",
        max_tokens=300,
        temperature=0.7,
        cache_ttl_s=7200,
        build_prompt=_pre_match_prompt,
        minute=lambda match: None,
    ),
    InsightType.LIVE_UPDATE: InsightProfile(
        system="You are a soccer analyst providing live match commentary and analysis.",
        max_tokens=250,
        temperature=0.7,
        cache_ttl_s=120,
        build_prompt=_live_prompt,
        minute=lambda match: match.elapsed_time,
    ),
    InsightType.HALFTIME: InsightProfile(
        system="You are a soccer analyst providing halftime tactical analysis.",
        max_tokens=250,
        temperature=0.7,
        cache_ttl_s=300,
        build_prompt=_halftime_prompt,
        minute=lambda match: 45,
    ),
    InsightType.POST_MATCH: InsightProfile(
        system="You are a soccer analyst providing comprehensive post-match analysis.",
        max_tokens=300,
        temperature=0.7,
        cache_ttl_s=86400,
        build_prompt=_post_match_prompt,
        minute=lambda match: 90,
    ),
}

# Stored as a pre-match insight, cached apart from the regular one.
DEEP_ANALYSIS = InsightProfile(
    system="You are an expert soccer analyst with deep tactical knowledge providing premium analysis.",
    max_tokens=1000,
    temperature=0.7,
    cache_ttl_s=7200,
    build_prompt=_deep_analysis_prompt,
    minute=lambda match: None,
)

# One-off commentary on a single timeline event; never cached.
EVENT_SYSTEM = "You are a live soccer commentator providing tactical insights on match events."
EVENT_MAX_TOKENS = 80
EVENT_TEMPERATURE = 0.8


class InsightService:
    """
    Generates, caches and stores match insights.

    A cached insight of the same type is returned as is and not re-broadcast;
    only freshly generated insights are pushed to the match topic.
    """

    def __init__(
        self,
        store: MatchStore,
        cache: Cache,
        generator: Optional[TextGenerator],
        fanout: Optional[InsightFanout] = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._generator = generator
        self._fanout = fanout

    @property
    def available(self) -> bool:
        return self._generator is not None

    async def list_insights(self, match_id: int) -> list[InsightRecord]:
        return await self._store.list_insights(match_id)

    async def generate(self, match_id: int, insight_type: InsightType) -> InsightRecord:
        match = await self._load(match_id)
        return await self._cached(match, insight_type, insight_type.value, PROFILES[insight_type])

    async def generate_deep_analysis(self, match_id: int) -> InsightRecord:
        """Long-form pre-match analysis (form, tactics, key players, head-to-head)."""
        match = await self._load(match_id)
        return await self._cached(match, InsightType.PRE_MATCH, "deep_analysis", DEEP_ANALYSIS)

    async def generate_event_insight(self, match_id: int, event: MatchEventRecord) -> InsightRecord:
        """Short commentary on one timeline event, stamped with the event's minute."""
        match = await self._load(match_id)
        return await self._produce(
            match,
            InsightType.LIVE_UPDATE,
            EVENT_SYSTEM,
            _event_prompt(match, event),
            max_tokens=EVENT_MAX_TOKENS,
            temperature=EVENT_TEMPERATURE,
            minute=event.minute,
        )

    async def _load(self, match_id: int) -> MatchDetail:
        match = await self._store.get_match_detail(match_id)
        if match is None:
            raise MatchNotFoundError(match_id)
        self._require_generator()
        return match

    def _require_generator(self) -> TextGenerator:
        if self._generator is None:
            raise InsightsUnavailableError("no insight generator configured")
        return self._generator

    async def _cached(
        self, match: MatchDetail, insight_type: InsightType, variant: str, profile: InsightProfile
    ) -> InsightRecord:
        key = fmt_key(AI_INSIGHT_KEY, match_id=match.id, insight_type=variant)
        cached = await self._cache.get_json(key)
        if cached is not None:
            logger.debug("insight_cache_hit", match_id=match.id, variant=variant)
            return InsightRecord.model_validate(cached)

        insight = await self._produce(
            match,
            insight_type,
            profile.system,
            profile.build_prompt(match),
            max_tokens=profile.max_tokens,
            temperature=profile.temperature,
            minute=profile.minute(match),
        )
        await self._cache.set_json(key, insight.model_dump(mode="json"), profile.cache_ttl_s)
        return insight

    async def _produce(
        self,
        match: MatchDetail,
        insight_type: InsightType,
        system: str,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        minute: Optional[int],
    ) -> InsightRecord:
        text = await self._require_generator().generate(
            system, prompt, max_tokens=max_tokens, temperature=temperature
        )

        insight = await self._store.add_insight(
            InsightRecord(
                match_id=match.id,
                insight_type=insight_type,
                content=text.content,
                tokens_used=text.tokens_used,
                generated_at_minute=minute,
            )
        )
        INSIGHTS_GENERATED.labels(insight_type=insight_type.value).inc()
        logger.info(
            "insight_generated",
            match_id=match.id,
            insight_type=insight_type.value,
            tokens=text.tokens_used,
        )

        if self._fanout is not None:
            await self._fanout.emit_insight(match.id, insight.model_dump(mode="json"))
        return insight
