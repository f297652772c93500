"""Detects the match transitions that are worth telling subscribers about."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shared.models.domain import MatchRecord
from shared.models.enums import MatchStatus


@dataclass(frozen=True)
class ChangeSet:
    score_changed: bool = False
    status_changed: bool = False
    just_started: bool = False
    just_finished: bool = False

    @property
    def any(self) -> bool:
        return self.score_changed or self.status_changed or self.just_started or self.just_finished


NO_CHANGES = ChangeSet()


def detect_changes(previous: Optional[MatchRecord], current: MatchRecord) -> ChangeSet:
    """
    Compare two snapshots of the same match.

    A first observation (no previous snapshot) never reports changes, so a
    bulk load of historical fixtures does not look like a burst of live events.
    """
    if previous is None:
        return NO_CHANGES

    return ChangeSet(
        score_changed=(
            previous.home_score != current.home_score
            or previous.away_score != current.away_score
        ),
        status_changed=previous.status != current.status,
        just_started=(
            previous.status == MatchStatus.NOT_STARTED and current.status.is_live
        ),
        just_finished=(
            previous.status != MatchStatus.FULL_TIME
            and current.status == MatchStatus.FULL_TIME
        ),
    )
