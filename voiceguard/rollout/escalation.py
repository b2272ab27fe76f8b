"""Consecutive-warning tracking for rollout health issues."""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .config import RolloutStage
from .models import IssueType, RolloutIssue

logger = logging.getLogger(__name__)

StreakKey = Tuple[IssueType, RolloutStage]


@dataclass
class WarningStreak:
    count: int
    first_seen: float

    def duration(self, now: float) -> float:
        return now - self.first_seen


@dataclass
class EscalationDecision:
    """Outcome of observing one warning issue."""

    issue: RolloutIssue
    streak: WarningStreak
    escalated: bool


class WarningEscalationTracker:
    """Escalates warnings that persist across monitoring cycles.

    A streak is kept per (issue type, stage). It escalates once it has
    been seen ``max_consecutive`` cycles in a row or has lasted
    ``escalation_seconds``. Streaks missing from a cycle are dropped.
    """

    def __init__(self, max_consecutive: int = 3, escalation_seconds: float = 900.0):
        self.max_consecutive = max_consecutive
        self.escalation_seconds = escalation_seconds
        self._streaks: Dict[StreakKey, WarningStreak] = {}

    def observe(
        self,
        warnings: Iterable[RolloutIssue],
        stage: RolloutStage,
        now: float,
    ) -> List[EscalationDecision]:
        decisions: List[EscalationDecision] = []
        seen = set()
        for issue in warnings:
            key = (issue.issue_type, stage)
            seen.add(key)
            streak = self._streaks.get(key)
            if streak is None:
                streak = self._streaks[key] = WarningStreak(count=0, first_seen=now)
            streak.count += 1
            escalated = (
                streak.count >= self.max_consecutive
                or streak.duration(now) >= self.escalation_seconds
            )
            decisions.append(EscalationDecision(issue=issue, streak=streak, escalated=escalated))

        for key in [k for k in self._streaks if k not in seen]:
            del self._streaks[key]
        return decisions

    def get_streak(self, issue_type: IssueType, stage: RolloutStage) -> Optional[WarningStreak]:
        return self._streaks.get((issue_type, stage))

    def clear(self) -> None:
        self._streaks.clear()

    def __len__(self) -> int:
        return len(self._streaks)
