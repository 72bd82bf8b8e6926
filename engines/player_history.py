"""Personalised history insights from a player's earlier attempts."""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Sequence

from engines.base import mean, population_std, round_half_up
from schemas import AttemptRecord


@dataclass(frozen=True)
class HistoryConfig:
    expert: int = 85
    advanced: int = 70
    intermediate: int = 50
    consistency_factor: float = 3.33
    streak_score: int = 80
    returning_days: int = 7
    change_points: int = 10
    consistent_window: int = 5
    consistent_min_scores: int = 3
    consistent_std: float = 5


DEFAULT_HISTORY_CONFIG = HistoryConfig()


@dataclass
class HistoryInsights:
    level: str
    attempts: int
    average: float
    consistency: int
    best_streak: int
    category_attempts: int
    insights: List[str] = field(default_factory=list)


def player_level(average: float, attempts: int, config: HistoryConfig = DEFAULT_HISTORY_CONFIG) -> str:
    if attempts == 0:
        return "beginner"
    if average >= config.expert:
        return "expert"
    if average >= config.advanced:
        return "advanced"
    if average >= config.intermediate:
        return "intermediate"
    return "beginner"


def best_streak(scores: Sequence[int], threshold: int) -> int:
    best = run = 0
    for score in scores:
        run = run + 1 if score >= threshold else 0
        best = max(best, run)
    return best


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def analyze_history(
    attempts: Sequence[AttemptRecord],
    skill_category: str,
    score: int,
    now: datetime,
    config: HistoryConfig = DEFAULT_HISTORY_CONFIG,
) -> HistoryInsights:
    """``attempts`` are the player's earlier attempts, newest first."""
    chronological = list(reversed(attempts))
    scores = [a.score for a in chronological]
    category = [a.score for a in chronological if a.skill_category == skill_category]
    average = mean(scores)
    result = HistoryInsights(
        level=player_level(average, len(scores), config),
        attempts=len(scores),
        average=round(average, 1),
        consistency=max(0, round_half_up(100 - config.consistency_factor * population_std(scores))) if scores else 0,
        best_streak=best_streak(scores, config.streak_score),
        category_attempts=len(category),
    )

    if not category:
        result.insights.append(f"This is your first {skill_category} challenge. Welcome!")
    if attempts:
        gap = (now - _aware(attempts[0].created_at)).days
        if gap > config.returning_days:
            result.insights.append(f"Welcome back! It has been {gap} days since your last challenge.")
    if category:
        delta = score - mean(category)
        if delta >= config.change_points:
            result.insights.append(f"This is {round_half_up(delta)} points above your {skill_category} average. Great progress!")
        elif delta <= -config.change_points:
            result.insights.append(
                f"This is {round_half_up(-delta)} points below your {skill_category} average. Revisit the feedback below."
            )
        recent = category[-config.consistent_window:]
        if len(recent) >= config.consistent_min_scores and population_std(recent + [score]) < config.consistent_std:
            result.insights.append("Your recent scores in this skill are very consistent.")
    return result


def render_history_block(history: HistoryInsights) -> str:
    if history.attempts == 0 and not history.insights:
        return ""
    parts = ["<div class=\"player-history\"><p><strong>Your Journey:</strong> "]
    if history.attempts:
        parts.append(
            f"{history.level.capitalize()} level, average {history.average:g} across {history.attempts} challenge(s), "
            f"consistency {history.consistency}/100, best streak {history.best_streak}.</p>"
        )
    else:
        parts.append("First challenge completed.</p>")
    if history.insights:
        parts.append("<ul>" + "".join(f"<li>{html.escape(i)}</li>" for i in history.insights) + "</ul>")
    parts.append("</div>")
    return "".join(parts)
