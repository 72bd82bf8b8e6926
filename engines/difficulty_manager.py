"""Adaptive difficulty per (player, skill, difficulty) bucket."""

from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import db
from catalog import DIFFICULTIES
from schemas import DifficultyProfileRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DifficultyConfig:
    promote_min_attempts: int = 3
    promote_min_avg: float = 75
    promote_min_high_scores: int = 2
    promote_min_streak: int = 2
    demote_min_attempts: int = 3
    demote_max_avg: float = 50
    high_score: int = 80
    very_high_score: int = 90
    avg_weight: float = 0.4
    component_points: int = 20
    consistency_spread: float = 50
    streak_points_per_hit: int = 5
    confidence_attempts: int = 10
    expected_intermediate: Tuple[Tuple[str, int], ...] = (("easy", 80), ("medium", 65), ("hard", 50))
    level_offsets: Tuple[Tuple[str, int], ...] = (("beginner", -10), ("intermediate", 0), ("advanced", 8), ("expert", 15))
    band_width: int = 7


DEFAULT_DIFFICULTY_CONFIG = DifficultyConfig()


@dataclass
class DifficultyRecommendation:
    difficulty: str
    current: Optional[str]
    action: str
    reason: str
    mastery: float = 0.0


@dataclass
class DifficultyUpdate:
    profile: DifficultyProfileRecord
    recommendation: DifficultyRecommendation
    transition: Optional[Tuple[str, str]] = None


def mastery_score(profile: DifficultyProfileRecord, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> float:
    if profile.attempts == 0:
        return 0.0
    points = config.component_points
    spread = max(0, profile.best_score - profile.worst_score)
    if profile.attempts > 1:
        consistency = points * max(0.0, 1 - spread / config.consistency_spread)
    else:
        consistency = points / 2
    high_ratio = points * profile.scores_above_80 / profile.attempts
    streak = min(points, profile.consecutive_high_scores * config.streak_points_per_hit)
    return round(min(100.0, config.avg_weight * profile.avg_score + consistency + high_ratio + streak), 2)


def ready_for_promotion(profile: DifficultyProfileRecord, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> bool:
    """All four gates must hold at once."""
    return (
        profile.attempts >= config.promote_min_attempts
        and profile.avg_score >= config.promote_min_avg
        and profile.scores_above_80 >= config.promote_min_high_scores
        and profile.consecutive_high_scores >= config.promote_min_streak
    )


def should_demote(profile: DifficultyProfileRecord, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> bool:
    if profile.difficulty == DIFFICULTIES[0]:
        return False
    return profile.attempts >= config.demote_min_attempts and profile.avg_score < config.demote_max_avg


def apply_score(
    profile: Optional[DifficultyProfileRecord],
    player_id: str,
    skill_category: str,
    difficulty: str,
    score: int,
    now: datetime,
    config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG,
) -> DifficultyProfileRecord:
    current = (
        profile.model_copy()
        if profile
        else DifficultyProfileRecord(player_id=player_id, skill_category=skill_category, difficulty=difficulty)
    )
    total = current.avg_score * current.attempts + score
    current.attempts += 1
    current.avg_score = round(total / current.attempts, 2)
    current.best_score = max(current.best_score, score)
    current.worst_score = min(current.worst_score, score)
    if score >= config.high_score:
        current.scores_above_80 += 1
        current.consecutive_high_scores += 1
    else:
        current.consecutive_high_scores = 0
    if score >= config.very_high_score:
        current.scores_above_90 += 1
    current.mastery_score = mastery_score(current, config)
    current.ready_for_promotion = ready_for_promotion(current, config)
    current.confidence = min(1.0, current.attempts / config.confidence_attempts)
    current.last_attempt_at = now
    return current


def _step(difficulty: str, delta: int) -> str:
    index = DIFFICULTIES.index(difficulty) + delta
    return DIFFICULTIES[max(0, min(len(DIFFICULTIES) - 1, index))]


def recommend(profiles: List[DifficultyProfileRecord], config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> DifficultyRecommendation:
    """Decision ladder: start easy, promote on the gate, demote on a low average, else stay."""
    played = [p for p in profiles if p.attempts > 0]
    if not played:
        return DifficultyRecommendation(DIFFICULTIES[0], None, "start", "No attempts in this skill yet")
    current = max(
        played,
        key=lambda p: (p.last_attempt_at.timestamp() if p.last_attempt_at else 0.0, DIFFICULTIES.index(p.difficulty)),
    )
    if current.ready_for_promotion and current.difficulty != DIFFICULTIES[-1]:
        return DifficultyRecommendation(
            _step(current.difficulty, 1),
            current.difficulty,
            "promote",
            f"Average {current.avg_score:.0f} with {current.consecutive_high_scores} high scores in a row",
            current.mastery_score,
        )
    if should_demote(current, config):
        return DifficultyRecommendation(
            _step(current.difficulty, -1),
            current.difficulty,
            "demote",
            f"Average {current.avg_score:.0f} after {current.attempts} attempts",
            current.mastery_score,
        )
    return DifficultyRecommendation(
        current.difficulty,
        current.difficulty,
        "stay",
        "Keep building mastery at this level",
        current.mastery_score,
    )


def expected_band(level: str, difficulty: str, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> Tuple[int, int]:
    centre = dict(config.expected_intermediate).get(difficulty, 65) + dict(config.level_offsets).get(level, 0)
    return max(0, centre - config.band_width), min(100, centre + config.band_width)


def generate_difficulty_feedback(level: str, difficulty: str, score: int, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> str:
    low, high = expected_band(level, difficulty, config)
    if score > high:
        return f"Above the expected {low}-{high} range for {level} players on {difficulty} challenges."
    if score < low:
        return f"Below the expected {low}-{high} range for {level} players on {difficulty} challenges."
    return f"Within the expected {low}-{high} range for {level} players on {difficulty} challenges."


class DifficultyManager:
    def __init__(self, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG):
        self.config = config

    def get_recommended_difficulty(self, player_id: str, skill_category: str) -> DifficultyRecommendation:
        return recommend(db.list_difficulty_profiles(player_id, skill_category), self.config)

    def preview(self, player_id: str, skill_category: str, difficulty: str, score: int, now: datetime) -> DifficultyUpdate:
        """Project the bucket after ``score`` without writing it."""
        profiles = db.list_difficulty_profiles(player_id, skill_category)
        before = recommend(profiles, self.config)
        existing = next((p for p in profiles if p.difficulty == difficulty), None)
        profile = apply_score(existing, player_id, skill_category, difficulty, score, now, self.config)
        after = recommend([p for p in profiles if p.difficulty != difficulty] + [profile], self.config)
        transition = None
        if after.action in ("promote", "demote") and (before.action, before.difficulty) != (after.action, after.difficulty):
            transition = (difficulty, after.difficulty)
        return DifficultyUpdate(profile, after, transition)

    def commit(self, update: DifficultyUpdate) -> None:
        profile = update.profile
        result = db.upsert_difficulty_profile(profile)
        if isinstance(result, db.FallbackNeeded):
            db.upsert_difficulty_profile_fallback(profile)
        elif isinstance(result, db.Failure):
            logger.warning("Difficulty profile write failed for %s/%s: %s", profile.player_id, profile.skill_category, result.reason)
        if update.transition is not None:
            logger.info(
                json.dumps(
                    {
                        "event": "difficulty_transition",
                        "player_id": profile.player_id,
                        "skill_category": profile.skill_category,
                        "from": update.transition[0],
                        "to": update.transition[1],
                        "action": update.recommendation.action,
                        "mastery": profile.mastery_score,
                    }
                )
            )

    def record_attempt(self, player_id: str, skill_category: str, difficulty: str, score: int, now: datetime) -> DifficultyUpdate:
        update = self.preview(player_id, skill_category, difficulty, score, now)
        self.commit(update)
        return update


def render_difficulty_block(update: DifficultyUpdate, level: str, score: int, config: DifficultyConfig = DEFAULT_DIFFICULTY_CONFIG) -> str:
    profile = update.profile
    width = int(round(profile.mastery_score))
    parts = [
        "<div class=\"difficulty-progress\">",
        f"<p><strong>Mastery ({html.escape(profile.difficulty)}):</strong> {profile.mastery_score:.0f}/100</p>",
        f"<div class=\"mastery-bar\"><div class=\"mastery-fill\" style=\"width: {width}%\"></div></div>",
        f"<p>{html.escape(generate_difficulty_feedback(level, profile.difficulty, score, config))}</p>",
    ]
    rec = update.recommendation
    if update.transition is not None and rec.action == "promote":
        parts.append(f"<p><strong>Level up!</strong> You are ready for {html.escape(rec.difficulty)} challenges.</p>")
    elif update.transition is not None and rec.action == "demote":
        parts.append(f"<p>Try a few {html.escape(rec.difficulty)} challenges to strengthen the basics.</p>")
    parts.append("</div>")
    return "".join(parts)
