"""Spaced repetition system for skill retention (SM-2 variant).

Each (player, skill) pair carries an easiness factor, an interval and a
repetition count. A score maps to an SM-2 quality grade; successes stretch
the interval, failures reset it. Weakness level and skill status are pure
projections of the stored averages, never stored truth of their own.
"""

from __future__ import annotations

import html
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import db
from catalog import Challenge
from engines.base import mean, round_half_up
from schemas import SkillMemoryRecord

logger = logging.getLogger(__name__)

DIFFICULTY_RANK = {"easy": 0, "medium": 1, "hard": 2}


@dataclass(frozen=True)
class SpacedRepetitionConfig:
    quality_thresholds: Tuple[Tuple[int, int], ...] = ((90, 5), (80, 4), (70, 3), (50, 2), (30, 1))
    min_easiness: float = 1.3
    max_easiness: float = 2.5
    max_interval: float = 180
    success_quality: int = 3
    weakness_thresholds: Tuple[Tuple[int, str], ...] = ((40, "critical"), (55, "significant"), (70, "moderate"), (80, "slight"))
    decay_rate: float = 0.1
    decay_share: float = 0.3
    score_share: float = 0.7
    min_stability: float = 0.5
    max_stability: float = 5.0
    stability_growth: float = 1.2
    stability_loss: float = 0.8
    priority_base: Tuple[Tuple[str, int], ...] = (("critical", 100), ("significant", 75), ("moderate", 50), ("slight", 25))
    overdue_points_per_day: int = 5
    max_overdue_bonus: int = 50
    memory_discount: float = 0.3
    history_limit: int = 20
    max_recommendations: int = 5
    mastered_avg: int = 85
    mastered_repetitions: int = 3
    reviewing_repetitions: int = 2


@dataclass(frozen=True)
class XpBonusConfig:
    weak_skill: Tuple[Tuple[str, int], ...] = (("critical", 25), ("significant", 18), ("moderate", 12), ("slight", 6))
    overdue: Tuple[Tuple[int, int], ...] = ((14, 20), (7, 15), (3, 10), (1, 5))
    streak: Tuple[Tuple[int, int], ...] = ((30, 25), (14, 20), (7, 15), (5, 10), (3, 5))
    min_improvement: int = 5
    improvement_bonus: int = 10
    stretch_bonus_per_level: int = 10
    stretch_medium_avg: int = 55
    stretch_hard_avg: int = 75
    max_bonus: int = 50
    active_week_days: int = 3
    active_week_multiplier: float = 1.1


@dataclass(frozen=True)
class ReviewModeConfig:
    overdue_days: int = 7
    new_skill_attempts: int = 1
    min_score: int = 40
    contribution: float = 0.5
    retention_min_points: int = 3
    retained_fraction: float = 0.7
    trend_delta: float = 5


DEFAULT_SR_CONFIG = SpacedRepetitionConfig()
DEFAULT_XP_CONFIG = XpBonusConfig()
DEFAULT_REVIEW_MODE_CONFIG = ReviewModeConfig()


@dataclass
class ReviewRecommendation:
    skill_category: str
    priority: float
    status: str
    weakness_level: str
    overdue_days: int
    memory_strength: float
    reason: str


@dataclass
class XpBonus:
    total: int = 0
    parts: List[Tuple[str, int]] = field(default_factory=list)
    multiplier: float = 1.0


@dataclass
class ReviewMode:
    enabled: bool
    reason: Optional[str] = None


@dataclass
class RetentionStats:
    points: int
    retention_rate: float
    trend: str
    optimal_interval_days: float


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def score_to_quality(score: float, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> int:
    for threshold, quality in config.quality_thresholds:
        if score >= threshold:
            return quality
    return 0


def update_easiness(easiness: float, quality: int, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> float:
    miss = 5 - quality
    updated = easiness + (0.1 - miss * (0.08 + miss * 0.02))
    return max(config.min_easiness, min(config.max_easiness, updated))


def next_interval(repetitions: int, interval: float, easiness: float, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> float:
    """Interval after a successful review; ``repetitions`` is the new count."""
    if repetitions == 1:
        return 1
    if repetitions == 2:
        return 3
    return min(interval * easiness, config.max_interval)


def weakness_for(avg_score: float, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> str:
    for threshold, level in config.weakness_thresholds:
        if avg_score < threshold:
            return level
    return "none"


def memory_strength(record: SkillMemoryRecord, now: datetime, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> float:
    last = _utc(record.last_attempt_at)
    if last is None or record.last_score is None:
        return 0.0
    days = max(0.0, (now - last).total_seconds() / 86400)
    stability = max(config.min_stability, min(config.max_stability, record.stability))
    decay = math.exp(-config.decay_rate * days / stability)
    return round(decay * config.decay_share + record.last_score / 100 * config.score_share, 4)


def skill_status(record: Optional[SkillMemoryRecord], config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> str:
    if record is None or record.total_attempts == 0:
        return "new"
    if weakness_for(record.avg_score, config) in ("critical", "significant"):
        return "weak"
    if record.avg_score >= config.mastered_avg and record.repetitions >= config.mastered_repetitions:
        return "mastered"
    if record.repetitions >= config.reviewing_repetitions:
        return "reviewing"
    return "learning"


def overdue_days(record: SkillMemoryRecord, now: datetime) -> int:
    due = _utc(record.next_review_at)
    if due is None or due > now:
        return 0
    return int((now - due).total_seconds() // 86400)


def review_priority(record: SkillMemoryRecord, now: datetime, config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG) -> float:
    base = dict(config.priority_base).get(weakness_for(record.avg_score, config), 0)
    bonus = min(config.max_overdue_bonus, overdue_days(record, now) * config.overdue_points_per_day)
    return round((base + bonus) * (1 - memory_strength(record, now, config) * config.memory_discount), 2)


def apply_score(
    record: Optional[SkillMemoryRecord],
    player_id: str,
    skill_category: str,
    score: int,
    now: datetime,
    config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG,
) -> SkillMemoryRecord:
    """Return the memory state after one more scored attempt."""
    current = record.model_copy(deep=True) if record else SkillMemoryRecord(player_id=player_id, skill_category=skill_category)
    quality = score_to_quality(score, config)
    current.easiness_factor = update_easiness(current.easiness_factor, quality, config)

    if quality >= config.success_quality:
        current.repetitions += 1
        current.interval_days = next_interval(current.repetitions, current.interval_days, current.easiness_factor, config)
        current.stability = min(config.max_stability, current.stability * config.stability_growth)
    else:
        current.repetitions = 0
        current.interval_days = 1
        current.stability = max(config.min_stability, current.stability * config.stability_loss)

    current.last_quality = quality
    current.score_history = (current.score_history + [int(score)])[-config.history_limit:]
    current.total_attempts += 1
    current.avg_score = round(mean(current.score_history), 2)
    current.best_score = max(current.best_score, int(score))
    current.last_score = int(score)
    current.weakness_level = weakness_for(current.avg_score, config)
    current.last_attempt_at = now
    current.next_review_at = now + timedelta(days=current.interval_days)
    current.memory_strength = memory_strength(current, now, config)
    return current


class SpacedRepetitionEngine:
    def __init__(
        self,
        config: SpacedRepetitionConfig = DEFAULT_SR_CONFIG,
        xp_config: XpBonusConfig = DEFAULT_XP_CONFIG,
        review_config: ReviewModeConfig = DEFAULT_REVIEW_MODE_CONFIG,
    ):
        self.config = config
        self.xp_config = xp_config
        self.review_config = review_config

    def get_memory(self, player_id: str, skill_category: str) -> Optional[SkillMemoryRecord]:
        return db.get_skill_memory(player_id, skill_category)

    def preview(
        self, player_id: str, skill_category: str, score: int, now: datetime
    ) -> Tuple[Optional[SkillMemoryRecord], SkillMemoryRecord]:
        """Previous and updated memory state; nothing is written."""
        previous = self.get_memory(player_id, skill_category)
        return previous, apply_score(previous, player_id, skill_category, score, now, self.config)

    def commit(self, previous: Optional[SkillMemoryRecord], updated: SkillMemoryRecord, now: datetime) -> None:
        result = db.upsert_skill_memory(updated)
        if isinstance(result, db.FallbackNeeded):
            db.upsert_skill_memory_fallback(updated)
        elif isinstance(result, db.Failure):
            logger.warning("Skill memory write failed for %s/%s: %s", updated.player_id, updated.skill_category, result.reason)

        days_since = None
        if previous is not None and previous.last_attempt_at is not None:
            days_since = round((now - _utc(previous.last_attempt_at)).total_seconds() / 86400, 2)
        db.add_retention_point(
            updated.player_id, updated.skill_category, int(updated.last_score or 0), updated.best_score, days_since, now
        )

    def record_score(self, player_id: str, skill_category: str, score: int, now: datetime) -> SkillMemoryRecord:
        previous, updated = self.preview(player_id, skill_category, score, now)
        self.commit(previous, updated, now)
        return updated

    # -------------- recommendations --------------
    def get_review_recommendations(self, player_id: str, now: datetime) -> List[ReviewRecommendation]:
        recommendations = []
        for record in db.list_skill_memory(player_id):
            due = _utc(record.next_review_at)
            is_due = due is not None and due <= now
            weakness = weakness_for(record.avg_score, self.config)
            if not is_due and weakness == "none":
                continue
            late = overdue_days(record, now)
            if late:
                reason = f"Overdue by {late} day(s)"
            elif is_due:
                reason = "Due for review"
            else:
                reason = f"{weakness.capitalize()} weakness (average {record.avg_score:.0f})"
            recommendations.append(
                ReviewRecommendation(
                    skill_category=record.skill_category,
                    priority=review_priority(record, now, self.config),
                    status=skill_status(record, self.config),
                    weakness_level=weakness,
                    overdue_days=late,
                    memory_strength=memory_strength(record, now, self.config),
                    reason=reason,
                )
            )
        recommendations.sort(key=lambda r: r.priority, reverse=True)
        return recommendations[: self.config.max_recommendations]

    def get_skill_summary(self, player_id: str, now: datetime) -> Dict[str, object]:
        records = db.list_skill_memory(player_id)
        statuses: Dict[str, int] = {s: 0 for s in ("new", "learning", "reviewing", "mastered", "weak")}
        for record in records:
            statuses[skill_status(record, self.config)] += 1
        due = [r for r in records if _utc(r.next_review_at) is not None and _utc(r.next_review_at) <= now]
        return {
            "skills": len(records),
            "statuses": statuses,
            "due": len(due),
            "average_memory_strength": round(mean(memory_strength(r, now, self.config) for r in records), 3),
            "weakest": min(records, key=lambda r: r.avg_score).skill_category if records else None,
        }

    # -------------- XP and review mode --------------
    def _practice_streak(self, days: Sequence[str], today: datetime) -> int:
        practiced = set(days) | {today.date().isoformat()}
        streak = 0
        cursor = today.date()
        while cursor.isoformat() in practiced:
            streak += 1
            cursor -= timedelta(days=1)
        return streak

    def calculate_xp_bonus(
        self,
        player_id: str,
        challenge: Challenge,
        score: int,
        previous: Optional[SkillMemoryRecord],
        now: datetime,
    ) -> XpBonus:
        cfg = self.xp_config
        bonus = XpBonus()
        if previous is not None:
            weakness = weakness_for(previous.avg_score, self.config)
            weak_points = dict(cfg.weak_skill).get(weakness, 0)
            if weak_points:
                bonus.parts.append((f"Practising a {weakness} weakness", weak_points))
            late = overdue_days(previous, now)
            for days, points in cfg.overdue:
                if late >= days:
                    bonus.parts.append((f"Reviewing {late} day(s) overdue", points))
                    break
            if previous.last_score is not None and score - previous.last_score >= cfg.min_improvement:
                bonus.parts.append((f"Improved by {score - previous.last_score} points", cfg.improvement_bonus))

        comfort = 0
        if previous is not None:
            if previous.avg_score >= cfg.stretch_hard_avg:
                comfort = 2
            elif previous.avg_score >= cfg.stretch_medium_avg:
                comfort = 1
        stretch = DIFFICULTY_RANK.get(challenge.difficulty, 1) - comfort
        if previous is not None and stretch > 0:
            bonus.parts.append(("Stretch challenge", stretch * cfg.stretch_bonus_per_level))

        month = db.list_practice_days(player_id, now - timedelta(days=31))
        streak = self._practice_streak(month, now)
        for days, points in cfg.streak:
            if streak >= days:
                bonus.parts.append((f"{streak}-day practice streak", points))
                break

        raw = min(cfg.max_bonus, sum(points for _, points in bonus.parts))
        week_start = (now - timedelta(days=6)).date().isoformat()
        active_days = {d for d in month if d >= week_start} | {now.date().isoformat()}
        if len(active_days) >= cfg.active_week_days:
            bonus.multiplier = cfg.active_week_multiplier
        bonus.total = round_half_up(raw * bonus.multiplier)
        return bonus

    def review_mode(self, previous: Optional[SkillMemoryRecord], now: datetime) -> ReviewMode:
        cfg = self.review_config
        if previous is None or previous.total_attempts <= cfg.new_skill_attempts:
            return ReviewMode(True, "New skill: scores count at review weight while you learn")
        weakness = weakness_for(previous.avg_score, self.config)
        if weakness in ("critical", "significant"):
            return ReviewMode(True, f"{weakness.capitalize()} weakness in this skill")
        late = overdue_days(previous, now)
        if late >= cfg.overdue_days:
            return ReviewMode(True, f"Review overdue by {late} days")
        return ReviewMode(False)

    def review_contribution(self, score: int) -> int:
        cfg = self.review_config
        return round_half_up(max(score, cfg.min_score) * cfg.contribution)

    def points_awarded(self, score: int, mode: ReviewMode) -> int:
        if not mode.enabled:
            return score
        return max(self.review_contribution(score), score)

    def retention_stats(self, player_id: str, skill_category: str) -> Optional[RetentionStats]:
        cfg = self.review_config
        points = db.list_retention_points(player_id, skill_category)
        if len(points) < cfg.retention_min_points:
            return None
        retained = [p for p in points if p["score"] >= cfg.retained_fraction * p["best_score"]]
        half = len(points) // 2
        early = mean(p["score"] for p in points[:half])
        late = mean(p["score"] for p in points[half:])
        if late - early >= cfg.trend_delta:
            trend = "improving"
        elif early - late >= cfg.trend_delta:
            trend = "declining"
        else:
            trend = "stable"
        gaps = [p["days_since_last"] for p in retained if p["days_since_last"]]
        optimal = round(max(gaps), 1) if gaps else 1.0
        return RetentionStats(len(points), round(len(retained) / len(points), 2), trend, optimal)


def render_review_block(
    memory: SkillMemoryRecord,
    xp: XpBonus,
    mode: ReviewMode,
    retention: Optional[RetentionStats] = None,
) -> str:
    parts = ["<div class=\"learning-progress\"><p><strong>Learning Progress:</strong> "]
    interval = memory.interval_days
    parts.append(
        f"Next review of {html.escape(memory.skill_category)} in {interval:g} day(s). "
        f"Skill average {memory.avg_score:.0f} over {memory.total_attempts} attempt(s).</p>"
    )
    if xp.total:
        items = "".join(f"<li>{html.escape(label)}: +{points} XP</li>" for label, points in xp.parts)
        multiplier = " (active week x1.1)" if xp.multiplier > 1 else ""
        parts.append(f"<p>Bonus XP: +{xp.total}{multiplier}</p><ul>{items}</ul>")
    if mode.enabled:
        parts.append(f"<p><em>Review mode:</em> {html.escape(mode.reason or '')}.</p>")
    if retention is not None:
        parts.append(
            f"<p>Retention: {retention.retention_rate:.0%} of attempts kept within 70% of your best "
            f"({retention.trend}); review roughly every {retention.optimal_interval_days:g} day(s).</p>"
        )
    parts.append("</div>")
    return "".join(parts)
