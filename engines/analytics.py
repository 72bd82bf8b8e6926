"""Observability records written after a submission is scored.

Nothing here changes a score. The pipeline schedules these writes as
detached tasks.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import db
from engines.base import mean, population_std

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewQueueConfig:
    min_confidence: int = 60
    gaming_levels: Sequence[str] = ("high", "critical")
    gaming_actions: Sequence[str] = ("flag_review", "reject")


@dataclass(frozen=True)
class EffectivenessBands:
    highly_effective: int = 20
    effective: int = 10
    neutral: int = 0
    ineffective: int = -10


DEFAULT_REVIEW_QUEUE_CONFIG = ReviewQueueConfig()
DEFAULT_EFFECTIVENESS_BANDS = EffectivenessBands()


@dataclass(frozen=True)
class RubricTuningConfig:
    min_samples: int = 15
    std_dev_ratio_threshold: float = 0.45
    disagreement_threshold: int = 15
    disagreement_rate_threshold: float = 0.35


DEFAULT_RUBRIC_TUNING_CONFIG = RubricTuningConfig()


def feedback_effectiveness(score_delta: int, bands: EffectivenessBands = DEFAULT_EFFECTIVENESS_BANDS) -> str:
    if score_delta >= bands.highly_effective:
        return "highly_effective"
    if score_delta >= bands.effective:
        return "effective"
    if score_delta >= bands.neutral:
        return "neutral"
    if score_delta >= bands.ineffective:
        return "ineffective"
    return "counterproductive"


def review_reasons(
    confidence: Optional[int],
    integrity_risk: Optional[str],
    gaming_level: Optional[str],
    gaming_action: Optional[str],
    config: ReviewQueueConfig = DEFAULT_REVIEW_QUEUE_CONFIG,
) -> List[str]:
    reasons = []
    if confidence is not None and confidence < config.min_confidence:
        reasons.append(f"low_confidence:{confidence}")
    if integrity_risk == "high":
        reasons.append("integrity_risk_high")
    if gaming_level in config.gaming_levels:
        reasons.append(f"gaming_risk_{gaming_level}")
    if gaming_action in config.gaming_actions:
        reasons.append(f"gaming_action_{gaming_action}")
    return reasons


def record_scoring(
    player_id: str,
    challenge_id: str,
    *,
    ai_score: Optional[int],
    validation_score: Optional[int],
    embedding_score: Optional[int],
    final_score: int,
    weights: Dict[str, float],
    confidence: Optional[int],
    gaming_risk: Optional[str],
    word_count: int,
    references_compared: int,
    processing_ms: int,
) -> None:
    db.record_scoring_analytics(
        player_id,
        challenge_id,
        ai_score=ai_score,
        validation_score=validation_score,
        embedding_score=embedding_score,
        final_score=final_score,
        weights=weights,
        confidence=confidence,
        gaming_risk=gaming_risk,
        word_count=word_count,
        references_compared=references_compared,
        processing_ms=processing_ms,
    )


def record_feedback_quality(
    player_id: str,
    challenge_id: str,
    skill_category: str,
    attempt_id: Optional[int],
    score: int,
    improvements: Sequence[str],
) -> Optional[str]:
    """Close the previous open feedback in this skill, then open a new one.

    Returns the effectiveness label assigned to the earlier feedback, if any.
    """
    label = None
    previous = db.find_open_feedback(player_id, skill_category, challenge_id)
    if previous is not None:
        delta = int(score) - int(previous["score"])
        label = feedback_effectiveness(delta)
        db.link_feedback_followup(previous["id"], attempt_id, delta, label)
    db.record_feedback(player_id, challenge_id, skill_category, attempt_id, score, improvements)
    return label


def maybe_enqueue_review(
    player_id: str,
    challenge_id: str,
    attempt_id: Optional[int],
    score: int,
    reasons: Sequence[str],
) -> Optional[int]:
    if not reasons:
        return None
    queue_id = db.enqueue_review(player_id, challenge_id, attempt_id, score, reasons)
    logger.info("Attempt %s queued for review: %s", attempt_id, ", ".join(reasons))
    return queue_id


def record_rubric_criteria(
    attempt_id: Optional[int],
    player_id: str,
    challenge_id: str,
    challenge_title: str,
    breakdown: Mapping[str, Any],
    *,
    final_score: int,
    ai_score: Optional[int],
    validation_score: Optional[int],
) -> int:
    """Store the judge's per-criterion points so noisy criteria can be found later."""
    rows = [
        {
            "attempt_id": attempt_id,
            "player_id": player_id,
            "challenge_id": challenge_id,
            "challenge_title": challenge_title,
            "criterion": name,
            "points": float(entry.points),
            "max_points": float(entry.maxPoints),
            "final_score": final_score,
            "ai_score": ai_score,
            "validation_score": validation_score,
        }
        for name, entry in breakdown.items()
    ]
    return db.log_rubric_criteria(rows)


def analyze_rubric_flags(
    rows: Sequence[Mapping[str, Any]],
    config: RubricTuningConfig = DEFAULT_RUBRIC_TUNING_CONFIG,
) -> List[Dict[str, Any]]:
    """Criteria whose points vary too much or whose attempts split judge and validator.

    Rows are grouped by (challenge, criterion); groups under ``min_samples``
    are never flagged. Results are sorted by std-dev ratio, highest first.
    """
    groups: Dict[Tuple[str, str], List[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        groups[(row["challenge_id"], row["criterion"])].append(row)

    flags = []
    for (challenge_id, criterion), items in groups.items():
        if len(items) < config.min_samples:
            continue
        points = [float(r["points"]) for r in items]
        max_points = max(float(r["max_points"]) for r in items)
        std_dev = population_std(points)
        ratio = std_dev / max_points if max_points > 0 else 0.0
        paired = [r for r in items if r.get("ai_score") is not None and r.get("validation_score") is not None]
        disagreements = sum(
            1 for r in paired if abs(int(r["ai_score"]) - int(r["validation_score"])) >= config.disagreement_threshold
        )
        rate = disagreements / len(paired) if paired else 0.0

        reasons = []
        if ratio >= config.std_dev_ratio_threshold:
            reasons.append(f"High criteria variance (std dev {std_dev:.1f} / max {max_points:g})")
        if rate >= config.disagreement_rate_threshold:
            reasons.append(f"High AI vs validation disagreement ({rate * 100:.0f}%)")
        if not reasons:
            continue
        flags.append(
            {
                "challenge_id": challenge_id,
                "challenge_title": items[-1].get("challenge_title"),
                "criterion": criterion,
                "samples": len(items),
                "avg_points": round(mean(points), 1),
                "max_points": max_points,
                "std_dev": round(std_dev, 2),
                "std_dev_ratio": round(ratio, 2),
                "disagreement_rate": round(rate, 2),
                "reasons": reasons,
            }
        )
    flags.sort(key=lambda f: f["std_dev_ratio"], reverse=True)
    return flags
