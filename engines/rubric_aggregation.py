"""Independent summation of the judge's rubric breakdown.

The judge reports points per criterion under names it chose itself. Those
names are matched to the authoritative rubric (exact, then fuzzy), the
points are re-summed and the resulting percentage is compared with the
judge's own top-line score.
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from catalog import RubricCriterion
from engines.base import clamp_score, round_half_up
from schemas import RubricCriterionScore

NOT_SCORED_NOTE = "[Not scored by AI - defaulted to 0]"
CAPPED_NOTE = " [Points capped to max]"


@dataclass(frozen=True)
class RubricValidationConfig:
    fuzzy_threshold: float = 0.65
    containment_similarity: float = 0.85
    auto_correct_max_points: bool = True
    auto_correct_score: bool = False
    mismatch_warning_threshold: float = 5
    blend_divergence_threshold: float = 12
    rubric_weight: float = 0.25


DEFAULT_RUBRIC_CONFIG = RubricValidationConfig()


@dataclass
class RubricIssue:
    type: str
    severity: str
    message: str
    criterion: Optional[str] = None


@dataclass
class CriterionResult:
    name: str
    points: float
    max_points: float
    reasoning: str
    matched_from: Optional[str] = None
    match_similarity: float = 1.0

    @property
    def percentage(self) -> int:
        if self.max_points <= 0:
            return 0
        return clamp_score(self.points / self.max_points * 100)


@dataclass
class RubricAggregation:
    criteria: List[CriterionResult]
    total_points: float
    max_points: float
    percentage: int
    ai_score: int
    issues: List[RubricIssue] = field(default_factory=list)
    extra_criteria: List[str] = field(default_factory=list)

    @property
    def divergence(self) -> int:
        return abs(self.percentage - self.ai_score)

    @property
    def has_errors(self) -> bool:
        return any(i.severity == "error" for i in self.issues)

    def summary(self) -> Dict[str, object]:
        if not self.criteria:
            return {"criteria": 0}
        ranked = sorted(self.criteria, key=lambda c: c.percentage)
        return {
            "criteria": len(self.criteria),
            "lowest": {"name": ranked[0].name, "percentage": ranked[0].percentage},
            "highest": {"name": ranked[-1].name, "percentage": ranked[-1].percentage},
            "average_percentage": round_half_up(sum(c.percentage for c in self.criteria) / len(self.criteria)),
            "rubric_percentage": self.percentage,
            "divergence": self.divergence,
        }


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _normalize_name(name: str) -> str:
    return " ".join(name.lower().replace("_", " ").replace("-", " ").split())


def string_similarity(a: str, b: str, containment: float = DEFAULT_RUBRIC_CONFIG.containment_similarity) -> float:
    a, b = _normalize_name(a), _normalize_name(b)
    if not a or not b:
        return 0.0
    longest = max(len(a), len(b))
    similarity = 1 - levenshtein(a, b) / longest
    if a in b or b in a:
        similarity = max(similarity, containment)
    return similarity


def match_criteria(
    reported: Sequence[str],
    rubric: Sequence[str],
    config: RubricValidationConfig = DEFAULT_RUBRIC_CONFIG,
) -> Dict[str, Tuple[str, float]]:
    """Map rubric criterion -> (reported name, similarity)."""
    matches: Dict[str, Tuple[str, float]] = {}
    remaining = list(reported)

    normalized = {_normalize_name(r): r for r in remaining}
    for criterion in rubric:
        hit = normalized.get(_normalize_name(criterion))
        if hit is not None and hit in remaining:
            matches[criterion] = (hit, 1.0)
            remaining.remove(hit)

    for criterion in rubric:
        if criterion in matches or not remaining:
            continue
        scored = [(string_similarity(criterion, name, config.containment_similarity), name) for name in remaining]
        best_similarity, best_name = max(scored, key=lambda item: item[0])
        if best_similarity >= config.fuzzy_threshold:
            matches[criterion] = (best_name, best_similarity)
            remaining.remove(best_name)
    return matches


def aggregate_rubric(
    breakdown: Mapping[str, RubricCriterionScore],
    rubric: Sequence[RubricCriterion],
    ai_score: int,
    config: RubricValidationConfig = DEFAULT_RUBRIC_CONFIG,
) -> RubricAggregation:
    issues: List[RubricIssue] = []
    matches = match_criteria(list(breakdown), [c.name for c in rubric], config)
    matched_reported = {name for name, _ in matches.values()}

    criteria: List[CriterionResult] = []
    for criterion in rubric:
        if criterion.name not in matches:
            issues.append(RubricIssue("missing_criterion", "error", f"'{criterion.name}' was not scored", criterion.name))
            criteria.append(CriterionResult(criterion.name, 0.0, criterion.max_points, NOT_SCORED_NOTE, None, 0.0))
            continue

        reported_name, similarity = matches[criterion.name]
        entry = breakdown[reported_name]
        points = float(entry.points)
        reasoning = entry.reasoning

        if abs(entry.maxPoints - criterion.max_points) > 1e-9:
            issues.append(
                RubricIssue(
                    "invalid_max",
                    "warning",
                    f"Judge used max {entry.maxPoints:g} instead of {criterion.max_points:g}",
                    criterion.name,
                )
            )
        if points < 0:
            issues.append(RubricIssue("negative_points", "error", "Negative points reset to 0", criterion.name))
            points = 0.0
        if points > criterion.max_points:
            issues.append(
                RubricIssue(
                    "exceeds_max",
                    "error",
                    f"{points:g} points exceed max {criterion.max_points:g}",
                    criterion.name,
                )
            )
            if config.auto_correct_max_points:
                points = criterion.max_points
                reasoning = reasoning + CAPPED_NOTE

        criteria.append(CriterionResult(criterion.name, points, criterion.max_points, reasoning, reported_name, similarity))

    extras = [name for name in breakdown if name not in matched_reported]
    for name in extras:
        issues.append(RubricIssue("extra_criterion", "warning", f"'{name}' is not part of the rubric", name))

    total = sum(c.points for c in criteria)
    maximum = sum(c.max_points for c in criteria)
    percentage = clamp_score(total / maximum * 100) if maximum > 0 else 0
    aggregation = RubricAggregation(criteria, total, maximum, percentage, clamp_score(ai_score), issues, extras)

    if aggregation.divergence > config.mismatch_warning_threshold:
        issues.append(
            RubricIssue(
                "score_mismatch",
                "warning",
                f"Rubric total {percentage}% differs from overall score {aggregation.ai_score} by {aggregation.divergence}",
            )
        )
    return aggregation


def corrected_score(
    aggregation: RubricAggregation,
    config: RubricValidationConfig = DEFAULT_RUBRIC_CONFIG,
) -> Tuple[int, Optional[str]]:
    """Blend the rubric percentage into the judge score when they diverge.

    Returns the (possibly unchanged) score and a machine-readable reason.
    """
    if aggregation.max_points <= 0:
        return aggregation.ai_score, None
    if config.auto_correct_score:
        return aggregation.percentage, "rubric_score_replaced"
    if aggregation.divergence <= config.blend_divergence_threshold:
        return aggregation.ai_score, None
    blended = aggregation.ai_score * (1 - config.rubric_weight) + aggregation.percentage * config.rubric_weight
    return clamp_score(blended), f"rubric_blend:divergence={aggregation.divergence}"


def render_rubric_details(aggregation: RubricAggregation) -> str:
    rows = "".join(
        "<li><strong>{name}</strong>: {points:g}/{max:g} ({pct}%) - {reason}</li>".format(
            name=html.escape(c.name),
            points=c.points,
            max=c.max_points,
            pct=c.percentage,
            reason=html.escape(c.reasoning),
        )
        for c in aggregation.criteria
    )
    summary = aggregation.summary()
    notes = ""
    if aggregation.issues:
        notes = "<p><em>Adjustments:</em> " + html.escape("; ".join(i.message for i in aggregation.issues)) + "</p>"
    focus = ""
    if "lowest" in summary:
        focus = "<p>Strongest area: {hi}. Focus next on: {lo}.</p>".format(
            hi=html.escape(str(summary["highest"]["name"])),  # type: ignore[index]
            lo=html.escape(str(summary["lowest"]["name"])),  # type: ignore[index]
        )
    return (
        "<details><summary>Rubric Scoring Details</summary>"
        f"<p>Rubric total: {aggregation.total_points:g}/{aggregation.max_points:g} ({aggregation.percentage}%)</p>"
        f"<ul>{rows}</ul>{focus}{notes}</details>"
    )
