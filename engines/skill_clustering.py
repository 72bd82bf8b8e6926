"""Relate a challenge to the rest of the catalog and suggest what to try next."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set

from catalog import Challenge

_STOPWORDS = {
    "a", "an", "and", "the", "for", "to", "of", "in", "on", "with", "your", "you", "that", "this",
    "is", "are", "be", "as", "or", "at", "by", "from", "who", "it", "write", "create",
}
_TOKEN = re.compile(r"[a-z][a-z0-9+#-]+")


@dataclass(frozen=True)
class ClusteringConfig:
    content_weight: float = 0.5
    skill_weight: float = 0.35
    difficulty_weight: float = 0.15
    min_similarity: float = 0.5
    variation_content: float = 0.5
    max_suggestions: int = 3
    advance_score: int = 80
    reinforce_score: int = 60


DEFAULT_CLUSTERING_CONFIG = ClusteringConfig()


@dataclass
class RelatedChallenge:
    challenge: Challenge
    similarity: float
    relationship: str


@dataclass
class ClusterAnalysis:
    related: List[RelatedChallenge]
    suggestions: List[RelatedChallenge]
    cluster_size: int
    completed_in_cluster: int


def content_tokens(challenge: Challenge) -> Set[str]:
    text = " ".join([challenge.title, challenge.task, " ".join(challenge.tags)]).lower()
    return {t for t in _TOKEN.findall(text) if t not in _STOPWORDS}


def similarity(a: Challenge, b: Challenge, config: ClusteringConfig = DEFAULT_CLUSTERING_CONFIG) -> float:
    ta, tb = content_tokens(a), content_tokens(b)
    content = len(ta & tb) / len(ta | tb) if ta and tb else 0.0
    skill = 1.0 if a.skill_category == b.skill_category else 0.0
    difficulty = 1 - abs(a.difficulty_rank - b.difficulty_rank) / 2
    return round(config.content_weight * content + config.skill_weight * skill + config.difficulty_weight * difficulty, 4)


def relationship(current: Challenge, other: Challenge, config: ClusteringConfig = DEFAULT_CLUSTERING_CONFIG) -> str:
    if current.skill_category != other.skill_category:
        return "related"
    if other.difficulty_rank < current.difficulty_rank:
        return "prerequisite"
    if other.difficulty_rank > current.difficulty_rank:
        return "advanced"
    ta, tb = content_tokens(current), content_tokens(other)
    content = len(ta & tb) / len(ta | tb) if ta and tb else 0.0
    return "variation" if content >= config.variation_content else "parallel"


def _preference(score: int, config: ClusteringConfig) -> Sequence[str]:
    if score >= config.advance_score:
        return ("advanced", "parallel", "variation", "related", "prerequisite")
    if score < config.reinforce_score:
        return ("prerequisite", "variation", "parallel", "related", "advanced")
    return ("parallel", "variation", "advanced", "related", "prerequisite")


class SkillClusterer:
    def __init__(self, config: ClusteringConfig = DEFAULT_CLUSTERING_CONFIG):
        self.config = config

    def analyze(
        self,
        challenge: Challenge,
        catalog: Iterable[Challenge],
        completed: Set[str],
        score: int,
    ) -> ClusterAnalysis:
        related: List[RelatedChallenge] = []
        for other in catalog:
            if other.id == challenge.id or not other.active:
                continue
            sim = similarity(challenge, other, self.config)
            if sim >= self.config.min_similarity:
                related.append(RelatedChallenge(other, sim, relationship(challenge, other, self.config)))
        related.sort(key=lambda r: r.similarity, reverse=True)

        order = _preference(score, self.config)
        candidates = [r for r in related if r.challenge.id not in completed]
        candidates.sort(key=lambda r: (order.index(r.relationship), -r.similarity))
        cluster = [r for r in related if r.challenge.skill_category == challenge.skill_category]
        return ClusterAnalysis(
            related=related,
            suggestions=candidates[: self.config.max_suggestions],
            cluster_size=len(cluster) + 1,
            completed_in_cluster=sum(1 for r in cluster if r.challenge.id in completed) + 1,
        )


def render_cluster_block(analysis: ClusterAnalysis, skill_category: str) -> str:
    if not analysis.suggestions and analysis.cluster_size <= 1:
        return ""
    parts = ["<div class=\"skill-cluster\">"]
    if analysis.suggestions:
        items = "".join(
            f"<li>{html.escape(r.challenge.title)} ({html.escape(r.challenge.difficulty)}, {r.relationship})</li>"
            for r in analysis.suggestions
        )
        parts.append(f"<p><strong>Try Next:</strong></p><ul>{items}</ul>")
    parts.append(
        f"<p>You've completed {analysis.completed_in_cluster} of {analysis.cluster_size} "
        f"{html.escape(skill_category)} challenges.</p></div>"
    )
    return "".join(parts)
