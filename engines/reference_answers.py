"""Reference answer store and multi-reference similarity scoring.

High-scoring submissions are kept (with their embeddings) per challenge.
New submissions are compared against them; when a challenge has too few
references of its own, related challenges in the same skill category are
borrowed at a reduced weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import db
from catalog import Challenge
from engines.base import clamp_score, mean, round_half_up
from engines.caching import TTLCache
from schemas import ReferenceAnswerRecord

logger = logging.getLogger(__name__)

REFERENCE_CACHE_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class ReferenceConfig:
    min_score: int = 80
    max_references: int = 10
    min_similarity: float = 0.70
    duplicate_threshold: float = 0.95
    duplicate_scan_limit: int = 50
    base_weight: float = 0.10
    verified_bonus: float = 0.01
    max_verified_bonus: float = 0.05
    many_references: int = 10
    many_references_bonus: float = 0.02
    some_references: int = 5
    some_references_bonus: float = 0.01
    max_weight: float = 0.20
    adjustment_scale: float = 20.0
    good_match_similarity: float = 0.80
    well_seeded: int = 5
    curated_score: int = 95


@dataclass(frozen=True)
class CrossGameConfig:
    enabled: bool = True
    min_game_references: int = 3
    max_references: int = 15
    similarity_penalty: float = 0.10
    same_difficulty_bonus: float = 0.05
    min_similarity: float = 0.60
    weight_multiplier: float = 0.7


DEFAULT_REFERENCE_CONFIG = ReferenceConfig()
DEFAULT_CROSS_GAME_CONFIG = CrossGameConfig()


@dataclass
class ReferenceMatch:
    reference: ReferenceAnswerRecord
    similarity: float
    cross_game: bool = False


@dataclass
class MultiReferenceResult:
    matches: List[ReferenceMatch] = field(default_factory=list)
    average_similarity: float = 0.0
    best_similarity: float = 0.0
    best_score: int = 0
    weighted_score: int = 0
    weight: float = 0.0
    adjustment: int = 0
    percentile_estimate: int = 50
    verified_count: int = 0
    cross_game_used: bool = False

    @property
    def references_compared(self) -> int:
        return len(self.matches)


class ReferenceStore:
    """Store-facing operations for reference answers.

    Lookups go through the stored-procedure path and drop to the client-side
    equivalent when the store reports ``FallbackNeeded``. Stats are cached and
    invalidated on every mutation.
    """

    def __init__(self, config: ReferenceConfig = DEFAULT_REFERENCE_CONFIG, cache: Optional[TTLCache] = None):
        self.config = config
        self.cache: TTLCache = cache or TTLCache(REFERENCE_CACHE_TTL_SECONDS)

    def find_similar(
        self,
        embedding: Sequence[float],
        *,
        challenge_id: Optional[str] = None,
        skill_category: Optional[str] = None,
        exclude_challenge_id: Optional[str] = None,
        min_similarity: float = 0.0,
        limit: Optional[int] = None,
    ) -> List[Tuple[ReferenceAnswerRecord, float]]:
        kwargs: Dict[str, Any] = dict(
            challenge_id=challenge_id,
            skill_category=skill_category,
            exclude_challenge_id=exclude_challenge_id,
            min_score=self.config.min_score,
            min_similarity=min_similarity,
            limit=limit or self.config.max_references,
        )
        result = db.find_similar_references(embedding, **kwargs)
        if isinstance(result, db.Ok):
            return result.value
        if isinstance(result, db.FallbackNeeded):
            logger.debug("find_similar_references fallback: %s", result.reason)
            return db.find_similar_references_fallback(embedding, **kwargs)
        logger.warning("Reference lookup failed: %s", result.reason)
        return []

    def stats(self, challenge_id: str) -> Dict[str, Any]:
        def _load() -> Dict[str, Any]:
            result = db.get_reference_stats(challenge_id)
            if isinstance(result, db.Ok):
                return result.value
            if isinstance(result, db.FallbackNeeded):
                return db.get_reference_stats_fallback(challenge_id)
            logger.warning("Reference stats failed: %s", result.reason)
            return {"total": 0, "verified": 0, "avg_score": 0.0, "best_score": 0, "curated": 0}

        return self.cache.get_or_load(("stats", challenge_id), _load)

    def add(self, record: ReferenceAnswerRecord) -> db.AddReferenceOutcome:
        """Store ``record`` unless it scores too low or duplicates an active reference."""
        if record.score < self.config.min_score:
            return db.AddReferenceOutcome(False, reason=f"Score {record.score} below threshold {self.config.min_score}")
        if not record.embedding:
            return db.AddReferenceOutcome(False, reason="No embedding available")

        result = db.add_reference_answer(record, self.config.duplicate_threshold, self.config.duplicate_scan_limit)
        if isinstance(result, db.Ok):
            outcome = result.value
        elif isinstance(result, db.FallbackNeeded):
            outcome = db.add_reference_answer_fallback(record, self.config.duplicate_threshold, self.config.duplicate_scan_limit)
        else:
            logger.warning("Adding reference failed: %s", result.reason)
            return db.AddReferenceOutcome(False, reason=result.reason)

        if outcome.added:
            self.cache.invalidate(("stats", record.challenge_id))
            logger.info("Reference %s added for %s (score %s)", outcome.reference_id, record.challenge_id, record.score)
        return outcome

    def seed(self, challenge: Challenge, text: str, embedding: List[float], score: Optional[int] = None) -> db.AddReferenceOutcome:
        """Add a curated, pre-verified reference."""
        record = ReferenceAnswerRecord(
            challenge_id=challenge.id,
            challenge_title=challenge.title,
            submission=text,
            score=score if score is not None else self.config.curated_score,
            embedding=embedding,
            source_type="curated",
            skill_category=challenge.skill_category,
            difficulty=challenge.difficulty,
            is_verified=True,
        )
        return self.add(record)

    def promote(self, reference_id: int) -> bool:
        reference = db.get_reference(reference_id)
        if reference is None:
            return False
        promoted = db.promote_reference(reference_id)
        self.cache.invalidate(("stats", reference.challenge_id))
        return promoted

    def seeding_status(self, challenges: Sequence[Challenge]) -> Dict[str, Dict[str, Any]]:
        counts = db.count_active_references()
        status: Dict[str, Dict[str, Any]] = {}
        for challenge in challenges:
            n = counts.get(challenge.id, 0)
            if n >= self.config.well_seeded:
                label = "well"
            elif n > 0:
                label = "partial"
            else:
                label = "none"
            status[challenge.id] = {"references": n, "status": label}
        return status


class MultiReferenceScorer:
    def __init__(
        self,
        store: ReferenceStore,
        config: ReferenceConfig = DEFAULT_REFERENCE_CONFIG,
        cross_game: CrossGameConfig = DEFAULT_CROSS_GAME_CONFIG,
    ):
        self.store = store
        self.config = config
        self.cross_game = cross_game

    def _cross_game_matches(self, embedding: Sequence[float], challenge: Challenge) -> List[ReferenceMatch]:
        cfg = self.cross_game
        matches: List[ReferenceMatch] = []
        candidates = self.store.find_similar(
            embedding,
            skill_category=challenge.skill_category,
            exclude_challenge_id=challenge.id,
            limit=cfg.max_references,
        )
        for reference, similarity in candidates:
            adjusted = similarity - cfg.similarity_penalty
            if reference.difficulty == challenge.difficulty:
                adjusted += cfg.same_difficulty_bonus
            if adjusted >= cfg.min_similarity:
                matches.append(ReferenceMatch(reference, adjusted, cross_game=True))
        return matches

    def dynamic_weight(self, matches: Sequence[ReferenceMatch], cross_game_used: bool) -> float:
        cfg = self.config
        if not matches:
            return 0.0
        verified = sum(1 for m in matches if m.reference.is_verified)
        weight = cfg.base_weight + min(cfg.max_verified_bonus, verified * cfg.verified_bonus)
        if len(matches) >= cfg.many_references:
            weight += cfg.many_references_bonus
        elif len(matches) >= cfg.some_references:
            weight += cfg.some_references_bonus
        weight = min(cfg.max_weight, weight)
        if cross_game_used:
            weight *= self.cross_game.weight_multiplier
        return weight

    def score(self, embedding: Sequence[float], challenge: Challenge) -> MultiReferenceResult:
        if not embedding:
            return MultiReferenceResult()
        cfg = self.config
        matches = [
            ReferenceMatch(reference, similarity)
            for reference, similarity in self.store.find_similar(
                embedding, challenge_id=challenge.id, min_similarity=cfg.min_similarity
            )
        ]
        cross_game_used = False
        if self.cross_game.enabled and self.store.stats(challenge.id)["total"] < self.cross_game.min_game_references:
            borrowed = self._cross_game_matches(embedding, challenge)
            if borrowed:
                cross_game_used = True
                matches.extend(borrowed)
                matches.sort(key=lambda m: m.similarity, reverse=True)

        if not matches:
            return MultiReferenceResult(cross_game_used=False)

        similarities = [m.similarity for m in matches]
        average = mean(similarities)
        best = matches[0]
        weighted_num = 0.0
        weighted_den = 0.0
        for m in matches:
            w = m.similarity * (self.cross_game.weight_multiplier if m.cross_game else 1.0)
            weighted_num += w * m.reference.score
            weighted_den += w
        weight = self.dynamic_weight(matches, cross_game_used)
        adjustment = round_half_up((average - 0.5) * cfg.adjustment_scale * weight * 10)
        good = sum(1 for s in similarities if s >= cfg.good_match_similarity)
        percentile = max(1, min(99, round_half_up(average * 50 + best.similarity * 30 + good / len(matches) * 20)))

        return MultiReferenceResult(
            matches=matches,
            average_similarity=round(average, 4),
            best_similarity=round(best.similarity, 4),
            best_score=best.reference.score,
            weighted_score=clamp_score(weighted_num / weighted_den) if weighted_den else 0,
            weight=round(weight, 4),
            adjustment=int(adjustment),
            percentile_estimate=percentile,
            verified_count=sum(1 for m in matches if m.reference.is_verified),
            cross_game_used=cross_game_used,
        )


def render_multi_reference_note(result: MultiReferenceResult, skill_category: str) -> str:
    if not result.matches:
        return ""
    if result.average_similarity >= 0.85:
        quality = "Your answer closely mirrors the approach of top-scoring answers."
    elif result.average_similarity >= 0.75:
        quality = "Your answer shares most key elements with high-scoring answers."
    elif result.average_similarity >= 0.65:
        quality = "Your answer covers some of the ground that strong answers cover."
    else:
        quality = "Your answer takes a different route from most high-scoring answers."
    sign = "+" if result.adjustment >= 0 else ""
    parts = [
        f"<p><strong>Reference Comparison:</strong> {quality} Compared with {result.references_compared} "
        f"high-scoring answer(s); best match {round_half_up(result.best_similarity * 100)}% similar. "
        f"Adjustment: {sign}{result.adjustment} points.</p>"
    ]
    if result.cross_game_used:
        borrowed = sum(1 for m in result.matches if m.cross_game)
        parts.append(
            f"<p><strong>Cross-Game Analysis:</strong> This challenge has few reference answers yet, so "
            f"{borrowed} answer(s) from related {skill_category} challenges were used at reduced weight.</p>"
        )
    return "".join(parts)
