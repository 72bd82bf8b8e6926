"""Weighted ensemble of judge, validator and embedding signals.

The combiner is a pure function: identical inputs and weights always give
the same score. Weights are renormalized after any AI-weight override, and
the confidence figure is returned alongside the score for later stages.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from engines.base import clamp_score, population_std, round_half_up, split_sentences, word_count


@dataclass(frozen=True)
class EnsembleWeights:
    ai: float = 0.55
    validation: float = 0.30
    embedding: float = 0.15


@dataclass(frozen=True)
class EnsembleConfig:
    weights: EnsembleWeights = EnsembleWeights()
    high_confidence: int = 75
    medium_confidence: int = 50
    confidence_std_penalty: float = 1.5
    confidence_spread_penalty: float = 0.3
    agreement_std_factor: float = 2.0
    range_std_factor: float = 1.5


@dataclass(frozen=True)
class IntegrityConfig:
    exact_copy_similarity: float = 0.95
    medium_risk_similarity: float = 0.90
    exact_copy_cap: int = 50
    high_risk_multiplier: float = 0.85
    medium_risk_multiplier: float = 0.95
    min_words: int = 15
    min_sentences_for_repetition: int = 3
    min_sentence_chars: int = 10
    unique_sentence_ratio: float = 0.6
    medium_risk_indicators: int = 2
    perfect_score_similarity: float = 0.95


DEFAULT_ENSEMBLE_CONFIG = EnsembleConfig()
DEFAULT_INTEGRITY_CONFIG = IntegrityConfig()

_PLACEHOLDERS = [
    re.compile(r"\[(?:insert|your|add|name|company)[^\]]*\]", re.I),
    re.compile(r"<(?:your|insert)[^>]*>", re.I),
    re.compile(r"\blorem ipsum\b", re.I),
    re.compile(r"\bx{3,}\b", re.I),
    re.compile(r"\b(?:TODO|TBD)\b"),
]


@dataclass
class IntegrityReport:
    is_exact_copy: bool = False
    similarity_to_example: Optional[float] = None
    too_short: bool = False
    repetitive: bool = False
    has_placeholders: bool = False
    risk: str = "low"

    @property
    def indicators(self) -> List[str]:
        found = []
        if self.too_short:
            found.append("too_short")
        if self.repetitive:
            found.append("repetitive")
        if self.has_placeholders:
            found.append("placeholders")
        return found


@dataclass
class EnsembleResult:
    final_score: int
    weighted_score: int
    weights: Dict[str, float]
    components: Dict[str, int]
    confidence: int
    confidence_level: str
    agreement: int
    std_dev: float
    score_range: Tuple[int, int]
    multi_reference_adjustment: int = 0
    integrity: IntegrityReport = field(default_factory=IntegrityReport)


def _normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def check_integrity(
    text: str,
    example_solution: Optional[str],
    similarity_to_example: Optional[float],
    config: IntegrityConfig = DEFAULT_INTEGRITY_CONFIG,
) -> IntegrityReport:
    report = IntegrityReport(similarity_to_example=similarity_to_example)
    if example_solution and _normalize_text(text) == _normalize_text(example_solution):
        report.is_exact_copy = True
    if similarity_to_example is not None and similarity_to_example > config.exact_copy_similarity:
        report.is_exact_copy = True

    report.too_short = word_count(text) < config.min_words
    sentences = split_sentences(text, min_length=config.min_sentence_chars)
    if len(sentences) > config.min_sentences_for_repetition:
        unique = {s.lower() for s in sentences}
        report.repetitive = len(unique) < config.unique_sentence_ratio * len(sentences)
    report.has_placeholders = any(p.search(text) for p in _PLACEHOLDERS)

    if report.is_exact_copy:
        report.risk = "high"
    elif len(report.indicators) >= config.medium_risk_indicators or (
        similarity_to_example is not None and similarity_to_example > config.medium_risk_similarity
    ):
        report.risk = "medium"
    return report


def apply_integrity(
    score: int,
    report: IntegrityReport,
    validation_score: int,
    config: IntegrityConfig = DEFAULT_INTEGRITY_CONFIG,
) -> int:
    if report.is_exact_copy:
        score = min(score, config.exact_copy_cap)
    elif report.risk == "high":
        score = clamp_score(score * config.high_risk_multiplier)
    elif report.risk == "medium":
        score = clamp_score(score * config.medium_risk_multiplier)
    if score >= 100:
        similarity = report.similarity_to_example or 0.0
        if not (validation_score == 100 and similarity >= config.perfect_score_similarity):
            score = 99
    return clamp_score(score)


def normalize_weights(
    ai_weight_override: Optional[float] = None,
    has_embedding: bool = True,
    weights: EnsembleWeights = DEFAULT_ENSEMBLE_CONFIG.weights,
) -> Dict[str, float]:
    """Return ensemble weights that sum to 1 after an optional AI override."""
    ai = weights.ai if ai_weight_override is None else max(0.0, min(1.0, float(ai_weight_override)))
    raw = {
        "ai": ai,
        "validation": weights.validation,
        "embedding": weights.embedding if has_embedding else 0.0,
    }
    total = sum(raw.values())
    if total <= 0:
        return {"ai": 0.0, "validation": 1.0, "embedding": 0.0}
    return {name: value / total for name, value in raw.items()}


def combine(
    ai_score: int,
    validation_score: int,
    embedding_similarity: Optional[float] = None,
    *,
    ai_weight_override: Optional[float] = None,
    multi_reference_adjustment: int = 0,
    config: EnsembleConfig = DEFAULT_ENSEMBLE_CONFIG,
) -> EnsembleResult:
    has_embedding = embedding_similarity is not None
    weights = normalize_weights(ai_weight_override, has_embedding, config.weights)
    components = {"ai": clamp_score(ai_score), "validation": clamp_score(validation_score)}
    if has_embedding:
        components["embedding"] = clamp_score(embedding_similarity * 100)

    weighted = sum(components[name] * weights[name] for name in components)
    weighted_score = clamp_score(weighted)
    final = clamp_score(weighted_score + multi_reference_adjustment)

    participating = [components[name] for name in components if weights[name] > 0]
    sigma = population_std(participating)
    spread = (max(participating) - min(participating)) if participating else 0
    confidence = clamp_score(100 - config.confidence_std_penalty * sigma - config.confidence_spread_penalty * spread)
    if confidence >= config.high_confidence:
        level = "high"
    elif confidence >= config.medium_confidence:
        level = "medium"
    else:
        level = "low"
    margin = round_half_up(config.range_std_factor * sigma)

    return EnsembleResult(
        final_score=final,
        weighted_score=weighted_score,
        weights=weights,
        components=components,
        confidence=confidence,
        confidence_level=level,
        agreement=max(0, round_half_up(100 - config.agreement_std_factor * sigma)),
        std_dev=round(sigma, 2),
        score_range=(clamp_score(final - margin), clamp_score(final + margin)),
        multi_reference_adjustment=multi_reference_adjustment,
    )


def render_ensemble_note(result: EnsembleResult, consistency_notes: List[str]) -> str:
    parts = [
        "<p><strong>How this score was built:</strong> "
        + ", ".join(f"{name} {score}/100 ({result.weights[name]:.0%})" for name, score in result.components.items())
        + f". Confidence: {result.confidence_level} ({result.confidence}%), likely range "
        f"{result.score_range[0]}-{result.score_range[1]}.</p>"
    ]
    for note in consistency_notes:
        parts.append(f"<p><em>{html.escape(note)}</em></p>")
    if result.integrity.is_exact_copy:
        parts.append("<p><strong>Integrity:</strong> This answer closely matches the example solution, so the score was capped.</p>")
    elif result.integrity.risk == "medium":
        parts.append(
            "<p><strong>Integrity:</strong> Signs of low effort were detected ("
            + ", ".join(result.integrity.indicators or ["high similarity to the example"])
            + ").</p>"
        )
    return "".join(parts)
