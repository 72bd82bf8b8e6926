"""Cross-model consistency checks and confidence-based AI reweighting."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from engines.base import clamp_score

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsistencyConfig:
    high_stakes_threshold: int = 85
    boundary_scores: Tuple[int, ...] = (50, 75, 80)
    boundary_margin: int = 3
    low_agreement_proxy: int = 60
    very_low_agreement_proxy: int = 40
    max_score_divergence: int = 15
    use_average_on_divergence: bool = True
    min_divergence_multiplier: float = 0.5
    very_low_band: int = 30
    low_band: int = 50
    medium_band: int = 70
    very_low_multiplier: float = 0.6
    low_multiplier: float = 0.8
    ai_weight_floor: float = 0.2
    neutral_proxy: int = 50


DEFAULT_CONSISTENCY_CONFIG = ConsistencyConfig()


@dataclass
class ConsistencyResult:
    adjusted_score: int
    ai_weight: float
    proxy: int
    agreement: str
    cross_validated: bool = False
    secondary_score: Optional[int] = None
    flags: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def confidence_proxy(ai_score: int, validation_score: int, config: ConsistencyConfig = DEFAULT_CONSISTENCY_CONFIG) -> int:
    """Agreement between the judge and the automated checks, 0-100."""
    if validation_score <= 0:
        return config.neutral_proxy
    return clamp_score((1 - abs(ai_score - validation_score) / 100) * 100)


def agreement_level(proxy: int, config: ConsistencyConfig = DEFAULT_CONSISTENCY_CONFIG) -> str:
    spread = abs(proxy - config.neutral_proxy) * 2
    if spread < config.very_low_band:
        return "very_low"
    if spread < config.low_band:
        return "low"
    if spread < config.medium_band:
        return "medium"
    return "high"


def cross_validation_reason(ai_score: int, proxy: int, config: ConsistencyConfig = DEFAULT_CONSISTENCY_CONFIG) -> Optional[str]:
    if ai_score >= config.high_stakes_threshold:
        return "high_stakes"
    if proxy < config.low_agreement_proxy:
        return "low_agreement"
    for boundary in config.boundary_scores:
        if abs(ai_score - boundary) <= config.boundary_margin:
            return f"near_boundary_{boundary}"
    return None


def adjust_ai_weight(
    base_weight: float,
    agreement: str,
    proxy: int,
    config: ConsistencyConfig = DEFAULT_CONSISTENCY_CONFIG,
) -> Tuple[float, Optional[str]]:
    weight = base_weight
    if agreement == "very_low":
        weight *= config.very_low_multiplier
    elif agreement == "low":
        weight *= config.low_multiplier
    if proxy < config.very_low_agreement_proxy:
        weight *= config.very_low_multiplier
    elif proxy < config.low_agreement_proxy:
        weight *= config.low_multiplier
    weight = max(config.ai_weight_floor, weight)
    if abs(weight - base_weight) < 1e-9:
        return base_weight, None
    return weight, f"ai_weight_adjusted:{base_weight:.2f}->{weight:.2f}"


class ConsistencyChecker:
    def __init__(self, config: ConsistencyConfig = DEFAULT_CONSISTENCY_CONFIG):
        self.config = config

    async def check(
        self,
        ai_score: int,
        validation_score: int,
        base_ai_weight: float,
        second_opinion: Callable[[], Awaitable[Optional[int]]],
    ) -> ConsistencyResult:
        cfg = self.config
        proxy = confidence_proxy(ai_score, validation_score, cfg)
        agreement = agreement_level(proxy, cfg)
        result = ConsistencyResult(adjusted_score=clamp_score(ai_score), ai_weight=base_ai_weight, proxy=proxy, agreement=agreement)

        if agreement in ("very_low", "low"):
            result.flags.append(f"{agreement}_agreement")

        weight, weight_reason = adjust_ai_weight(base_ai_weight, agreement, proxy, cfg)
        if weight_reason:
            result.ai_weight = weight
            result.flags.append("ai_weight_adjusted")
            result.reasons.append(weight_reason)
            level = "low" if agreement in ("very_low", "low") or proxy < cfg.low_agreement_proxy else "medium"
            result.notes.append(
                f"Confidence Note: Score confidence is {level}. Validation-based scoring was weighted more heavily."
            )

        trigger = cross_validation_reason(ai_score, proxy, cfg)
        if trigger is None:
            return result

        result.cross_validated = True
        result.reasons.append(f"cross_validation_triggered:{trigger}")
        try:
            secondary = await second_opinion()
        except Exception as exc:
            logger.warning("Cross-validation call raised: %s", exc)
            secondary = None
        if secondary is None:
            result.reasons.append("cross_validation_failed")
            logger.info("Cross-validation failed, using primary score")
            return result

        secondary = clamp_score(secondary)
        result.secondary_score = secondary
        divergence = abs(ai_score - secondary)
        if divergence > cfg.max_score_divergence:
            result.flags.append("cross_validation_divergence")
            if cfg.use_average_on_divergence:
                result.adjusted_score = clamp_score((ai_score + secondary) / 2)
            multiplier = max(cfg.min_divergence_multiplier, 1 - divergence / 100)
            result.ai_weight = max(cfg.ai_weight_floor, result.ai_weight * multiplier)
            if "ai_weight_adjusted" not in result.flags:
                result.flags.append("ai_weight_adjusted")
            reason = f"Models diverged by {divergence} points ({ai_score} vs {secondary}), using average"
            result.reasons.append(f"cross_validation_divergence:{divergence}")
            result.notes.append(f"Score Verification Note: {reason}")
            logger.info(reason)
        else:
            result.flags.append("cross_validation_passed")
            result.reasons.append(f"cross_validation_passed:{divergence}")
        return result
