"""Peer comparison: percentile, rank and distribution of scores on the same
challenge and across the skill category, plus the optional score curve."""

from __future__ import annotations

import html
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import db
from catalog import Challenge
from engines.base import clamp_score, mean, percentile_value, population_std, round_half_up

logger = logging.getLogger(__name__)

CURVE_MODES = ("bell", "linear", "sqrt")


@dataclass(frozen=True)
class PeerComparisonConfig:
    min_game_peers: int = 5
    min_category_scores: int = 5
    min_category_challenges: int = 2
    curve_target: float = 70
    curve_strength: float = 0.3
    curve_damping_z: float = 3.0
    badge_top_percentage: int = 25


DEFAULT_PEER_CONFIG = PeerComparisonConfig()


@dataclass
class PeerStats:
    sample_size: int
    percentile: int
    top_percentage: int
    rank: int
    mean: float
    std_dev: float
    p10: float
    p25: float
    p75: float
    p90: float


@dataclass
class PeerComparison:
    score: int
    game: Optional[PeerStats] = None
    category: Optional[PeerStats] = None
    category_challenges: int = 0
    curve_mode: Optional[str] = None
    curved_score: Optional[int] = None


def percentile_rank(scores: Sequence[int], score: int) -> Tuple[int, int, int]:
    """Average-rank percentile: returns (percentile, below, equal)."""
    if not scores:
        return 0, 0, 0
    below = sum(1 for s in scores if s < score)
    equal = sum(1 for s in scores if s == score)
    return round_half_up((below + 0.5 * equal) / len(scores) * 100), below, equal


def compute_stats(scores: Sequence[int], score: int) -> PeerStats:
    ordered = sorted(scores)
    percentile, _, _ = percentile_rank(ordered, score)
    return PeerStats(
        sample_size=len(ordered),
        percentile=percentile,
        top_percentage=max(1, 100 - percentile),
        rank=sum(1 for s in ordered if s > score) + 1,
        mean=round(mean(ordered), 1),
        std_dev=round(population_std(ordered), 1),
        p10=round(percentile_value(ordered, 10), 1),
        p25=round(percentile_value(ordered, 25), 1),
        p75=round(percentile_value(ordered, 75), 1),
        p90=round(percentile_value(ordered, 90), 1),
    )


def apply_curve(score: int, scores: Sequence[int], mode: Optional[str], config: PeerComparisonConfig = DEFAULT_PEER_CONFIG) -> int:
    """Move ``score`` toward the target median; extreme z-scores move less."""
    if mode not in CURVE_MODES or not scores:
        return clamp_score(score)
    avg = mean(scores)
    std = population_std(scores)
    if std == 0:
        return clamp_score(score)
    z = (score - avg) / std
    if mode == "bell":
        damping = math.exp(-(z ** 2) / 2)
        shift = (config.curve_target - avg) * config.curve_strength * damping
    elif mode == "linear":
        damping = max(0.0, 1 - abs(z) / config.curve_damping_z)
        shift = (config.curve_target - avg) * config.curve_strength * damping
    else:
        damping = max(0.0, 1 - abs(z) / config.curve_damping_z)
        shift = (math.sqrt(max(score, 0) / 100) * 100 - score) * config.curve_strength * damping
    return clamp_score(score + shift)


class PeerComparisonEngine:
    def __init__(self, config: PeerComparisonConfig = DEFAULT_PEER_CONFIG):
        self.config = config

    def _game_scores(self, challenge_id: str, player_id: str) -> List[int]:
        result = db.get_challenge_scores(challenge_id, player_id)
        if isinstance(result, db.Ok):
            return result.value
        if isinstance(result, db.FallbackNeeded):
            return db.get_challenge_scores_fallback(challenge_id, player_id)
        logger.warning("Peer score lookup failed: %s", result.reason)
        return []

    def _category_scores(self, challenge: Challenge, player_id: str) -> List[Tuple[str, int]]:
        result = db.get_category_scores(challenge.skill_category, challenge.id, player_id)
        if isinstance(result, db.Ok):
            return result.value
        if isinstance(result, db.FallbackNeeded):
            return db.get_category_scores_fallback(challenge.skill_category, challenge.id, player_id)
        logger.warning("Category score lookup failed: %s", result.reason)
        return []

    def compare(self, player_id: str, challenge: Challenge, score: int, curve: bool = True) -> PeerComparison:
        """Peer statistics for ``score``; ``curve=False`` reports them without applying the challenge curve."""
        cfg = self.config
        comparison = PeerComparison(score=score)

        game_scores = self._game_scores(challenge.id, player_id)
        if len(game_scores) >= cfg.min_game_peers:
            if curve and challenge.curve_mode in CURVE_MODES:
                comparison.curve_mode = challenge.curve_mode
                comparison.curved_score = apply_curve(score, game_scores, challenge.curve_mode, cfg)
                comparison.score = comparison.curved_score
            comparison.game = compute_stats(game_scores, comparison.score)

        category = self._category_scores(challenge, player_id)
        distinct = {challenge_id for challenge_id, _ in category}
        comparison.category_challenges = len(distinct)
        if len(category) >= cfg.min_category_scores and len(distinct) >= cfg.min_category_challenges:
            comparison.category = compute_stats([s for _, s in category], comparison.score)
        return comparison


def render_peer_block(comparison: PeerComparison, skill_category: str, config: PeerComparisonConfig = DEFAULT_PEER_CONFIG) -> str:
    if comparison.game is None and comparison.category is None:
        return ""
    parts = ["<div class=\"peer-comparison\"><p><strong>How You Compare:</strong></p><ul>"]
    game = comparison.game
    if game is not None:
        badge = f" <strong>Top {game.top_percentage}%</strong>" if game.top_percentage <= config.badge_top_percentage else ""
        parts.append(
            f"<li>This challenge: {game.percentile}th percentile of {game.sample_size} players "
            f"(rank {game.rank}, average {game.mean:g}).{badge}</li>"
        )
        parts.append(f"<li>Middle half of players scored {game.p25:g}-{game.p75:g}; top 10% scored {game.p90:g}+.</li>")
    if comparison.category is not None:
        cat = comparison.category
        parts.append(
            f"<li>Across {comparison.category_challenges} other {html.escape(skill_category)} challenges: "
            f"{cat.percentile}th percentile (average {cat.mean:g}).</li>"
        )
    if comparison.curved_score is not None:
        parts.append(f"<li>A {comparison.curve_mode} curve is active for this challenge.</li>")
    parts.append("</ul></div>")
    return "".join(parts)
