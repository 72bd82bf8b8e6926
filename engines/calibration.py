"""Per-challenge score calibration.

A batch job compares each challenge's historical final scores against a
benchmark for its difficulty and stores a correction. At scoring time the
stored correction is dampened by ``strength``, capped at ``max_offset`` and
applied to the live score.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import db
from catalog import DIFFICULTIES, Challenge
from engines.base import clamp_score, mean, population_std, quantile_at
from engines.caching import TTLCache
from schemas import CalibrationRecord

logger = logging.getLogger(__name__)

CALIBRATION_CACHE_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class Benchmark:
    mean: float
    median: float
    std: float


@dataclass(frozen=True)
class CalibrationConfig:
    benchmarks: Tuple[Tuple[str, Benchmark], ...] = (
        ("easy", Benchmark(75, 78, 12)),
        ("medium", Benchmark(60, 62, 15)),
        ("hard", Benchmark(45, 48, 18)),
    )
    minor_deviation: float = 5
    significant_deviation: float = 10
    extreme_deviation: float = 15
    min_samples: int = 30
    strength: float = 0.8
    max_offset: float = 15
    auto_calibrate_threshold: float = 5
    min_confidence: float = 0.5
    confidence_samples: int = 100
    scale_ratio_low: float = 0.75
    scale_ratio_high: float = 1.33
    min_scale: float = 0.8
    max_scale: float = 1.2

    def benchmark(self, difficulty: str) -> Benchmark:
        return dict(self.benchmarks).get(difficulty, dict(self.benchmarks)["medium"])


DEFAULT_CALIBRATION_CONFIG = CalibrationConfig()


@dataclass
class CalibrationAdjustment:
    raw_score: int
    score: int
    applied_offset: float = 0.0
    applied_scale: float = 1.0
    record: Optional[CalibrationRecord] = None

    @property
    def adjustment(self) -> int:
        return self.score - self.raw_score


@dataclass
class CalibrationRunSummary:
    games_analyzed: int = 0
    games_calibrated: int = 0
    games_flagged: int = 0
    too_easy: int = 0
    too_hard: int = 0
    duration_ms: int = 0
    run_id: Optional[int] = None
    records: List[CalibrationRecord] = field(default_factory=list)


def significance_for(deviation: float, config: CalibrationConfig = DEFAULT_CALIBRATION_CONFIG) -> str:
    magnitude = abs(deviation)
    if magnitude >= config.extreme_deviation:
        return "extreme"
    if magnitude >= config.significant_deviation:
        return "significant"
    if magnitude >= config.minor_deviation:
        return "minor"
    return "none"


def calibration_note(adjustment: int) -> str:
    if adjustment == 0:
        return ""
    if adjustment > 0:
        return f"Score includes +{adjustment} point difficulty bonus for balanced comparison."
    return f"Score includes {adjustment} point difficulty adjustment for balanced comparison."


class CalibrationEngine:
    def __init__(
        self,
        config: CalibrationConfig = DEFAULT_CALIBRATION_CONFIG,
        cache: Optional[TTLCache] = None,
    ):
        self.config = config
        self.cache: TTLCache = cache or TTLCache(CALIBRATION_CACHE_TTL_SECONDS)

    # -------------- live scoring --------------
    def get_record(self, challenge_id: str) -> Optional[CalibrationRecord]:
        def _load() -> Tuple[Optional[CalibrationRecord]]:
            result = db.get_calibration(challenge_id)
            if isinstance(result, db.Ok):
                return (result.value,)
            if isinstance(result, db.FallbackNeeded):
                return (db.get_calibration_fallback(challenge_id),)
            logger.warning("Calibration lookup failed for %s: %s", challenge_id, result.reason)
            return (None,)

        # wrapped in a tuple so that "no calibration" is cached too
        return self.cache.get_or_load(("calibration", challenge_id), _load)[0]

    def applied_offset(self, offset: float) -> float:
        magnitude = min(self.config.max_offset, abs(offset) * self.config.strength)
        return magnitude if offset >= 0 else -magnitude

    def apply(self, challenge_id: str, raw_score: int) -> CalibrationAdjustment:
        raw = clamp_score(raw_score)
        record = self.get_record(challenge_id)
        if record is None or not record.is_calibrated or record.confidence < self.config.min_confidence:
            return CalibrationAdjustment(raw, raw, record=record)

        if record.method == "scale":
            scale = 1 + (record.scale - 1) * self.config.strength
            centre = record.raw_avg
            score = clamp_score(centre + (raw - centre) * scale)
            return CalibrationAdjustment(raw, score, applied_scale=scale, record=record)

        offset = self.applied_offset(record.offset)
        return CalibrationAdjustment(raw, clamp_score(raw + offset), applied_offset=offset, record=record)

    # -------------- batch analysis --------------
    def _challenge_scores(self, challenge_id: str) -> List[int]:
        result = db.get_challenge_scores(challenge_id)
        if isinstance(result, db.Ok):
            return result.value
        if isinstance(result, db.FallbackNeeded):
            return db.get_challenge_scores_fallback(challenge_id)
        logger.warning("Could not load scores for %s: %s", challenge_id, result.reason)
        return []

    def analyze(self, challenge: Challenge, scores: Sequence[int], existing: Optional[CalibrationRecord] = None) -> CalibrationRecord:
        cfg = self.config
        ordered = sorted(scores)
        benchmark = cfg.benchmark(challenge.difficulty)
        n = len(ordered)
        avg = mean(ordered)
        std = population_std(ordered)
        deviation = avg - benchmark.mean if n else 0.0
        significance = significance_for(deviation, cfg) if n else "none"

        record = CalibrationRecord(
            challenge_id=challenge.id,
            difficulty=challenge.difficulty,
            sample_count=n,
            raw_avg=round(avg, 2),
            raw_median=quantile_at(ordered, 0.5),
            raw_std=round(std, 2),
            p25=quantile_at(ordered, 0.25),
            p75=quantile_at(ordered, 0.75),
            benchmark_target=benchmark.mean,
            deviation=round(deviation, 2),
            significance=significance,
            confidence=min(1.0, n / cfg.confidence_samples),
            updated_at=datetime.now(timezone.utc),
        )

        if n >= cfg.min_samples:
            if abs(deviation) >= cfg.auto_calibrate_threshold:
                record.method = "offset"
                record.offset = round(max(-cfg.max_offset, min(cfg.max_offset, -deviation)), 2)
                record.is_calibrated = True
            elif std > 0:
                ratio = benchmark.std / std
                if ratio < cfg.scale_ratio_low or ratio > cfg.scale_ratio_high:
                    record.method = "scale"
                    record.scale = round(max(cfg.min_scale, min(cfg.max_scale, ratio)), 3)
                    record.is_calibrated = True
            if significance == "extreme":
                record.needs_review = True
                direction = "too easy" if deviation > 0 else "too hard"
                record.review_reason = f"Average {avg:.1f} vs benchmark {benchmark.mean:g} ({direction})"

        if existing is not None and existing.manual_override:
            # keep the admin's correction, refresh the statistics only
            record.method = existing.method
            record.offset = existing.offset
            record.scale = existing.scale
            record.is_calibrated = existing.is_calibrated
            record.confidence = existing.confidence
            record.manual_override = True
        return record

    def run_calibration_analysis(self, challenges: Sequence[Challenge]) -> CalibrationRunSummary:
        started = time.monotonic()
        by_id = {c.id: c for c in challenges}
        existing = {r.challenge_id: r for r in db.list_calibrations()}
        summary = CalibrationRunSummary()

        for challenge_id in db.list_challenges_with_attempts():
            challenge = by_id.get(challenge_id)
            if challenge is None:
                logger.info("Skipping calibration for unknown challenge %s", challenge_id)
                continue
            record = self.analyze(challenge, self._challenge_scores(challenge_id), existing.get(challenge_id))
            db.save_calibration(record)
            self.cache.invalidate(("calibration", challenge_id))
            summary.records.append(record)
            summary.games_analyzed += 1
            if record.is_calibrated:
                summary.games_calibrated += 1
            if record.needs_review:
                summary.games_flagged += 1
            if record.significance in ("significant", "extreme"):
                if record.deviation > 0:
                    summary.too_easy += 1
                else:
                    summary.too_hard += 1

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        summary.run_id = db.record_calibration_run(
            summary.games_analyzed,
            summary.games_calibrated,
            summary.games_flagged,
            summary.too_easy,
            summary.too_hard,
            summary.duration_ms,
        )
        logger.info(
            "Calibration run %s: %d analysed, %d calibrated, %d flagged",
            summary.run_id,
            summary.games_analyzed,
            summary.games_calibrated,
            summary.games_flagged,
        )
        return summary

    def get_calibration_report(self) -> Dict[str, Dict[str, float]]:
        records = db.list_calibrations()
        report: Dict[str, Dict[str, float]] = {}
        for difficulty in DIFFICULTIES:
            group = [r for r in records if r.difficulty == difficulty]
            report[difficulty] = {
                "games": len(group),
                "calibrated": sum(1 for r in group if r.is_calibrated),
                "flagged": sum(1 for r in group if r.needs_review),
                "avg_score": round(mean(r.raw_avg for r in group), 2),
                "benchmark": self.config.benchmark(difficulty).mean,
                "avg_deviation": round(mean(r.deviation for r in group), 2),
                "avg_offset": round(mean(r.offset for r in group if r.is_calibrated), 2),
            }
        return report

    def get_games_needing_review(self) -> List[CalibrationRecord]:
        return [r for r in db.list_calibrations() if r.needs_review]

    def set_game_calibration(
        self,
        challenge_id: str,
        offset: float,
        scale: float = 1.0,
        reason: str = "",
        admin: str = "admin",
    ) -> CalibrationRecord:
        """Manual override; writes a history row and drops the cached record."""
        previous = self.get_record(challenge_id)
        offset = max(-self.config.max_offset, min(self.config.max_offset, float(offset)))
        if previous is not None:
            record = previous.model_copy()
        else:
            record = CalibrationRecord(challenge_id=challenge_id)
        record.offset = offset
        record.scale = float(scale)
        record.method = "scale" if offset == 0 and scale != 1.0 else ("offset" if offset != 0 else "none")
        record.is_calibrated = record.method != "none"
        record.confidence = 1.0
        record.manual_override = True
        record.needs_review = False
        record.review_reason = None
        record.updated_at = datetime.now(timezone.utc)

        db.save_calibration(record)
        db.add_calibration_history(
            challenge_id,
            previous.offset if previous else None,
            record.offset,
            previous.scale if previous else None,
            record.scale,
            reason,
            admin,
        )
        self.cache.invalidate(("calibration", challenge_id))
        logger.info("Calibration for %s set to offset=%s scale=%s by %s", challenge_id, offset, scale, admin)
        return record
