"""Submission scoring pipeline.

``score_submission`` checks the input, then threads one ``ScoringContext``
through an ordered list of stages. Only the validator and judge stages are
critical; every other stage logs a warning on failure and leaves the score
as it was. Profile writes happen only after the attempt row is stored, and
observability writes run as detached tasks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import db
from catalog import Challenge, ChallengeCatalog, get_catalog
from engines import analytics
from engines.answer_validators import ValidationResult, validate_answer
from engines.anti_gaming import AntiGamingDetector, GamingAnalysis, format_context_adjustments, format_gaming_feedback
from engines.base import ScoringStage, clamp_score, cosine_similarity, word_count
from engines.calibration import CalibrationAdjustment, CalibrationEngine, calibration_note
from engines.consistency import ConsistencyChecker, ConsistencyResult
from engines.difficulty_manager import DifficultyManager, DifficultyUpdate, render_difficulty_block
from engines.embeddings import EmbeddingClient
from engines.ensemble import (
    DEFAULT_ENSEMBLE_CONFIG,
    EnsembleResult,
    IntegrityReport,
    apply_integrity,
    check_integrity,
    combine,
    render_ensemble_note,
)
from engines.knowledge_base import KnowledgeBase, KnowledgeRetrieval
from engines.feedback_engine import (
    FeedbackBlocks,
    automated_only_block,
    calibration_block,
    celebration_block,
    hint_note,
    judge_body,
)
from engines.llm_judge import JudgeOutcome, LLMJudge
from engines.peer_comparison import PeerComparison, PeerComparisonEngine, render_peer_block
from engines.player_history import HistoryInsights, analyze_history, render_history_block
from engines.reference_answers import MultiReferenceResult, MultiReferenceScorer, ReferenceStore, render_multi_reference_note
from engines.rubric_aggregation import RubricAggregation, aggregate_rubric, corrected_score, render_rubric_details
from engines.skill_clustering import ClusterAnalysis, SkillClusterer, render_cluster_block
from engines.spaced_repetition import (
    RetentionStats,
    ReviewMode,
    SpacedRepetitionEngine,
    XpBonus,
    render_review_block,
)
from engines.task_runner import TaskRunner
from engines.validation import (
    ChallengeNotFound,
    CooldownActive,
    DuplicateAttempt,
    PersistenceFailed,
    ScoringUnavailable,
    SubmissionRejected,
    UnknownPlayer,
)
from env_validation import get_env_int
from schemas import AttemptRecord, ReferenceAnswerRecord, SkillMemoryRecord

logger = logging.getLogger(__name__)

_PIPELINE_LOGGER = logging.getLogger("scoring.pipeline")
if not _PIPELINE_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _PIPELINE_LOGGER.addHandler(_handler)
_PIPELINE_LOGGER.setLevel(logging.INFO)
_PIPELINE_LOGGER.propagate = False

MAX_SUBMISSION_LENGTH = 10000
MAX_HINTS = 3
HINT_PENALTY_POINTS = 3
REFERENCE_MIN_SCORE = 80
HISTORY_LIMIT = 50


def normalize_hint_count(value: Any) -> int:
    """Floor and clamp to 0-3; anything unparsable counts as 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return max(0, min(MAX_HINTS, math.floor(number)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScoringContext:
    player_id: str
    challenge: Challenge
    submission: str
    hint_count: int
    now: datetime
    started: float = field(default_factory=time.perf_counter)

    validation: Optional[ValidationResult] = None
    validation_error: Optional[str] = None
    judge: Optional[JudgeOutcome] = None
    automated_only: bool = False
    embedding: List[float] = field(default_factory=list)
    example_similarity: Optional[float] = None
    knowledge: Optional[KnowledgeRetrieval] = None

    ai_score: Optional[int] = None
    rubric: Optional[RubricAggregation] = None
    rubric_reason: Optional[str] = None
    consistency: Optional[ConsistencyResult] = None
    multi_reference: MultiReferenceResult = field(default_factory=MultiReferenceResult)
    integrity: Optional[IntegrityReport] = None
    ensemble: Optional[EnsembleResult] = None
    calibration: Optional[CalibrationAdjustment] = None
    gaming: Optional[GamingAnalysis] = None
    hint_penalty: int = 0
    score: int = 0

    peer: Optional[PeerComparison] = None
    history: Optional[HistoryInsights] = None
    clusters: Optional[ClusterAnalysis] = None
    memory_before: Optional[SkillMemoryRecord] = None
    memory_after: Optional[SkillMemoryRecord] = None
    xp: Optional[XpBonus] = None
    review_mode: Optional[ReviewMode] = None
    retention: Optional[RetentionStats] = None
    difficulty: Optional[DifficultyUpdate] = None

    prior_attempts: List[AttemptRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def knowledge_context(self) -> str:
        return self.knowledge.context if self.knowledge is not None else ""

    @property
    def validation_score(self) -> int:
        if self.validation is not None:
            return self.validation.score
        return self.ai_score or 0


@dataclass
class ScoringResult:
    score: int
    feedback: str
    confidence: Optional[int] = None
    used_automated_only: bool = False
    xp_bonus: Optional[Dict[str, Any]] = None
    review_mode: Optional[Dict[str, Any]] = None
    attempt_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class ValidationStage(ScoringStage):
    name = "validation"
    critical = True

    async def run(self, ctx: ScoringContext) -> None:
        try:
            ctx.validation = validate_answer(ctx.submission, ctx.challenge)
        except Exception as exc:
            logger.warning("Validator for %s raised: %s", ctx.challenge.id, exc)
            ctx.validation_error = str(exc)


class EmbeddingStage(ScoringStage):
    name = "embedding"

    def __init__(self, embedder: EmbeddingClient):
        self.embedder = embedder

    async def run(self, ctx: ScoringContext) -> None:
        ctx.embedding = await self.embedder.embed(ctx.submission)
        if ctx.embedding and ctx.challenge.example_solution:
            example = await self.embedder.embed(ctx.challenge.example_solution)
            if example:
                ctx.example_similarity = cosine_similarity(ctx.embedding, example)


class KnowledgeStage(ScoringStage):
    name = "knowledge"

    def __init__(self, knowledge: KnowledgeBase):
        self.knowledge = knowledge

    async def run(self, ctx: ScoringContext) -> None:
        ctx.knowledge = await self.knowledge.retrieve(ctx.challenge, ctx.submission)


class JudgeStage(ScoringStage):
    name = "judge"
    critical = True

    def __init__(self, judge: LLMJudge):
        self.judge = judge

    async def run(self, ctx: ScoringContext) -> None:
        validation = ctx.validation or ValidationResult(0, validator="unavailable")
        ctx.judge = await self.judge.judge_async(ctx.challenge, ctx.submission, validation, ctx.knowledge_context)
        if ctx.judge.response is not None:
            ctx.ai_score = ctx.judge.response.score
            ctx.score = ctx.ai_score
            return

        if ctx.validation is None:
            raise ScoringUnavailable(
                "validation_failed",
                "Your answer could not be scored right now. Please try again later.",
                detail=ctx.validation_error,
            )
        outcomes = {a["outcome"] for a in ctx.judge.attempts}
        if outcomes == {"empty"} and ctx.validation.score == 0:
            raise ScoringUnavailable(
                "empty_model_response",
                "The AI coach returned an empty response. Please try again later.",
            )
        ctx.automated_only = True
        ctx.score = clamp_score(ctx.validation.score)


class RubricStage(ScoringStage):
    name = "rubric"
    skip_when_automated = True

    async def run(self, ctx: ScoringContext) -> None:
        response = ctx.judge.response
        if not ctx.challenge.rubric or not response.rubricBreakdown:
            return
        ctx.rubric = aggregate_rubric(response.rubricBreakdown, ctx.challenge.rubric, ctx.ai_score)
        score, reason = corrected_score(ctx.rubric)
        if reason:
            logger.info("Rubric correction for %s: %s -> %s (%s)", ctx.challenge.id, ctx.ai_score, score, reason)
            ctx.ai_score = score
            ctx.score = score
            ctx.rubric_reason = reason


class ConsistencyStage(ScoringStage):
    name = "consistency"
    skip_when_automated = True

    def __init__(self, judge: LLMJudge, checker: ConsistencyChecker):
        self.judge = judge
        self.checker = checker

    async def run(self, ctx: ScoringContext) -> None:
        validation = ctx.validation or ValidationResult(ctx.validation_score, validator="unavailable")

        async def second_opinion() -> Optional[int]:
            response = await self.judge.judge_secondary_async(
                ctx.challenge, ctx.submission, validation, ctx.knowledge_context
            )
            return response.score if response is not None else None

        ctx.consistency = await self.checker.check(
            ctx.ai_score,
            ctx.validation_score,
            DEFAULT_ENSEMBLE_CONFIG.weights.ai,
            second_opinion,
        )
        ctx.ai_score = ctx.consistency.adjusted_score
        ctx.score = ctx.ai_score


class MultiReferenceStage(ScoringStage):
    name = "multi_reference"
    skip_when_automated = True

    def __init__(self, scorer: MultiReferenceScorer):
        self.scorer = scorer

    async def run(self, ctx: ScoringContext) -> None:
        if ctx.embedding:
            ctx.multi_reference = await asyncio.to_thread(self.scorer.score, ctx.embedding, ctx.challenge)


class EnsembleStage(ScoringStage):
    name = "ensemble"
    skip_when_automated = True

    async def run(self, ctx: ScoringContext) -> None:
        similarity = ctx.example_similarity
        if similarity is None and ctx.multi_reference.matches:
            similarity = ctx.multi_reference.best_similarity
        override = ctx.consistency.ai_weight if ctx.consistency else None
        ensemble = combine(
            ctx.ai_score,
            ctx.validation_score,
            similarity,
            ai_weight_override=override,
            multi_reference_adjustment=ctx.multi_reference.adjustment,
        )
        ctx.integrity = check_integrity(ctx.submission, ctx.challenge.example_solution, ctx.example_similarity)
        ensemble.integrity = ctx.integrity
        ensemble.final_score = apply_integrity(ensemble.final_score, ctx.integrity, ctx.validation_score)
        ctx.ensemble = ensemble
        ctx.score = ensemble.final_score


class CalibrationStage(ScoringStage):
    name = "calibration"
    skip_when_automated = True

    def __init__(self, engine: CalibrationEngine):
        self.engine = engine

    async def run(self, ctx: ScoringContext) -> None:
        ctx.calibration = await asyncio.to_thread(self.engine.apply, ctx.challenge.id, ctx.score)
        ctx.score = ctx.calibration.score


class GamingStage(ScoringStage):
    name = "anti_gaming"
    skip_when_automated = True

    def __init__(self, detector: AntiGamingDetector):
        self.detector = detector

    async def run(self, ctx: ScoringContext) -> None:
        templates = await asyncio.to_thread(db.list_known_templates, ctx.challenge.skill_category)
        history = [a.submission for a in ctx.prior_attempts if a.challenge_id != ctx.challenge.id]
        ctx.gaming = self.detector.analyze(
            ctx.submission,
            ctx.challenge.skill_category,
            example_solution=ctx.challenge.example_solution,
            example_similarity=ctx.example_similarity,
            templates=templates,
            previous_submissions=history[:10],
            style_history=history,
        )
        ctx.score = clamp_score(ctx.score - ctx.gaming.penalty)


class PeerStage(ScoringStage):
    name = "peer_comparison"

    def __init__(self, engine: PeerComparisonEngine):
        self.engine = engine

    async def run(self, ctx: ScoringContext) -> None:
        ctx.peer = await asyncio.to_thread(
            self.engine.compare, ctx.player_id, ctx.challenge, ctx.score, not ctx.automated_only
        )
        if ctx.peer.curved_score is not None:
            ctx.score = ctx.peer.curved_score


class HintStage(ScoringStage):
    name = "hint_penalty"

    async def run(self, ctx: ScoringContext) -> None:
        ctx.hint_penalty = ctx.hint_count * HINT_PENALTY_POINTS
        ctx.score = clamp_score(ctx.score - ctx.hint_penalty)


class HistoryStage(ScoringStage):
    name = "player_history"

    async def run(self, ctx: ScoringContext) -> None:
        ctx.history = analyze_history(ctx.prior_attempts, ctx.challenge.skill_category, ctx.score, ctx.now)


class ClusteringStage(ScoringStage):
    name = "skill_clustering"

    def __init__(self, catalog: Callable[[], ChallengeCatalog], clusterer: SkillClusterer):
        self.catalog = catalog
        self.clusterer = clusterer

    async def run(self, ctx: ScoringContext) -> None:
        completed = {a.challenge_id for a in ctx.prior_attempts}
        ctx.clusters = self.clusterer.analyze(ctx.challenge, self.catalog().all(), completed, ctx.score)


class LearningStage(ScoringStage):
    """Spaced repetition, XP, review mode and the difficulty projection."""

    name = "learning_progress"

    def __init__(self, repetition: SpacedRepetitionEngine, difficulty: DifficultyManager):
        self.repetition = repetition
        self.difficulty = difficulty

    def _project(self, ctx: ScoringContext) -> None:
        skill = ctx.challenge.skill_category
        ctx.memory_before, ctx.memory_after = self.repetition.preview(ctx.player_id, skill, ctx.score, ctx.now)
        ctx.xp = self.repetition.calculate_xp_bonus(ctx.player_id, ctx.challenge, ctx.score, ctx.memory_before, ctx.now)
        ctx.review_mode = self.repetition.review_mode(ctx.memory_before, ctx.now)
        ctx.retention = self.repetition.retention_stats(ctx.player_id, skill)
        ctx.difficulty = self.difficulty.preview(ctx.player_id, skill, ctx.challenge.difficulty, ctx.score, ctx.now)

    async def run(self, ctx: ScoringContext) -> None:
        await asyncio.to_thread(self._project, ctx)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ScoringPipeline:
    def __init__(
        self,
        *,
        catalog: Optional[ChallengeCatalog] = None,
        judge: Optional[LLMJudge] = None,
        embedder: Optional[EmbeddingClient] = None,
        references: Optional[ReferenceStore] = None,
        calibration: Optional[CalibrationEngine] = None,
        gaming: Optional[AntiGamingDetector] = None,
        peers: Optional[PeerComparisonEngine] = None,
        repetition: Optional[SpacedRepetitionEngine] = None,
        difficulty: Optional[DifficultyManager] = None,
        clusterer: Optional[SkillClusterer] = None,
        consistency: Optional[ConsistencyChecker] = None,
        knowledge: Optional[KnowledgeBase] = None,
        tasks: Optional[TaskRunner] = None,
        cooldown_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._catalog = catalog
        self.judge = judge or LLMJudge()
        self.embedder = embedder or EmbeddingClient()
        self.knowledge = knowledge or KnowledgeBase(self.embedder)
        self.references = references or ReferenceStore()
        self.calibration = calibration or CalibrationEngine()
        self.repetition = repetition or SpacedRepetitionEngine()
        self.difficulty = difficulty or DifficultyManager()
        self.tasks = tasks or TaskRunner()
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else get_env_int("SUBMISSION_COOLDOWN_SECONDS", 30)
        )
        self.clock = clock
        self.stages: Sequence[ScoringStage] = (
            ValidationStage(),
            EmbeddingStage(self.embedder),
            KnowledgeStage(self.knowledge),
            JudgeStage(self.judge),
            RubricStage(),
            ConsistencyStage(self.judge, consistency or ConsistencyChecker()),
            MultiReferenceStage(MultiReferenceScorer(self.references)),
            EnsembleStage(),
            CalibrationStage(self.calibration),
            GamingStage(gaming or AntiGamingDetector()),
            PeerStage(peers or PeerComparisonEngine()),
            HintStage(),
            HistoryStage(),
            ClusteringStage(self.catalog, clusterer or SkillClusterer()),
            LearningStage(self.repetition, self.difficulty),
        )

    def catalog(self) -> ChallengeCatalog:
        return self._catalog or get_catalog()

    # -------------- input checks --------------
    def _check_input(self, player_id: Optional[str], challenge_id: Optional[str], text: Any) -> Challenge:
        if not challenge_id or not str(challenge_id).strip():
            raise SubmissionRejected("missing_challenge_id", "A challenge id is required.")
        if not isinstance(text, str) or not text.strip():
            raise SubmissionRejected("missing_submission", "Please enter an answer before submitting.")
        if len(text) > MAX_SUBMISSION_LENGTH:
            raise SubmissionRejected(
                "submission_too_long",
                f"Answers are limited to {MAX_SUBMISSION_LENGTH} characters.",
            )
        if not player_id or not str(player_id).strip():
            raise SubmissionRejected("missing_player_id", "A player id is required.")

        challenge = self.catalog().get(str(challenge_id).strip())
        if challenge is None:
            raise ChallengeNotFound("challenge_not_found", "This challenge does not exist.")
        if not challenge.active:
            raise ChallengeNotFound("challenge_inactive", "This challenge is no longer available.")
        return challenge

    def _check_player(self, player_id: str, challenge: Challenge, now: datetime) -> None:
        player = db.get_player(player_id)
        if player is None:
            raise UnknownPlayer("unknown_player", "Player not found.")
        if db.get_attempt(player_id, challenge.id) is not None:
            raise DuplicateAttempt(challenge.id)
        if player.last_submission_at is not None and self.cooldown_seconds > 0:
            elapsed = (now - player.last_submission_at).total_seconds()
            if elapsed < self.cooldown_seconds:
                raise CooldownActive(max(1, math.ceil(self.cooldown_seconds - elapsed)))
        db.touch_last_submission(player_id, now)

    # -------------- scoring --------------
    async def _run_stages(self, ctx: ScoringContext) -> None:
        for stage in self.stages:
            if ctx.automated_only and stage.skip_when_automated:
                continue
            if stage.critical:
                await stage.run(ctx)
                continue
            try:
                await stage.run(ctx)
            except Exception as exc:
                logger.warning("Stage %s failed for %s: %s", stage.name, ctx.challenge.id, exc)
                ctx.warnings.append(stage.name)

    def _compose(self, ctx: ScoringContext) -> str:
        blocks = FeedbackBlocks()
        challenge = ctx.challenge
        if ctx.automated_only:
            blocks.body = automated_only_block(ctx.validation, challenge)
        else:
            blocks.body = judge_body(ctx.judge.response)
            if ctx.gaming is not None:
                blocks.gaming_warning = format_gaming_feedback(ctx.gaming)
                blocks.context_adjustments = format_context_adjustments(ctx.gaming)
            blocks.multi_reference = render_multi_reference_note(ctx.multi_reference, challenge.skill_category)
            if ctx.ensemble is not None:
                notes = ctx.consistency.notes if ctx.consistency else []
                blocks.ensemble = render_ensemble_note(ctx.ensemble, notes)
            if ctx.rubric is not None:
                blocks.rubric = render_rubric_details(ctx.rubric)
            if ctx.calibration is not None:
                blocks.calibration = calibration_block(calibration_note(ctx.calibration.adjustment))
        blocks.hint = hint_note(ctx.hint_penalty, ctx.hint_count)
        blocks.celebration = celebration_block(ctx.score, challenge.title)
        if ctx.peer is not None:
            blocks.peer = render_peer_block(ctx.peer, challenge.skill_category)
        if ctx.history is not None:
            blocks.history = render_history_block(ctx.history)
        if ctx.clusters is not None:
            blocks.clustering = render_cluster_block(ctx.clusters, challenge.skill_category)
        if ctx.memory_after is not None and ctx.xp is not None and ctx.review_mode is not None:
            blocks.learning_progress = render_review_block(ctx.memory_after, ctx.xp, ctx.review_mode, ctx.retention)
        if ctx.difficulty is not None:
            level = ctx.history.level if ctx.history else "beginner"
            blocks.difficulty = render_difficulty_block(ctx.difficulty, level, ctx.score)
        return blocks.compose()

    def _commit_profiles(self, ctx: ScoringContext) -> int:
        points = ctx.score
        if ctx.memory_after is not None:
            self.repetition.commit(ctx.memory_before, ctx.memory_after, ctx.now)
        if ctx.difficulty is not None:
            self.difficulty.commit(ctx.difficulty)
        if ctx.review_mode is not None:
            points = self.repetition.points_awarded(ctx.score, ctx.review_mode)
        if ctx.xp is not None:
            points += ctx.xp.total
        db.add_player_score(ctx.player_id, points)
        return points

    def _spawn_background(self, ctx: ScoringContext, attempt_id: int, feedback_improvements: Sequence[str]) -> None:
        challenge = ctx.challenge
        processing_ms = int((time.perf_counter() - ctx.started) * 1000)
        ensemble = ctx.ensemble
        self.tasks.spawn(
            "scoring_analytics",
            analytics.record_scoring,
            ctx.player_id,
            challenge.id,
            ai_score=ctx.ai_score,
            validation_score=ctx.validation.score if ctx.validation else None,
            embedding_score=ensemble.components.get("embedding") if ensemble else None,
            final_score=ctx.score,
            weights=ensemble.weights if ensemble else {"validation": 1.0},
            confidence=ensemble.confidence if ensemble else None,
            gaming_risk=ctx.gaming.risk_level if ctx.gaming else None,
            word_count=word_count(ctx.submission),
            references_compared=ctx.multi_reference.references_compared,
            processing_ms=processing_ms,
        )
        self.tasks.spawn(
            "feedback_quality",
            analytics.record_feedback_quality,
            ctx.player_id,
            challenge.id,
            challenge.skill_category,
            attempt_id,
            ctx.score,
            feedback_improvements,
        )
        if ctx.gaming is not None:
            self.tasks.spawn(
                "gaming_log",
                db.log_gaming_detection,
                ctx.player_id,
                challenge.id,
                ctx.gaming.risk_score,
                ctx.gaming.risk_level,
                ctx.gaming.flags,
                ctx.gaming.context_adjustments,
                ctx.gaming.action,
            )
        response = ctx.judge.response if ctx.judge else None
        if response is not None and response.rubricBreakdown:
            self.tasks.spawn(
                "rubric_criteria",
                analytics.record_rubric_criteria,
                attempt_id,
                ctx.player_id,
                challenge.id,
                challenge.title,
                dict(response.rubricBreakdown),
                final_score=ctx.score,
                ai_score=ctx.ai_score,
                validation_score=ctx.validation.score if ctx.validation else None,
            )
        if ctx.knowledge is not None and ctx.knowledge.articles:
            knowledge = ctx.knowledge
            self.tasks.spawn(
                "knowledge_log",
                db.log_knowledge_retrieval,
                attempt_id,
                challenge.id,
                challenge.skill_category,
                f"{challenge.task}\n{ctx.submission}",
                knowledge.article_ids,
                knowledge.avg_similarity,
                knowledge.max_similarity,
                knowledge.retrieval_ms,
                ctx.score,
            )
        reasons = analytics.review_reasons(
            ensemble.confidence if ensemble else None,
            ctx.integrity.risk if ctx.integrity else None,
            ctx.gaming.risk_level if ctx.gaming else None,
            ctx.gaming.action if ctx.gaming else None,
        )
        if reasons:
            self.tasks.spawn("review_queue", analytics.maybe_enqueue_review, ctx.player_id, challenge.id, attempt_id, ctx.score, reasons)
        eligible = ctx.gaming is None or ctx.gaming.risk_level in ("none", "low")
        if not ctx.automated_only and ctx.embedding and ctx.score >= REFERENCE_MIN_SCORE and eligible:
            record = ReferenceAnswerRecord(
                challenge_id=challenge.id,
                challenge_title=challenge.title,
                submission=ctx.submission,
                score=ctx.score,
                embedding=ctx.embedding,
                source_type="player",
                source_player_id=ctx.player_id,
                skill_category=challenge.skill_category,
                difficulty=challenge.difficulty,
            )
            self.tasks.spawn("reference_add", self.references.add, record)

    def _log_summary(self, ctx: ScoringContext, attempt_id: int) -> None:
        ensemble = ctx.ensemble
        record = {
            "event": "submission_scored",
            "player_id": ctx.player_id,
            "challenge_id": ctx.challenge.id,
            "attempt_id": attempt_id,
            "judge_state": ctx.judge.state if ctx.judge else None,
            "ai_score": ctx.ai_score,
            "validation_score": ctx.validation.score if ctx.validation else None,
            "embedding_similarity": round(ctx.example_similarity, 4) if ctx.example_similarity is not None else None,
            "knowledge_articles": ctx.knowledge.article_ids if ctx.knowledge else [],
            "weights": {k: round(v, 3) for k, v in ensemble.weights.items()} if ensemble else None,
            "consistency_flags": ctx.consistency.flags if ctx.consistency else [],
            "rubric_correction": ctx.rubric_reason,
            "multi_reference_adjustment": ctx.multi_reference.adjustment,
            "calibration_adjustment": ctx.calibration.adjustment if ctx.calibration else 0,
            "gaming_penalty": ctx.gaming.penalty if ctx.gaming else 0,
            "hint_penalty": ctx.hint_penalty,
            "final_score": ctx.score,
            "confidence": ensemble.confidence if ensemble else None,
            "failed_stages": ctx.warnings,
            "processing_ms": int((time.perf_counter() - ctx.started) * 1000),
        }
        _PIPELINE_LOGGER.info(json.dumps(record, ensure_ascii=False))

    async def score(
        self,
        player_id: Optional[str],
        challenge_id: Optional[str],
        text: Any,
        hint_count: Any = 0,
    ) -> ScoringResult:
        challenge = self._check_input(player_id, challenge_id, text)
        player_id = str(player_id).strip()
        now = self.clock()
        await asyncio.to_thread(self._check_player, player_id, challenge, now)

        ctx = ScoringContext(
            player_id=player_id,
            challenge=challenge,
            submission=text,
            hint_count=normalize_hint_count(hint_count),
            now=now,
        )
        ctx.prior_attempts = await asyncio.to_thread(db.list_player_attempts, player_id, None, HISTORY_LIMIT)
        await self._run_stages(ctx)
        ctx.score = clamp_score(ctx.score)

        feedback = self._compose(ctx)
        attempt = AttemptRecord(
            player_id=player_id,
            challenge_id=challenge.id,
            skill_category=challenge.skill_category,
            difficulty=challenge.difficulty,
            submission=text,
            score=ctx.score,
            feedback=feedback,
            created_at=now,
        )
        saved = await asyncio.to_thread(db.insert_attempt, attempt)
        if isinstance(saved, db.Failure):
            if saved.reason == "duplicate":
                raise DuplicateAttempt(challenge.id)
            raise PersistenceFailed(
                "save_attempt_failed",
                "Your answer was scored but could not be saved. Please try again.",
                detail=saved.reason,
            )
        attempt_id = saved.value

        try:
            await asyncio.to_thread(self._commit_profiles, ctx)
        except Exception as exc:
            logger.warning("Profile update failed for %s/%s: %s", player_id, challenge.id, exc)

        improvements = ctx.judge.response.improvements if ctx.judge and ctx.judge.response else ctx.validation.feedback
        self._spawn_background(ctx, attempt_id, improvements)
        self._log_summary(ctx, attempt_id)

        review = None
        if ctx.review_mode is not None:
            review = {
                "enabled": ctx.review_mode.enabled,
                "reason": ctx.review_mode.reason,
                "points": self.repetition.points_awarded(ctx.score, ctx.review_mode),
            }
        xp = None
        if ctx.xp is not None:
            xp = {"total": ctx.xp.total, "parts": [{"label": label, "points": p} for label, p in ctx.xp.parts]}
        return ScoringResult(
            score=ctx.score,
            feedback=feedback,
            confidence=ctx.ensemble.confidence if ctx.ensemble else None,
            used_automated_only=ctx.automated_only,
            xp_bonus=xp,
            review_mode=review,
            attempt_id=attempt_id,
        )


_PIPELINE: Optional[ScoringPipeline] = None


def get_pipeline() -> ScoringPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = ScoringPipeline()
    return _PIPELINE


def set_pipeline(pipeline: Optional[ScoringPipeline]) -> None:
    global _PIPELINE
    _PIPELINE = pipeline


async def score_submission(
    player_id: Optional[str],
    challenge_id: Optional[str],
    text: Any,
    hint_count: Any = 0,
    *,
    pipeline: Optional[ScoringPipeline] = None,
) -> ScoringResult:
    """Score one submission and persist the attempt.

    Raises a :class:`engines.validation.ScoringError` subclass for every
    user-visible failure.
    """
    return await (pipeline or get_pipeline()).score(player_id, challenge_id, text, hint_count)
