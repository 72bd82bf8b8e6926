"""Pydantic schemas for judge output, API payloads and persisted records."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "RubricCriterionScore",
    "JudgeDimensions",
    "JudgeResponse",
    "SubmitRequest",
    "SubmitResponse",
    "CalibrationOverrideRequest",
    "PlayerRecord",
    "AttemptRecord",
    "DifficultyProfileRecord",
    "SkillMemoryRecord",
    "CalibrationRecord",
    "ReferenceAnswerRecord",
    "parse_json_safe",
]

RECORD_SCHEMA_VERSION = 1

Difficulty = Literal["easy", "medium", "hard"]
WeaknessLevel = Literal["critical", "significant", "moderate", "slight", "none"]

_HTML_TAG = re.compile(r"<\s*(p|ul|ol|li|strong|em|b|i|br|div|span|h[1-6]|code|details|summary|hr)\b", re.I)
_UNSAFE_HTML = re.compile(r"<\s*script|javascript:|on\w+\s*=", re.I)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _row_get(row: Mapping[str, Any], key: str, default: Any = None) -> Any:
    try:
        value = row[key]
    except (KeyError, IndexError):
        return default
    return default if value is None else value


# ---------------------------------------------------------------------------
# Judge response
# ---------------------------------------------------------------------------


class RubricCriterionScore(BaseModel):
    points: float = Field(ge=0, description="Points awarded for this criterion.")
    maxPoints: float = Field(ge=0, description="Maximum possible points.")
    reasoning: str = Field(min_length=10, max_length=300, description="Brief explanation for the score.")


class JudgeDimensions(BaseModel):
    technicalAccuracy: float = Field(ge=0, le=100)
    creativity: float = Field(ge=0, le=100)
    completeness: float = Field(ge=0, le=100)
    clarity: float = Field(ge=0, le=100)
    bestPractices: float = Field(ge=0, le=100)


class JudgeResponse(BaseModel):
    """Structured judgment returned by the LLM judge.

    Any violation is a parse failure for the judge adapter, which moves on
    to the next model in its chain.
    """

    score: int = Field(ge=0, le=100, strict=True, description="Overall integer score out of 100.")
    dimensions: JudgeDimensions = Field(description="Multi-dimensional skill scores (0-100).")
    skillsRadar: Dict[str, float] = Field(description="Per-skill category scores (0-100).")
    rubricBreakdown: Dict[str, RubricCriterionScore] = Field(
        description="Score breakdown keyed by rubric criterion name.",
    )
    strengths: List[str] = Field(min_length=1, max_length=5)
    improvements: List[str] = Field(min_length=1, max_length=5)
    feedback: str = Field(min_length=50, max_length=1500, description="Detailed feedback in HTML format.")

    @field_validator("skillsRadar")
    @classmethod
    def _radar_in_range(cls, value: Dict[str, float]) -> Dict[str, float]:
        for skill, score in value.items():
            if not 0 <= score <= 100:
                raise ValueError(f"skillsRadar[{skill}] out of range: {score}")
        return value

    @field_validator("strengths", "improvements")
    @classmethod
    def _bullet_lengths(cls, value: List[str]) -> List[str]:
        for item in value:
            if not 5 <= len(item) <= 200:
                raise ValueError("list entries must be 5-200 characters")
        return value

    @field_validator("feedback")
    @classmethod
    def _feedback_is_html(cls, value: str) -> str:
        if "```" in value:
            raise ValueError("feedback contains markdown fences")
        if _UNSAFE_HTML.search(value):
            raise ValueError("feedback contains unsafe markup")
        if not _HTML_TAG.search(value):
            raise ValueError("feedback is not HTML")
        return value


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class SubmitRequest(BaseModel):
    challenge_id: str = ""
    submission: str = ""
    hint_count: float | int | None = Field(default=0, description="Hints used; floored and clamped to 0-3.")
    player_id: str | None = Field(default=None, description="Verified player identity when not sent as header.")


class SubmitResponse(BaseModel):
    score: int
    feedback: str
    confidence: int | None = None
    used_automated_only: bool = False
    xp_bonus: Dict[str, Any] | None = None
    review_mode: Dict[str, Any] | None = None
    attempt_id: int | None = None


class PlayerCreateRequest(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    name: str = ""


class CalibrationOverrideRequest(BaseModel):
    offset: float = Field(default=0.0, ge=-15, le=15)
    scale: float | None = Field(default=None, gt=0, le=2)
    reason: str = Field(min_length=3)
    admin: str = "admin"


# ---------------------------------------------------------------------------
# Persisted records: one mapping function per entity
# ---------------------------------------------------------------------------


class PlayerRecord(BaseModel):
    id: str
    name: str = ""
    total_score: int = 0
    last_submission_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlayerRecord":
        return cls(
            id=row["id"],
            name=_row_get(row, "name", ""),
            total_score=int(_row_get(row, "total_score", 0)),
            last_submission_at=_parse_ts(_row_get(row, "last_submission_at")),
        )


class AttemptRecord(BaseModel):
    id: int | None = None
    player_id: str
    challenge_id: str
    skill_category: str
    difficulty: Difficulty
    submission: str
    score: int = Field(ge=0, le=100)
    feedback: str
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AttemptRecord":
        return cls(
            id=_row_get(row, "id"),
            player_id=row["player_id"],
            challenge_id=row["challenge_id"],
            skill_category=row["skill_category"],
            difficulty=row["difficulty"],
            submission=_row_get(row, "submission", ""),
            score=int(row["score"]),
            feedback=_row_get(row, "feedback", ""),
            created_at=_parse_ts(row["created_at"]),
        )


class DifficultyProfileRecord(BaseModel):
    schema_version: int = RECORD_SCHEMA_VERSION
    player_id: str
    skill_category: str
    difficulty: Difficulty
    attempts: int = 0
    avg_score: float = 0.0
    best_score: int = 0
    worst_score: int = 100
    scores_above_80: int = 0
    scores_above_90: int = 0
    consecutive_high_scores: int = 0
    mastery_score: float = Field(default=0.0, ge=0, le=100)
    ready_for_promotion: bool = False
    confidence: float = Field(default=0.0, ge=0, le=1)
    last_attempt_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DifficultyProfileRecord":
        return cls(
            schema_version=int(_row_get(row, "schema_version", RECORD_SCHEMA_VERSION)),
            player_id=row["player_id"],
            skill_category=row["skill_category"],
            difficulty=row["difficulty"],
            attempts=int(_row_get(row, "attempts", 0)),
            avg_score=float(_row_get(row, "avg_score", 0.0)),
            best_score=int(_row_get(row, "best_score", 0)),
            worst_score=int(_row_get(row, "worst_score", 100)),
            scores_above_80=int(_row_get(row, "scores_above_80", 0)),
            scores_above_90=int(_row_get(row, "scores_above_90", 0)),
            consecutive_high_scores=int(_row_get(row, "consecutive_high_scores", 0)),
            mastery_score=float(_row_get(row, "mastery_score", 0.0)),
            ready_for_promotion=bool(_row_get(row, "ready_for_promotion", 0)),
            confidence=float(_row_get(row, "confidence", 0.0)),
            last_attempt_at=_parse_ts(_row_get(row, "last_attempt_at")),
        )


class SkillMemoryRecord(BaseModel):
    schema_version: int = RECORD_SCHEMA_VERSION
    player_id: str
    skill_category: str
    easiness_factor: float = Field(default=2.5, ge=1.3, le=2.5)
    interval_days: float = Field(default=0.0, ge=0, le=180)
    repetitions: int = 0
    last_quality: int = Field(default=0, ge=0, le=5)
    memory_strength: float = Field(default=0.5, ge=0, le=1)
    stability: float = Field(default=1.0, ge=0.5, le=5)
    total_attempts: int = 0
    avg_score: float = 0.0
    best_score: int = 0
    last_score: int | None = None
    score_history: List[int] = Field(default_factory=list)
    weakness_level: WeaknessLevel = "none"
    last_attempt_at: datetime | None = None
    next_review_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SkillMemoryRecord":
        history = _row_get(row, "score_history", "[]")
        if isinstance(history, str):
            history = json.loads(history or "[]")
        return cls(
            schema_version=int(_row_get(row, "schema_version", RECORD_SCHEMA_VERSION)),
            player_id=row["player_id"],
            skill_category=row["skill_category"],
            easiness_factor=float(_row_get(row, "easiness_factor", 2.5)),
            interval_days=float(_row_get(row, "interval_days", 0.0)),
            repetitions=int(_row_get(row, "repetitions", 0)),
            last_quality=int(_row_get(row, "last_quality", 0)),
            memory_strength=float(_row_get(row, "memory_strength", 0.5)),
            stability=float(_row_get(row, "stability", 1.0)),
            total_attempts=int(_row_get(row, "total_attempts", 0)),
            avg_score=float(_row_get(row, "avg_score", 0.0)),
            best_score=int(_row_get(row, "best_score", 0)),
            last_score=_row_get(row, "last_score"),
            score_history=[int(s) for s in history],
            weakness_level=_row_get(row, "weakness_level", "none"),
            last_attempt_at=_parse_ts(_row_get(row, "last_attempt_at")),
            next_review_at=_parse_ts(_row_get(row, "next_review_at")),
        )


class CalibrationRecord(BaseModel):
    schema_version: int = RECORD_SCHEMA_VERSION
    challenge_id: str
    difficulty: Difficulty = "medium"
    sample_count: int = 0
    raw_avg: float = 0.0
    raw_median: float = 0.0
    raw_std: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    benchmark_target: float = 0.0
    deviation: float = 0.0
    significance: Literal["none", "minor", "significant", "extreme"] = "none"
    method: Literal["offset", "scale", "none"] = "none"
    offset: float = 0.0
    scale: float = 1.0
    confidence: float = Field(default=0.0, ge=0, le=1)
    is_calibrated: bool = False
    needs_review: bool = False
    review_reason: str | None = None
    manual_override: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CalibrationRecord":
        return cls(
            schema_version=int(_row_get(row, "schema_version", RECORD_SCHEMA_VERSION)),
            challenge_id=row["challenge_id"],
            difficulty=_row_get(row, "difficulty", "medium"),
            sample_count=int(_row_get(row, "sample_count", 0)),
            raw_avg=float(_row_get(row, "raw_avg", 0.0)),
            raw_median=float(_row_get(row, "raw_median", 0.0)),
            raw_std=float(_row_get(row, "raw_std", 0.0)),
            p25=float(_row_get(row, "p25", 0.0)),
            p75=float(_row_get(row, "p75", 0.0)),
            benchmark_target=float(_row_get(row, "benchmark_target", 0.0)),
            deviation=float(_row_get(row, "deviation", 0.0)),
            significance=_row_get(row, "significance", "none"),
            method=_row_get(row, "method", "none"),
            offset=float(_row_get(row, "offset", 0.0)),
            scale=float(_row_get(row, "scale", 1.0)),
            confidence=float(_row_get(row, "confidence", 0.0)),
            is_calibrated=bool(_row_get(row, "is_calibrated", 0)),
            needs_review=bool(_row_get(row, "needs_review", 0)),
            review_reason=_row_get(row, "review_reason"),
            manual_override=bool(_row_get(row, "manual_override", 0)),
            updated_at=_parse_ts(_row_get(row, "updated_at")) or _utcnow(),
        )


class ReferenceAnswerRecord(BaseModel):
    schema_version: int = RECORD_SCHEMA_VERSION
    id: int | None = None
    challenge_id: str
    challenge_title: str = ""
    submission: str
    score: int = Field(ge=0, le=100)
    embedding: List[float] = Field(default_factory=list)
    source_type: Literal["player", "example", "curated"] = "player"
    source_player_id: str | None = None
    skill_category: str | None = None
    difficulty: Difficulty | None = None
    is_verified: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ReferenceAnswerRecord":
        embedding = _row_get(row, "embedding", "[]")
        if isinstance(embedding, str):
            embedding = json.loads(embedding or "[]")
        return cls(
            schema_version=int(_row_get(row, "schema_version", RECORD_SCHEMA_VERSION)),
            id=_row_get(row, "id"),
            challenge_id=row["challenge_id"],
            challenge_title=_row_get(row, "challenge_title", ""),
            submission=_row_get(row, "submission", ""),
            score=int(row["score"]),
            embedding=[float(v) for v in embedding],
            source_type=_row_get(row, "source_type", "player"),
            source_player_id=_row_get(row, "source_player_id"),
            skill_category=_row_get(row, "skill_category"),
            difficulty=_row_get(row, "difficulty"),
            is_verified=bool(_row_get(row, "is_verified", 0)),
            is_active=bool(_row_get(row, "is_active", 1)),
            created_at=_parse_ts(_row_get(row, "created_at")) or _utcnow(),
        )


# ---------------------------------------------------------------------------
# Tolerant JSON parsing
# ---------------------------------------------------------------------------

_T = TypeVar("_T", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?", re.I)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    Markdown code fences around the payload are tolerated; any other
    trailing content after the first JSON object is rejected.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    cleaned = _FENCE.sub("", text).strip()
    try:
        snippet, _, end = _find_first_json_object(cleaned)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = cleaned[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    return model.model_validate_json(snippet)
