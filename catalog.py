"""Challenge catalog loader."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

DIFFICULTIES: Tuple[str, ...] = ("easy", "medium", "hard")


class CatalogConfigError(ValueError):
    """Raised when ``challenges.yaml`` contains invalid data."""


@dataclass(frozen=True)
class RubricCriterion:
    name: str
    max_points: float
    description: str = ""


@dataclass(frozen=True)
class ValidationRules:
    """Deterministic checks applied before the judge sees a submission."""

    type: str = "general"
    keywords: Tuple[str, ...] = ()
    strict_keywords: bool = False
    location: Optional[str] = None
    require_location: bool = False
    max_words: int = 150
    min_words: int = 25
    min_sentences: int = 2
    min_chars: int = 120
    require_subject: bool = True


@dataclass(frozen=True)
class Challenge:
    """Immutable challenge definition."""

    id: str
    title: str
    skill_category: str
    difficulty: str
    task: str
    rubric: Tuple[RubricCriterion, ...] = ()
    validation: ValidationRules = field(default_factory=ValidationRules)
    example_solution: Optional[str] = None
    active: bool = True
    curve_mode: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @property
    def rubric_total(self) -> float:
        return sum(c.max_points for c in self.rubric)

    @property
    def difficulty_rank(self) -> int:
        return DIFFICULTIES.index(self.difficulty)


def _parse_rubric(raw: Any, challenge_id: str) -> Tuple[RubricCriterion, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise CatalogConfigError(f"Challenge {challenge_id}: 'rubric' must be a list")
    criteria: List[RubricCriterion] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise CatalogConfigError(f"Challenge {challenge_id}: rubric entries need a 'name'")
        criteria.append(
            RubricCriterion(
                name=str(entry["name"]).strip(),
                max_points=float(entry.get("max_points", 0)),
                description=str(entry.get("description", "")),
            )
        )
    return tuple(criteria)


def _parse_validation(raw: Any, skill_category: str) -> ValidationRules:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise CatalogConfigError("'validation' must be a mapping")
    return ValidationRules(
        type=str(raw.get("type", skill_category)),
        keywords=tuple(str(k) for k in raw.get("keywords", ())),
        strict_keywords=bool(raw.get("strict_keywords", False)),
        location=raw.get("location"),
        require_location=bool(raw.get("require_location", False)),
        max_words=int(raw.get("max_words", 150)),
        min_words=int(raw.get("min_words", 25)),
        min_sentences=int(raw.get("min_sentences", 2)),
        min_chars=int(raw.get("min_chars", 120)),
        require_subject=bool(raw.get("require_subject", True)),
    )


class ChallengeCatalog:
    """Load challenge definitions from ``challenges.yaml``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "challenges.yaml"
        self._challenges: Dict[str, Challenge] = {}
        self.reload()

    def reload(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Challenge catalog not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

        entries = raw.get("challenges") if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise CatalogConfigError("Catalog must contain a 'challenges' list")

        challenges: Dict[str, Challenge] = {}
        for idx, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise CatalogConfigError(f"Entry #{idx} must be a mapping")
            challenge_id = str(entry.get("id", "")).strip()
            if not challenge_id:
                raise CatalogConfigError(f"Entry #{idx} is missing a non-empty 'id'")
            if challenge_id in challenges:
                raise CatalogConfigError(f"Duplicate challenge id detected: {challenge_id}")
            difficulty = str(entry.get("difficulty", "medium")).lower()
            if difficulty not in DIFFICULTIES:
                raise CatalogConfigError(f"Challenge {challenge_id}: unknown difficulty '{difficulty}'")
            skill = str(entry.get("skill_category", "general")).strip().lower()
            curve_mode = entry.get("curve_mode")
            if curve_mode not in (None, "bell", "linear", "sqrt"):
                raise CatalogConfigError(f"Challenge {challenge_id}: unknown curve_mode '{curve_mode}'")

            challenges[challenge_id] = Challenge(
                id=challenge_id,
                title=str(entry.get("title", challenge_id)),
                skill_category=skill,
                difficulty=difficulty,
                task=str(entry.get("task", "")),
                rubric=_parse_rubric(entry.get("rubric"), challenge_id),
                validation=_parse_validation(entry.get("validation"), skill),
                example_solution=entry.get("example_solution"),
                active=bool(entry.get("active", True)),
                curve_mode=curve_mode,
                tags=tuple(str(t).lower() for t in entry.get("tags", ())),
            )
        self._challenges = challenges

    def get(self, challenge_id: str) -> Optional[Challenge]:
        return self._challenges.get(challenge_id)

    def all(self) -> Sequence[Challenge]:
        return list(self._challenges.values())

    def by_category(self, skill_category: str) -> List[Challenge]:
        return [c for c in self._challenges.values() if c.skill_category == skill_category]


_CATALOG: Optional[ChallengeCatalog] = None


def get_catalog() -> ChallengeCatalog:
    """Return the process-wide catalog, loading it from ``CATALOG_PATH`` on first use."""
    global _CATALOG
    if _CATALOG is None:
        configured = os.getenv("CATALOG_PATH")
        path = Path(configured) if configured else None
        if path is not None and not path.is_absolute():
            path = Path(__file__).resolve().parent / path
        _CATALOG = ChallengeCatalog(path)
    return _CATALOG


def set_catalog(catalog: Optional[ChallengeCatalog]) -> None:
    global _CATALOG
    _CATALOG = catalog
