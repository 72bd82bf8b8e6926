import re
import sys
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def make_judge_response(score: int = 78, rubric=None, feedback: Optional[str] = None):
    from schemas import JudgeResponse

    return JudgeResponse.model_validate(
        {
            "score": score,
            "dimensions": {
                "technicalAccuracy": score,
                "creativity": score,
                "completeness": score,
                "clarity": score,
                "bestPractices": score,
            },
            "skillsRadar": {"sourcing": score},
            "rubricBreakdown": rubric or {},
            "strengths": ["Clear grouping of alternatives"],
            "improvements": ["Add a proximity operator for titles"],
            "feedback": feedback
            or "<p>Solid search string. The grouping is correct and the location is targeted well.</p>",
        }
    )


class FakeJudge:
    """Stands in for :class:`engines.llm_judge.LLMJudge` without any HTTP."""

    def __init__(self, score: Optional[float] = 78, secondary: Optional[float] = None, rubric=None, outcomes=None):
        self.score = score
        self.secondary = secondary
        self.rubric = rubric
        self.outcomes = outcomes or ["http_error", "http_error", "http_error"]
        self.calls = 0
        self.secondary_calls = 0
        self.knowledge: List[str] = []

    async def judge_async(self, challenge, submission, validation, knowledge=""):
        from engines.llm_judge import AUTOMATED_ONLY, JudgeOutcome

        self.calls += 1
        self.knowledge.append(knowledge)
        if self.score is None:
            attempts = [
                {"state": state, "model": f"model-{i}", "outcome": outcome}
                for i, (state, outcome) in enumerate(
                    zip(("PRIMARY_MODEL", "FALLBACK_MODEL_1", "FALLBACK_MODEL_2"), self.outcomes)
                )
            ]
            return JudgeOutcome(state=AUTOMATED_ONLY, attempts=attempts)
        response = make_judge_response(self.score, self.rubric)
        return JudgeOutcome(
            state="PRIMARY_MODEL",
            response=response,
            model="judge-large",
            attempts=[{"state": "PRIMARY_MODEL", "model": "judge-large", "outcome": "ok"}],
        )

    async def judge_secondary_async(self, challenge, submission, validation, knowledge=""):
        self.secondary_calls += 1
        if self.secondary is None:
            return None
        return make_judge_response(self.secondary)


class FakeEmbedder:
    """Deterministic hashed bag-of-words vectors; identical text embeds identically."""

    def __init__(self, available: bool = True):
        self.available = available
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if not self.available:
            return []
        vector = [0.0] * 64
        for word in re.findall(r"[a-z]+", text.lower()):
            vector[zlib.crc32(word.encode()) % 64] += 1.0
        return vector


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    # Fresh connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    return str(db_path)


@pytest.fixture
def catalog():
    from catalog import ChallengeCatalog, set_catalog

    loaded = ChallengeCatalog(ROOT / "challenges.yaml")
    set_catalog(loaded)
    yield loaded
    set_catalog(None)


@pytest.fixture
def player(temp_db):
    import db

    db.ensure_player("player-1", "Pat")
    return "player-1"


@pytest.fixture
def make_pipeline(temp_db, catalog):
    from engines.task_runner import TaskRunner
    from scoring_pipeline import ScoringPipeline

    def _make(judge=None, embedder=None, clock=None, **kwargs):
        return ScoringPipeline(
            catalog=catalog,
            judge=judge or FakeJudge(),
            embedder=embedder or FakeEmbedder(),
            tasks=TaskRunner(),
            cooldown_seconds=kwargs.pop("cooldown_seconds", 0),
            clock=clock or (lambda: FIXED_NOW),
            **kwargs,
        )

    return _make
