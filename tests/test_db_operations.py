"""Test cases for db operations."""

from datetime import timedelta

import pytest

import db
from conftest import FIXED_NOW
from schemas import AttemptRecord, DifficultyProfileRecord, SkillMemoryRecord


def _attempt(player_id="player-1", challenge_id="boolean-java-berlin", score=70):
    return AttemptRecord(
        player_id=player_id,
        challenge_id=challenge_id,
        skill_category="boolean",
        difficulty="easy",
        submission="java AND spring",
        score=score,
        feedback="<p>ok</p>",
        created_at=FIXED_NOW,
    )


@pytest.fixture(params=[True, False], ids=["procedures", "fallback"])
def store(request, temp_db, monkeypatch):
    monkeypatch.setattr(db._pool, "procedures_enabled", request.param)
    return request.param


def test_player_lifecycle(temp_db):
    db.ensure_player("player-1", "Pat")
    db.ensure_player("player-1", "Renamed")
    db.add_player_score("player-1", 42)
    db.touch_last_submission("player-1", FIXED_NOW)

    player = db.get_player("player-1")
    assert player.name == "Pat"
    assert player.total_score == 42
    assert player.last_submission_at == FIXED_NOW
    assert db.get_player("ghost") is None


def test_attempts_are_unique_per_challenge(temp_db):
    first = db.insert_attempt(_attempt())
    second = db.insert_attempt(_attempt(score=90))

    assert isinstance(first, db.Ok)
    assert isinstance(second, db.Failure)
    assert second.reason == "duplicate"
    assert db.get_attempt("player-1", "boolean-java-berlin").score == 70


def test_attempt_history_is_newest_first(temp_db):
    for day, challenge_id in enumerate(["a", "b", "c"]):
        record = _attempt(challenge_id=challenge_id)
        record.created_at = FIXED_NOW + timedelta(days=day)
        db.insert_attempt(record)

    assert [a.challenge_id for a in db.list_player_attempts("player-1")] == ["c", "b", "a"]
    assert db.list_player_attempts("player-1", limit=1)[0].challenge_id == "c"
    assert db.list_practice_days("player-1", FIXED_NOW + timedelta(days=1)) == ["2026-03-03", "2026-03-04"]


def test_peer_scores_exclude_the_player(store):
    db.insert_attempt(_attempt("player-1", score=50))
    db.insert_attempt(_attempt("player-2", score=60))
    db.insert_attempt(_attempt("player-3", challenge_id="boolean-data-engineer", score=80))

    engine_result = db.get_challenge_scores("boolean-java-berlin", "player-1")
    if store:
        assert engine_result.value == [60]
    else:
        assert isinstance(engine_result, db.FallbackNeeded)
        assert db.get_challenge_scores_fallback("boolean-java-berlin", "player-1") == [60]


def test_skill_memory_upsert(store):
    memory = SkillMemoryRecord(player_id="player-1", skill_category="boolean", total_attempts=1, score_history=[70], last_score=70)
    result = db.upsert_skill_memory(memory)
    if isinstance(result, db.FallbackNeeded):
        db.upsert_skill_memory_fallback(memory)

    memory.total_attempts = 2
    memory.score_history = [70, 85]
    result = db.upsert_skill_memory(memory)
    if isinstance(result, db.FallbackNeeded):
        db.upsert_skill_memory_fallback(memory)

    stored = db.get_skill_memory("player-1", "boolean")
    assert stored.total_attempts == 2
    assert stored.score_history == [70, 85]
    assert len(db.list_skill_memory("player-1")) == 1


def test_difficulty_profile_upsert(store):
    profile = DifficultyProfileRecord(player_id="player-1", skill_category="boolean", difficulty="easy", attempts=1, avg_score=80)
    result = db.upsert_difficulty_profile(profile)
    if isinstance(result, db.FallbackNeeded):
        db.upsert_difficulty_profile_fallback(profile)

    stored = db.get_difficulty_profile("player-1", "boolean", "easy")
    assert stored.attempts == 1
    assert stored.avg_score == 80
    assert [p.difficulty for p in db.list_difficulty_profiles("player-1", "boolean")] == ["easy"]


def test_gaming_log_and_templates(temp_db):
    db.add_known_template("Dear candidate, I came across your profile", "outreach")
    db.add_known_template("Generic template for everyone")

    assert set(db.list_known_templates("outreach")) == {
        "Dear candidate, I came across your profile",
        "Generic template for everyone",
    }
    assert db.list_known_templates("boolean") == ["Generic template for everyone"]

    db.log_gaming_detection("player-1", "boolean-java-berlin", 45, "medium", ["template_match"], [], "penalize")
    with db._conn() as con:
        row = con.execute("SELECT * FROM gaming_log").fetchone()
    assert row["risk_level"] == "medium"
    assert row["action"] == "penalize"


def test_knowledge_retrieval_log(temp_db):
    db.log_knowledge_retrieval(
        3, "boolean-java-berlin", "boolean", "x" * 1500, ["boolean-fundamentals"], 0.62, 0.71, 18, 77
    )
    db.log_knowledge_retrieval(4, "xray-linkedin-designers", "xray", "site:", ["xray-fundamentals"], 0.8, 0.8, 5, 60)

    [row] = db.list_knowledge_retrievals("boolean-java-berlin")
    assert row["article_ids"] == ["boolean-fundamentals"]
    assert len(row["query_text"]) == 1000
    assert row["final_score"] == 77
    assert len(db.list_knowledge_retrievals()) == 2


def test_rubric_criteria_log_is_empty_safe(temp_db):
    assert db.log_rubric_criteria([]) == 0
    assert db.list_rubric_criteria() == []
