import pytest

import db
from engines.reference_answers import MultiReferenceScorer, ReferenceStore, render_multi_reference_note
from schemas import ReferenceAnswerRecord


def _record(challenge, embedding, score=88, **overrides):
    values = dict(
        challenge_id=challenge.id,
        challenge_title=challenge.title,
        submission="(java OR kotlin) AND berlin",
        score=score,
        embedding=embedding,
        skill_category=challenge.skill_category,
        difficulty=challenge.difficulty,
    )
    values.update(overrides)
    return ReferenceAnswerRecord(**values)


@pytest.fixture(params=[True, False], ids=["procedure", "fallback"])
def store(request, temp_db, monkeypatch):
    monkeypatch.setattr(db._pool, "procedures_enabled", request.param)
    return ReferenceStore()


def test_low_scores_and_missing_embeddings_are_skipped(store, catalog):
    challenge = catalog.get("boolean-java-berlin")
    low = store.add(_record(challenge, [1.0, 0.0], score=79))
    assert not low.added and "below threshold" in low.reason
    empty = store.add(_record(challenge, []))
    assert not empty.added and empty.reason == "No embedding available"


def test_near_duplicates_are_rejected(store, catalog):
    challenge = catalog.get("boolean-java-berlin")
    first = store.add(_record(challenge, [1.0, 0.0, 0.0]))
    second = store.add(_record(challenge, [1.0, 0.01, 0.0]))
    third = store.add(_record(challenge, [0.0, 1.0, 0.0]))

    assert first.added and first.reference_id is not None
    assert not second.added
    assert second.similarity > 0.95
    assert third.added
    assert store.stats(challenge.id)["total"] == 2


def test_promote_marks_reference_verified(store, catalog):
    challenge = catalog.get("boolean-java-berlin")
    added = store.add(_record(challenge, [0.5, 0.5]))
    assert store.stats(challenge.id)["verified"] == 0

    assert store.promote(added.reference_id)
    assert store.stats(challenge.id)["verified"] == 1
    assert not store.promote(9999)


def test_seeding_status_and_curated_seed(store, catalog):
    challenge = catalog.get("boolean-java-berlin")
    outcome = store.seed(challenge, challenge.example_solution, [0.2, 0.9])
    assert outcome.added

    status = store.seeding_status([challenge, catalog.get("boolean-data-engineer")])
    assert status[challenge.id] == {"references": 1, "status": "partial"}
    assert status["boolean-data-engineer"]["status"] == "none"
    assert store.stats(challenge.id)["curated"] == 1


def test_multi_reference_adjustment_from_same_challenge(store, catalog):
    challenge = catalog.get("boolean-java-berlin")
    for embedding in ([1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]):
        store.add(_record(challenge, embedding, score=90))

    result = MultiReferenceScorer(store).score([1.0, 0.0, 0.0], challenge)
    assert result.references_compared == 1
    assert result.best_similarity == 1.0
    assert not result.cross_game_used
    assert result.weight == pytest.approx(0.10)
    assert result.adjustment == 10
    assert "Adjustment: +10 points" in render_multi_reference_note(result, challenge.skill_category)


def test_sparse_challenge_borrows_from_related_games(store, catalog):
    current = catalog.get("boolean-java-berlin")
    related = catalog.get("boolean-data-engineer")
    store.add(_record(related, [1.0, 0.0], score=92))

    result = MultiReferenceScorer(store).score([1.0, 0.0], current)
    assert result.cross_game_used
    assert result.matches[0].cross_game
    assert result.best_similarity == pytest.approx(0.9)
    assert result.weight == pytest.approx(0.07)


def test_no_embedding_means_no_adjustment(store, catalog):
    result = MultiReferenceScorer(store).score([], catalog.get("boolean-java-berlin"))
    assert result.adjustment == 0
    assert render_multi_reference_note(result, "boolean") == ""
