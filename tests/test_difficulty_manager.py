from datetime import timedelta

import pytest

import db
from conftest import FIXED_NOW
from engines.difficulty_manager import (
    DifficultyManager,
    apply_score,
    expected_band,
    generate_difficulty_feedback,
    recommend,
    render_difficulty_block,
    should_demote,
)


def _profile(scores, difficulty="easy", start=FIXED_NOW):
    profile = None
    for i, score in enumerate(scores):
        profile = apply_score(profile, "player-1", "boolean", difficulty, score, start + timedelta(minutes=i))
    return profile


def test_mastery_for_consistent_high_scores():
    profile = _profile([85, 85, 85])

    assert profile.attempts == 3
    assert profile.avg_score == 85
    assert profile.scores_above_80 == 3
    assert profile.consecutive_high_scores == 3
    assert profile.mastery_score == 89
    assert profile.confidence == pytest.approx(0.3)


def test_single_attempt_gets_half_consistency():
    assert _profile([80]).mastery_score == 67


def test_low_score_breaks_the_streak():
    profile = _profile([90, 95, 60])
    assert profile.consecutive_high_scores == 0
    assert profile.scores_above_90 == 2
    assert profile.worst_score == 60
    assert profile.best_score == 95


@pytest.mark.parametrize(
    "scores, ready",
    [
        ([70, 80, 80], True),
        ([60, 80, 84], False),  # average below 75
        ([80, 80, 70], False),  # streak broken
        ([85, 85], False),  # too few attempts
        ([75, 75, 79], False),  # no high scores
    ],
)
def test_promotion_gate(scores, ready):
    assert _profile(scores).ready_for_promotion is ready


def test_demotion_needs_attempts_and_low_average():
    assert should_demote(_profile([30, 40, 45], "medium")) is True
    assert should_demote(_profile([30, 40], "medium")) is False
    assert should_demote(_profile([30, 40, 45], "easy")) is False


def test_recommend_ladder():
    start = recommend([])
    assert (start.difficulty, start.action, start.current) == ("easy", "start", None)

    promote = recommend([_profile([85, 85, 85])])
    assert (promote.difficulty, promote.action) == ("medium", "promote")

    top = recommend([_profile([95, 95, 95], "hard")])
    assert (top.difficulty, top.action) == ("hard", "stay")

    demote = recommend([_profile([30, 40, 45], "medium")])
    assert (demote.difficulty, demote.action) == ("easy", "demote")


def test_recommend_follows_most_recent_bucket():
    easy = _profile([85, 85, 85], "easy")
    medium = _profile([65], "medium", start=FIXED_NOW + timedelta(days=1))
    result = recommend([easy, medium])
    assert (result.current, result.action) == ("medium", "stay")


def test_expected_band_and_feedback():
    assert expected_band("intermediate", "medium") == (58, 72)
    assert expected_band("beginner", "easy") == (63, 77)
    assert generate_difficulty_feedback("intermediate", "medium", 80).startswith("Above the expected 58-72 range")
    assert generate_difficulty_feedback("intermediate", "medium", 40).startswith("Below")
    assert generate_difficulty_feedback("intermediate", "medium", 65).startswith("Within")


def test_manager_records_promotion_transition(temp_db):
    manager = DifficultyManager()
    updates = [
        manager.record_attempt("player-1", "boolean", "easy", 85, FIXED_NOW + timedelta(minutes=i)) for i in range(3)
    ]

    assert [u.transition for u in updates] == [None, None, ("easy", "medium")]
    assert updates[-1].recommendation.action == "promote"
    assert db.get_difficulty_profile("player-1", "boolean", "easy").attempts == 3
    assert manager.get_recommended_difficulty("player-1", "boolean").difficulty == "medium"

    html = render_difficulty_block(updates[-1], "intermediate", 85)
    assert "Level up!" in html
    assert "Mastery (easy):</strong> 89/100" in html


def test_preview_does_not_write(temp_db):
    update = DifficultyManager().preview("player-1", "boolean", "easy", 70, FIXED_NOW)
    assert update.profile.attempts == 1
    assert db.list_difficulty_profiles("player-1", "boolean") == []
