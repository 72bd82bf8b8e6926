from datetime import timedelta

from conftest import FIXED_NOW
from engines.player_history import analyze_history, best_streak, player_level, render_history_block
from schemas import AttemptRecord


def _attempt(score, skill="boolean", days_ago=1):
    return AttemptRecord(
        player_id="player-1",
        challenge_id=f"{skill}-{score}-{days_ago}",
        skill_category=skill,
        difficulty="easy",
        submission="answer",
        score=score,
        feedback="",
        created_at=FIXED_NOW - timedelta(days=days_ago),
    )


def test_player_levels():
    assert player_level(0, 0) == "beginner"
    assert player_level(90, 3) == "expert"
    assert player_level(70, 3) == "advanced"
    assert player_level(50, 3) == "intermediate"
    assert player_level(49.9, 3) == "beginner"


def test_best_streak():
    assert best_streak([80, 85, 60, 90, 91, 92], 80) == 3
    assert best_streak([], 80) == 0


def test_first_challenge_insight():
    history = analyze_history([], "boolean", 70, FIXED_NOW)

    assert history.level == "beginner"
    assert history.attempts == 0
    assert history.insights == ["This is your first boolean challenge. Welcome!"]
    assert "First challenge completed." in render_history_block(history)


def test_returning_player_above_average():
    attempts = [_attempt(90, days_ago=10), _attempt(70, days_ago=11), _attempt(80, "xray", days_ago=12)]
    history = analyze_history(attempts, "boolean", 95, FIXED_NOW)

    assert history.level == "advanced"
    assert history.average == 80
    assert history.consistency == 73
    assert history.best_streak == 1
    assert history.category_attempts == 2
    assert "Welcome back! It has been 10 days since your last challenge." in history.insights
    assert "This is 15 points above your boolean average. Great progress!" in history.insights


def test_drop_below_average_and_consistency():
    dropped = analyze_history([_attempt(85), _attempt(90, days_ago=2)], "boolean", 60, FIXED_NOW)
    assert any("points below your boolean average" in i for i in dropped.insights)

    steady = analyze_history([_attempt(82), _attempt(81, days_ago=2), _attempt(80, days_ago=3)], "boolean", 81, FIXED_NOW)
    assert "Your recent scores in this skill are very consistent." in steady.insights


def test_render_lists_insights():
    history = analyze_history([_attempt(90, days_ago=10)], "xray", 70, FIXED_NOW)
    html = render_history_block(history)

    assert html.startswith('<div class="player-history">')
    assert "Expert level, average 90 across 1 challenge(s)" in html
    assert "<li>This is your first xray challenge. Welcome!</li>" in html
