from catalog import RubricCriterion
from engines.rubric_aggregation import aggregate_rubric, corrected_score, match_criteria, render_rubric_details
from schemas import RubricCriterionScore

RUBRIC = (
    RubricCriterion("Operator usage", 30),
    RubricCriterion("Keyword coverage", 30),
    RubricCriterion("Location targeting", 20),
    RubricCriterion("Precision", 20),
)


def _entry(points, max_points, reasoning="Reasonable coverage of the brief."):
    return RubricCriterionScore(points=points, maxPoints=max_points, reasoning=reasoning)


def test_names_match_case_and_separator_insensitive():
    matches = match_criteria(["operator_usage", "KEYWORD-coverage"], [c.name for c in RUBRIC])
    assert matches["Operator usage"] == ("operator_usage", 1.0)
    assert matches["Keyword coverage"] == ("KEYWORD-coverage", 1.0)


def test_points_above_max_are_capped_and_reported():
    breakdown = {
        "Operator usage": _entry(35, 30),
        "Keyword coverage": _entry(20, 30),
        "Location targeting": _entry(20, 20),
        "Precision": _entry(10, 20),
    }
    agg = aggregate_rubric(breakdown, RUBRIC, 80)

    operator = agg.criteria[0]
    assert operator.points == 30
    assert operator.reasoning.endswith("[Points capped to max]")
    assert agg.total_points == 80
    assert agg.percentage == 80
    assert [i.type for i in agg.issues] == ["exceeds_max"]


def test_missing_and_extra_criteria():
    breakdown = {
        "Operator usage": _entry(30, 30),
        "Keyword coverage": _entry(30, 30),
        "Location targeting": _entry(20, 20),
        "Creativity": _entry(10, 10),
    }
    agg = aggregate_rubric(breakdown, RUBRIC, 80)

    types = {i.type for i in agg.issues}
    assert "missing_criterion" in types
    assert "extra_criterion" in types
    assert agg.extra_criteria == ["Creativity"]
    assert agg.criteria[-1].points == 0
    assert agg.max_points == 100
    assert agg.has_errors


def test_large_divergence_blends_into_judge_score():
    breakdown = {c.name: _entry(c.max_points / 2, c.max_points) for c in RUBRIC}
    agg = aggregate_rubric(breakdown, RUBRIC, 90)

    score, reason = corrected_score(agg)
    assert agg.percentage == 50
    assert score == 80
    assert reason == "rubric_blend:divergence=40"


def test_small_divergence_keeps_judge_score():
    breakdown = {c.name: _entry(c.max_points * 4 / 5, c.max_points) for c in RUBRIC}
    agg = aggregate_rubric(breakdown, RUBRIC, 85)

    assert corrected_score(agg) == (85, None)
    html = render_rubric_details(agg)
    assert "Operator usage" in html
    assert "24/30" in html
