import pytest

from engines.ensemble import apply_integrity, check_integrity, combine, normalize_weights, render_ensemble_note


def test_weights_renormalize_without_embedding():
    weights = normalize_weights(None, has_embedding=False)
    assert weights["embedding"] == 0
    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights["ai"] == pytest.approx(0.55 / 0.85)


def test_ai_override_is_renormalized():
    weights = normalize_weights(0.2, has_embedding=True)
    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights["ai"] == pytest.approx(0.2 / 0.65)


def test_identical_inputs_give_identical_results():
    first = combine(81, 64, 0.72, ai_weight_override=0.4, multi_reference_adjustment=3)
    second = combine(81, 64, 0.72, ai_weight_override=0.4, multi_reference_adjustment=3)
    assert first == second


def test_unanimous_signals_are_high_confidence():
    result = combine(70, 70, 0.70)
    assert result.final_score == 70
    assert result.confidence == 100
    assert result.confidence_level == "high"
    assert result.score_range == (70, 70)


def test_multi_reference_adjustment_is_added_after_weighting():
    base = combine(80, 60, None)
    adjusted = combine(80, 60, None, multi_reference_adjustment=5)
    assert adjusted.weighted_score == base.weighted_score
    assert adjusted.final_score == base.final_score + 5


def test_disagreement_lowers_confidence():
    result = combine(95, 30, 0.2)
    assert result.confidence < 50
    assert result.confidence_level == "low"


def test_exact_copy_is_capped():
    example = "(java OR kotlin) AND berlin"
    report = check_integrity("(Java  OR kotlin) AND Berlin", example, 0.99)
    assert report.is_exact_copy
    assert report.risk == "high"
    assert apply_integrity(90, report, 90) == 50


def test_perfect_score_needs_perfect_evidence():
    report = check_integrity("A detailed and original answer " * 5, None, 0.5)
    assert apply_integrity(100, report, 100) == 99


def test_placeholders_and_brevity_raise_medium_risk():
    report = check_integrity("Hi [Name], quick chat?", None, None)
    assert report.too_short and report.has_placeholders
    assert report.risk == "medium"
    assert apply_integrity(80, report, 80) == 76


def test_note_lists_weights_and_consistency_notes():
    result = combine(80, 60, 0.5)
    html = render_ensemble_note(result, ["Confidence Note: Score confidence is low."])
    assert "How this score was built" in html
    assert "Confidence Note" in html
