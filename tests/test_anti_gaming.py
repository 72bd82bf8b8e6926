import pytest

from engines.anti_gaming import (
    AntiGamingDetector,
    GamingAnalysis,
    format_context_adjustments,
    format_gaming_feedback,
    risk_level_for,
)

OUTREACH = (
    "Hi Maria, I saw your talk on payments infrastructure at the Berlin Go meetup and your work "
    "migrating webhook delivery to a queue. We are building a ledger team at Acme and your "
    "experience fits well. Would you be open to a short call next Tuesday?"
)

AI_FLAVOURED = "As an AI, I hope this helps. We delve into the tapestry, therefore thus hence."


@pytest.fixture
def detector():
    return AntiGamingDetector()


@pytest.mark.parametrize(
    "score, level",
    [(0, "none"), (19, "none"), (20, "low"), (39, "low"), (40, "medium"), (60, "high"), (79, "high"), (80, "critical")],
)
def test_risk_level_boundaries(score, level):
    assert risk_level_for(score) == level


def test_clean_outreach_is_allowed(detector):
    analysis = detector.analyze(OUTREACH, "outreach")

    assert analysis.risk_score == 0
    assert analysis.risk_level == "none"
    assert analysis.action == "allow"
    assert analysis.penalty == 0
    assert analysis.flags == []


def test_near_copy_of_example_is_rejected(detector):
    analysis = detector.analyze(OUTREACH, "outreach", example_similarity=0.99)

    assert analysis.detector_scores["copy_paste"] == 99
    assert analysis.risk_level == "critical"
    assert analysis.action == "reject"
    assert analysis.penalty == 30
    assert "copy_paste" in analysis.flags


def test_keyword_stuffing_scores_dense_repeats(detector):
    text = "candidate talent hiring recruitment sourcing pipeline candidate candidate candidate candidate"
    assert detector.keyword_stuffing_score(text, "general") == 100
    assert detector.keyword_stuffing_score("too short", "general") == 0


def test_search_strings_get_keyword_tolerance(detector):
    text = "java java java java java developer engineer senior python and or not"
    analysis = detector.analyze(text, "boolean")

    assert analysis.detector_scores["keyword_stuffing"] == 50
    assert any("keyword score 100 -> 50" in note for note in analysis.context_adjustments)


def test_template_writing_context_reduces_template_score(detector):
    template = "We are looking for a senior engineer to join our platform team in a hybrid role based in Berlin."
    analysis = detector.analyze(template, "job-description", templates=[template])

    assert analysis.detector_scores["template_match"] == 70
    assert any("template score 100 -> 70" in note for note in analysis.context_adjustments)


def test_low_effort_placeholders(detector):
    assert detector.low_effort_score("[insert name] TODO") == 100
    assert detector.low_effort_score(OUTREACH) == 0


def test_reused_answer_counts_as_pattern_gaming(detector):
    assert detector.pattern_gaming_score(OUTREACH, [OUTREACH]) == 100
    assert detector.pattern_gaming_score(OUTREACH, ["Something entirely different about sourcing."]) == 0


def test_combine_blends_weighted_and_max(detector):
    assert detector.combine({"copy_paste": 100, "low_effort": 0}) == 100
    assert detector.combine({"keyword_stuffing": 50}) == 50
    assert detector.combine({"keyword_stuffing": 50, "low_effort": 100}) == 79
    assert detector.combine({}) == 0


def test_style_profile_needs_five_samples(detector):
    assert detector.build_style_profile(["one", "two", "three", "four"]) is None
    profile = detector.build_style_profile([f"Plain note about sourcing number {i} with nothing fancy" for i in range(5)])
    assert profile.samples == 5
    assert profile.ai_baseline == 0


def test_style_deviation_raises_ai_score(detector):
    history = [f"Plain note about sourcing number {i} with nothing fancy" for i in range(5)]
    analysis = detector.analyze(AI_FLAVOURED, "persona", style_history=history)

    assert analysis.detector_scores["ai_generated"] == 90
    assert any("Unusual deviation" in note for note in analysis.context_adjustments)


def test_consistent_style_halves_ai_score(detector):
    history = [AI_FLAVOURED] * 5
    analysis = detector.analyze(AI_FLAVOURED, "persona", style_history=history)

    assert analysis.detector_scores["ai_generated"] == 38
    assert any("Consistent with your established writing style" in note for note in analysis.context_adjustments)


def test_gaming_feedback_rendering():
    quiet = GamingAnalysis(10, "none", 0, "allow", {})
    assert format_gaming_feedback(quiet) == ""

    medium = GamingAnalysis(45, "medium", 5, "penalize", {}, flags=["template_match"])
    html = format_gaming_feedback(medium)
    assert 'class="gaming-warning medium"' in html
    assert "Originality Note" in html
    assert "template match" in html
    assert "A 5-point penalty was applied" in html

    critical = GamingAnalysis(90, "critical", 30, "reject", {})
    assert "Integrity Alert" in format_gaming_feedback(critical)
    assert "unusual patterns" in format_gaming_feedback(critical)


def test_context_adjustments_are_escaped():
    analysis = GamingAnalysis(0, "none", 0, "allow", {}, context_adjustments=["keyword score 80 -> 40"])
    rendered = format_context_adjustments(analysis)
    assert rendered.startswith("<details>")
    assert "80 -&gt; 40" in rendered
    assert format_context_adjustments(GamingAnalysis(0, "none", 0, "allow", {})) == ""
