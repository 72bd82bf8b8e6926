from catalog import Challenge
from conftest import make_judge_response
from engines.answer_validators import ValidationResult
from engines.feedback_engine import (
    FeedbackBlocks,
    automated_only_block,
    calibration_block,
    celebration_block,
    hint_note,
    judge_body,
    to_html,
)

CHALLENGE = Challenge(
    id="boolean-java-berlin",
    title="Java <Berlin>",
    skill_category="boolean",
    difficulty="easy",
    task="Find Java developers in Berlin",
)


def test_plain_text_is_escaped_and_wrapped():
    assert to_html("Use quotes & keep it under 5 < 6 terms.\n\nThen add a location.") == (
        "<p>Use quotes &amp; keep it under 5 &lt; 6 terms.</p><p>Then add a location.</p>"
    )
    assert to_html("line one\nline two") == "<p>line one<br>line two</p>"
    assert to_html("  ") == ""


def test_html_passes_through():
    assert to_html("<p>Already <strong>formatted</strong></p>") == "<p>Already <strong>formatted</strong></p>"


def test_blocks_render_in_fixed_order():
    blocks = FeedbackBlocks(
        difficulty="<p>difficulty</p>",
        celebration="<p>celebration</p>",
        body="<p>body</p>",
        gaming_warning="<p>warning</p>",
        hint="<p>hint</p>",
    )
    composed = blocks.compose()

    order = [composed.index(f"<p>{name}</p>") for name in ("warning", "body", "hint", "celebration", "difficulty")]
    assert order == sorted(order)


def test_empty_blocks_are_skipped():
    assert FeedbackBlocks().compose() == ""
    assert FeedbackBlocks(body="Plain text body").compose() == "<p>Plain text body</p>"


def test_judge_body_lists_strengths_and_improvements():
    body = judge_body(make_judge_response(80))
    assert body.startswith("<p>Solid search string.")
    assert "<p><strong>Strengths:</strong></p><ul><li>Clear grouping of alternatives</li></ul>" in body
    assert "<li>Add a proximity operator for titles</li>" in body


def test_automated_only_block():
    validation = ValidationResult(55, {"hasAND": True, "hasNOT": False}, ["Exclude interns with NOT."], [], "boolean")
    block = automated_only_block(validation, CHALLENGE)

    assert "Automated evaluation (AI coach unavailable)" in block
    assert "Score: 55/100 for Java &lt;Berlin&gt;." in block
    assert "<li>Exclude interns with NOT.</li>" in block
    assert "What worked" not in block


def test_small_notes():
    assert hint_note(0, 0) == ""
    assert hint_note(6, 2) == "<p><em>Hint penalty applied: -6 points (2 hint(s) used)</em></p>"
    assert celebration_block(84, "X") == ""
    assert "OUTSTANDING WORK!" in celebration_block(85, "X")
    assert calibration_block("") == ""
    assert calibration_block("Score includes +4 point difficulty bonus") == (
        "<p><em>Score includes +4 point difficulty bonus</em></p>"
    )
