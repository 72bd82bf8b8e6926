import pytest

from catalog import ValidationRules
from engines.answer_validators import (
    FALLBACK_FEEDBACK,
    personalization_level,
    score_data_driven,
    validate_answer,
    validate_boolean,
    validate_outreach,
    validate_xray,
)

BERLIN = ValidationRules(type="boolean", keywords=("java", "spring"), location="berlin", require_location=True)


def test_well_formed_boolean_string_scores_full_marks():
    text = '("java developer" OR "backend engineer") AND (spring OR "spring boot") AND berlin NOT intern'
    result = validate_boolean(text, BERLIN)
    assert result.score == 100
    assert result.checks["hasParentheses"] and result.checks["hasNot"]
    assert result.checks["hasLocation"] and result.checks["hasKeywords"]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("java spring berlin", 75),
        ("java AND spring OR berlin", 80),
        ("java AND spring", 85),
        ("(python OR go) AND berlin", 85),
    ],
)
def test_boolean_penalties(text, expected):
    assert validate_boolean(text, BERLIN).score == expected


def test_xray_requires_site_operator():
    rules = ValidationRules(type="xray")
    with_site = validate_xray('site:linkedin.com/in "product designer" AND berlin', rules)
    without_site = validate_xray('"product designer" AND berlin', rules)
    assert with_site.score == 100
    assert without_site.score == 85
    assert without_site.validator == "xray"


def test_bare_outreach_collects_every_penalty():
    result = validate_outreach("Hi there", ValidationRules(type="outreach"))
    assert result.score == 20
    assert result.checks["lengthOK"] is False
    assert result.checks["hasCallToAction"] is False


@pytest.mark.parametrize(
    "text, level",
    [
        ("I read your article on event sourcing last week.", "deep"),
        ("Your experience at Stripe caught my eye.", "medium"),
        ("I came across your profile today.", "shallow"),
        ("We are hiring engineers.", "none"),
    ],
)
def test_personalization_levels(text, level):
    assert personalization_level(text) == level


def test_data_driven_bonus():
    assert score_data_driven("Our pipeline rate is 30% above the market benchmark") == 100
    assert score_data_driven("We should hire more people") == 40


def test_empty_input_scores_zero(catalog):
    challenge = catalog.get("boolean-java-berlin")
    result = validate_answer("   ", challenge)
    assert result.score == 0
    assert result.validator == "none"
    assert validate_answer(None, challenge).score == 0


def test_dispatch_and_fallback_feedback(catalog):
    challenge = catalog.get("boolean-java-berlin")
    result = validate_answer(
        '("java developer" OR "backend engineer") AND (spring OR "spring boot") AND berlin NOT intern', challenge
    )
    assert result.validator == "boolean"
    assert result.feedback == [FALLBACK_FEEDBACK]
