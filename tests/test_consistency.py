import asyncio

import pytest

from engines.consistency import ConsistencyChecker, agreement_level, confidence_proxy, cross_validation_reason


def _check(ai, validation, secondary=None, raises=False, base=0.55):
    calls = []

    async def second_opinion():
        calls.append(1)
        if raises:
            raise RuntimeError("judge timeout")
        return secondary

    result = asyncio.run(ConsistencyChecker().check(ai, validation, base, second_opinion))
    return result, len(calls)


def test_proxy_is_neutral_without_validation_signal():
    assert confidence_proxy(90, 0) == 50
    assert confidence_proxy(70, 60) == 90


@pytest.mark.parametrize("proxy, level", [(50, "very_low"), (70, "low"), (80, "medium"), (95, "high")])
def test_agreement_levels(proxy, level):
    assert agreement_level(proxy) == level


@pytest.mark.parametrize(
    "ai, proxy, reason",
    [(88, 95, "high_stakes"), (60, 55, "low_agreement"), (77, 95, "near_boundary_75"), (65, 95, None)],
)
def test_cross_validation_triggers(ai, proxy, reason):
    assert cross_validation_reason(ai, proxy) == reason


def test_agreeing_signals_leave_everything_alone():
    result, calls = _check(70, 68)
    assert calls == 0
    assert result.adjusted_score == 70
    assert result.ai_weight == 0.55
    assert result.flags == []


def test_divergent_second_opinion_averages_and_reduces_weight():
    result, calls = _check(90, 40, secondary=60)
    assert calls == 1
    assert result.cross_validated
    assert result.secondary_score == 60
    assert result.adjusted_score == 75
    assert result.ai_weight == pytest.approx(0.2)
    assert "cross_validation_divergence" in result.flags
    assert any(n.startswith("Score Verification Note") for n in result.notes)


def test_divergent_average_rounds_half_up():
    result, _ = _check(90, 40, secondary=61)
    assert result.adjusted_score == 76


def test_close_second_opinion_passes():
    result, _ = _check(90, 85, secondary=86)
    assert "cross_validation_passed" in result.flags
    assert result.adjusted_score == 90


def test_failed_second_opinion_keeps_primary_score():
    result, calls = _check(90, 85, raises=True)
    assert calls == 1
    assert result.adjusted_score == 90
    assert "cross_validation_failed" in result.reasons
