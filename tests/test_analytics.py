import asyncio

import pytest

import db
from engines import analytics
from engines.task_runner import TaskRunner


@pytest.mark.parametrize(
    "delta, label",
    [(25, "highly_effective"), (20, "highly_effective"), (12, "effective"), (0, "neutral"), (-5, "ineffective"), (-11, "counterproductive")],
)
def test_feedback_effectiveness_bands(delta, label):
    assert analytics.feedback_effectiveness(delta) == label


def test_review_reasons():
    assert analytics.review_reasons(85, None, "none", "allow") == []
    assert analytics.review_reasons(45, "high", "critical", "reject") == [
        "low_confidence:45",
        "integrity_risk_high",
        "gaming_risk_critical",
        "gaming_action_reject",
    ]
    assert analytics.review_reasons(None, None, "high", "flag_review") == ["gaming_risk_high", "gaming_action_flag_review"]


def test_feedback_quality_links_followups(temp_db):
    first = analytics.record_feedback_quality("player-1", "boolean-java-berlin", "boolean", 1, 55, ["Add NOT"])
    second = analytics.record_feedback_quality("player-1", "boolean-data-engineer", "boolean", 2, 78, ["Add site:"])

    assert first is None
    assert second == "highly_effective"
    records = db.list_feedback_records("player-1")
    assert records[0]["followup_attempt_id"] == 2
    assert records[0]["score_delta"] == 23
    assert records[1]["followup_attempt_id"] is None


def test_review_queue_only_with_reasons(temp_db):
    assert analytics.maybe_enqueue_review("player-1", "boolean-java-berlin", 7, 64, []) is None
    queue_id = analytics.maybe_enqueue_review("player-1", "boolean-java-berlin", 7, 64, ["low_confidence:40"])

    assert queue_id is not None
    queued = db.list_review_queue()
    assert [(q["attempt_id"], q["reasons"]) for q in queued] == [(7, ["low_confidence:40"])]


def test_scoring_record_is_written(temp_db):
    analytics.record_scoring(
        "player-1",
        "boolean-java-berlin",
        ai_score=80,
        validation_score=70,
        embedding_score=None,
        final_score=76,
        weights={"ai": 0.6, "validation": 0.4},
        confidence=82,
        gaming_risk="none",
        word_count=14,
        references_compared=0,
        processing_ms=120,
    )
    rows = db.list_scoring_analytics("boolean-java-berlin")
    assert len(rows) == 1
    assert rows[0]["final_score"] == 76
    assert rows[0]["embedding_score"] is None


def test_task_runner_swallows_failures():
    seen = []

    def _fail():
        raise RuntimeError("disk full")

    async def _run():
        runner = TaskRunner()
        runner.spawn("ok", seen.append, "done")
        runner.spawn("broken", _fail)
        assert runner.pending == 2
        await runner.drain()
        return runner.pending

    assert asyncio.run(_run()) == 0
    assert seen == ["done"]


def _criterion_rows(points, ai_scores=None, validation_scores=None, criterion="Grouping"):
    ai_scores = ai_scores or [70] * len(points)
    validation_scores = validation_scores or [70] * len(points)
    return [
        {
            "challenge_id": "boolean-java-berlin",
            "challenge_title": "Java Developers in Berlin",
            "criterion": criterion,
            "points": p,
            "max_points": 10,
            "ai_score": ai,
            "validation_score": val,
        }
        for p, ai, val in zip(points, ai_scores, validation_scores)
    ]


def test_rubric_flags_need_minimum_samples():
    assert analytics.analyze_rubric_flags(_criterion_rows([0, 10] * 7)) == []


def test_rubric_flags_high_variance_and_disagreement():
    noisy = _criterion_rows([0, 10] * 8, criterion="Grouping")
    split = _criterion_rows(
        [6] * 15,
        ai_scores=[90] * 6 + [70] * 9,
        validation_scores=[60] * 6 + [70] * 9,
        criterion="Location",
    )
    steady = _criterion_rows([7] * 20, criterion="Operators")

    flags = analytics.analyze_rubric_flags(noisy + split + steady)

    assert [f["criterion"] for f in flags] == ["Grouping", "Location"]
    assert flags[0]["std_dev_ratio"] == 0.5
    assert flags[0]["reasons"] == ["High criteria variance (std dev 5.0 / max 10)"]
    assert flags[1]["disagreement_rate"] == 0.4
    assert flags[1]["reasons"] == ["High AI vs validation disagreement (40%)"]


def test_rubric_criteria_rows_are_written(temp_db):
    from conftest import make_judge_response

    response = make_judge_response(
        80,
        rubric={
            "Grouping": {"points": 8, "maxPoints": 10, "reasoning": "Alternatives grouped well"},
            "Location": {"points": 4, "maxPoints": 5, "reasoning": "Berlin only, no variants"},
        },
    )
    written = analytics.record_rubric_criteria(
        7,
        "player-1",
        "boolean-java-berlin",
        "Java Developers in Berlin",
        response.rubricBreakdown,
        final_score=80,
        ai_score=82,
        validation_score=75,
    )

    assert written == 2
    rows = db.list_rubric_criteria("boolean-java-berlin")
    assert [(r["criterion"], r["points"], r["max_points"]) for r in rows] == [("Grouping", 8.0, 10.0), ("Location", 4.0, 5.0)]
    assert rows[0]["attempt_id"] == 7
    assert rows[0]["validation_score"] == 75
