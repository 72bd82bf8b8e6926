import asyncio
import json
from typing import Optional
from unittest.mock import patch
from urllib.parse import urlencode

import pytest

import app
import db
from conftest import FakeJudge
from engines.answer_validators import ValidationResult
from scoring_pipeline import set_pipeline

ANSWER = '("data engineer" OR "etl developer") AND (spark OR airflow) NOT intern'


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    headers: Optional[dict] = None,
):
    body = b""
    raw_headers = [(b"host", b"testserver")]
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode(), value.encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        raw_headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": raw_headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path: str, payload: dict, headers: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("POST", path, payload=payload, headers=headers))


def _get(path: str, query: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("GET", path, query=query))


def _put(path: str, payload: dict) -> tuple[int, dict]:
    return asyncio.run(_call_app("PUT", path, payload=payload))


@pytest.fixture
def pipeline(make_pipeline):
    built = make_pipeline(judge=FakeJudge(score=None))
    set_pipeline(built)
    yield built
    set_pipeline(None)


def test_create_player_and_health(temp_db, catalog):
    status, payload = _post("/players", {"id": "recruiter-7", "name": "Sam"})
    assert status == 200
    assert payload["id"] == "recruiter-7"
    assert payload["total_score"] == 0

    status, payload = _get("/health")
    assert status == 200
    assert payload["status"] == "ok"
    assert payload["challenges"] == len(catalog.all())


def test_submit_with_header_identity(pipeline, player):
    validation = ValidationResult(42, {"hasAND": True}, ["Add a proximity operator."], [], "boolean")
    with patch("scoring_pipeline.validate_answer", return_value=validation):
        status, payload = _post(
            "/submit",
            {"challenge_id": "boolean-data-engineer", "submission": ANSWER},
            headers={"X-Player-Id": player},
        )

    assert status == 200
    assert payload["score"] == 42
    assert payload["used_automated_only"] is True
    assert "AI coach unavailable" in payload["feedback"]
    assert payload["attempt_id"] is not None
    assert db.get_attempt(player, "boolean-data-engineer").score == 42


def test_submit_duplicate_returns_conflict(pipeline, player):
    body = {"challenge_id": "boolean-data-engineer", "submission": ANSWER, "player_id": player}
    assert _post("/submit", body)[0] == 200

    status, payload = _post("/submit", body)
    assert status == 409
    assert payload["detail"]["code"] == "already_submitted"
    assert "detail" not in payload["detail"]


def test_submit_missing_text_is_bad_request(pipeline, player):
    status, payload = _post("/submit", {"challenge_id": "boolean-data-engineer", "submission": "", "player_id": player})
    assert status == 400
    assert payload["detail"]["code"] == "missing_submission"


def test_submit_unknown_player_is_not_found(pipeline):
    status, payload = _post("/submit", {"challenge_id": "boolean-data-engineer", "submission": ANSWER, "player_id": "nobody"})
    assert status == 404
    assert payload["detail"]["code"] == "unknown_player"


def test_unexpected_errors_hide_internal_text(pipeline, player, monkeypatch):
    monkeypatch.delenv("EXPOSE_ERROR_DETAILS", raising=False)
    with patch.object(pipeline, "_compose", side_effect=KeyError("secret-column")):
        status, payload = _post(
            "/submit", {"challenge_id": "boolean-data-engineer", "submission": ANSWER, "player_id": player}
        )
    assert status == 500
    assert payload["detail"]["code"] == "unexpected_error"
    assert "secret-column" not in json.dumps(payload)


def test_error_details_exposed_when_enabled(pipeline, player, monkeypatch):
    monkeypatch.setenv("EXPOSE_ERROR_DETAILS", "true")
    with patch("db.insert_attempt", return_value=db.Failure("database is locked")):
        status, payload = _post(
            "/submit", {"challenge_id": "boolean-data-engineer", "submission": ANSWER, "player_id": player}
        )
    assert status == 500
    assert payload["detail"]["code"] == "save_attempt_failed"
    assert payload["detail"]["detail"] == "database is locked"


def test_player_routes_require_known_player(temp_db, catalog):
    assert _get("/players/ghost/reviews")[0] == 404
    assert _get("/players/ghost/difficulty/boolean")[0] == 404


def test_difficulty_starts_easy(player, catalog):
    status, payload = _get(f"/players/{player}/difficulty/boolean")
    assert status == 200
    assert payload["difficulty"] == "easy"
    assert payload["action"] == "start"


def test_reviews_for_new_player_are_empty(player, catalog):
    status, payload = _get(f"/players/{player}/reviews")
    assert status == 200
    assert payload["recommendations"] == []
    assert payload["summary"]["skills"] == 0


def test_calibration_override_and_report(pipeline):
    status, payload = _put(
        "/admin/calibration/boolean-data-engineer",
        {"offset": 6, "reason": "Too hard for the medium tier", "admin": "ops"},
    )
    assert status == 200
    assert payload["challenge_id"] == "boolean-data-engineer"
    assert payload["offset"] == 6

    status, payload = _get("/admin/calibration/report")
    assert status == 200
    assert set(payload["by_difficulty"]) == {"easy", "medium", "hard"}

    status, _ = _put("/admin/calibration/unknown", {"offset": 1, "reason": "nope"})
    assert status == 404


def test_calibration_run_without_data(pipeline):
    status, payload = _post("/admin/calibration/run", {})
    assert status == 200
    assert payload["games_calibrated"] == 0


def test_promote_missing_reference(pipeline):
    status, payload = _post("/admin/references/999/promote", {})
    assert status == 404
    assert payload["detail"]["code"] == "reference_not_found"


def test_rubric_flags_lists_noisy_criteria(temp_db, catalog):
    rows = [
        {
            "attempt_id": i,
            "player_id": f"p{i}",
            "challenge_id": "boolean-data-engineer",
            "challenge_title": "Data Engineer Boolean",
            "criterion": "Synonym coverage",
            "points": 10.0 if i % 2 else 0.0,
            "max_points": 10.0,
            "final_score": 70,
        }
        for i in range(16)
    ]
    db.log_rubric_criteria(rows)

    status, payload = _get("/admin/rubric-flags")
    assert status == 200
    assert payload["rows_analyzed"] == 16
    [flag] = payload["flags"]
    assert flag["criterion"] == "Synonym coverage"
    assert flag["std_dev_ratio"] == 0.5
    assert flag["reasons"] == ["High criteria variance (std dev 5.0 / max 10)"]

    status, payload = _get("/admin/rubric-flags", {"challenge_id": "other"})
    assert payload == {"flags": [], "rows_analyzed": 0}
