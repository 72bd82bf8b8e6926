import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from conftest import FakeEmbedder
from schemas import AttemptRecord
from scripts import run_calibration, seed_references


def _seed_attempts(challenge_id, difficulty, score, count):
    for i in range(count):
        db.insert_attempt(
            AttemptRecord(
                player_id=f"p{i}",
                challenge_id=challenge_id,
                skill_category="boolean",
                difficulty=difficulty,
                submission="answer",
                score=score,
                feedback="",
            )
        )


def test_calibration_cli_without_attempts(temp_db, capsys):
    exit_code = run_calibration.main([])
    report = json.loads(capsys.readouterr().out)

    assert exit_code == 0
    assert report["games_analyzed"] == 0
    assert report["needs_review"] == []


def test_calibration_cli_flags_extreme_challenge(temp_db, capsys, tmp_path):
    _seed_attempts("boolean-data-engineer", "medium", 85, 30)
    output = tmp_path / "report.json"

    exit_code = run_calibration.main(["--challenge", "boolean-data-engineer", "--output", str(output)])
    report = json.loads(capsys.readouterr().out)

    assert exit_code == 1
    assert report["games_calibrated"] == 1
    assert report["needs_review"] == ["boolean-data-engineer"]
    assert json.loads(output.read_text(encoding="utf-8")) == report


def test_calibration_cli_rejects_unknown_challenge(temp_db):
    with pytest.raises(SystemExit) as exc:
        run_calibration.main(["--challenge", "nope"])
    assert exc.value.code == 2


def test_seed_references_cli(temp_db, capsys, monkeypatch):
    monkeypatch.setattr(seed_references, "EmbeddingClient", FakeEmbedder)

    assert seed_references.main([]) == 0
    report = json.loads(capsys.readouterr().out)

    assert report["seeded"]["boolean-java-berlin"].startswith("added #")
    assert report["seeded"]["persona-data-scientist"] == "skipped: no example solution"
    assert report["status"]["boolean-java-berlin"] == {"references": 1, "status": "partial"}
    assert report["status"]["persona-data-scientist"]["status"] == "none"

    assert seed_references.main(["--status-only"]) == 0
    assert "seeded" not in json.loads(capsys.readouterr().out)
