# app.py - recruiter training scoring service
# - POST /submit runs the scoring pipeline
# - typed scoring errors map to {code, message} HTTP payloads
# - admin routes for calibration, rubric flags and the reference store

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException

import db
from catalog import get_catalog
from engines import analytics
from engines.calibration import CalibrationEngine
from engines.difficulty_manager import DifficultyManager
from engines.reference_answers import ReferenceStore
from engines.spaced_repetition import SpacedRepetitionEngine
from engines.validation import ScoringError
from env_validation import get_env_bool
from schemas import CalibrationOverrideRequest, PlayerCreateRequest, SubmitRequest, SubmitResponse
from scoring_pipeline import get_pipeline, score_submission

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        catalog = get_catalog()
        logger.info("Loaded %d challenges from %s", len(catalog.all()), catalog.path)
        yield
        await get_pipeline().tasks.drain()
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Recruiter Training Scoring", version="1.0.0", lifespan=_lifespan)


def _expose_details() -> bool:
    return get_env_bool("EXPOSE_ERROR_DETAILS", False)


def _scoring_http_error(exc: ScoringError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_payload(_expose_details()))


def _unexpected_error(exc: Exception) -> HTTPException:
    detail: dict[str, Any] = {"code": "unexpected_error", "message": "Something went wrong while scoring. Please try again."}
    if _expose_details():
        detail["detail"] = f"{type(exc).__name__}: {exc}"
    return HTTPException(status_code=500, detail=detail)


def _require_player(player_id: str) -> None:
    if db.get_player(player_id) is None:
        raise HTTPException(status_code=404, detail={"code": "unknown_player", "message": "Player not found."})


# ---------- Scoring ----------
@app.post("/submit", response_model=SubmitResponse)
async def submit(body: SubmitRequest, x_player_id: Optional[str] = Header(default=None)):
    player_id = (x_player_id or body.player_id or "").strip()
    try:
        result = await score_submission(player_id, body.challenge_id, body.submission, body.hint_count)
    except ScoringError as exc:
        logger.info("Submission rejected (%s): %s", exc.code, exc.detail or exc.message)
        raise _scoring_http_error(exc) from exc
    except Exception as exc:
        logger.exception("Unexpected scoring failure for %s/%s", player_id, body.challenge_id)
        raise _unexpected_error(exc) from exc
    return SubmitResponse(**asdict(result))


# ---------- Players ----------
@app.post("/players")
def create_player(body: PlayerCreateRequest):
    player_id = body.id.strip()
    if not player_id:
        raise HTTPException(status_code=400, detail={"code": "missing_player_id", "message": "A player id is required."})
    db.ensure_player(player_id, body.name)
    return db.get_player(player_id).model_dump(mode="json")


@app.get("/players/{player_id}/reviews")
def player_reviews(player_id: str):
    _require_player(player_id)
    engine = SpacedRepetitionEngine()
    now = datetime.now(timezone.utc)
    return {
        "player_id": player_id,
        "recommendations": [asdict(r) for r in engine.get_review_recommendations(player_id, now)],
        "summary": engine.get_skill_summary(player_id, now),
    }


@app.get("/players/{player_id}/difficulty/{skill}")
def player_difficulty(player_id: str, skill: str):
    _require_player(player_id)
    skill = skill.strip().lower()
    recommendation = DifficultyManager().get_recommended_difficulty(player_id, skill)
    return {"player_id": player_id, "skill_category": skill, **asdict(recommendation)}


# ---------- Admin ----------
@app.post("/admin/calibration/run")
async def calibration_run():
    engine: CalibrationEngine = get_pipeline().calibration
    summary = await asyncio.to_thread(engine.run_calibration_analysis, get_catalog().all())
    payload = asdict(summary)
    payload["records"] = [r.model_dump(mode="json") for r in summary.records]
    return payload


@app.get("/admin/calibration/report")
def calibration_report():
    engine: CalibrationEngine = get_pipeline().calibration
    return {
        "by_difficulty": engine.get_calibration_report(),
        "needs_review": [r.model_dump(mode="json") for r in engine.get_games_needing_review()],
    }


@app.put("/admin/calibration/{challenge_id}")
def calibration_override(challenge_id: str, body: CalibrationOverrideRequest):
    if get_catalog().get(challenge_id) is None:
        raise HTTPException(status_code=404, detail={"code": "challenge_not_found", "message": "This challenge does not exist."})
    engine: CalibrationEngine = get_pipeline().calibration
    record = engine.set_game_calibration(
        challenge_id,
        body.offset,
        body.scale if body.scale is not None else 1.0,
        reason=body.reason,
        admin=body.admin,
    )
    return record.model_dump(mode="json")


@app.post("/admin/references/{reference_id}/promote")
def promote_reference(reference_id: int):
    store: ReferenceStore = get_pipeline().references
    if not store.promote(reference_id):
        raise HTTPException(status_code=404, detail={"code": "reference_not_found", "message": "Reference answer not found."})
    return {"status": "ok", "reference_id": reference_id}


@app.get("/admin/rubric-flags")
def rubric_flags(challenge_id: Optional[str] = None):
    rows = db.list_rubric_criteria(challenge_id)
    return {"flags": analytics.analyze_rubric_flags(rows), "rows_analyzed": len(rows)}


@app.get("/health")
def health():
    return {"status": "ok", "challenges": len(get_catalog().all())}
