import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from db_pool import SQLiteConnectionPool
from engines.base import cosine_similarity
from schemas import (
    AttemptRecord,
    CalibrationRecord,
    DifficultyProfileRecord,
    PlayerRecord,
    ReferenceAnswerRecord,
    SkillMemoryRecord,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

T = TypeVar("T")


# -------------- result variants --------------
@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class FallbackNeeded:
    """The server-side procedure is unavailable; run the client-side equivalent."""

    reason: str


@dataclass(frozen=True)
class Failure:
    reason: str


StoreResult = Union[Ok[T], FallbackNeeded, Failure]


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _iso(ts: Optional[datetime] = None) -> str:
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _procedure(name: str) -> Optional[FallbackNeeded]:
    if not _pool.procedures_enabled:
        return FallbackNeeded(f"{name}: stored procedures disabled")
    return None


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS players (
              id                  TEXT PRIMARY KEY,
              name                TEXT DEFAULT '',
              total_score         INTEGER DEFAULT 0,
              last_submission_at  TEXT,
              created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS attempts (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id       TEXT NOT NULL,
              challenge_id    TEXT NOT NULL,
              skill_category  TEXT NOT NULL,
              difficulty      TEXT NOT NULL,
              submission      TEXT NOT NULL,
              score           INTEGER NOT NULL CHECK(score BETWEEN 0 AND 100),
              feedback        TEXT NOT NULL,
              created_at      TEXT NOT NULL,
              UNIQUE(player_id, challenge_id)
            );
            CREATE INDEX IF NOT EXISTS idx_attempts_challenge ON attempts(challenge_id);
            CREATE INDEX IF NOT EXISTS idx_attempts_player_skill ON attempts(player_id, skill_category);

            CREATE TABLE IF NOT EXISTS difficulty_profiles (
              player_id               TEXT NOT NULL,
              skill_category          TEXT NOT NULL,
              difficulty              TEXT NOT NULL,
              schema_version          INTEGER NOT NULL DEFAULT 1,
              attempts                INTEGER NOT NULL DEFAULT 0,
              avg_score               REAL NOT NULL DEFAULT 0,
              best_score              INTEGER NOT NULL DEFAULT 0,
              worst_score             INTEGER NOT NULL DEFAULT 100,
              scores_above_80         INTEGER NOT NULL DEFAULT 0,
              scores_above_90         INTEGER NOT NULL DEFAULT 0,
              consecutive_high_scores INTEGER NOT NULL DEFAULT 0,
              mastery_score           REAL NOT NULL DEFAULT 0,
              ready_for_promotion     INTEGER NOT NULL DEFAULT 0,
              confidence              REAL NOT NULL DEFAULT 0,
              last_attempt_at         TEXT,
              PRIMARY KEY (player_id, skill_category, difficulty)
            );

            CREATE TABLE IF NOT EXISTS skill_memory (
              player_id        TEXT NOT NULL,
              skill_category   TEXT NOT NULL,
              schema_version   INTEGER NOT NULL DEFAULT 1,
              easiness_factor  REAL NOT NULL DEFAULT 2.5,
              interval_days    REAL NOT NULL DEFAULT 0,
              repetitions      INTEGER NOT NULL DEFAULT 0,
              last_quality     INTEGER NOT NULL DEFAULT 0,
              memory_strength  REAL NOT NULL DEFAULT 0.5,
              stability        REAL NOT NULL DEFAULT 1.0,
              total_attempts   INTEGER NOT NULL DEFAULT 0,
              avg_score        REAL NOT NULL DEFAULT 0,
              best_score       INTEGER NOT NULL DEFAULT 0,
              last_score       INTEGER,
              score_history    TEXT NOT NULL DEFAULT '[]',
              weakness_level   TEXT NOT NULL DEFAULT 'none',
              last_attempt_at  TEXT,
              next_review_at   TEXT,
              PRIMARY KEY (player_id, skill_category)
            );

            CREATE TABLE IF NOT EXISTS calibration (
              challenge_id      TEXT PRIMARY KEY,
              schema_version    INTEGER NOT NULL DEFAULT 1,
              difficulty        TEXT NOT NULL,
              sample_count      INTEGER NOT NULL DEFAULT 0,
              raw_avg           REAL NOT NULL DEFAULT 0,
              raw_median        REAL NOT NULL DEFAULT 0,
              raw_std           REAL NOT NULL DEFAULT 0,
              p25               REAL NOT NULL DEFAULT 0,
              p75               REAL NOT NULL DEFAULT 0,
              benchmark_target  REAL NOT NULL DEFAULT 0,
              deviation         REAL NOT NULL DEFAULT 0,
              significance      TEXT NOT NULL DEFAULT 'none',
              method            TEXT NOT NULL DEFAULT 'none',
              offset            REAL NOT NULL DEFAULT 0,
              scale             REAL NOT NULL DEFAULT 1,
              confidence        REAL NOT NULL DEFAULT 0,
              is_calibrated     INTEGER NOT NULL DEFAULT 0,
              needs_review      INTEGER NOT NULL DEFAULT 0,
              review_reason     TEXT,
              manual_override   INTEGER NOT NULL DEFAULT 0,
              updated_at        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS calibration_history (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              challenge_id  TEXT NOT NULL,
              old_offset    REAL,
              new_offset    REAL,
              old_scale     REAL,
              new_scale     REAL,
              reason        TEXT,
              changed_by    TEXT,
              created_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS calibration_runs (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              games_analyzed    INTEGER NOT NULL,
              games_calibrated  INTEGER NOT NULL,
              games_flagged     INTEGER NOT NULL,
              too_easy          INTEGER NOT NULL,
              too_hard          INTEGER NOT NULL,
              duration_ms       INTEGER NOT NULL,
              created_at        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reference_answers (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              schema_version    INTEGER NOT NULL DEFAULT 1,
              challenge_id      TEXT NOT NULL,
              challenge_title   TEXT DEFAULT '',
              submission        TEXT NOT NULL,
              score             INTEGER NOT NULL,
              embedding         TEXT NOT NULL,
              source_type       TEXT NOT NULL DEFAULT 'player',
              source_player_id  TEXT,
              skill_category    TEXT,
              difficulty        TEXT,
              is_verified       INTEGER NOT NULL DEFAULT 0,
              is_active         INTEGER NOT NULL DEFAULT 1,
              created_at        TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_refs_challenge ON reference_answers(challenge_id, is_active);
            CREATE INDEX IF NOT EXISTS idx_refs_skill ON reference_answers(skill_category, difficulty);

            CREATE TABLE IF NOT EXISTS scoring_analytics (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id             TEXT NOT NULL,
              challenge_id          TEXT NOT NULL,
              ai_score              INTEGER,
              validation_score      INTEGER,
              embedding_score       INTEGER,
              final_score           INTEGER NOT NULL,
              weights               TEXT,
              confidence            INTEGER,
              gaming_risk           TEXT,
              word_count            INTEGER,
              references_compared   INTEGER,
              processing_ms         INTEGER,
              created_at            TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS feedback_records (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id             TEXT NOT NULL,
              challenge_id          TEXT NOT NULL,
              skill_category        TEXT NOT NULL,
              attempt_id            INTEGER,
              score                 INTEGER NOT NULL,
              improvements          TEXT,
              followup_attempt_id   INTEGER,
              score_delta           INTEGER,
              effectiveness         TEXT,
              created_at            TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS review_queue (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id     TEXT NOT NULL,
              challenge_id  TEXT NOT NULL,
              attempt_id    INTEGER,
              score         INTEGER NOT NULL,
              reasons       TEXT NOT NULL,
              status        TEXT NOT NULL DEFAULT 'pending',
              created_at    TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS retention_points (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id         TEXT NOT NULL,
              skill_category    TEXT NOT NULL,
              score             INTEGER NOT NULL,
              best_score        INTEGER NOT NULL,
              days_since_last   REAL,
              created_at        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS known_templates (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              skill_category  TEXT,
              template_text   TEXT NOT NULL,
              source          TEXT DEFAULT 'manual',
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS gaming_log (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              player_id             TEXT NOT NULL,
              challenge_id          TEXT NOT NULL,
              risk_score            INTEGER NOT NULL,
              risk_level            TEXT NOT NULL,
              flags                 TEXT,
              context_adjustments   TEXT,
              action                TEXT,
              created_at            TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_retrievals (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              attempt_id        INTEGER,
              challenge_id      TEXT NOT NULL,
              skill_category    TEXT NOT NULL,
              query_text        TEXT,
              article_ids       TEXT NOT NULL,
              avg_similarity    REAL,
              max_similarity    REAL,
              retrieval_ms      INTEGER,
              final_score       INTEGER,
              created_at        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rubric_criteria_scores (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              attempt_id        INTEGER,
              player_id         TEXT NOT NULL,
              challenge_id      TEXT NOT NULL,
              challenge_title   TEXT,
              criterion         TEXT NOT NULL,
              points            REAL NOT NULL,
              max_points        REAL NOT NULL,
              final_score       INTEGER,
              ai_score          INTEGER,
              validation_score  INTEGER,
              created_at        TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_rubric_criteria ON rubric_criteria_scores(challenge_id, criterion);
            """
        )
        con.commit()


# -------------- players --------------
def ensure_player(player_id: str, name: str = "") -> None:
    _exec("INSERT OR IGNORE INTO players(id, name) VALUES(?, ?)", (player_id, name))


def get_player(player_id: str) -> Optional[PlayerRecord]:
    rows = _query("SELECT * FROM players WHERE id = ?", (player_id,))
    return PlayerRecord.from_row(rows[0]) if rows else None


def touch_last_submission(player_id: str, when: datetime) -> None:
    _exec("UPDATE players SET last_submission_at = ? WHERE id = ?", (_iso(when), player_id))


def add_player_score(player_id: str, points: int) -> None:
    _exec("UPDATE players SET total_score = total_score + ? WHERE id = ?", (int(points), player_id))


# -------------- attempts --------------
def get_attempt(player_id: str, challenge_id: str) -> Optional[AttemptRecord]:
    rows = _query(
        "SELECT * FROM attempts WHERE player_id = ? AND challenge_id = ?",
        (player_id, challenge_id),
    )
    return AttemptRecord.from_row(rows[0]) if rows else None


def insert_attempt(attempt: AttemptRecord) -> StoreResult[int]:
    """Insert an attempt; the UNIQUE(player, challenge) constraint reports duplicates."""
    try:
        cur = _exec(
            """
            INSERT INTO attempts(player_id, challenge_id, skill_category, difficulty,
                                 submission, score, feedback, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt.player_id,
                attempt.challenge_id,
                attempt.skill_category,
                attempt.difficulty,
                attempt.submission,
                attempt.score,
                attempt.feedback,
                _iso(attempt.created_at),
            ),
        )
    except sqlite3.IntegrityError as exc:
        if "UNIQUE" in str(exc).upper():
            return Failure("duplicate")
        return Failure(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok(int(cur.lastrowid))


def list_player_attempts(
    player_id: str,
    skill_category: Optional[str] = None,
    limit: int = 50,
) -> List[AttemptRecord]:
    """Most recent first."""
    if skill_category:
        rows = _query(
            "SELECT * FROM attempts WHERE player_id = ? AND skill_category = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (player_id, skill_category, limit),
        )
    else:
        rows = _query(
            "SELECT * FROM attempts WHERE player_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (player_id, limit),
        )
    return [AttemptRecord.from_row(r) for r in rows]


def list_challenges_with_attempts() -> List[str]:
    return [r["challenge_id"] for r in _query("SELECT DISTINCT challenge_id FROM attempts ORDER BY challenge_id")]


def list_practice_days(player_id: str, since: datetime) -> List[str]:
    rows = _query(
        "SELECT DISTINCT substr(created_at, 1, 10) AS day FROM attempts WHERE player_id = ? AND created_at >= ? ORDER BY day",
        (player_id, _iso(since)),
    )
    return [r["day"] for r in rows]


# -------------- peer scores --------------
def get_challenge_scores(challenge_id: str, exclude_player_id: Optional[str] = None) -> StoreResult[List[int]]:
    fallback = _procedure("get_challenge_scores")
    if fallback:
        return fallback
    try:
        rows = _query(
            "SELECT score FROM attempts WHERE challenge_id = ? AND player_id != ?",
            (challenge_id, exclude_player_id or ""),
        )
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok([int(r["score"]) for r in rows])


def get_challenge_scores_fallback(challenge_id: str, exclude_player_id: Optional[str] = None) -> List[int]:
    rows = _query("SELECT player_id, challenge_id, score FROM attempts")
    return [
        int(r["score"])
        for r in rows
        if r["challenge_id"] == challenge_id and r["player_id"] != exclude_player_id
    ]


def get_category_scores(
    skill_category: str,
    exclude_challenge_id: Optional[str] = None,
    exclude_player_id: Optional[str] = None,
) -> StoreResult[List[Tuple[str, int]]]:
    fallback = _procedure("get_category_scores")
    if fallback:
        return fallback
    try:
        rows = _query(
            """
            SELECT challenge_id, score FROM attempts
            WHERE skill_category = ? AND challenge_id != ? AND player_id != ?
            """,
            (skill_category, exclude_challenge_id or "", exclude_player_id or ""),
        )
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok([(r["challenge_id"], int(r["score"])) for r in rows])


def get_category_scores_fallback(
    skill_category: str,
    exclude_challenge_id: Optional[str] = None,
    exclude_player_id: Optional[str] = None,
) -> List[Tuple[str, int]]:
    rows = _query("SELECT player_id, challenge_id, skill_category, score FROM attempts")
    return [
        (r["challenge_id"], int(r["score"]))
        for r in rows
        if r["skill_category"] == skill_category
        and r["challenge_id"] != exclude_challenge_id
        and r["player_id"] != exclude_player_id
    ]


# -------------- difficulty profiles --------------
_PROFILE_COLUMNS = (
    "player_id", "skill_category", "difficulty", "schema_version", "attempts", "avg_score",
    "best_score", "worst_score", "scores_above_80", "scores_above_90", "consecutive_high_scores",
    "mastery_score", "ready_for_promotion", "confidence", "last_attempt_at",
)


def _profile_values(p: DifficultyProfileRecord) -> Tuple[Any, ...]:
    return (
        p.player_id, p.skill_category, p.difficulty, p.schema_version, p.attempts, p.avg_score,
        p.best_score, p.worst_score, p.scores_above_80, p.scores_above_90, p.consecutive_high_scores,
        p.mastery_score, int(p.ready_for_promotion), p.confidence,
        _iso(p.last_attempt_at) if p.last_attempt_at else None,
    )


def get_difficulty_profile(player_id: str, skill_category: str, difficulty: str) -> Optional[DifficultyProfileRecord]:
    rows = _query(
        "SELECT * FROM difficulty_profiles WHERE player_id = ? AND skill_category = ? AND difficulty = ?",
        (player_id, skill_category, difficulty),
    )
    return DifficultyProfileRecord.from_row(rows[0]) if rows else None


def list_difficulty_profiles(player_id: str, skill_category: str) -> List[DifficultyProfileRecord]:
    rows = _query(
        "SELECT * FROM difficulty_profiles WHERE player_id = ? AND skill_category = ?",
        (player_id, skill_category),
    )
    return [DifficultyProfileRecord.from_row(r) for r in rows]


def upsert_difficulty_profile(profile: DifficultyProfileRecord) -> StoreResult[None]:
    fallback = _procedure("upsert_difficulty_profile")
    if fallback:
        return fallback
    columns = ", ".join(_PROFILE_COLUMNS)
    placeholders = ", ".join("?" for _ in _PROFILE_COLUMNS)
    updates = ", ".join(f"{c} = excluded.{c}" for c in _PROFILE_COLUMNS[3:])
    try:
        _exec(
            f"""
            INSERT INTO difficulty_profiles ({columns}) VALUES ({placeholders})
            ON CONFLICT(player_id, skill_category, difficulty) DO UPDATE SET {updates}
            """,
            _profile_values(profile),
        )
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok(None)


def upsert_difficulty_profile_fallback(profile: DifficultyProfileRecord) -> None:
    values = _profile_values(profile)
    with _conn() as con:
        exists = con.execute(
            "SELECT 1 FROM difficulty_profiles WHERE player_id = ? AND skill_category = ? AND difficulty = ?",
            values[:3],
        ).fetchone()
        if exists:
            assignments = ", ".join(f"{c} = ?" for c in _PROFILE_COLUMNS[3:])
            con.execute(
                f"UPDATE difficulty_profiles SET {assignments} WHERE player_id = ? AND skill_category = ? AND difficulty = ?",
                values[3:] + values[:3],
            )
        else:
            con.execute(
                f"INSERT INTO difficulty_profiles ({', '.join(_PROFILE_COLUMNS)}) VALUES ({', '.join('?' for _ in values)})",
                values,
            )
        con.commit()


# -------------- skill memory --------------
_MEMORY_COLUMNS = (
    "player_id", "skill_category", "schema_version", "easiness_factor", "interval_days", "repetitions",
    "last_quality", "memory_strength", "stability", "total_attempts", "avg_score", "best_score",
    "last_score", "score_history", "weakness_level", "last_attempt_at", "next_review_at",
)


def _memory_values(m: SkillMemoryRecord) -> Tuple[Any, ...]:
    return (
        m.player_id, m.skill_category, m.schema_version, m.easiness_factor, m.interval_days, m.repetitions,
        m.last_quality, m.memory_strength, m.stability, m.total_attempts, m.avg_score, m.best_score,
        m.last_score, json.dumps(m.score_history), m.weakness_level,
        _iso(m.last_attempt_at) if m.last_attempt_at else None,
        _iso(m.next_review_at) if m.next_review_at else None,
    )


def get_skill_memory(player_id: str, skill_category: str) -> Optional[SkillMemoryRecord]:
    rows = _query(
        "SELECT * FROM skill_memory WHERE player_id = ? AND skill_category = ?",
        (player_id, skill_category),
    )
    return SkillMemoryRecord.from_row(rows[0]) if rows else None


def list_skill_memory(player_id: str) -> List[SkillMemoryRecord]:
    rows = _query("SELECT * FROM skill_memory WHERE player_id = ? ORDER BY skill_category", (player_id,))
    return [SkillMemoryRecord.from_row(r) for r in rows]


def upsert_skill_memory(memory: SkillMemoryRecord) -> StoreResult[None]:
    fallback = _procedure("upsert_skill_memory")
    if fallback:
        return fallback
    columns = ", ".join(_MEMORY_COLUMNS)
    placeholders = ", ".join("?" for _ in _MEMORY_COLUMNS)
    updates = ", ".join(f"{c} = excluded.{c}" for c in _MEMORY_COLUMNS[2:])
    try:
        _exec(
            f"""
            INSERT INTO skill_memory ({columns}) VALUES ({placeholders})
            ON CONFLICT(player_id, skill_category) DO UPDATE SET {updates}
            """,
            _memory_values(memory),
        )
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok(None)


def upsert_skill_memory_fallback(memory: SkillMemoryRecord) -> None:
    values = _memory_values(memory)
    with _conn() as con:
        exists = con.execute(
            "SELECT 1 FROM skill_memory WHERE player_id = ? AND skill_category = ?",
            values[:2],
        ).fetchone()
        if exists:
            assignments = ", ".join(f"{c} = ?" for c in _MEMORY_COLUMNS[2:])
            con.execute(
                f"UPDATE skill_memory SET {assignments} WHERE player_id = ? AND skill_category = ?",
                values[2:] + values[:2],
            )
        else:
            con.execute(
                f"INSERT INTO skill_memory ({', '.join(_MEMORY_COLUMNS)}) VALUES ({', '.join('?' for _ in values)})",
                values,
            )
        con.commit()


def add_retention_point(player_id: str, skill_category: str, score: int, best_score: int, days_since_last: Optional[float], when: datetime) -> None:
    _exec(
        """
        INSERT INTO retention_points(player_id, skill_category, score, best_score, days_since_last, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (player_id, skill_category, score, best_score, days_since_last, _iso(when)),
    )


def list_retention_points(player_id: str, skill_category: str) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT score, best_score, days_since_last, created_at FROM retention_points WHERE player_id = ? AND skill_category = ? ORDER BY id",
        (player_id, skill_category),
    )
    return [dict(r) for r in rows]


# -------------- calibration --------------
_CALIBRATION_COLUMNS = (
    "challenge_id", "schema_version", "difficulty", "sample_count", "raw_avg", "raw_median", "raw_std",
    "p25", "p75", "benchmark_target", "deviation", "significance", "method", "offset", "scale",
    "confidence", "is_calibrated", "needs_review", "review_reason", "manual_override", "updated_at",
)


def get_calibration(challenge_id: str) -> StoreResult[Optional[CalibrationRecord]]:
    fallback = _procedure("get_calibration")
    if fallback:
        return fallback
    try:
        rows = _query("SELECT * FROM calibration WHERE challenge_id = ?", (challenge_id,))
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok(CalibrationRecord.from_row(rows[0]) if rows else None)


def get_calibration_fallback(challenge_id: str) -> Optional[CalibrationRecord]:
    for row in _query("SELECT * FROM calibration"):
        if row["challenge_id"] == challenge_id:
            return CalibrationRecord.from_row(row)
    return None


def list_calibrations() -> List[CalibrationRecord]:
    return [CalibrationRecord.from_row(r) for r in _query("SELECT * FROM calibration ORDER BY challenge_id")]


def save_calibration(record: CalibrationRecord) -> None:
    values = (
        record.challenge_id, record.schema_version, record.difficulty, record.sample_count, record.raw_avg,
        record.raw_median, record.raw_std, record.p25, record.p75, record.benchmark_target, record.deviation,
        record.significance, record.method, record.offset, record.scale, record.confidence,
        int(record.is_calibrated), int(record.needs_review), record.review_reason,
        int(record.manual_override), _iso(record.updated_at),
    )
    updates = ", ".join(f"{c} = excluded.{c}" for c in _CALIBRATION_COLUMNS[1:])
    _exec(
        f"""
        INSERT INTO calibration ({', '.join(_CALIBRATION_COLUMNS)}) VALUES ({', '.join('?' for _ in values)})
        ON CONFLICT(challenge_id) DO UPDATE SET {updates}
        """,
        values,
    )


def add_calibration_history(
    challenge_id: str,
    old_offset: Optional[float],
    new_offset: float,
    old_scale: Optional[float],
    new_scale: float,
    reason: str,
    changed_by: str,
    when: Optional[datetime] = None,
) -> None:
    _exec(
        """
        INSERT INTO calibration_history(challenge_id, old_offset, new_offset, old_scale, new_scale, reason, changed_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (challenge_id, old_offset, new_offset, old_scale, new_scale, reason, changed_by, _iso(when)),
    )


def list_calibration_history(challenge_id: str) -> List[Dict[str, Any]]:
    rows = _query("SELECT * FROM calibration_history WHERE challenge_id = ? ORDER BY id", (challenge_id,))
    return [dict(r) for r in rows]


def record_calibration_run(
    games_analyzed: int,
    games_calibrated: int,
    games_flagged: int,
    too_easy: int,
    too_hard: int,
    duration_ms: int,
) -> int:
    cur = _exec(
        """
        INSERT INTO calibration_runs(games_analyzed, games_calibrated, games_flagged, too_easy, too_hard, duration_ms, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (games_analyzed, games_calibrated, games_flagged, too_easy, too_hard, duration_ms, _iso()),
    )
    return int(cur.lastrowid)


# -------------- reference answers --------------
_REFERENCE_INSERT = """
    INSERT INTO reference_answers(challenge_id, challenge_title, submission, score, embedding, source_type,
                                  source_player_id, skill_category, difficulty, is_verified, is_active, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _reference_values(ref: ReferenceAnswerRecord) -> Tuple[Any, ...]:
    return (
        ref.challenge_id, ref.challenge_title, ref.submission, ref.score, json.dumps(ref.embedding),
        ref.source_type, ref.source_player_id, ref.skill_category, ref.difficulty,
        int(ref.is_verified), int(ref.is_active), _iso(ref.created_at),
    )


@dataclass(frozen=True)
class AddReferenceOutcome:
    added: bool
    reference_id: Optional[int] = None
    reason: Optional[str] = None
    similarity: float = 0.0


def _nearest_duplicate(
    rows: Sequence[sqlite3.Row],
    embedding: Sequence[float],
    threshold: float,
) -> Optional[float]:
    for row in rows:
        existing = json.loads(row["embedding"] or "[]")
        similarity = cosine_similarity(embedding, existing)
        if similarity > threshold:
            return similarity
    return None


def add_reference_answer(
    ref: ReferenceAnswerRecord,
    duplicate_threshold: float = 0.95,
    scan_limit: int = 50,
) -> StoreResult[AddReferenceOutcome]:
    """Dedupe against active references and insert in one transaction."""
    fallback = _procedure("add_reference_answer")
    if fallback:
        return fallback
    try:
        with _conn() as con:
            con.execute("BEGIN IMMEDIATE")
            rows = con.execute(
                "SELECT embedding FROM reference_answers WHERE challenge_id = ? AND is_active = 1 ORDER BY score DESC LIMIT ?",
                (ref.challenge_id, scan_limit),
            ).fetchall()
            duplicate = _nearest_duplicate(rows, ref.embedding, duplicate_threshold)
            if duplicate is not None:
                con.rollback()
                return Ok(AddReferenceOutcome(False, reason="Duplicate detected (>95% similarity)", similarity=duplicate))
            cur = con.execute(_REFERENCE_INSERT, _reference_values(ref))
            con.commit()
            return Ok(AddReferenceOutcome(True, reference_id=int(cur.lastrowid)))
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))


def add_reference_answer_fallback(
    ref: ReferenceAnswerRecord,
    duplicate_threshold: float = 0.95,
    scan_limit: int = 50,
) -> AddReferenceOutcome:
    rows = [
        r for r in _query("SELECT challenge_id, is_active, score, embedding FROM reference_answers")
        if r["challenge_id"] == ref.challenge_id and r["is_active"]
    ]
    rows.sort(key=lambda r: r["score"], reverse=True)
    duplicate = _nearest_duplicate(rows[:scan_limit], ref.embedding, duplicate_threshold)
    if duplicate is not None:
        return AddReferenceOutcome(False, reason="Duplicate detected (>95% similarity)", similarity=duplicate)
    cur = _exec(_REFERENCE_INSERT, _reference_values(ref))
    return AddReferenceOutcome(True, reference_id=int(cur.lastrowid))


def _rank_references(
    rows: Iterable[sqlite3.Row],
    embedding: Sequence[float],
    min_similarity: float,
    limit: int,
) -> List[Tuple[ReferenceAnswerRecord, float]]:
    ranked: List[Tuple[ReferenceAnswerRecord, float]] = []
    for row in rows:
        record = ReferenceAnswerRecord.from_row(row)
        similarity = cosine_similarity(embedding, record.embedding)
        if similarity >= min_similarity:
            ranked.append((record, similarity))
    ranked.sort(key=lambda item: item[1], reverse=True)
    return ranked[:limit]


def find_similar_references(
    embedding: Sequence[float],
    *,
    challenge_id: Optional[str] = None,
    skill_category: Optional[str] = None,
    exclude_challenge_id: Optional[str] = None,
    min_score: int = 80,
    min_similarity: float = 0.0,
    limit: int = 10,
) -> StoreResult[List[Tuple[ReferenceAnswerRecord, float]]]:
    """Nearest active references by cosine similarity, highest first.

    Filtering by challenge or skill category happens in SQL; similarity is
    computed over the JSON-encoded vectors of the remaining rows.
    """
    fallback = _procedure("find_similar_references")
    if fallback:
        return fallback
    clauses = ["is_active = 1", "score >= ?"]
    params: List[Any] = [min_score]
    if challenge_id is not None:
        clauses.append("challenge_id = ?")
        params.append(challenge_id)
    if skill_category is not None:
        clauses.append("skill_category = ?")
        params.append(skill_category)
    if exclude_challenge_id is not None:
        clauses.append("challenge_id != ?")
        params.append(exclude_challenge_id)
    try:
        rows = _query(f"SELECT * FROM reference_answers WHERE {' AND '.join(clauses)}", params)
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    return Ok(_rank_references(rows, embedding, min_similarity, limit))


def find_similar_references_fallback(
    embedding: Sequence[float],
    *,
    challenge_id: Optional[str] = None,
    skill_category: Optional[str] = None,
    exclude_challenge_id: Optional[str] = None,
    min_score: int = 80,
    min_similarity: float = 0.0,
    limit: int = 10,
) -> List[Tuple[ReferenceAnswerRecord, float]]:
    rows = [
        r for r in _query("SELECT * FROM reference_answers")
        if r["is_active"]
        and r["score"] >= min_score
        and (challenge_id is None or r["challenge_id"] == challenge_id)
        and (skill_category is None or r["skill_category"] == skill_category)
        and (exclude_challenge_id is None or r["challenge_id"] != exclude_challenge_id)
    ]
    return _rank_references(rows, embedding, min_similarity, limit)


def get_reference_stats(challenge_id: str) -> StoreResult[Dict[str, Any]]:
    fallback = _procedure("get_reference_stats")
    if fallback:
        return fallback
    try:
        rows = _query(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(is_verified), 0) AS verified,
                   COALESCE(AVG(score), 0) AS avg_score,
                   COALESCE(MAX(score), 0) AS best_score,
                   COALESCE(SUM(CASE WHEN source_type = 'curated' THEN 1 ELSE 0 END), 0) AS curated
            FROM reference_answers WHERE challenge_id = ? AND is_active = 1
            """,
            (challenge_id,),
        )
    except sqlite3.OperationalError as exc:
        return FallbackNeeded(str(exc))
    except sqlite3.Error as exc:
        return Failure(str(exc))
    row = rows[0]
    return Ok(
        {
            "total": int(row["total"]),
            "verified": int(row["verified"]),
            "avg_score": round(float(row["avg_score"]), 1),
            "best_score": int(row["best_score"]),
            "curated": int(row["curated"]),
        }
    )


def get_reference_stats_fallback(challenge_id: str) -> Dict[str, Any]:
    rows = [
        r for r in _query("SELECT challenge_id, is_active, is_verified, score, source_type FROM reference_answers")
        if r["challenge_id"] == challenge_id and r["is_active"]
    ]
    scores = [int(r["score"]) for r in rows]
    return {
        "total": len(rows),
        "verified": sum(1 for r in rows if r["is_verified"]),
        "avg_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
        "best_score": max(scores) if scores else 0,
        "curated": sum(1 for r in rows if r["source_type"] == "curated"),
    }


def get_reference(reference_id: int) -> Optional[ReferenceAnswerRecord]:
    rows = _query("SELECT * FROM reference_answers WHERE id = ?", (reference_id,))
    return ReferenceAnswerRecord.from_row(rows[0]) if rows else None


def promote_reference(reference_id: int) -> bool:
    cur = _exec(
        "UPDATE reference_answers SET is_verified = 1, source_type = 'curated' WHERE id = ?",
        (reference_id,),
    )
    return cur.rowcount > 0


def count_active_references() -> Dict[str, int]:
    rows = _query(
        "SELECT challenge_id, COUNT(*) AS n FROM reference_answers WHERE is_active = 1 GROUP BY challenge_id"
    )
    return {r["challenge_id"]: int(r["n"]) for r in rows}


# -------------- templates and logs --------------
def list_known_templates(skill_category: Optional[str] = None) -> List[str]:
    rows = _query(
        "SELECT template_text FROM known_templates WHERE skill_category IS NULL OR skill_category = ?",
        (skill_category or "",),
    )
    return [r["template_text"] for r in rows]


def add_known_template(template_text: str, skill_category: Optional[str] = None, source: str = "manual") -> None:
    _exec(
        "INSERT INTO known_templates(skill_category, template_text, source) VALUES (?, ?, ?)",
        (skill_category, template_text, source),
    )


def log_gaming_detection(
    player_id: str,
    challenge_id: str,
    risk_score: int,
    risk_level: str,
    flags: Sequence[str],
    context_adjustments: Sequence[str],
    action: str,
) -> None:
    _exec(
        """
        INSERT INTO gaming_log(player_id, challenge_id, risk_score, risk_level, flags, context_adjustments, action, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (player_id, challenge_id, risk_score, risk_level, json.dumps(list(flags)), json.dumps(list(context_adjustments)), action, _iso()),
    )


def record_scoring_analytics(
    player_id: str,
    challenge_id: str,
    *,
    ai_score: Optional[int],
    validation_score: Optional[int],
    embedding_score: Optional[int],
    final_score: int,
    weights: Dict[str, float],
    confidence: Optional[int],
    gaming_risk: Optional[str],
    word_count: int,
    references_compared: int,
    processing_ms: int,
) -> None:
    _exec(
        """
        INSERT INTO scoring_analytics(player_id, challenge_id, ai_score, validation_score, embedding_score,
                                      final_score, weights, confidence, gaming_risk, word_count,
                                      references_compared, processing_ms, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            player_id, challenge_id, ai_score, validation_score, embedding_score, final_score,
            json.dumps(weights), confidence, gaming_risk, word_count, references_compared,
            processing_ms, _iso(),
        ),
    )


def list_scoring_analytics(challenge_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if challenge_id:
        rows = _query("SELECT * FROM scoring_analytics WHERE challenge_id = ? ORDER BY id", (challenge_id,))
    else:
        rows = _query("SELECT * FROM scoring_analytics ORDER BY id")
    return [dict(r) for r in rows]


def record_feedback(
    player_id: str,
    challenge_id: str,
    skill_category: str,
    attempt_id: Optional[int],
    score: int,
    improvements: Sequence[str],
) -> int:
    cur = _exec(
        """
        INSERT INTO feedback_records(player_id, challenge_id, skill_category, attempt_id, score, improvements, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (player_id, challenge_id, skill_category, attempt_id, score, json.dumps(list(improvements)), _iso()),
    )
    return int(cur.lastrowid)


def find_open_feedback(player_id: str, skill_category: str, exclude_challenge_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM feedback_records
        WHERE player_id = ? AND skill_category = ? AND challenge_id != ? AND followup_attempt_id IS NULL
        ORDER BY id DESC LIMIT 1
        """,
        (player_id, skill_category, exclude_challenge_id),
    )
    return dict(rows[0]) if rows else None


def link_feedback_followup(feedback_id: int, followup_attempt_id: Optional[int], score_delta: int, effectiveness: str) -> None:
    _exec(
        "UPDATE feedback_records SET followup_attempt_id = ?, score_delta = ?, effectiveness = ? WHERE id = ?",
        (followup_attempt_id, score_delta, effectiveness, feedback_id),
    )


def list_feedback_records(player_id: str) -> List[Dict[str, Any]]:
    rows = _query("SELECT * FROM feedback_records WHERE player_id = ? ORDER BY id", (player_id,))
    return [dict(r) for r in rows]


def enqueue_review(player_id: str, challenge_id: str, attempt_id: Optional[int], score: int, reasons: Sequence[str]) -> int:
    cur = _exec(
        "INSERT INTO review_queue(player_id, challenge_id, attempt_id, score, reasons, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (player_id, challenge_id, attempt_id, score, json.dumps(list(reasons)), _iso()),
    )
    return int(cur.lastrowid)


def list_review_queue(status: str = "pending") -> List[Dict[str, Any]]:
    rows = _query("SELECT * FROM review_queue WHERE status = ? ORDER BY id", (status,))
    out = []
    for r in rows:
        item = dict(r)
        item["reasons"] = json.loads(item["reasons"] or "[]")
        out.append(item)
    return out


def log_knowledge_retrieval(
    attempt_id: Optional[int],
    challenge_id: str,
    skill_category: str,
    query_text: str,
    article_ids: Sequence[str],
    avg_similarity: float,
    max_similarity: float,
    retrieval_ms: int,
    final_score: Optional[int],
) -> None:
    _exec(
        """
        INSERT INTO knowledge_retrievals(attempt_id, challenge_id, skill_category, query_text, article_ids,
                                         avg_similarity, max_similarity, retrieval_ms, final_score, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            attempt_id, challenge_id, skill_category, query_text[:1000], json.dumps(list(article_ids)),
            avg_similarity, max_similarity, retrieval_ms, final_score, _iso(),
        ),
    )


def list_knowledge_retrievals(challenge_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if challenge_id:
        rows = _query("SELECT * FROM knowledge_retrievals WHERE challenge_id = ? ORDER BY id", (challenge_id,))
    else:
        rows = _query("SELECT * FROM knowledge_retrievals ORDER BY id")
    out = []
    for r in rows:
        item = dict(r)
        item["article_ids"] = json.loads(item["article_ids"] or "[]")
        out.append(item)
    return out


def log_rubric_criteria(rows: Sequence[Dict[str, Any]]) -> int:
    """Insert one row per rubric criterion in a single transaction."""
    if not rows:
        return 0
    now = _iso()
    with _conn() as con:
        con.executemany(
            """
            INSERT INTO rubric_criteria_scores(attempt_id, player_id, challenge_id, challenge_title, criterion,
                                               points, max_points, final_score, ai_score, validation_score, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    r.get("attempt_id"), r["player_id"], r["challenge_id"], r.get("challenge_title"), r["criterion"],
                    r["points"], r["max_points"], r.get("final_score"), r.get("ai_score"), r.get("validation_score"), now,
                )
                for r in rows
            ],
        )
        con.commit()
    return len(rows)


def list_rubric_criteria(challenge_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if challenge_id:
        rows = _query("SELECT * FROM rubric_criteria_scores WHERE challenge_id = ? ORDER BY id", (challenge_id,))
    else:
        rows = _query("SELECT * FROM rubric_criteria_scores ORDER BY id")
    return [dict(r) for r in rows]
