"""Run the batch difficulty calibration and print a JSON summary."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from catalog import ChallengeCatalog
from engines.calibration import CalibrationEngine


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--catalog",
        type=str,
        default=None,
        help="Path to the challenge catalog YAML (default: challenges.yaml next to the app)",
    )
    parser.add_argument(
        "--challenge",
        action="append",
        default=[],
        help="Only calibrate this challenge id (repeatable)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON summary",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    db.init()
    catalog = ChallengeCatalog(args.catalog)
    challenges = catalog.all()
    if args.challenge:
        wanted = set(args.challenge)
        challenges = [c for c in challenges if c.id in wanted]
        missing = wanted - {c.id for c in challenges}
        if missing:
            parser.error(f"unknown challenge id(s): {', '.join(sorted(missing))}")

    engine = CalibrationEngine()
    summary = engine.run_calibration_analysis(challenges)
    report = {
        "run_id": summary.run_id,
        "games_analyzed": summary.games_analyzed,
        "games_calibrated": summary.games_calibrated,
        "games_flagged": summary.games_flagged,
        "too_easy": summary.too_easy,
        "too_hard": summary.too_hard,
        "duration_ms": summary.duration_ms,
        "needs_review": [r.challenge_id for r in engine.get_games_needing_review()],
    }

    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 1 if report["needs_review"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
