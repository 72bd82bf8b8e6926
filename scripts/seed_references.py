"""Seed curated reference answers from each challenge's example solution."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from catalog import Challenge, ChallengeCatalog
from engines.embeddings import EmbeddingClient
from engines.reference_answers import ReferenceStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--catalog",
        type=str,
        default=None,
        help="Path to the challenge catalog YAML (default: challenges.yaml next to the app)",
    )
    parser.add_argument(
        "--score",
        type=int,
        default=None,
        help="Score stored with each curated reference (default: the store's curated score)",
    )
    parser.add_argument(
        "--status-only",
        action="store_true",
        help="Only print the seeding status per challenge",
    )
    return parser


async def _seed(challenges: Sequence[Challenge], store: ReferenceStore, embedder: EmbeddingClient, score: int | None) -> Dict[str, str]:
    results: Dict[str, str] = {}
    for challenge in challenges:
        if not challenge.example_solution:
            results[challenge.id] = "skipped: no example solution"
            continue
        embedding = await embedder.embed(challenge.example_solution)
        if not embedding:
            results[challenge.id] = "skipped: embedding unavailable"
            continue
        outcome = await asyncio.to_thread(store.seed, challenge, challenge.example_solution, embedding, score)
        results[challenge.id] = f"added #{outcome.reference_id}" if outcome.added else f"skipped: {outcome.reason}"
    return results


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    db.init()
    catalog = ChallengeCatalog(args.catalog)
    store = ReferenceStore()
    report: Dict[str, object] = {}
    if not args.status_only:
        report["seeded"] = asyncio.run(_seed(catalog.all(), store, EmbeddingClient(), args.score))
    report["status"] = store.seeding_status(catalog.all())

    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
