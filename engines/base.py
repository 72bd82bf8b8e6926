"""Shared numeric helpers and the stage base class used by the scoring pipeline."""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, List, Sequence

_WORD_RE = re.compile(r"\S+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up (72.5 -> 73, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> int:
    """Round half-up and clamp a score to an integer in [0, 100]."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return 0
    return max(0, min(100, round_half_up(value)))


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def word_count(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def split_sentences(text: str, min_length: int = 0) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text or "") if len(s.strip()) > min_length]


def mean(values: Iterable[float]) -> float:
    items = list(values)
    return sum(items) / len(items) if items else 0.0


def population_std(values: Iterable[float]) -> float:
    items = list(values)
    if not items:
        return 0.0
    avg = mean(items)
    return math.sqrt(sum((v - avg) ** 2 for v in items) / len(items))


def percentile_value(sorted_values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile over an ascending sequence."""
    if not sorted_values:
        return 0.0
    index = math.ceil(pct / 100.0 * len(sorted_values)) - 1
    return float(sorted_values[max(0, min(len(sorted_values) - 1, index))])


def quantile_at(sorted_values: Sequence[float], fraction: float) -> float:
    """Element at ``floor(n * fraction)``; ``fraction=0.5`` is the upper median."""
    if not sorted_values:
        return 0.0
    index = int(math.floor(len(sorted_values) * fraction))
    return float(sorted_values[min(len(sorted_values) - 1, index)])


class ScoringStage:
    """One step of the scoring pipeline.

    Stages read from and write to the shared context object. ``critical``
    stages propagate their errors; enrichment stages are wrapped by the
    pipeline so that a failure only logs a warning.
    """

    name: str = "stage"
    critical: bool = False
    skip_when_automated: bool = False

    async def run(self, ctx: Any) -> None:
        raise NotImplementedError
