"""Judge prompt variants, one JSON file per variant.

Each file names the placeholders its templates use; unknown placeholders are
rejected at load time so a typo fails on startup instead of mid-request.
"""
from __future__ import annotations

import json
import string
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent

SYSTEM_FIELDS = frozenset({"schema"})
USER_FIELDS = frozenset(
    {
        "title",
        "task",
        "skill_category",
        "difficulty",
        "rubric",
        "example_block",
        "knowledge_block",
        "validation_score",
        "validation_feedback",
        "submission",
    }
)


@dataclass(frozen=True)
class JudgePrompt:
    id: str
    variant: str
    prompt_version: str
    description: str
    system_template: str
    user_template: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()


def _placeholders(template: str) -> FrozenSet[str]:
    return frozenset(name for _, name, _, _ in string.Formatter().parse(template) if name)


def _parse_prompt(path: Path) -> JudgePrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    fields = JudgePrompt.__dataclass_fields__
    missing = sorted(set(fields) - payload.keys())
    if missing:
        raise ValueError(f"{path.name}: missing keys {', '.join(missing)}")
    prompt = JudgePrompt(**{name: str(payload[name]) for name in fields})

    unknown = (_placeholders(prompt.system_template) - SYSTEM_FIELDS) | (
        _placeholders(prompt.user_template) - USER_FIELDS
    )
    if unknown:
        raise ValueError(f"{path.name}: unknown placeholders {', '.join(sorted(unknown))}")
    if "submission" not in _placeholders(prompt.user_template):
        raise ValueError(f"{path.name}: user_template must include {{submission}}")
    return prompt


@lru_cache(maxsize=1)
def load_prompts() -> Mapping[str, JudgePrompt]:
    prompts: Dict[str, JudgePrompt] = {}
    for path in sorted(_PROMPT_DIR.glob("judge_*.json")):
        prompt = _parse_prompt(path)
        if prompt.normalized_variant in prompts:
            raise ValueError(f"Duplicate judge prompt variant: {prompt.variant}")
        prompts[prompt.normalized_variant] = prompt
    for required in ("full", "simplified"):
        if required not in prompts:
            raise RuntimeError(f"Judge prompt variant '{required}' not found in {_PROMPT_DIR}")
    return prompts


def get_prompt(variant: str) -> JudgePrompt:
    prompts = load_prompts()
    try:
        return prompts[variant.lower()]
    except KeyError:
        raise KeyError(f"Unknown judge prompt variant '{variant}'") from None


__all__ = ["JudgePrompt", "load_prompts", "get_prompt"]
