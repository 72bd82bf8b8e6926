import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from catalog import Challenge
from engines.answer_validators import ValidationResult
from engines.caching import TTLCache
from env_validation import get_env_float
from prompts.masterprompts import JudgePrompt, get_prompt
from schemas import JudgeResponse

logger = logging.getLogger(__name__)

PROMPT_CACHE_TTL_SECONDS = 5 * 60
SIMPLIFIED_SUBMISSION_CHARS = 3000

PRIMARY_TEMPERATURE = 0.35
RETRY_TEMPERATURE = 0.2


@dataclass(frozen=True)
class JudgeSettings:
    """Endpoint and model chain for the LLM judge."""

    url: str
    primary_model: str
    fallback_model: str
    second_fallback_model: str
    secondary_model: str
    timeout: float = 60.0
    api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "JudgeSettings":
        fallback = os.getenv("JUDGE_FALLBACK_MODEL", "judge-lite")
        return cls(
            url=os.getenv("LLM_URL", "http://localhost:4891/v1/chat/completions"),
            primary_model=os.getenv("JUDGE_PRIMARY_MODEL", "judge-large"),
            fallback_model=fallback,
            second_fallback_model=os.getenv("JUDGE_SECOND_FALLBACK_MODEL", "judge-flash"),
            secondary_model=os.getenv("JUDGE_SECONDARY_MODEL") or fallback,
            timeout=get_env_float("LLM_TIMEOUT", 60.0),
            api_key=os.getenv("LLM_API_KEY") or None,
        )

    def model_chain(self) -> Tuple[Tuple[str, str, str, float], ...]:
        """(state, model, prompt variant, temperature) in the order they are tried."""
        return (
            ("PRIMARY_MODEL", self.primary_model, "full", PRIMARY_TEMPERATURE),
            ("FALLBACK_MODEL_1", self.fallback_model, "simplified", RETRY_TEMPERATURE),
            ("FALLBACK_MODEL_2", self.second_fallback_model, "simplified", RETRY_TEMPERATURE),
        )


def judge_schema_text() -> str:
    return json.dumps(JudgeResponse.model_json_schema(), separators=(",", ":"))


def _format_rubric(challenge: Challenge, compact: bool) -> str:
    if not challenge.rubric:
        return "Overall quality: 100"
    if compact:
        return "; ".join(f"{c.name} ({c.max_points:g})" for c in challenge.rubric)
    lines = []
    for criterion in challenge.rubric:
        line = f"- {criterion.name}: {criterion.max_points:g}"
        if criterion.description:
            line += f" ({criterion.description})"
        lines.append(line)
    return "\n".join(lines)


class JudgePromptBuilder:
    """Builds chat messages for the judge.

    Per-challenge context (rubric text, system prompt) is cached with a TTL;
    the cache is injectable so tests control time and invalidation.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache: TTLCache = cache or TTLCache(PROMPT_CACHE_TTL_SECONDS)

    def _challenge_context(self, challenge: Challenge, prompt: JudgePrompt) -> Dict[str, str]:
        key = (challenge.id, prompt.normalized_variant, prompt.prompt_version)

        def _load() -> Dict[str, str]:
            compact = prompt.normalized_variant == "simplified"
            example_block = ""
            if challenge.example_solution and not compact:
                example_block = f"\nExample of a strong answer:\n{challenge.example_solution.strip()}\n"
            return {
                "system": prompt.system_template.format(schema=judge_schema_text()),
                "title": challenge.title,
                "task": challenge.task.strip(),
                "skill_category": challenge.skill_category,
                "difficulty": challenge.difficulty,
                "rubric": _format_rubric(challenge, compact),
                "example_block": example_block,
            }

        return self.cache.get_or_load(key, _load)

    def build_messages(
        self,
        challenge: Challenge,
        submission: str,
        validation: ValidationResult,
        variant: str = "full",
        knowledge: str = "",
    ) -> List[Dict[str, Any]]:
        prompt = get_prompt(variant)
        ctx = self._challenge_context(challenge, prompt)
        knowledge_block = f"\nReference knowledge for grading:\n{knowledge.strip()}\n" if knowledge.strip() else ""
        if prompt.normalized_variant == "simplified":
            knowledge_block = ""
            submission = submission[:SIMPLIFIED_SUBMISSION_CHARS]
            notes = " ".join(validation.feedback[:2])
        else:
            notes = "\n".join(f"- {line}" for line in validation.feedback) or "- none"
        user = prompt.user_template.format(
            title=ctx["title"],
            task=ctx["task"],
            skill_category=ctx["skill_category"],
            difficulty=ctx["difficulty"],
            rubric=ctx["rubric"],
            example_block=ctx["example_block"],
            knowledge_block=knowledge_block,
            validation_score=validation.score,
            validation_feedback=notes,
            submission=submission,
        )
        return [
            {"role": "system", "content": ctx["system"]},
            {"role": "user", "content": user},
        ]

    def invalidate(self, challenge_id: str) -> None:
        for variant in ("full", "simplified"):
            prompt = get_prompt(variant)
            self.cache.invalidate((challenge_id, prompt.normalized_variant, prompt.prompt_version))
