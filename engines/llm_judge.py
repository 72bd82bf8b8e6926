"""LLM judge adapter.

Walks the model chain ``PRIMARY_MODEL -> FALLBACK_MODEL_1 -> FALLBACK_MODEL_2``
and lands in ``AUTOMATED_ONLY`` when every call fails. Retries use the
simplified prompt. One HTTP call per chain state; an endpoint that rejects
``response_format`` with a 400 gets the minimal payload on the next state.
Each call is logged as one JSON line on ``scoring.llm``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests

from catalog import Challenge
from coach import JudgePromptBuilder, JudgeSettings, PRIMARY_TEMPERATURE
from engines.answer_validators import ValidationResult
from schemas import JudgeResponse, parse_json_safe

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("scoring.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

AUTOMATED_ONLY = "AUTOMATED_ONLY"


@dataclass
class JudgeOutcome:
    state: str
    response: Optional[JudgeResponse] = None
    model: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def automated_only(self) -> bool:
        return self.response is None

    @property
    def last_error(self) -> Optional[str]:
        return self.attempts[-1]["outcome"] if self.attempts else None


def _extract_content(data: Any) -> Optional[str]:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        try:
            return data["choices"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None


class LLMJudge:
    def __init__(self, settings: Optional[JudgeSettings] = None, prompts: Optional[JudgePromptBuilder] = None):
        self.settings = settings or JudgeSettings.from_env()
        self.prompts = prompts or JudgePromptBuilder()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def _call_model(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        *,
        state: str,
        variant: str,
        structured: bool = True,
    ) -> Tuple[str, Optional[JudgeResponse]]:
        payload = {"model": model, "messages": messages, "temperature": temperature}
        if structured:
            payload["response_format"] = {"type": "json_object"}
        start = time.perf_counter()
        status: Optional[int] = None
        outcome = "ok"
        parsed: Optional[JudgeResponse] = None
        try:
            try:
                r = requests.post(self.settings.url, json=payload, headers=self._headers(), timeout=self.settings.timeout)
                status = r.status_code
                if r.status_code == 400 and structured:
                    outcome = "bad_request"
                    return outcome, None
                r.raise_for_status()
                data = r.json()
            except requests.Timeout:
                outcome = "timeout"
                return outcome, None
            except requests.RequestException as exc:
                outcome = "http_error"
                logger.warning("Judge call to %s failed: %s", model, exc)
                return outcome, None
            except ValueError:
                outcome = "parse_error"
                return outcome, None

            content = _extract_content(data)
            if not content or not content.strip():
                outcome = "empty"
                return outcome, None
            try:
                parsed = parse_json_safe(content, JudgeResponse)
            except ValueError as exc:
                outcome = "parse_error"
                logger.info("Judge response from %s failed validation: %s", model, str(exc)[:300])
                return outcome, None
            return outcome, parsed
        finally:
            log_record = {
                "event": "judge_call",
                "model": model,
                "state": state,
                "prompt_variant": variant,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "status": status,
                "outcome": outcome,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))

    def judge(
        self, challenge: Challenge, submission: str, validation: ValidationResult, knowledge: str = ""
    ) -> JudgeOutcome:
        """Score ``submission`` with the first model in the chain that returns a valid judgment."""
        attempts: List[Dict[str, Any]] = []
        structured = True
        for state, model, variant, temperature in self.settings.model_chain():
            messages = self.prompts.build_messages(challenge, submission, validation, variant=variant, knowledge=knowledge)
            outcome, parsed = self._call_model(
                model, messages, temperature, state=state, variant=variant, structured=structured
            )
            attempts.append({"state": state, "model": model, "outcome": outcome})
            if outcome == "bad_request":
                structured = False
            if parsed is not None:
                return JudgeOutcome(state=state, response=parsed, model=model, attempts=attempts)
        logger.warning("All judge models failed for challenge %s; using automated scoring", challenge.id)
        return JudgeOutcome(state=AUTOMATED_ONLY, attempts=attempts)

    def judge_secondary(
        self, challenge: Challenge, submission: str, validation: ValidationResult, knowledge: str = ""
    ) -> Optional[JudgeResponse]:
        """Independent second opinion used by the consistency check."""
        messages = self.prompts.build_messages(challenge, submission, validation, variant="full", knowledge=knowledge)
        _, parsed = self._call_model(
            self.settings.secondary_model,
            messages,
            PRIMARY_TEMPERATURE,
            state="CROSS_VALIDATION",
            variant="full",
        )
        return parsed

    async def judge_async(
        self, challenge: Challenge, submission: str, validation: ValidationResult, knowledge: str = ""
    ) -> JudgeOutcome:
        return await asyncio.to_thread(self.judge, challenge, submission, validation, knowledge)

    async def judge_secondary_async(
        self, challenge: Challenge, submission: str, validation: ValidationResult, knowledge: str = ""
    ) -> Optional[JudgeResponse]:
        return await asyncio.to_thread(self.judge_secondary, challenge, submission, validation, knowledge)
