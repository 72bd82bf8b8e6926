"""Feedback composer.

Blocks are concatenated in a fixed order so that warnings always appear
before celebratory content. Every block is HTML; plain text is escaped and
paragraph-wrapped before it is added.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, fields
from typing import List, Optional, Sequence

from catalog import Challenge
from engines.answer_validators import ValidationResult, technical_checks
from schemas import JudgeResponse

CELEBRATION_THRESHOLD = 85
_TAG = re.compile(r"<[a-zA-Z][^>]*>")


def to_html(text: Optional[str]) -> str:
    """Escape plain text and wrap each paragraph; HTML passes through."""
    if not text or not text.strip():
        return ""
    if _TAG.search(text):
        return text
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    return "".join("<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs)


def _list(title: str, items: Sequence[str]) -> str:
    if not items:
        return ""
    return f"<p><strong>{title}:</strong></p><ul>" + "".join(f"<li>{html.escape(i)}</li>" for i in items) + "</ul>"


def judge_body(response: JudgeResponse) -> str:
    return to_html(response.feedback) + _list("Strengths", response.strengths) + _list("To improve", response.improvements)


def automated_only_block(validation: ValidationResult, challenge: Challenge) -> str:
    checks = "".join(f"<li>{html.escape(c)}</li>" for c in technical_checks(validation))
    issues = _list("Issues found", validation.feedback)
    strengths = _list("What worked", validation.strengths)
    return (
        "<div class=\"automated-feedback\">"
        "<p><strong>Automated evaluation (AI coach unavailable)</strong></p>"
        f"<p>Score: {validation.score}/100 for {html.escape(challenge.title)}.</p>"
        f"{issues}{strengths}"
        f"<details><summary>Technical checks</summary><ul>{checks}</ul></details>"
        "<p><strong>What to do next:</strong> Address the issues above and compare your answer with the task "
        "requirements. Detailed coaching returns once the AI coach is available again.</p>"
        "</div>"
    )


def hint_note(penalty: int, hints_used: int) -> str:
    if hints_used <= 0:
        return ""
    return f"<p><em>Hint penalty applied: -{penalty} points ({hints_used} hint(s) used)</em></p>"


def celebration_block(score: int, title: str) -> str:
    if score < CELEBRATION_THRESHOLD:
        return ""
    return (
        "<div class=\"celebration\"><p><strong>OUTSTANDING WORK!</strong></p>"
        f"<p>You've achieved an expert-level score ({score}/100) on {html.escape(title)}. "
        "This answer is a strong model for other recruiters.</p></div>"
    )


def calibration_block(note: str) -> str:
    return f"<p><em>{html.escape(note)}</em></p>" if note else ""


@dataclass
class FeedbackBlocks:
    """Field order is the render order."""

    gaming_warning: str = ""
    context_adjustments: str = ""
    body: str = ""
    multi_reference: str = ""
    ensemble: str = ""
    rubric: str = ""
    calibration: str = ""
    hint: str = ""
    celebration: str = ""
    peer: str = ""
    history: str = ""
    clustering: str = ""
    learning_progress: str = ""
    difficulty: str = ""

    def compose(self) -> str:
        parts: List[str] = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value:
                parts.append(to_html(value))
        return "".join(parts)
