"""Heuristic anti-gaming detection.

Six detectors score a submission 0-100 each: keyword stuffing, template
match, AI-generated prose, copy-paste from the example, low effort and
pattern gaming (reusing one's own earlier answers). Their weighted blend
maps to a risk level and a fixed score penalty. Context-aware adjustments
(category writing norms, the player's own style) are always reported.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from engines.base import clamp_score, mean, population_std, round_half_up, split_sentences, word_count

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GamingThresholds:
    low: int = 20
    medium: int = 40
    high: int = 60
    critical: int = 80


@dataclass(frozen=True)
class AntiGamingConfig:
    thresholds: GamingThresholds = GamingThresholds()
    penalties: Tuple[Tuple[str, int], ...] = (
        ("none", 0),
        ("low", 0),
        ("medium", 5),
        ("high", 15),
        ("critical", 30),
    )
    weights: Tuple[Tuple[str, float], ...] = (
        ("keyword_stuffing", 0.15),
        ("template_match", 0.25),
        ("ai_generated", 0.20),
        ("copy_paste", 0.25),
        ("low_effort", 0.10),
        ("pattern_gaming", 0.05),
    )
    weighted_share: float = 0.7
    max_share: float = 0.3
    flag_threshold: int = 40
    reject_example_similarity: float = 0.98
    keyword_density_floor: float = 0.15
    keyword_density_scale: float = 400
    keyword_repeat_limit: int = 5
    keyword_repeat_bonus: int = 20
    ngram_size: int = 3
    template_overlap_floor: float = 0.3
    pattern_jaccard_floor: float = 0.5
    ai_phrase_scale: float = 25
    ai_phrase_cap: int = 60
    uniform_min_sentences: int = 5
    uniform_cv: float = 0.2
    uniform_bonus: int = 25
    formality_per_100_words: float = 1.5
    formality_bonus: int = 15
    ai_tolerance_multiplier: float = 0.6
    template_tolerance_multiplier: float = 0.7
    code_like_keyword_multiplier: float = 0.5
    style_history_limit: int = 50
    style_min_samples: int = 5
    style_consistency_margin: int = 15
    style_consistency_multiplier: float = 0.5
    style_deviation_threshold: int = 60
    style_deviation_max_bonus: int = 20


DEFAULT_ANTI_GAMING_CONFIG = AntiGamingConfig()

AI_PHRASES: Tuple[Tuple[str, float], ...] = (
    ("as an ai", 0.9),
    ("as a language model", 0.9),
    ("i hope this helps", 0.6),
    ("certainly! here", 0.6),
    ("here is a", 0.2),
    ("it is important to note", 0.5),
    ("it's important to note", 0.5),
    ("in today's fast-paced", 0.5),
    ("in today's competitive", 0.4),
    ("delve into", 0.5),
    ("furthermore,", 0.2),
    ("moreover,", 0.2),
    ("in conclusion,", 0.3),
    ("leverage", 0.15),
    ("seamlessly", 0.3),
    ("tapestry", 0.5),
    ("navigate the complexities", 0.5),
    ("a testament to", 0.4),
)

SKILL_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "boolean": ("and", "or", "not", "developer", "engineer", "senior", "java", "python"),
    "xray": ("site", "linkedin", "github", "inurl", "intitle", "profile"),
    "linkedin": ("linkedin", "recruiter", "connection", "profile", "network"),
    "outreach": ("opportunity", "role", "team", "exciting", "growth", "culture", "passionate"),
    "diversity": ("diversity", "inclusion", "inclusive", "underrepresented", "equity", "belonging"),
    "persona": ("motivation", "goals", "pain", "channels", "persona", "career"),
    "general": ("candidate", "talent", "hiring", "recruitment", "sourcing", "pipeline"),
}


@dataclass(frozen=True)
class WritingContext:
    tolerate_ai_phrases: bool
    tolerate_formal_language: bool
    expected_structure: str


GAME_WRITING_CONTEXTS: Dict[str, WritingContext] = {
    "boolean": WritingContext(False, False, "code-like"),
    "xray": WritingContext(False, False, "code-like"),
    "outreach": WritingContext(True, True, "structured"),
    "job-description": WritingContext(True, True, "template-like"),
    "screening": WritingContext(True, True, "structured"),
    "negotiation": WritingContext(True, True, "freeform"),
    "diversity": WritingContext(True, True, "structured"),
    "persona": WritingContext(False, False, "freeform"),
    "ats": WritingContext(True, True, "structured"),
    "linkedin": WritingContext(True, True, "structured"),
    "talent-intelligence": WritingContext(True, True, "structured"),
    "ai-prompting": WritingContext(True, True, "freeform"),
}

_LOW_EFFORT_PLACEHOLDERS = ("[insert", "[add", "[your", "<your", "<insert", "lorem ipsum", "xxx", "placeholder")
_INCOMPLETE = [
    re.compile(r"\b(?:todo|tbd)\b", re.I),
    re.compile(r"\(to be completed\)", re.I),
    re.compile(r"\bwill add (?:more )?later\b", re.I),
    re.compile(r"\.\.\.\s*$"),
]
_REPEATED_CHARS = re.compile(r"(.)\1{5,}")
_FORMALITY = [
    re.compile(r"\b(?:therefore|thus|hence|consequently|accordingly)\b", re.I),
    re.compile(r"\b(?:shall|ought|must|hereby)\b", re.I),
    re.compile(r"\b(?:aforementioned|hereunder|therein|whereby)\b", re.I),
]
_TOKEN = re.compile(r"[a-z0-9']+")


@dataclass
class GamingAnalysis:
    risk_score: int
    risk_level: str
    penalty: int
    action: str
    detector_scores: Dict[str, int]
    flags: List[str] = field(default_factory=list)
    context_adjustments: List[str] = field(default_factory=list)


@dataclass
class StyleProfile:
    samples: int
    ai_baseline: float
    avg_sentence_length: float


def _tokens(text: str) -> List[str]:
    return _TOKEN.findall(text.lower())


def ngrams(text: str, n: int = 3) -> Set[Tuple[str, ...]]:
    tokens = _tokens(text)
    return {tuple(tokens[i:i + n]) for i in range(len(tokens) - n + 1)}


def jaccard(a: Set, b: Set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def overlap(a: Set, b: Set) -> float:
    """Share of ``a`` that also appears in ``b``."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a)


def risk_level_for(score: int, thresholds: GamingThresholds = DEFAULT_ANTI_GAMING_CONFIG.thresholds) -> str:
    if score >= thresholds.critical:
        return "critical"
    if score >= thresholds.high:
        return "high"
    if score >= thresholds.medium:
        return "medium"
    if score >= thresholds.low:
        return "low"
    return "none"


_ACTIONS = {"none": "allow", "low": "warn", "medium": "penalize", "high": "flag_review", "critical": "reject"}


class AntiGamingDetector:
    def __init__(self, config: AntiGamingConfig = DEFAULT_ANTI_GAMING_CONFIG):
        self.config = config
        self._weights = dict(config.weights)
        self._penalties = dict(config.penalties)

    # ------------------------------------------------------------------
    def keyword_stuffing_score(self, text: str, skill_category: str) -> int:
        cfg = self.config
        tokens = _tokens(text)
        if len(tokens) < 5:
            return 0
        keywords = set(SKILL_KEYWORDS.get(skill_category, SKILL_KEYWORDS["general"]))
        counts: Dict[str, int] = {}
        for token in tokens:
            if token in keywords:
                counts[token] = counts.get(token, 0) + 1
        density = sum(counts.values()) / len(tokens)
        score = 0.0
        if density > cfg.keyword_density_floor:
            score = (density - cfg.keyword_density_floor) * cfg.keyword_density_scale
        if counts and max(counts.values()) >= cfg.keyword_repeat_limit:
            score += cfg.keyword_repeat_bonus
        return clamp_score(score)

    def template_score(self, text: str, templates: Iterable[str]) -> int:
        grams = ngrams(text, self.config.ngram_size)
        best = max((overlap(grams, ngrams(t, self.config.ngram_size)) for t in templates if t), default=0.0)
        if best < self.config.template_overlap_floor:
            return 0
        return clamp_score(best * 100)

    def ai_phrase_score(self, text: str) -> float:
        lowered = text.lower()
        total = sum(weight for phrase, weight in AI_PHRASES if phrase in lowered)
        return min(self.config.ai_phrase_cap, total * self.config.ai_phrase_scale)

    def uniform_sentences(self, text: str) -> bool:
        lengths = [word_count(s) for s in split_sentences(text) if word_count(s) > 5]
        if len(lengths) < self.config.uniform_min_sentences:
            return False
        avg = mean(lengths)
        if avg == 0:
            return False
        return population_std(lengths) / avg < self.config.uniform_cv

    def formality_rate(self, text: str) -> float:
        words = word_count(text)
        if not words:
            return 0.0
        hits = sum(len(p.findall(text)) for p in _FORMALITY)
        return hits / words * 100

    def ai_generated_score(self, text: str, include_formality: bool = True) -> int:
        score = self.ai_phrase_score(text)
        if self.uniform_sentences(text):
            score += self.config.uniform_bonus
        if include_formality and self.formality_rate(text) > self.config.formality_per_100_words:
            score += self.config.formality_bonus
        return clamp_score(score)

    def copy_paste_score(self, text: str, example_solution: Optional[str], example_similarity: Optional[float]) -> Tuple[int, float]:
        similarity = 0.0
        if example_solution:
            similarity = overlap(ngrams(text, self.config.ngram_size), ngrams(example_solution, self.config.ngram_size))
        if example_similarity is not None:
            similarity = max(similarity, example_similarity)
        if similarity < self.config.template_overlap_floor:
            return 0, similarity
        return clamp_score(similarity * 100), similarity

    def low_effort_score(self, text: str) -> int:
        lowered = text.lower()
        score = 0
        score += min(80, 40 * sum(1 for p in _LOW_EFFORT_PLACEHOLDERS if p in lowered))
        if any(p.search(text) for p in _INCOMPLETE):
            score += 30
        if word_count(text) < 10:
            score += 40
        if _REPEATED_CHARS.search(text):
            score += 20
        return clamp_score(score)

    def pattern_gaming_score(self, text: str, previous_submissions: Sequence[str]) -> int:
        grams = ngrams(text, self.config.ngram_size)
        best = max((jaccard(grams, ngrams(p, self.config.ngram_size)) for p in previous_submissions if p), default=0.0)
        if best < self.config.pattern_jaccard_floor:
            return 0
        return clamp_score(best * 100)

    # ------------------------------------------------------------------
    def build_style_profile(self, history: Sequence[str]) -> Optional[StyleProfile]:
        samples = list(history)[: self.config.style_history_limit]
        if len(samples) < self.config.style_min_samples:
            return None
        ai_scores = [self.ai_generated_score(s, include_formality=False) for s in samples]
        sentence_lengths = [word_count(s) / max(1, len(split_sentences(s))) for s in samples]
        return StyleProfile(len(samples), mean(ai_scores), mean(sentence_lengths))

    def combine(self, scores: Dict[str, int]) -> int:
        active = {name: score for name, score in scores.items() if score > 0}
        if not active:
            return 0
        total_weight = sum(self._weights[name] for name in active)
        weighted = sum(score * self._weights[name] for name, score in active.items()) / total_weight
        return clamp_score(weighted * self.config.weighted_share + max(active.values()) * self.config.max_share)

    def analyze(
        self,
        text: str,
        skill_category: str,
        *,
        example_solution: Optional[str] = None,
        example_similarity: Optional[float] = None,
        templates: Sequence[str] = (),
        previous_submissions: Sequence[str] = (),
        style_history: Sequence[str] = (),
    ) -> GamingAnalysis:
        cfg = self.config
        context = GAME_WRITING_CONTEXTS.get(skill_category)
        adjustments: List[str] = []

        keyword = self.keyword_stuffing_score(text, skill_category)
        if context and context.expected_structure == "code-like" and keyword:
            reduced = clamp_score(keyword * cfg.code_like_keyword_multiplier)
            adjustments.append(f"Search strings are keyword-dense by nature; keyword score {keyword} -> {reduced}.")
            keyword = reduced

        template_sources = list(templates)
        template = self.template_score(text, template_sources)
        if context and context.expected_structure == "template-like" and template:
            reduced = clamp_score(template * cfg.template_tolerance_multiplier)
            adjustments.append(f"Templated structure is normal for {skill_category} writing; template score {template} -> {reduced}.")
            template = reduced

        include_formality = not (context and context.tolerate_formal_language)
        ai = self.ai_generated_score(text, include_formality=include_formality)
        if context and context.tolerate_ai_phrases and ai:
            reduced = clamp_score(ai * cfg.ai_tolerance_multiplier)
            adjustments.append(f"Polished phrasing is expected in {skill_category} writing; AI-style score {ai} -> {reduced}.")
            ai = reduced

        profile = self.build_style_profile(style_history)
        if profile is not None and ai:
            deviation = ai - profile.ai_baseline
            if deviation <= cfg.style_consistency_margin:
                reduced = clamp_score(ai * cfg.style_consistency_multiplier)
                adjustments.append(
                    f"Consistent with your established writing style across {profile.samples} answers; AI-style score {ai} -> {reduced}."
                )
                ai = reduced
            elif deviation > cfg.style_deviation_threshold:
                bonus = min(cfg.style_deviation_max_bonus, round_half_up(deviation - cfg.style_deviation_threshold))
                raised = clamp_score(ai + bonus)
                adjustments.append(f"Unusual deviation from your usual writing style; AI-style score {ai} -> {raised}.")
                ai = raised

        copy, example_overlap = self.copy_paste_score(text, example_solution, example_similarity)
        scores = {
            "keyword_stuffing": keyword,
            "template_match": template,
            "ai_generated": ai,
            "copy_paste": copy,
            "low_effort": self.low_effort_score(text),
            "pattern_gaming": self.pattern_gaming_score(text, previous_submissions),
        }

        risk_score = self.combine(scores)
        level = risk_level_for(risk_score, cfg.thresholds)
        action = _ACTIONS[level]
        if example_overlap >= cfg.reject_example_similarity:
            level = "critical"
            action = "reject"
        flags = [name for name, score in scores.items() if score >= cfg.flag_threshold]

        return GamingAnalysis(
            risk_score=risk_score,
            risk_level=level,
            penalty=self._penalties[level],
            action=action,
            detector_scores=scores,
            flags=flags,
            context_adjustments=adjustments,
        )


def format_gaming_feedback(analysis: GamingAnalysis) -> str:
    if analysis.risk_level not in ("medium", "high", "critical"):
        return ""
    flags = ", ".join(f.replace("_", " ") for f in analysis.flags) or "unusual patterns"
    if analysis.risk_level == "critical":
        body = (
            f"<p><strong>Integrity Alert:</strong> This submission shows strong signs of gaming ({html.escape(flags)}). "
            f"A {analysis.penalty}-point penalty was applied and it has been flagged for review.</p>"
        )
    elif analysis.risk_level == "high":
        body = (
            f"<p><strong>Submission Warning:</strong> We detected {html.escape(flags)}. "
            f"A {analysis.penalty}-point penalty was applied. Write your answer in your own words.</p>"
        )
    else:
        body = (
            f"<p><strong>Originality Note:</strong> Parts of this answer look generic ({html.escape(flags)}). "
            f"A {analysis.penalty}-point penalty was applied.</p>"
        )
    return f'<div class="gaming-warning {analysis.risk_level}">{body}</div>'


def format_context_adjustments(analysis: GamingAnalysis) -> str:
    if not analysis.context_adjustments:
        return ""
    items = "".join(f"<li>{html.escape(a)}</li>" for a in analysis.context_adjustments)
    return f"<details><summary>Context adjustments</summary><ul>{items}</ul></details>"
