"""Rule-based validators that produce a baseline score without any external call.

Each validator returns a :class:`ValidationResult` with a 0-100 score, named
boolean checks, feedback strings and strengths. Dispatch happens on the
challenge's ``validation.type`` (falling back to its skill category).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from catalog import Challenge, ValidationRules
from engines.base import clamp_score, split_sentences, word_count


@dataclass
class ValidationResult:
    score: int
    checks: Dict[str, bool] = field(default_factory=dict)
    feedback: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    validator: str = "general"


@dataclass(frozen=True)
class BooleanPenalties:
    ambiguous_precedence: int = 15
    no_operators: int = 20
    no_proximity: int = 5
    overly_complex: int = 10
    missing_location_required: int = 10
    missing_location: int = 5
    missing_keyword_strict: int = 10
    missing_keyword: int = 5
    missing_site: int = 15
    max_operators: int = 12


@dataclass(frozen=True)
class OutreachPenalties:
    min_words: int = 10
    too_short: int = 40
    too_long: int = 10
    cliche_severe: int = 8
    cliche_moderate: int = 5
    cliche_mild: int = 3
    cliche_recruiting: int = 7
    generic_template: int = 10
    shallow_personalization: int = 10
    no_personalization: int = 15
    no_call_to_action: int = 12
    no_subject: int = 8
    weak_subject: int = 8
    no_value_prop: int = 5
    min_subject_chars: int = 8


@dataclass(frozen=True)
class GeneralPenalties:
    below_min_cap: int = 25
    below_recommended: int = 15
    too_few_sentences: int = 20
    missing_keyword: int = 5
    missing_keyword_cap: int = 20
    short_of_char_floor: int = 5


@dataclass(frozen=True)
class CultureAddPenalties:
    min_words: int = 60
    too_short: int = 60
    no_structure: int = 15
    no_risk: int = 25
    no_value: int = 20
    no_candidate_focus: int = 10


DEFAULT_BOOLEAN_PENALTIES = BooleanPenalties()
DEFAULT_OUTREACH_PENALTIES = OutreachPenalties()
DEFAULT_GENERAL_PENALTIES = GeneralPenalties()
DEFAULT_CULTURE_ADD_PENALTIES = CultureAddPenalties()

OUTREACH_WEIGHT = 0.4
CANDIDATE_EXPERIENCE_WEIGHT = 0.6
DATA_DRIVEN_WEIGHT = 0.4

FALLBACK_FEEDBACK = "Automated checks passed; AI will handle nuanced scoring."

# ---------------------------------------------------------------------------
# Pattern tables
# ---------------------------------------------------------------------------

_AND = re.compile(r"\bAND\b")
_OR = re.compile(r"\bOR\b")
_NOT = re.compile(r"\bNOT\b|(?:^|\s)-[\w\"(]")
_OPERATOR = re.compile(r"\b(?:AND|OR|NOT|NEAR|AROUND)\b")
_PROXIMITY = [
    re.compile(r"\b(?:NEAR|AROUND)\b(?:/\d+|\(\d+\))?"),
    re.compile(r"\"[^\"]{10,80}\""),
    re.compile(r"\bw/\d+\b", re.I),
    re.compile(r"\w\*"),
    re.compile(r"\bNEAR:\d+\b"),
]
_SITE = re.compile(r"\bsite:\S+", re.I)

_PERSONALIZATION = {
    "deep": [
        re.compile(r"\b(?:i|we)\s+(?:saw|read|watched|noticed|enjoyed|loved)\s+your\b", re.I),
        re.compile(r"\byour\s+(?:recent\s+)?(?:talk|article|post|paper|project|repo|repository|keynote|podcast)\b", re.I),
        re.compile(r"\bcongrat(?:s|ulations)\s+on\b", re.I),
    ],
    "medium": [
        re.compile(r"\byour\s+(?:experience|background|work|role|time)\s+(?:at|with|in|on)\b", re.I),
        re.compile(r"\bat\s+[A-Z][\w&]+\s+you\b"),
    ],
    "shallow": [
        re.compile(r"\byour\s+profile\b", re.I),
        re.compile(r"\bcame\s+across\s+you\b", re.I),
        re.compile(r"\byour\s+(?:skills|resume|cv)\b", re.I),
    ],
}

_CLICHES = {
    "severe": ("rockstar", "ninja", "guru", "unicorn", "superstar"),
    "moderate": ("synergy", "fast-paced", "work hard play hard", "dynamic environment", "self-starter"),
    "mild": ("exciting opportunity", "passionate", "game-changer", "cutting-edge"),
    "recruiting": ("i came across your profile", "perfect fit", "urgent requirement", "dream job", "immediate joiner"),
}

_GENERIC_TEMPLATES = [
    re.compile(r"\bdear\s+(?:sir|madam|candidate|applicant)\b", re.I),
    re.compile(r"\bto\s+whom\s+it\s+may\s+concern\b", re.I),
    re.compile(r"\[(?:name|first name|company|candidate)\]", re.I),
    re.compile(r"\{\{?\s*(?:name|first_name|company)\s*\}?\}", re.I),
]

_SUBJECT = re.compile(r"^\s*subject\s*:\s*(.*)$", re.I | re.M)
_GENERIC_SUBJECT = re.compile(r"^(?:job opportunity|opportunity|hello|hi|hiring|new role|job)\W*$", re.I)
_CTA = re.compile(
    r"\b(?:call|chat|connect|meet|schedule|available|interested|reply|let me know|"
    r"would you be open|open to|coffee|book a time|grab \d+ minutes?)\b",
    re.I,
)
_VALUE_PROP = re.compile(r"\b(?:you(?:'ll| will)|growth|impact|learn|ownership|team|mission|remote|equity)\b", re.I)
_TRANSPARENCY = re.compile(r"\b(?:salary|compensation|range|process|next steps|interview loop)\b", re.I)
_TIME_RESPECT = re.compile(r"\b(?:\d+[- ]?min(?:ute)?s?|quick|brief|no pressure)\b", re.I)
_PRESSURE = re.compile(r"\b(?:asap|urgent(?:ly)?|immediately|limited time|today only)\b", re.I)

_STRUCTURE = re.compile(r"(?:^\s*(?:[-*•]|\d+[.)])\s+)", re.M)
_RISK = re.compile(r"\b(?:risk|concern|mitigat\w*|trade-?offs?|downside|bias)\b", re.I)
_VALUE = re.compile(r"\b(?:value|bring|add|perspective|strength|contribut\w*)\b", re.I)
_CANDIDATE = re.compile(r"\b(?:candidate|they|their|person|applicant)\b", re.I)

_NUMBERS = re.compile(r"\b\d+(?:\.\d+)?\s*%?")
_DATA_TERMS = re.compile(r"\b(?:data|metric|metrics|percent|benchmark|market|survey|analytics|baseline|kpi|rate)\b", re.I)


def _contains(text: str, needle: str) -> bool:
    return needle.lower() in text.lower()


def ensure_feedback(result: ValidationResult) -> ValidationResult:
    if not result.feedback:
        result.feedback.append(FALLBACK_FEEDBACK)
    return result


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_boolean(text: str, rules: ValidationRules, penalties: BooleanPenalties = DEFAULT_BOOLEAN_PENALTIES) -> ValidationResult:
    score = 100
    feedback: List[str] = []
    strengths: List[str] = []

    has_and = bool(_AND.search(text))
    has_or = bool(_OR.search(text))
    operator_count = len(_OPERATOR.findall(text))
    checks = {
        "hasParentheses": "(" in text and ")" in text,
        "hasAND": has_and,
        "hasOR": has_or,
        "hasNot": bool(_NOT.search(text)),
        "hasProximity": any(p.search(text) for p in _PROXIMITY),
        "isOverlyComplex": operator_count > penalties.max_operators,
    }

    if has_and and has_or and not checks["hasParentheses"]:
        score -= penalties.ambiguous_precedence
        feedback.append("Mixing AND and OR without parentheses makes operator precedence ambiguous.")
    elif checks["hasParentheses"]:
        strengths.append("Groups alternatives with parentheses.")

    if not (has_and or has_or or checks["hasNot"]):
        score -= penalties.no_operators
        feedback.append("No Boolean operators found; combine terms with AND, OR and NOT.")
    else:
        strengths.append("Uses Boolean operators to combine terms.")

    if not checks["hasProximity"]:
        score -= penalties.no_proximity
        feedback.append("Consider exact phrases or proximity operators to tighten matches.")

    if checks["isOverlyComplex"]:
        score -= penalties.overly_complex
        feedback.append(f"The string uses {operator_count} operators; simplify it so search engines do not truncate it.")

    if checks["hasNot"]:
        strengths.append("Excludes noise with NOT.")

    if rules.location:
        checks["hasLocation"] = _contains(text, rules.location)
        if not checks["hasLocation"]:
            score -= penalties.missing_location_required if rules.require_location else penalties.missing_location
            feedback.append(f"Add the target location ({rules.location}).")

    missing = [k for k in rules.keywords if not _contains(text, k)]
    checks["hasKeywords"] = not missing
    for keyword in missing:
        score -= penalties.missing_keyword_strict if rules.strict_keywords else penalties.missing_keyword
    if missing:
        feedback.append("Missing key terms: " + ", ".join(missing) + ".")
    elif rules.keywords:
        strengths.append("Covers all required keywords.")

    return ValidationResult(clamp_score(score), checks, feedback, strengths, "boolean")


def validate_xray(text: str, rules: ValidationRules, penalties: BooleanPenalties = DEFAULT_BOOLEAN_PENALTIES) -> ValidationResult:
    result = validate_boolean(text, rules, penalties)
    result.checks["hasSiteOperator"] = bool(_SITE.search(text))
    if not result.checks["hasSiteOperator"]:
        result.score = clamp_score(result.score - penalties.missing_site)
        result.feedback.append("X-Ray searches need a site: operator to target the platform.")
    else:
        result.strengths.append("Targets the platform with a site: operator.")
    result.validator = "xray"
    return result


def personalization_level(text: str) -> str:
    for level in ("deep", "medium", "shallow"):
        if any(p.search(text) for p in _PERSONALIZATION[level]):
            return level
    return "none"


def validate_outreach(text: str, rules: ValidationRules, penalties: OutreachPenalties = DEFAULT_OUTREACH_PENALTIES) -> ValidationResult:
    score = 100
    feedback: List[str] = []
    strengths: List[str] = []
    words = word_count(text)
    lowered = text.lower()

    subject_match = _SUBJECT.search(text)
    subject = subject_match.group(1).strip() if subject_match else ""
    checks = {
        "lengthOK": penalties.min_words <= words <= rules.max_words,
        "hasSubjectLine": bool(subject_match),
        "hasCallToAction": bool(_CTA.search(text)),
    }

    if words < penalties.min_words:
        score -= penalties.too_short
        feedback.append("The message is too short to make a real connection.")
    elif words > rules.max_words:
        score -= penalties.too_long
        feedback.append(f"Keep first-touch messages under {rules.max_words} words ({words} now).")
    else:
        strengths.append("Message length suits a first touch.")

    level = personalization_level(text)
    checks["personalized"] = level in ("deep", "medium")
    if level == "deep":
        strengths.append("Deep personalization referencing the candidate's own work.")
    elif level == "medium":
        strengths.append("References the candidate's background.")
    elif level == "shallow":
        score -= penalties.shallow_personalization
        feedback.append("Personalization is shallow; reference something specific the candidate did.")
    else:
        score -= penalties.no_personalization
        feedback.append("No personalization found; mention the candidate's work or background.")

    cliche_penalties = {
        "severe": penalties.cliche_severe,
        "moderate": penalties.cliche_moderate,
        "mild": penalties.cliche_mild,
        "recruiting": penalties.cliche_recruiting,
    }
    found: List[str] = []
    for tier, phrases in _CLICHES.items():
        for phrase in phrases:
            if phrase in lowered:
                score -= cliche_penalties[tier]
                found.append(phrase)
    checks["clicheFree"] = not found
    if found:
        feedback.append("Avoid clichés: " + ", ".join(f'"{p}"' for p in found) + ".")

    if any(p.search(text) for p in _GENERIC_TEMPLATES):
        score -= penalties.generic_template
        checks["genericTemplate"] = True
        feedback.append("Reads like a generic template; drop placeholder greetings.")

    if not checks["hasCallToAction"]:
        score -= penalties.no_call_to_action
        feedback.append("End with a clear, low-friction call to action.")
    else:
        strengths.append("Includes a clear call to action.")

    if rules.require_subject:
        if not subject_match:
            score -= penalties.no_subject
            feedback.append("Add a subject line.")
        elif len(subject) < penalties.min_subject_chars or _GENERIC_SUBJECT.match(subject):
            score -= penalties.weak_subject
            feedback.append("The subject line is generic; make it specific to the candidate.")

    checks["hasValueProp"] = bool(_VALUE_PROP.search(text))
    if not checks["hasValueProp"]:
        score -= penalties.no_value_prop
        feedback.append("Say what is in it for the candidate.")

    return ValidationResult(clamp_score(score), checks, feedback, strengths, "outreach")


def score_candidate_experience(text: str) -> int:
    score = 60
    if _TRANSPARENCY.search(text):
        score += 10
    if _TIME_RESPECT.search(text):
        score += 10
    if personalization_level(text) in ("deep", "medium"):
        score += 10
    if _CTA.search(text):
        score += 10
    if _PRESSURE.search(text):
        score -= 10
    return clamp_score(score)


def validate_outreach_with_experience(text: str, rules: ValidationRules) -> ValidationResult:
    result = validate_outreach(text, rules)
    experience = score_candidate_experience(text)
    result.checks["candidateExperience"] = experience >= 70
    result.score = clamp_score(experience * CANDIDATE_EXPERIENCE_WEIGHT + result.score * OUTREACH_WEIGHT)
    return result


def validate_general(text: str, rules: ValidationRules, penalties: GeneralPenalties = DEFAULT_GENERAL_PENALTIES) -> ValidationResult:
    score = 100
    feedback: List[str] = []
    strengths: List[str] = []
    words = word_count(text)
    sentences = split_sentences(text)
    recommended = max(45, rules.min_words + 5)

    checks = {
        "lengthOK": words >= rules.min_words,
        "hasStructure": bool(_STRUCTURE.search(text)) or len(sentences) >= rules.min_sentences,
        "meetsCharFloor": len(text.strip()) >= rules.min_chars,
    }

    if words < rules.min_words:
        feedback.append(f"Answer is too brief ({words} words); aim for at least {rules.min_words}.")
    elif words < recommended:
        score -= penalties.below_recommended
        feedback.append(f"Expand your answer to around {recommended} words for full credit.")
    else:
        strengths.append("Answer is well developed.")

    if len(sentences) < rules.min_sentences:
        score -= penalties.too_few_sentences
        feedback.append("Use complete sentences to explain your reasoning.")

    if not checks["meetsCharFloor"]:
        score -= penalties.short_of_char_floor

    missing = [k for k in rules.keywords if not _contains(text, k)]
    if rules.keywords:
        checks["hasKeywords"] = not missing
        if missing:
            score -= min(penalties.missing_keyword_cap, penalties.missing_keyword * len(missing))
            feedback.append("Consider covering: " + ", ".join(missing) + ".")
        else:
            strengths.append("Covers the key topics.")

    if checks["hasStructure"] and _STRUCTURE.search(text):
        strengths.append("Clear structure with lists.")

    if words < rules.min_words:
        score = min(score, penalties.below_min_cap)

    return ValidationResult(clamp_score(score), checks, feedback, strengths, "general")


def validate_culture_add(text: str, rules: ValidationRules, penalties: CultureAddPenalties = DEFAULT_CULTURE_ADD_PENALTIES) -> ValidationResult:
    score = 100
    feedback: List[str] = []
    strengths: List[str] = []
    words = word_count(text)
    checks = {
        "lengthOK": words >= penalties.min_words,
        "hasStructure": bool(_STRUCTURE.search(text)) or len(split_sentences(text)) >= 3,
        "addressesRisk": bool(_RISK.search(text)),
        "describesValue": bool(_VALUE.search(text)),
        "candidateFocused": bool(_CANDIDATE.search(text)),
    }
    if not checks["lengthOK"]:
        score -= penalties.too_short
        feedback.append(f"Explain your approach in at least {penalties.min_words} words.")
    if not checks["hasStructure"]:
        score -= penalties.no_structure
        feedback.append("Structure the assessment into clear steps.")
    if not checks["addressesRisk"]:
        score -= penalties.no_risk
        feedback.append("Discuss the risks or biases of the approach.")
    else:
        strengths.append("Acknowledges risks and trade-offs.")
    if not checks["describesValue"]:
        score -= penalties.no_value
        feedback.append("Describe what new value the candidate could add.")
    if not checks["candidateFocused"]:
        score -= penalties.no_candidate_focus
        feedback.append("Keep the candidate at the centre of the assessment.")
    return ValidationResult(clamp_score(score), checks, feedback, strengths, "culture_add")


def score_data_driven(text: str) -> int:
    score = 40
    if _NUMBERS.search(text):
        score += 30
    terms = len(_DATA_TERMS.findall(text))
    if terms >= 2:
        score += 30
    elif terms == 1:
        score += 15
    return clamp_score(score)


def validate_data_driven(text: str, rules: ValidationRules) -> ValidationResult:
    result = validate_general(text, rules)
    data_score = score_data_driven(text)
    result.checks["dataDriven"] = data_score >= 70
    if not result.checks["dataDriven"]:
        result.feedback.append("Back the plan with concrete numbers or market data.")
    else:
        result.strengths.append("Grounded in data.")
    result.score = clamp_score(result.score * (1 - DATA_DRIVEN_WEIGHT) + data_score * DATA_DRIVEN_WEIGHT)
    return result


Validator = Callable[[str, ValidationRules], ValidationResult]

VALIDATORS: Dict[str, Validator] = {
    "boolean": validate_boolean,
    "xray": validate_xray,
    "outreach": validate_outreach_with_experience,
    "general": validate_general,
    "culture_add": validate_culture_add,
    "ats": validate_data_driven,
    "diversity": validate_data_driven,
    "persona": validate_data_driven,
}


def validate_answer(text: Optional[str], challenge: Challenge) -> ValidationResult:
    """Run the validator registered for the challenge.

    Non-string or empty input scores 0 with an explanatory message.
    """
    if not isinstance(text, str) or not text.strip():
        return ValidationResult(0, {"validInput": False}, ["No answer text was provided."], [], "none")
    rules = challenge.validation
    validator = VALIDATORS.get(rules.type) or VALIDATORS.get(challenge.skill_category) or validate_general
    return ensure_feedback(validator(text, rules))


def technical_checks(result: ValidationResult) -> Sequence[str]:
    return [f"{name}: {'pass' if ok else 'fail'}" for name, ok in result.checks.items()]
