"""Outbound text checks: forbidden phrases and LLM polish guardrails."""

import re
from typing import List, Optional

from app.logging_config import get_logger

logger = get_logger("reply_engine.validation")

FORBIDDEN_PHRASES = (
    "approval guaranteed",
    "we guarantee",
    "guaranteed",
    "guarantee",
    "100%",
    "inside contact",
    "government connection",
    "no risk",
    "definitely",
    "certainly approved",
    "assured approval",
)

META_PHRASES = (
    "as an ai",
    "language model",
    "system prompt",
    "i cannot browse",
    "i'm an assistant",
    "i am an assistant",
    "as a chatbot",
)

MAX_REPLY_LENGTH = 1000
MAX_QUESTIONS = 1
SANITIZED_MARKER = "[removed]"

_NUMBER_RE = re.compile(r"\d[\d,.]*")


def _phrase_pattern(phrase: str) -> re.Pattern:
    prefix = r"(?<!\w)" if phrase[0].isalnum() else ""
    suffix = r"(?!\w)" if phrase[-1].isalnum() else ""
    return re.compile(prefix + re.escape(phrase) + suffix, re.IGNORECASE)


_FORBIDDEN_PATTERNS = [(phrase, _phrase_pattern(phrase)) for phrase in FORBIDDEN_PHRASES]


def find_forbidden_phrases(text: str) -> List[str]:
    if not text:
        return []
    return [phrase for phrase, pattern in _FORBIDDEN_PATTERNS if pattern.search(text)]


def contains_forbidden_phrase(text: str) -> bool:
    return bool(find_forbidden_phrases(text))


def sanitize(text: str) -> str:
    """Replace every forbidden phrase with a neutral marker."""
    for _, pattern in _FORBIDDEN_PATTERNS:
        text = pattern.sub(SANITIZED_MARKER, text)
    return text


def count_questions(text: str) -> int:
    return text.count("?") + text.count("؟")


def _numbers(text: str) -> set:
    return {match.rstrip(".,") for match in _NUMBER_RE.findall(text)}


def polish_violations(template_text: str, polished: Optional[str]) -> List[str]:
    """Reasons a polished reply must be rejected in favour of the template text."""
    if not polished or not polished.strip():
        return ["empty"]

    violations = []
    lower = polished.lower()

    if find_forbidden_phrases(polished):
        violations.append("forbidden_phrase")
    if len(polished) > MAX_REPLY_LENGTH:
        violations.append("too_long")

    questions = count_questions(polished)
    if questions > MAX_QUESTIONS or questions > count_questions(template_text):
        violations.append("too_many_questions")

    if any(phrase in lower for phrase in META_PHRASES):
        violations.append("meta_wording")

    # Prices, counts and dates in the template must survive, and no new ones may appear.
    if _numbers(polished) != _numbers(template_text):
        violations.append("numbers_changed")

    return violations


def enforce_forbidden_phrases(text: str, template_key: Optional[str] = None) -> str:
    """Last check before text leaves the engine, whichever path produced it."""
    found = find_forbidden_phrases(text)
    if not found:
        return text
    logger.error(
        "Forbidden phrase in outbound reply, sanitizing",
        extra={"context": {"template_key": template_key, "phrases": found}},
    )
    return sanitize(text)
