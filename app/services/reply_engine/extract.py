"""Deterministic field extraction from inbound text.

Keyword dictionaries and regular expressions only: the same text always gives
the same fields. Callers pass the new message followed by earlier inbound
messages, one message per line, so that details mentioned before the service
was known are still found.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional

from app.services.reply_engine.fsm import validate_collected_value
from app.services.reply_engine.types import ExtractedFields, ServiceKey

_SP = r"[^\S\n]*"
_SP1 = r"[^\S\n]+"

NUMBER_WORDS = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}
_NUMBER = r"(\d{1,2}|" + "|".join(NUMBER_WORDS) + r")"


@dataclass(frozen=True)
class ServiceSynonym:
    service: ServiceKey
    keywords: tuple[str, ...]
    synonyms: tuple[str, ...] = ()
    misspellings: tuple[str, ...] = ()
    translations: tuple[str, ...] = ()


# Order matters: equal scores resolve to the earlier entry.
SERVICE_SYNONYMS: tuple[ServiceSynonym, ...] = (
    ServiceSynonym(
        ServiceKey.FAMILY_VISA,
        keywords=("family visa", "family", "wife", "husband", "child", "children", "dependent", "dependents", "spouse"),
        synonyms=("family residence visa", "family permit", "family sponsorship", "dependent visa", "spouse visa"),
        misspellings=("famili visa", "family viza", "famly visa"),
        translations=("تأشيرة عائلية", "عائلة", "زوجة", "زوج", "أطفال"),
    ),
    ServiceSynonym(
        ServiceKey.GOLDEN_VISA,
        keywords=("golden visa", "golden", "10 year visa", "10-year visa", "long term visa"),
        synonyms=("gold visa", "golden residence", "long-term residence", "permanent visa"),
        misspellings=("golden viza", "golden vis"),
        translations=("تأشيرة ذهبية", "إقامة ذهبية"),
    ),
    ServiceSynonym(
        ServiceKey.FREELANCE_VISA,
        keywords=("freelance visa", "freelance", "freelancer", "freelancing"),
        synonyms=("freelance permit", "freelancer permit", "freelance residence", "self-employed visa", "self employed visa"),
        misspellings=("freelance viza", "freelance vis", "frelance visa", "freelanse"),
        translations=("تأشيرة عمل حر", "عمل حر"),
    ),
    ServiceSynonym(
        ServiceKey.EMPLOYMENT_VISA,
        keywords=("employment visa", "work visa", "work permit", "job visa"),
        synonyms=("employee visa", "worker visa", "work residence", "employment permit", "labor visa", "labour visa"),
        misspellings=("employment viza", "work viza", "employement visa"),
        translations=("تأشيرة عمل", "تصريح عمل"),
    ),
    ServiceSynonym(
        ServiceKey.VISIT_VISA,
        keywords=("visit visa", "tourist visa", "tourist", "visitor visa"),
        synonyms=("visitor permit", "tourist permit", "short stay visa", "entry visa"),
        misspellings=("visit viza", "tourist viza", "visitor viza"),
        translations=("تأشيرة زيارة", "تأشيرة سياحية"),
    ),
    ServiceSynonym(
        ServiceKey.BUSINESS_SETUP,
        keywords=(
            "business setup",
            "business license",
            "company setup",
            "trade license",
            "mainland",
            "freezone",
            "free zone",
        ),
        synonyms=(
            "mainland business",
            "mainland company",
            "business registration",
            "company registration",
            "company formation",
            "commercial license",
            "new company",
            "open a company",
            "start a business",
            "offshore company",
        ),
        misspellings=("business set up", "bussiness setup", "bussiness license", "buisness setup", "free-zone"),
        translations=("ترخيص تجاري", "رخصة تجارية", "منطقة حرة", "تأسيس شركة"),
    ),
    ServiceSynonym(
        ServiceKey.PRO_SERVICES,
        keywords=("pro services", "typing center", "government services"),
        synonyms=("public relations officer", "typing services", "immigration services"),
        misspellings=("pro service",),
        translations=("خدمات برو", "خدمات حكومية"),
    ),
    ServiceSynonym(
        ServiceKey.VISA_RENEWAL,
        keywords=("visa renewal", "renew visa", "renew my visa", "renewal", "renew", "extend visa"),
        synonyms=("visa extension", "renew residence", "extend residence", "renew permit"),
        misspellings=("renewel", "renual"),
        translations=("تجديد", "تجديد تأشيرة"),
    ),
    ServiceSynonym(
        ServiceKey.EMIRATES_ID,
        keywords=("emirates id", "emirates id card", "id card"),
        synonyms=("uae id", "emirates identity", "id renewal"),
        translations=("هوية إماراتية", "هوية"),
    ),
)

_KEYWORD_SCORE = 10
_SYNONYM_SCORE = 7
_MISSPELLING_SCORE = 5
_TRANSLATION_SCORE = 7

# Demonyms and country names; values are the stored nationality.
NATIONALITIES = {
    "indian": "Indian",
    "india": "Indian",
    "pakistani": "Pakistani",
    "pakistan": "Pakistani",
    "bangladeshi": "Bangladeshi",
    "bangladesh": "Bangladeshi",
    "filipino": "Filipino",
    "filipina": "Filipino",
    "philippines": "Filipino",
    "egyptian": "Egyptian",
    "egypt": "Egyptian",
    "syrian": "Syrian",
    "syria": "Syrian",
    "lebanese": "Lebanese",
    "lebanon": "Lebanese",
    "jordanian": "Jordanian",
    "british": "British",
    "uk": "British",
    "american": "American",
    "usa": "American",
    "canadian": "Canadian",
    "canada": "Canadian",
    "australian": "Australian",
    "australia": "Australian",
    "chinese": "Chinese",
    "china": "Chinese",
    "japanese": "Japanese",
    "japan": "Japanese",
    "korean": "Korean",
    "russian": "Russian",
    "russia": "Russian",
    "turkish": "Turkish",
    "turkey": "Turkish",
    "iranian": "Iranian",
    "iran": "Iranian",
    "iraqi": "Iraqi",
    "iraq": "Iraqi",
    "sudanese": "Sudanese",
    "sudan": "Sudanese",
    "ethiopian": "Ethiopian",
    "ethiopia": "Ethiopian",
    "kenyan": "Kenyan",
    "kenya": "Kenyan",
    "nigerian": "Nigerian",
    "nigeria": "Nigerian",
    "south african": "South African",
    "south africa": "South African",
    "emirati": "Emirati",
    "saudi": "Saudi",
    "nepali": "Nepali",
    "nepalese": "Nepali",
    "nepal": "Nepali",
    "sri lankan": "Sri Lankan",
    "sri lanka": "Sri Lankan",
    "french": "French",
    "german": "German",
    "germany": "German",
    "italian": "Italian",
    "italy": "Italian",
    "spanish": "Spanish",
    "spain": "Spanish",
    "ukrainian": "Ukrainian",
    "ukraine": "Ukrainian",
    "moroccan": "Moroccan",
    "morocco": "Moroccan",
    "tunisian": "Tunisian",
    "algerian": "Algerian",
}

ACTIVITY_KEYWORDS = {
    "marketing": "Marketing",
    "digital marketing": "Digital marketing",
    "advertising": "Advertising",
    "it services": "IT services",
    "information technology": "IT services",
    "software": "Software development",
    "web development": "Software development",
    "consultancy": "Consultancy",
    "consulting": "Consultancy",
    "management consultancy": "Management consultancy",
    "general trading": "General trading",
    "trading": "Trading",
    "import export": "Import & export",
    "e-commerce": "E-commerce",
    "ecommerce": "E-commerce",
    "online store": "E-commerce",
    "accounting": "Accounting",
    "bookkeeping": "Accounting",
    "cleaning": "Cleaning services",
    "logistics": "Logistics",
    "construction": "Construction",
    "contracting": "Construction",
    "restaurant": "Restaurant",
    "cafe": "Cafe",
    "catering": "Catering",
    "real estate": "Real estate",
    "travel agency": "Travel & tourism",
    "tourism": "Travel & tourism",
    "beauty salon": "Beauty salon",
    "salon": "Beauty salon",
    "event management": "Event management",
    "photography": "Photography",
    "fitness": "Fitness",
    "media production": "Media production",
}

# Words that can never be part of a person's name in a bare-name line.
NON_NAME_WORDS = {
    "hi",
    "hello",
    "hey",
    "salam",
    "thanks",
    "thank",
    "please",
    "yes",
    "no",
    "ok",
    "okay",
    "good",
    "morning",
    "evening",
    "afternoon",
    "there",
    "team",
    "dear",
    "sir",
    "madam",
    "visa",
    "visas",
    "license",
    "licence",
    "business",
    "setup",
    "company",
    "service",
    "services",
    "mainland",
    "freezone",
    "free",
    "zone",
    "partner",
    "partners",
    "price",
    "cost",
    "quote",
    "need",
    "want",
    "interested",
    "dubai",
    "abu",
    "dhabi",
    "sharjah",
    "uae",
}

_NAME_INTRO_EXPLICIT = re.compile(
    r"\b(?:my name is|my name's|name is|name:|call me)" + _SP1 + r"([^\n]+)",
    re.IGNORECASE,
)
_NAME_INTRO_SELF = re.compile(r"\b(?:i am|i'm|this is)" + _SP1 + r"([^\n]+)", re.IGNORECASE)
_NAME_TOKEN = re.compile(r"^[A-Za-z][A-Za-z'’\-]*$")
_BARE_NAME_LINE = re.compile(r"^[A-Z][a-z'’\-]+(?:\s+[A-Z][a-z'’\-]+){1,4}$")
_NAME_STOP_TOKENS = {
    "and",
    "from",
    "i",
    "im",
    "i'm",
    "my",
    "the",
    "a",
    "an",
    "for",
    "with",
    "looking",
    "interested",
    "here",
    "calling",
    "want",
    "need",
    "in",
    "at",
    "of",
    "to",
}

_NATIONALITY_EXPLICIT = re.compile(r"\bnationality" + _SP + r"(?:is|:|-)?" + _SP + r"([A-Za-z][A-Za-z ]{1,30})", re.IGNORECASE)

_ACTIVITY_EXPLICIT = (
    re.compile(r"\bactivity" + _SP + r"(?:is|will be|:|-)" + _SP + r"([^\n.,!?]{3,99})", re.IGNORECASE),
    re.compile(r"\b(?:license|licence|company|business)" + _SP1 + r"for" + _SP1 + r"([^\n.,!?]{3,99})", re.IGNORECASE),
)

_JURISDICTION = re.compile(r"\b(main[\s-]?land|free[\s-]?zone)\b", re.IGNORECASE)

_PARTNER_WORD = r"(?:partners?|shareholders?|owners?)"
_PARTNERS_PATTERNS = (
    re.compile(r"\b" + _NUMBER + _SP1 + r"(?:business" + _SP1 + r")?" + _PARTNER_WORD + r"\b", re.IGNORECASE),
    re.compile(r"\b" + _PARTNER_WORD + _SP + r"(?:count" + _SP + r")?(?:is|are|:|-|=|will be)?" + _SP + _NUMBER + r"\b", re.IGNORECASE),
)
_SOLE_OWNER = re.compile(r"\b(?:just me|only me|by myself|sole owner|single owner|no partners?)\b", re.IGNORECASE)

_VISA_QUALIFIER = r"(?:(?:residence|residency|investor|employee|employment|staff|partner)" + _SP1 + r")?"
_VISAS_PATTERNS = (
    re.compile(r"\b" + _NUMBER + _SP1 + _VISA_QUALIFIER + r"visas?\b", re.IGNORECASE),
    re.compile(r"\bvisas?" + _SP + r"(?:count" + _SP + r")?(?:is|are|:|-|=|needed:?)?" + _SP + _NUMBER + r"\b", re.IGNORECASE),
)

_BUSINESS_CONTEXT = re.compile(
    r"\b(?:business|license|licence|company|mainland|free[\s-]?zone|partners?|shareholders?|trade)\b",
    re.IGNORECASE,
)

_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_RELATIVE_DATE_PATTERNS = (
    re.compile(r"\b(?:next|this|in)\s+(?:\d+\s+)?(?:month|week|year|day)s?\b", re.IGNORECASE),
    re.compile(r"\b(?:soon|tomorrow|today|end of (?:the )?(?:month|year))\b", re.IGNORECASE),
)
_DMY_NUMERIC = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b")
_YMD_NUMERIC = re.compile(r"\b(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})\b")
_DMY_TEXT = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(" + "|".join(_MONTHS) + r")[a-z]*\.?,?\s+(\d{4}|\d{2})\b",
    re.IGNORECASE,
)
_MDY_TEXT = re.compile(
    r"\b(" + "|".join(_MONTHS) + r")[a-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4}|\d{2})\b",
    re.IGNORECASE,
)


def _term_pattern(terms: Iterable[str]) -> re.Pattern:
    ordered = sorted(set(terms), key=lambda term: (-len(term), term))
    return re.compile(r"(?<!\w)(" + "|".join(re.escape(term) for term in ordered) + r")(?!\w)", re.IGNORECASE)


_NATIONALITY_PATTERN = _term_pattern(NATIONALITIES)
_ACTIVITY_PATTERN = _term_pattern(ACTIVITY_KEYWORDS)


def _contains_term(lower_text: str, term: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(term.lower()) + r"(?!\w)", lower_text) is not None


def _parse_number(token: str) -> int:
    token = token.lower()
    if token in NUMBER_WORDS:
        return NUMBER_WORDS[token]
    return int(token)


def _earliest_match(patterns: Iterable[re.Pattern], text: str) -> Optional[re.Match]:
    best = None
    for pattern in patterns:
        match = pattern.search(text)
        if match and (best is None or match.start() < best.start()):
            best = match
    return best


def score_services(text: str) -> dict[ServiceKey, int]:
    lower = text.lower()
    scores: dict[ServiceKey, int] = {}
    for entry in SERVICE_SYNONYMS:
        score = 0
        for terms, points in (
            (entry.keywords, _KEYWORD_SCORE),
            (entry.synonyms, _SYNONYM_SCORE),
            (entry.misspellings, _MISSPELLING_SCORE),
            (entry.translations, _TRANSLATION_SCORE),
        ):
            if any(_contains_term(lower, term) for term in terms):
                score += points
        if score > 0:
            scores[entry.service] = score
    return scores


def extract_service(text: str) -> Optional[ServiceKey]:
    if not text or not text.strip():
        return None
    scores = score_services(text)
    if not scores:
        return None
    best = max(scores.values())
    for entry in SERVICE_SYNONYMS:
        if scores.get(entry.service) == best:
            return entry.service
    return None


def extract_nationality(text: str) -> Optional[str]:
    explicit = _NATIONALITY_EXPLICIT.search(text)
    if explicit:
        candidate = explicit.group(1).strip().lower()
        for length in (2, 1):
            words = " ".join(candidate.split()[:length])
            if words in NATIONALITIES:
                return NATIONALITIES[words]
        first = candidate.split()[0] if candidate.split() else ""
        if first and first not in _NAME_STOP_TOKENS and first.isalpha():
            return first.capitalize()

    match = _NATIONALITY_PATTERN.search(text)
    if match:
        return NATIONALITIES[match.group(1).lower()]
    return None


def _name_from_tokens(raw: str, require_capitalized: bool) -> Optional[str]:
    tokens = []
    for token in raw.strip().split():
        token = token.strip(".,!?;:")
        if not token or not _NAME_TOKEN.match(token):
            break
        if token.lower() in _NAME_STOP_TOKENS or token.lower() in NON_NAME_WORDS:
            break
        if require_capitalized and not token[0].isupper():
            break
        tokens.append(token)
        if len(tokens) == 5:
            break
    if len(tokens) < 2:
        return None
    if any(token.lower() in NATIONALITIES for token in tokens):
        return None
    return " ".join(token if token[0].isupper() else token.capitalize() for token in tokens)


def _is_bare_name(candidate: str) -> bool:
    if not _BARE_NAME_LINE.match(candidate):
        return False
    words = candidate.lower().split()
    if any(word in NON_NAME_WORDS or word in NATIONALITIES for word in words):
        return False
    return _ACTIVITY_PATTERN.search(candidate) is None and not score_services(candidate)


def extract_full_name(text: str, name_prompt: bool = False) -> Optional[str]:
    """Full name from "my name is" style phrasing anywhere in the text.

    With `name_prompt` the first line (the message answering "your full name?")
    may also be nothing but a capitalised name.
    """
    for match in _NAME_INTRO_EXPLICIT.finditer(text):
        name = _name_from_tokens(match.group(1), require_capitalized=False)
        if name:
            return name

    for match in _NAME_INTRO_SELF.finditer(text):
        name = _name_from_tokens(match.group(1), require_capitalized=True)
        if name:
            return name

    if name_prompt and text.strip():
        candidate = text.strip().splitlines()[0].strip().strip(".!,")
        if _is_bare_name(candidate):
            return candidate

    return None


def _to_year(token: str) -> int:
    year = int(token)
    if len(token) == 2:
        return 2000 + year if year <= 49 else 1900 + year
    return year


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def extract_explicit_date(text: str) -> Optional[str]:
    """First explicit calendar date in the text, as YYYY-MM-DD.

    Lines are separate messages. A relative phrase ("next month", "in 2 weeks",
    "tomorrow") disables extraction for its own line only.
    """
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in _RELATIVE_DATE_PATTERNS):
            continue
        value = _first_date_in_line(line)
        if value:
            return value
    return None


def _first_date_in_line(text: str) -> Optional[str]:
    candidates: list[tuple[int, Optional[str]]] = []

    for match in _YMD_NUMERIC.finditer(text):
        candidates.append((match.start(), _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))))
    for match in _DMY_NUMERIC.finditer(text):
        candidates.append(
            (match.start(), _safe_date(_to_year(match.group(3)), int(match.group(2)), int(match.group(1))))
        )
    for match in _DMY_TEXT.finditer(text):
        month = _MONTHS.index(match.group(2).lower()[:3]) + 1
        candidates.append((match.start(), _safe_date(_to_year(match.group(3)), month, int(match.group(1)))))
    for match in _MDY_TEXT.finditer(text):
        month = _MONTHS.index(match.group(1).lower()[:3]) + 1
        candidates.append((match.start(), _safe_date(_to_year(match.group(3)), month, int(match.group(2)))))

    for _, value in sorted(candidates, key=lambda item: item[0]):
        if value:
            return value
    return None


def is_business_context(text: str, service: Optional[ServiceKey] = None) -> bool:
    return service == ServiceKey.BUSINESS_SETUP or _BUSINESS_CONTEXT.search(text) is not None


def extract_business_setup_fields(text: str) -> ExtractedFields:
    fields: ExtractedFields = {}

    explicit = _earliest_match(_ACTIVITY_EXPLICIT, text)
    keyword = _ACTIVITY_PATTERN.search(text)
    if keyword and (not explicit or keyword.start() <= explicit.start()):
        fields["businessActivity"] = ACTIVITY_KEYWORDS[keyword.group(1).lower()]
    elif explicit:
        activity = explicit.group(1).strip()
        if 3 < len(activity) < 100:
            fields["businessActivity"] = activity

    jurisdiction = _JURISDICTION.search(text)
    if jurisdiction:
        value = re.sub(r"[\s-]", "", jurisdiction.group(1).lower())
        fields["jurisdiction"] = "mainland" if value == "mainland" else "freezone"

    partners = _earliest_match(_PARTNERS_PATTERNS, text)
    sole_owner = _SOLE_OWNER.search(text)
    if sole_owner and (not partners or sole_owner.start() < partners.start()):
        fields["partnersCount"] = 1
    elif partners:
        count = _parse_number(partners.group(1))
        if 1 <= count <= 10:
            fields["partnersCount"] = count

    visas = _earliest_match(_VISAS_PATTERNS, text)
    if visas:
        count = _parse_number(visas.group(1))
        if 1 <= count <= 20:
            fields["visasCount"] = count

    return fields


def extract_fields(text: str, name_prompt: bool = False) -> ExtractedFields:
    """Extract all known fields from text. Pure: no I/O, no clock, no randomness."""
    if not text or not text.strip():
        return {}

    extracted: ExtractedFields = {}

    service = extract_service(text)
    if service:
        extracted["serviceKey"] = service.value

    nationality = extract_nationality(text)
    if nationality:
        extracted["nationality"] = nationality

    expiry = extract_explicit_date(text)
    if expiry:
        extracted["expiryDate"] = expiry

    full_name = extract_full_name(text, name_prompt=name_prompt)
    if full_name:
        extracted["fullName"] = full_name

    if is_business_context(text, service):
        extracted.update(extract_business_setup_fields(text))

    return extracted


def merge_extracted_fields(collected: dict[str, Any], extracted: ExtractedFields) -> dict[str, Any]:
    """Fill gaps in `collected` from extraction. A value already collected is never replaced."""
    merged = dict(collected or {})
    for key, value in (extracted or {}).items():
        if value is None or value == "":
            continue
        if merged.get(key) not in (None, ""):
            continue
        ok, coerced = validate_collected_value(key, value)
        if ok:
            merged[key] = coerced
    return merged


class Extractor(ABC):
    """Pluggable extraction strategy: text in, candidate fields out."""

    @abstractmethod
    def extract(self, text: str, name_prompt: bool = False) -> ExtractedFields:
        pass


class RuleBasedExtractor(Extractor):
    def extract(self, text: str, name_prompt: bool = False) -> ExtractedFields:
        return extract_fields(text, name_prompt=name_prompt)
