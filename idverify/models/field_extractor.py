"""Field extraction from raw card OCR text.

Parses the text of one OCR attempt into:
  - devanagari_name
  - latin_name
  - full_name        (latin_name if present, else devanagari_name)
  - date_of_birth    (DD/MM/YYYY)
  - document_number  (12 digits, optionally grouped 4-4-4)

Every field is optional; an all-empty candidate is a valid result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import date
from typing import Iterator, List, Optional, Pattern

from idverify.models import reference_corpus as corpus

logger = logging.getLogger("idverify.extract")


# ---------------------------------------------------------------- config ---

MIN_BIRTH_YEAR = 1900
MAX_BIRTH_YEAR = 2010

DEVANAGARI_RE = re.compile(r"[\u0900-\u097F]")

# Particles rejected when they appear as a whole word
DEVANAGARI_PARTICLES = {
    "के", "का", "की", "में", "से", "को", "है", "और", "या", "पर", "गा", "एप", "एन",
}
# Boilerplate rejected anywhere in the line
DEVANAGARI_BOILERPLATE = [
    "भारत", "सरकार", "आधार", "पुरुष", "महिला", "जन्म", "तिथि", "पता", "फोन",
]

LATIN_NON_NAME_TERMS = [
    "government", "india", "aadhaar", "male", "female", "dob", "birth", "date",
    "address", "phone", "proof", "identity", "card", "number", "photo", "issued",
    "unique", "identification", "authority", "resident", "citizen", "nationality",
    "document", "verification", "authentic", "valid", "copy", "original",
]

_DEV = r"\u0900-\u097F"
DEVANAGARI_NAME_PATTERNS: List[Pattern[str]] = [
    # two or three words of two or more characters
    re.compile(rf"[{_DEV}]{{2,}}(?:\s+[{_DEV}]{{2,}}){{1,2}}"),
    # a run of Devanagari words at the start of a line
    re.compile(rf"^([{_DEV}]+(?:[ \t]+[{_DEV}]+)*)", re.MULTILINE),
    # Devanagari words directly before a capitalised Latin word
    re.compile(rf"([{_DEV}]+(?:\s+[{_DEV}]+)*)\s*(?=\s*[A-Z][a-z]+)"),
]

# Each pattern is tried from every word start so that a rejected
# candidate does not swallow the real name behind it.
LATIN_NAME_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\b(?=([A-Z][a-z]+\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?))"),
    re.compile(r"\b(?=([A-Z]{2,}\s+[A-Z]{2,}(?:\s+[A-Z]{2,})?))"),
    re.compile(r"\b(?=([A-Za-z]+\s+[A-Za-z]+(?:\s+[A-Za-z]+)?))"),
]

DATE_RE = re.compile(
    r"(?<!\d)(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{4}|\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})(?!\d)"
)
DOCUMENT_NUMBER_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?<!\d)(\d{4}\s\d{4}\s\d{4})(?!\d)"),
    re.compile(r"(?<!\d)(\d{12})(?!\d)"),
]
MANUAL_DOB_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")


# ---------------------------------------------------------------- result ---

@dataclass
class ExtractionCandidate:
    """Structured fields from one OCR attempt."""
    full_name: str = ""
    devanagari_name: str = ""
    latin_name: str = ""
    date_of_birth: str = ""
    document_number: str = ""
    configuration: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.full_name or self.date_of_birth or self.document_number)


# ----------------------------------------------------------- validation ---

def contains_devanagari(text: str) -> bool:
    return bool(DEVANAGARI_RE.search(text))


def clean_name(name: str) -> str:
    return " ".join(name.split())


def is_valid_devanagari_name(name: str) -> bool:
    cleaned = name.strip()
    if len(cleaned) < 2 or len(cleaned) > 50:
        return False

    letters = "".join(cleaned.split())
    if not letters:
        return False
    if len(DEVANAGARI_RE.findall(letters)) / len(letters) < 0.8:
        return False

    words = cleaned.split()
    if any(w in DEVANAGARI_PARTICLES for w in words):
        return False
    if any(term in cleaned for term in DEVANAGARI_BOILERPLATE):
        return False

    if len(words) < 1 or len(words) > 4:
        return False
    return all(2 <= len(w) <= 15 for w in words)


def is_valid_latin_name(name: str) -> bool:
    stripped = name.strip()
    if len(stripped) < 3 or len(stripped) > 50:
        return False
    if re.sub(r"[^A-Za-z\s]", "", stripped) != stripped:
        return False

    words = stripped.split()
    if len(words) < 2 or len(words) > 4:
        return False

    lower = stripped.lower()
    if any(term in lower for term in LATIN_NON_NAME_TERMS):
        return False
    return all(2 <= len(w) <= 20 for w in words)


def normalize_date(raw: str) -> str:
    """Normalise a ``D/M/YYYY`` or ``YYYY/M/D`` string to ``DD/MM/YYYY``.

    ``-`` and ``.`` separators are accepted. Returns ``""`` when the
    groups are out of range or do not form a real calendar date.
    """
    cleaned = re.sub(r"[^\d/\-.]", "", raw)
    parts = re.split(r"[/\-.]", cleaned)
    if len(parts) != 3:
        return ""

    first, second, third = parts
    if len(third) == 4:
        day, month, year = first, second, third
    elif len(first) == 4:
        year, month, day = first, second, third
    else:
        return ""

    if not (day and month):
        return ""
    d, m, y = int(day), int(month), int(year)
    if not 1 <= d <= 31 or not 1 <= m <= 12:
        return ""
    if not MIN_BIRTH_YEAR <= y <= MAX_BIRTH_YEAR:
        return ""
    try:
        date(y, m, d)
    except ValueError:
        return ""
    return f"{d:02d}/{m:02d}/{y:04d}"


def is_valid_date_of_birth(dob: str) -> bool:
    """True for a DD/MM/YYYY string that is a real date in the accepted years."""
    if not dob:
        return False
    return normalize_date(dob) == dob


def parse_date_of_birth(dob: str) -> date:
    """Parse a manually entered ``DD/MM/YYYY`` date of birth.

    Raises ValueError with a message fit to show the user.
    """
    text = (dob or "").strip()
    if not text:
        raise ValueError("Please enter your date of birth")
    if not MANUAL_DOB_RE.match(text):
        raise ValueError("Please enter date in DD/MM/YYYY format")

    day, month, year = (int(p) for p in text.split("/"))
    try:
        parsed = date(year, month, day)
    except ValueError:
        raise ValueError("Please enter a valid date") from None
    if not MIN_BIRTH_YEAR <= year <= MAX_BIRTH_YEAR:
        raise ValueError(
            f"Please enter a valid birth year ({MIN_BIRTH_YEAR}-{MAX_BIRTH_YEAR})")
    return parsed


def calculate_age(birth: date, today: Optional[date] = None) -> int:
    """Whole years between *birth* and *today*.

    Negative when *birth* lies in the future.
    """
    today = today or date.today()
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


# ============================================================ extractor ===

class FieldExtractor:
    """Turn raw card OCR text into an ExtractionCandidate."""

    def __init__(self, use_reference_corpus: bool = True):
        self.use_reference_corpus = use_reference_corpus

    # ---- names -----------------------------------------------------

    def _devanagari_name(self, text: str, lines: List[str], flat: str) -> str:
        if self.use_reference_corpus:
            known = corpus.find_name(flat, corpus.DEVANAGARI_NAMES)
            if known:
                logger.debug("Reference Devanagari name: %s", known)
                return known

        for line in lines:
            if contains_devanagari(line) and is_valid_devanagari_name(line):
                return clean_name(line)

        for pattern, source in zip(DEVANAGARI_NAME_PATTERNS, (flat, text, flat)):
            for match in pattern.finditer(source):
                candidate = clean_name(match.group(1) if match.groups() else match.group(0))
                if is_valid_devanagari_name(candidate):
                    return candidate
        return ""

    def _latin_name(self, flat: str) -> str:
        if self.use_reference_corpus:
            known = corpus.find_name(flat, corpus.LATIN_NAMES)
            if known:
                logger.debug("Reference Latin name: %s", known)
                return known

        for pattern in LATIN_NAME_PATTERNS:
            for match in pattern.finditer(flat):
                candidate = match.group(1).strip()
                if is_valid_latin_name(candidate):
                    return candidate
        return ""

    # ---- dates and numbers -----------------------------------------

    def _date_candidates(self, flat: str) -> Iterator[str]:
        if self.use_reference_corpus:
            for dob in corpus.DATES_OF_BIRTH:
                match = corpus.date_pattern(dob).search(flat)
                if match:
                    yield match.group(0)
        for match in DATE_RE.finditer(flat):
            yield match.group(1)

    def _date_of_birth(self, flat: str) -> str:
        for raw in self._date_candidates(flat):
            formatted = normalize_date(raw)
            if formatted:
                return formatted
        return ""

    def _document_number(self, flat: str) -> str:
        patterns: List[Pattern[str]] = []
        if self.use_reference_corpus:
            patterns.extend(corpus.number_pattern(n) for n in corpus.DOCUMENT_NUMBERS)
        patterns.extend(DOCUMENT_NUMBER_PATTERNS)

        for pattern in patterns:
            for match in pattern.finditer(flat):
                candidate = match.group(0).strip()
                digits = re.sub(r"\s", "", candidate)
                if len(digits) == 12 and digits.isdigit():
                    return candidate
        return ""

    # ---- public API ------------------------------------------------

    def extract(self, text: str, configuration: str = "") -> ExtractionCandidate:
        """Extract every field from *text*; missing fields are left empty."""
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        flat = " ".join(text.split())

        devanagari = self._devanagari_name(text, lines, flat)
        latin = self._latin_name(flat)

        candidate = ExtractionCandidate(
            full_name=latin or devanagari,
            devanagari_name=devanagari,
            latin_name=latin,
            date_of_birth=self._date_of_birth(flat),
            document_number=self._document_number(flat),
            configuration=configuration,
        )
        logger.debug("Extracted from %s: %s", configuration or "text", candidate)
        return candidate

    def postprocess(self, candidate: ExtractionCandidate) -> ExtractionCandidate:
        """Repair known Devanagari garbles and drop stray one-letter names."""
        name = candidate.devanagari_name
        if name and self.use_reference_corpus:
            for wrong, right in corpus.DEVANAGARI_CORRECTIONS.items():
                if wrong in name:
                    logger.info("Corrected Devanagari name %r -> %r", name, right)
                    name = right
                    break
        if len(name.strip()) < 2:
            name = ""

        full_name = candidate.full_name
        if full_name == candidate.devanagari_name:
            full_name = candidate.latin_name or name
        return replace(candidate, devanagari_name=name, full_name=full_name)
