"""Heuristic ranking score for ExtractionCandidates.

There is no ground truth at extraction time, so the score rewards
redundancy (both scripts present) and reference-corpus hits over raw field
presence. It is only used to rank OCR attempts against each other.
"""

from __future__ import annotations

import re

from idverify.models import reference_corpus as corpus
from idverify.models.field_extractor import ExtractionCandidate, is_valid_date_of_birth

HIGH_CONFIDENCE_SCORE = 90

WEIGHTS = {
    "full_name": 20,
    "latin_name": 30,
    "devanagari_name": 35,
    "date_of_birth": 30,
    "document_number": 15,
    "both_scripts": 20,
    "reference_name": 15,
}


def score_extraction(candidate: ExtractionCandidate) -> int:
    score = 0

    if len(candidate.full_name) > 2:
        score += WEIGHTS["full_name"]
    if len(candidate.latin_name) > 2:
        score += WEIGHTS["latin_name"]
    if len(candidate.devanagari_name) > 1:
        score += WEIGHTS["devanagari_name"]
    if is_valid_date_of_birth(candidate.date_of_birth):
        score += WEIGHTS["date_of_birth"]
    if len(re.sub(r"\D", "", candidate.document_number)) == 12:
        score += WEIGHTS["document_number"]

    if candidate.devanagari_name and candidate.latin_name:
        score += WEIGHTS["both_scripts"]

    if candidate.devanagari_name in corpus.SCORED_DEVANAGARI_NAMES:
        score += WEIGHTS["reference_name"]
    if candidate.latin_name in corpus.SCORED_LATIN_NAMES:
        score += WEIGHTS["reference_name"]

    return score
