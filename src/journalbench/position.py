# Copyright (c) Syntropy Systems
"""Needle-in-haystack evaluation: did the model bring the planted fact back?"""
from __future__ import annotations

import re
from dataclasses import dataclass

from journalbench.matching import (
    STOPWORDS,
    excerpt,
    is_keyword,
    overlap,
    stem,
    tokens_with_spans,
)
from journalbench.models.enums import NeedlePosition
from journalbench.models.experiment import PositionOutcome

# Weighted share of the needle's salient terms a response sentence must carry
FOUND_THRESHOLD = 0.6
SNIPPET_LENGTH = 160

NUMBER_WEIGHT = 2.0
PROPER_NOUN_WEIGHT = 1.5
KEYWORD_WEIGHT = 1.0

_SENTENCE = re.compile(r"[^.!?\n]+[.!?]*")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_CAPITALIZED = re.compile(r"[A-Z][A-Za-z]+")


@dataclass(frozen=True)
class SalientTerm:
    """A needle term worth looking for. ``key`` is compared to stemmed tokens."""

    key: str
    weight: float
    kind: str


def salient_terms(needle_fact: str) -> list[SalientTerm]:
    """Numbers, proper nouns and distinctive keywords of a needle fact."""
    terms: dict[str, SalientTerm] = {}
    for number in _NUMBER.findall(needle_fact):
        terms.setdefault(number, SalientTerm(number, NUMBER_WEIGHT, "number"))

    words = needle_fact.split()
    for i, word in enumerate(words):
        bare = word.strip(".,;:!?\"'()")
        if i == 0 or not _CAPITALIZED.fullmatch(bare) or bare.lower() in STOPWORDS:
            continue
        key = stem(bare.lower())
        terms.setdefault(key, SalientTerm(key, PROPER_NOUN_WEIGHT, "proper_noun"))

    for token in tokens_with_spans(needle_fact):
        if is_keyword(token.text):
            key = stem(token.text)
            terms.setdefault(key, SalientTerm(key, KEYWORD_WEIGHT, "keyword"))
    return list(terms.values())


def _term_coverage(terms: list[SalientTerm], sentence: str) -> tuple[float, int, int]:
    """Weighted share of terms present, plus the char span of the first hit."""
    tokens = tokens_with_spans(sentence)
    total = sum(t.weight for t in terms)
    if not tokens or not total:
        return (0.0, 0, 0)
    found = 0.0
    first: tuple[int, int] | None = None
    for term in terms:
        for token in tokens:
            value = token.text if term.kind == "number" else stem(token.text)
            if value == term.key:
                found += term.weight
                if first is None or token.start < first[0]:
                    first = (token.start, token.end)
                break
    start, end = first if first is not None else (0, 0)
    return (found / total, start, end)


def evaluate_position(
    position: NeedlePosition,
    needle_fact: str,
    response: str,
) -> PositionOutcome:
    """Decide whether ``response`` retrieved ``needle_fact``.

    Each response sentence is scored two ways, keeping the stronger: the
    verbatim/near-exact tiers of the shared overlap matcher, and the weighted
    share of the needle's salient terms it contains.
    """
    if not needle_fact.strip() or not response.strip():
        return PositionOutcome(position=position, needle_fact=needle_fact, found=False)

    terms = salient_terms(needle_fact)
    best_score, best_start, best_end = 0.0, 0, 0
    for match in _SENTENCE.finditer(response):
        sentence = match.group(0)
        lexical = overlap(needle_fact, sentence)
        score, start, end = 0.0, 0, 0
        if lexical.tier in ("verbatim", "near-exact"):
            score, start, end = lexical.score, lexical.start, lexical.end
        coverage, c_start, c_end = _term_coverage(terms, sentence)
        if coverage > score:
            score, start, end = coverage, c_start, c_end
        if score > best_score:
            best_score = score
            best_start, best_end = match.start() + start, match.start() + end

    found = best_score >= FOUND_THRESHOLD
    return PositionOutcome(
        position=position,
        needle_fact=needle_fact,
        found=found,
        snippet=excerpt(response, best_start, best_end, SNIPPET_LENGTH) if found else "",
        confidence=round(best_score, 4),
    )


def describe_u_curve(found: dict[NeedlePosition, bool]) -> str:
    """One-line verdict on a start/middle/end retrieval pattern."""
    start = found.get(NeedlePosition.START, False)
    middle = found.get(NeedlePosition.MIDDLE, False)
    end = found.get(NeedlePosition.END, False)
    if start and end and not middle:
        return "U-CURVE CONFIRMED: Middle position showed retrieval failure."
    if start and middle and end:
        return "No position effect detected - all positions retrieved successfully."
    if not (start or middle or end):
        return "Fact not retrieved in any position - may need a different needle fact."
    return f"Mixed results: Start={start}, Middle={middle}, End={end}"
