# Copyright (c) Syntropy Systems
"""Extract factual claims from a generated summary and check them against the journal.

This is a heuristic evidence matcher, not an entailment model: a claim is
supported when its wording overlaps strongly with a journal field, and the
overlap is reported as a receipt. ``extract_claims`` is a pure function of
its inputs.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional

from journalbench.matching import (
    KEYWORD_CEILING,
    content_tokens,
    excerpt,
    jaccard,
    overlap,
    tokenize,
)
from journalbench.models.experiment import ExtractedClaim, JournalEntry, Receipt

logger = logging.getLogger(__name__)

# Scores below this are not evidence. Sits between the keyword floor (0.2)
# and the near-exact band (0.8): a keyword match needs half the claim's
# keywords to count.
SUPPORT_THRESHOLD = 0.45
# Added to keyword-tier matches when the claim names the entry's weekday
WEEKDAY_BONUS = 0.05
MAX_RECEIPTS = 3
MIN_CONTENT_TOKENS = 2
DUPLICATE_JACCARD = 0.8
RECEIPT_SNIPPET_LENGTH = 120

FIELD_TYPES = {
    "emotional_state": "emotional-state",
    "session_reflection": "event",
    "mental_barriers": "barrier",
}

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+|\n+")
_MARKDOWN_PREFIX = re.compile(r"^\s*(?:[-*+>•]+|#+|\d+[.)])\s*")
_EMPHASIS = re.compile(r"[*_`]+")

_ENCOURAGEMENT = re.compile(
    r"\b(?:stay hard|you(?:'ve| have)? got this|proud of you|believe in (?:you|yourself)"
    r"|be a goldfish|carry the boats|keep (?:it up|going|pushing|grinding|showing up)"
    r"|one day at a time|you can do (?:it|this)|let'?s go|never give up"
    r"|trust the process|you are (?:capable|stronger|enough))\b",
    re.IGNORECASE,
)
_IMPERATIVE = re.compile(
    r"^(?:keep|stay|remember|embrace|believe|trust|push|go|let'?s|don'?t|do not"
    r"|focus|take|try|make|get|be|own|lean|celebrate|give|consider|aim|set)\b",
    re.IGNORECASE,
)
_ATTRIBUTION = re.compile(
    r"^(?:(?:in|from|across) your (?:journal|entries|entry|notes|reflections?),?\s*)?"
    r"(?:you(?:'ve| have)?|the athlete(?: has)?)\s+"
    r"(?:mentioned|wrote|said|noted|reported|shared|described|admitted|indicated|explained|told me)"
    r"(?:\s+that)?[:,]?\s*",
    re.IGNORECASE,
)

_TYPE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("injury", re.compile(
        r"\b(?:shin splints?|pain|injur(?:y|ed|ies)|sore(?:ness)?|strain|ache|hurt|sprain|cramp|stiff(?:ness)?)\b",
        re.IGNORECASE,
    )),
    ("emotion", re.compile(
        r"\b(?:confiden(?:t|ce)|anxi(?:ous|ety)|stress(?:ed)?|motivat(?:ed|ion)|nervous|frustrat(?:ed|ion)"
        r"|excited|calm|relaxed|mood|overwhelmed|doubt(?:ful)?)\b",
        re.IGNORECASE,
    )),
    ("skipped", re.compile(
        r"\b(?:skipped|missed|didn't (?:train|practice|show up)|took (?:a |the )?(?:day|time) off|rest day)\b",
        re.IGNORECASE,
    )),
    ("barrier", re.compile(
        r"\b(?:struggl(?:e|ed|ing)|difficult(?:y)?|obstacle|barrier|trouble|challenge)\b",
        re.IGNORECASE,
    )),
    ("progress", re.compile(
        r"\b(?:improv(?:ed|ing|ement)|progress|personal (?:best|record)|faster|stronger|breakthrough)\b",
        re.IGNORECASE,
    )),
    ("event", re.compile(
        r"\b(?:completed|finished|ran|raced|competed|practiced|trained|played|race|game|match|workout)\b",
        re.IGNORECASE,
    )),
]

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_WEEKDAY = re.compile(r"\b(" + "|".join(_WEEKDAYS) + r")s?\b", re.IGNORECASE)
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_DAY = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b",
    re.IGNORECASE,
)


def split_sentences(text: str) -> list[str]:
    """Break text into cleaned sentences, dropping markdown decoration."""
    sentences = []
    for raw in _SENTENCE_BREAK.split(text):
        sentence = _EMPHASIS.sub("", _MARKDOWN_PREFIX.sub("", raw)).strip()
        if sentence:
            sentences.append(sentence)
    return sentences


def claim_core(sentence: str) -> str:
    """The asserted content of a sentence, without "You mentioned that" framing."""
    return _ATTRIBUTION.sub("", sentence).strip().rstrip(".!").strip()


def is_factual(sentence: str) -> bool:
    """False for questions, encouragement and exhortations."""
    if sentence.endswith("?"):
        return False
    if _ENCOURAGEMENT.search(sentence):
        return False
    if _IMPERATIVE.match(sentence) and not _ATTRIBUTION.match(sentence):
        return False
    return len(content_tokens(claim_core(sentence))) >= MIN_CONTENT_TOKENS


def infer_claim_type(text: str) -> Optional[str]:
    for claim_type, pattern in _TYPE_PATTERNS:
        if pattern.search(text):
            return claim_type
    return None


def parse_referenced_date(text: str, entries: list[JournalEntry]) -> Optional[date]:
    """Date named by temporal language in a claim.

    ISO dates are taken as written; "March 5" takes the year of the newest
    entry; weekday names resolve to the most recent entry on that weekday.
    """
    iso = _ISO_DATE.search(text)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            pass

    newest_first = sorted(entries, key=lambda e: e.entry_date, reverse=True)

    month_day = _MONTH_DAY.search(text)
    if month_day and newest_first:
        month = _MONTHS[month_day.group(1).lower()[:3]]
        try:
            return date(newest_first[0].entry_date.year, month, int(month_day.group(2)))
        except ValueError:
            pass

    weekday = _WEEKDAY.search(text)
    if weekday:
        index = _WEEKDAYS.index(weekday.group(1).lower())
        for entry in newest_first:
            if entry.entry_date.weekday() == index:
                return entry.entry_date
    return None


def _named_weekdays(text: str) -> set[int]:
    return {_WEEKDAYS.index(m.group(1).lower()) for m in _WEEKDAY.finditer(text)}


def _best_receipt(core: str, weekdays: set[int], entry: JournalEntry) -> Optional[Receipt]:
    best: Optional[Receipt] = None
    for field, value in entry.fields().items():
        if not value:
            continue
        match = overlap(core, value)
        if not match.matched:
            continue
        score = match.score
        if match.tier == "keyword" and entry.entry_date.weekday() in weekdays:
            score = min(score + WEEKDAY_BONUS, KEYWORD_CEILING)
        if score < SUPPORT_THRESHOLD:
            continue
        if best is None or score > best.confidence:
            best = Receipt(
                journal_entry_id=entry.id,
                entry_date=entry.entry_date,
                field=field,
                snippet=excerpt(value, match.start, match.end, RECEIPT_SNIPPET_LENGTH),
                confidence=round(score, 4),
            )
    return best


def verify_claim(sentence: str, entries: list[JournalEntry]) -> ExtractedClaim:
    """Match one claim sentence against every entry."""
    core = claim_core(sentence)
    weekdays = _named_weekdays(sentence)
    receipts = [r for r in (_best_receipt(core, weekdays, e) for e in entries) if r is not None]
    receipts.sort(key=lambda r: (-r.confidence, -r.entry_date.toordinal(), -r.journal_entry_id))
    receipts = receipts[:MAX_RECEIPTS]

    claim_type = FIELD_TYPES.get(receipts[0].field) if receipts else None
    return ExtractedClaim(
        text=sentence,
        is_supported=bool(receipts),
        confidence=receipts[0].confidence if receipts else 0.0,
        claim_type=claim_type or infer_claim_type(sentence),
        referenced_date=parse_referenced_date(sentence, entries),
        receipts=receipts,
    )


def _dedupe(claims: list[ExtractedClaim]) -> list[ExtractedClaim]:
    kept: list[tuple[frozenset[str], ExtractedClaim]] = []
    for claim in claims:
        words = frozenset(tokenize(claim_core(claim.text)))
        for i, (other_words, other) in enumerate(kept):
            if jaccard(words, other_words) > DUPLICATE_JACCARD:
                if claim.confidence > other.confidence:
                    kept[i] = (words, claim)
                break
        else:
            kept.append((words, claim))
    return [claim for _, claim in kept]


def extract_claims(text: str, entries: list[JournalEntry]) -> list[ExtractedClaim]:
    """Claims asserted by ``text``, each checked against ``entries``.

    Empty or purely motivational text yields no claims; with no entries every
    claim is unsupported.
    """
    if not text or not text.strip():
        logger.debug("No text to extract claims from")
        return []
    candidates = [s for s in split_sentences(text) if is_factual(s)]
    return _dedupe([verify_claim(s, entries) for s in candidates])
