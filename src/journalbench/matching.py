# Copyright (c) Syntropy Systems
"""Layered lexical overlap between a short text and a source passage.

Used by both the claim extractor and the position evaluator. Three tiers,
strongest first:

* verbatim     - every token of the short text appears, in order and
                 contiguous, in the source (after normalization)
* near-exact   - a long contiguous token run is shared
* keyword      - distinctive keywords (non-stopwords, longer than
                 MIN_KEYWORD_LENGTH, lightly stemmed) overlap

Scores live in disjoint bands so a stronger tier always outranks a weaker
one: keyword scores never reach NEAR_EXACT_FLOOR, near-exact never reaches
VERBATIM_SCORE.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher

VERBATIM_SCORE = 1.0

NEAR_EXACT_FLOOR = 0.8
NEAR_EXACT_CEILING = 0.95
# Shortest shared run, in tokens, and the share of the short text it must cover
NEAR_EXACT_MIN_RUN = 4
NEAR_EXACT_MIN_COVERAGE = 0.6

KEYWORD_BASE = 0.2
KEYWORD_WEIGHT = 0.5
KEYWORD_CEILING = 0.75
MIN_KEYWORD_LENGTH = 3

STOPWORDS = frozenset({
    "a", "about", "above", "after", "again", "all", "also", "am", "an", "and",
    "any", "are", "as", "at", "be", "because", "been", "before", "being",
    "both", "but", "by", "can", "could", "did", "do", "does", "doing", "down",
    "during", "each", "even", "every", "few", "for", "from", "further", "had",
    "has", "have", "having", "he", "her", "here", "hers", "him", "his", "how",
    "i", "if", "in", "into", "is", "it", "its", "itself", "just", "like",
    "me", "more", "most", "my", "myself", "no", "nor", "not", "now", "of",
    "off", "on", "once", "only", "or", "other", "our", "out", "over", "own",
    "really", "same", "she", "should", "so", "some", "such", "than", "that",
    "the", "their", "them", "then", "there", "these", "they", "this", "those",
    "through", "to", "too", "under", "until", "up", "very", "was", "way",
    "we", "were", "what", "when", "where", "which", "while", "who", "whom",
    "why", "will", "with", "would", "you", "your", "yours", "yourself",
    # summary boilerplate that carries no journal content
    "athlete", "entry", "entries", "journal", "mentioned", "mention",
    "noted", "wrote", "written", "said", "reported", "shared", "week",
    "weekly", "session", "sessions", "today", "yesterday", "felt", "feel",
    "feeling", "things", "thing", "been", "still", "much", "many", "lot",
})

_TOKEN = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")
_SUFFIXES = ("ingly", "edly", "ness", "ment", "ing", "ies", "ied", "ed", "es", "ly", "s")


@dataclass(frozen=True)
class Token:
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class Overlap:
    """Result of matching a short text against a source passage.

    ``start``/``end`` are character offsets into the source marking the
    strongest match, for snippet extraction.
    """

    score: float
    tier: str
    start: int = 0
    end: int = 0
    shared_keywords: frozenset[str] = frozenset()

    @property
    def matched(self) -> bool:
        return self.score > 0


NO_OVERLAP = Overlap(score=0.0, tier="none")


def tokens_with_spans(text: str) -> list[Token]:
    return [Token(m.group(0), m.start(), m.end()) for m in _TOKEN.finditer(text.lower())]


def tokenize(text: str) -> list[str]:
    return _TOKEN.findall(text.lower())


def normalize(text: str) -> str:
    """Lowercase and collapse everything but words and numbers to single spaces."""
    return " ".join(tokenize(text))


def stem(token: str) -> str:
    """Strip one common English suffix, keeping at least four characters."""
    token = token.split("'")[0]
    for suffix in _SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= 4:
            return token[: -len(suffix)]
    return token


def is_keyword(token: str) -> bool:
    return len(token) > MIN_KEYWORD_LENGTH and token not in STOPWORDS and not token.isdigit()


def keywords(text: str) -> frozenset[str]:
    """Stemmed distinctive keywords of a text."""
    return frozenset(stem(t) for t in tokenize(text) if is_keyword(t))


def content_tokens(text: str) -> list[str]:
    """Tokens that are not stopwords, any length."""
    return [t for t in tokenize(text) if t not in STOPWORDS]


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def excerpt(text: str, start: int, end: int, width: int) -> str:
    """A window of about ``width`` characters centered on text[start:end]."""
    if not text:
        return ""
    if len(text) <= width:
        return text.strip()
    center = (start + end) // 2
    lo = max(0, center - width // 2)
    hi = min(len(text), lo + width)
    lo = max(0, hi - width)
    snippet = text[lo:hi].strip()
    if lo > 0:
        snippet = "..." + snippet
    if hi < len(text):
        snippet = snippet + "..."
    return snippet


def _densest_window(source: list[Token], wanted: frozenset[str], size: int = 8) -> tuple[int, int]:
    """Char span of the token window holding the most wanted stems."""
    hits = [i for i, tok in enumerate(source) if stem(tok.text) in wanted]
    if not hits:
        return (0, 0)
    best_i, best_count = hits[0], 0
    for i in hits:
        count = sum(1 for j in hits if i <= j < i + size)
        if count > best_count:
            best_i, best_count = i, count
    last = max(j for j in hits if best_i <= j < best_i + size)
    return (source[best_i].start, source[last].end)


def overlap(text: str, source: str) -> Overlap:
    """Score how strongly ``source`` supports ``text``."""
    text_tokens = tokenize(text)
    source_tokens = tokens_with_spans(source)
    if not text_tokens or not source_tokens:
        return NO_OVERLAP

    source_words = [t.text for t in source_tokens]
    matcher = SequenceMatcher(None, text_tokens, source_words, autojunk=False)
    run = matcher.find_longest_match(0, len(text_tokens), 0, len(source_words))
    if run.size:
        span = (source_tokens[run.b].start, source_tokens[run.b + run.size - 1].end)
        if run.size == len(text_tokens) and run.size >= 2:
            return Overlap(VERBATIM_SCORE, "verbatim", *span)
        coverage = run.size / len(text_tokens)
        if run.size >= NEAR_EXACT_MIN_RUN and coverage >= NEAR_EXACT_MIN_COVERAGE:
            scale = (coverage - NEAR_EXACT_MIN_COVERAGE) / (1.0 - NEAR_EXACT_MIN_COVERAGE)
            score = NEAR_EXACT_FLOOR + (NEAR_EXACT_CEILING - NEAR_EXACT_FLOOR) * scale
            return Overlap(round(min(score, NEAR_EXACT_CEILING), 4), "near-exact", *span)

    text_keywords = keywords(text)
    if not text_keywords:
        return NO_OVERLAP
    source_keywords = frozenset(stem(t) for t in source_words if is_keyword(t))
    shared = text_keywords & source_keywords
    if len(shared) < min(2, len(text_keywords)):
        return NO_OVERLAP
    coverage = len(shared) / len(text_keywords)
    score = min(KEYWORD_BASE + KEYWORD_WEIGHT * coverage, KEYWORD_CEILING)
    start, end = _densest_window(source_tokens, shared)
    return Overlap(round(score, 4), "keyword", start, end, frozenset(shared))
