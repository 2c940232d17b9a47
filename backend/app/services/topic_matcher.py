"""
Keyword-overlap topic matching.

Explainable rather than statistical: every match can be traced back to a literal,
case-insensitive substring shared by two keywords.
"""

from __future__ import annotations

import re
from typing import Iterable, List

STOP_WORDS = frozenset(
    {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}
)
MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 4

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def extract_keywords(text: str | None) -> List[str]:
    """
    lower-case -> strip punctuation -> split on whitespace -> drop short/stop words -> first 10.

    The cap counts repeated tokens; the returned list is then de-duplicated in order,
    so a text that repeats one word ten times yields a single keyword.
    """
    cleaned = _PUNCTUATION_RE.sub(" ", (text or "").lower())
    kept = [t for t in cleaned.split() if len(t) >= MIN_KEYWORD_LENGTH and t not in STOP_WORDS]
    return list(dict.fromkeys(kept[:MAX_KEYWORDS]))


def _normalized(terms: Iterable[str]) -> List[str]:
    return [t for t in (str(x or "").strip().lower() for x in terms) if t]


def _related(a: str, b: str) -> bool:
    return a in b or b in a


def matching_topics(terms: Iterable[str], reference: Iterable[str]) -> List[str]:
    """Terms (de-duplicated, in order) that are a substring of, or contain, some reference term."""
    ref = _normalized(reference)
    out: List[str] = []
    seen: set[str] = set()
    for term in _normalized(terms):
        if term in seen:
            continue
        if any(_related(term, r) for r in ref):
            seen.add(term)
            out.append(term)
    return out


def topics_overlap(set_a: Iterable[str], set_b: Iterable[str]) -> bool:
    b = _normalized(set_b)
    return any(_related(a, other) for a in _normalized(set_a) for other in b)
