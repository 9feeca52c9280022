"""Swappable string-similarity scorers for entity reconciliation."""

from __future__ import annotations

import re
from typing import Protocol

from rapidfuzz import fuzz, utils

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def normalize_entity_name(name: object | None) -> str:
    """Case-folded, whitespace-collapsed key used for exact matching and uniqueness."""

    if name is None:
        return ""
    return _WHITESPACE.sub(" ", str(name)).strip().casefold()


class SimilarityScorer(Protocol):
    name: str

    def score(self, left: str, right: str) -> float:
        """Return a similarity in the closed range 0..1."""


class TokenSortScorer:
    """rapidfuzz token-sort ratio; tolerant of word order and punctuation."""

    name = "token_sort"

    def score(self, left: str, right: str) -> float:
        if not left or not right:
            return 0.0
        ratio = fuzz.token_sort_ratio(left, right, processor=utils.default_process)
        return float(max(0.0, min(1.0, ratio / 100.0)))


def _trigrams(value: str) -> set[str]:
    grams: set[str] = set()
    for word in _NON_ALNUM.split(value.lower()):
        if not word:
            continue
        padded = f"  {word} "
        for index in range(len(padded) - 2):
            grams.add(padded[index : index + 3])
    return grams


class TrigramScorer:
    """Trigram set overlap, matching the behaviour of PostgreSQL ``pg_trgm`` similarity()."""

    name = "trigram"

    def score(self, left: str, right: str) -> float:
        left_grams = _trigrams(left or "")
        right_grams = _trigrams(right or "")
        if not left_grams or not right_grams:
            return 0.0
        shared = len(left_grams & right_grams)
        return shared / len(left_grams | right_grams)


_SCORERS: dict[str, type] = {
    TokenSortScorer.name: TokenSortScorer,
    TrigramScorer.name: TrigramScorer,
}


def get_scorer(name: str | None = None) -> SimilarityScorer:
    key = (name or TokenSortScorer.name).strip().lower()
    try:
        return _SCORERS[key]()
    except KeyError:
        raise ValueError(f"Unknown similarity scorer '{name}'. Choose one of: {', '.join(sorted(_SCORERS))}.") from None
