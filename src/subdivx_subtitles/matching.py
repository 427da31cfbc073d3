"""Lexical relevance scoring of search candidates against a video filename."""

from __future__ import annotations

import re
from typing import Iterable, List, Protocol, Sequence, Tuple, TypeVar

NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]+")


class HasDescriptionTokens(Protocol):
    @property
    def description_tokens(self) -> Sequence[str]: ...


C = TypeVar("C", bound=HasDescriptionTokens)


def tokenize(text: str) -> List[str]:
    """Split text into distinct lowercase ASCII alphanumeric words.

    Every character outside ``[a-zA-Z0-9]`` acts as a separator, so
    ``"The.Show-S01E01"`` yields ``["the", "show", "s01e01"]``. Order of
    first occurrence is kept.
    """
    if not text:
        return []
    words = NON_ALNUM_RE.sub(" ", text).lower().split()
    return list(dict.fromkeys(words))


def score(candidate_tokens: Iterable[str], query: str) -> int:
    candidate_tokens = list(candidate_tokens)
    total = 0
    for word in tokenize(query):
        for candidate_word in candidate_tokens:
            if word == candidate_word:
                total += 1
    return total


def rank_candidates(candidates: Iterable[C], query: str) -> List[Tuple[C, int]]:
    """Score every candidate and sort by score, highest first.

    Ties keep the upstream order.
    """
    scored = [(candidate, score(candidate.description_tokens, query)) for candidate in candidates]
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored


__all__ = ["tokenize", "score", "rank_candidates"]
