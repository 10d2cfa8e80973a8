"""Text helpers shared by the profile, evaluator and formatting code."""

from __future__ import annotations

import re

STOPWORDS = frozenset(
    {
        "the", "is", "at", "which", "on", "a", "an", "and", "or", "but",
        "in", "with", "to", "for", "of", "as", "by", "that", "this", "it",
        "from", "be", "are", "was", "were", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may",
        "might", "must", "can", "need", "want", "think", "know", "see",
        "seem", "come", "go", "get", "make", "take", "use",
    }
)  # fmt: skip

NEGATION_WORDS = ("not", "no", "never", "cannot", "won't", "shouldn't")

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_NEGATION = re.compile(
    r"\b(?:" + "|".join(re.escape(w) for w in NEGATION_WORDS) + r")\b",
    re.IGNORECASE,
)


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Lowercase keyword tokens with stopwords and pure digits removed."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in words if len(w) >= min_length and w not in STOPWORDS and not w.isdigit()]


def negations_in(text: str) -> set[str]:
    """Negation words present in ``text`` (lowercased)."""
    return {m.group(0).lower() for m in _NEGATION.finditer(text)}


def strip_negations(text: str) -> str:
    return " ".join(_NEGATION.sub(" ", text).split())


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut with an ellipsis."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."
