"""TF-IDF vectorizer with feature hashing.

Maps free text to a fixed-dimension, L2-normalized vector without any
model: tokens are hashed into ``dimensions`` buckets with 32-bit FNV-1a
(collisions are accepted), weighted by term frequency times an optional
IDF lookup, then normalized to unit length.
"""
from __future__ import annotations

import re
from collections import Counter
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

DEFAULT_DIMENSIONS = 256

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193

_TOKEN_RE = re.compile(r"[^\W_]+")

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "as", "be", "was", "were",
    "been", "are", "am", "do", "does", "did", "have", "has", "had",
    "will", "would", "could", "should", "may", "might", "shall", "can",
    "not", "no", "nor", "so", "if", "then", "than", "that", "this",
    "these", "those", "what", "which", "who", "whom", "when", "where",
    "why", "how", "all", "each", "every", "both", "few", "more", "most",
    "some", "any", "such", "only", "own", "same", "too", "very", "just",
    "about", "above", "after", "again", "also", "because", "before",
    "between", "during", "into", "out", "over", "under", "up", "down",
    "here", "there", "other", "its", "my", "your", "his", "her", "our",
    "their", "i", "you", "he", "she", "we", "they", "me", "him", "us",
    "them",
})


def fnv1a(token: str) -> int:
    """32-bit FNV-1a hash of the UTF-8 bytes of *token*."""
    h = _FNV_OFFSET
    for byte in token.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def tokenize(
    text: str, stop_words: Iterable[str] | None = None
) -> list[str]:
    """Lowercase, split on non-alphanumerics, drop stop words.

    Single-character tokens are dropped as well.
    """
    stops = STOP_WORDS if stop_words is None else stop_words
    return [
        t for t in _TOKEN_RE.findall(text.lower())
        if len(t) > 1 and t not in stops
    ]


class Vectorizer:
    """Deterministic text → vector mapping used by the HNSW index.

    Example::

        vectorizer = Vectorizer(dimensions=256)
        vec = vectorizer.vectorize("database connection pooling")
        assert vec.shape == (256,)
    """

    def __init__(
        self,
        dimensions: int = DEFAULT_DIMENSIONS,
        stop_words: Iterable[str] | None = None,
    ) -> None:
        if dimensions <= 0:
            msg = f"dimensions must be positive, got {dimensions}"
            raise ValueError(msg)
        self.dimensions = dimensions
        self.stop_words = (
            frozenset(stop_words) if stop_words else STOP_WORDS
        )

    def tokenize(self, text: str) -> list[str]:
        return tokenize(text, self.stop_words)

    def vectorize(
        self,
        text: str,
        idf: Callable[[str], float] | None = None,
    ) -> np.ndarray:
        """Embed *text* as a unit-length float32 vector.

        Args:
            text: Arbitrary text, any length.
            idf: Optional term → weight lookup; 1.0 for every term when
                omitted.

        Returns:
            A ``(dimensions,)`` float32 array, or all zeros when *text*
            has no indexable tokens.
        """
        vector = np.zeros(self.dimensions, dtype=np.float64)
        counts = Counter(self.tokenize(text))
        if not counts:
            return vector.astype(np.float32)

        # Sorted so float accumulation order never depends on dict order.
        for token in sorted(counts):
            weight = counts[token] * (idf(token) if idf else 1.0)
            vector[fnv1a(token) % self.dimensions] += weight

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.astype(np.float32)
