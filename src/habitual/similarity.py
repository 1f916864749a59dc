"""Similarity oracles for observation deduplication.

An oracle is any callable ``(text_a, text_b) -> bool`` that decides whether
two pattern descriptions denote the same behavior. The store treats it as a
black box; a raised exception counts as "not similar".

Two local implementations are provided:
- LexicalOracle: substring containment, token Jaccard and an affix bonus
- EmbeddingOracle: cosine similarity of sentence-transformer embeddings
"""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

SimilarityOracle = Callable[[str, str], bool]

# Similarity tuning constants
DEFAULT_SIMILARITY_THRESHOLD = 0.8
AFFIX_MATCH_BONUS = 0.2  # Applied as bonus * 0.1 = max 0.02 boost
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


class LexicalOracle:
    """Text-only similarity, no model required.

    Good at catching rephrasings that share most of their words
    ("prefers tabs" vs "prefers tabs over spaces"); misses synonyms.
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.threshold = threshold

    def __call__(self, text_a: str, text_b: str) -> bool:
        return self.score(text_a, text_b) >= self.threshold

    def score(self, text_a: str, text_b: str) -> float:
        """Combined similarity 0.0-1.0.

        Max of substring and Jaccard scores plus a capped affix bonus.
        """
        a = _normalize(text_a)
        b = _normalize(text_b)
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0

        base = max(
            self._substring_similarity(a, b),
            self._jaccard_similarity(set(a.split()), set(b.split())),
        )
        return min(base + self._affix_bonus(a, b) * 0.1, 1.0)

    def _substring_similarity(self, s1: str, s2: str) -> float:
        if s1 in s2 or s2 in s1:
            shorter = min(len(s1), len(s2))
            longer = max(len(s1), len(s2))
            return shorter / longer if longer > 0 else 0.0
        return 0.0

    def _jaccard_similarity(self, tokens1: set[str], tokens2: set[str]) -> float:
        intersection = len(tokens1 & tokens2)
        union = len(tokens1 | tokens2)
        return intersection / union if union > 0 else 0.0

    def _affix_bonus(self, s1: str, s2: str) -> float:
        prefix_match = s1.startswith(s2) or s2.startswith(s1)
        suffix_match = s1.endswith(s2) or s2.endswith(s1)
        return AFFIX_MATCH_BONUS if (prefix_match or suffix_match) else 0.0


class EmbeddingOracle:
    """Cosine similarity of sentence embeddings.

    The model is loaded on first comparison to avoid the cold start of
    sentence-transformers when the oracle is never used. Load or encode
    failures propagate, which ``ObservationStore.submit`` treats as a
    failed comparison.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        model: Any = None,
    ):
        """Initialize oracle.

        Args:
            threshold: Minimum cosine similarity to call two texts the same
            model_name: Sentence transformer model to load lazily
            model: Pre-built model exposing ``encode(text)`` (skips loading)
        """
        self.threshold = threshold
        self._model_name = model_name
        self._model = model

    @property
    def model(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model {self._model_name}")
            self._model = SentenceTransformer(self._model_name)
        return self._model

    def __call__(self, text_a: str, text_b: str) -> bool:
        return self.score(text_a, text_b) >= self.threshold

    def score(self, text_a: str, text_b: str) -> float:
        """Cosine similarity between the two texts' embeddings."""
        import numpy as np

        emb1 = np.asarray(self.model.encode(text_a), dtype=float)
        emb2 = np.asarray(self.model.encode(text_b), dtype=float)

        norm1 = np.linalg.norm(emb1)
        norm2 = np.linalg.norm(emb2)
        if norm1 == 0 or norm2 == 0:
            return 0.0

        return float(np.dot(emb1, emb2) / (norm1 * norm2))


def build_oracle(backend: str, threshold: float, model_name: str = DEFAULT_EMBEDDING_MODEL) -> SimilarityOracle:
    """Create the oracle named by configuration."""
    if backend == "lexical":
        return LexicalOracle(threshold)
    if backend == "embedding":
        return EmbeddingOracle(threshold, model_name)
    raise ValueError(f"Unknown similarity backend: {backend}")
