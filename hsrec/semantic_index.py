from __future__ import annotations

"""
Dense embedding index over taxonomy descriptions.

The embedding model is an injected capability (:class:`Embedder`).
The built-in one wraps a ``sentence_transformers`` model; when that
library or the model weights are unavailable the index reports itself
as disabled and the ranker falls back to lexical-only scoring.

Vectors are unit-normalised at build time so cosine similarity reduces
to a dot product against the embedding matrix at query time.  Building
all N embeddings is expensive, so the matrix is persisted by the result
cache keyed by corpus fingerprint and embedding model id.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
from loguru import logger

from .config import (
    EMBED_BATCH_SIZE,
    EMBEDDING_MODEL,
    HF_ENV_VARS,
    ClassificationEntry,
)
from .errors import EmbeddingUnavailableError
from .normalize import basic_clean

# sentence_transformers is optional: without it the semantic index is disabled.
try:
    from sentence_transformers import SentenceTransformer  # type: ignore[import-not-found]
except ImportError:
    SentenceTransformer = None  # type: ignore


@runtime_checkable
class Embedder(Protocol):
    """Embedding capability: text -> fixed-dimension float vector."""

    model_id: str

    def embed(self, text: str) -> np.ndarray: ...

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray: ...


def _ensure_hf_env() -> None:
    """
    Set HuggingFace environment hints unless the user already did.
    """
    for key, val in HF_ENV_VARS.items():
        os.environ.setdefault(key, val)


class SentenceTransformerEmbedder:
    """Embedder backed by a ``sentence_transformers`` model."""

    def __init__(self, model, model_id: str = EMBEDDING_MODEL) -> None:
        self.model = model
        self.model_id = model_id

    def embed(self, text: str) -> np.ndarray:
        vec = self.model.encode([text], convert_to_numpy=True, normalize_embeddings=True)[0]
        return np.asarray(vec, dtype="float32")

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        vecs = self.model.encode(
            list(texts),
            batch_size=EMBED_BATCH_SIZE,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return np.asarray(vecs, dtype="float32")


def load_default_embedder(model_id: str = EMBEDDING_MODEL) -> Optional[SentenceTransformerEmbedder]:
    """
    Load the default sentence-transformers encoder.

    Returns ``None`` if ``sentence_transformers`` is not installed or the
    model cannot be loaded.
    """
    if SentenceTransformer is None:
        logger.warning("sentence_transformers is not available; semantic index disabled")
        return None
    _ensure_hf_env()
    logger.info("Loading dense encoder model: {}", model_id)
    try:
        return SentenceTransformerEmbedder(SentenceTransformer(model_id), model_id=model_id)
    except Exception as e:
        logger.warning("Failed to load SentenceTransformer model {}: {}", model_id, e)
        return None


def unit_normalize(matrix: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalisation; all-zero rows stay zero."""
    matrix = np.asarray(matrix, dtype="float32")
    if matrix.ndim == 1:
        norm = float(np.linalg.norm(matrix))
        return matrix / norm if norm > 0 else matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class SemanticIndex:
    """
    Unit-normalised embedding matrix aligned with corpus order.

    A disabled index (``enabled is False``) has no matrix and no
    embedder; querying it returns no candidates.
    """

    def __init__(
        self,
        codes: List[str],
        matrix: Optional[np.ndarray],
        embedder: Optional[Embedder],
        model_id: Optional[str] = None,
    ) -> None:
        self.codes = codes
        self.matrix = matrix
        self.embedder = embedder
        self.model_id = model_id or (embedder.model_id if embedder is not None else None)
        # rank of each code in ascending code order, for deterministic ties
        order = sorted(range(len(codes)), key=lambda i: codes[i])
        self._code_rank = np.empty(len(codes), dtype=np.int64)
        self._code_rank[order] = np.arange(len(codes))

    @property
    def enabled(self) -> bool:
        return self.matrix is not None and self.embedder is not None

    @property
    def dimension(self) -> int:
        return 0 if self.matrix is None else int(self.matrix.shape[1])

    @classmethod
    def disabled(cls, codes: Optional[List[str]] = None) -> "SemanticIndex":
        return cls(codes=list(codes or []), matrix=None, embedder=None)

    @classmethod
    def build(
        cls,
        entries: Sequence[ClassificationEntry],
        embedder: Optional[Embedder],
        batch_size: int = EMBED_BATCH_SIZE,
        workers: int = 1,
    ) -> "SemanticIndex":
        """
        Embed every description in batches and normalise the rows.

        With ``workers > 1`` batches are embedded concurrently.  Any
        failure yields a disabled index; a partially built matrix is
        never returned.
        """
        codes = [e.code for e in entries]
        if embedder is None:
            logger.warning("No embedding capability; semantic index disabled")
            return cls.disabled(codes)

        texts = [e.description for e in entries]
        batches = [texts[i : i + batch_size] for i in range(0, len(texts), batch_size)]
        logger.info(
            "Building dense embeddings for {} documents ({} batches, {} workers, model={})",
            len(texts),
            len(batches),
            workers,
            embedder.model_id,
        )
        try:
            if workers > 1 and len(batches) > 1:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    parts = list(pool.map(embedder.embed_batch, batches))
            else:
                parts = [embedder.embed_batch(b) for b in batches]
            matrix = np.vstack([np.asarray(p, dtype="float32") for p in parts])
        except Exception as e:
            logger.warning("Failed to compute embeddings: {}; semantic index disabled", e)
            return cls.disabled(codes)

        if matrix.shape[0] != len(codes):
            logger.warning(
                "Embedding row count {} != corpus size {}; semantic index disabled",
                matrix.shape[0],
                len(codes),
            )
            return cls.disabled(codes)

        matrix = unit_normalize(matrix)
        logger.info("Semantic index built: shape={}", matrix.shape)
        return cls(codes=codes, matrix=matrix, embedder=embedder)

    @classmethod
    def from_matrix(
        cls,
        entries: Sequence[ClassificationEntry],
        matrix: np.ndarray,
        stored_codes: Sequence[str],
        embedder: Embedder,
    ) -> Optional["SemanticIndex"]:
        """
        Restore an index from cached artifacts.  Returns ``None`` when
        the cached rows do not line up with the corpus.
        """
        codes = [e.code for e in entries]
        if list(stored_codes) != codes or matrix.ndim != 2 or matrix.shape[0] != len(codes):
            logger.warning("Cached embedding matrix does not match corpus; rebuilding")
            return None
        return cls(codes=codes, matrix=np.asarray(matrix, dtype="float32"), embedder=embedder)

    def embed_query(self, text: str) -> np.ndarray:
        """Embed ``text`` after the same cleaning the descriptions went through."""
        if not self.enabled:
            raise EmbeddingUnavailableError("semantic index is disabled")
        try:
            vec = np.asarray(self.embedder.embed(basic_clean(text)), dtype="float32").reshape(-1)
        except Exception as e:
            raise EmbeddingUnavailableError(f"embedding failed: {e}") from e
        if vec.shape[0] != self.dimension:
            raise EmbeddingUnavailableError(
                f"query embedding has dimension {vec.shape[0]}, index has {self.dimension}"
            )
        return unit_normalize(vec)

    def query(self, text: str, top_n: Optional[int] = None) -> List[Tuple[str, float]]:
        """
        Return ``(code, cosine)`` pairs, best first, ties by code.

        Blank text yields ``[]``.  Raises :class:`EmbeddingUnavailableError`
        if the index is disabled or the capability fails.
        """
        if not basic_clean(text):
            return []
        q = self.embed_query(text)
        if not np.any(q):
            return []
        scores = self.matrix @ q
        order = np.lexsort((self._code_rank, -scores))
        if top_n is not None:
            order = order[:top_n]
        return [(self.codes[i], float(scores[i])) for i in order]
