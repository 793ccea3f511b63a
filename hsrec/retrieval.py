from __future__ import annotations

"""
Hybrid ranking: lexical + semantic score fusion with a query cache.

The ranker fans a query out to its scoring strategies, normalises each
signal independently with min-max over the candidates that signal
returned, and blends them::

    blended = alpha * lexical_norm + (1 - alpha) * semantic_norm

An entry missing from one signal's candidate set scores 0 for that
signal rather than being dropped.  When the semantic index is disabled
(or the embedding capability fails for this query) alpha is forced to
1 and the ranking is purely lexical; the result is flagged so callers
can tell.

Example::

    ranker = HybridRanker(corpus, LexicalStrategy(lex), SemanticStrategy(sem), cache, config)
    rec = ranker.recommend("live horses for breeding", k=5)
    for r in rec.results:
        ...
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
from loguru import logger

from .cache import QueryKey, ResultCache, config_fingerprint, query_fingerprint
from .config import (
    DEFAULT_K,
    CachedRanking,
    CandidateResult,
    EngineConfig,
    Recommendation,
    ScoreBreakdown,
    check_alpha,
)
from .corpus import Corpus
from .errors import EmbeddingUnavailableError, InvalidQueryError
from .lexical_index import LexicalIndex
from .semantic_index import SemanticIndex

FUSION_EPS = 1e-12

ScoredPairs = List[Tuple[str, float]]


@runtime_checkable
class ScoringStrategy(Protocol):
    """A similarity signal: text -> ``(code, score)`` pairs, best first."""

    name: str

    @property
    def enabled(self) -> bool: ...

    def score(self, text: str, top_n: Optional[int] = None) -> ScoredPairs: ...


class LexicalStrategy:
    name = "lexical"

    def __init__(self, index: LexicalIndex, pruning: str = "postings") -> None:
        self.index = index
        self.pruning = pruning

    @property
    def enabled(self) -> bool:
        return True

    def score(self, text: str, top_n: Optional[int] = None) -> ScoredPairs:
        return self.index.query(text, top_n=top_n, pruning=self.pruning)


class SemanticStrategy:
    name = "semantic"

    def __init__(self, index: SemanticIndex) -> None:
        self.index = index

    @property
    def enabled(self) -> bool:
        return self.index.enabled

    @property
    def model_id(self) -> Optional[str]:
        return self.index.model_id

    def score(self, text: str, top_n: Optional[int] = None) -> ScoredPairs:
        return self.index.query(text, top_n=top_n)


def min_max_normalize(pairs: Sequence[Tuple[str, float]], eps: float = FUSION_EPS) -> Dict[str, float]:
    """
    Rescale a signal's scores to [0, 1] over its own candidate set.

    A constant set (including a single candidate) maps to 1.0: every
    candidate is as good as the best one that signal found.
    """
    if not pairs:
        return {}
    codes, scores = zip(*pairs)
    arr = np.asarray(scores, dtype="float64")
    lo, hi = float(arr.min()), float(arr.max())
    span = hi - lo
    if span < eps:
        return {c: 1.0 for c in codes}
    norm = (arr - lo) / span
    return {c: float(s) for c, s in zip(codes, norm)}


def blend_scores(
    lexical: Sequence[Tuple[str, float]],
    semantic: Sequence[Tuple[str, float]],
    alpha: float,
) -> List[Tuple[str, ScoreBreakdown]]:
    """
    Combine both signals over the union of their candidates.  Sorted by
    blended score descending, code ascending.
    """
    lex_norm = min_max_normalize(lexical)
    sem_norm = min_max_normalize(semantic)
    lex_raw = dict(lexical)
    sem_raw = dict(semantic)
    fused: List[Tuple[str, ScoreBreakdown]] = []
    for code in set(lex_norm) | set(sem_norm):
        lx = lex_norm.get(code, 0.0)
        sm = sem_norm.get(code, 0.0)
        fused.append(
            (
                code,
                ScoreBreakdown(
                    lexical=lx,
                    semantic=sm,
                    blended=alpha * lx + (1.0 - alpha) * sm,
                    lexical_raw=lex_raw.get(code),
                    semantic_raw=sem_raw.get(code),
                ),
            )
        )
    fused.sort(key=lambda x: (-x[1].blended, x[0]))
    return fused


def check_k(k) -> int:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise InvalidQueryError(f"k must be an integer, got {k!r}")
    if k < 1:
        raise InvalidQueryError(f"k must be >= 1, got {k}")
    return int(k)


class HybridRanker:
    """
    Merges lexical and semantic strategies into one ranked list.

    The ranker is read-only against its indices; the cache handle is the
    only shared mutable resource and it is passed in explicitly.
    """

    def __init__(
        self,
        corpus: Corpus,
        lexical: LexicalStrategy,
        semantic: Optional[SemanticStrategy] = None,
        cache: Optional[ResultCache] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.corpus = corpus
        self.lexical = lexical
        self.semantic = semantic
        self.cache = cache
        self.config = config or EngineConfig(cache_dir=None)

    @property
    def semantic_enabled(self) -> bool:
        return self.semantic is not None and self.semantic.enabled

    def config_fingerprint(self, alpha: float, semantic_active: bool) -> str:
        return config_fingerprint(
            alpha=alpha,
            pruning=self.lexical.pruning,
            lexical_top_n=self.config.lexical_top_n,
            semantic_top_n=self.config.semantic_top_n if semantic_active else None,
            semantic_model=self.semantic.model_id if semantic_active else "lexical-only",
        )

    def _semantic_scores(self, text: str) -> Optional[ScoredPairs]:
        """Semantic candidates, or ``None`` when the signal is unavailable."""
        if not self.semantic_enabled:
            return None
        try:
            return self.semantic.score(text, top_n=self.config.semantic_top_n)
        except EmbeddingUnavailableError as e:
            logger.warning("Semantic scoring unavailable, falling back to lexical only: {}", e)
            return None

    def rank(self, text: str, alpha: float) -> Tuple[List[CandidateResult], bool]:
        """
        Score and blend without touching the cache.  Returns the full
        ranked list and whether the semantic signal took part.
        """
        lexical = self.lexical.score(text, top_n=self.config.lexical_top_n)
        semantic = self._semantic_scores(text)
        semantic_used = semantic is not None
        if not semantic_used:
            alpha = 1.0
        fused = blend_scores(lexical, semantic or [], alpha)
        results = [
            CandidateResult(
                code=code,
                description=self.corpus.lookup(code).description,
                scores=scores,
                rank=i,
            )
            for i, (code, scores) in enumerate(fused, 1)
        ]
        logger.info(
            "Ranked {} fused candidates (lexical={}, semantic={})",
            len(results),
            len(lexical),
            len(semantic) if semantic_used else "disabled",
        )
        return results, semantic_used

    def recommend(
        self,
        query: str,
        k: int = DEFAULT_K,
        alpha: Optional[float] = None,
    ) -> Recommendation:
        """
        Return at most ``k`` candidates for ``query``, best first.

        Raises :class:`InvalidQueryError` for ``k < 1`` or a non-string
        query and :class:`InvalidConfigError` for alpha outside [0, 1],
        before doing any work.  A blank query yields an empty result.
        """
        if not isinstance(query, str):
            raise InvalidQueryError(f"query must be a string, got {type(query).__name__}")
        k = check_k(k)
        alpha = self.config.alpha if alpha is None else check_alpha(alpha)

        semantic_active = self.semantic_enabled
        base = dict(
            query=query,
            k=k,
            semantic_enabled=semantic_active,
            corpus_fingerprint=self.corpus.fingerprint,
        )
        if not query.strip():
            return Recommendation(**base)

        effective_alpha = alpha if semantic_active else 1.0
        key = QueryKey(
            corpus=self.corpus.fingerprint,
            query=query_fingerprint(query),
            config=self.config_fingerprint(effective_alpha, semantic_active),
        )

        if self.cache is not None:
            cached = self.cache.get_query(key)
            if cached is not None and (cached.complete or cached.depth >= k):
                logger.info("Query cache hit ({} cached results)", len(cached.results))
                results = [r.model_copy(deep=True) for r in cached.results[:k]]
                return Recommendation(results=results, cache_hit=True, **base)

        results, semantic_used = self.rank(query, effective_alpha)
        depth = max(k, self.config.query_cache_depth)

        # Only cache rankings computed with every configured signal.
        if self.cache is not None and semantic_used == semantic_active:
            self.cache.put_query(
                key,
                CachedRanking(
                    corpus_fingerprint=key.corpus,
                    config_fingerprint=key.config,
                    query_fingerprint=key.query,
                    results=results[:depth],
                    depth=depth,
                    complete=len(results) <= depth,
                    created_at=datetime.now(timezone.utc),
                ),
            )

        base["semantic_enabled"] = semantic_used
        return Recommendation(results=results[:k], **base)
