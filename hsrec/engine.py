from __future__ import annotations

"""
Engine lifecycle: corpus load, index build, cache handle, queries.

``load`` builds everything for a corpus (reusing cached index
artifacts when the corpus fingerprint and embedding model match) into
one immutable state snapshot and only then swaps it in, so a query
never sees a partially built index.  ``reload`` does the same and
closes the previous cache handle.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .augment import AnthropicAugmenter, AugmentationStage, Augmenter
from .cache import ResultCache
from .config import DEFAULT_K, ClassificationEntry, EngineConfig, HealthResponse, Recommendation
from .corpus import Corpus, SourceLike, load_corpus
from .errors import EngineNotReadyError
from .lexical_index import LexicalIndex
from .retrieval import HybridRanker, LexicalStrategy, SemanticStrategy
from .semantic_index import Embedder, SemanticIndex, load_default_embedder


@dataclass(frozen=True)
class EngineState:
    corpus: Corpus
    lexical: LexicalIndex
    semantic: SemanticIndex
    cache: ResultCache
    ranker: HybridRanker


class RecommendationEngine:
    """Facade tying the corpus store, indices, cache and ranker together."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        embedder: Optional[Embedder] = None,
        augmenter: Optional[Augmenter] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.embedder = embedder
        self.augmentation = AugmentationStage(
            augmenter,
            timeout=self.config.augment_timeout,
            top_n=self.config.augment_top_n,
        )
        self._state: Optional[EngineState] = None
        self._swap_lock = threading.Lock()

    @classmethod
    def from_env(cls, config: Optional[EngineConfig] = None) -> "RecommendationEngine":
        """Engine with the default sentence-transformers embedder and hosted augmenter."""
        config = config or EngineConfig.from_env()
        return cls(
            config=config,
            embedder=load_default_embedder(),
            augmenter=AnthropicAugmenter.from_env(http_timeout=config.augment_timeout),
        )

    # -----------------------------------------------------------------
    # Build
    # -----------------------------------------------------------------

    def _build_lexical(self, corpus: Corpus, cache: ResultCache) -> LexicalIndex:
        index = cache.load_lexical(expected_codes=corpus.codes)
        if index is None:
            index = LexicalIndex.build(corpus.entries)
            cache.save_lexical(index)
        return index

    def _build_semantic(self, corpus: Corpus, cache: ResultCache) -> SemanticIndex:
        if self.embedder is None:
            logger.warning("Embedding capability unavailable; semantic index disabled")
            return SemanticIndex.disabled(corpus.codes)
        cached = cache.load_embeddings(self.embedder.model_id)
        if cached is not None:
            matrix, codes = cached
            index = SemanticIndex.from_matrix(corpus.entries, matrix, codes, self.embedder)
            if index is not None:
                return index
        index = SemanticIndex.build(
            corpus.entries,
            self.embedder,
            batch_size=self.config.embed_batch_size,
            workers=self.config.embed_workers,
        )
        if index.enabled:
            cache.save_embeddings(self.embedder.model_id, index.matrix, index.codes)
        return index

    def _build_state(self, source: SourceLike) -> EngineState:
        corpus = load_corpus(source, max_skip_ratio=self.config.max_skip_ratio)
        cache = ResultCache(
            self.config.cache_dir,
            corpus.fingerprint,
            memory_entries=self.config.query_cache_memory_entries,
        ).open()
        try:
            lexical = self._build_lexical(corpus, cache)
            semantic = self._build_semantic(corpus, cache)
        except BaseException:
            cache.close()
            raise
        ranker = HybridRanker(
            corpus,
            LexicalStrategy(lexical, pruning=self.config.pruning),
            SemanticStrategy(semantic),
            cache=cache,
            config=self.config,
        )
        return EngineState(corpus=corpus, lexical=lexical, semantic=semantic, cache=cache, ranker=ranker)

    def load(self, source: SourceLike) -> Corpus:
        """
        Load ``source`` and build all indices, then make them live.

        Raises :class:`CorpusIntegrityError` if the source is unusable;
        in that case any previously loaded state stays live.
        """
        state = self._build_state(source)
        with self._swap_lock:
            previous, self._state = self._state, state
        if previous is not None:
            previous.cache.close()
        state.cache.purge_stale()
        logger.info(
            "Engine ready: {} entries, semantic={}, augmentation={}",
            len(state.corpus),
            state.semantic.enabled,
            self.augmentation.available,
        )
        return state.corpus

    def reload(self, source: SourceLike) -> Corpus:
        logger.info("Reloading corpus")
        return self.load(source)

    def close(self) -> None:
        with self._swap_lock:
            state, self._state = self._state, None
        if state is not None:
            state.cache.close()
        self.augmentation.close()

    def __enter__(self) -> "RecommendationEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._state is not None

    def _require_state(self) -> EngineState:
        state = self._state
        if state is None:
            raise EngineNotReadyError("No corpus loaded; call load() first")
        return state

    @property
    def corpus(self) -> Corpus:
        return self._require_state().corpus

    def recommend(
        self,
        query: str,
        k: int = DEFAULT_K,
        alpha: Optional[float] = None,
        augment: bool = True,
    ) -> Recommendation:
        """
        Ranked candidates for ``query``; optionally re-ranked by the
        augmentation capability.  Degradations are flagged on the result.
        """
        state = self._require_state()
        rec = state.ranker.recommend(query, k=k, alpha=alpha)
        if augment and self.augmentation.available and rec.results:
            results, augmented = self.augmentation.run(query, rec.results)
            rec = rec.model_copy(update={"results": results, "augmented": augmented})
        return rec

    def lookup(self, code: str) -> ClassificationEntry:
        return self._require_state().corpus.lookup(code)

    def status(self) -> HealthResponse:
        state = self._state
        if state is None:
            return HealthResponse(status="not_loaded", augmentation_available=self.augmentation.available)
        return HealthResponse(
            status="healthy",
            entries=len(state.corpus),
            corpus_fingerprint=state.corpus.fingerprint,
            semantic_enabled=state.semantic.enabled,
            embedding_model=state.semantic.model_id if state.semantic.enabled else None,
            augmentation_available=self.augmentation.available,
            cache_dir=str(state.cache.root) if state.cache.root is not None else None,
        )
