# tests/test_engine.py
"""End-to-end tests for hsrec.engine."""

from __future__ import annotations

import threading

import pytest

from hsrec.config import EngineConfig
from hsrec.engine import RecommendationEngine
from hsrec.errors import CorpusIntegrityError, EngineNotReadyError, InvalidQueryError, NotFoundError

from conftest import BrokenEmbedder, HashingEmbedder, ReverseAugmenter, SlowAugmenter


def _dumps(rec):
    return [r.model_dump() for r in rec.results]


class TestLifecycle:
    def test_not_ready(self):
        engine = RecommendationEngine(config=EngineConfig(cache_dir=None))
        assert not engine.ready
        assert engine.status().status == "not_loaded"
        with pytest.raises(EngineNotReadyError):
            engine.recommend("horses")
        with pytest.raises(EngineNotReadyError):
            engine.lookup("0101.21")

    def test_status(self, hybrid_engine, taxonomy):
        status = hybrid_engine.status()
        assert status.status == "healthy"
        assert status.entries == len(taxonomy)
        assert status.corpus_fingerprint == taxonomy.fingerprint
        assert status.semantic_enabled
        assert status.embedding_model == "test-hashing-32"
        assert not status.augmentation_available

    def test_lookup(self, lexical_engine):
        assert lexical_engine.lookup("8517.13").attributes["regulatory_flags"] == "radio equipment"
        with pytest.raises(NotFoundError):
            lexical_engine.lookup("0000.00")

    def test_failed_reload_keeps_previous_state(self, lexical_engine, taxonomy):
        with pytest.raises(CorpusIntegrityError):
            lexical_engine.reload([{"code": "", "description": "broken"}])
        assert lexical_engine.ready
        assert lexical_engine.corpus.fingerprint == taxonomy.fingerprint

    def test_context_manager_closes(self, memory_config, horses_rows):
        with RecommendationEngine(config=memory_config) as engine:
            engine.load(horses_rows)
            assert engine.ready
        assert not engine.ready


class TestRecommend:
    def test_horse_for_breeding(self, memory_config, horses_rows):
        with RecommendationEngine(config=memory_config) as engine:
            engine.load(horses_rows)
            rec = engine.recommend("horse for breeding", k=2)
        assert rec.codes == ["0101.21", "0101.29"]

    def test_k_zero(self, hybrid_engine):
        with pytest.raises(InvalidQueryError):
            hybrid_engine.recommend("horses", k=0)

    def test_k_larger_than_corpus(self, memory_config, horses_rows):
        with RecommendationEngine(config=memory_config) as engine:
            engine.load(horses_rows)
            assert len(engine.recommend("live horses", k=3).results) == 2

    def test_empty_query(self, hybrid_engine):
        rec = hybrid_engine.recommend("", k=5)
        assert rec.results == []
        assert not rec.cache_hit

    def test_hybrid_flags(self, hybrid_engine):
        rec = hybrid_engine.recommend("portable computer", k=3)
        assert rec.semantic_enabled
        assert not rec.augmented
        assert rec.codes[0] == "8471.30"

    def test_lexical_only_degradation(self, lexical_engine):
        rec = lexical_engine.recommend("live horses", k=5)
        assert not rec.semantic_enabled
        assert all(r.scores.semantic == 0.0 for r in rec.results)
        assert rec.results[0].scores.blended == pytest.approx(1.0)

    def test_broken_embedder_degrades_at_load(self, memory_config, taxonomy_rows):
        with RecommendationEngine(config=memory_config, embedder=BrokenEmbedder()) as engine:
            engine.load(taxonomy_rows)
            assert not engine.status().semantic_enabled
            assert not engine.recommend("live horses").semantic_enabled

    def test_concurrent_queries_agree(self, hybrid_engine):
        expected = _dumps(hybrid_engine.recommend("fresh swine carcasses", k=5, augment=False))
        results = []

        def worker():
            results.append(_dumps(hybrid_engine.recommend("fresh swine carcasses", k=5)))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 8
        assert all(r == expected for r in results)


class TestAugmentation:
    def test_augmented_results_never_cached(self, memory_config, taxonomy_rows, embedder):
        with RecommendationEngine(config=memory_config, embedder=embedder, augmenter=ReverseAugmenter()) as engine:
            engine.load(taxonomy_rows)
            plain = engine.recommend("live animals", k=4, augment=False)
            augmented = engine.recommend("live animals", k=4)
            again = engine.recommend("live animals", k=4, augment=False)
        assert augmented.augmented
        assert augmented.codes == list(reversed(plain.codes))
        assert again.cache_hit
        assert again.codes == plain.codes
        assert all(r.rationale is None for r in again.results)

    def test_slow_augmenter_falls_back(self, taxonomy_rows, embedder):
        config = EngineConfig(cache_dir=None, augment_timeout=0.05)
        with RecommendationEngine(config=config, embedder=embedder, augmenter=SlowAugmenter(1.0)) as engine:
            engine.load(taxonomy_rows)
            plain = engine.recommend("live animals", k=4, augment=False)
            rec = engine.recommend("live animals", k=4)
        assert not rec.augmented
        assert _dumps(rec) == _dumps(plain)


class TestPersistence:
    def test_restart_reuses_indices_and_queries(self, disk_config, taxonomy_rows):
        first_embedder = HashingEmbedder()
        with RecommendationEngine(config=disk_config, embedder=first_embedder) as engine:
            engine.load(taxonomy_rows)
            before = engine.recommend("fresh bovine carcasses", k=5)
            fingerprint = engine.corpus.fingerprint
        assert first_embedder.batch_calls == 1
        index_dir = disk_config.cache_dir / "indices" / fingerprint
        assert (index_dir / "lexical.pkl").exists()
        assert any(index_dir.glob("embeddings-*.npy"))

        second_embedder = HashingEmbedder()
        with RecommendationEngine(config=disk_config, embedder=second_embedder) as engine:
            engine.load(taxonomy_rows)
            after = engine.recommend("fresh bovine carcasses", k=5)
        # embeddings came from disk
        assert second_embedder.batch_calls == 0
        assert after.cache_hit
        assert _dumps(after) == _dumps(before)

    def test_changed_corpus_invalidates(self, disk_config, taxonomy_rows):
        with RecommendationEngine(config=disk_config, embedder=HashingEmbedder()) as engine:
            engine.load(taxonomy_rows)
            old_fp = engine.corpus.fingerprint
            engine.recommend("live horses", k=5)

            changed = [dict(r) for r in taxonomy_rows]
            changed[1]["description"] = "Live ponies and horses, other"
            engine.reload(changed)
            rec = engine.recommend("live horses", k=5)

        assert rec.corpus_fingerprint != old_fp
        assert not rec.cache_hit
        described = {r.code: r.description for r in rec.results}
        assert described["0101.29"] == "Live ponies and horses, other"
        # stale artifacts purged on load
        assert not (disk_config.cache_dir / "indices" / old_fp).exists()

    def test_different_embedding_model_rebuilds(self, disk_config, taxonomy_rows):
        with RecommendationEngine(config=disk_config, embedder=HashingEmbedder(dim=32)) as engine:
            engine.load(taxonomy_rows)
            engine.recommend("live horses", k=5)
        other = HashingEmbedder(dim=16)
        with RecommendationEngine(config=disk_config, embedder=other) as engine:
            engine.load(taxonomy_rows)
            rec = engine.recommend("live horses", k=5)
        assert other.batch_calls == 1
        assert not rec.cache_hit


class TestFromEnv:
    def test_config_timeout_reaches_augmenter(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "secret")
        monkeypatch.setattr("hsrec.engine.load_default_embedder", lambda: None)
        config = EngineConfig(cache_dir=None, augment_timeout=2.5)
        engine = RecommendationEngine.from_env(config)
        try:
            assert engine.augmentation.timeout == 2.5
            assert engine.augmentation.augmenter.http_timeout == 2.5
        finally:
            engine.close()

    def test_memory_bound_reaches_cache(self, taxonomy_rows):
        config = EngineConfig(cache_dir=None, query_cache_memory_entries=2)
        with RecommendationEngine(config=config) as engine:
            engine.load(taxonomy_rows)
            for q in ["live horses", "live cattle", "swine", "cotton"]:
                engine.recommend(q, k=3)
            assert len(engine._require_state().cache._memory) == 2
