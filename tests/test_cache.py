# tests/test_cache.py
"""Tests for hsrec.cache: index artifacts and the query tier."""

from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from hsrec.cache import QueryKey, ResultCache, config_fingerprint, query_fingerprint
from hsrec.config import CachedRanking, CandidateResult, ScoreBreakdown
from hsrec.errors import CacheWriteError
from hsrec.lexical_index import LexicalIndex

FP = "a" * 64


def _key(corpus: str = FP, query: str = "live horses") -> QueryKey:
    return QueryKey(
        corpus=corpus,
        query=query_fingerprint(query),
        config=config_fingerprint(alpha=0.6, pruning="postings"),
    )


def _ranking(key: QueryKey, codes=("0101.21", "0101.29")) -> CachedRanking:
    results = [
        CandidateResult(code=c, description=f"entry {c}", scores=ScoreBreakdown(blended=1.0 / i), rank=i)
        for i, c in enumerate(codes, 1)
    ]
    return CachedRanking(
        corpus_fingerprint=key.corpus,
        config_fingerprint=key.config,
        query_fingerprint=key.query,
        results=results,
        depth=50,
        complete=True,
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def cache(tmp_path):
    c = ResultCache(tmp_path / "cache", FP).open()
    yield c
    c.close()


class TestFingerprints:
    def test_query_fingerprint_ignores_order_case_and_spacing(self):
        assert query_fingerprint("Live  Horses") == query_fingerprint("horses live")

    def test_query_fingerprint_distinguishes_tokens(self):
        assert query_fingerprint("live horses") != query_fingerprint("live cattle")

    def test_config_fingerprint_is_order_independent(self):
        assert config_fingerprint(alpha=0.5, pruning="full") == config_fingerprint(pruning="full", alpha=0.5)
        assert config_fingerprint(alpha=0.5) != config_fingerprint(alpha=0.6)


class TestQueryTier:
    def test_round_trip_on_disk(self, tmp_path, cache):
        key = _key()
        assert cache.put_query(key, _ranking(key)) is True
        # a fresh handle reads the file
        other = ResultCache(tmp_path / "cache", FP).open()
        got = other.get_query(key)
        assert got is not None
        assert [r.code for r in got.results] == ["0101.21", "0101.29"]

    def test_miss(self, cache):
        assert cache.get_query(_key(query="unseen")) is None

    def test_key_for_other_corpus_is_a_miss(self, cache):
        key = _key()
        cache.put_query(key, _ranking(key))
        assert cache.get_query(_key(corpus="b" * 64)) is None

    def test_mismatched_value_rejected(self, cache):
        key = _key()
        value = _ranking(_key(query="something else"))
        assert cache.put_query(key, value) is False
        assert cache.get_query(key) is None

    def test_corrupt_file_is_a_miss(self, cache):
        key = _key()
        cache.query_dir.mkdir(parents=True, exist_ok=True)
        (cache.query_dir / f"{key.digest}.json").write_text("{not json", encoding="utf-8")
        assert cache.get_query(key) is None

    def test_write_failure_is_swallowed(self, cache, monkeypatch):
        def boom(path, data):
            raise CacheWriteError("disk full")

        monkeypatch.setattr(ResultCache, "_atomic_write", staticmethod(boom))
        key = _key()
        assert cache.put_query(key, _ranking(key)) is False
        # still served from memory for this process
        assert cache.get_query(key) is not None

    def test_memory_only(self):
        c = ResultCache(None, FP).open()
        key = _key()
        assert not c.persistent
        assert c.put_query(key, _ranking(key)) is True
        assert c.get_query(key).results[0].code == "0101.21"

    def test_memory_tier_is_bounded(self):
        c = ResultCache(None, FP, memory_entries=3, lock_stripes=4).open()
        keys = [_key(query=f"query {i}") for i in range(2000)]
        for key in keys:
            assert c.put_query(key, _ranking(key))
        assert len(c._memory) == 3
        assert len(c._stripes) == 4
        assert c.get_query(keys[0]) is None
        assert c.get_query(keys[-1]) is not None

    def test_lru_keeps_recently_read_entries(self):
        c = ResultCache(None, FP, memory_entries=2).open()
        a, b, d = _key(query="a"), _key(query="b"), _key(query="d")
        c.put_query(a, _ranking(a))
        c.put_query(b, _ranking(b))
        assert c.get_query(a) is not None
        c.put_query(d, _ranking(d))
        assert c.get_query(a) is not None
        assert c.get_query(b) is None

    def test_evicted_entry_reloads_from_disk(self, tmp_path):
        c = ResultCache(tmp_path / "cache", FP, memory_entries=1).open()
        a, b = _key(query="a"), _key(query="b")
        c.put_query(a, _ranking(a))
        c.put_query(b, _ranking(b))
        assert c.get_query(a) is not None
        assert len(c._memory) == 1

    def test_unusable_root_falls_back_to_memory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        c = ResultCache(blocker, FP).open()
        assert not c.persistent
        assert c.is_open

    def test_close_drops_memory(self):
        c = ResultCache(None, FP).open()
        key = _key()
        c.put_query(key, _ranking(key))
        c.close()
        assert not c.is_open
        assert c.get_query(key) is None


class TestIndexTier:
    def test_lexical_round_trip(self, cache, taxonomy):
        index = LexicalIndex.build(taxonomy.entries)
        assert cache.save_lexical(index)
        restored = cache.load_lexical(expected_codes=taxonomy.codes)
        assert restored is not None
        assert restored.query("live horses") == index.query("live horses")

    def test_lexical_code_mismatch(self, cache, taxonomy):
        cache.save_lexical(LexicalIndex.build(taxonomy.entries))
        assert cache.load_lexical(expected_codes=["0101.21"]) is None

    def test_embeddings_round_trip(self, cache):
        matrix = np.eye(3, dtype="float32")
        assert cache.save_embeddings("org/model-v1", matrix, ["a", "b", "c"])
        got = cache.load_embeddings("org/model-v1")
        assert got is not None
        np.testing.assert_array_equal(got[0], matrix)
        assert got[1] == ["a", "b", "c"]

    def test_embeddings_keyed_by_model(self, cache):
        cache.save_embeddings("model-a", np.eye(2, dtype="float32"), ["a", "b"])
        assert cache.load_embeddings("model-b") is None

    def test_purge_stale(self, tmp_path):
        root = tmp_path / "cache"
        old = ResultCache(root, "old").open()
        key = _key(corpus="old")
        old.put_query(key, _ranking(key))
        old.save_embeddings("m", np.eye(2, dtype="float32"), ["a", "b"])
        old.close()

        new = ResultCache(root, FP).open()
        assert new.purge_stale() == 2
        assert not (root / "indices" / "old").exists()
        assert not (root / "queries" / "old").exists()
        assert new.index_dir.exists()
