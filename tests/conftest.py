# tests/conftest.py
"""Shared fixtures: small taxonomies, deterministic embedders, fake augmenters.

No network and no model downloads: the embedding capability is a
token-hashing embedder and augmenters are in-process fakes.
"""

from __future__ import annotations

import hashlib
import time
from typing import List, Sequence

import numpy as np
import pytest

from hsrec.config import CandidateResult, EngineConfig
from hsrec.corpus import load_corpus
from hsrec.engine import RecommendationEngine
from hsrec.normalize import lexical_tokens


# === Capabilities ===


class HashingEmbedder:
    """Bag-of-tokens hashed into a small dense vector."""

    def __init__(self, dim: int = 32, model_id: str = "test-hashing") -> None:
        self.dim = dim
        self.model_id = f"{model_id}-{dim}"
        self.batch_calls = 0

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype="float32")
        for tok in lexical_tokens(text):
            h = int(hashlib.md5(tok.encode("utf-8")).hexdigest(), 16)
            vec[h % self.dim] += 1.0
        return vec

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        self.batch_calls += 1
        if not texts:
            return np.zeros((0, self.dim), dtype="float32")
        return np.vstack([self.embed(t) for t in texts])


class QueryFailingEmbedder(HashingEmbedder):
    """Builds fine, then fails for every query."""

    def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("embedding service down")

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        self.batch_calls += 1
        return np.vstack([HashingEmbedder.embed(self, t) for t in texts])


class BrokenEmbedder(HashingEmbedder):
    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        raise RuntimeError("model weights missing")


class ReverseAugmenter:
    def augment(self, query: str, candidates: List[CandidateResult]) -> List[CandidateResult]:
        out = []
        for c in reversed(candidates):
            c.rationale = f"reviewed for {query}"
            out.append(c)
        return out


class SlowAugmenter:
    def __init__(self, delay: float = 1.0) -> None:
        self.delay = delay

    def augment(self, query, candidates):
        time.sleep(self.delay)
        return list(reversed(candidates))


class RaisingAugmenter:
    def augment(self, query, candidates):
        raise ConnectionError("quota exceeded")


class UnknownCodeAugmenter:
    def augment(self, query, candidates):
        bogus = candidates[0].model_copy(update={"code": "9999.99"})
        return [bogus] + list(candidates[1:])


# === Data ===


HORSES = [
    {"code": "0101.21", "description": "Live horses, purebred breeding animals"},
    {"code": "0101.29", "description": "Live horses, other"},
]


TAXONOMY = [
    {"code": "0101.21", "description": "Live horses, purebred breeding animals", "category": "Live animals"},
    {"code": "0101.29", "description": "Live horses, other", "category": "Live animals"},
    {"code": "0102.21", "description": "Live cattle, purebred breeding animals", "category": "Live animals"},
    {"code": "0201.10", "description": "Carcasses and half-carcasses of bovine animals, fresh or chilled", "unit": "kg"},
    {"code": "0203.11", "description": "Carcasses and half-carcasses of swine, fresh or chilled", "unit": "kg"},
    {"code": "8471.30", "description": "Portable automatic data processing machines, weighing not more than 10 kg", "unit": "u"},
    {"code": "8517.13", "description": "Smartphones", "unit": "u", "regulatory_flags": "radio equipment"},
    {"code": "8528.72", "description": "Reception apparatus for television, colour", "unit": "u"},
    {"code": "6109.10", "description": "T-shirts, singlets and other vests, knitted or crocheted, of cotton", "unit": "u"},
    {"code": "6403.99", "description": "Other footwear with outer soles of rubber and uppers of leather", "unit": "2u"},
]


@pytest.fixture
def horses_rows() -> list[dict]:
    return [dict(r) for r in HORSES]


@pytest.fixture
def taxonomy_rows() -> list[dict]:
    return [dict(r) for r in TAXONOMY]


@pytest.fixture
def taxonomy(taxonomy_rows):
    return load_corpus(taxonomy_rows)


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def memory_config() -> EngineConfig:
    return EngineConfig(cache_dir=None, alpha=0.6)


@pytest.fixture
def disk_config(tmp_path) -> EngineConfig:
    return EngineConfig(cache_dir=tmp_path / "cache", alpha=0.6)


@pytest.fixture
def lexical_engine(memory_config, taxonomy_rows):
    engine = RecommendationEngine(config=memory_config)
    engine.load(taxonomy_rows)
    yield engine
    engine.close()


@pytest.fixture
def hybrid_engine(memory_config, taxonomy_rows, embedder):
    engine = RecommendationEngine(config=memory_config, embedder=embedder)
    engine.load(taxonomy_rows)
    yield engine
    engine.close()
