from __future__ import annotations

"""
Content-addressed result cache.

Two tiers with distinct lifetimes live under one root directory:

* ``indices/<corpus fingerprint>/`` holds built index artifacts: the
  pickled lexical index and, per embedding model, the ``.npy`` matrix
  plus a JSON list of codes (row index -> code).  A new corpus
  fingerprint means a new directory; stale directories are removed
  wholesale by :meth:`ResultCache.purge_stale`, never patched.
* ``queries/<corpus fingerprint>/<digest>.json`` holds ranked result
  lists keyed by (corpus fingerprint, query fingerprint, engine config
  fingerprint).

Caching is an optimisation.  Reads never raise: any problem is a miss.
Writes are atomic (temp file + ``os.replace``), last-writer-wins, and a
storage fault is logged and swallowed.  A cache without a root keeps
query results in process memory only; the in-memory tier is an LRU
bounded by ``memory_entries``.
"""

import io
import json
import os
import pickle
import re
import shutil
import tempfile
import threading
from collections import OrderedDict
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from loguru import logger

from .config import CACHE_LOCK_STRIPES, QUERY_CACHE_MEMORY_ENTRIES, CachedRanking, fingerprint_text
from .errors import CacheWriteError
from .lexical_index import LexicalIndex
from .normalize import fingerprint_tokens


def query_fingerprint(text: str) -> str:
    """Hash of the case-folded, sorted token set of ``text``."""
    return fingerprint_text(" ".join(fingerprint_tokens(text)))


def config_fingerprint(**settings) -> str:
    """Hash of the engine settings that influence a ranking."""
    return fingerprint_text(json.dumps(settings, sort_keys=True, default=str))


class QueryKey(NamedTuple):
    corpus: str
    query: str
    config: str

    @property
    def digest(self) -> str:
        return fingerprint_text(f"{self.corpus}|{self.query}|{self.config}")


def _model_slug(model_id: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", model_id).strip("_")[:48]
    return f"{slug}-{fingerprint_text(model_id)[:8]}"


class ResultCache:
    """
    Process-scoped cache handle bound to one corpus fingerprint.

    Created when a corpus is loaded and closed when it is replaced; the
    ranker receives it explicitly.
    """

    def __init__(
        self,
        root: Optional[Path],
        corpus_fingerprint: str,
        memory_entries: int = QUERY_CACHE_MEMORY_ENTRIES,
        lock_stripes: int = CACHE_LOCK_STRIPES,
    ) -> None:
        self.root = Path(root) if root is not None else None
        self.corpus_fingerprint = corpus_fingerprint
        self.memory_entries = max(1, memory_entries)
        self._memory: "OrderedDict[str, CachedRanking]" = OrderedDict()
        self._memory_guard = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(max(1, lock_stripes))]
        self._open = False

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def open(self) -> "ResultCache":
        if self.root is not None:
            try:
                self.index_dir.mkdir(parents=True, exist_ok=True)
                self.query_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("Cache directory {} unusable ({}); using memory only", self.root, e)
                self.root = None
        self._open = True
        logger.info(
            "Result cache opened (root={}, corpus={})",
            self.root,
            self.corpus_fingerprint[:12],
        )
        return self

    def close(self) -> None:
        with self._memory_guard:
            self._memory.clear()
        self._open = False

    def __enter__(self) -> "ResultCache":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def persistent(self) -> bool:
        return self.root is not None

    @property
    def index_dir(self) -> Path:
        return self.root / "indices" / self.corpus_fingerprint

    @property
    def query_dir(self) -> Path:
        return self.root / "queries" / self.corpus_fingerprint

    # -----------------------------------------------------------------
    # Low-level IO
    # -----------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        """Striped write lock: keys sharing a digest prefix share a lock."""
        return self._stripes[int(fingerprint_text(key)[:8], 16) % len(self._stripes)]

    def _recall(self, digest: str) -> Optional[CachedRanking]:
        with self._memory_guard:
            value = self._memory.get(digest)
            if value is not None:
                self._memory.move_to_end(digest)
            return value

    def _remember(self, digest: str, value: CachedRanking) -> None:
        with self._memory_guard:
            self._memory[digest] = value
            self._memory.move_to_end(digest)
            while len(self._memory) > self.memory_entries:
                self._memory.popitem(last=False)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        """Write ``data`` to ``path`` atomically or raise CacheWriteError."""
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CacheWriteError(f"cannot write {path}: {e}") from e

    def _write(self, key: str, path: Path, data: bytes) -> bool:
        with self._lock_for(key):
            try:
                self._atomic_write(path, data)
            except CacheWriteError as e:
                logger.warning("Cache write failed, continuing without it: {}", e)
                return False
        return True

    # -----------------------------------------------------------------
    # Index tier
    # -----------------------------------------------------------------

    def save_lexical(self, index: LexicalIndex) -> bool:
        if self.root is None:
            return False
        path = self.index_dir / "lexical.pkl"
        ok = self._write("lexical", path, pickle.dumps(index, protocol=pickle.HIGHEST_PROTOCOL))
        if ok:
            logger.info("Lexical index written to {}", path)
        return ok

    def load_lexical(self, expected_codes: Optional[List[str]] = None) -> Optional[LexicalIndex]:
        if self.root is None:
            return None
        path = self.index_dir / "lexical.pkl"
        if not path.exists():
            return None
        try:
            with path.open("rb") as f:
                index = pickle.load(f)
        except Exception as e:
            logger.warning("Failed to load cached lexical index {}: {}", path, e)
            return None
        if not isinstance(index, LexicalIndex):
            return None
        if expected_codes is not None and index.codes != expected_codes:
            logger.warning("Cached lexical index does not match corpus; ignoring it")
            return None
        logger.info("Loaded lexical index from {} ({} documents)", path, index.size)
        return index

    def _embedding_paths(self, model_id: str) -> Tuple[Path, Path]:
        slug = _model_slug(model_id)
        return self.index_dir / f"embeddings-{slug}.npy", self.index_dir / f"codes-{slug}.json"

    def save_embeddings(self, model_id: str, matrix: np.ndarray, codes: List[str]) -> bool:
        if self.root is None:
            return False
        emb_path, ids_path = self._embedding_paths(model_id)
        buf = _npy_bytes(matrix)
        # codes last: load_embeddings treats a missing code list as a miss
        ok = self._write(f"emb:{model_id}", emb_path, buf)
        ok = ok and self._write(
            f"ids:{model_id}", ids_path, json.dumps(list(codes)).encode("utf-8")
        )
        if ok:
            logger.info("Saved item embeddings to {}", emb_path)
        return ok

    def load_embeddings(self, model_id: str) -> Optional[Tuple[np.ndarray, List[str]]]:
        if self.root is None:
            return None
        emb_path, ids_path = self._embedding_paths(model_id)
        if not emb_path.exists() or not ids_path.exists():
            return None
        try:
            matrix = np.load(emb_path, allow_pickle=False)
            with ids_path.open("r", encoding="utf-8") as f:
                codes = json.load(f)
        except Exception as e:
            logger.warning("Failed to load cached embeddings {}: {}", emb_path, e)
            return None
        if not isinstance(codes, list) or matrix.shape[0] != len(codes):
            logger.warning(
                "Embeddings ({}) and code list ({}) length mismatch; ignoring cache",
                matrix.shape[0],
                len(codes) if isinstance(codes, list) else "?",
            )
            return None
        logger.info("Loaded embeddings: shape={}, model={}", matrix.shape, model_id)
        return matrix, [str(c) for c in codes]

    def purge_stale(self) -> int:
        """Remove index and query directories of other corpus fingerprints."""
        if self.root is None:
            return 0
        removed = 0
        for tier in ("indices", "queries"):
            base = self.root / tier
            if not base.is_dir():
                continue
            for child in base.iterdir():
                if child.is_dir() and child.name != self.corpus_fingerprint:
                    shutil.rmtree(child, ignore_errors=True)
                    removed += 1
        if removed:
            logger.info("Purged {} stale cache directories", removed)
        return removed

    # -----------------------------------------------------------------
    # Query tier
    # -----------------------------------------------------------------

    def _query_path(self, key: QueryKey) -> Path:
        return self.query_dir / f"{key.digest}.json"

    def _valid(self, key: QueryKey, value: CachedRanking) -> bool:
        return (
            value.corpus_fingerprint == self.corpus_fingerprint
            and key.corpus == self.corpus_fingerprint
            and value.query_fingerprint == key.query
            and value.config_fingerprint == key.config
        )

    def get_query(self, key: QueryKey) -> Optional[CachedRanking]:
        """Return the cached ranking for ``key`` or ``None``.  Never raises."""
        if key.corpus != self.corpus_fingerprint:
            return None
        digest = key.digest
        value = self._recall(digest)
        if value is None and self.root is not None:
            path = self._query_path(key)
            try:
                if path.exists():
                    value = CachedRanking.model_validate_json(path.read_text(encoding="utf-8"))
            except Exception as e:
                logger.warning("Failed to read cache entry {}: {}", path.name, e)
                value = None
            if value is not None:
                self._remember(digest, value)
        if value is None or not self._valid(key, value):
            return None
        return value

    def put_query(self, key: QueryKey, value: CachedRanking) -> bool:
        """
        Store ``value`` under ``key``.  Returns ``False`` when the entry
        was rejected or could not be persisted; never raises.
        """
        if not self._valid(key, value):
            logger.warning("Refusing to cache a ranking under a mismatched key")
            return False
        digest = key.digest
        self._remember(digest, value)
        if self.root is None:
            return True
        return self._write(digest, self._query_path(key), value.model_dump_json().encode("utf-8"))


def _npy_bytes(matrix: np.ndarray) -> bytes:
    buf = io.BytesIO()
    np.save(buf, np.asarray(matrix, dtype="float32"), allow_pickle=False)
    return buf.getvalue()
