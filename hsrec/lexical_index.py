from __future__ import annotations

"""
TF-IDF lexical index over taxonomy descriptions.

Descriptions are vectorised with scikit-learn's ``TfidfVectorizer``
driven by our own tokenizer (synonyms, stopwords, light stemming), with
smoothed idf ``ln((1 + N) / (1 + df)) + 1`` and L2-normalised rows.
Queries are scored by cosine similarity, which for unit rows is the
sparse product ``X @ q.T``.  The column-major copy of the matrix acts as
posting lists: a query touches only the rows that share at least one
term with it instead of scanning the whole corpus.

The built index is picklable so the result cache can persist it keyed
by corpus fingerprint.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from loguru import logger
from sklearn.feature_extraction.text import TfidfVectorizer

from .config import ClassificationEntry
from .normalize import lexical_tokens


def make_vectorizer() -> TfidfVectorizer:
    return TfidfVectorizer(
        tokenizer=lexical_tokens,
        token_pattern=None,
        lowercase=False,
        smooth_idf=True,
        sublinear_tf=False,
        norm="l2",
        dtype=np.float64,
    )


class LexicalIndex:
    """
    Immutable TF-IDF index.  Use :meth:`build` to construct one from
    corpus entries.
    """

    def __init__(
        self,
        codes: List[str],
        desc_lengths: List[int],
        vectorizer: Optional[TfidfVectorizer],
        matrix: sp.csr_matrix,
    ) -> None:
        self.codes = codes
        self.desc_lengths = desc_lengths
        self.vectorizer = vectorizer
        self.matrix = matrix
        self.postings = matrix.tocsc()

    @property
    def size(self) -> int:
        return len(self.codes)

    @property
    def vocab(self) -> Dict[str, int]:
        return dict(self.vectorizer.vocabulary_) if self.vectorizer is not None else {}

    @property
    def idf(self) -> np.ndarray:
        return self.vectorizer.idf_ if self.vectorizer is not None else np.zeros(0)

    @property
    def doc_freq(self) -> np.ndarray:
        return np.diff(self.postings.indptr)

    @classmethod
    def build(cls, entries: Sequence[ClassificationEntry]) -> "LexicalIndex":
        logger.info("Building lexical index over {} documents", len(entries))
        texts = [e.description for e in entries]
        vectorizer: Optional[TfidfVectorizer] = make_vectorizer()
        try:
            matrix = vectorizer.fit_transform(texts).tocsr()
        except ValueError as e:
            # every description reduced to stopwords
            logger.warning("Lexical index has an empty vocabulary: {}", e)
            vectorizer = None
            matrix = sp.csr_matrix((len(texts), 0), dtype=np.float64)

        index = cls(
            codes=[e.code for e in entries],
            desc_lengths=[len(t) for t in texts],
            vectorizer=vectorizer,
            matrix=matrix,
        )
        logger.info(
            "Lexical index built: {} documents, vocabulary {}",
            index.size,
            matrix.shape[1],
        )
        return index

    def query_vector(self, text: str) -> sp.csr_matrix:
        """L2-normalised 1 x V query row; unknown terms contribute nothing."""
        if self.vectorizer is None:
            return sp.csr_matrix((1, 0), dtype=np.float64)
        return self.vectorizer.transform([text or ""])

    def candidate_rows(self, qvec: sp.csr_matrix) -> np.ndarray:
        """Rows sharing at least one term with ``qvec``."""
        return np.unique(self.postings[:, qvec.indices].indices)

    def query(
        self,
        text: str,
        top_n: Optional[int] = None,
        pruning: str = "postings",
    ) -> List[Tuple[str, float]]:
        """
        Score ``text`` against the corpus and return ``(code, score)``
        pairs sorted by descending cosine similarity.

        Ties prefer the shorter description (the more specific entry),
        then the code ascending.  Only positive scores are returned, so
        an empty or all-stopword query gives ``[]``.  ``pruning`` picks
        between scoring only rows reachable from the query's terms
        (``"postings"``) or every row (``"full"``); both produce the
        same candidates.
        """
        qvec = self.query_vector(text)
        if qvec.nnz == 0:
            return []
        if pruning == "full":
            doc_ids = np.arange(self.size)
            scores = (self.matrix @ qvec.T).toarray().ravel()
        else:
            doc_ids = self.candidate_rows(qvec)
            scores = (self.matrix[doc_ids] @ qvec.T).toarray().ravel()

        pairs = [(int(d), float(s)) for d, s in zip(doc_ids, scores) if s > 0.0]
        pairs.sort(key=lambda p: (-p[1], self.desc_lengths[p[0]], self.codes[p[0]]))
        if top_n is not None:
            pairs = pairs[:top_n]
        return [(self.codes[d], s) for d, s in pairs]
