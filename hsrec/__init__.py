"""
Top-level package for the hsrec classification-code recommender.

This package loads a hierarchical reference taxonomy (e.g. tariff
codes with official descriptions), builds a TF-IDF lexical index and a
dense embedding index over the descriptions, and ranks candidate codes
for free-text product descriptions with a tunable blend of both
signals.  Built indices and per-query rankings are persisted in a
content-addressed cache, and an optional LLM pass can re-rank the top
candidates.  There are no side-effects on import.
"""

__version__ = "0.1.0"
