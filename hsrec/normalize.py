from __future__ import annotations

"""
Text normalization utilities shared by the corpus loader, the lexical
index and the query cache.

These helpers perform basic cleaning (HTML stripping, unicode
normalization, whitespace collapsing), lexical tokenization with
synonyms, stopword removal and light stemming, and the token-set
canonicalisation used for query fingerprints.  Keeping normalization
centralized here guarantees that taxonomy descriptions and user
queries are tokenized identically.
"""

import re
import unicodedata
from typing import Iterable, List

from bs4 import BeautifulSoup

from .config import MAX_INPUT_CHARS, STOPWORDS, SYNONYM_MAP


# ---------------------------
# Basic helpers
# ---------------------------

def clamp_text_length(text: str, max_chars: int = MAX_INPUT_CHARS) -> str:
    return str(text)[:max_chars]


def strip_html(raw: str) -> str:
    """
    Drop inline markup (``<i>``, ``<sup>``, ``<br>``) that some tariff
    exports leave in the description column, keeping the text between
    tags.
    """
    if not raw or "<" not in raw:
        return raw or ""
    soup = BeautifulSoup(raw, "lxml")
    for br in soup.find_all("br"):
        br.replace_with(" ")
    return soup.get_text()


def normalize_unicode(text: str) -> str:
    """NFC-normalize so visually identical strings hash identically."""
    if not text:
        return ""
    return unicodedata.normalize("NFC", text)


WHITESPACE_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text).strip() if text else ""


# ---------------------------
# Tokenization, synonyms, stemming
# ---------------------------

WORD_SPLIT_RE = re.compile(r"[^\w]+")


def simple_tokenize(text: str) -> List[str]:
    """
    Lowercase and split on non-word separators.  Returns a list of
    tokens with empty strings and underscores-only pieces removed.
    """
    if not text:
        return []
    text = text.lower()
    return [t for t in WORD_SPLIT_RE.split(text) if t and t.strip("_")]


def apply_synonyms(tokens: Iterable[str]) -> List[str]:
    """
    Apply the deterministic synonym map.  A synonym that expands to
    multiple words is inlined into the token list.
    """
    normalized: List[str] = []
    for tok in tokens:
        replacement = SYNONYM_MAP.get(tok)
        if replacement:
            normalized.extend(sub for sub in replacement.split() if sub)
        else:
            normalized.append(tok)
    return normalized


def light_stem(token: str) -> str:
    """
    Strip common English plural endings so that "horses" matches
    "horse".  Deliberately conservative: tokens of four characters or
    fewer, digits and "-ss" endings are left alone.
    """
    if len(token) <= 4 or token.isdigit():
        return token
    if token.endswith("ies") and len(token) > 5:
        return token[:-3] + "y"
    if token.endswith(("ches", "shes", "xes", "sses")):
        return token[:-2]
    if token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


# ---------------------------
# High-level normalization pipelines
# ---------------------------

def basic_clean(text: str) -> str:
    """
    Canonical form of a description or query: length-capped, markup
    removed, NFC, single-spaced.  Descriptions are stored in this form;
    queries are cleaned the same way before tokenizing or embedding.
    """
    if text is None:
        return ""
    return normalize_whitespace(normalize_unicode(strip_html(clamp_text_length(text))))


def lexical_tokens(text: str) -> List[str]:
    """
    Token list for the lexical index: clean, tokenize, expand synonyms,
    drop stopwords, stem.  An empty or all-stopword input yields ``[]``.
    """
    tokens = apply_synonyms(simple_tokenize(basic_clean(text)))
    return [light_stem(t) for t in tokens if t not in STOPWORDS]


def fingerprint_tokens(text: str) -> List[str]:
    """
    Canonical token set for query fingerprints: case-folded,
    whitespace-collapsed, de-duplicated and sorted.  Token order is
    intentionally ignored, so "breeding horses" and "horses breeding"
    share a cache entry.
    """
    if not text:
        return []
    folded = normalize_whitespace(normalize_unicode(str(text))).casefold()
    return sorted(set(folded.split(" "))) if folded else []
