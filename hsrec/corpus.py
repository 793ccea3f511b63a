from __future__ import annotations

"""
Corpus store: load and normalise the reference taxonomy.

This module accepts a taxonomy export (CSV/TSV, Excel, JSON/JSONL), a
pandas DataFrame or any iterable of mappings, maps arbitrary column
names to a canonical schema, cleans the fields and produces an
immutable :class:`Corpus`: the ordered entries, an O(1) code index and
a content fingerprint used as the cache-invalidation key.

Malformed rows (missing code, empty description, duplicate code) are
skipped and counted.  Only when the skip ratio exceeds the configured
threshold does loading fail with :class:`CorpusIntegrityError`.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from loguru import logger

from .config import ATTRIBUTE_COLUMNS, MAX_SKIP_RATIO, ClassificationEntry, fingerprint_text
from .errors import CorpusIntegrityError, IngestError, NotFoundError
from .normalize import basic_clean


# ---------------------------
# Column detection / standardisation
# ---------------------------

# Taxonomy exports come from several sources, so we support multiple
# likely header variants.
COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "code": [
        "code",
        "hs_code",
        "HS Code",
        "hscode",
        "HS",
        "Commodity Code",
        "commodity_code",
        "tariff_code",
    ],
    "description": [
        "description",
        "Description",
        "desc",
        "Official Description",
        "official_description",
        "Commodity Description",
        "label",
    ],
    "category": ["category", "Category", "Section Title", "section_title"],
    "unit": ["unit", "Unit", "Unit of Quantity", "uom", "UoM"],
    "regulatory_flags": ["regulatory_flags", "flags", "Regulatory Flags", "controls"],
    "section": ["section", "Section"],
    "level": ["level", "Level", "tier"],
}

SourceLike = Union[str, Path, pd.DataFrame, Iterable[Mapping[str, Any]]]


def _standardise_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename columns from the raw export to the canonical internal schema
    (``code``, ``description`` and the known attribute columns).
    """
    col_map: Dict[str, str] = {}
    lower_to_original = {str(c).lower(): c for c in df.columns}

    for canon, candidates in COLUMN_CANDIDATES.items():
        for candidate in candidates:
            # Try exact, then case-insensitive
            if candidate in df.columns:
                col_map[candidate] = canon
                break
            cand_lower = candidate.lower()
            if cand_lower in lower_to_original:
                col_map[lower_to_original[cand_lower]] = canon
                break

    logger.info("Standardising columns with map: {}", col_map)
    df_std = df.rename(columns=col_map)

    missing = [c for c in ("code", "description") if c not in df_std.columns]
    if missing:
        raise CorpusIntegrityError(f"Taxonomy source is missing required columns: {missing}")
    return df_std


# ---------------------------
# Field parsing helpers
# ---------------------------

def _cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value)


def normalise_code(value: Any) -> str:
    """
    Canonicalise a code cell.  Spreadsheets turn ``0101.21`` into the
    float ``101.21``; we cannot recover the leading zero there, but we
    do strip whitespace and a spurious trailing ``.0`` from integer
    cells.
    """
    code = _cell_to_str(value).strip()
    if code.endswith(".0") and code[:-2].isdigit():
        code = code[:-2]
    return code


def parse_row(row: Mapping[str, Any], row_number: Optional[int] = None) -> ClassificationEntry:
    """
    Turn one standardised row into a :class:`ClassificationEntry`.

    Raises :class:`IngestError` when the code is missing or the
    description is empty after cleaning.
    """
    code = normalise_code(row.get("code"))
    if not code:
        raise IngestError("missing code", row_number=row_number)
    description = basic_clean(_cell_to_str(row.get("description")))
    if not description:
        raise IngestError(f"empty description for code {code}", row_number=row_number)

    attributes: Dict[str, str] = {}
    for col in ATTRIBUTE_COLUMNS:
        val = basic_clean(_cell_to_str(row.get(col)))
        if val:
            attributes[col] = val
    return ClassificationEntry(code=code, description=description, attributes=attributes)


# ---------------------------
# Corpus value
# ---------------------------

def corpus_fingerprint(entries: Sequence[ClassificationEntry]) -> str:
    """
    SHA-256 over the canonical JSON of every entry in load order.  The
    value only depends on the normalised content, so it is stable across
    process restarts and caches survive restarts with unchanged data.
    """
    payload = "\n".join(
        json.dumps(
            {"code": e.code, "description": e.description, "attributes": e.attributes},
            sort_keys=True,
            ensure_ascii=False,
        )
        for e in entries
    )
    return fingerprint_text(payload)


@dataclass(frozen=True)
class Corpus:
    entries: Tuple[ClassificationEntry, ...]
    fingerprint: str
    skipped: int = 0
    _by_code: Dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_entries(cls, entries: Sequence[ClassificationEntry], skipped: int = 0) -> "Corpus":
        entries = tuple(entries)
        index = {e.code: i for i, e in enumerate(entries)}
        return cls(
            entries=entries,
            fingerprint=corpus_fingerprint(entries),
            skipped=skipped,
            _by_code=index,
        )

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.strip() in self._by_code

    @property
    def codes(self) -> List[str]:
        return [e.code for e in self.entries]

    def position(self, code: str) -> int:
        try:
            return self._by_code[code.strip()]
        except (KeyError, AttributeError):
            raise NotFoundError(f"Unknown classification code: {code!r}") from None

    def lookup(self, code: str) -> ClassificationEntry:
        """Return the entry for ``code`` or raise :class:`NotFoundError`."""
        return self.entries[self.position(code)]


# ---------------------------
# IO helpers
# ---------------------------

def _read_delimited(path: Path, sep: str) -> Tuple[pd.DataFrame, int]:
    rejected: List[List[str]] = []

    def _reject(bad_line: List[str]) -> None:
        rejected.append(bad_line)
        logger.warning("Skipping unparseable taxonomy line with {} fields", len(bad_line))
        return None

    df = pd.read_csv(
        path,
        sep=sep,
        dtype=str,
        keep_default_na=False,
        engine="python",
        on_bad_lines=_reject,
    )
    return df, len(rejected)


def read_source_frame(path: Union[str, Path]) -> Tuple[pd.DataFrame, int]:
    """
    Read a taxonomy export into a DataFrame.  Codes are read as strings
    so leading zeros survive.

    Returns the frame and the number of delimited lines that could not
    be split into the header's columns; those lines are dropped.  A file
    that cannot be parsed at all raises :class:`CorpusIntegrityError`.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Taxonomy source not found at {path}")
    ext = path.suffix.lower()
    logger.info("Loading taxonomy source from {}", path)
    rejected = 0
    try:
        if ext in {".xlsx", ".xls"}:
            df = pd.read_excel(path, dtype=str)
        elif ext == ".tsv":
            df, rejected = _read_delimited(path, "\t")
        elif ext == ".jsonl":
            df = pd.read_json(path, lines=True, dtype=False)
        elif ext == ".json":
            df = pd.read_json(path, dtype=False)
        else:
            df, rejected = _read_delimited(path, ",")
    except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
        raise CorpusIntegrityError(f"Cannot parse taxonomy source {path}: {e}") from e
    logger.info("Loaded {} rows from taxonomy source ({} unparseable lines)", len(df), rejected)
    return df, rejected


def _source_to_records(source: SourceLike) -> Tuple[List[Mapping[str, Any]], int]:
    rejected = 0
    if isinstance(source, (str, Path)):
        source, rejected = read_source_frame(source)
    if isinstance(source, pd.DataFrame):
        df = _standardise_columns(source)
        return df.to_dict(orient="records"), rejected
    records = [dict(r) for r in source]
    if not records:
        return records, rejected
    df = _standardise_columns(pd.DataFrame.from_records(records))
    return df.to_dict(orient="records"), rejected


def load_corpus(source: SourceLike, max_skip_ratio: float = MAX_SKIP_RATIO) -> Corpus:
    """
    End-to-end: read the source, normalise every row, build the corpus.

    Malformed rows are skipped with a warning.  Raises
    :class:`CorpusIntegrityError` when no usable row remains or when the
    fraction of skipped rows exceeds ``max_skip_ratio``.
    """
    records, rejected = _source_to_records(source)
    total = len(records) + rejected
    entries: List[ClassificationEntry] = []
    seen: set[str] = set()
    skipped = rejected

    for i, row in enumerate(records, 1):
        try:
            entry = parse_row(row, row_number=i)
            if entry.code in seen:
                raise IngestError(f"duplicate code {entry.code}", row_number=i)
        except IngestError as e:
            skipped += 1
            logger.warning("Skipping taxonomy row {}: {}", e.row_number, e)
            continue
        seen.add(entry.code)
        entries.append(entry)

    if not entries:
        raise CorpusIntegrityError(f"No usable taxonomy rows ({total} read, {skipped} skipped)")
    ratio = skipped / total
    if ratio > max_skip_ratio:
        raise CorpusIntegrityError(
            f"Skipped {skipped}/{total} taxonomy rows ({ratio:.1%}), "
            f"above the {max_skip_ratio:.1%} threshold"
        )

    corpus = Corpus.from_entries(entries, skipped=skipped)
    logger.info(
        "Corpus loaded: {} entries, {} skipped, fingerprint={}",
        len(corpus),
        skipped,
        corpus.fingerprint[:12],
    )
    return corpus
