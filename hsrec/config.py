from __future__ import annotations
"""
Configuration for the hsrec classification-code recommender.
"""

import hashlib
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidConfigError

# Paths
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "data"
CORPUS_PATH = Path(os.getenv("HSREC_CORPUS_PATH", str(DATA_DIR / "taxonomy.csv")))
CACHE_DIR = Path(os.getenv("HSREC_CACHE_DIR", str(PROJECT_ROOT / "cache")))
MODELS_DIR = PROJECT_ROOT / "models"

# Models
EMBEDDING_MODEL = os.getenv("HSREC_EMBEDDING_MODEL", "BAAI/bge-base-en-v1.5")

HF_ENV_VARS = {
    "HF_HUB_ENABLE_HF_TRANSFER": "1",
    "TRANSFORMERS_CACHE": str(MODELS_DIR),
    "HF_HUB_OFFLINE": os.getenv("HF_HUB_OFFLINE", "1"),
}

# Blend / retrieval
# Lexical weight in the blend; semantic gets 1 - ALPHA.
DEFAULT_ALPHA = float(os.getenv("HSREC_ALPHA", "0.60"))
DEFAULT_K = 10
LEXICAL_TOP_N = 300
SEMANTIC_TOP_N = 300
PRUNING_STRATEGIES = ("postings", "full")
DEFAULT_PRUNING = os.getenv("HSREC_PRUNING", "postings")

# Query cache keeps at least this many results so smaller k can be served from it
QUERY_CACHE_DEPTH = 50

# Query results kept in process memory per cache handle (LRU); the disk tier is unbounded
QUERY_CACHE_MEMORY_ENTRIES = int(os.getenv("HSREC_QUERY_CACHE_MEMORY", "1024"))
CACHE_LOCK_STRIPES = 64

# Corpus ingest
MAX_SKIP_RATIO = float(os.getenv("HSREC_MAX_SKIP_RATIO", "0.05"))
MAX_INPUT_CHARS = 20_000

# Embedding build
EMBED_BATCH_SIZE = 64
EMBED_WORKERS = int(os.getenv("HSREC_EMBED_WORKERS", "1"))

# Augmentation
AUGMENT_TOP_N = 10
DEFAULT_AUGMENT_TIMEOUT = 8.0
AUGMENT_TIMEOUT = float(os.getenv("HSREC_AUGMENT_TIMEOUT", str(DEFAULT_AUGMENT_TIMEOUT)))
ANTHROPIC_API_URL = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages")
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MODEL = os.getenv("HSREC_AUGMENT_MODEL", "claude-3-5-haiku-latest")
AUGMENT_SYSTEM_PROMPT = (
    "You are a customs classification expert. Given a product description and "
    "candidate tariff codes with their official descriptions, reorder the "
    "candidates from most to least appropriate. Only use codes from the list. "
    'Answer with JSON only: {"ranking": [{"code": "...", "rationale": "..."}]}'
)

# Stopwords for the lexical index.  Kept small: descriptions in the
# taxonomy are short and words like "other" carry no signal.
STOPWORDS: FrozenSet[str] = frozenset(
    """
    a an and are as at be but by for from has have in into is it its of on or
    such that the their them these they this those to was were which with
    other others whether not nor no than so used use using kind kinds type
    types incl including excluding
    """.split()
)

# Synonyms / lexical normalization
SYNONYM_MAP: Dict[str, str] = {
    "tv": "television",
    "tvs": "television",
    "pc": "computer",
    "laptop": "portable computer",
    "notebook": "portable computer",
    "phone": "telephone",
    "smartphone": "telephone",
    "cellphone": "telephone",
    "mobile": "telephone",
    "fridge": "refrigerator",
    "tee": "shirt",
    "tshirt": "shirt",
    "sneakers": "footwear",
    "shoes": "footwear",
    "car": "motor vehicle",
    "cars": "motor vehicle",
    "bike": "bicycle",
    "veg": "vegetable",
    "pork": "swine meat",
    "beef": "bovine meat",
}

# Known attribute columns carried over from source rows
ATTRIBUTE_COLUMNS: List[str] = ["category", "unit", "regulatory_flags", "section", "level"]


def fingerprint_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def check_alpha(alpha: float) -> float:
    """Return ``alpha`` as float or raise InvalidConfigError if outside [0, 1]."""
    try:
        value = float(alpha)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"alpha must be a number, got {alpha!r}") from e
    if not 0.0 <= value <= 1.0:
        raise InvalidConfigError(f"alpha must be within [0, 1], got {value}")
    return value


# Pydantic schemas
class ClassificationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    description: str
    attributes: Dict[str, str] = Field(default_factory=dict)

    @property
    def digits(self) -> str:
        return "".join(ch for ch in self.code if ch.isdigit())

    @property
    def chapter(self) -> str:
        return self.digits[:2]

    @property
    def heading(self) -> str:
        return self.digits[:4]


class ScoreBreakdown(BaseModel):
    lexical: float = 0.0
    semantic: float = 0.0
    blended: float = 0.0
    lexical_raw: Optional[float] = None
    semantic_raw: Optional[float] = None


class CandidateResult(BaseModel):
    code: str
    description: str
    scores: ScoreBreakdown
    rank: int = Field(ge=1)
    rationale: Optional[str] = None


class Recommendation(BaseModel):
    query: str
    k: int
    results: List[CandidateResult] = Field(default_factory=list)
    semantic_enabled: bool = False
    augmented: bool = False
    cache_hit: bool = False
    corpus_fingerprint: str = ""

    @property
    def codes(self) -> List[str]:
        return [r.code for r in self.results]


class CachedRanking(BaseModel):
    corpus_fingerprint: str
    config_fingerprint: str
    query_fingerprint: str
    results: List[CandidateResult]
    depth: int
    complete: bool
    created_at: datetime


class EngineConfig(BaseModel):
    """Tunables for one engine instance.  ``alpha`` is the lexical weight."""

    alpha: float = DEFAULT_ALPHA
    pruning: str = DEFAULT_PRUNING
    lexical_top_n: int = Field(default=LEXICAL_TOP_N, ge=1)
    semantic_top_n: int = Field(default=SEMANTIC_TOP_N, ge=1)
    query_cache_depth: int = Field(default=QUERY_CACHE_DEPTH, ge=1)
    query_cache_memory_entries: int = Field(default=QUERY_CACHE_MEMORY_ENTRIES, ge=1)
    max_skip_ratio: float = Field(default=MAX_SKIP_RATIO, ge=0.0, le=1.0)
    embed_batch_size: int = Field(default=EMBED_BATCH_SIZE, ge=1)
    embed_workers: int = Field(default=EMBED_WORKERS, ge=1)
    augment_top_n: int = Field(default=AUGMENT_TOP_N, ge=1)
    augment_timeout: float = Field(default=AUGMENT_TIMEOUT, gt=0.0)
    cache_dir: Optional[Path] = CACHE_DIR

    @field_validator("alpha")
    @classmethod
    def _alpha_in_range(cls, v: float) -> float:
        return check_alpha(v)

    @field_validator("pruning")
    @classmethod
    def _known_pruning(cls, v: str) -> str:
        if v not in PRUNING_STRATEGIES:
            raise InvalidConfigError(
                f"pruning must be one of {PRUNING_STRATEGIES}, got {v!r}"
            )
        return v

    @classmethod
    def from_env(cls) -> "EngineConfig":
        cache_dir = os.getenv("HSREC_CACHE_DIR")
        return cls(
            alpha=DEFAULT_ALPHA,
            pruning=DEFAULT_PRUNING,
            cache_dir=Path(cache_dir) if cache_dir else CACHE_DIR,
        )


class HealthResponse(BaseModel):
    status: str
    entries: int = 0
    corpus_fingerprint: str = ""
    semantic_enabled: bool = False
    embedding_model: Optional[str] = None
    augmentation_available: bool = False
    cache_dir: Optional[str] = None
