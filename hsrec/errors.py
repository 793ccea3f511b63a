"""
Error taxonomy for the recommender.

Load-time failures (``CorpusIntegrityError``) are fatal and surfaced to the
operator.  Per-query failures are either input rejection
(``InvalidQueryError`` / ``InvalidConfigError``) or degradations that never
reach the caller of ``recommend`` (``CacheWriteError``,
``EmbeddingUnavailableError``, ``AugmentationError``).
"""


class HsrecError(Exception):
    """Base class for all recommender errors."""


class IngestError(HsrecError):
    """A single source row is malformed and was skipped."""

    def __init__(self, message: str, row_number: int | None = None) -> None:
        super().__init__(message)
        self.row_number = row_number


class CorpusIntegrityError(HsrecError):
    """Too much bad data in the source; the corpus cannot be loaded."""


class NotFoundError(HsrecError, LookupError):
    """Unknown classification code."""


class InvalidQueryError(HsrecError):
    """Bad caller input for a query (e.g. ``k < 1``)."""


class InvalidConfigError(HsrecError):
    """Bad engine configuration or weight override (e.g. alpha outside [0, 1])."""


class CacheWriteError(HsrecError):
    """Irrecoverable storage fault while persisting a cache entry."""


class EmbeddingUnavailableError(HsrecError):
    """The embedding capability is absent or failed."""


class AugmentationError(HsrecError):
    """The augmentation capability failed or returned an unusable answer."""


class EngineNotReadyError(HsrecError):
    """The engine was queried before a corpus was loaded."""
