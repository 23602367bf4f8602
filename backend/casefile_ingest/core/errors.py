"""
Error taxonomy for the ingestion pipeline.

Two families live here:

  PipelineError subclasses   one per failure kind a pipeline run can record.
                             Only FatalInputError aborts a run; every other
                             kind is caught at its unit (chunk, window, page,
                             thumbnail), logged, and stored as a FailureRecord
                             in File.metadata.processing.

  AIServiceError subclasses  raised by the embedding / generative clients.
                             `retryable` drives the per-call backoff loop.

ConfigurationError is separate from both: a misconfigured deployment (e.g.
an embedding model whose vector size differs from the column) must fail the
run loudly instead of degrading it one chunk at a time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


class ErrorKind(str, Enum):
    UNSUPPORTED_FORMAT        = "unsupported_format"
    EXTRACTION_FAILURE        = "extraction_failure"
    THUMBNAIL_FAILURE         = "thumbnail_failure"
    EMBEDDING_SERVICE_FAILURE = "embedding_service_failure"
    ENTITY_SERVICE_FAILURE    = "entity_service_failure"
    STORE_WRITE_FAILURE       = "store_write_failure"
    FATAL_INPUT_ERROR         = "fatal_input_error"


@dataclass
class FailureRecord:
    """One swallowed failure, surfaced in the file's processing metadata."""
    kind:    ErrorKind
    unit:    str      # "extraction", "thumbnail", "chunk:2", "window:0", ...
    message: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


# ---------------------------------------------------------------------------
# Pipeline failures
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.EXTRACTION_FAILURE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnsupportedFormatError(PipelineError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class ExtractionError(PipelineError):
    kind = ErrorKind.EXTRACTION_FAILURE


class ThumbnailError(PipelineError):
    kind = ErrorKind.THUMBNAIL_FAILURE


class EntityServiceError(PipelineError):
    kind = ErrorKind.ENTITY_SERVICE_FAILURE


class StoreWriteError(PipelineError):
    kind = ErrorKind.STORE_WRITE_FAILURE


class FatalInputError(PipelineError):
    """File record or source bytes are unavailable; the run cannot continue."""
    kind = ErrorKind.FATAL_INPUT_ERROR

    def __init__(self, message: str, *, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    pass


class EmbeddingDimensionError(ConfigurationError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# AI clients
# ---------------------------------------------------------------------------

class AIServiceError(Exception):
    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class AIAuthError(AIServiceError):
    """Token acquisition or credential failure. Retryable only when the token endpoint is unreachable."""


class EmbeddingServiceError(AIServiceError):
    kind = ErrorKind.EMBEDDING_SERVICE_FAILURE


class GenerationServiceError(AIServiceError):
    pass


class StructuredOutputParseError(ValueError):
    """A generative reply could not be turned into an entity list."""
