"""
Provider-agnostic AI client interfaces.

The pipeline needs exactly three capabilities from an AI vendor:

  text  → vector          EmbeddingClient.embed()
  text  → text / JSON     GenerativeClient.generate()
  image → text            GenerativeClient.generate(media=[InlineMedia(...)])

Concrete providers (Vertex AI, OpenAI) implement these ABCs; the rest of the
codebase depends only on the interfaces, injected through constructors.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, TypeVar

from casefile_ingest.core.errors import AIServiceError, EmbeddingDimensionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InlineMedia:
    """Raw media sent inline (base64 on the wire) with a generative request."""
    mime_type: str
    data:      bytes


class EmbeddingClient(ABC):
    """text → fixed-dimension vector."""

    def __init__(self, dimensions: int) -> None:
        self.dimensions = dimensions

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """
        Raises:
            EmbeddingServiceError    transport / auth / quota / timeout failure
            EmbeddingDimensionError  the model returned a wrong-sized vector
        """

    def _check_dimensions(self, vector: Sequence[float]) -> list[float]:
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(vector))
        return [float(v) for v in vector]


class GenerativeClient(ABC):
    """Multi-part prompt (+ optional inline media) → generated text."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        media: Sequence[InlineMedia] = (),
        temperature: float = 0.0,
        json_output: bool = False,
        response_schema: dict | None = None,
    ) -> str:
        """Raises GenerationServiceError on transport / auth / quota / timeout failure."""


# ---------------------------------------------------------------------------
# Retry helper: exponential back-off for transient provider errors
# ---------------------------------------------------------------------------

async def call_with_retries(
    call:        Callable[[], Awaitable[T]],
    *,
    label:       str,
    max_retries: int,
    base_delay:  float,
    max_delay:   float,
) -> T:
    """
    Run `call`, retrying AIServiceErrors flagged retryable.

    Non-retryable errors (auth, bad request, dimension mismatch) propagate on
    the first attempt.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except AIServiceError as exc:
            if not exc.retryable or attempt >= max_retries:
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            attempt += 1
            logger.warning(
                "AI call retry | call=%s attempt=%d delay=%.1fs error=%s",
                label, attempt, delay, exc,
            )
            await asyncio.sleep(delay)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500
