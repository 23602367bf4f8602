"""
Chunk Embedding Pipeline
════════════════════════

Embeds every chunk of one document through an EmbeddingClient.

Concurrency:
  - One request per chunk, at most `concurrency` in flight (asyncio.Semaphore)
  - Results are keyed by chunk index, never by completion order, so a slow
    chunk 0 and a fast chunk 4 still land in document order

Failure isolation:
  - An AIServiceError on one chunk (timeout, auth, quota, 5xx after the
    client's own retries) marks only that chunk as failed
  - EmbeddingDimensionError is a deployment misconfiguration and is re-raised
    after the batch settles; every vector would be wrong, not just one
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import AIServiceError, ConfigurationError
from casefile_ingest.llm.base import EmbeddingClient
from casefile_ingest.processing.chunking import TextChunk

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """
    Output of the embedding pipeline for one document.

    vectors        : chunk index → embedding, successful chunks only
    failures       : chunk index → error message
    """
    vectors:      dict[int, list[float]]
    total_chunks: int
    elapsed_ms:   float
    failures:     dict[int, str] = field(default_factory=dict)

    @property
    def failed_chunks(self) -> list[int]:
        return sorted(self.failures)

    @property
    def success_rate(self) -> float:
        if self.total_chunks == 0:
            return 1.0
        return len(self.vectors) / self.total_chunks

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate


class EmbeddingPipeline:
    """
    Usage:
        pipeline = EmbeddingPipeline(get_embedding_client())
        result   = await pipeline.embed_chunks(chunks)
        vector   = result.vectors.get(chunk.index)
    """

    def __init__(
        self,
        client:          EmbeddingClient,
        concurrency:     int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._client      = client
        self._concurrency = concurrency or settings.embedding_concurrency
        # Outer guard per chunk; the client applies its own per-request timeout
        self._timeout     = timeout_seconds or settings.ai_timeout_seconds * (settings.ai_max_retries + 1)

    async def embed_chunks(self, chunks: list[TextChunk]) -> EmbeddingResult:
        if not chunks:
            return EmbeddingResult(vectors={}, total_chunks=0, elapsed_ms=0.0)

        t0 = time.monotonic()
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _embed(chunk: TextChunk) -> list[float]:
            async with semaphore:
                return await asyncio.wait_for(self._client.embed(chunk.text), timeout=self._timeout)

        logger.info(
            "EmbeddingPipeline | chunks=%d concurrency=%d model=%s",
            len(chunks), self._concurrency, self._client.model_name,
        )

        outcomes = await asyncio.gather(*(_embed(c) for c in chunks), return_exceptions=True)

        vectors:  dict[int, list[float]] = {}
        failures: dict[int, str] = {}
        config_error: ConfigurationError | None = None

        for chunk, outcome in zip(chunks, outcomes):
            if isinstance(outcome, ConfigurationError):
                config_error = config_error or outcome
            elif isinstance(outcome, (AIServiceError, asyncio.TimeoutError)):
                message = str(outcome) or f"embedding timed out after {self._timeout:.0f}s"
                logger.warning("Embedding failed | chunk=%d error=%s", chunk.index, message)
                failures[chunk.index] = message
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                vectors[chunk.index] = outcome

        if config_error is not None:
            raise config_error

        result = EmbeddingResult(
            vectors=vectors,
            total_chunks=len(chunks),
            elapsed_ms=(time.monotonic() - t0) * 1000,
            failures=failures,
        )
        logger.info(
            "EmbeddingPipeline done | vectors=%d failed=%d success_rate=%.2f elapsed_ms=%.0f",
            len(vectors), len(failures), result.success_rate, result.elapsed_ms,
        )
        return result

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single search query (no isolation, errors propagate)."""
        return await self._client.embed(text)
