"""
Chunk Similarity Search

Embeds a free-text query with the same model that embedded the chunks and
returns the nearest document_sections rows, optionally scoped to a project
or a single file.
"""

from __future__ import annotations

import logging
import time
from uuid import UUID

from casefile_ingest.processing.embeddings import EmbeddingPipeline
from casefile_ingest.store.base import ChunkStore, SimilarChunk

logger = logging.getLogger(__name__)


class ChunkSearchService:

    def __init__(self, embedder: EmbeddingPipeline, chunks: ChunkStore) -> None:
        self._embedder = embedder
        self._chunks   = chunks

    async def search(
        self,
        query:      str,
        *,
        project_id: UUID | None = None,
        file_id:    UUID | None = None,
        k:          int = 5,
        threshold:  float | None = 0.7,
    ) -> list[SimilarChunk]:
        t0 = time.monotonic()
        vector = await self._embedder.embed_query(query)
        matches = await self._chunks.similarity_search(
            vector,
            k,
            project_id=project_id,
            file_id=file_id,
            match_threshold=threshold,
        )
        logger.info(
            "Chunk search | project=%s file=%s k=%d threshold=%s matches=%d elapsed_ms=%.0f",
            project_id, file_id, k, threshold, len(matches), (time.monotonic() - t0) * 1000,
        )
        return matches
