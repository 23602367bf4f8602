"""
Composed FastAPI Dependencies

Wires the stores, AI clients and processing components into the two
services the routes use. Route handlers import from here and never build
clients themselves; tests replace these via app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from casefile_ingest.llm.factory import get_embedding_client, get_generative_client
from casefile_ingest.processing.embeddings import EmbeddingPipeline
from casefile_ingest.processing.entities import EntityExtractor
from casefile_ingest.processing.extractor import TextExtractorOrchestrator
from casefile_ingest.services.pipeline import FileProcessingPipeline
from casefile_ingest.services.search import ChunkSearchService
from casefile_ingest.store.postgres import (
    PostgresChunkStore,
    PostgresEntityStore,
    PostgresFileStore,
)


@lru_cache(maxsize=1)
def _embedding_pipeline() -> EmbeddingPipeline:
    return EmbeddingPipeline(get_embedding_client())


@lru_cache(maxsize=1)
def get_pipeline() -> FileProcessingPipeline:
    generative = get_generative_client()
    return FileProcessingPipeline(
        files=PostgresFileStore(),
        chunks=PostgresChunkStore(),
        entities=PostgresEntityStore(),
        extractor=TextExtractorOrchestrator(generative),
        embedder=_embedding_pipeline(),
        entity_extractor=EntityExtractor(generative),
    )


@lru_cache(maxsize=1)
def get_search_service() -> ChunkSearchService:
    return ChunkSearchService(_embedding_pipeline(), PostgresChunkStore())


Pipeline      = Annotated[FileProcessingPipeline, Depends(get_pipeline)]
SearchService = Annotated[ChunkSearchService, Depends(get_search_service)]
