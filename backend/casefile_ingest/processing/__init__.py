"""
File Processing Package
═══════════════════════

Stages of the case-file ingestion pipeline, each usable on its own:

  Format Detection → Text Extraction ┐
                     Thumbnail       ┘ → Chunking → Embedding
                                       → Entity Extraction

Modules
───────
  formats.py     Per-format extractors (PDF text layer / OCR, image OCR, DOCX, plain text)
  extractor.py   Magic-byte format detection and the extraction orchestrator
  thumbnails.py  JPEG previews: PDF first page, images, generic category tiles
  chunking.py    Boundary-aware overlapping character chunker
  embeddings.py  Bounded-concurrency chunk embedding with per-chunk isolation
  entities.py    Windowed generative NER and the structured-output parser

Every component is stateless and dependency-injected; failures are reported
in result objects rather than raised, except configuration errors.
"""

from casefile_ingest.processing.chunking import TextChunk, TextChunker, chunk_text
from casefile_ingest.processing.embeddings import EmbeddingPipeline, EmbeddingResult
from casefile_ingest.processing.entities import (
    EntityExtractionResult,
    EntityExtractor,
    ExtractedEntity,
    parse_structured_entities,
)
from casefile_ingest.processing.extractor import ExtractionResult, TextExtractorOrchestrator
from casefile_ingest.processing.thumbnails import ThumbnailGenerator, ThumbnailResult

__all__ = [
    "TextChunk",
    "TextChunker",
    "chunk_text",
    "EmbeddingPipeline",
    "EmbeddingResult",
    "EntityExtractionResult",
    "EntityExtractor",
    "ExtractedEntity",
    "parse_structured_entities",
    "ExtractionResult",
    "TextExtractorOrchestrator",
    "ThumbnailGenerator",
    "ThumbnailResult",
]
