"""
File Processing Pipeline

Runs one uploaded case file through the full ingestion flow:

  ┌──────────────────────────────────────────────────────────────┐
  │ received        load files row, verify project, mark         │
  │                 processing, download source bytes            │
  │ extracting      format-specific text extraction  ┐ run       │
  │ thumbnailing    preview render + upload           ┘ together │
  │ chunking        boundary-aware overlapping chunks            │
  │ embedding       one vector per chunk, then delete-then-insert│
  │                 into document_sections                       │
  │ entity_extraction windowed NER, then replace entities        │
  │ completed       one update: status, thumbnail, text length,  │
  │                 metadata.processing                          │
  └──────────────────────────────────────────────────────────────┘
  Any stage may move to `failed`.

Failure policy:
  - FatalInputError (missing record, project mismatch, unreadable source)
    and ConfigurationError (e.g. embedding dimension mismatch) abort the
    run. A missing record is never touched; otherwise status = failed.
  - Everything else (unsupported format, OCR page, thumbnail, one chunk's
    embedding, one NER window, one chunk row) is recorded as a
    FailureRecord and the run completes with status "partial".

Replacement semantics:
  Chunks and entities from a previous run are replaced, never merged.
  The delete happens only after every embedding call has settled, so a
  configuration error leaves the previous run's chunks in place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable
from uuid import UUID

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import (
    ConfigurationError,
    ErrorKind,
    FailureRecord,
    FatalInputError,
    PipelineError,
    StoreWriteError,
)
from casefile_ingest.processing.chunking import TextChunk, TextChunker
from casefile_ingest.processing.embeddings import EmbeddingPipeline, EmbeddingResult
from casefile_ingest.processing.entities import EntityExtractor
from casefile_ingest.processing.extractor import ExtractionResult, TextExtractorOrchestrator
from casefile_ingest.processing.thumbnails import ThumbnailGenerator, ThumbnailResult
from casefile_ingest.storage.s3 import ObjectStorage, StorageError
from casefile_ingest.store.base import (
    ChunkRecord,
    ChunkStore,
    EntityStore,
    FileRecord,
    FileRecordStore,
)

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class PipelineStage(str, Enum):
    RECEIVED          = "received"
    EXTRACTING        = "extracting"
    THUMBNAILING      = "thumbnailing"
    CHUNKING          = "chunking"
    EMBEDDING         = "embedding"
    ENTITY_EXTRACTION = "entity_extraction"
    COMPLETED         = "completed"
    FAILED            = "failed"


ALLOWED_TRANSITIONS: dict[PipelineStage, frozenset[PipelineStage]] = {
    PipelineStage.RECEIVED:          frozenset({PipelineStage.EXTRACTING, PipelineStage.FAILED}),
    PipelineStage.EXTRACTING:        frozenset({PipelineStage.THUMBNAILING, PipelineStage.FAILED}),
    PipelineStage.THUMBNAILING:      frozenset({PipelineStage.CHUNKING, PipelineStage.FAILED}),
    # no text: chunking clears prior rows and the run completes
    PipelineStage.CHUNKING:          frozenset({PipelineStage.EMBEDDING, PipelineStage.COMPLETED, PipelineStage.FAILED}),
    PipelineStage.EMBEDDING:         frozenset({PipelineStage.ENTITY_EXTRACTION, PipelineStage.FAILED}),
    PipelineStage.ENTITY_EXTRACTION: frozenset({PipelineStage.COMPLETED, PipelineStage.FAILED}),
    PipelineStage.COMPLETED:         frozenset(),
    PipelineStage.FAILED:            frozenset(),
}


class IllegalTransitionError(RuntimeError):
    def __init__(self, current: PipelineStage, target: PipelineStage) -> None:
        super().__init__(f"Illegal pipeline transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


class PipelineStateMachine:
    """Tracks the current stage and a timestamped history of transitions."""

    def __init__(self) -> None:
        self.stage = PipelineStage.RECEIVED
        self.history: list[dict] = [{"stage": self.stage.value, "at": _utcnow()}]

    def advance(self, target: PipelineStage) -> None:
        if target not in ALLOWED_TRANSITIONS[self.stage]:
            raise IllegalTransitionError(self.stage, target)
        logger.debug("Pipeline stage | %s → %s", self.stage.value, target.value)
        self.stage = target
        self.history.append({"stage": target.value, "at": _utcnow()})

    def fail(self) -> PipelineStage:
        """Move to FAILED from any live stage; returns the stage that failed."""
        failed_at = self.stage
        if self.stage is not PipelineStage.FAILED:
            self.advance(PipelineStage.FAILED)
        return failed_at

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.stage]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class PipelineRunResult:
    file_id:            UUID
    status:             str                     # "success" | "partial"
    text_length:        int
    thumbnail_url:      str | None
    chunks_total:       int = 0
    chunks_inserted:    int = 0
    embedding_failures: int = 0
    entities_found:     int = 0
    entities_inserted:  int = 0
    warnings:           list[str] = field(default_factory=list)
    failures:           list[FailureRecord] = field(default_factory=list)
    stages:             list[dict] = field(default_factory=list)
    elapsed_ms:         float = 0.0


@dataclass
class _RunState:
    """Mutable accumulator for one run; folded into metadata.processing at the end."""
    record:     FileRecord
    machine:    PipelineStateMachine = field(default_factory=PipelineStateMachine)
    failures:   list[FailureRecord] = field(default_factory=list)
    warnings:   list[str] = field(default_factory=list)
    chunks:     dict = field(default_factory=dict)
    entities:   dict = field(default_factory=dict)

    def record_failure(self, kind: ErrorKind, unit: str, message: str) -> None:
        logger.warning(
            "Pipeline unit failed | file=%s unit=%s kind=%s error=%s",
            self.record.id, unit, kind.value, message,
        )
        self.failures.append(FailureRecord(kind=kind, unit=unit, message=message))

    def warn(self, message: str) -> None:
        logger.warning("Pipeline warning | file=%s %s", self.record.id, message)
        self.warnings.append(message)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class FileProcessingPipeline:
    """
    One instance may serve many runs; no state is carried between them.

    Usage:
        pipeline = FileProcessingPipeline(
            files=PostgresFileStore(), chunks=PostgresChunkStore(), entities=PostgresEntityStore(),
            extractor=TextExtractorOrchestrator(generative_client),
            embedder=EmbeddingPipeline(embedding_client),
            entity_extractor=EntityExtractor(generative_client),
        )
        result = await pipeline.run(file_id, project_id=project_id)
    """

    def __init__(
        self,
        *,
        files:               FileRecordStore,
        chunks:              ChunkStore,
        entities:            EntityStore,
        extractor:           TextExtractorOrchestrator,
        embedder:            EmbeddingPipeline,
        entity_extractor:    EntityExtractor,
        chunker:             TextChunker | None = None,
        storage_factory:     Callable[[str], ObjectStorage] = ObjectStorage,
        thumbnailer_factory: Callable[[ObjectStorage], ThumbnailGenerator] = ThumbnailGenerator,
        default_bucket:      str | None = None,
    ) -> None:
        self._files               = files
        self._chunks              = chunks
        self._entities            = entities
        self._extractor           = extractor
        self._embedder            = embedder
        self._entity_extractor    = entity_extractor
        self._chunker             = chunker or TextChunker()
        self._storage_factory     = storage_factory
        self._thumbnailer_factory = thumbnailer_factory
        self._default_bucket      = default_bucket or settings.storage_bucket

    async def run(
        self,
        file_id:     UUID,
        project_id:  UUID | None = None,
        bucket_name: str | None = None,
    ) -> PipelineRunResult:
        """
        Process one file end to end.

        Raises:
            FatalInputError     record missing / project mismatch (not_found=True,
                                record untouched) or source unreadable (status=failed)
            ConfigurationError  misconfigured AI provider or embedding dimension
                                (status=failed)
            StoreWriteError     the files row itself could not be updated
        """
        t0 = time.monotonic()
        record = await self._files.get_file(file_id)
        if record is None:
            raise FatalInputError(f"File {file_id} not found", not_found=True)
        if project_id is not None and record.project_id != project_id:
            # Same response as a missing record; do not reveal the file exists
            raise FatalInputError(f"File {file_id} not found in project {project_id}", not_found=True)

        logger.info(
            "Pipeline start | file=%s project=%s name=%s type=%s",
            file_id, record.project_id, record.name, record.content_type,
        )

        state = _RunState(record=record)
        await self._files.update_file(
            file_id,
            processing_status="processing",
            metadata=_with_processing(record, {"status": "processing", "timestamp": _utcnow()}),
        )

        try:
            result = await self._process(state, bucket_name or self._default_bucket)
        except Exception as exc:
            await self._mark_failed(state, exc)
            raise

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Pipeline done | file=%s status=%s text_length=%d chunks=%d/%d "
            "embedding_failures=%d entities=%d failures=%d elapsed_ms=%.0f",
            file_id, result.status, result.text_length, result.chunks_inserted,
            result.chunks_total, result.embedding_failures, result.entities_found,
            len(result.failures), result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _process(self, state: _RunState, bucket: str) -> PipelineRunResult:
        record = state.record
        storage = self._storage_factory(bucket)
        data = await self._download(storage, record)

        extraction, thumbnail = await self._extract_and_thumbnail(state, storage, data)
        text = extraction.text if extraction.ok else None

        state.machine.advance(PipelineStage.CHUNKING)
        chunks = self._chunker.chunk(text) if text else []

        if not chunks:
            await self._clear_previous(state)
            state.machine.advance(PipelineStage.COMPLETED)
        else:
            state.machine.advance(PipelineStage.EMBEDDING)
            await self._embed_and_store(state, extraction, chunks)

            state.machine.advance(PipelineStage.ENTITY_EXTRACTION)
            await self._extract_entities(state, text)

            state.machine.advance(PipelineStage.COMPLETED)

        return await self._complete(state, extraction, thumbnail)

    async def _download(self, storage: ObjectStorage, record: FileRecord) -> bytes:
        try:
            return await storage.download(record.storage_path)
        except FileNotFoundError as exc:
            raise FatalInputError(f"Source object missing: {exc}") from exc
        except StorageError as exc:
            # FileTooLargeError included
            raise FatalInputError(f"Source download failed: {exc}") from exc

    async def _extract_and_thumbnail(
        self,
        state:   _RunState,
        storage: ObjectStorage,
        data:    bytes,
    ) -> tuple[ExtractionResult, ThumbnailResult]:
        record = state.record
        thumbnailer = self._thumbnailer_factory(storage)

        state.machine.advance(PipelineStage.EXTRACTING)
        thumbnail_task = asyncio.create_task(
            thumbnailer.generate(data, record.content_type or "application/octet-stream", record.id)
        )
        try:
            extraction = await self._extractor.extract(data, record.content_type, record.name)
            state.machine.advance(PipelineStage.THUMBNAILING)
            thumbnail = await thumbnail_task
        finally:
            if not thumbnail_task.done():
                thumbnail_task.cancel()

        if not extraction.ok:
            state.record_failure(
                extraction.error_kind or ErrorKind.EXTRACTION_FAILURE,
                "extraction",
                extraction.error or "extraction failed",
            )
        for page in extraction.failed_pages:
            state.record_failure(ErrorKind.EXTRACTION_FAILURE, f"page:{page}", "OCR failed for page")
        if thumbnail.url is None:
            state.record_failure(ErrorKind.THUMBNAIL_FAILURE, "thumbnail", thumbnail.error or "no thumbnail")

        return extraction, thumbnail

    async def _clear_previous(self, state: _RunState) -> None:
        file_id = state.record.id
        state.warn("no extractable text; previous chunks and entities cleared")
        state.chunks = {"total": 0, "inserted": 0, "embedded": 0, "embedding_failures": 0, "embedding_failure_rate": 0.0}
        state.entities = {"found": 0, "inserted": 0, "windows_total": 0, "windows_failed": 0}
        try:
            await self._chunks.delete_chunks(file_id)
        except StoreWriteError as exc:
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, "chunks", exc.message)
        try:
            await self._entities.replace_entities(state.record.project_id, file_id, state.record.owner_id, [])
        except StoreWriteError as exc:
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, "entities", exc.message)

    async def _embed_and_store(
        self,
        state:      _RunState,
        extraction: ExtractionResult,
        chunks:     list[TextChunk],
    ) -> None:
        file_id = state.record.id

        # ConfigurationError propagates here, before anything is deleted
        embedded = await self._embedder.embed_chunks(chunks)
        for index in embedded.failed_chunks:
            state.record_failure(ErrorKind.EMBEDDING_SERVICE_FAILURE, f"chunk:{index}", embedded.failures[index])

        records = [_chunk_record(chunk, extraction, embedded) for chunk in chunks]
        state.chunks = {
            "total":                  len(chunks),
            "inserted":               0,
            "embedded":               len(embedded.vectors),
            "embedding_failures":     len(embedded.failures),
            "embedding_failure_rate": round(embedded.failure_rate, 4),
        }

        try:
            await self._chunks.delete_chunks(file_id)
        except StoreWriteError as exc:
            # Inserting on top of undeleted rows would mix two runs
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, "chunks", exc.message)
            return

        try:
            written = await self._chunks.insert_chunks(file_id, records)
        except StoreWriteError as exc:
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, "chunks", exc.message)
            return

        state.chunks["inserted"] = written.inserted
        for index, message in sorted(written.failed.items()):
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, f"chunk:{index}", message)

    async def _extract_entities(self, state: _RunState, text: str) -> None:
        record = state.record
        extracted = await self._entity_extractor.extract_entities(text)
        state.failures.extend(extracted.failures)
        state.entities = {
            "found":          len(extracted.entities),
            "inserted":       0,
            "windows_total":  extracted.windows_total,
            "windows_failed": extracted.windows_failed,
        }

        if extracted.windows_total and extracted.windows_failed == extracted.windows_total:
            state.warn("every entity window failed; entities cleared")

        try:
            written = await self._entities.replace_entities(
                record.project_id, record.id, record.owner_id, extracted.entities,
            )
        except StoreWriteError as exc:
            state.record_failure(ErrorKind.STORE_WRITE_FAILURE, "entities", exc.message)
            return
        state.entities["inserted"] = written.inserted

    async def _complete(
        self,
        state:      _RunState,
        extraction: ExtractionResult,
        thumbnail:  ThumbnailResult,
    ) -> PipelineRunResult:
        record = state.record
        status = "partial" if state.failures else "success"
        # A failed render keeps the previous preview rather than blanking it
        thumbnail_url = thumbnail.url or record.thumbnail_url

        processing = {
            "status":     status,
            "timestamp":  _utcnow(),
            "stages":     state.machine.history,
            "extraction": extraction.to_metadata(),
            "thumbnail":  {"category": thumbnail.category, "path": thumbnail.path, "generated": thumbnail.url is not None},
            "chunks":     state.chunks,
            "entities":   state.entities,
            "warnings":   state.warnings,
            "failures":   [f.to_dict() for f in state.failures],
        }
        await self._files.update_file(
            record.id,
            processing_status="completed",
            thumbnail_url=thumbnail_url,
            extracted_text_length=extraction.text_length,
            metadata=_with_processing(record, processing),
        )

        return PipelineRunResult(
            file_id=record.id,
            status=status,
            text_length=extraction.text_length,
            thumbnail_url=thumbnail_url,
            chunks_total=state.chunks.get("total", 0),
            chunks_inserted=state.chunks.get("inserted", 0),
            embedding_failures=state.chunks.get("embedding_failures", 0),
            entities_found=state.entities.get("found", 0),
            entities_inserted=state.entities.get("inserted", 0),
            warnings=list(state.warnings),
            failures=list(state.failures),
            stages=list(state.machine.history),
        )

    async def _mark_failed(self, state: _RunState, exc: Exception) -> None:
        if state.machine.is_terminal and state.machine.stage is PipelineStage.COMPLETED:
            # Only the final update failed; the files row may be unwritable
            failed_at = PipelineStage.COMPLETED
        else:
            failed_at = state.machine.fail()

        if isinstance(exc, (FatalInputError, ConfigurationError)):
            logger.error("Pipeline failed | file=%s stage=%s error=%s", state.record.id, failed_at.value, exc)
        else:
            logger.exception("Pipeline crashed | file=%s stage=%s", state.record.id, failed_at.value)

        processing = {
            "status":    "error",
            "error":     str(exc),
            "kind":      exc.kind.value if isinstance(exc, PipelineError) else type(exc).__name__,
            "stage":     failed_at.value,
            "timestamp": _utcnow(),
        }
        try:
            await self._files.update_file(
                state.record.id,
                processing_status="failed",
                metadata=_with_processing(state.record, processing),
            )
        except StoreWriteError as write_exc:
            logger.error("Failed status not recorded | file=%s error=%s", state.record.id, write_exc)


def _with_processing(record: FileRecord, processing: dict) -> dict:
    """Replace metadata.processing, preserving every other metadata key."""
    return {**(record.metadata or {}), "processing": processing}


def _chunk_record(chunk: TextChunk, extraction: ExtractionResult, embedded: EmbeddingResult) -> ChunkRecord:
    metadata = dict(chunk.metadata)
    page = extraction.page_at(chunk.start_offset)
    if page is not None:
        metadata["page_number"] = page
    vector = embedded.vectors.get(chunk.index)
    if vector is None:
        metadata["embedding_status"] = "failed"
        metadata["embedding_error"] = embedded.failures.get(chunk.index, "embedding missing")
    return ChunkRecord(
        section_index=chunk.index,
        content=chunk.text,
        tokens=chunk.token_count,
        start_offset=chunk.start_offset,
        end_offset=chunk.end_offset,
        embedding=vector,
        metadata=metadata,
    )
