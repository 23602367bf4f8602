"""
PostgreSQL + pgvector Stores

  PostgresFileStore    files             read one record, update columns
  PostgresChunkStore   document_sections delete / per-row insert / cosine search
  PostgresEntityStore  entities          delete-then-insert, duplicates ignored

Each operation opens its own session from the injected factory. Chunk
inserts run inside one transaction with a SAVEPOINT per row, so a rejected
row is rolled back alone and its siblings commit.

Similarity uses the pgvector cosine distance operator (<=>), which the HNSW
vector_cosine_ops index serves; similarity = 1 - distance.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import Select, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import EmbeddingDimensionError, StoreWriteError
from casefile_ingest.models.files import DocumentSection, Entity, File
from casefile_ingest.store.base import (
    ChunkRecord,
    ChunkStore,
    ChunkWriteResult,
    EntityStore,
    EntityWriteResult,
    FileRecord,
    FileRecordStore,
    SimilarChunk,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FILE_COLUMNS = {
    "processing_status":     File.processing_status,
    "thumbnail_url":         File.thumbnail_url,
    "extracted_text_length": File.extracted_text_length,
    "metadata":              File.file_metadata,
}


def _default_session_factory() -> async_sessionmaker[AsyncSession]:
    from casefile_ingest.db.session import get_session_factory
    return get_session_factory()


class _PostgresStore:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or _default_session_factory()


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

class PostgresFileStore(_PostgresStore, FileRecordStore):

    async def get_file(self, file_id: UUID) -> FileRecord | None:
        async with self._session_factory() as session:
            row = await session.get(File, file_id)
        if row is None:
            return None
        return FileRecord(
            id=row.id,
            project_id=row.project_id,
            storage_path=row.storage_path,
            name=row.name,
            owner_id=row.owner_id,
            content_type=row.content_type,
            size=row.size,
            processing_status=row.processing_status,
            thumbnail_url=row.thumbnail_url,
            extracted_text_length=row.extracted_text_length,
            metadata=dict(row.file_metadata or {}),
        )

    async def update_file(self, file_id: UUID, **values) -> None:
        unknown = set(values) - set(_UPDATABLE_FILE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update file columns: {sorted(unknown)}")

        stmt = (
            update(File)
            .where(File.id == file_id)
            .values({_UPDATABLE_FILE_COLUMNS[k]: v for k, v in values.items()})
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"File update failed for {file_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

def build_similarity_query(
    query_embedding: list[float],
    k:               int = 5,
    *,
    project_id:      UUID | None = None,
    file_id:         UUID | None = None,
    match_threshold: float | None = None,
) -> Select:
    distance = DocumentSection.embedding.cosine_distance(query_embedding)
    stmt = (
        select(DocumentSection, (1 - distance).label("similarity"))
        .where(DocumentSection.embedding.is_not(None))
        .order_by(distance)
        .limit(k)
    )
    if project_id is not None:
        stmt = stmt.join(File, File.id == DocumentSection.file_id).where(File.project_id == project_id)
    if file_id is not None:
        stmt = stmt.where(DocumentSection.file_id == file_id)
    if match_threshold is not None:
        stmt = stmt.where(distance <= 1 - match_threshold)
    return stmt


class PostgresChunkStore(_PostgresStore, ChunkStore):

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dimensions:      int | None = None,
    ) -> None:
        super().__init__(session_factory)
        self._dimensions = dimensions or settings.embedding_dimensions

    async def delete_chunks(self, file_id: UUID) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DocumentSection).where(DocumentSection.file_id == file_id)
                    )
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Chunk delete failed for {file_id}: {exc}") from exc
        logger.info("Chunks deleted | file=%s rows=%d", file_id, result.rowcount)
        return result.rowcount or 0

    def _check_dimensions(self, chunks: list[ChunkRecord]) -> None:
        for chunk in chunks:
            if chunk.embedding is not None and len(chunk.embedding) != self._dimensions:
                raise EmbeddingDimensionError(self._dimensions, len(chunk.embedding))

    async def insert_chunks(self, file_id: UUID, chunks: list[ChunkRecord]) -> ChunkWriteResult:
        self._check_dimensions(chunks)
        if not chunks:
            return ChunkWriteResult(inserted=0)

        inserted = 0
        failed: dict[int, str] = {}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for chunk in chunks:
                        try:
                            async with session.begin_nested():
                                session.add(DocumentSection(
                                    file_id=file_id,
                                    section_index=chunk.section_index,
                                    content=chunk.content,
                                    tokens=chunk.tokens,
                                    start_offset=chunk.start_offset,
                                    end_offset=chunk.end_offset,
                                    embedding=chunk.embedding,
                                    section_metadata=chunk.metadata,
                                ))
                                await session.flush()
                            inserted += 1
                        except SQLAlchemyError as exc:
                            logger.warning(
                                "Chunk insert failed | file=%s section=%d error=%s",
                                file_id, chunk.section_index, exc,
                            )
                            failed[chunk.section_index] = str(exc)
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Chunk insert transaction failed for {file_id}: {exc}") from exc

        logger.info(
            "Chunks inserted | file=%s inserted=%d failed=%d",
            file_id, inserted, len(failed),
        )
        return ChunkWriteResult(inserted=inserted, failed=failed)

    async def similarity_search(
        self,
        query_embedding: list[float],
        k:               int = 5,
        *,
        project_id:      UUID | None = None,
        file_id:         UUID | None = None,
        match_threshold: float | None = None,
    ) -> list[SimilarChunk]:
        if len(query_embedding) != self._dimensions:
            raise EmbeddingDimensionError(self._dimensions, len(query_embedding))

        stmt = build_similarity_query(
            query_embedding,
            k,
            project_id=project_id,
            file_id=file_id,
            match_threshold=match_threshold,
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            SimilarChunk(
                id=section.id,
                file_id=section.file_id,
                section_index=section.section_index,
                content=section.content,
                similarity=float(similarity),
                metadata=dict(section.section_metadata or {}),
            )
            for section, similarity in rows
        ]


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class PostgresEntityStore(_PostgresStore, EntityStore):

    async def replace_entities(
        self,
        project_id: UUID,
        file_id:    UUID,
        owner_id:   UUID | None,
        entities:   list,
    ) -> EntityWriteResult:
        rows = [
            {
                "project_id":     project_id,
                "source_file_id": file_id,
                "owner_id":       owner_id,
                "entity_text":    entity.text,
                "entity_type":    entity.type.value,
            }
            for entity in entities
        ]
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(Entity).where(
                            Entity.project_id == project_id,
                            Entity.source_file_id == file_id,
                        )
                    )
                    inserted = 0
                    if rows:
                        result = await session.execute(
                            pg_insert(Entity).values(rows).on_conflict_do_nothing().returning(Entity.id)
                        )
                        inserted = len(result.all())
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"Entity write failed for {file_id}: {exc}") from exc

        logger.info(
            "Entities replaced | project=%s file=%s inserted=%d skipped=%d",
            project_id, file_id, inserted, len(rows) - inserted,
        )
        return EntityWriteResult(inserted=inserted, skipped=len(rows) - inserted)
