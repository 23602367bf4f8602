"""
SQLAlchemy ORM Models — Files, Document Sections (chunks) & Entities

  files              one row per uploaded case file (created by the upload flow;
                     the pipeline only updates status / thumbnail / text length /
                     metadata.processing)
  document_sections  text chunks + pgvector embeddings, fully replaced on
                     every pipeline run for a file
  entities           named entities per (project, file), unique on
                     lower(entity_text) + entity_type

The embedding column dimension comes from EMBEDDING_DIMENSIONS; an embedding
model with a different output size is a configuration error caught before
any row is written.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from casefile_ingest.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


PROCESSING_STATUSES = ("unprocessed", "processing", "completed", "failed")


# ---------------------------------------------------------------------------
# File model: files
# ---------------------------------------------------------------------------

class File(Base):
    """
    Processing state machine (processing_status column):
        unprocessed : uploaded, pipeline never run
        processing  : a pipeline run is in flight (or was abandoned mid-run)
        completed   : last run finished; partial failures live in metadata
        failed      : last run could not read the record or the source bytes
    """

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ({})".format(", ".join(f"'{s}'" for s in PROCESSING_STATUSES)),
            name="files_processing_status_check",
        ),
        Index("idx_files_project_id", "project_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    owner_id:   Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    name:         Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key inside the storage bucket",
    )
    content_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    size:         Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    processing_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="unprocessed",
        server_default="unprocessed",
    )
    thumbnail_url:         Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_text_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # "metadata" is reserved on declarative classes
    file_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<File id={self.id} name={self.name!r} status={self.processing_status}>"


# ---------------------------------------------------------------------------
# DocumentSection model: document_sections
# ---------------------------------------------------------------------------

class DocumentSection(Base):
    """
    One text chunk of a file. section_index is dense and 0-based; ordering
    by it reconstructs the document. embedding is NULL when the embedding
    call for this chunk failed (the failure is recorded in metadata).
    """

    __tablename__ = "document_sections"
    __table_args__ = (
        Index("idx_document_sections_file_id", "file_id", "section_index"),
        Index(
            "idx_document_sections_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
    )
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content:       Mapped[str] = mapped_column(Text, nullable=False)
    tokens:        Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_offset:  Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset:    Mapped[int] = mapped_column(Integer, nullable=False)

    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    section_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Entity model: entities
# ---------------------------------------------------------------------------

class Entity(Base):
    __tablename__ = "entities"
    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('PERSON', 'ORG', 'DATE', 'LOCATION', 'LEGAL_TERM')",
            name="entities_entity_type_check",
        ),
        Index(
            "uq_entities_project_file_text_type",
            "project_id",
            "source_file_id",
            text("lower(entity_text)"),
            "entity_type",
            unique=True,
        ),
        Index("idx_entities_project_type", "project_id", "entity_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id:    Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    entity_text: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
