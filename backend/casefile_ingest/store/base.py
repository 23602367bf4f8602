"""
Store Interfaces — Files, Chunks, Entities

The pipeline only speaks these three protocols; the PostgreSQL + pgvector
implementation lives in store/postgres.py and tests use in-memory fakes.

Replacement contract (chunks and entities):
  - A pipeline run fully supersedes the previous run's rows for a file.
  - Callers delete first, then insert; there is no incremental patching.
  - The pair is not guarded against two concurrent runs of the same file.

Write contract (chunks):
  - Best-effort per row. One row failing to insert is logged and reported
    in ChunkWriteResult; its siblings are still written.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from uuid import UUID


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class FileRecord:
    id:                    UUID
    project_id:            UUID
    storage_path:          str
    name:                  str = ""
    owner_id:              UUID | None = None
    content_type:          str | None = None
    size:                  int | None = None
    processing_status:     str = "unprocessed"
    thumbnail_url:         str | None = None
    extracted_text_length: int | None = None
    metadata:              dict = field(default_factory=dict)


@dataclass
class ChunkRecord:
    """A chunk row ready to insert. embedding=None marks a failed embedding."""
    section_index: int
    content:       str
    tokens:        int
    start_offset:  int
    end_offset:    int
    embedding:     list[float] | None
    metadata:      dict = field(default_factory=dict)


@dataclass
class ChunkWriteResult:
    inserted: int
    failed:   dict[int, str] = field(default_factory=dict)   # section_index → error


@dataclass
class SimilarChunk:
    """One result returned from a similarity search."""
    id:            UUID
    file_id:       UUID
    section_index: int
    content:       str
    similarity:    float          # 1 - cosine distance
    metadata:      dict = field(default_factory=dict)


@dataclass
class EntityWriteResult:
    inserted: int                 # new rows (conflicting duplicates excluded)
    skipped:  int = 0             # duplicates ignored by the unique index


# ---------------------------------------------------------------------------
# Abstract interfaces
# ---------------------------------------------------------------------------

class FileRecordStore(ABC):

    @abstractmethod
    async def get_file(self, file_id: UUID) -> FileRecord | None:
        ...

    @abstractmethod
    async def update_file(self, file_id: UUID, **values) -> None:
        """
        Update columns of one file row in a single statement.
        Accepted keys: processing_status, thumbnail_url,
        extracted_text_length, metadata.
        """


class ChunkStore(ABC):

    @abstractmethod
    async def delete_chunks(self, file_id: UUID) -> int:
        """Remove every chunk of a file. Idempotent; returns rows deleted."""

    @abstractmethod
    async def insert_chunks(self, file_id: UUID, chunks: list[ChunkRecord]) -> ChunkWriteResult:
        """
        Insert chunks best-effort, one row at a time.

        Raises EmbeddingDimensionError before writing anything when a vector
        does not match the column dimension.
        """

    @abstractmethod
    async def similarity_search(
        self,
        query_embedding: list[float],
        k:               int = 5,
        *,
        project_id:      UUID | None = None,
        file_id:         UUID | None = None,
        match_threshold: float | None = None,
    ) -> list[SimilarChunk]:
        """Top-k chunks by cosine similarity, optionally scoped to a project/file."""


class EntityStore(ABC):

    @abstractmethod
    async def replace_entities(
        self,
        project_id: UUID,
        file_id:    UUID,
        owner_id:   UUID | None,
        entities:   list,      # list[ExtractedEntity]
    ) -> EntityWriteResult:
        """Delete the file's entities, then insert; duplicates are no-ops."""
