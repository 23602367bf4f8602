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

__all__ = [
    "ChunkRecord",
    "ChunkStore",
    "ChunkWriteResult",
    "EntityStore",
    "EntityWriteResult",
    "FileRecord",
    "FileRecordStore",
    "SimilarChunk",
]
