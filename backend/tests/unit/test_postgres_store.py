"""
Unit Tests — PostgreSQL Stores
═══════════════════════════════
Tests for casefile_ingest/store/postgres.py

No database: SQL is checked by compiling statements with the PostgreSQL
dialect, and store methods run against a fake AsyncSession.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from casefile_ingest.core.errors import EmbeddingDimensionError, StoreWriteError
from casefile_ingest.models.files import PROCESSING_STATUSES, DocumentSection, File
from casefile_ingest.processing.entities import EntityType, ExtractedEntity
from casefile_ingest.store.base import ChunkRecord
from casefile_ingest.store.postgres import (
    PostgresChunkStore,
    PostgresEntityStore,
    PostgresFileStore,
    build_similarity_query,
)
from tests.conftest import TEST_DIMENSIONS


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class _FakeSession:
    """Just enough of AsyncSession for the stores: context managers, execute, add, flush."""

    def __init__(self, *, execute_result=None, execute_error=None, flush_errors=None) -> None:
        self.execute = AsyncMock(return_value=execute_result, side_effect=execute_error)
        self.added: list = []
        self._flush_errors = flush_errors or {}
        self.flush = AsyncMock(side_effect=self._flush)

    async def _flush(self):
        section = self.added[-1].section_index
        if section in self._flush_errors:
            self.added.pop()
            raise self._flush_errors[section]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def begin(self):
        return self

    def begin_nested(self):
        return self

    def add(self, obj) -> None:
        self.added.append(obj)


def _record(index: int, dims: int = TEST_DIMENSIONS, embedded: bool = True) -> ChunkRecord:
    return ChunkRecord(
        section_index=index,
        content=f"chunk {index}",
        tokens=2,
        start_offset=index * 10,
        end_offset=index * 10 + 7,
        embedding=[0.1] * dims if embedded else None,
        metadata={"source": "file"},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Similarity query
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.store
class TestBuildSimilarityQuery:

    def test_cosine_distance_ordering(self):
        sql = _sql(build_similarity_query([0.1] * TEST_DIMENSIONS, 7))

        assert "<=>" in sql
        assert "document_sections.embedding IS NOT NULL" in sql
        assert "ORDER BY document_sections.embedding <=>" in sql
        assert "LIMIT" in sql
        assert "JOIN files" not in sql

    def test_project_scope_joins_files(self):
        sql = _sql(build_similarity_query([0.1] * TEST_DIMENSIONS, project_id=uuid.uuid4()))
        assert "JOIN files ON files.id = document_sections.file_id" in sql
        assert "files.project_id =" in sql

    def test_file_scope_and_threshold(self):
        stmt = build_similarity_query([0.1] * TEST_DIMENSIONS, file_id=uuid.uuid4(), match_threshold=0.75)
        sql = _sql(stmt)

        assert "document_sections.file_id =" in sql
        assert sql.count("<=>") >= 3     # similarity column, filter, ordering
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert 0.25 in params.values()

    def test_similarity_column_label(self):
        stmt = build_similarity_query([0.0] * TEST_DIMENSIONS)
        assert [c.name for c in stmt.selected_columns][-1] == "similarity"


# ─────────────────────────────────────────────────────────────────────────────
# Files
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.store
class TestPostgresFileStore:

    async def test_update_compiles_to_metadata_column(self):
        session = _FakeSession()
        store = PostgresFileStore(lambda: session)

        await store.update_file(uuid.uuid4(), processing_status="completed", metadata={"processing": {}})

        stmt = session.execute.await_args.args[0]
        sql = _sql(stmt)
        assert sql.startswith("UPDATE files SET")
        assert "processing_status=" in sql
        assert "metadata=" in sql

    async def test_unknown_column_rejected(self):
        store = PostgresFileStore(lambda: _FakeSession())
        with pytest.raises(ValueError, match="project_id"):
            await store.update_file(uuid.uuid4(), project_id=uuid.uuid4())

    async def test_database_error_becomes_store_write_error(self):
        error = OperationalError("UPDATE files", {}, Exception("connection reset"))
        store = PostgresFileStore(lambda: _FakeSession(execute_error=error))

        with pytest.raises(StoreWriteError, match="connection reset"):
            await store.update_file(uuid.uuid4(), processing_status="failed")

    def test_status_check_constraint_lists_every_status(self):
        check = next(c for c in File.__table__.constraints if c.name == "files_processing_status_check")
        assert str(check.sqltext) == "processing_status IN ('unprocessed', 'processing', 'completed', 'failed')"
        assert PROCESSING_STATUSES[0] == "unprocessed"

    async def test_get_missing_file(self):
        session = _FakeSession()
        session.get = AsyncMock(return_value=None)
        assert await PostgresFileStore(lambda: session).get_file(uuid.uuid4()) is None


# ─────────────────────────────────────────────────────────────────────────────
# Chunks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.store
class TestPostgresChunkStore:

    async def test_insert_every_row(self):
        session = _FakeSession()
        file_id = uuid.uuid4()

        result = await PostgresChunkStore(lambda: session).insert_chunks(
            file_id, [_record(0), _record(1, embedded=False)],
        )

        assert (result.inserted, result.failed) == (2, {})
        assert all(isinstance(row, DocumentSection) for row in session.added)
        assert session.added[0].file_id == file_id
        assert session.added[1].embedding is None

    async def test_rejected_row_isolated(self):
        error = IntegrityError("INSERT INTO document_sections", {}, Exception("value too long"))
        session = _FakeSession(flush_errors={1: error})

        result = await PostgresChunkStore(lambda: session).insert_chunks(
            uuid.uuid4(), [_record(0), _record(1), _record(2)],
        )

        assert result.inserted == 2
        assert list(result.failed) == [1]
        assert "value too long" in result.failed[1]
        assert [row.section_index for row in session.added] == [0, 2]

    async def test_dimension_mismatch_before_any_write(self):
        session = _FakeSession()
        factory = MagicMock(return_value=session)

        with pytest.raises(EmbeddingDimensionError):
            await PostgresChunkStore(factory).insert_chunks(uuid.uuid4(), [_record(0), _record(1, dims=1536)])
        factory.assert_not_called()

    async def test_delete_returns_rowcount(self):
        session = _FakeSession(execute_result=MagicMock(rowcount=4))
        assert await PostgresChunkStore(lambda: session).delete_chunks(uuid.uuid4()) == 4
        assert _sql(session.execute.await_args.args[0]).startswith("DELETE FROM document_sections")

    async def test_delete_failure(self):
        error = OperationalError("DELETE", {}, Exception("deadlock detected"))
        store = PostgresChunkStore(lambda: _FakeSession(execute_error=error))
        with pytest.raises(StoreWriteError):
            await store.delete_chunks(uuid.uuid4())

    async def test_search_rejects_wrong_query_dimension(self):
        with pytest.raises(EmbeddingDimensionError):
            await PostgresChunkStore(lambda: _FakeSession()).similarity_search([0.1] * 3)

    async def test_search_maps_rows(self):
        section = DocumentSection(
            id=uuid.uuid4(), file_id=uuid.uuid4(), section_index=3,
            content="breach of contract", section_metadata={"page_number": 2},
        )
        rows = MagicMock()
        rows.all.return_value = [(section, 0.91)]
        session = _FakeSession(execute_result=rows)

        matches = await PostgresChunkStore(lambda: session).similarity_search([0.1] * TEST_DIMENSIONS, 3)

        assert len(matches) == 1
        assert matches[0].similarity == pytest.approx(0.91)
        assert matches[0].section_index == 3
        assert matches[0].metadata == {"page_number": 2}


# ─────────────────────────────────────────────────────────────────────────────
# Entities
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.store
class TestPostgresEntityStore:

    async def test_replace_deletes_then_inserts(self):
        returned = MagicMock()
        returned.all.return_value = [(uuid.uuid4(),)]
        session = _FakeSession()
        session.execute = AsyncMock(side_effect=[MagicMock(), returned])

        entities = [
            ExtractedEntity(text="Jane Doe", type=EntityType.PERSON),
            ExtractedEntity(text="JANE DOE", type=EntityType.PERSON),
        ]
        result = await PostgresEntityStore(lambda: session).replace_entities(
            uuid.uuid4(), uuid.uuid4(), None, entities,
        )

        assert (result.inserted, result.skipped) == (1, 1)
        delete_sql, insert_sql = (_sql(call.args[0]) for call in session.execute.await_args_list)
        assert delete_sql.startswith("DELETE FROM entities")
        assert insert_sql.startswith("INSERT INTO entities")
        assert "ON CONFLICT DO NOTHING" in insert_sql

    async def test_empty_list_only_deletes(self):
        session = _FakeSession()
        result = await PostgresEntityStore(lambda: session).replace_entities(uuid.uuid4(), uuid.uuid4(), None, [])

        assert (result.inserted, result.skipped) == (0, 0)
        assert session.execute.await_count == 1
