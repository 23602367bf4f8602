"""
File Processing — Pydantic Request/Response Schemas

Covers:
  - POST /api/v1/files/process   run the ingestion pipeline for one stored file
  - POST /api/v1/files/search    similarity search over stored chunks
  - The {"error": ...} body shared by every 4xx/5xx response

Wire format is camelCase (fileId, projectId, bucketName, textLength,
thumbnailUrl); Python attributes stay snake_case via aliases.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Process
# ---------------------------------------------------------------------------

class ProcessFileRequest(_CamelModel):
    file_id:     UUID           = Field(..., description="files.id of an uploaded file")
    project_id:  Optional[UUID] = Field(None, description="When given, must match the file's project")
    bucket_name: Optional[str]  = Field(None, description="Storage bucket; defaults to STORAGE_BUCKET")

    @field_validator("bucket_name")
    @classmethod
    def _blank_bucket_is_default(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class ProcessFileResponse(_CamelModel):
    success:       bool          = True
    file_id:       UUID
    text_length:   int           = Field(..., description="Characters of extracted text (0 when none)")
    thumbnail_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchRequest(_CamelModel):
    query:      str            = Field(..., min_length=1)
    project_id: Optional[UUID] = None
    file_id:    Optional[UUID] = None
    k:          int            = Field(5, ge=1, le=50)
    threshold:  float          = Field(0.7, ge=-1.0, le=1.0)

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value


class SearchMatch(_CamelModel):
    id:            UUID
    file_id:       UUID
    section_index: int
    content:       str
    similarity:    float


class SearchResponse(_CamelModel):
    matches: list[SearchMatch]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    error: str
