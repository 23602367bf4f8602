"""
File Processing API Router
POST /api/v1/files/process
POST /api/v1/files/search

Request lifecycle (process):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Body validation {fileId, projectId?, bucketName?}     │
  │    → 400 {error} on failure (app exception handler)      │
  │ 2. FileProcessingPipeline.run(), synchronous: the        │
  │    response is sent once the file is fully processed     │
  │ 3. 200 {success, fileId, textLength, thumbnailUrl}       │
  │    404 {error} unknown file / project mismatch           │
  │    500 {error} failed run (status=failed in files row)   │
  └─────────────────────────────────────────────────────────┘

CORS preflight (OPTIONS) is answered by CORSMiddleware before any route.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from casefile_ingest.api.dependencies import Pipeline, SearchService
from casefile_ingest.schemas.files import (
    ErrorResponse,
    ProcessFileRequest,
    ProcessFileResponse,
    SearchMatch,
    SearchRequest,
    SearchResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/files",
    tags=["File Processing"],
)


# ---------------------------------------------------------------------------
# POST /files/process
# ---------------------------------------------------------------------------

@router.post(
    "/process",
    response_model=ProcessFileResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
    summary="Extract, thumbnail, chunk, embed and tag one uploaded file",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request body"},
        404: {"model": ErrorResponse, "description": "File not found (or not in the given project)"},
        500: {"model": ErrorResponse, "description": "Processing failed"},
    },
)
async def process_file(body: ProcessFileRequest, pipeline: Pipeline) -> ProcessFileResponse:
    # FatalInputError / ConfigurationError are mapped to {error} by the app handlers
    result = await pipeline.run(body.file_id, project_id=body.project_id, bucket_name=body.bucket_name)
    return ProcessFileResponse(
        success=True,
        file_id=result.file_id,
        text_length=result.text_length,
        thumbnail_url=result.thumbnail_url,
    )


# ---------------------------------------------------------------------------
# POST /files/search
# ---------------------------------------------------------------------------

@router.post(
    "/search",
    response_model=SearchResponse,
    response_model_by_alias=True,
    summary="Similarity search over processed file chunks",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request body"},
        500: {"model": ErrorResponse, "description": "Embedding or database failure"},
    },
)
async def search_chunks(body: SearchRequest, search: SearchService) -> SearchResponse:
    matches = await search.search(
        body.query,
        project_id=body.project_id,
        file_id=body.file_id,
        k=body.k,
        threshold=body.threshold,
    )
    return SearchResponse(
        matches=[
            SearchMatch(
                id=m.id,
                file_id=m.file_id,
                section_index=m.section_index,
                content=m.content,
                similarity=m.similarity,
            )
            for m in matches
        ]
    )
