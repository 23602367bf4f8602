"""
Text Extraction Orchestrator
════════════════════════════

Detects the real format of an upload and dispatches to the matching
format extractor.

Detection flow:
  1.  Magic bytes (%PDF, PNG, JPEG, GIF, BMP, WEBP, TIFF, ZIP, OLE2).
      A ZIP containing word/document.xml is a DOCX.
  2.  Declared Content-Type (parameters stripped, lowercased).
  3.  File-name extension.
  Magic bytes win over the declared type, so a PDF uploaded as
  application/octet-stream is still read as a PDF.

Contract:
  extract(bytes, declared_type) → ExtractionResult(text | None, error | None)

  Never raises. Unsupported formats, zero-length files, corrupt PDFs and
  OCR outages all come back as text=None plus an ErrorKind and a message.
  An empty OCR transcription is a success with text="".

This module is the only place that knows about format dispatch.
The pipeline only sees ExtractionResult.
"""

from __future__ import annotations

import asyncio
import bisect
import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import (
    ErrorKind,
    ExtractionError,
    PipelineError,
    UnsupportedFormatError,
)
from casefile_ingest.llm.base import GenerativeClient
from casefile_ingest.processing.formats import (
    BaseFormatExtractor,
    DocxExtractor,
    ExtractionStrategyResult,
    ImageOcrExtractor,
    PdfExtractor,
    PlainTextExtractor,
)

logger = logging.getLogger(__name__)


class DocumentFormat(str, Enum):
    PDF         = "pdf"
    IMAGE       = "image"
    DOCX        = "docx"
    TEXT        = "text"
    UNSUPPORTED = "unsupported"


DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MSWORD_MIME = "application/msword"

IMAGE_TYPES = {
    "image/png", "image/jpeg", "image/jpg", "image/gif",
    "image/bmp", "image/webp", "image/tiff",
}

TEXT_APPLICATION_TYPES = {
    "application/json", "application/xml", "application/x-yaml",
    "application/csv", "application/rtf",
}

_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":                              "application/pdf",
    b"\x89PNG\r\n\x1a\n":                 "image/png",
    b"\xff\xd8\xff":                      "image/jpeg",
    b"GIF87a":                            "image/gif",
    b"GIF89a":                            "image/gif",
    b"II*\x00":                           "image/tiff",
    b"MM\x00*":                           "image/tiff",
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1":  "application/x-ole-storage",  # legacy .doc/.xls/.ppt
}

_EXTENSION_TYPES: dict[str, str] = {
    ".pdf":  "application/pdf",
    ".png":  "image/png",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif":  "image/gif",
    ".bmp":  "image/bmp",
    ".webp": "image/webp",
    ".tif":  "image/tiff",
    ".tiff": "image/tiff",
    ".docx": DOCX_MIME,
    ".doc":  MSWORD_MIME,
    ".txt":  "text/plain",
    ".md":   "text/markdown",
    ".csv":  "text/csv",
    ".json": "application/json",
    ".zip":  "application/zip",
}

_BMP_HEADER_SIZES = {12, 40, 52, 56, 108, 124}


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------

def _get_extension(filename: str | None) -> str:
    """Return lowercased file extension including the dot."""
    if not filename:
        return ""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _normalize_mime(declared: str | None) -> str:
    return (declared or "").split(";", 1)[0].strip().lower()


def _zip_is_docx(data: bytes) -> bool:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            return "word/document.xml" in archive.namelist()
    except zipfile.BadZipFile:
        return False


def sniff_mime_type(data: bytes) -> str | None:
    """Identify a file from its leading bytes; None when nothing matches."""
    head = data[:16]
    for magic, mime in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return mime

    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[:2] == b"BM" and len(data) >= 18 and int.from_bytes(data[14:18], "little") in _BMP_HEADER_SIZES:
        return "image/bmp"
    if head[:4] == b"PK\x03\x04":
        return DOCX_MIME if _zip_is_docx(data) else "application/zip"
    return None


def classify_mime_type(mime: str) -> DocumentFormat:
    if mime == "application/pdf":
        return DocumentFormat.PDF
    if mime in IMAGE_TYPES:
        return DocumentFormat.IMAGE
    if mime in (DOCX_MIME, MSWORD_MIME):
        return DocumentFormat.DOCX
    if mime.startswith("text/") or mime in TEXT_APPLICATION_TYPES:
        return DocumentFormat.TEXT
    return DocumentFormat.UNSUPPORTED


def detect_format(data: bytes, declared_type: str | None, filename: str | None = None) -> tuple[DocumentFormat, str]:
    """
    Return (format, effective MIME type) for an upload.

    Never trusts the declared type over recognizable magic bytes. Declared
    Word types still win for archives and OLE2 containers, which are then
    parsed best-effort.
    """
    declared = _normalize_mime(declared_type)
    by_extension = _EXTENSION_TYPES.get(_get_extension(filename), "")
    claimed = declared if declared and declared != "application/octet-stream" else by_extension

    sniffed = sniff_mime_type(data)
    if sniffed in ("application/zip", "application/x-ole-storage"):
        if claimed in (DOCX_MIME, MSWORD_MIME):
            return DocumentFormat.DOCX, claimed
        return DocumentFormat.UNSUPPORTED, claimed or sniffed
    if sniffed:
        return classify_mime_type(sniffed), sniffed

    if not claimed:
        return DocumentFormat.UNSUPPORTED, declared or "application/octet-stream"
    return classify_mime_type(claimed), claimed


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Extraction output returned to the pipeline.

    text           : extracted text; None when extraction failed
    error          : human-readable failure message (None on success)
    error_kind     : UNSUPPORTED_FORMAT | EXTRACTION_FAILURE
    page_starts    : sorted [(char_offset, page_number)] for page lookups
    failed_pages   : pages whose OCR failed (partial success)
    """
    text:          str | None
    error:         str | None = None
    error_kind:    ErrorKind | None = None
    format:        DocumentFormat = DocumentFormat.UNSUPPORTED
    mime_type:     str = ""
    strategy_used: str = ""
    used_ocr:      bool = False
    page_count:    int = 0
    elapsed_ms:    float = 0.0
    page_starts:   list[tuple[int, int]] = field(default_factory=list)
    failed_pages:  list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.text is not None

    @property
    def text_length(self) -> int:
        return len(self.text) if self.text else 0

    def page_at(self, offset: int) -> int | None:
        """Page number containing char `offset` of the text, if paged."""
        if not self.page_starts:
            return None
        idx = bisect.bisect_right([start for start, _ in self.page_starts], offset) - 1
        return self.page_starts[max(idx, 0)][1]

    def to_metadata(self) -> dict:
        return {
            "format":       self.format.value,
            "mime_type":    self.mime_type,
            "strategy":     self.strategy_used,
            "used_ocr":     self.used_ocr,
            "page_count":   self.page_count,
            "failed_pages": self.failed_pages,
            "elapsed_ms":   round(self.elapsed_ms, 1),
        }


def _page_starts(result: ExtractionStrategyResult) -> list[tuple[int, int]]:
    """Offsets of each non-blank page inside full_text (joined by "\\n\\n")."""
    starts: list[tuple[int, int]] = []
    offset = 0
    for page in result.pages:
        if not page.text.strip():
            continue
        starts.append((offset, page.page_number))
        offset += len(page.text) + 2
    return starts


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractorOrchestrator:
    """
    Stateless; one instance may serve many files.

    Usage:
        extractor = TextExtractorOrchestrator(generative_client)
        result    = await extractor.extract(file_bytes, "application/pdf", "brief.pdf")
    """

    def __init__(
        self,
        generative_client: GenerativeClient | None = None,
        *,
        pdf_max_pages:      int | None = None,
        pdf_min_text_chars: int | None = None,
        timeout_seconds:    float | None = None,
    ) -> None:
        ocr = ImageOcrExtractor(generative_client) if generative_client else None
        self._timeout = timeout_seconds or settings.extraction_timeout_seconds
        self._strategies: dict[DocumentFormat, BaseFormatExtractor | None] = {
            DocumentFormat.PDF: PdfExtractor(
                ocr,
                max_pages=pdf_max_pages or settings.pdf_max_pages,
                min_text_chars=settings.pdf_min_text_chars if pdf_min_text_chars is None else pdf_min_text_chars,
                ocr_dpi=settings.pdf_ocr_dpi,
                ocr_concurrency=settings.ocr_concurrency,
            ),
            DocumentFormat.IMAGE: ocr,
            DocumentFormat.DOCX:  DocxExtractor(),
            DocumentFormat.TEXT:  PlainTextExtractor(),
        }

    async def extract(
        self,
        data:          bytes,
        declared_type: str | None,
        filename:      str | None = None,
    ) -> ExtractionResult:
        t0 = time.monotonic()

        if not data:
            logger.warning("Extraction skipped | reason=empty_file filename=%s", filename)
            return ExtractionResult(
                text=None,
                error="File is empty (0 bytes)",
                error_kind=ErrorKind.EXTRACTION_FAILURE,
                mime_type=_normalize_mime(declared_type),
            )

        fmt, mime = detect_format(data, declared_type, filename)
        logger.info(
            "Extraction start | format=%s mime=%s declared=%s bytes=%d",
            fmt.value, mime, declared_type, len(data),
        )

        try:
            strategy = self._strategy_for(fmt, mime)
            result = await asyncio.wait_for(strategy.extract(data, mime), timeout=self._timeout)
        except asyncio.TimeoutError:
            message = f"{fmt.value} extraction timed out after {self._timeout:.0f}s"
            kind = ErrorKind.EXTRACTION_FAILURE
        except PipelineError as exc:
            message, kind = exc.message, exc.kind
        except Exception as exc:
            # Third-party parsers raise arbitrary types on malformed input
            logger.exception("Extractor crashed | format=%s", fmt.value)
            message, kind = f"{type(exc).__name__}: {exc}", ErrorKind.EXTRACTION_FAILURE
        else:
            text = result.full_text
            extraction = ExtractionResult(
                text=text,
                format=fmt,
                mime_type=mime,
                strategy_used=result.strategy_name,
                used_ocr=result.used_ocr,
                page_count=result.page_count,
                elapsed_ms=(time.monotonic() - t0) * 1000,
                page_starts=_page_starts(result) if fmt is DocumentFormat.PDF else [],
                failed_pages=result.failed_pages,
            )
            logger.info(
                "Extraction complete | format=%s strategy=%s chars=%d used_ocr=%s elapsed_ms=%.0f",
                fmt.value, extraction.strategy_used, len(text), extraction.used_ocr, extraction.elapsed_ms,
            )
            return extraction

        logger.warning("Extraction failed | format=%s kind=%s error=%s", fmt.value, kind.value, message)
        return ExtractionResult(
            text=None,
            error=message,
            error_kind=kind,
            format=fmt,
            mime_type=mime,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

    def _strategy_for(self, fmt: DocumentFormat, mime: str) -> BaseFormatExtractor:
        if fmt is DocumentFormat.UNSUPPORTED:
            raise UnsupportedFormatError(f"Unsupported file type: {mime or 'unknown'}")
        strategy = self._strategies[fmt]
        if strategy is None:
            raise ExtractionError(f"No extractor configured for {fmt.value} files (OCR client missing)")
        return strategy
