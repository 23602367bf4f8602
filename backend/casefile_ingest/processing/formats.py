"""
Format Extractors  —  One Strategy per Input Format
════════════════════════════════════════════════════

  PdfExtractor        PyMuPDF text layer → pypdf fallback when PyMuPDF cannot
                      open the file → per-page OCR when the text layer is
                      (nearly) empty, i.e. a scanned PDF
  ImageOcrExtractor   bytes + MIME → generative model with an OCR instruction
  DocxExtractor       python-docx paragraphs → word/document.xml text runs →
                      raw byte scan; best-effort, never fails
  PlainTextExtractor  UTF-8 decode (latin-1 fallback for legacy encodings)

Scanned PDFs are treated identically to images: each page is rendered to PNG
and sent through the same OCR call, with bounded page concurrency.

Strategies raise typed PipelineErrors (ExtractionError for corrupt input);
TextExtractorOrchestrator turns those into (text=None, error) so the
pipeline never sees an exception from a bad upload.

Blocking parsers run in the default thread executor and never stall the
event loop.
"""

from __future__ import annotations

import asyncio
import html
import io
import logging
import re
import time
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from casefile_ingest.core.errors import AIServiceError, ExtractionError
from casefile_ingest.llm.base import GenerativeClient, InlineMedia

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

OCR_SYSTEM_INSTRUCTION = (
    "You are an OCR engine for legal documents. Transcribe text exactly as it "
    "appears. Never summarize, translate, or describe the image."
)

OCR_PROMPT = (
    "Extract all visible text from this image, maintaining the original "
    "structure and layout as much as possible. Only return the extracted "
    "text, no additional commentary."
)

# Formats the generative endpoint accepts as inline images; others are
# re-encoded to PNG first.
OCR_NATIVE_IMAGE_TYPES = {"image/png", "image/jpeg", "image/webp"}

_TEXT_RUN_RE   = re.compile(r"<w:t(?:\s[^>]*)?>(.*?)</w:t>", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page (or the whole file for non-paged formats).

    page_number       : 1-based page index
    extraction_method : "pymupdf" | "pypdf" | "ocr" | "python-docx" | ...
    """
    page_number:       int
    text:              str
    extraction_method: str = "unknown"


@dataclass
class ExtractionStrategyResult:
    pages:         list[PageText]
    strategy_name: str
    elapsed_ms:    float = 0.0
    used_ocr:      bool = False
    page_count:    int = 1
    failed_pages:  list[int] = field(default_factory=list)

    @property
    def full_text(self) -> str:
        """Concatenate non-blank pages with paragraph separators."""
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def text_chars(self) -> int:
        return sum(len(p.text.strip()) for p in self.pages)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseFormatExtractor(ABC):
    """
    Abstract base for format extractors.

    All implementations:
      - Accept raw bytes (never a path; invocations are stateless)
      - Return ExtractionStrategyResult or raise a PipelineError subclass
      - Hold no per-document mutable state (safe for concurrent use)
    """

    @property
    @abstractmethod
    def format_name(self) -> str:
        """Unique name for logging and metadata."""

    @abstractmethod
    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        ...


# ---------------------------------------------------------------------------
# Image OCR
# ---------------------------------------------------------------------------

class ImageOcrExtractor(BaseFormatExtractor):
    """OCR through the generative endpoint. An empty transcription is valid."""

    def __init__(self, client: GenerativeClient) -> None:
        self._client = client

    @property
    def format_name(self) -> str:
        return "image"

    async def ocr_image(self, data: bytes, mime_type: str) -> str:
        mime_type = mime_type.lower()
        if mime_type == "image/jpg":
            mime_type = "image/jpeg"
        if mime_type not in OCR_NATIVE_IMAGE_TYPES:
            loop = asyncio.get_event_loop()
            data = await loop.run_in_executor(None, _reencode_png, data)
            mime_type = "image/png"

        try:
            text = await self._client.generate(
                OCR_PROMPT,
                system_instruction=OCR_SYSTEM_INSTRUCTION,
                media=[InlineMedia(mime_type=mime_type, data=data)],
                temperature=0.0,
            )
        except AIServiceError as exc:
            raise ExtractionError(f"OCR request failed: {exc}") from exc
        return text.strip()

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        t0 = time.monotonic()
        text = await self.ocr_image(data, mime_type)
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Image OCR | model=%s mime=%s chars=%d elapsed_ms=%.0f",
            self._client.model_name, mime_type, len(text), elapsed_ms,
        )
        return ExtractionStrategyResult(
            pages=[PageText(page_number=1, text=text, extraction_method="ocr")],
            strategy_name="ocr",
            elapsed_ms=elapsed_ms,
            used_ocr=True,
        )


def _reencode_png(data: bytes) -> bytes:
    from PIL import Image, UnidentifiedImageError

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.seek(0)     # first frame of GIF / multi-page TIFF
            out = io.BytesIO()
            img.convert("RGB").save(out, format="PNG")
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ExtractionError(f"Unreadable image: {exc}") from exc


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfExtractor(BaseFormatExtractor):
    """
    PyMuPDF text layer first; OCR per page when the document looks scanned.

    A document is "scanned" when its text layer holds fewer than
    min_text_chars non-blank characters in total. Pages past max_pages are
    ignored for both text and OCR.
    """

    def __init__(
        self,
        ocr:             ImageOcrExtractor | None = None,
        *,
        max_pages:       int = 100,
        min_text_chars:  int = 100,
        ocr_dpi:         int = 150,
        ocr_concurrency: int = 3,
    ) -> None:
        self._ocr             = ocr
        self._max_pages       = max_pages
        self._min_text_chars  = min_text_chars
        self._ocr_dpi         = ocr_dpi
        self._ocr_concurrency = ocr_concurrency

    @property
    def format_name(self) -> str:
        return "pdf"

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()

        try:
            pages, page_count = await loop.run_in_executor(None, self._read_text_layer, data)
            strategy = "pymupdf"
        except ExtractionError:
            raise
        except Exception as exc:
            logger.warning("PyMuPDF could not open PDF, trying pypdf | error=%s", exc)
            pages, page_count = await loop.run_in_executor(None, self._read_text_layer_pypdf, data)
            strategy = "pypdf"

        result = ExtractionStrategyResult(
            pages=pages, strategy_name=strategy, page_count=page_count,
        )

        if result.text_chars < self._min_text_chars and page_count > 0:
            if self._ocr is None:
                logger.warning("PDF looks scanned but OCR is not configured | pages=%d", page_count)
            elif strategy != "pymupdf":
                logger.warning("PDF looks scanned but pages cannot be rendered | strategy=%s", strategy)
            else:
                result = await self._ocr_document(data, page_count)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "PDF extraction | strategy=%s pages=%d chars=%d used_ocr=%s failed_pages=%d elapsed_ms=%.0f",
            result.strategy_name, result.page_count, result.text_chars,
            result.used_ocr, len(result.failed_pages), result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Text layer
    # ------------------------------------------------------------------

    def _read_text_layer(self, data: bytes) -> tuple[list[PageText], int]:
        """Blocking PyMuPDF pass, run in the thread executor."""
        import fitz

        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.needs_pass and not doc.authenticate(""):
                raise ExtractionError("PDF is password-protected")
            if doc.page_count == 0:
                raise ExtractionError("PDF has no pages")

            page_count = min(doc.page_count, self._max_pages)
            pages = [
                PageText(
                    page_number=i + 1,
                    text=doc.load_page(i).get_text("text"),
                    extraction_method="pymupdf",
                )
                for i in range(page_count)
            ]
        return pages, page_count

    def _read_text_layer_pypdf(self, data: bytes) -> tuple[list[PageText], int]:
        from pypdf import PdfReader

        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                raise ExtractionError("PDF is password-protected")
            if len(reader.pages) == 0:
                raise ExtractionError("PDF has no pages")
            pages = [
                PageText(
                    page_number=i + 1,
                    text=reader.pages[i].extract_text() or "",
                    extraction_method="pypdf",
                )
                for i in range(min(len(reader.pages), self._max_pages))
            ]
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"Corrupted or unreadable PDF: {exc}") from exc
        return pages, len(pages)

    # ------------------------------------------------------------------
    # OCR fallback
    # ------------------------------------------------------------------

    def _render_pages(self, data: bytes, page_count: int) -> list[bytes]:
        import fitz

        zoom = self._ocr_dpi / 72.0
        matrix = fitz.Matrix(zoom, zoom)
        with fitz.open(stream=data, filetype="pdf") as doc:
            return [
                doc.load_page(i).get_pixmap(matrix=matrix, alpha=False).tobytes("png")
                for i in range(page_count)
            ]

    async def _ocr_document(self, data: bytes, page_count: int) -> ExtractionStrategyResult:
        loop = asyncio.get_event_loop()
        images = await loop.run_in_executor(None, self._render_pages, data, page_count)

        semaphore = asyncio.Semaphore(self._ocr_concurrency)

        async def _ocr_page(png: bytes) -> str:
            async with semaphore:
                return await self._ocr.ocr_image(png, "image/png")

        results = await asyncio.gather(*(_ocr_page(png) for png in images), return_exceptions=True)

        pages: list[PageText] = []
        failed: list[int] = []
        for page_number, outcome in enumerate(results, start=1):
            if isinstance(outcome, BaseException):
                logger.warning("PDF page OCR failed | page=%d error=%s", page_number, outcome)
                failed.append(page_number)
                continue
            pages.append(PageText(page_number=page_number, text=outcome, extraction_method="ocr"))

        if images and len(failed) == len(images):
            raise ExtractionError(f"OCR failed for all {len(images)} pages")

        return ExtractionStrategyResult(
            pages=pages,
            strategy_name="pymupdf+ocr",
            used_ocr=True,
            page_count=page_count,
            failed_pages=failed,
        )


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

class DocxExtractor(BaseFormatExtractor):
    """
    Best-effort Word extraction. Returns whatever plain text it can find.

    Tables, headers and footnotes are not walked; body paragraphs only.
    """

    @property
    def format_name(self) -> str:
        return "docx"

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()
        text, method = await loop.run_in_executor(None, self._extract_sync, data)
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info("DOCX extraction | method=%s chars=%d elapsed_ms=%.0f", method, len(text), elapsed_ms)
        return ExtractionStrategyResult(
            pages=[PageText(page_number=1, text=text, extraction_method=method)],
            strategy_name=method,
            elapsed_ms=elapsed_ms,
        )

    def _extract_sync(self, data: bytes) -> tuple[str, str]:
        from docx import Document

        try:
            doc = Document(io.BytesIO(data))
            text = "\n".join(p.text for p in doc.paragraphs if p.text.strip())
            if text.strip():
                return text, "python-docx"
        except Exception as exc:
            logger.warning("python-docx could not parse document, scanning XML | error=%s", exc)

        xml = _read_document_xml(data)
        if xml is not None:
            return _join_text_runs(xml), "xml-runs"
        return _join_text_runs(data.decode("utf-8", errors="ignore")), "raw-scan"


def _read_document_xml(data: bytes) -> str | None:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            return archive.read("word/document.xml").decode("utf-8", errors="ignore")
    except (zipfile.BadZipFile, KeyError, OSError):
        return None


def _join_text_runs(xml: str) -> str:
    runs = (html.unescape(run) for run in _TEXT_RUN_RE.findall(xml))
    return _WHITESPACE_RE.sub(" ", " ".join(runs)).strip()


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseFormatExtractor):

    @property
    def format_name(self) -> str:
        return "text"

    async def extract(self, data: bytes, mime_type: str) -> ExtractionStrategyResult:
        try:
            text = data.decode("utf-8-sig")
            method = "utf-8"
        except UnicodeDecodeError:
            logger.warning("Text file is not valid UTF-8, decoding as latin-1 | bytes=%d", len(data))
            text = data.decode("latin-1")
            method = "latin-1"
        return ExtractionStrategyResult(
            pages=[PageText(page_number=1, text=text, extraction_method=method)],
            strategy_name=method,
        )
