"""
Thumbnail Generator
═══════════════════

  PDF     first page rendered by PyMuPDF, longest side ≤ max_size, JPEG
  Image   decoded by Pillow, EXIF-rotated, fit inside max_size², JPEG
  Other   generic max_size² tile coloured and labelled by file category
          (document / spreadsheet / presentation / archive / audio / video /
          text / other); a placeholder is a success, not a failure

Output is uploaded to  thumbnails/<file_id>.jpg  with overwrite semantics,
so re-running the pipeline regenerates the same object.

Failure policy: rendering or upload problems are logged and returned as
ThumbnailResult(url=None, error=...). generate() never raises; the pipeline
carries on without a preview.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

from casefile_ingest.core.config import settings
from casefile_ingest.core.errors import ThumbnailError
from casefile_ingest.processing.extractor import sniff_mime_type
from casefile_ingest.storage.s3 import ObjectStorage, StorageError

logger = logging.getLogger(__name__)

THUMBNAIL_PREFIX = "thumbnails"
RENDER_TIMEOUT_SECONDS = 60

# category → (background, label)
GENERIC_TILES: dict[str, tuple[str, str]] = {
    "document":     ("#295396", "DOC"),
    "spreadsheet":  ("#1D6F42", "XLS"),
    "presentation": ("#D04423", "PPT"),
    "text":         ("#7D7D7D", "TXT"),
    "archive":      ("#FFC107", "ZIP"),
    "audio":        ("#8BC34A", "AUDIO"),
    "video":        ("#FF5722", "VIDEO"),
    "other":        ("#F0F0F0", "FILE"),
}

_CATEGORY_HINTS: list[tuple[str, tuple[str, ...]]] = [
    ("spreadsheet",  ("spreadsheet", "excel", "sheet", "csv")),
    ("presentation", ("presentation", "powerpoint")),
    ("document",     ("wordprocessing", "msword", "opendocument.text", "rtf")),
    ("archive",      ("zip", "x-rar", "x-7z", "x-tar", "gzip", "x-bzip")),
]


@dataclass
class ThumbnailResult:
    url:      str | None
    category: str
    path:     str | None = None
    error:    str | None = None


def thumbnail_path(file_id) -> str:
    return f"{THUMBNAIL_PREFIX}/{file_id}.jpg"


def thumbnail_category(mime_type: str) -> str:
    """Coarse category driving the render path or the generic tile."""
    mime = (mime_type or "").lower()
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("audio/"):
        return "audio"
    if mime.startswith("video/"):
        return "video"
    for category, hints in _CATEGORY_HINTS:
        if any(hint in mime for hint in hints):
            return category
    if mime.startswith("text/") or mime in ("application/json", "application/xml"):
        return "text"
    return "other"


class ThumbnailGenerator:

    def __init__(
        self,
        storage:  ObjectStorage,
        *,
        max_size: int | None = None,
        quality:  int | None = None,
    ) -> None:
        self._storage  = storage
        self._max_size = max_size or settings.thumbnail_max_size
        self._quality  = quality or settings.thumbnail_quality

    async def generate(self, data: bytes, mime_type: str, file_id) -> ThumbnailResult:
        sniffed = sniff_mime_type(data) if data else None
        # Containers (zip, OLE2) say nothing about the office type; trust the declared one
        generic_containers = ("application/zip", "application/x-ole-storage")
        effective = sniffed if sniffed and sniffed not in generic_containers else mime_type
        category = thumbnail_category(effective)

        loop = asyncio.get_event_loop()
        try:
            jpeg = await asyncio.wait_for(
                loop.run_in_executor(None, self._render, data, category),
                timeout=RENDER_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            # Pillow / PyMuPDF raise many exception types on malformed input
            message = f"render failed: {type(exc).__name__}: {exc}"
            logger.warning("Thumbnail skipped | file=%s category=%s error=%s", file_id, category, message)
            return ThumbnailResult(url=None, category=category, error=message)

        path = thumbnail_path(file_id)
        try:
            url = await self._storage.upload(path, jpeg, "image/jpeg")
        except (StorageError, asyncio.TimeoutError) as exc:
            message = f"upload failed: {exc}"
            logger.warning("Thumbnail skipped | file=%s path=%s error=%s", file_id, path, message)
            return ThumbnailResult(url=None, category=category, path=path, error=message)

        logger.info("Thumbnail stored | file=%s category=%s bytes=%d", file_id, category, len(jpeg))
        return ThumbnailResult(url=url, category=category, path=path)

    # ------------------------------------------------------------------
    # Rendering (blocking, runs in thread executor)
    # ------------------------------------------------------------------

    def _render(self, data: bytes, category: str) -> bytes:
        if category == "pdf":
            image = self._render_pdf(data)
        elif category == "image":
            image = self._render_image(data)
        else:
            image = self._render_generic(category)
        return self._encode_jpeg(image)

    def _render_pdf(self, data: bytes):
        import fitz
        from PIL import Image

        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.page_count == 0:
                raise ThumbnailError("PDF has no pages")
            page = doc.load_page(0)
            longest = max(page.rect.width, page.rect.height) or 1
            zoom = self._max_size / longest
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

        image.thumbnail((self._max_size, self._max_size))
        return image

    def _render_image(self, data: bytes):
        from PIL import Image, ImageOps

        with Image.open(io.BytesIO(data)) as src:
            src.seek(0)
            image = ImageOps.exif_transpose(src)
            image.thumbnail((self._max_size, self._max_size), Image.Resampling.LANCZOS)

            if image.mode in ("RGBA", "LA", "P"):
                rgba = image.convert("RGBA")
                background = Image.new("RGB", rgba.size, "#FFFFFF")
                background.paste(rgba, mask=rgba.getchannel("A"))
                return background
            return image.convert("RGB")

    def _render_generic(self, category: str):
        from PIL import Image, ImageColor, ImageDraw, ImageFont

        color, label = GENERIC_TILES.get(category, GENERIC_TILES["other"])
        size = self._max_size
        image = Image.new("RGB", (size, size), color)
        draw = ImageDraw.Draw(image)

        r, g, b = ImageColor.getrgb(color)
        luminance = 0.299 * r + 0.587 * g + 0.114 * b
        ink = "#333333" if luminance > 160 else "#FFFFFF"

        font = ImageFont.load_default(size=size // 6)
        left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
        position = ((size - (right - left)) / 2 - left, (size - (bottom - top)) / 2 - top)
        draw.text(position, label, fill=ink, font=font)
        return image

    def _encode_jpeg(self, image) -> bytes:
        out = io.BytesIO()
        image.save(out, format="JPEG", quality=self._quality, optimize=True)
        return out.getvalue()
