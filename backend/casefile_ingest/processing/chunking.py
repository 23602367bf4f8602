"""
Text Chunker  —  Boundary-Aware Overlapping Windows
════════════════════════════════════════════════════

Splits extracted document text into an ordered sequence of overlapping
chunks, the unit of embedding and similarity search.

Algorithm
─────────
  Walk the text keeping two cursors:

    start  where the next emitted chunk begins (includes overlap context)
    fresh  where text not yet covered by any chunk begins

  For each chunk:
    1. The window edge is fresh + max_chunk_size (clamped to the text end).
    2. Pick the cut point, in order of preference:
         a. last paragraph break ("\\n\\n") in the window past its midpoint
         b. last sentence break (". ") in the window past its midpoint
         c. hard cut at the window edge
    3. Emit text[start:cut].
    4. Retreat: the next chunk starts `overlap` characters before the cut,
       never before the current chunk's start. Overlap is applied after hard
       cuts as well; a cut through a sentence is where the neighbouring
       context matters most.

  The window budget counts only new text, so a chunk carries at most
  `overlap` characters of leading context on top of `max_chunk_size`.
  Text no longer than max_chunk_size is one chunk; blank text is none.

Offsets are exact positions in the input string, so for any result:

    text[c.start_offset:c.end_offset] == c.text

Sizes are in characters (approximate tokens × 4). No tokenizer dependency.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from casefile_ingest.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

PARAGRAPH_BREAK = "\n\n"
SENTENCE_BREAK  = ". "
CHARS_PER_TOKEN = 4     # rough estimate for embedding-model tokenizers


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class TextChunk:
    """
    A single chunk of extracted text, ready for embedding.

    Length is bounded by max_chunk_size + overlap (1000 characters at the
    800/200 defaults): up to max_chunk_size of new text plus the carried-over
    leading context.
    """
    index:        int      # 0-based, dense, document order
    text:         str
    start_offset: int      # inclusive offset into the extracted text
    end_offset:   int      # exclusive
    token_count:  int      # estimated (len // CHARS_PER_TOKEN)
    metadata:     dict = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // CHARS_PER_TOKEN) if text else 0


# ---------------------------------------------------------------------------
# Core algorithm
# ---------------------------------------------------------------------------

def chunk_text(text: str, max_chunk_size: int = 800, overlap: int = 200) -> list[TextChunk]:
    """
    Split `text` into overlapping chunks. Deterministic for fixed parameters.

    Raises ValueError when overlap is not smaller than max_chunk_size, which
    would stop the walk from making progress.
    """
    if max_chunk_size <= 0:
        raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError(
            f"overlap must be in [0, max_chunk_size), got overlap={overlap} "
            f"max_chunk_size={max_chunk_size}"
        )

    if not text or not text.strip():
        return []

    length = len(text)
    if length <= max_chunk_size:
        return [_make_chunk(text, 0, 0, length)]

    chunks: list[TextChunk] = []
    start = 0
    fresh = 0

    while fresh < length:
        edge = min(fresh + max_chunk_size, length)
        end = edge if edge == length else _find_cut(text, fresh, edge, max_chunk_size)

        chunks.append(_make_chunk(text, len(chunks), start, end))
        if end >= length:
            break

        start = max(end - overlap, start)
        fresh = end

    logger.debug(
        "Chunking complete | chars=%d chunks=%d max=%d overlap=%d",
        length, len(chunks), max_chunk_size, overlap,
    )
    return chunks


def _find_cut(text: str, fresh: int, edge: int, max_chunk_size: int) -> int:
    """Return the exclusive cut offset for the window [fresh, edge)."""
    floor = fresh + max_chunk_size // 2

    para = text.rfind(PARAGRAPH_BREAK, floor + 1, edge)
    if para != -1:
        return para + len(PARAGRAPH_BREAK)

    sentence = text.rfind(SENTENCE_BREAK, floor + 1, edge)
    if sentence != -1:
        return sentence + 1     # keep the period, the space opens the next chunk

    return edge


def _make_chunk(text: str, index: int, start: int, end: int) -> TextChunk:
    body = text[start:end]
    return TextChunk(
        index=index,
        text=body,
        start_offset=start,
        end_offset=end,
        token_count=estimate_tokens(body),
    )


# ---------------------------------------------------------------------------
# Configured chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """Binds chunk sizing to configuration so the pipeline can inject it."""

    def __init__(self, max_chunk_size: int | None = None, overlap: int | None = None) -> None:
        self.max_chunk_size = max_chunk_size or settings.chunk_max_size
        self.overlap = settings.chunk_overlap if overlap is None else overlap
        if self.overlap >= self.max_chunk_size:
            raise ValueError("chunk overlap must be smaller than chunk size")

    def chunk(self, text: str) -> list[TextChunk]:
        chunks = chunk_text(text, self.max_chunk_size, self.overlap)
        for chunk in chunks:
            chunk.metadata = {"source": "file", "section_type": "text_chunk"}
        return chunks
