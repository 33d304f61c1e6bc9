"""Character-window text chunking with sentence-boundary preference.

The window advances by a fixed stride (chunk_size - overlap) from the start of
the previous window, regardless of where the previous chunk actually ended.
Within the last BOUNDARY_LOOKBACK characters of each window the chunk is cut
just after the last '.' or newline, so chunks tend to end on a sentence or
line boundary. The final window is never shortened.

Each chunk produces a KnowledgeChunk object ready for embedding and vector
storage.
"""

from __future__ import annotations

import logging

from src.knowledge.models import KnowledgeChunk

logger = logging.getLogger(__name__)

BOUNDARY_LOOKBACK = 50
BOUNDARY_CHARS = (".", "\n")


def _validate(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(
            f"overlap must be >= 0 and smaller than chunk_size "
            f"(chunk_size={chunk_size}, overlap={overlap})"
        )


def split_windows(text: str, chunk_size: int = 500, overlap: int = 50) -> list[tuple[int, int]]:
    """Compute the [start, end) character spans of every chunk window.

    Spans are computed on text with CRLF already normalised and are not
    trimmed, so consecutive spans always cover the input.

    Args:
        text: Normalised input text.
        chunk_size: Maximum characters per window.
        overlap: Characters the next window re-reads from the previous one.

    Returns:
        Ordered list of (start, end) offsets.
    """
    _validate(chunk_size, overlap)
    spans: list[tuple[int, int]] = []
    length = len(text)
    cursor = 0
    step = chunk_size - overlap

    while cursor < length:
        slice_end = min(cursor + chunk_size, length)
        end = slice_end
        if slice_end < length:
            search_start = max(cursor, slice_end - BOUNDARY_LOOKBACK)
            window = text[search_start:slice_end]
            idx = max(window.rfind(ch) for ch in BOUNDARY_CHARS)
            if idx != -1:
                end = search_start + idx + 1
        spans.append((cursor, end))
        cursor += step

    return spans


def split_text(text: str | None, chunk_size: int = 500, overlap: int = 50) -> list[str]:
    """Split text into overlapping chunks of at most chunk_size characters.

    Args:
        text: Input text. None or empty input yields no chunks.
        chunk_size: Maximum characters per chunk.
        overlap: Characters shared by consecutive windows.

    Returns:
        Trimmed, non-empty chunk strings in document order.

    Raises:
        ValueError: If chunk_size is not positive or overlap is not in
            [0, chunk_size).
    """
    _validate(chunk_size, overlap)
    if not text:
        return []

    normalised = text.replace("\r\n", "\n")
    chunks: list[str] = []
    for start, end in split_windows(normalised, chunk_size, overlap):
        piece = normalised[start:end].strip()
        if piece:
            chunks.append(piece)
    return chunks


class TextChunker:
    """Splits document text into KnowledgeChunk objects.

    Args:
        chunk_size: Maximum characters per chunk.
        overlap: Characters shared by consecutive windows.

    Usage:
        chunker = TextChunker(chunk_size=500, overlap=50)
        chunks = chunker.chunk_document(text, document_id="...", kb_id=None)
    """

    def __init__(self, chunk_size: int = 500, overlap: int = 50) -> None:
        _validate(chunk_size, overlap)
        self.chunk_size = chunk_size
        self.overlap = overlap

    def split(self, text: str | None) -> list[str]:
        return split_text(text, self.chunk_size, self.overlap)

    def chunk_document(
        self,
        text: str | None,
        document_id: str,
        kb_id: str | None = None,
    ) -> list[KnowledgeChunk]:
        """Split a document's text into ordered chunks.

        Args:
            text: Extracted document text.
            document_id: Owning document identifier.
            kb_id: Knowledge base copied onto every chunk.

        Returns:
            List of KnowledgeChunk objects without embeddings.
        """
        pieces = self.split(text)
        chunks = [
            KnowledgeChunk(
                document_id=document_id,
                kb_id=kb_id,
                content=piece,
                chunk_index=index,
            )
            for index, piece in enumerate(pieces)
        ]
        logger.debug("Split document %s into %d chunks", document_id, len(chunks))
        return chunks
