"""Text extractors for all supported document formats.

Provides a DocumentLoader that dispatches to a format-specific extractor
based on the detected DocumentType. Each extractor returns plain text; the
markdown extractor also returns YAML front-matter so tags declared there can
be merged into the document record.

Supported formats: PDF, Word (docx), Markdown, plain text.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import chardet
import yaml
from pydantic import BaseModel, Field

from src.knowledge.errors import ExtractionError, UnsupportedFileTypeError
from src.knowledge.models import DocumentType

logger = logging.getLogger(__name__)

# ── Supported Format Registry ─────────────────────────────────────────────

SUPPORTED_EXTENSIONS: dict[str, DocumentType] = {
    ".pdf": DocumentType.PDF,
    ".docx": DocumentType.DOCX,
    ".md": DocumentType.MD,
    ".txt": DocumentType.TXT,
}


def detect_file_type(file_path: str | Path) -> DocumentType:
    """Map a file name to its DocumentType by extension.

    Raises:
        UnsupportedFileTypeError: If the extension is not supported.
    """
    ext = Path(file_path).suffix.lower()
    doc_type = SUPPORTED_EXTENSIONS.get(ext)
    if doc_type is None:
        raise UnsupportedFileTypeError(str(file_path))
    return doc_type


# ── Extracted Document Model ──────────────────────────────────────────────


class ExtractedDocument(BaseModel):
    """Plain text extracted from a document, plus any front-matter.

    Attributes:
        text: Extracted text content.
        frontmatter: Parsed YAML front-matter dict, if present (markdown only).
        tags: Tags declared in the front-matter.
    """

    text: str
    frontmatter: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list)


# ── Format-Specific Extractors ────────────────────────────────────────────


def _decode_content(raw_bytes: bytes) -> str:
    """Decode bytes to string with encoding detection.

    Tries UTF-8 first, falls back to chardet detection.
    """
    try:
        return raw_bytes.decode("utf-8")
    except UnicodeDecodeError:
        detected = chardet.detect(raw_bytes)
        encoding = detected.get("encoding", "utf-8") or "utf-8"
        logger.info("Detected encoding: %s (confidence: %s)", encoding, detected.get("confidence"))
        return raw_bytes.decode(encoding, errors="replace")


def _parse_frontmatter(text: str) -> tuple[dict[str, Any] | None, str]:
    """Extract YAML front-matter from text.

    Returns (frontmatter_dict, remaining_text). If no front-matter is found,
    returns (None, original_text).
    """
    pattern = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)
    match = pattern.match(text)
    if match:
        try:
            fm = yaml.safe_load(match.group(1))
            if isinstance(fm, dict):
                return fm, text[match.end() :]
        except yaml.YAMLError:
            logger.warning("Failed to parse YAML frontmatter, treating as content")
    return None, text


def _frontmatter_tags(frontmatter: dict[str, Any] | None) -> list[str]:
    """Read the tags entry of front-matter, as a list or comma-separated string."""
    if not frontmatter:
        return []
    raw = frontmatter.get("tags")
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, list):
        items = [str(item) for item in raw]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]


def _load_markdown(file_path: Path) -> ExtractedDocument:
    content = _decode_content(file_path.read_bytes()).replace("\r\n", "\n")
    frontmatter, body = _parse_frontmatter(content)
    return ExtractedDocument(
        text=body,
        frontmatter=frontmatter,
        tags=_frontmatter_tags(frontmatter),
    )


def _load_text(file_path: Path) -> ExtractedDocument:
    return ExtractedDocument(text=_decode_content(file_path.read_bytes()))


def _load_pdf(file_path: Path) -> ExtractedDocument:
    """Load PDF using the unstructured library.

    Elements are joined with blank lines so paragraph boundaries survive
    for the chunker.
    """
    try:
        from unstructured.partition.pdf import partition_pdf
    except ImportError:
        raise ImportError(
            "PDF loading requires the 'unstructured' library. "
            "Install with: pip install 'unstructured[pdf]'"
        )

    elements = partition_pdf(str(file_path))
    return ExtractedDocument(text="\n\n".join(str(el) for el in elements if str(el).strip()))


def _load_docx(file_path: Path) -> ExtractedDocument:
    """Load Word document using the unstructured library."""
    try:
        from unstructured.partition.docx import partition_docx
    except ImportError:
        raise ImportError(
            "Word document loading requires the 'unstructured' library. "
            "Install with: pip install 'unstructured[docx]'"
        )

    elements = partition_docx(str(file_path))
    return ExtractedDocument(text="\n\n".join(str(el) for el in elements if str(el).strip()))


_EXTRACTORS = {
    DocumentType.PDF: _load_pdf,
    DocumentType.DOCX: _load_docx,
    DocumentType.MD: _load_markdown,
    DocumentType.TXT: _load_text,
}


# ── Document Loader ───────────────────────────────────────────────────────


class DocumentLoader:
    """Dispatches to the extractor for a document's type.

    Usage:
        loader = DocumentLoader()
        extracted = loader.load("notes/meeting.md")
    """

    def load(
        self, file_path: str | Path, doc_type: DocumentType | None = None
    ) -> ExtractedDocument:
        """Extract text from a document.

        Args:
            file_path: Path to the document file.
            doc_type: Format override; detected from the extension if omitted.

        Returns:
            ExtractedDocument with text and optional front-matter tags.

        Raises:
            FileNotFoundError: If the file does not exist.
            UnsupportedFileTypeError: If the format is not supported.
            ExtractionError: If the extractor fails.
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Document not found: {path}")

        fmt = doc_type or detect_file_type(path)
        try:
            return _EXTRACTORS[fmt](path)
        except ImportError as exc:
            raise ExtractionError(str(exc)) from exc
        except (OSError, ValueError) as exc:
            raise ExtractionError(f"Failed to extract text from {path.name}: {exc}") from exc


def extract_text(file_path: str | Path, doc_type: DocumentType | None = None) -> str:
    """Convenience wrapper returning only the extracted text."""
    return DocumentLoader().load(file_path, doc_type).text
