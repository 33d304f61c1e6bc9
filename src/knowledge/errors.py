"""Error taxonomy for the knowledge base.

Storage adapters classify backend failures into an IndexErrorKind so callers
can branch on the kind instead of matching message text. Ingestion failures
are recorded on the document, retrieval failures degrade to empty results,
and generation failures are rendered in-band in the token stream; only
configuration errors are expected to surface to callers.
"""

from __future__ import annotations

from enum import Enum


class IndexErrorKind(str, Enum):
    """Classification of a vector or keyword index failure."""

    NOT_FOUND = "not_found"
    SCHEMA = "schema"
    UNAVAILABLE = "unavailable"
    OTHER = "other"


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors."""


class ConfigurationError(KnowledgeBaseError):
    """A required component is missing or misconfigured."""


class UnsupportedFileTypeError(KnowledgeBaseError):
    """The file extension is not one of the supported document types."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Unsupported file type: {path}")
        self.path = path


class ExtractionError(KnowledgeBaseError):
    """Text could not be extracted from a document."""


class EmptyDocumentError(KnowledgeBaseError):
    """Extraction succeeded but produced no indexable text."""


class EmbeddingBackendError(KnowledgeBaseError):
    """The embedding backend failed to initialize or to produce a vector."""


class GenerationBackendError(KnowledgeBaseError):
    """The chat model server rejected or failed a generation request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageIndexError(KnowledgeBaseError):
    """Base for index errors carrying a classified kind."""

    def __init__(self, message: str, kind: IndexErrorKind = IndexErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind


class VectorIndexError(StorageIndexError):
    """Failure reported by the vector index."""


class KeywordIndexError(StorageIndexError):
    """Failure reported by the keyword index."""
