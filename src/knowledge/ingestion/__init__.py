"""Document ingestion pipeline for the Knowledge Base.

Provides text extraction (PDF, Word, Markdown, plain text), character-window
chunking, and end-to-end pipeline orchestration.

The pipeline flow is:

    DocumentLoader.load() -> TextChunker.chunk_document()
    -> EmbeddingService backend.embed() -> QdrantVectorIndex.upsert()
    -> KeywordIndex.upsert()

This produces embedded KnowledgeChunk objects stored in Qdrant plus one
full-text row per document.
"""

from src.knowledge.ingestion.chunker import TextChunker, split_text
from src.knowledge.ingestion.loaders import DocumentLoader, detect_file_type, extract_text
from src.knowledge.ingestion.pipeline import IngestionPipeline, ProgressChannel

__all__ = [
    "DocumentLoader",
    "IngestionPipeline",
    "ProgressChannel",
    "TextChunker",
    "detect_file_type",
    "extract_text",
    "split_text",
]
