"""Relational metadata store for ingested documents."""

from src.knowledge.documents.repository import DocumentRepository

__all__ = ["DocumentRepository"]
