"""Retrieval-augmented chat over the knowledge base.

Components:
- HybridRetriever: semantic, keyword or fused hybrid search with metadata join
- OllamaChatClient: streaming chat completions from a local Ollama server
- RAGChatOrchestrator: retrieve -> gate -> cite sources -> stream the answer
"""

from src.knowledge.rag.llm import OllamaChatClient
from src.knowledge.rag.pipeline import ChatTurn, RAGChatOrchestrator
from src.knowledge.rag.retriever import HybridRetriever, fuse_results

__all__ = [
    "ChatTurn",
    "HybridRetriever",
    "OllamaChatClient",
    "RAGChatOrchestrator",
    "fuse_results",
]
