"""Prompt text for grounded chat answers."""

from __future__ import annotations

CONTEXT_SEPARATOR = "\n---\n"

NO_RELEVANT_CONTENT = (
    "I couldn't find anything relevant in your knowledge base to answer this. "
    "Try rephrasing the question or import documents that cover the topic."
)

UNKNOWN_FILE = "Unknown file"


def build_prompt(query: str, context_chunks: list[str]) -> str:
    """Build the user prompt: framing, retrieved context, question, instruction."""
    lines = [
        "You are a helpful knowledge assistant.",
        "Context:",
        CONTEXT_SEPARATOR.join(context_chunks),
        "",
        f"User Question: {query}",
        "",
        'Answer based ONLY on the context above. If unsure, say "I don\'t know".',
    ]
    return "\n".join(lines)


def format_error_token(message: str) -> str:
    return f"\n[error] {message}\n"
