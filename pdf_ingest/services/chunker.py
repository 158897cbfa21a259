# =============================================================================
# Token-Based Text Chunker — tiktoken
# =============================================================================
#
# Used when settings.chunk_strategy == "tokens". The default "document"
# strategy embeds the whole joined text as a single record and never calls
# into this module.
#
# ALGORITHM:
# 1. Encode the joined document text with tiktoken (cl100k_base, the
#    tokenizer of the text-embedding-3 models)
# 2. Slide a window of chunk_size tokens, advancing chunk_size - overlap
# 3. Decode each window back to text, skipping windows that decode blank
#
# The output depends only on (text, chunk_size, chunk_overlap), so a retried
# job produces the same chunks and therefore the same record ids.
# =============================================================================

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import tiktoken

logger = logging.getLogger(__name__)


@dataclass
class TextChunk:
    """One window of the document text, ready for embedding."""

    content: str
    chunk_index: int  # 0-indexed position within the document
    token_count: int


_encoder: tiktoken.Encoding | None = None
_encoder_lock = threading.Lock()


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        with _encoder_lock:
            if _encoder is None:
                _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def chunk_text(
    text: str,
    chunk_size: int = 512,
    chunk_overlap: int = 50,
) -> list[TextChunk]:
    """
    Split text into overlapping token windows.

    Args:
        text: The joined document text.
        chunk_size: Maximum tokens per chunk.
        chunk_overlap: Tokens shared by consecutive chunks (< chunk_size).

    Returns:
        Chunks in document order with sequential chunk_index values.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must be >= 0 and < chunk_size")

    encoder = _get_encoder()
    tokens = encoder.encode(text)
    total_tokens = len(tokens)
    if total_tokens == 0:
        return []

    chunks: list[TextChunk] = []
    step = chunk_size - chunk_overlap

    for start in range(0, total_tokens, step):
        end = min(start + chunk_size, total_tokens)
        window = tokens[start:end]
        content = encoder.decode(window).strip()
        if content:
            chunks.append(TextChunk(
                content=content,
                chunk_index=len(chunks),
                token_count=len(window),
            ))
        if end >= total_tokens:
            break

    logger.debug(
        "Chunked %d tokens into %d chunks (size=%d, overlap=%d)",
        total_tokens, len(chunks), chunk_size, chunk_overlap,
    )
    return chunks
