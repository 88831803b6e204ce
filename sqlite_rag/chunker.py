"""
Text chunking and content fingerprinting.

Documents are split on sentence-like boundaries and greedily packed into
chunks of at most ``chunk_size`` characters. Consecutive chunks share the
trailing ``chunk_overlap`` characters of the previous chunk so a sentence cut
at a boundary keeps some surrounding context. Units longer than a whole chunk
fall back to fixed character windows.
"""

from __future__ import annotations

import hashlib
import re
from typing import List

# Break after ., ! or ? followed by whitespace. Abbreviations are not special-cased.
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_sentences(text: str) -> List[str]:
    return _SENTENCE_BOUNDARY_RE.split(text)


def validate_chunk_params(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if chunk_overlap < 0:
        raise ValueError(f"chunk_overlap must be non-negative, got {chunk_overlap}")
    if chunk_overlap >= chunk_size:
        raise ValueError(
            f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def split_by_character(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    """
    Fixed windows of ``chunk_size`` characters advancing by ``chunk_size - chunk_overlap``.

    Stops at the first window that reaches the end of ``text``, so only the
    last window can be shorter than ``chunk_size``.
    """
    validate_chunk_params(chunk_size, chunk_overlap)
    stride = chunk_size - chunk_overlap
    windows: List[str] = []
    start = 0
    while start < len(text):
        windows.append(text[start : start + chunk_size])
        if start + chunk_size >= len(text):
            break
        start += stride
    return windows


def chunk_text(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    """
    Split ``text`` into overlapping, sentence-aware chunks.

    Every chunk is at most ``chunk_size`` characters. The only exception to
    sentence packing is a single sentence longer than ``chunk_size``, which is
    cut into windows of exactly ``chunk_size`` characters (the last may be
    shorter).

    A new chunk is seeded with the last ``chunk_overlap`` characters of the
    chunk closed just before it. When the seed plus the next sentence would
    not fit, the seed is shortened to the room that is left.

    Raises:
        ValueError: ``chunk_size`` is not positive, or ``chunk_overlap`` is
            negative or not smaller than ``chunk_size``
    """
    validate_chunk_params(chunk_size, chunk_overlap)

    chunks: List[str] = []
    current = ""

    for sentence in split_sentences(normalize_newlines(text)):
        if len(sentence) > chunk_size:
            if current:
                chunks.append(current.strip())
                current = ""
            chunks.extend(split_by_character(sentence, chunk_size, chunk_overlap))
            continue

        joined = len(current) + (1 if current else 0) + len(sentence)
        if joined <= chunk_size:
            current = f"{current} {sentence}" if current else sentence
            continue

        if current:
            chunks.append(current.strip())

        # +1 for the separating space
        room = chunk_size - len(sentence) - 1
        seed_len = min(chunk_overlap, room)
        if chunks and seed_len > 0:
            current = chunks[-1][-seed_len:] + " " + sentence
        else:
            current = sentence

    if current.strip():
        chunks.append(current.strip())

    return [chunk for chunk in chunks if chunk]


def hash_content(content: str) -> str:
    """MD5 hex digest of ``content``; identifies identical chunk text."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()
