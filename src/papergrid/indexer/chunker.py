"""Split post content into paragraph-aligned chunks for embedding."""

from __future__ import annotations

import hashlib
import json
import re

MAX_CHUNK_CHARS = 1200
CHUNK_OVERLAP_CHARS = 160

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


def split_long_paragraph(paragraph: str) -> list[str]:
    """Cut a paragraph longer than MAX_CHUNK_CHARS into overlapping windows."""
    if len(paragraph) <= MAX_CHUNK_CHARS:
        return [paragraph]

    pieces = []
    start = 0
    while start < len(paragraph):
        end = min(len(paragraph), start + MAX_CHUNK_CHARS)
        piece = paragraph[start:end].strip()
        if piece:
            pieces.append(piece)
        if end >= len(paragraph):
            break
        start = max(end - CHUNK_OVERLAP_CHARS, start + 1)
    return pieces


def split_post_content(content: str) -> list[str]:
    """Pack paragraphs into chunks of at most MAX_CHUNK_CHARS, joined by a blank line."""
    normalized = content.replace("\r\n", "\n").replace("\r", "\n").strip()
    if not normalized:
        return []

    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(normalized) if p.strip()]
    pieces = [piece for p in paragraphs for piece in split_long_paragraph(p)]

    chunks: list[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
            continue
        joined = f"{current}\n\n{piece}"
        if len(joined) <= MAX_CHUNK_CHARS:
            current = joined
            continue
        chunks.append(current)
        current = piece
    if current:
        chunks.append(current)
    return chunks


def build_embedding_input(title: str, excerpt: str | None, chunk: str) -> str:
    lines = [f"Title: {title}"]
    if excerpt:
        lines.append(f"Excerpt: {excerpt}")
    lines.append(f"Content: {chunk}")
    return "\n".join(lines)


def build_post_checksum(
    title: str,
    excerpt: str | None,
    content: str,
    embedding_model: str,
    embedding_dimensions: int,
) -> str:
    """Fingerprint of everything that determines a post's chunk set and vectors."""
    payload = {
        "title": title.strip(),
        "excerpt": (excerpt or "").strip(),
        "content": content.strip(),
        "model": embedding_model,
        "dims": embedding_dimensions,
        "chunking": [MAX_CHUNK_CHARS, CHUNK_OVERLAP_CHARS],
    }
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
