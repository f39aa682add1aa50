"""Paragraph-aware document chunking with overlap."""

import hashlib
from typing import List

from datacollector.schemas.document import ChunkCreate


def chunk_document(
    text: str,
    doc_id: str,
    target_size: int = 1000,
    overlap_percent: float = 0.2,
) -> List[ChunkCreate]:
    """
    Chunk document text into paragraph-aware chunks with overlap.

    Args:
        text: Full document text
        doc_id: Document identifier used as the chunk id prefix
        target_size: Preferred maximum chunk length in characters
        overlap_percent: Fraction of each chunk repeated at the start of the next

    Returns:
        List of ChunkCreate schemas
    """
    paragraphs = []
    for paragraph in text.split("\n\n"):
        paragraph = paragraph.strip()
        if paragraph:
            paragraphs.extend(_split_long_paragraph(paragraph, target_size))

    chunks = []
    current_chunk: List[str] = []
    current_length = 0
    chunk_index = 0
    char_offset = 0

    for paragraph in paragraphs:
        para_length = len(paragraph)

        if current_length + para_length > target_size and current_chunk:
            chunk_text = "\n\n".join(current_chunk)
            chunk_end = char_offset + len(chunk_text)
            chunks.append(_create_chunk_schema(chunk_text, doc_id, chunk_index, char_offset, chunk_end))

            overlap_size = int(len(chunk_text) * overlap_percent)
            overlap_text = chunk_text[-overlap_size:] if overlap_size > 0 else ""

            char_offset = chunk_end - len(overlap_text)
            current_chunk = [overlap_text] if overlap_text else []
            current_length = len(overlap_text)
            chunk_index += 1

        current_chunk.append(paragraph)
        current_length += para_length + 2  # "\n\n" separator

    if current_chunk:
        chunk_text = "\n\n".join(current_chunk)
        chunks.append(
            _create_chunk_schema(chunk_text, doc_id, chunk_index, char_offset, char_offset + len(chunk_text))
        )

    return chunks


def _split_long_paragraph(paragraph: str, target_size: int) -> List[str]:
    """Split a paragraph longer than the target at whitespace."""
    pieces = []
    while len(paragraph) > target_size:
        cut = paragraph.rfind(" ", 0, target_size)
        if cut <= 0:
            cut = target_size
        pieces.append(paragraph[:cut].strip())
        paragraph = paragraph[cut:].strip()
    if paragraph:
        pieces.append(paragraph)
    return pieces


def _create_chunk_schema(
    chunk_text: str,
    doc_id: str,
    chunk_index: int,
    char_start: int,
    char_end: int,
) -> ChunkCreate:
    text_hash = hashlib.sha256(chunk_text.encode()).hexdigest()

    # Rough token estimate: chars / 4
    token_estimate = len(chunk_text) // 4

    return ChunkCreate(
        chunk_id=f"{doc_id}::{chunk_index}",
        chunk_index=chunk_index,
        text=chunk_text,
        char_start=char_start,
        char_end=char_end,
        text_hash=text_hash,
        token_estimate=token_estimate,
    )
