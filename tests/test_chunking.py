"""Tests for chunking service."""

from datacollector.services.chunking import chunk_document


def test_chunk_document():
    """Test basic document chunking."""
    text = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph."
    doc_id = "test-doc-123"

    chunks = chunk_document(text, doc_id)

    assert len(chunks) == 1
    assert chunks[0].chunk_index == 0
    assert chunks[0].chunk_id == f"{doc_id}::0"
    assert chunks[0].char_start == 0
    assert chunks[0].text == text


def test_chunk_hash_consistency():
    """Test that identical chunks produce identical hashes."""
    text = "Same text.\n\nSame text."
    doc_id = "test-doc"

    chunks1 = chunk_document(text, doc_id)
    chunks2 = chunk_document(text, doc_id)

    assert chunks1[0].text_hash == chunks2[0].text_hash


def test_chunk_token_estimation():
    """Test token estimation."""
    text = "Short text."
    doc_id = "test-doc"

    chunks = chunk_document(text, doc_id)

    assert chunks[0].token_estimate > 0
    assert chunks[0].token_estimate == len(text) // 4


def test_chunk_overlap():
    """Test that each chunk starts with the tail of the previous one."""
    text = "\n\n".join(f"Paragraph {i} " + "x" * 290 for i in range(6))

    chunks = chunk_document(text, "doc", target_size=500, overlap_percent=0.2)

    assert len(chunks) > 1
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    first, second = chunks[0], chunks[1]
    overlap = first.text[-int(len(first.text) * 0.2):]
    assert second.text.startswith(overlap)
    assert second.char_start == first.char_end - len(overlap)


def test_long_paragraph_is_split():
    text = "word " * 500

    chunks = chunk_document(text, "doc", target_size=1000, overlap_percent=0)

    assert len(chunks) >= 3
    assert all(len(chunk.text) <= 1000 for chunk in chunks)


def test_empty_text():
    assert chunk_document("  \n\n  ", "doc") == []
