"""Tests for the downloader, file processor and embedding service."""

import hashlib
import json

import httpx
import pytest

from datacollector.services.downloader import ContentDownloader, DownloadTooLargeError
from datacollector.services.embeddings import EmbeddingService
from datacollector.services.file_processor import FileProcessor
from datacollector.services.pdf_parser import extract_text_from_pdf


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_download_writes_file_with_checksum(tmp_path):
    body = b"Remote document text"

    def handler(request):
        return httpx.Response(200, content=body, headers={"content-type": "text/plain; charset=utf-8"})

    downloader = ContentDownloader(download_dir=str(tmp_path), client=_client(handler))

    result = downloader.download("https://example.com/files/report.txt")

    assert result.size == len(body)
    assert result.content_type == "text/plain"
    assert result.checksum == hashlib.sha256(body).hexdigest()
    assert result.path.endswith(".txt")
    with open(result.path, "rb") as handle:
        assert handle.read() == body


def test_download_rejects_oversized_file(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"x" * 2048)

    downloader = ContentDownloader(download_dir=str(tmp_path), max_bytes=1024, client=_client(handler))

    with pytest.raises(DownloadTooLargeError):
        downloader.download("https://example.com/big.bin")

    assert list(tmp_path.iterdir()) == []


def test_download_client_error_not_retried(tmp_path):
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404)

    downloader = ContentDownloader(download_dir=str(tmp_path), max_retries=3, client=_client(handler))

    with pytest.raises(httpx.HTTPStatusError):
        downloader.download("https://example.com/missing.pdf")

    assert len(calls) == 1


def test_file_processor_text(tmp_path):
    path = tmp_path / "notes.md"
    path.write_text("Alpha paragraph.\n\nBeta paragraph.")

    processed = FileProcessor().process(str(path), source="local")

    assert processed.source == "local"
    assert processed.content_type == "text/plain"
    assert processed.text_length == len("Alpha paragraph.\n\nBeta paragraph.")
    assert processed.chunks[0].chunk_id == "notes::0"


def test_file_processor_html_strips_boilerplate(tmp_path):
    path = tmp_path / "page.html"
    path.write_text(
        "<html><head><style>p {}</style></head><body>"
        "<nav>Menu</nav><article><h1>Title</h1><p>Body text</p></article>"
        "<footer>Footer</footer></body></html>"
    )

    processed = FileProcessor().process(str(path))
    text = processed.chunks[0].text

    assert "Title" in text
    assert "Body text" in text
    assert "Menu" not in text
    assert "Footer" not in text


def test_file_processor_truncates(tmp_path):
    path = tmp_path / "long.txt"
    path.write_text("y" * 500)

    processed = FileProcessor(max_text_length=100).process(str(path))

    assert processed.truncated is True
    assert processed.text_length == 100


def test_file_processor_errors(tmp_path):
    processor = FileProcessor()
    empty = tmp_path / "empty.txt"
    empty.write_text("   ")
    binary = tmp_path / "image.png"
    binary.write_bytes(b"\x89PNG")

    with pytest.raises(FileNotFoundError):
        processor.process(str(tmp_path / "missing.txt"))
    with pytest.raises(ValueError):
        processor.process(str(empty))
    with pytest.raises(ValueError):
        processor.process(str(binary))


def test_invalid_pdf():
    with pytest.raises(ValueError):
        extract_text_from_pdf(b"not a pdf")


def test_embed_texts():
    requests = []

    def handler(request):
        payload = json.loads(request.content)
        requests.append(payload)
        return httpx.Response(200, json={"embedding": [float(len(payload["prompt"]))] * 4})

    service = EmbeddingService(base_url="http://ollama:11434/", model="test-model", embed_dim=4, client=_client(handler))

    embeddings = service.embed_texts(["a", "bbb"])

    assert embeddings == [[1.0] * 4, [3.0] * 4]
    assert [payload["model"] for payload in requests] == ["test-model", "test-model"]


def test_embedding_dimension_mismatch():
    def handler(request):
        return httpx.Response(200, json={"embedding": [0.1, 0.2]})

    service = EmbeddingService(embed_dim=4, client=_client(handler))

    with pytest.raises(ValueError, match="dimension mismatch"):
        service.embed_texts(["text"])
