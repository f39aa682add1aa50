"""Text extraction and chunking of downloaded or local files."""

import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional

from bs4 import BeautifulSoup

from datacollector.services.chunking import chunk_document
from datacollector.services.pdf_parser import extract_text_from_pdf
from datacollector.schemas.document import ProcessedFile

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".csv", ".json", ".rst"}
HTML_EXTENSIONS = {".html", ".htm"}


class FileProcessor:
    """Extracts text from PDF, HTML and plain text files and chunks it."""

    def __init__(
        self,
        chunk_target_size: int = 1000,
        chunk_overlap_percent: float = 0.2,
        max_text_length: int = 1_000_000,
    ):
        self.chunk_target_size = chunk_target_size
        self.chunk_overlap_percent = chunk_overlap_percent
        self.max_text_length = max_text_length

    def process(
        self,
        path: str,
        source: Optional[str] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[float] = None,
    ) -> ProcessedFile:
        """
        Extract and chunk one file.

        Args:
            path: Local file path
            source: Original location (URL or path) recorded on the result
            chunk_size: Override of the target chunk size
            chunk_overlap: Override of the chunk overlap fraction

        Returns:
            ProcessedFile with its chunks

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file type is unsupported or holds no text
        """
        file_path = Path(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        content_type = self.detect_content_type(file_path)
        text = self.extract_text(file_path, content_type)
        if not text.strip():
            raise ValueError(f"No text could be extracted from {path}")

        truncated = len(text) > self.max_text_length
        if truncated:
            logger.warning(f"Text of {path} truncated from {len(text)} to {self.max_text_length} characters")
            text = text[: self.max_text_length]

        chunks = chunk_document(
            text,
            doc_id=file_path.stem,
            target_size=chunk_size or self.chunk_target_size,
            overlap_percent=self.chunk_overlap_percent if chunk_overlap is None else chunk_overlap,
        )
        logger.info(f"Processed {path}: {len(text)} characters, {len(chunks)} chunks")

        return ProcessedFile(
            source=source or str(file_path),
            path=str(file_path),
            content_type=content_type,
            text_length=len(text),
            truncated=truncated,
            chunks=chunks,
        )

    @staticmethod
    def detect_content_type(file_path: Path) -> str:
        suffix = file_path.suffix.lower()
        if suffix == ".pdf":
            return "application/pdf"
        if suffix in HTML_EXTENSIONS:
            return "text/html"
        if suffix in TEXT_EXTENSIONS:
            return "text/plain"
        guessed, _ = mimetypes.guess_type(file_path.name)
        return guessed or "application/octet-stream"

    def extract_text(self, file_path: Path, content_type: str) -> str:
        """Extract plain text according to the content type."""
        if content_type == "application/pdf":
            return extract_text_from_pdf(file_path.read_bytes())
        if content_type == "text/html":
            return self._extract_html(file_path.read_text(encoding="utf-8", errors="replace"))
        if content_type.startswith("text/") or content_type == "application/json":
            return file_path.read_text(encoding="utf-8", errors="replace")
        raise ValueError(f"Unsupported file type: {content_type}")

    @staticmethod
    def _extract_html(html_content: str) -> str:
        soup = BeautifulSoup(html_content, "html.parser")

        for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
            tag.decompose()

        main = soup.find("article") or soup.find("main") or soup.find("body") or soup
        text = main.get_text(separator="\n\n", strip=True)
        return re.sub(r"\n{3,}", "\n\n", text)
