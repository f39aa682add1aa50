"""PDF parsing service."""

import io
import logging
from typing import Union

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)


def extract_text_from_pdf(pdf_content: Union[bytes, io.BytesIO]) -> str:
    """
    Extract text from a PDF file.

    Args:
        pdf_content: PDF file content as bytes or BytesIO

    Returns:
        Extracted text, pages separated by blank lines

    Raises:
        ValueError: If the PDF cannot be parsed or holds no text
    """
    pdf_file = io.BytesIO(pdf_content) if isinstance(pdf_content, bytes) else pdf_content

    try:
        reader = PdfReader(pdf_file)
        pages = list(reader.pages)
    except PdfReadError as e:
        logger.error(f"Failed to parse PDF: {e}")
        raise ValueError(f"Failed to parse PDF: {e}") from e

    text_parts = []
    for page_num, page in enumerate(pages, start=1):
        try:
            text = page.extract_text() or ""
        except PdfReadError as e:
            logger.warning(f"Failed to extract text from page {page_num}: {e}")
            continue
        if text.strip():
            text_parts.append(text)
            logger.debug(f"Extracted {len(text)} characters from page {page_num}")

    if not text_parts:
        raise ValueError("No text could be extracted from PDF")

    full_text = "\n\n".join(text_parts)
    logger.info(f"Extracted {len(full_text)} characters from {len(pages)} pages")
    return full_text
