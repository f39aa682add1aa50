"""Document-related Pydantic schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DownloadResult(BaseModel):
    """A file fetched by the content downloader."""

    url: str
    path: str
    size: int
    content_type: str
    checksum: str


class ChunkCreate(BaseModel):
    """Schema for a text chunk."""

    chunk_id: str
    chunk_index: int
    text: str
    char_start: int
    char_end: int
    text_hash: str
    token_estimate: int


class ProcessedFile(BaseModel):
    """Text extracted from one file and its chunks."""

    source: str
    path: str
    content_type: str
    text_length: int
    truncated: bool = False
    chunks: List[ChunkCreate] = Field(default_factory=list)


class IndexDocument(BaseModel):
    """Unit of text to embed and index."""

    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IndexItem(BaseModel):
    """Embedded document handed to a search index."""

    id: str
    text: str
    embedding: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchHit(BaseModel):
    """One search result."""

    id: str
    score: float
    text: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
