"""Job handler input schemas."""

from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from datacollector.schemas.document import IndexDocument


# Collection
class DateRange(BaseModel):
    """Inclusive publication date range."""

    model_config = ConfigDict(populate_by_name=True)

    date_from: Optional[date] = Field(default=None, alias="from")
    date_to: Optional[date] = Field(default=None, alias="to")

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("Invalid date range: from date cannot be after to date")
        return self


class CollectionParams(BaseModel):
    """Input for collection jobs."""

    query: str = Field(min_length=1, max_length=1000)
    sources: Optional[List[str]] = None
    max_results: int = Field(default=50, ge=1, le=500)
    date_range: Optional[DateRange] = None

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Collection job requires a non-empty query")
        return value

    def collector_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"max_results": self.max_results}
        if self.sources:
            options["sources"] = list(self.sources)
        if self.date_range:
            options["date_range"] = self.date_range.model_dump(by_alias=True, mode="json")
        return options


# Processing
class ProcessingParams(BaseModel):
    """Input for processing jobs."""

    download_urls: List[str] = Field(default_factory=list)
    file_paths: List[str] = Field(default_factory=list)
    chunk_size: Optional[int] = Field(default=None, ge=100)
    chunk_overlap: Optional[float] = Field(default=None, ge=0, lt=1)

    @field_validator("download_urls")
    @classmethod
    def _check_urls(cls, urls: List[str]) -> List[str]:
        for url in urls:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError(f"Invalid URL provided for processing job: {url}")
        return urls

    @model_validator(mode="after")
    def _require_input(self) -> "ProcessingParams":
        if not self.download_urls and not self.file_paths:
            raise ValueError("Processing job requires download_urls or file_paths")
        return self


# Indexing
class IndexingParams(BaseModel):
    """Input for indexing jobs."""

    documents: List[IndexDocument] = Field(min_length=1)
    index_name: str = Field(default="documents", min_length=1)
    batch_size: int = Field(default=32, ge=1, le=1000)


# Search
class SearchParams(BaseModel):
    """Input for search jobs."""

    query: str = Field(min_length=1, max_length=1000)
    limit: int = Field(default=10, ge=1, le=100)
    filters: Dict[str, Any] = Field(default_factory=dict)
