"""Background job orchestration for document collection, processing, indexing and search."""

__version__ = "0.1.0"
