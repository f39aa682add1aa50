"""Embedding service using Ollama."""

import logging
from typing import List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Service for generating text embeddings using Ollama."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        embed_dim: int = 768,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the embedding service."""
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.embed_dim = embed_dim
        self._client = client

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, in input order

        Raises:
            httpx.HTTPError: On API errors
            ValueError: On dimension mismatch
        """
        if self._client is not None:
            return [self._embed_one(self._client, text) for text in texts]

        with httpx.Client(timeout=60.0) as client:
            return [self._embed_one(client, text) for text in texts]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _embed_one(self, client: httpx.Client, text: str) -> List[float]:
        response = client.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
        )
        response.raise_for_status()
        embedding = response.json()["embedding"]

        if len(embedding) != self.embed_dim:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.embed_dim}, got {len(embedding)}"
            )
        return embedding
