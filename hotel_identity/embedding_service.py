"""
Embedding service: turns a hotel's name + address into a fixed-length vector.

Two backends are provided, a local SentenceTransformer model and Google's
text-embedding API. Both raise CollaboratorUnavailable on failure; a
failed embedding is never replaced by a zero vector.
"""

import asyncio
from collections import OrderedDict
from typing import List, Optional, Protocol

import numpy as np

from config.logging_config import get_logger
from config.settings import (
    EMBEDDING_MODEL,
    EMBEDDING_CACHE_SIZE,
    GOOGLE_EMBEDDING_MODEL,
    GOOGLE_API_KEY,
)
from hotel_identity.exceptions import CollaboratorUnavailable

logger = get_logger(__name__)


class Embedder(Protocol):
    """Narrow interface the matcher and factory depend on."""

    dimension: int

    async def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text``."""
        ...


def get_device() -> str:
    """
    Auto-detect available device (CUDA or CPU).

    Returns:
        Device string: "cuda" if GPU available, "cpu" otherwise
    """
    import torch

    if torch.cuda.is_available():
        logger.info(f"CUDA GPU available: {torch.cuda.get_device_name(0)}")
        return "cuda"
    logger.info("No CUDA GPU detected, using CPU")
    return "cpu"


class _EmbeddingLRU:
    """Small per-instance cache of recent embeddings."""

    def __init__(self, max_entries: int = EMBEDDING_CACHE_SIZE):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, List[float]]" = OrderedDict()

    def get(self, text: str) -> Optional[List[float]]:
        vector = self._entries.get(text)
        if vector is not None:
            self._entries.move_to_end(text)
        return vector

    def set(self, text: str, vector: List[float]):
        if self.max_entries <= 0:
            return
        self._entries[text] = vector
        self._entries.move_to_end(text)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self):
        self._entries.clear()


class SentenceTransformerEmbedder:
    """Embeddings from a local SentenceTransformer model."""

    def __init__(
        self,
        model_name: str = EMBEDDING_MODEL,
        batch_size: int = 32,
        device: Optional[str] = None,
        cache_size: int = EMBEDDING_CACHE_SIZE,
    ):
        """
        Initialize embedding service.

        Args:
            model_name: Name of the SentenceTransformer model
            batch_size: Batch size for bulk encoding
            device: Device to use ("cuda" or "cpu"), auto-detect if None
            cache_size: Number of recent embeddings kept in memory
        """
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        self.batch_size = batch_size
        self.device = device or get_device()

        logger.info(f"Loading SentenceTransformer model: {model_name} on {self.device}")
        try:
            self.model = SentenceTransformer(model_name, device=self.device)
        except Exception as e:
            logger.error(f"Failed to load model {model_name}: {e}")
            raise CollaboratorUnavailable("embedding", f"cannot load model {model_name}: {e}") from e

        self.dimension = self.model.get_sentence_embedding_dimension()
        self._cache = _EmbeddingLRU(cache_size)
        logger.info(f"Model loaded. Embedding dimension: {self.dimension}")

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=len(texts) > self.batch_size,
        )

    async def embed(self, text: str) -> List[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        try:
            vectors = await asyncio.to_thread(self._encode, [text])
        except Exception as e:
            logger.error(f"Embedding failed for '{text[:50]}': {e}")
            raise CollaboratorUnavailable("embedding", str(e)) from e
        vector = vectors[0].astype(float).tolist()
        self._cache.set(text, vector)
        return vector

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts in batches (bulk ingestion)."""
        if not texts:
            logger.warning("No texts provided for embedding")
            return []
        logger.info(f"Embedding {len(texts)} texts (batch size: {self.batch_size})")
        try:
            vectors = await asyncio.to_thread(self._encode, list(texts))
        except Exception as e:
            logger.error(f"Batch embedding failed: {e}")
            raise CollaboratorUnavailable("embedding", str(e)) from e
        result = [v.astype(float).tolist() for v in vectors]
        for text, vector in zip(texts, result):
            self._cache.set(text, vector)
        return result


class GoogleEmbedder:
    """Embeddings from Google's text-embedding API."""

    def __init__(
        self,
        api_key: str = GOOGLE_API_KEY,
        model: str = GOOGLE_EMBEDDING_MODEL,
        dimension: int = 768,
        cache_size: int = EMBEDDING_CACHE_SIZE,
    ):
        import google.generativeai as genai

        if not api_key:
            raise CollaboratorUnavailable("embedding", "GOOGLE_API_KEY is not set")
        genai.configure(api_key=api_key)
        self._genai = genai
        self.model = model
        self.dimension = dimension
        self._cache = _EmbeddingLRU(cache_size)
        logger.info(f"Initialized Google embedder with model: {model}")

    def _embed_sync(self, text: str) -> List[float]:
        result = self._genai.embed_content(
            model=self.model,
            content=text,
            task_type="semantic_similarity",
        )
        return [float(x) for x in result["embedding"]]

    async def embed(self, text: str) -> List[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        try:
            vector = await asyncio.to_thread(self._embed_sync, text)
        except Exception as e:
            logger.error(f"Google embedding failed for '{text[:50]}': {e}")
            raise CollaboratorUnavailable("embedding", str(e)) from e
        if len(vector) != self.dimension:
            raise CollaboratorUnavailable(
                "embedding", f"expected {self.dimension} dimensions, got {len(vector)}"
            )
        self._cache.set(text, vector)
        return vector


def create_embedder(backend: str, **kwargs) -> Embedder:
    """Build the embedder named by ``backend``."""
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedder(**kwargs)
    if backend == "google":
        return GoogleEmbedder(**kwargs)
    raise ValueError(f"Unknown embedding backend: {backend}")
