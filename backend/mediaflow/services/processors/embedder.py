"""
Embedding Service

Local embedding generation with sentence-transformers; the default
EmbeddingProvider of the embed stage.

Model: sentence-transformers/all-MiniLM-L6-v2 (settings.EMBEDDING_MODEL)
- 384 dimensions (settings.EMBEDDING_DIMENSION, must match the pgvector column)
- normalized output, so cosine similarity is a dot product

The embed stage already hands over bounded batches (EMBEDDING_BATCH_SIZE);
encode() runs in a worker thread so the event loop stays responsive.
"""

import asyncio
import logging
from typing import Optional

import numpy as np
import torch
from sentence_transformers import SentenceTransformer

from mediaflow.core.config import settings
from mediaflow.services.providers.base import EmbeddingProviderError

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    EmbeddingProvider backed by a local sentence-transformers model.

    Usage:
    ------
    embedder = EmbeddingService()
    await embedder.initialize()
    vectors = await embedder.embed(["chunk one", "chunk two"])
    """

    def __init__(
        self,
        model_name: str = None,
        batch_size: int = None,
        device: str = None,
        normalize: bool = True
    ):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.device = device or settings.EMBEDDING_DEVICE
        self.normalize = normalize

        self.model: Optional[SentenceTransformer] = None
        self._initialized = False

        self._validate_device()

    def _validate_device(self) -> None:
        """Fall back to CPU when the configured accelerator is missing."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA not available, falling back to CPU")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("MPS not available, falling back to CPU")
            self.device = "cpu"

    async def initialize(self) -> None:
        """Load the model (downloads on first use). Idempotent."""
        if self._initialized:
            return

        logger.info(f"Loading embedding model: {self.model_name} on {self.device}")
        self.model = await asyncio.to_thread(
            SentenceTransformer,
            self.model_name,
            device=self.device
        )
        self._initialized = True

        if self.dimension != settings.EMBEDDING_DIMENSION:
            logger.warning(
                f"Model dimension {self.dimension} differs from "
                f"EMBEDDING_DIMENSION={settings.EMBEDDING_DIMENSION}"
            )
        logger.info(f"Embedding model loaded. Dimension: {self.dimension}, Device: {self.device}")

    @property
    def dimension(self) -> int:
        if not self._initialized or self.model is None:
            return settings.EMBEDDING_DIMENSION
        return self.model.get_sentence_embedding_dimension()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts.

        Raises:
            EmbeddingProviderError: empty input text (terminal) or a model
                failure (retryable)
        """
        if not texts:
            return []

        if any(not text or not text.strip() for text in texts):
            raise EmbeddingProviderError("Cannot embed empty text", retryable=False)

        if not self._initialized:
            await self.initialize()

        try:
            embeddings = await asyncio.to_thread(self._encode, texts)
        except (RuntimeError, MemoryError) as e:
            logger.error(f"Error in batch embedding generation: {e}")
            raise EmbeddingProviderError(f"Embedding model failure: {e}", retryable=True) from e

        return [row.tolist() for row in embeddings]

    async def embed_text(self, text: str) -> list[float]:
        """Embed a single text (search queries)."""
        vectors = await self.embed([text])
        return vectors[0]

    def _encode(self, texts: list[str]) -> np.ndarray:
        """Sync encode, runs in the thread pool."""
        return self.model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
            convert_to_numpy=True
        )

    async def shutdown(self) -> None:
        """Free the model (and the CUDA cache when on GPU)."""
        if self.model is not None:
            if self.device == "cuda":
                torch.cuda.empty_cache()
            del self.model
            self.model = None

        self._initialized = False
        logger.info("Embedding service shut down")


# ========================================
# Global Instance Management
# ========================================

_embedding_service: Optional[EmbeddingService] = None


async def get_embedding_service() -> EmbeddingService:
    """Process-wide initialized EmbeddingService (model loaded once)."""
    global _embedding_service

    if _embedding_service is None:
        _embedding_service = EmbeddingService()
        await _embedding_service.initialize()

    return _embedding_service


async def shutdown_embedding_service() -> None:
    global _embedding_service

    if _embedding_service is not None:
        await _embedding_service.shutdown()
        _embedding_service = None
