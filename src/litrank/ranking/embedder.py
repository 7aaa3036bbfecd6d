# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Sentence embedding inference for semantic reranking.

Wraps a sentence-transformers model behind a narrow ``embed`` /
``embed_batch`` interface. The model is loaded lazily so importing this
module never pulls in torch; each worker in the pool owns its own
instance.

Model: all-MiniLM-L6-v2 (384-dim, fast, good quality)
"""

import logging
import threading
from typing import Optional, Protocol, Sequence, cast

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"
EMBEDDING_DIMENSIONS = 384


class EmbeddingModel(Protocol):
    """Protocol for embedding models."""

    def encode(
        self,
        sentences: list[str] | str,
        batch_size: int = 32,
        show_progress_bar: bool = False,
        normalize_embeddings: bool = True,
    ) -> NDArray[np.float32]: ...


class Embedder(Protocol):
    """Protocol for objects that turn texts into vectors."""

    def embed(self, text: str) -> NDArray[np.float32]: ...

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> NDArray[np.float32]: ...


class SentenceTransformerEmbedder:
    """Embedding inference using sentence-transformers.

    Example:
        >>> embedder = SentenceTransformerEmbedder()
        >>> vectors = embedder.embed_batch(["primate cognition", "tourism"])
        >>> vectors.shape
        (2, 384)

    Attributes:
        model_name: Name of the sentence-transformers model.
        device: Torch device, or None for automatic selection.
        inference_calls: Number of encode calls made so far.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: Optional[str] = None,
        lazy_load: bool = True,
    ):
        """Initialize the embedder.

        Args:
            model_name: Name of the sentence-transformers model.
            device: Torch device string.
            lazy_load: If True, load the model on first use.
        """
        self.model_name = model_name
        self.device = device
        self.inference_calls = 0
        self._model: Optional[EmbeddingModel] = None
        self._lock = threading.Lock()

        if not lazy_load:
            self._load_model()

    def _load_model(self) -> EmbeddingModel:
        """Load the sentence-transformers model.

        Returns:
            Loaded embedding model.
        """
        if self._model is not None:
            return self._model

        try:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = cast(
                EmbeddingModel, SentenceTransformer(self.model_name, device=self.device)
            )
            logger.info("Embedding model loaded successfully")
            return self._model
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for SentenceTransformerEmbedder. "
                "Install with: pip install sentence-transformers"
            ) from e

    @property
    def model(self) -> EmbeddingModel:
        """Get the embedding model, loading if necessary."""
        if self._model is None:
            with self._lock:
                return self._load_model()
        return self._model

    @property
    def is_loaded(self) -> bool:
        """Whether the model has been loaded."""
        return self._model is not None

    def embed(self, text: str) -> NDArray[np.float32]:
        """Embed a single text."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> NDArray[np.float32]:
        """Embed a batch of texts.

        Args:
            texts: Texts to embed.
            batch_size: Encoder batch size.

        Returns:
            L2-normalized embedding array of shape (n, embedding_dim).
        """
        self.inference_calls += 1
        embeddings = self.model.encode(
            list(texts),
            batch_size=batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return np.asarray(embeddings, dtype=np.float32)


def semantic_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """Cosine similarity mapped from [-1, 1] to [0, 1].

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        Similarity in [0, 1]; 0.0 for missing, mismatched or zero vectors.
    """
    if a is None or b is None or a.shape != b.shape:
        return 0.0
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    cosine = float(np.dot(a, b)) / norm
    return min(max((cosine + 1.0) / 2.0, 0.0), 1.0)
