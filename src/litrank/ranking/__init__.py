# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Relevance ranking pipeline.

This package provides the staged ranking core:
- BM25-style lexical scoring with a complexity-aware prefilter
- Embedding cache (local LRU/TTL with optional Redis primary)
- Embedding worker pool for batched inference
- Neural reranking with a strict, relaxed and lexical-fallback cascade
- Domain/aspect classification filter
- Theme-fit scoring for thematization
- Progressive tier orchestration (immediate, refined, complete)
"""

# Stage components
from litrank.ranking.classifier import (
    CandidateAspects,
    DomainAspectClassifier,
    DomainClassification,
    QueryAspects,
)
from litrank.ranking.embedder import (
    Embedder,
    SentenceTransformerEmbedder,
    semantic_similarity,
)
from litrank.ranking.embedding_cache import (
    CacheBackendError,
    CacheBackingStore,
    EmbeddingCache,
    LocalBackingStore,
    RedisBackingStore,
)
from litrank.ranking.lexical import CorpusStatistics, LexicalScorer, normalize_scores
from litrank.ranking.theme_fit import ThemeFitScore, ThemeFitScorer, thematization_tier
from litrank.ranking.worker_pool import (
    EmbeddingWorkerPool,
    PoolHealth,
    PoolUnavailableError,
    WorkerTaskError,
)

# Composition
from litrank.ranking.reranker import NeuralReranker, RerankOutcome, RerankTier
from litrank.ranking.orchestrator import (
    ProgressiveTierOrchestrator,
    TierResultGate,
    create_orchestrator,
)

__all__ = [
    # Stage components
    "LexicalScorer",
    "CorpusStatistics",
    "normalize_scores",
    "EmbeddingCache",
    "CacheBackingStore",
    "CacheBackendError",
    "LocalBackingStore",
    "RedisBackingStore",
    "Embedder",
    "SentenceTransformerEmbedder",
    "semantic_similarity",
    "EmbeddingWorkerPool",
    "PoolHealth",
    "PoolUnavailableError",
    "WorkerTaskError",
    "DomainAspectClassifier",
    "DomainClassification",
    "CandidateAspects",
    "QueryAspects",
    "ThemeFitScorer",
    "ThemeFitScore",
    "thematization_tier",
    # Composition
    "NeuralReranker",
    "RerankOutcome",
    "RerankTier",
    "ProgressiveTierOrchestrator",
    "TierResultGate",
    "create_orchestrator",
]
