# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Neural reranking with a tiered threshold cascade.

Semantic similarity between the query and each candidate is computed from
sentence embeddings, consulting the embedding cache before any inference.
Missing vectors are computed in concurrent batches on the worker pool, or
on a synchronous embedder when the pool is not ready.

The cascade tries progressively more permissive tiers over the same
candidates until one yields results:

    STRICT            similarity >= strict threshold
    RELAXED           similarity >= relaxed threshold
    LEXICAL_FALLBACK  top-N by lexical score alone (terminal, never empty)

Combined score with semantic similarity:
    lexical * w_lex + semantic * w_sem + theme_fit * w_theme   (default 30/30/40)
Without semantic similarity the fallback weights apply (default 40/0/60).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from litrank.cancellation import CancellationToken
from litrank.config import RerankConfig, ScoreWeights
from litrank.metrics import RankingMetrics
from litrank.ranking.embedder import Embedder, semantic_similarity
from litrank.ranking.embedding_cache import EmbeddingCache
from litrank.ranking.lexical import lexical_range, normalize_scores, order_by_lexical
from litrank.ranking.theme_fit import ThemeFitScorer
from litrank.ranking.worker_pool import (
    EmbeddingWorkerPool,
    PoolUnavailableError,
    WorkerTaskError,
)
from litrank.schemas import Candidate, Query

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 32

# (minimum similarity, label) for relevance explanations
RELEVANCE_LABELS = (
    (0.90, "Highly relevant"),
    (0.75, "Relevant"),
    (0.65, "Moderately relevant"),
)


class RerankTier(str, Enum):
    """Tiers of the reranking cascade, in the order they are attempted."""

    STRICT = "strict"
    RELAXED = "relaxed"
    LEXICAL_FALLBACK = "lexical_fallback"


CASCADE = (RerankTier.STRICT, RerankTier.RELAXED, RerankTier.LEXICAL_FALLBACK)


@dataclass
class EmbeddingStats:
    """Provenance counters for one round of semantic scoring.

    Attributes:
        cache_hits: Vectors served from the cache.
        embeddings_generated: Vectors computed fresh.
        used_worker_pool: Whether any batch ran on the pool.
        failed_candidates: Candidates left without a vector.
        failed_identities: Identities of those candidates.
        cancelled: Whether scoring stopped early on cancellation.
    """

    cache_hits: int = 0
    embeddings_generated: int = 0
    used_worker_pool: bool = False
    failed_candidates: int = 0
    failed_identities: set[str] = field(default_factory=set)
    cancelled: bool = False

    def merge(self, other: "EmbeddingStats") -> None:
        """Accumulate another round's counters into this one."""
        self.cache_hits += other.cache_hits
        self.embeddings_generated += other.embeddings_generated
        self.used_worker_pool = self.used_worker_pool or other.used_worker_pool
        self.failed_candidates += other.failed_candidates
        self.failed_identities |= other.failed_identities
        self.cancelled = self.cancelled or other.cancelled


@dataclass
class RerankOutcome:
    """Result of a cascade run.

    Attributes:
        candidates: Ranked candidates of the tier that produced results.
        tier: Tier that produced the ranking (None if cancelled first).
        tiers_attempted: Tiers entered, in order.
        stats: Embedding provenance counters.
        semantic_available: Whether a query embedding could be obtained.
        cancelled: Whether cancellation cut the cascade short.
    """

    candidates: list[Candidate] = field(default_factory=list)
    tier: Optional[RerankTier] = None
    tiers_attempted: list[RerankTier] = field(default_factory=list)
    stats: EmbeddingStats = field(default_factory=EmbeddingStats)
    semantic_available: bool = False
    cancelled: bool = False


def relevance_label(similarity: float) -> str:
    """Human-readable relevance label for a semantic similarity."""
    for minimum, label in RELEVANCE_LABELS:
        if similarity >= minimum:
            return label
    return "Weakly relevant"


class NeuralReranker:
    """Semantic reranker with a strict, relaxed and lexical-fallback cascade.

    Example:
        >>> reranker = NeuralReranker(cache, pool=pool, fallback_embedder=embedder)
        >>> outcome = await reranker.rerank(query, candidates, max_results=200)
        >>> outcome.tier
        <RerankTier.STRICT: 'strict'>

    Attributes:
        cache: Embedding cache consulted before any inference.
        pool: Worker pool for batched inference (optional).
        fallback_embedder: Synchronous embedder used when the pool is not ready.
        theme_fit: Scorer annotating candidates for the combined score.
        config: Cascade thresholds, weights and limits.
        metrics: Metrics collector.
    """

    def __init__(
        self,
        cache: EmbeddingCache,
        pool: Optional[EmbeddingWorkerPool] = None,
        fallback_embedder: Optional[Embedder] = None,
        theme_fit: Optional[ThemeFitScorer] = None,
        config: Optional[RerankConfig] = None,
        metrics: Optional[RankingMetrics] = None,
        task_timeout_s: Optional[float] = None,
    ):
        """Initialize the reranker.

        Args:
            cache: Embedding cache (owned by the caller).
            pool: Worker pool; every batch uses the fallback path when None.
            fallback_embedder: Synchronous embedder for pool outages.
            theme_fit: Theme-fit scorer; a default one is created when None.
            config: Reranker configuration.
            metrics: Metrics collector.
            task_timeout_s: Per-batch deadline on the pool (pool default when None).
        """
        self.cache = cache
        self.pool = pool
        self.fallback_embedder = fallback_embedder
        self.theme_fit = theme_fit or ThemeFitScorer()
        self.config = config or RerankConfig()
        self.metrics = metrics or RankingMetrics()
        self.task_timeout_s = task_timeout_s
        self.weights = self.config.weights.normalized()
        self.fallback_weights = self.config.fallback_weights.normalized()

    async def ensure_query_embedding(self, query: Query) -> Optional[np.ndarray]:
        """Embed the query at most once, consulting the query cache first.

        Returns:
            The query vector, or None when no embedding path is available.
        """
        if query.embedding is not None:
            return query.embedding

        cached = self.cache.get_query(query.text)
        if cached is not None:
            query.embedding = cached
            return cached

        vectors, _ = await self._compute([query.text], batch_size=1)
        if vectors is None or len(vectors) != 1:
            logger.warning("Query embedding unavailable, semantic tiers will be skipped")
            return None
        query.embedding = np.asarray(vectors[0], dtype=np.float32)
        self.cache.put_query(query.text, query.embedding)
        return query.embedding

    async def score_cached(self, query: Query, candidates: Sequence[Candidate]) -> EmbeddingStats:
        """Attach semantic scores using cached vectors only.

        Performs no inference. Candidates without a cached vector keep no
        semantic score.
        """
        stats = EmbeddingStats()
        query_vector = query.embedding
        if query_vector is None:
            query_vector = self.cache.get_query(query.text)
            if query_vector is None:
                return stats
            query.embedding = query_vector

        cached = await asyncio.to_thread(self.cache.get_many, [c.identity for c in candidates])
        for candidate in candidates:
            vector = cached.get(candidate.identity)
            if vector is not None:
                candidate.scoring.semantic_score = semantic_similarity(query_vector, vector)
        stats.cache_hits = len(cached)
        self.metrics.record_cache_lookup(hit=True, count=len(cached))
        self.metrics.record_cache_lookup(hit=False, count=len(candidates) - len(cached))
        return stats

    async def rerank(
        self,
        query: Query,
        candidates: Sequence[Candidate],
        *,
        max_results: Optional[int] = None,
        min_threshold: Optional[float] = None,
        batch_size: Optional[int] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> RerankOutcome:
        """Run the tier cascade over candidates that already carry lexical scores.

        Args:
            query: The query.
            candidates: Lexically scored candidates.
            max_results: Maximum ranked candidates (config default when None).
            min_threshold: Overrides the strict similarity threshold.
            batch_size: Embedding batch size (dynamic when None).
            cancellation: Polled before each tier and between batch groups.

        Returns:
            The outcome; partial when cancelled, never raised.
        """
        outcome = RerankOutcome()
        if not candidates:
            return outcome

        limit = max_results or self.config.max_results
        strict = min_threshold if min_threshold is not None else self.config.strict_threshold
        thresholds = {
            RerankTier.STRICT: strict,
            RerankTier.RELAXED: min(self.config.relaxed_threshold, strict),
        }

        # Semantic scoring is bounded to the highest lexical candidates
        ordered = order_by_lexical(candidates)
        scoring_set = ordered[: self.config.max_candidates]
        self.theme_fit.annotate(ordered)
        score_range = lexical_range(ordered)

        scored = False
        for tier in CASCADE:
            if cancellation is not None and cancellation.cancelled:
                outcome.cancelled = True
                logger.info(f"Rerank cancelled before {tier.value} tier")
                break
            outcome.tiers_attempted.append(tier)

            if tier is RerankTier.STRICT or tier is RerankTier.RELAXED:
                if not scored:
                    scored = True
                    if await self.ensure_query_embedding(query) is not None:
                        outcome.semantic_available = True
                        stats = await self._score_semantic(
                            query, scoring_set, batch_size, cancellation
                        )
                        outcome.stats.merge(stats)
                if not outcome.semantic_available:
                    continue
                # Candidates whose batch failed stay in and are scored lexically
                failed = outcome.stats.failed_identities
                selected = [
                    c
                    for c in scoring_set
                    if c.identity in failed
                    or (
                        c.scoring.semantic_score is not None
                        and c.scoring.semantic_score >= thresholds[tier]
                    )
                ]
                ranked = self.rank(selected, limit, score_range)
                if outcome.stats.cancelled:
                    outcome.cancelled = True
                if ranked or outcome.cancelled:
                    outcome.candidates = ranked
                    outcome.tier = tier
                    break
                logger.info(
                    f"Rerank tier {tier.value} (threshold {thresholds[tier]:.2f}) "
                    f"matched nothing in {len(scoring_set)} candidates, relaxing"
                )
            elif tier is RerankTier.LEXICAL_FALLBACK:
                outcome.candidates = self.lexical_fallback(ordered, limit, score_range)
                outcome.tier = tier
                logger.info(
                    f"Rerank fell back to lexical ranking: {len(outcome.candidates)} candidates"
                )
            else:
                raise ValueError(f"Unhandled rerank tier: {tier}")

        if outcome.tier is not None:
            self.metrics.record_cascade(outcome.tier.value, len(outcome.candidates))
        return outcome

    def rank(
        self,
        candidates: Sequence[Candidate],
        limit: int,
        score_range: Optional[tuple[float, float]] = None,
    ) -> list[Candidate]:
        """Score with the combined formula, sort and truncate.

        Args:
            candidates: Candidates to rank.
            limit: Maximum candidates returned.
            score_range: (min, max) lexical score used for normalization;
                taken from the candidates when None.

        Returns:
            Ranked candidates with final score, rank and explanation set.
        """
        self.theme_fit.annotate(candidates)
        normalized = normalize_scores([c.scoring.lexical_score for c in candidates], score_range)
        for candidate, lexical in zip(candidates, normalized):
            scoring = candidate.scoring
            theme = scoring.theme_fit or 0.0
            if scoring.semantic_score is not None:
                w = self.weights
                scoring.final_score = (
                    w.lexical * lexical + w.semantic * scoring.semantic_score + w.theme_fit * theme
                )
                scoring.explanation = (
                    f"{relevance_label(scoring.semantic_score)} "
                    f"(semantic {scoring.semantic_score:.2f}, lexical {lexical:.2f}, "
                    f"theme-fit {theme:.2f})"
                )
            else:
                w = self.fallback_weights
                scoring.final_score = w.lexical * lexical + w.theme_fit * theme
                scoring.explanation = f"Lexical match (lexical {lexical:.2f}, theme-fit {theme:.2f})"

        indexed = sorted(
            enumerate(candidates), key=lambda item: (-item[1].scoring.final_score, item[0])
        )
        ranked = [c for _, c in indexed[:limit]]
        for position, candidate in enumerate(ranked, start=1):
            candidate.scoring.rank = position
        return ranked

    def lexical_fallback(
        self,
        candidates: Sequence[Candidate],
        limit: int,
        score_range: Optional[tuple[float, float]] = None,
    ) -> list[Candidate]:
        """Top ``limit`` candidates by descending lexical score.

        Ties keep their input order. The final score is the normalized
        lexical score so it agrees with the ordering.
        """
        ranked = order_by_lexical(candidates)[:limit]
        if score_range is None:
            score_range = lexical_range(candidates)
        normalized = normalize_scores([c.scoring.lexical_score for c in ranked], score_range)
        for position, (candidate, lexical) in enumerate(zip(ranked, normalized), start=1):
            scoring = candidate.scoring
            scoring.final_score = lexical
            scoring.rank = position
            scoring.explanation = f"Lexical match only (lexical {scoring.final_score:.2f})"
        return ranked

    async def _score_semantic(
        self,
        query: Query,
        candidates: Sequence[Candidate],
        batch_size: Optional[int],
        cancellation: Optional[CancellationToken],
    ) -> EmbeddingStats:
        """Compute semantic scores in concurrent batch groups."""
        stats = EmbeddingStats()
        size = batch_size or (
            self.pool.optimal_batch_size() if self.pool is not None else DEFAULT_BATCH_SIZE
        )
        batches = [candidates[i : i + size] for i in range(0, len(candidates), size)]
        concurrency = max(1, self.config.concurrency)

        for start in range(0, len(batches), concurrency):
            if cancellation is not None and cancellation.cancelled:
                stats.cancelled = True
                logger.info(
                    f"Semantic scoring cancelled after {start}/{len(batches)} batches"
                )
                break
            group = batches[start : start + concurrency]
            results = await asyncio.gather(
                *(self._score_batch(query.embedding, batch, size) for batch in group)
            )
            for result in results:
                stats.merge(result)

        logger.debug(
            f"Semantic scoring: {len(candidates)} candidates, {stats.cache_hits} cached, "
            f"{stats.embeddings_generated} computed, {stats.failed_candidates} failed"
        )
        return stats

    async def _score_batch(
        self,
        query_vector: np.ndarray,
        batch: Sequence[Candidate],
        batch_size: int,
    ) -> EmbeddingStats:
        """Score one batch: cache lookup, inference for misses, similarity."""
        stats = EmbeddingStats()
        started = time.perf_counter()

        embeddable = [c for c in batch if c.embedding_text]
        for candidate in batch:
            candidate.scoring.semantic_score = None

        vectors = await asyncio.to_thread(
            self.cache.get_many, [c.identity for c in embeddable]
        )
        stats.cache_hits = len(vectors)
        missing = [c for c in embeddable if c.identity not in vectors]
        self.metrics.record_cache_lookup(hit=True, count=stats.cache_hits)
        self.metrics.record_cache_lookup(hit=False, count=len(missing))

        success = True
        if missing:
            computed, pooled = await self._compute(
                [c.embedding_text for c in missing], batch_size
            )
            stats.used_worker_pool = pooled
            if computed is None:
                success = False
            elif len(computed) != len(missing):
                logger.warning(
                    f"Embedding output length mismatch: expected {len(missing)}, "
                    f"got {len(computed)}; batch scored lexically"
                )
                success = False
            else:
                for candidate, vector in zip(missing, computed):
                    vectors[candidate.identity] = vector
                    self.cache.put(candidate.identity, vector)
                stats.embeddings_generated = len(missing)
            if not success:
                stats.failed_candidates = len(missing)
                stats.failed_identities = {c.identity for c in missing}

        for candidate in embeddable:
            vector = vectors.get(candidate.identity)
            if vector is not None:
                candidate.scoring.semantic_score = semantic_similarity(query_vector, vector)

        self.metrics.record_batch(
            size=len(batch),
            latency_ms=(time.perf_counter() - started) * 1000,
            success=success,
            pooled=stats.used_worker_pool,
        )
        return stats

    async def _compute(
        self, texts: list[str], batch_size: int
    ) -> tuple[Optional[np.ndarray], bool]:
        """Embed texts on the pool, or synchronously when the pool is unavailable.

        Returns:
            (vectors or None on failure, whether the pool was used).
        """
        if self.pool is not None and self.pool.is_ready():
            try:
                vectors = await self.pool.asubmit(
                    texts, timeout=self.task_timeout_s, batch_size=batch_size
                )
                return vectors, True
            except PoolUnavailableError as e:
                logger.info(f"{e}; using synchronous embedding")
            except WorkerTaskError as e:
                logger.error(f"Embedding batch failed, scoring lexically: {e}")
                self.metrics.increment_counter("worker_task_failed")
                return None, True

        if self.fallback_embedder is None:
            return None, False
        try:
            vectors = await asyncio.to_thread(self.fallback_embedder.embed_batch, texts, batch_size)
        except Exception as e:
            logger.error(f"Synchronous embedding failed, scoring lexically: {e}")
            return None, False
        self.metrics.increment_counter("sync_embedding_batches")
        return np.asarray(vectors, dtype=np.float32), False
