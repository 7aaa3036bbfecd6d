# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Progressive tier orchestration of the ranking pipeline.

Streams ranked results in three tiers of increasing cost and quality:

    immediate   top lexical candidates, semantic scores from the cache only
    refined     neural reranking of a larger, prefiltered lexical slice
    complete    full reranking cascade, domain/aspect filtering, theme-fit

Each tier is emitted as an immutable TierResult with a version strictly
greater than the previous one. Cancellation is honored between tiers and
between batch groups; a cancelled request simply stops emitting. A failure
in a later tier never retracts an earlier one: a failed refinement is
skipped and a failed completion re-emits the last valid ranking flagged as
degraded.

Example:
    >>> async with create_orchestrator() as orchestrator:
    ...     async for result in orchestrator.stream("primate social cognition", candidates):
    ...         render(result)
"""

import asyncio
import itertools
import logging
import time
from typing import AsyncIterator, Callable, Iterable, Optional, Sequence

from litrank.config import RankingConfig, load_config
from litrank.metrics import RankingMetrics
from litrank.ranking.classifier import DomainAspectClassifier
from litrank.ranking.embedder import Embedder, SentenceTransformerEmbedder
from litrank.ranking.embedding_cache import (
    CacheBackingStore,
    EmbeddingCache,
    RedisBackingStore,
)
from litrank.ranking.lexical import LexicalScorer, lexical_range, order_by_lexical
from litrank.ranking.reranker import NeuralReranker
from litrank.ranking.theme_fit import ThemeFitScorer
from litrank.ranking.worker_pool import EmbeddingWorkerPool
from litrank.schemas import (
    Candidate,
    NoCandidatesError,
    Query,
    RankedCandidate,
    RankingOptions,
    TierMetadata,
    TierName,
    TierResult,
)

logger = logging.getLogger(__name__)


class TierResultGate:
    """Consumer-side filter enforcing strictly increasing versions.

    Example:
        >>> gate = TierResultGate()
        >>> gate.accept(result_v1)
        True
        >>> gate.accept(result_v1)
        False

    Attributes:
        last_version: Highest version accepted so far (0 before any).
        latest: Most recently accepted result.
    """

    def __init__(self):
        self.last_version = 0
        self.latest: Optional[TierResult] = None

    def accept(self, result: TierResult) -> bool:
        """Accept a result only if its version is newer than the last accepted."""
        if result.version <= self.last_version:
            logger.debug(
                f"Discarding stale tier result {result.tier.value} "
                f"v{result.version} (last accepted v{self.last_version})"
            )
            return False
        self.last_version = result.version
        self.latest = result
        return True


class ProgressiveTierOrchestrator:
    """Top-level driver composing lexical scoring, reranking, filtering and theme-fit.

    The orchestrator owns the embedding cache and worker pool it is given
    and releases them in :meth:`close`. Per-request state lives only inside
    the stream, so one orchestrator serves concurrent requests.

    Example:
        >>> orchestrator = ProgressiveTierOrchestrator(cache=EmbeddingCache(), fallback_embedder=embedder)
        >>> final = await orchestrator.rank("mixed results in ape cognition", candidates)
        >>> final.is_complete
        True

    Attributes:
        config: Engine configuration.
        lexical: Lexical scorer.
        reranker: Neural reranker.
        classifier: Domain/aspect classifier.
        theme_fit: Theme-fit scorer.
        cache: Embedding cache.
        pool: Embedding worker pool (optional).
        metrics: Metrics collector.
    """

    def __init__(
        self,
        config: Optional[RankingConfig] = None,
        cache: Optional[EmbeddingCache] = None,
        pool: Optional[EmbeddingWorkerPool] = None,
        fallback_embedder: Optional[Embedder] = None,
        lexical: Optional[LexicalScorer] = None,
        reranker: Optional[NeuralReranker] = None,
        classifier: Optional[DomainAspectClassifier] = None,
        theme_fit: Optional[ThemeFitScorer] = None,
        metrics: Optional[RankingMetrics] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Engine configuration; defaults when None.
            cache: Embedding cache; an in-process cache is created when None.
            pool: Worker pool for batched inference.
            fallback_embedder: Synchronous embedder used when the pool is not ready.
            lexical: Lexical scorer.
            reranker: Neural reranker; built from the other components when None.
            classifier: Domain/aspect classifier.
            theme_fit: Theme-fit scorer.
            metrics: Metrics collector shared with the reranker.
        """
        self.config = config or RankingConfig()
        self.metrics = metrics or RankingMetrics()
        self.cache = cache or EmbeddingCache(
            max_size=self.config.cache.max_size,
            ttl_seconds=self.config.cache.ttl_seconds,
            model_tag=self.config.cache.model_tag,
            compress=self.config.cache.compress,
            query_ttl_seconds=self.config.cache.query_ttl_seconds,
        )
        self.pool = pool
        self.lexical = lexical or LexicalScorer(self.config.lexical)
        self.theme_fit = theme_fit or ThemeFitScorer(self.config.theme_fit)
        self.classifier = classifier or DomainAspectClassifier(
            allowed_domains=self.config.classifier.allowed_domains,
            aspect_filtering=self.config.classifier.aspect_filtering,
        )
        self.reranker = reranker or NeuralReranker(
            cache=self.cache,
            pool=pool,
            fallback_embedder=fallback_embedder,
            theme_fit=self.theme_fit,
            config=self.config.rerank,
            metrics=self.metrics,
            task_timeout_s=self.config.pool.task_timeout_s,
        )
        self._closed = False

    async def start(self, wait: bool = False) -> bool:
        """Start the worker pool.

        Args:
            wait: Block until at least one worker is ready.

        Returns:
            Whether the pool is ready (False when there is no pool).
        """
        if self.pool is None:
            return False
        return await asyncio.to_thread(self.pool.start, wait)

    async def close(self) -> None:
        """Shut down the worker pool and flush the cache."""
        if self._closed:
            return
        self._closed = True
        if self.pool is not None:
            await asyncio.to_thread(self.pool.shutdown)
        await asyncio.to_thread(self.cache.close)
        logger.info("Ranking orchestrator closed")

    async def __aenter__(self) -> "ProgressiveTierOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def stream(
        self,
        query: str,
        candidates: Sequence[Candidate],
        options: Optional[RankingOptions] = None,
    ) -> AsyncIterator[TierResult]:
        """Stream tier results for a query.

        Input is validated eagerly, so an empty query or candidate set
        raises here rather than on first iteration.

        Args:
            query: Free-text query.
            candidates: Candidates supplied by the retrieval layer.
            options: Per-request options.

        Returns:
            Async iterator of TierResults in strictly increasing version order.

        Raises:
            EmptyQueryError: If the query is blank.
            NoCandidatesError: If no candidates were provided.
        """
        parsed = Query(query)
        if not candidates:
            raise NoCandidatesError()
        return self._stream(parsed, list(candidates), options or RankingOptions())

    async def rank(
        self,
        query: str,
        candidates: Sequence[Candidate],
        options: Optional[RankingOptions] = None,
    ) -> Optional[TierResult]:
        """Drain the stream and return the last accepted result.

        Returns:
            The final tier result, or None if cancelled before any emission.
        """
        gate = TierResultGate()
        async for result in self.stream(query, candidates, options):
            gate.accept(result)
        return gate.latest

    async def _stream(
        self,
        query: Query,
        candidates: list[Candidate],
        options: RankingOptions,
    ) -> AsyncIterator[TierResult]:
        started = time.perf_counter()
        versions = itertools.count(1)
        limit = options.max_results or self.config.rerank.max_results
        tiers = self.config.tiers

        if options.is_cancelled:
            logger.info("Ranking cancelled before the first tier")
            return

        candidates = deduplicate(candidates)
        await asyncio.to_thread(self.lexical.score_candidates, query, candidates)
        ordered = order_by_lexical(candidates)
        score_range = lexical_range(ordered)

        # Immediate: no inference, cached vectors only
        head = ordered[: tiers.immediate_size]
        stats = await self.reranker.score_cached(query, head)
        ranked = self.reranker.rank(head, min(limit, len(head)), score_range)
        last = self._emit(
            TierName.IMMEDIATE,
            next(versions),
            ranked,
            started,
            TierMetadata(candidates_processed=len(head), cache_hits=stats.cache_hits),
        )
        yield last

        if self._cancelled(options, TierName.REFINED):
            return

        try:
            slice_ = self.lexical.prefilter(query, ordered[: tiers.refined_size])
            outcome = await self.reranker.rerank(
                query,
                slice_,
                max_results=limit,
                min_threshold=options.min_threshold,
                batch_size=options.batch_size,
                cancellation=options.cancellation,
            )
        except Exception as e:
            logger.error(f"Refined tier failed, keeping previous ranking: {e}", exc_info=True)
            self.metrics.increment_counter("tier_failed", labels={"tier": TierName.REFINED.value})
        else:
            if outcome.cancelled:
                logger.info("Ranking cancelled during the refined tier")
                return
            last = self._emit(
                TierName.REFINED,
                next(versions),
                outcome.candidates,
                started,
                TierMetadata(
                    candidates_processed=len(slice_),
                    cache_hits=outcome.stats.cache_hits,
                    embeddings_generated=outcome.stats.embeddings_generated,
                    used_worker_pool=outcome.stats.used_worker_pool,
                    rerank_tier=outcome.tier.value if outcome.tier else None,
                ),
            )
            yield last

        if self._cancelled(options, TierName.COMPLETE):
            return

        try:
            outcome = await self.reranker.rerank(
                query,
                ordered,
                max_results=limit,
                min_threshold=options.min_threshold,
                batch_size=options.batch_size,
                cancellation=options.cancellation,
            )
            if outcome.cancelled:
                logger.info("Ranking cancelled during the complete tier")
                return
            query_aspects = self.classifier.parse_query_aspects(query.text)
            kept = self.classifier.filter_candidates(outcome.candidates, query_aspects)
            kept = self.theme_fit.annotate(kept, min_threshold=options.theme_fit_min)
        except Exception as e:
            logger.error(f"Complete tier failed, re-emitting last ranking: {e}", exc_info=True)
            self.metrics.increment_counter("tier_failed", labels={"tier": TierName.COMPLETE.value})
            degraded = TierResult(
                tier=TierName.COMPLETE,
                version=next(versions),
                candidates=last.candidates,
                latency_ms=(time.perf_counter() - started) * 1000,
                is_complete=True,
                metadata=TierMetadata(
                    candidates_processed=last.metadata.candidates_processed,
                    rerank_tier=last.metadata.rerank_tier,
                    degraded=True,
                ),
            )
            self.metrics.record_tier(
                degraded.tier.value,
                degraded.latency_ms,
                len(degraded.candidates),
                degraded=True,
            )
            yield degraded
            return

        for position, candidate in enumerate(kept, start=1):
            candidate.scoring.rank = position
        yield self._emit(
            TierName.COMPLETE,
            next(versions),
            kept,
            started,
            TierMetadata(
                candidates_processed=len(ordered),
                cache_hits=outcome.stats.cache_hits,
                embeddings_generated=outcome.stats.embeddings_generated,
                used_worker_pool=outcome.stats.used_worker_pool,
                rerank_tier=outcome.tier.value if outcome.tier else None,
                filtered_out=len(outcome.candidates) - len(kept),
            ),
            is_complete=True,
        )

    def _emit(
        self,
        tier: TierName,
        version: int,
        ranked: Sequence[Candidate],
        started: float,
        metadata: TierMetadata,
        is_complete: bool = False,
    ) -> TierResult:
        """Snapshot ranked candidates into an immutable TierResult."""
        latency_ms = (time.perf_counter() - started) * 1000
        result = TierResult(
            tier=tier,
            version=version,
            candidates=tuple(
                RankedCandidate.snapshot(c, rank) for rank, c in enumerate(ranked, start=1)
            ),
            latency_ms=latency_ms,
            is_complete=is_complete,
            metadata=metadata,
        )
        self.metrics.record_tier(tier.value, latency_ms, len(result.candidates))
        logger.info(
            f"Tier {tier.value} v{version}: {len(result.candidates)} candidates "
            f"in {latency_ms:.1f}ms"
        )
        return result

    def _cancelled(self, options: RankingOptions, next_tier: TierName) -> bool:
        if options.is_cancelled:
            logger.info(f"Ranking cancelled before the {next_tier.value} tier")
            self.metrics.increment_counter("request_cancelled")
            return True
        return False


def deduplicate(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Drop candidates whose identity was already seen, keeping the first."""
    seen = set()
    unique = []
    for candidate in candidates:
        identity = candidate.identity
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(candidate)
    return unique


def create_orchestrator(
    config: Optional[RankingConfig] = None,
    embedder_factory: Optional[Callable[[], Embedder]] = None,
    backing_store: Optional[CacheBackingStore] = None,
    metrics: Optional[RankingMetrics] = None,
) -> ProgressiveTierOrchestrator:
    """Create a fully wired orchestrator.

    Args:
        config: Engine configuration; loaded from ``.litrank/ranking.yaml``
            (or defaults) when None.
        embedder_factory: Builds embedders for the pool workers and the
            synchronous fallback. Defaults to sentence-transformers.
        backing_store: Primary cache store; a Redis store is created when
            ``cache.redis_url`` is configured and none is given.
        metrics: Metrics collector.

    Returns:
        Configured ProgressiveTierOrchestrator. Use it as an async context
        manager, or call ``start()`` and ``close()``.
    """
    config = config or load_config()

    if backing_store is None and config.cache.redis_url:
        backing_store = RedisBackingStore(config.cache.redis_url)

    cache = EmbeddingCache(
        backing_store=backing_store,
        max_size=config.cache.max_size,
        ttl_seconds=config.cache.ttl_seconds,
        model_tag=config.cache.model_tag or config.pool.model_name,
        compress=config.cache.compress,
        query_ttl_seconds=config.cache.query_ttl_seconds,
    )
    pool = EmbeddingWorkerPool(config.pool, embedder_factory)
    if embedder_factory is not None:
        fallback = embedder_factory()
    else:
        fallback = SentenceTransformerEmbedder(
            model_name=config.pool.model_name,
            device=config.pool.device,
            lazy_load=True,
        )

    return ProgressiveTierOrchestrator(
        config=config,
        cache=cache,
        pool=pool,
        fallback_embedder=fallback,
        metrics=metrics,
    )
