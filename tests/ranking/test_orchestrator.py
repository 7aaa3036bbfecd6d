# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the progressive tier orchestrator.

Exercises the full pipeline with in-process caches and mock embedders.
"""

import dataclasses

import pytest

from litrank.cancellation import CancellationToken
from litrank.config import RankingConfig
from litrank.ranking.embedding_cache import EmbeddingCache
from litrank.ranking.lexical import order_by_lexical
from litrank.ranking.orchestrator import (
    ProgressiveTierOrchestrator,
    TierResultGate,
    create_orchestrator,
    deduplicate,
)
from litrank.schemas import (
    Candidate,
    EmptyQueryError,
    NoCandidatesError,
    RankingOptions,
    TierMetadata,
    TierName,
    TierResult,
)

QUERY = "primate social cognition"


async def collect(stream) -> list[TierResult]:
    return [result async for result in stream]


def result(version: int, tier: TierName = TierName.IMMEDIATE) -> TierResult:
    return TierResult(
        tier=tier,
        version=version,
        candidates=(),
        latency_ms=1.0,
        is_complete=tier == TierName.COMPLETE,
    )


@pytest.fixture
def orchestrator(ranking_config, mock_embedder):
    """Orchestrator without a worker pool, embedding synchronously."""
    return ProgressiveTierOrchestrator(config=ranking_config, fallback_embedder=mock_embedder)


class TestTierResultGate:
    """Tests for consumer-side version gating."""

    def test_accepts_increasing_versions(self):
        """Newer versions are accepted in order."""
        gate = TierResultGate()
        assert gate.accept(result(1))
        assert gate.accept(result(2, TierName.REFINED))
        assert gate.last_version == 2
        assert gate.latest.tier == TierName.REFINED

    def test_discards_stale_results(self):
        """Results not newer than the last accepted are discarded."""
        gate = TierResultGate()
        gate.accept(result(1))
        gate.accept(result(3, TierName.COMPLETE))
        assert not gate.accept(result(2, TierName.REFINED))
        assert not gate.accept(result(3, TierName.COMPLETE))
        assert gate.latest.version == 3


class TestValidation:
    """Tests for eager input validation."""

    def test_empty_query(self, orchestrator, primate_candidates):
        """A blank query raises before any iteration."""
        with pytest.raises(EmptyQueryError):
            orchestrator.stream("   ", primate_candidates)

    def test_no_candidates(self, orchestrator):
        """An empty candidate set raises before any iteration."""
        with pytest.raises(NoCandidatesError):
            orchestrator.stream(QUERY, [])

    def test_deduplicate_keeps_first(self):
        """Candidates sharing an identity collapse to the first."""
        first = Candidate(title="One", doi="10.1/x")
        second = Candidate(title="Two", doi="https://doi.org/10.1/X")
        third = Candidate(title="Three")
        assert deduplicate([first, second, third]) == [first, third]


class TestStreaming:
    """Tests for tier emission."""

    @pytest.mark.asyncio
    async def test_three_tiers_in_order(self, orchestrator, primate_candidates):
        """Immediate, refined and complete tiers arrive with increasing versions."""
        results = await collect(orchestrator.stream(QUERY, primate_candidates))

        assert [r.tier for r in results] == [
            TierName.IMMEDIATE,
            TierName.REFINED,
            TierName.COMPLETE,
        ]
        assert [r.version for r in results] == [1, 2, 3]
        assert [r.is_complete for r in results] == [False, False, True]
        assert all(r.latency_ms >= 0 for r in results)

    @pytest.mark.asyncio
    async def test_versions_strictly_increase(self, orchestrator, corpus_factory):
        """Versions increase strictly on larger inputs too."""
        results = await collect(orchestrator.stream(QUERY, corpus_factory(120)))
        versions = [r.version for r in results]
        assert versions == sorted(set(versions))
        assert results[-1].is_complete

    @pytest.mark.asyncio
    async def test_immediate_tier_makes_no_inference(
        self, orchestrator, mock_embedder, corpus_factory
    ):
        """The immediate tier only reads the cache."""
        stream = orchestrator.stream(QUERY, corpus_factory(80))
        first = await stream.__anext__()
        assert first.tier == TierName.IMMEDIATE
        assert mock_embedder.inference_calls == 0
        assert len(first.candidates) == 50
        assert all(c.semantic_score is None for c in first.candidates)
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_complete_tier_filters_off_domain(self, orchestrator, primate_candidates):
        """Tourism and off-aspect records are removed from the complete tier."""
        final = await orchestrator.rank("chimpanzee social cognition", primate_candidates)
        assert final.tier == TierName.COMPLETE
        identities = final.identities
        assert "id:cand-3" not in identities
        assert "doi:10.1000/chimp.1" in identities
        assert all(c.domain not in ("Tourism", "Marketing") for c in final.candidates)
        assert [c.rank for c in final.candidates] == list(range(1, len(identities) + 1))
        assert all(c.domain is not None for c in final.candidates)
        assert all(c.theme_fit is not None for c in final.candidates)

    @pytest.mark.asyncio
    async def test_max_results(self, orchestrator, corpus_factory):
        """No tier exceeds the requested result count."""
        results = await collect(
            orchestrator.stream(QUERY, corpus_factory(40), RankingOptions(max_results=3))
        )
        assert all(len(r.candidates) <= 3 for r in results)

    @pytest.mark.asyncio
    async def test_theme_fit_minimum(self, orchestrator, corpus_factory):
        """An opt-in theme-fit minimum filters the complete tier."""
        final = await orchestrator.rank(
            QUERY, corpus_factory(40), RankingOptions(theme_fit_min=1.0)
        )
        assert final.candidates == ()
        assert final.metadata.filtered_out > 0

    @pytest.mark.asyncio
    async def test_duplicates_removed(self, orchestrator, primate_candidates):
        """Duplicate identities appear once."""
        duplicate = Candidate(title="Chimpanzee social cognition revisited", doi="10.1000/CHIMP.1")
        results = await collect(
            orchestrator.stream(QUERY, primate_candidates + [duplicate])
        )
        for r in results:
            assert len(r.identities) == len(set(r.identities))
        assert results[0].metadata.candidates_processed == 5

    @pytest.mark.asyncio
    async def test_snapshots_are_immutable(self, orchestrator, primate_candidates):
        """Emitted snapshots keep their values after later tiers run."""
        stream = orchestrator.stream(QUERY, primate_candidates)
        immediate = await stream.__anext__()
        before = [(c.identity, c.final_score, c.rank) for c in immediate.candidates]
        held = [c.candidate.scoring.model_dump() for c in immediate.candidates]
        async for _ in stream:
            pass
        assert [(c.identity, c.final_score, c.rank) for c in immediate.candidates] == before
        assert [c.candidate.scoring.model_dump() for c in immediate.candidates] == held
        with pytest.raises(dataclasses.FrozenInstanceError):
            immediate.candidates[0].final_score = 0.0


class TestDegradation:
    """Tests for lexical fallback and failure handling."""

    @pytest.mark.asyncio
    async def test_lexical_fallback_on_large_corpus(
        self, ranking_config, opposing_embedder, corpus_factory
    ):
        """With no semantic match the complete tier is drawn from the lexical top-N."""
        corpus = corpus_factory(1000)
        orchestrator = ProgressiveTierOrchestrator(
            config=ranking_config, fallback_embedder=opposing_embedder(QUERY)
        )
        results = await collect(orchestrator.stream(QUERY, corpus))

        complete = results[-1]
        assert complete.tier == TierName.COMPLETE
        assert complete.metadata.rerank_tier == "lexical_fallback"
        assert not complete.metadata.degraded
        assert len(complete.candidates) + complete.metadata.filtered_out == 200
        top = {c.identity for c in order_by_lexical(corpus)[:200]}
        assert set(complete.identities) <= top

        refined = results[1]
        assert refined.tier == TierName.REFINED
        assert refined.metadata.rerank_tier == "lexical_fallback"
        assert len(refined.candidates) > 0

    @pytest.mark.asyncio
    async def test_unreachable_backing_store(
        self, ranking_config, embedder_class, failing_store, corpus_factory
    ):
        """An unreachable primary cache store does not change rankings."""
        baseline = ProgressiveTierOrchestrator(
            config=ranking_config, fallback_embedder=embedder_class()
        )
        degraded = ProgressiveTierOrchestrator(
            config=ranking_config,
            cache=EmbeddingCache(backing_store=failing_store),
            fallback_embedder=embedder_class(),
        )
        try:
            expected = await baseline.rank(QUERY, corpus_factory(60))
            actual = await degraded.rank(QUERY, corpus_factory(60))
        finally:
            await degraded.close()

        assert actual.identities == expected.identities
        assert [c.final_score for c in actual.candidates] == pytest.approx(
            [c.final_score for c in expected.candidates]
        )
        assert failing_store.calls > 0

    @pytest.mark.asyncio
    async def test_no_embedder_still_ranks(self, ranking_config, primate_candidates):
        """Without any embedding path every tier is lexical."""
        orchestrator = ProgressiveTierOrchestrator(config=ranking_config)
        results = await collect(orchestrator.stream(QUERY, primate_candidates))
        assert len(results) == 3
        assert results[1].metadata.rerank_tier == "lexical_fallback"
        assert results[-1].is_complete

    @pytest.mark.asyncio
    async def test_complete_failure_reemits_last_ranking(
        self, orchestrator, primate_candidates, monkeypatch
    ):
        """A failing complete tier re-emits the refined ranking as degraded."""

        def boom(*args, **kwargs):
            raise RuntimeError("classifier exploded")

        monkeypatch.setattr(orchestrator.classifier, "filter_candidates", boom)
        results = await collect(orchestrator.stream(QUERY, primate_candidates))

        refined, complete = results[1], results[2]
        assert complete.tier == TierName.COMPLETE
        assert complete.is_complete
        assert complete.metadata.degraded
        assert complete.version > refined.version
        assert complete.candidates == refined.candidates
        assert orchestrator.metrics.get_counter("tier_failed") == 1

    @pytest.mark.asyncio
    async def test_refined_failure_is_skipped(self, orchestrator, primate_candidates, monkeypatch):
        """A failing refined tier is skipped without retracting the immediate tier."""

        def boom(*args, **kwargs):
            raise RuntimeError("prefilter exploded")

        monkeypatch.setattr(orchestrator.lexical, "prefilter", boom)
        results = await collect(orchestrator.stream(QUERY, primate_candidates))
        assert [r.tier for r in results] == [TierName.IMMEDIATE, TierName.COMPLETE]
        assert [r.version for r in results] == [1, 2]
        assert not results[-1].metadata.degraded


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_after_immediate(self, orchestrator, corpus_factory):
        """Cancelling after the first tier ends the stream quietly."""
        token = CancellationToken()
        results = []
        async for r in orchestrator.stream(
            QUERY, corpus_factory(100), RankingOptions(cancellation=token)
        ):
            results.append(r)
            if r.tier == TierName.IMMEDIATE:
                token.cancel()

        assert [r.tier for r in results] == [TierName.IMMEDIATE]
        assert orchestrator.metrics.get_counter("request_cancelled") == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, orchestrator, primate_candidates):
        """A pre-cancelled request emits nothing."""
        token = CancellationToken()
        token.cancel()
        final = await orchestrator.rank(
            QUERY, primate_candidates, RankingOptions(cancellation=token)
        )
        assert final is None


class TestCaching:
    """Tests for cache reuse across requests."""

    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(
        self, orchestrator, mock_embedder, corpus_factory
    ):
        """A repeated request makes no inference and starts with cached scores."""
        await orchestrator.rank(QUERY, corpus_factory(40))
        calls = mock_embedder.inference_calls

        results = await collect(orchestrator.stream(QUERY, corpus_factory(40)))

        assert mock_embedder.inference_calls == calls
        assert results[0].metadata.cache_hits == 40
        assert all(c.semantic_score is not None for c in results[0].candidates)
        assert results[-1].metadata.embeddings_generated == 0


class TestCreateOrchestrator:
    """Tests for the factory."""

    @pytest.mark.asyncio
    async def test_pool_backed_pipeline(self, ranking_config, embedder_class, primate_candidates):
        """The factory wires a worker pool that serves the refined tier."""
        async with create_orchestrator(ranking_config, embedder_factory=embedder_class) as orch:
            assert await orch.start(wait=True)
            results = await collect(orch.stream(QUERY, primate_candidates))
            assert results[1].metadata.used_worker_pool
            assert results[-1].is_complete
            assert orch.cache.model_tag == ranking_config.pool.model_name
        assert not orch.pool.is_ready()

    def test_loads_config_file(self, tmp_path, monkeypatch, embedder_class):
        """Without a config the factory reads .litrank/ranking.yaml."""
        config_dir = tmp_path / ".litrank"
        config_dir.mkdir()
        (config_dir / "ranking.yaml").write_text(
            "tiers:\n  immediate_size: 10\n  refined_size: 20\n"
        )
        monkeypatch.chdir(tmp_path)

        orch = create_orchestrator(embedder_factory=embedder_class)
        assert orch.config.tiers.immediate_size == 10
        assert orch.config.tiers.refined_size == 20
        assert isinstance(orch.config, RankingConfig)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, ranking_config, embedder_class):
        """Closing twice is harmless."""
        orch = create_orchestrator(ranking_config, embedder_factory=embedder_class)
        await orch.close()
        await orch.close()
        assert not orch.pool.is_ready()

    def test_metadata_defaults(self):
        """Tier metadata starts empty."""
        metadata = TierMetadata()
        assert metadata.rerank_tier is None
        assert not metadata.degraded
