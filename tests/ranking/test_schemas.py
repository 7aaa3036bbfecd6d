# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the ranking data model.

Covers candidate identity resolution, embedding text, query analysis,
request options and immutable tier snapshots.
"""

import dataclasses

import pytest

from litrank.cancellation import CancellationToken
from litrank.schemas import (
    Candidate,
    EmptyQueryError,
    IdentityKind,
    Query,
    QueryComplexity,
    RankedCandidate,
    RankingOptions,
    TierName,
    TierResult,
    classify_query_complexity,
    normalize_doi,
)


class TestCandidateIdentity:
    """Tests for identity resolution priority."""

    def test_doi_takes_priority(self):
        """DOI wins over external id and content key."""
        candidate = Candidate(title="A title", doi="https://doi.org/10.1000/ABC", external_id="x-1")
        assert candidate.identity == "doi:10.1000/abc"
        assert candidate.identity_kind == IdentityKind.PERSISTENT

    def test_external_id_without_doi(self):
        """External id is used when there is no DOI."""
        candidate = Candidate(title="A title", external_id=" openalex:W123 ")
        assert candidate.identity == "id:openalex:W123"

    def test_derived_key_is_stable_across_metadata_noise(self):
        """Derived identity ignores case, punctuation and first-name differences."""
        a = Candidate(title="Social Cognition in Apes!", authors=["Jane Goodall"], year=2001)
        b = Candidate(title="social cognition in apes", authors=["J. Goodall"], year=2001)
        assert a.identity == b.identity
        assert a.identity.startswith("key:")
        assert a.identity_kind == IdentityKind.DERIVED

    def test_derived_key_depends_on_year(self):
        """Different years yield different derived identities."""
        a = Candidate(title="Social cognition", year=2001)
        b = Candidate(title="Social cognition", year=2002)
        assert a.identity != b.identity

    def test_internal_id_fallback(self):
        """Without title, DOI or external id the internal id is used."""
        candidate = Candidate(title=None)
        assert candidate.identity.startswith("internal:")
        assert candidate.identity_kind == IdentityKind.INTERNAL
        assert candidate.identity == candidate.identity

    def test_identity_is_stable_across_calls(self):
        """Repeated calls return the same identity."""
        candidate = Candidate(title="Stable")
        assert candidate.identity == candidate.identity

    def test_normalize_doi(self):
        """DOI prefixes are stripped and case folded."""
        assert normalize_doi("doi:10.1/XYZ") == "10.1/xyz"
        assert normalize_doi("  ") is None
        assert normalize_doi(None) is None


class TestCandidateFields:
    """Tests for candidate validation and derived text."""

    def test_negative_citations_clamped(self):
        """Negative citation counts become zero."""
        assert Candidate(title="t", citation_count=-5).citation_count == 0

    def test_embedding_text_joins_and_truncates(self):
        """Embedding text is title and abstract, capped at 800 characters."""
        candidate = Candidate(title="Title", abstract="x" * 2000)
        assert candidate.embedding_text.startswith("Title. x")
        assert len(candidate.embedding_text) == 800

    def test_embedding_text_missing_abstract(self):
        """A missing abstract leaves just the title."""
        assert Candidate(title="Only title").embedding_text == "Only title"

    def test_scoring_record_defaults(self):
        """A fresh candidate carries an empty scoring record."""
        scoring = Candidate(title="t").scoring
        assert scoring.lexical_score == 0.0
        assert scoring.semantic_score is None
        assert scoring.rank is None


class TestQuery:
    """Tests for query parsing and complexity."""

    def test_empty_query_rejected(self):
        """Blank queries raise EmptyQueryError."""
        with pytest.raises(EmptyQueryError):
            Query("   ")

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("primates", QueryComplexity.BROAD),
            ("primate social cognition", QueryComplexity.SPECIFIC),
            ('"tool use"', QueryComplexity.SPECIFIC),
            ("primates AND cognition", QueryComplexity.COMPREHENSIVE),
            (
                "primate social cognition tool use vocal communication hierarchy",
                QueryComplexity.COMPREHENSIVE,
            ),
        ],
    )
    def test_complexity(self, text, expected):
        """Complexity follows term count, quotes and boolean operators."""
        assert classify_query_complexity(text) == expected
        assert Query(text).complexity == expected

    def test_terms_drop_stop_words(self):
        """Stop words are not scoring terms."""
        assert Query("the cognition of apes").terms == ["cognition", "apes"]

    def test_normalized_text(self):
        """Normalized text lowercases and collapses whitespace."""
        assert Query("  Primate   COGNITION ").normalized == "primate cognition"


class TestRankingOptions:
    """Tests for request option validation."""

    def test_defaults(self):
        """Defaults leave everything to configuration."""
        options = RankingOptions()
        assert options.max_results is None
        assert not options.is_cancelled

    @pytest.mark.parametrize(
        "kwargs",
        [{"min_threshold": 1.5}, {"max_results": 0}, {"batch_size": 0}, {"theme_fit_min": -0.1}],
    )
    def test_invalid_values(self, kwargs):
        """Out-of-range options raise ValueError."""
        with pytest.raises(ValueError):
            RankingOptions(**kwargs)

    def test_cancellation_visible(self):
        """Cancelling the token is visible through the options."""
        token = CancellationToken()
        options = RankingOptions(cancellation=token)
        token.cancel()
        assert options.is_cancelled


class TestTierResult:
    """Tests for immutable tier snapshots."""

    def test_snapshot_is_decoupled_from_later_mutation(self):
        """Scores captured in a snapshot do not change with the candidate."""
        candidate = Candidate(title="t", external_id="1")
        candidate.scoring.final_score = 0.8
        snapshot = RankedCandidate.snapshot(candidate, rank=1)
        candidate.scoring.final_score = 0.1
        assert snapshot.final_score == 0.8
        assert snapshot.identity == "id:1"

    def test_snapshot_candidate_is_detached(self):
        """The candidate held by a snapshot is a copy, not the live record."""
        candidate = Candidate(title="t", external_id="1")
        candidate.scoring.semantic_score = 0.9
        candidate.scoring.explanation = "Highly relevant"
        snapshot = RankedCandidate.snapshot(candidate, rank=1)

        candidate.scoring.semantic_score = None
        candidate.scoring.explanation = "Lexical match"
        candidate.scoring.aspects.add("Primates")

        assert snapshot.candidate is not candidate
        assert snapshot.candidate.identity == candidate.identity
        assert snapshot.candidate.scoring.semantic_score == 0.9
        assert snapshot.candidate.scoring.explanation == "Highly relevant"
        assert snapshot.candidate.scoring.aspects == set()

    def test_tier_result_is_frozen(self):
        """Tier results cannot be modified after creation."""
        result = TierResult(
            tier=TierName.IMMEDIATE,
            version=1,
            candidates=(),
            latency_ms=1.0,
            is_complete=False,
        )
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.version = 2
