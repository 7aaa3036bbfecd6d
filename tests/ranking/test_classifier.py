# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for rule-based domain and aspect classification."""

import pytest

from litrank.ranking.classifier import (
    CandidateAspects,
    DomainAspectClassifier,
    QueryAspects,
)
from litrank.schemas import Candidate


@pytest.fixture
def classifier() -> DomainAspectClassifier:
    """Classifier with the default allow-list."""
    return DomainAspectClassifier()


class TestClassifyDomain:
    """Tests for domain classification."""

    def test_tourism_takes_precedence(self, classifier):
        """Tourism language wins over every other domain."""
        result = classifier.classify_domain("Tourists observing chimpanzee species in parks")
        assert result.domain == "Tourism"
        assert result.confidence == 0.95

    def test_rule_with_minimum_matches(self, classifier):
        """Biology needs at least two matching terms; more raise confidence."""
        result = classifier.classify_domain("Species and animals in changing ecology")
        assert result.domain == "Biology"
        assert result.confidence == pytest.approx(0.90)

    def test_every_occurrence_counts(self, classifier):
        """Repeated terms count once per occurrence."""
        result = classifier.classify_domain("genes genes genes")
        assert result.domain == "Biology"
        assert result.confidence == pytest.approx(0.90)

    def test_confidence_capped(self, classifier):
        """Confidence never exceeds 0.99."""
        text = " ".join(["species"] * 30)
        assert classifier.classify_domain(text).confidence == 0.99

    def test_single_match_is_not_enough(self, classifier):
        """One psychology term does not establish the domain."""
        assert classifier.classify_domain("a cognitive test").domain == "Interdisciplinary"

    def test_social_science(self, classifier):
        """Human-subject language without animals is social science."""
        result = classifier.classify_domain("Children in the local community")
        assert result.domain == "Social Science"

    def test_default_domain(self, classifier):
        """Unmatched text falls back to the default domain."""
        result = classifier.classify_domain("quantum spin lattices")
        assert result.domain == "Interdisciplinary"
        assert result.confidence == 0.60

    def test_allow_list(self, classifier):
        """Tourism and marketing are excluded by default."""
        assert classifier.is_allowed("Biology")
        assert not classifier.is_allowed("Tourism")
        assert not classifier.is_allowed("Marketing")
        assert not classifier.is_allowed(None)


class TestAspects:
    """Tests for aspect extraction and query matching."""

    def test_extract_subjects_type_and_behaviors(self, classifier):
        """Subjects, publication type and behaviors are detected."""
        aspects = classifier.extract_aspects(
            "A systematic review of social learning in chimpanzees"
        )
        assert aspects.subjects == frozenset({"Primates"})
        assert aspects.study_type == "Review"
        assert aspects.behaviors == frozenset({"Social", "Cognitive"})
        assert "Review" in aspects.terms

    def test_default_study_type(self, classifier):
        """Without type markers a record is empirical research."""
        assert classifier.extract_aspects("Chimpanzees crack nuts").study_type == (
            "Empirical Research"
        )

    def test_parse_query_aspects(self, classifier):
        """Queries declare animal subjects, research intent and behavior focus."""
        aspects = classifier.parse_query_aspects("animal social behavior")
        assert aspects == QueryAspects(
            requires_animals=True, requires_research=True, behavior_type="Social"
        )
        assert classifier.parse_query_aspects("primate tourism").requires_research is False

    def test_animals_required(self, classifier):
        """Records without animal subjects fail animal queries."""
        aspects = CandidateAspects(frozenset({"Humans"}), "Empirical Research", frozenset())
        assert not classifier.matches_query(aspects, QueryAspects(requires_animals=True))

    def test_non_research_rejected(self, classifier):
        """Tourism and application records fail research queries."""
        for study_type in ("Tourism", "Application"):
            aspects = CandidateAspects(frozenset({"Primates"}), study_type, frozenset())
            assert not classifier.matches_query(aspects, QueryAspects())

    def test_behavior_mismatch(self, classifier):
        """The query's behavior focus must be present."""
        aspects = CandidateAspects(frozenset(), "Empirical Research", frozenset({"Cognitive"}))
        assert not classifier.matches_query(aspects, QueryAspects(behavior_type="Social"))
        assert classifier.matches_query(aspects, QueryAspects(behavior_type="Cognitive"))


class TestFilterCandidates:
    """Tests for the post-ranking filter."""

    def test_filters_domain_and_aspects(self, classifier, primate_candidates):
        """Off-domain and mismatched records are removed, order preserved."""
        query_aspects = classifier.parse_query_aspects("chimpanzee social cognition")
        kept = classifier.filter_candidates(primate_candidates, query_aspects)
        assert [c.external_id for c in kept] == ["cand-1", "cand-2"]

    def test_annotates_scoring_record(self, classifier, primate_candidates):
        """Every candidate gets a domain label and aspects."""
        classifier.filter_candidates(primate_candidates)
        tourism = primate_candidates[2]
        assert tourism.scoring.domain == "Tourism"
        assert "Tourism" in tourism.scoring.aspects

    def test_aspect_filtering_can_be_disabled(self, primate_candidates):
        """With aspect filtering off only the domain filter applies."""
        classifier = DomainAspectClassifier(aspect_filtering=False)
        query_aspects = classifier.parse_query_aspects("chimpanzee social cognition")
        kept = classifier.filter_candidates(primate_candidates, query_aspects)
        assert len(kept) == 4

    def test_output_is_subset(self, classifier, corpus_factory):
        """Filtering never adds or reorders candidates."""
        candidates = corpus_factory(40)
        kept = classifier.filter_candidates(candidates)
        positions = [candidates.index(c) for c in kept]
        assert positions == sorted(positions)

    def test_missing_text(self, classifier):
        """Records without text fall back to the default domain."""
        candidate = Candidate(title=None)
        classifier.classify(candidate)
        assert candidate.scoring.domain == "Interdisciplinary"
