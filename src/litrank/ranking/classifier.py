# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Rule-based domain and aspect classification.

Assigns each candidate a primary subject domain and a set of aspects
(study subjects, publication type, behavior focus) using precompiled
patterns over normalized text. Used as a post-ranking filter: candidates
outside the allowed domains, or whose aspects contradict the query, are
removed regardless of relevance score.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from litrank.config import DEFAULT_ALLOWED_DOMAINS
from litrank.schemas import Candidate
from litrank.text import normalize_text

logger = logging.getLogger(__name__)

# Subject patterns
ANIMALS = re.compile(r"\b(animals?|species|organisms?|fauna|wildlife|creatures?)\b")
PRIMATES = re.compile(r"\b(primates?|monkeys?|apes?|chimpanzees?|gorillas?|orangutans?|bonobos?)\b")
HUMANS = re.compile(r"\b(humans?|child|children|patients?|participants?|people|adults?)\b")

# Domain patterns
TOURISM = re.compile(r"\b(tourism|tourists?|travel|vacation|hospitality|visitors?)\b")
MARKETING = re.compile(r"\b(marketing|advertising|brand|branding|consumers?|retail)\b")
BIOLOGY = re.compile(
    r"\b(species|animals?|organisms?|ecology|ecological|evolution\w*|genetics?|genes?|neurons?)\b"
)
MEDICINE = re.compile(r"\b(clinical|patients?|disease|treatment|therapy|diagnosis|hospital)\b")
PSYCHOLOGY = re.compile(r"\b(psycholog\w*|cognitive|emotions?|emotional|mental|personality)\b")
COMPUTING = re.compile(
    r"\b(algorithms?|software|computing|computational|neural networks?|machine learning)\b"
)
ECONOMICS = re.compile(r"\b(economic\w*|markets?|prices?|trade|fiscal|monetary|gdp)\b")
EDUCATION = re.compile(r"\b(students?|teachers?|classroom|curriculum|pedagog\w*|schools?)\b")
SOCIAL = re.compile(r"\b(child|children|human|participants?|patients?|students?|society|community)\b")

# Type patterns
REVIEW = re.compile(r"\b(review|survey|meta-analysis|systematic review)\b")
APPLICATION = re.compile(r"\b(application|implement\w*|deploy\w*|practical|intervention)\b")

# Behavior patterns
SOCIAL_BEHAVIOR = re.compile(r"\b(social|interactions?|groups?|hierarchy|cooperation|communication)\b")
COGNITIVE = re.compile(r"\b(cognitive|cognition|learning|memory|intelligence|problem.solving)\b")
INSTINCTUAL = re.compile(r"\b(aggression|mating|feeding|foraging|territorial|instinct\w*)\b")

# (domain, pattern, minimum matches), checked in order after tourism
DOMAIN_RULES = (
    ("Marketing", MARKETING, 2),
    ("Biology", BIOLOGY, 2),
    ("Medicine", MEDICINE, 2),
    ("Psychology", PSYCHOLOGY, 2),
    ("Computer Science", COMPUTING, 2),
    ("Economics", ECONOMICS, 2),
    ("Education", EDUCATION, 2),
)

DEFAULT_DOMAIN = "Interdisciplinary"
ASPECT_CONFIDENCE = 0.85

# Publication types rejected when the query asks for research
NON_RESEARCH_TYPES = frozenset({"Tourism", "Application"})


@dataclass(frozen=True)
class DomainClassification:
    """Primary domain of a text with rule confidence."""

    domain: str
    confidence: float


@dataclass(frozen=True)
class CandidateAspects:
    """Salient aspects extracted from a candidate.

    Attributes:
        subjects: Study subjects (Animals, Primates, Humans).
        study_type: Tourism, Review, Application or Empirical Research.
        behaviors: Behavior focus (Social, Cognitive, Instinctual).
        confidence: Rule confidence.
    """

    subjects: frozenset[str]
    study_type: str
    behaviors: frozenset[str]
    confidence: float = ASPECT_CONFIDENCE

    @property
    def terms(self) -> frozenset[str]:
        """All aspect labels as one set."""
        return self.subjects | self.behaviors | {self.study_type}


@dataclass(frozen=True)
class QueryAspects:
    """Aspect requirements parsed from a query."""

    requires_animals: bool = False
    requires_research: bool = True
    behavior_type: Optional[str] = None


def _behavior_of(text: str) -> Optional[str]:
    if SOCIAL_BEHAVIOR.search(text):
        return "Social"
    if COGNITIVE.search(text):
        return "Cognitive"
    if INSTINCTUAL.search(text):
        return "Instinctual"
    return None


class DomainAspectClassifier:
    """Pattern-based domain and aspect classifier.

    Example:
        >>> classifier = DomainAspectClassifier()
        >>> classifier.classify_domain("tourist visitor experience").domain
        'Tourism'
        >>> classifier.is_allowed("Tourism")
        False

    Attributes:
        allowed_domains: Domains retained by the filter.
        aspect_filtering: Whether aspects are matched against the query.
    """

    def __init__(
        self,
        allowed_domains: Iterable[str] = DEFAULT_ALLOWED_DOMAINS,
        aspect_filtering: bool = True,
    ):
        self.allowed_domains = frozenset(allowed_domains)
        self.aspect_filtering = aspect_filtering

    def is_allowed(self, domain: Optional[str]) -> bool:
        """O(1) allow-list membership."""
        return domain in self.allowed_domains

    def classify_domain(self, text: str) -> DomainClassification:
        """Classify normalized text into a primary domain."""
        text = normalize_text(text)
        if TOURISM.search(text):
            return DomainClassification("Tourism", 0.95)
        for domain, pattern, minimum in DOMAIN_RULES:
            count = len(pattern.findall(text))
            if count >= minimum:
                return DomainClassification(domain, min(0.85 + 0.05 * (count - minimum), 0.99))
        if SOCIAL.search(text) and "animal" not in text:
            return DomainClassification("Social Science", 0.90)
        return DomainClassification(DEFAULT_DOMAIN, 0.60)

    def extract_aspects(self, text: str) -> CandidateAspects:
        """Extract subjects, publication type and behaviors."""
        text = normalize_text(text)
        subjects = set()
        if ANIMALS.search(text):
            subjects.add("Animals")
        if PRIMATES.search(text):
            subjects.add("Primates")
        if HUMANS.search(text):
            subjects.add("Humans")

        if TOURISM.search(text):
            study_type = "Tourism"
        elif REVIEW.search(text):
            study_type = "Review"
        elif APPLICATION.search(text):
            study_type = "Application"
        else:
            study_type = "Empirical Research"

        behaviors = set()
        if SOCIAL_BEHAVIOR.search(text):
            behaviors.add("Social")
        if COGNITIVE.search(text):
            behaviors.add("Cognitive")
        if INSTINCTUAL.search(text):
            behaviors.add("Instinctual")

        return CandidateAspects(frozenset(subjects), study_type, frozenset(behaviors))

    def parse_query_aspects(self, query: str) -> QueryAspects:
        """Parse aspect requirements from query text."""
        text = normalize_text(query)
        return QueryAspects(
            requires_animals=bool(ANIMALS.search(text)),
            requires_research=not TOURISM.search(text),
            behavior_type=_behavior_of(text),
        )

    def matches_query(self, aspects: CandidateAspects, query_aspects: QueryAspects) -> bool:
        """Whether a candidate's aspects satisfy the query's requirements."""
        if query_aspects.requires_animals and not aspects.subjects & {"Animals", "Primates"}:
            return False
        if query_aspects.requires_research and aspects.study_type in NON_RESEARCH_TYPES:
            return False
        if query_aspects.behavior_type and query_aspects.behavior_type not in aspects.behaviors:
            return False
        return True

    def classify(self, candidate: Candidate) -> CandidateAspects:
        """Annotate a candidate's scoring record with domain and aspects."""
        text = candidate.full_text
        domain = self.classify_domain(text)
        aspects = self.extract_aspects(text)
        candidate.scoring.domain = domain.domain
        candidate.scoring.domain_confidence = domain.confidence
        candidate.scoring.aspects = set(aspects.terms)
        return aspects

    def filter_candidates(
        self,
        candidates: Sequence[Candidate],
        query_aspects: Optional[QueryAspects] = None,
    ) -> list[Candidate]:
        """Classify candidates and keep those passing the domain and aspect filters.

        Args:
            candidates: Candidates in rank order.
            query_aspects: Requirements to match; aspects are not filtered when None.

        Returns:
            Retained candidates, order preserved.
        """
        kept = []
        rejected_domain = 0
        rejected_aspects = 0
        for candidate in candidates:
            aspects = self.classify(candidate)
            if not self.is_allowed(candidate.scoring.domain):
                rejected_domain += 1
                continue
            if (
                self.aspect_filtering
                and query_aspects is not None
                and not self.matches_query(aspects, query_aspects)
            ):
                rejected_aspects += 1
                continue
            kept.append(candidate)

        if rejected_domain or rejected_aspects:
            logger.info(
                f"Domain/aspect filter: {len(kept)}/{len(candidates)} kept "
                f"({rejected_domain} off-domain, {rejected_aspects} aspect mismatch)"
            )
        return kept
