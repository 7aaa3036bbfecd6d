# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""BM25-style lexical scoring for candidate ranking.

Scores (query, candidate) pairs with a term-frequency / inverse document
frequency scheme that saturates repeated terms and normalizes for document
length. Field weighting, an exact-phrase bonus and a low-coverage penalty
adapt plain BM25 to short bibliographic records:

- Title occurrences count ``title_weight`` times, keywords ``keyword_weight``
  times, abstract occurrences once.
- An exact phrase match in the title (or, at half value, the abstract) adds
  ``phrase_bonus``.
- Candidates containing fewer than ``min_coverage`` of the distinct query
  terms are multiplied by ``low_coverage_penalty``.

Formula: BM25(D, Q) = sum IDF(qi) * (f(qi, D) * (k1 + 1)) / (f(qi, D) + k1 * (1 - b + b * |D| / avgdl))
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from litrank.config import LexicalConfig
from litrank.schemas import Candidate, Query, QueryComplexity
from litrank.text import normalize_key_text, tokenize

logger = logging.getLogger(__name__)

# Minimum lexical score kept by the prefilter, per query complexity
PREFILTER_THRESHOLDS = {
    QueryComplexity.BROAD: 1.0,
    QueryComplexity.SPECIFIC: 2.0,
    QueryComplexity.COMPREHENSIVE: 2.5,
}

# Prefilter is bypassed when more than this share of candidates score zero
PREFILTER_BYPASS_ZERO_RATIO = 0.8


@dataclass
class CorpusStatistics:
    """Term statistics for a candidate collection.

    Attributes:
        doc_freq: Number of documents containing each term.
        total_docs: Total number of documents.
        avg_doc_length: Average document length in tokens.
    """

    doc_freq: dict[str, int] = field(default_factory=dict)
    total_docs: int = 0
    avg_doc_length: float = 0.0

    @classmethod
    def from_token_lists(cls, documents: Iterable[Sequence[str]]) -> "CorpusStatistics":
        """Build statistics from pre-tokenized documents."""
        stats = cls()
        total_length = 0
        for tokens in documents:
            stats.total_docs += 1
            total_length += len(tokens)
            for term in set(tokens):
                stats.doc_freq[term] = stats.doc_freq.get(term, 0) + 1
        if stats.total_docs > 0:
            stats.avg_doc_length = total_length / stats.total_docs
        return stats

    @classmethod
    def from_candidates(cls, candidates: Iterable[Candidate]) -> "CorpusStatistics":
        """Build statistics from the candidates' title, abstract and keywords."""
        return cls.from_token_lists(tokenize(c.full_text) for c in candidates)

    def idf(self, term: str) -> float:
        """Inverse document frequency, ``log((N - n + 0.5) / (n + 0.5) + 1)``.

        Without statistics every term weighs 1.0.
        """
        if self.total_docs == 0:
            return 1.0
        n = self.doc_freq.get(term, 0)
        N = self.total_docs
        return math.log((N - n + 0.5) / (n + 0.5) + 1)


class LexicalScorer:
    """Field-weighted BM25 scorer for bibliographic candidates.

    Scoring is a pure function of the query terms, the candidate's text
    fields and the supplied corpus statistics. Missing or empty text scores
    zero.

    Example:
        >>> scorer = LexicalScorer()
        >>> query = Query("primate social cognition")
        >>> scores = scorer.score_candidates(query, candidates)

    Attributes:
        config: Scoring parameters.
    """

    def __init__(self, config: Optional[LexicalConfig] = None):
        """Initialize the scorer.

        Args:
            config: Scoring parameters; defaults when None.
        """
        self.config = config or LexicalConfig()

    def score(
        self,
        query_terms: Sequence[str],
        candidate: Candidate,
        stats: Optional[CorpusStatistics] = None,
        phrase: Optional[str] = None,
    ) -> float:
        """Score one candidate against a set of query terms.

        Args:
            query_terms: Tokenized query terms.
            candidate: Candidate to score.
            stats: Corpus statistics for IDF and average length.
            phrase: Normalized query phrase for the exact-match bonus.

        Returns:
            Non-negative relevance score.
        """
        distinct = set(query_terms)
        if not distinct:
            return 0.0

        title_tf = Counter(tokenize(candidate.title))
        body_tf = Counter(tokenize(candidate.abstract))
        keyword_tf = Counter(tokenize(" ".join(candidate.keywords)))
        doc_len = sum(title_tf.values()) + sum(body_tf.values()) + sum(keyword_tf.values())
        if doc_len == 0:
            return 0.0

        stats = stats or CorpusStatistics()
        cfg = self.config
        avgdl = stats.avg_doc_length or float(doc_len)
        length_norm = cfg.k1 * (1 - cfg.b + cfg.b * doc_len / avgdl)

        score = 0.0
        matched = 0
        for term in distinct:
            f = cfg.title_weight * title_tf[term] + cfg.keyword_weight * keyword_tf[term] + body_tf[term]
            if f == 0:
                continue
            matched += 1
            score += stats.idf(term) * (f * (cfg.k1 + 1)) / (f + length_norm)

        if phrase and " " in phrase:
            if phrase in normalize_key_text(candidate.title):
                score += cfg.phrase_bonus
            elif phrase in normalize_key_text(candidate.abstract):
                score += cfg.phrase_bonus / 2

        coverage = matched / len(distinct)
        if coverage < cfg.min_coverage:
            score *= cfg.low_coverage_penalty

        return max(score, 0.0)

    def score_candidates(
        self,
        query: Query,
        candidates: Sequence[Candidate],
        stats: Optional[CorpusStatistics] = None,
    ) -> list[float]:
        """Score candidates and record the result in each scoring record.

        Args:
            query: Query to score against.
            candidates: Candidates to score (mutated in place).
            stats: Precomputed statistics; built from the candidates when None.

        Returns:
            Lexical scores in candidate order.
        """
        if stats is None:
            stats = CorpusStatistics.from_candidates(candidates)
        phrase = normalize_key_text(query.text)
        scores = []
        for candidate in candidates:
            value = self.score(query.terms, candidate, stats, phrase)
            candidate.scoring.lexical_score = value
            scores.append(value)
        return scores

    def prefilter(self, query: Query, candidates: Sequence[Candidate]) -> list[Candidate]:
        """Drop candidates below the complexity-dependent lexical minimum.

        Candidates must already carry lexical scores. The filter is bypassed
        when most candidates score zero (vocabulary mismatch) or when it
        would remove every candidate.

        Args:
            query: The scored query.
            candidates: Lexically scored candidates.

        Returns:
            Candidates retained for semantic reranking.
        """
        if not candidates:
            return []
        zero = sum(1 for c in candidates if c.scoring.lexical_score == 0)
        if zero / len(candidates) > PREFILTER_BYPASS_ZERO_RATIO:
            logger.info(
                f"Lexical prefilter bypassed: {zero}/{len(candidates)} candidates score zero"
            )
            return list(candidates)

        threshold = PREFILTER_THRESHOLDS[query.complexity]
        kept = [c for c in candidates if c.scoring.lexical_score >= threshold]
        if not kept:
            return list(candidates)
        logger.debug(
            f"Lexical prefilter ({query.complexity.value}, min={threshold}): "
            f"{len(kept)}/{len(candidates)} kept"
        )
        return kept


def normalize_scores(
    values: Sequence[float], score_range: Optional[tuple[float, float]] = None
) -> list[float]:
    """Min-max normalize scores to [0, 1].

    Args:
        values: Raw scores.
        score_range: (min, max) to normalize against; the values' own range
            when None. Values outside it are clamped.

    Returns:
        Normalized scores; a flat positive range maps to 1.0, all-zero to 0.0.
    """
    if not values:
        return []
    low, high = score_range or (min(values), max(values))
    if high == low:
        return [1.0 if high > 0 else 0.0 for _ in values]
    span = high - low
    return [min(max((v - low) / span, 0.0), 1.0) for v in values]


def order_by_lexical(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Candidates by descending lexical score; ties keep their input order."""
    indexed = sorted(
        enumerate(candidates), key=lambda item: (-item[1].scoring.lexical_score, item[0])
    )
    return [c for _, c in indexed]


def lexical_range(candidates: Sequence[Candidate]) -> tuple[float, float]:
    """(min, max) lexical score, used to normalize against a fixed corpus."""
    if not candidates:
        return (0.0, 0.0)
    values = [c.scoring.lexical_score for c in candidates]
    return (min(values), max(values))
