# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Theme-fit scoring for downstream thematization.

Estimates how well a candidate will feed thematic analysis from four
independent sub-scores, each in [0, 1]:

- Controversy potential: debate and contrast language
- Statement clarity: quotable, well-formed assertions
- Perspective diversity: stakeholders, disciplines and viewpoints
- Citation controversy: scholarly-debate language plus citation volume
  and velocity

Each text signal is saturated logarithmically,
``min(log(1 + matches) / log(1 + saturation), 1)``, so a handful of
matches already scores high and further matches add little.

The composite is advisory metadata; it filters nothing unless a caller
opts into a minimum threshold.
"""

import datetime
import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from litrank.config import ThemeFitWeights
from litrank.schemas import Candidate

logger = logging.getLogger(__name__)

# Matches at which each signal family saturates
CONTROVERSY_SATURATION = 5
STATEMENT_SATURATION = 8
PERSPECTIVE_SATURATION = 6
CITATION_SATURATION = 3

# 500 citations give the maximum count boost
CITATION_COUNT_DIVISOR = 500
MAX_CITATION_BOOST = 0.2

# (minimum citations per year, boost), highest first
VELOCITY_THRESHOLDS = ((20, 0.15), (10, 0.10), (5, 0.05))

THEMATIZATION_TIERS = (
    (0.80, "Excellent for Q-Sort"),
    (0.65, "Very Good for Thematization"),
    (0.50, "Good for Thematization"),
    (0.35, "Moderate Potential"),
    (0.20, "Limited Potential"),
    (0.00, "Low Thematization Value"),
)

GOOD_THEMATIZATION_THRESHOLD = 0.5


def _compile(patterns: Sequence[str]) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CONTROVERSY_PATTERNS = _compile(
    (
        r"\bhowever\b",
        r"\bnevertheless\b",
        r"\bin contrast\b",
        r"\bon the other hand\b",
        r"\bconversely\b",
        r"\balternatively\b",
        r"\bdebate[sd]?\b",
        r"\bcontroversy\b",
        r"\bcontroversial\b",
        r"\bdisagree(?:ment|s|d)?\b",
        r"\boppos(?:e[sd]?|ing|ition)\b",
        r"\bcontest(?:ed|ing)?\b",
        r"\bchallenge[sd]?\b",
        r"\bquestion(?:ed|ing|s)?\b",
        r"\brefute[sd]?\b",
        r"\bcontradict(?:s|ed|ory)?\b",
        r"\bdispute[sd]?\b",
        r"\bsome researchers.*while others\b",
        r"\bsome argue.*others\b",
        r"\bconflicting evidence\b",
        r"\bmixed results\b",
        r"\binconsistent findings\b",
        r"\bcompeting (?:theories|hypotheses|models)\b",
    )
)

STATEMENT_PATTERNS = _compile(
    (
        r"\bwe argue that\b",
        r"\bwe propose that\b",
        r"\bwe conclude that\b",
        r"\bwe suggest that\b",
        r"\bwe contend that\b",
        r"\bwe demonstrate that\b",
        r"\bwe hypothesize that\b",
        r"\bevidence suggests\b",
        r"\bfindings indicate\b",
        r"\bresults show\b",
        r"\bdata reveals?\b",
        r"\bshould\b",
        r"\bmust\b",
        r"\bneed to\b",
        r"\bought to\b",
        r"\bimportant(?:ly)?\b",
        r"\bcritical(?:ly)?\b",
        r"\bessential\b",
        r"\bcrucial(?:ly)?\b",
        r"\bfundamental(?:ly)?\b",
        r"\bclearly\b",
        r"\bin fact\b",
    )
)

PERSPECTIVE_PATTERNS = _compile(
    (
        r"\bfrom (?:a|the) \w+ perspective\b",
        r"\bfrom (?:a|the) \w+ point of view\b",
        r"\baccording to \w+\b",
        r"\b\w+ scholars\b",
        r"\bpractitioners\b",
        r"\bpolicymakers\b",
        r"\bstakeholders\b",
        r"\bclinicians\b",
        r"\bteachers\b",
        r"\bconsumers\b",
        r"\bpsychological(?:ly)?\b",
        r"\bsociological(?:ly)?\b",
        r"\beconomic(?:ally)?\b",
        r"\bpolitical(?:ly)?\b",
        r"\bcultural(?:ly)?\b",
        r"\bbiological(?:ly)?\b",
        r"\bwestern\b",
        r"\beastern\b",
        r"\bglobal(?:ly)?\b",
        r"\burban\b",
        r"\brural\b",
    )
)

CITATION_CONTROVERSY_PATTERNS = _compile(
    (
        r"\bcited.*(?:disagree|challenge|refute)\b",
        r"\bprevious work.*(?:contradict|dispute)\b",
        r"\bin response to\b",
        r"\breplying to\b",
        r"\bcountering\b",
        r"\brebuttal\b",
        r"\bscholarly debate\b",
        r"\btheoretical debate\b",
        r"\bmethodological debate\b",
        r"\bschool of thought\b",
        r"\bcompeting schools\b",
        r"\brival theories\b",
    )
)


@dataclass(frozen=True)
class ThemeFitScore:
    """Theme-fit sub-scores and weighted composite, all in [0, 1].

    Attributes:
        controversy: Controversy potential.
        clarity: Statement clarity.
        diversity: Perspective diversity.
        citation: Citation-based controversy.
        composite: Weighted combination.
        explanation: Human-readable summary.
    """

    controversy: float
    clarity: float
    diversity: float
    citation: float
    composite: float
    explanation: str = ""

    def as_dict(self) -> dict[str, float]:
        """Sub-scores keyed by name."""
        return {
            "controversy": self.controversy,
            "clarity": self.clarity,
            "diversity": self.diversity,
            "citation": self.citation,
        }


def saturated_score(match_count: int, saturation: int) -> float:
    """Logarithmic saturation of a match count into [0, 1]."""
    if match_count <= 0:
        return 0.0
    return min(math.log(1 + match_count) / math.log(1 + saturation), 1.0)


def count_patterns(text: str, patterns: Sequence[re.Pattern]) -> int:
    """Number of distinct patterns present in text."""
    if not text:
        return 0
    return sum(1 for p in patterns if p.search(text))


def thematization_tier(score: float) -> str:
    """Label for a composite theme-fit score."""
    for threshold, label in THEMATIZATION_TIERS:
        if score >= threshold:
            return label
    return THEMATIZATION_TIERS[-1][1]


class ThemeFitScorer:
    """Scores candidates for thematization suitability.

    Example:
        >>> scorer = ThemeFitScorer()
        >>> result = scorer.score(candidate)
        >>> 0.0 <= result.composite <= 1.0
        True

    Attributes:
        weights: Sub-score weights, normalized to sum to 1.
        current_year: Reference year for citation velocity.
    """

    def __init__(
        self,
        weights: Optional[ThemeFitWeights] = None,
        current_year: Optional[int] = None,
    ):
        self.weights = (weights or ThemeFitWeights()).normalized()
        self.current_year = current_year or datetime.date.today().year

    def score(self, candidate: Candidate) -> ThemeFitScore:
        """Compute the four sub-scores and the composite for a candidate."""
        text = candidate.full_text

        controversy_matches = count_patterns(text, CONTROVERSY_PATTERNS)
        statement_matches = count_patterns(text, STATEMENT_PATTERNS)
        perspective_matches = count_patterns(text, PERSPECTIVE_PATTERNS)
        citation_matches = count_patterns(text, CITATION_CONTROVERSY_PATTERNS)

        controversy = saturated_score(controversy_matches, CONTROVERSY_SATURATION)
        clarity = saturated_score(statement_matches, STATEMENT_SATURATION)
        diversity = saturated_score(perspective_matches, PERSPECTIVE_SATURATION)
        citation = min(
            saturated_score(citation_matches, CITATION_SATURATION)
            + self._citation_boost(candidate),
            1.0,
        )

        w = self.weights
        composite = (
            controversy * w.controversy
            + clarity * w.clarity
            + diversity * w.diversity
            + citation * w.citation
        )
        composite = min(max(composite, 0.0), 1.0)

        parts = [f"ThemeFit={composite * 100:.0f}%"]
        if controversy_matches:
            parts.append(f"Controversy={controversy * 100:.0f}%({controversy_matches})")
        if statement_matches:
            parts.append(f"Statements={clarity * 100:.0f}%({statement_matches})")
        if perspective_matches:
            parts.append(f"Perspectives={diversity * 100:.0f}%({perspective_matches})")
        if citation_matches:
            parts.append(f"CitationDebate={citation * 100:.0f}%({citation_matches})")

        return ThemeFitScore(
            controversy=controversy,
            clarity=clarity,
            diversity=diversity,
            citation=citation,
            composite=composite,
            explanation=", ".join(parts),
        )

    def _citation_boost(self, candidate: Candidate) -> float:
        citations = candidate.citation_count
        if not citations:
            return 0.0
        boost = min(citations / CITATION_COUNT_DIVISOR, MAX_CITATION_BOOST)
        if candidate.year:
            age = max(1, self.current_year - candidate.year)
            per_year = citations / age
            for minimum, velocity_boost in VELOCITY_THRESHOLDS:
                if per_year >= minimum:
                    boost += velocity_boost
                    break
        return boost

    def annotate(
        self,
        candidates: Sequence[Candidate],
        min_threshold: Optional[float] = None,
    ) -> list[Candidate]:
        """Score candidates in place, optionally dropping low composites.

        Candidates that already carry a theme-fit score are not rescored.

        Args:
            candidates: Candidates to annotate.
            min_threshold: Opt-in minimum composite; nothing is removed when None.

        Returns:
            Candidates retained, order preserved.
        """
        kept = []
        for candidate in candidates:
            if candidate.scoring.theme_fit is None:
                result = self.score(candidate)
                candidate.scoring.theme_fit = result.composite
                candidate.scoring.theme_fit_components = result.as_dict()
            if min_threshold is None or candidate.scoring.theme_fit >= min_threshold:
                kept.append(candidate)

        if min_threshold is not None and len(kept) < len(candidates):
            logger.info(
                f"Theme-fit cutoff {min_threshold:.2f}: {len(kept)}/{len(candidates)} kept"
            )
        return kept

    def is_good_for_thematization(self, candidate: Candidate) -> bool:
        """Whether the composite reaches the 'good' tier."""
        return self.score(candidate).composite >= GOOD_THEMATIZATION_THRESHOLD
