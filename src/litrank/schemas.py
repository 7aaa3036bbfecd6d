# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Data model for the ranking core.

Defines the candidate record supplied by the retrieval collaborator, the
query with its derived complexity class, the per-request options and the
immutable tier snapshots streamed back to callers.

Candidates are validated with Pydantic at the boundary and then mutated in
place as each stage annotates their scoring record. Tier results are frozen
dataclasses so an emitted snapshot never changes after delivery.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel, Field, field_validator

from litrank.cancellation import CancellationToken
from litrank.text import normalize_key_text, normalize_text, tokenize

# Maximum characters of "title. abstract" sent to the embedding model
EMBEDDING_TEXT_LIMIT = 800

_DOI_PREFIXES = ("https://doi.org/", "http://doi.org/", "https://dx.doi.org/", "doi:")
_QUOTED_PHRASE = re.compile(r'"[^"]+"')
_BOOLEAN_OPERATOR = re.compile(r"\b(AND|OR|NOT)\b")


class RankingError(Exception):
    """Base class for errors surfaced to ranking callers."""


class EmptyQueryError(RankingError):
    """Raised when the query is blank after normalization."""

    def __init__(self, query: Optional[str] = None):
        self.query = query
        super().__init__("Query text is empty")


class NoCandidatesError(RankingError):
    """Raised when a ranking request carries no candidates."""

    def __init__(self):
        super().__init__("No candidates provided")


class IdentityKind(str, Enum):
    """Which source a candidate identity was resolved from.

    - PERSISTENT: DOI or caller-supplied external id (cache hits survive)
    - DERIVED: normalized title + first author + year composite
    - INTERNAL: opaque per-object id (cache-ineffective but safe)
    """

    PERSISTENT = "persistent"
    DERIVED = "derived"
    INTERNAL = "internal"


class QueryComplexity(str, Enum):
    """Coarse classification of a query's breadth."""

    BROAD = "broad"
    SPECIFIC = "specific"
    COMPREHENSIVE = "comprehensive"


class TierName(str, Enum):
    """Labels of the progressively refined result tiers."""

    IMMEDIATE = "immediate"
    REFINED = "refined"
    COMPLETE = "complete"


def normalize_doi(doi: Optional[str]) -> Optional[str]:
    """Normalize a DOI to its bare lowercase form.

    Args:
        doi: DOI string, possibly URL- or scheme-prefixed.

    Returns:
        Bare DOI, or None when missing or blank.
    """
    if not doi:
        return None
    value = doi.strip().lower()
    for prefix in _DOI_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    return value.strip() or None


class ScoringRecord(BaseModel):
    """Mutable per-candidate annotations written by the ranking stages."""

    lexical_score: float = 0.0
    semantic_score: Optional[float] = None
    domain: Optional[str] = None
    domain_confidence: float = 0.0
    aspects: set[str] = Field(default_factory=set)
    theme_fit: Optional[float] = None
    theme_fit_components: dict[str, float] = Field(default_factory=dict)
    final_score: float = 0.0
    rank: Optional[int] = None
    explanation: str = ""


class Candidate(BaseModel):
    """A document under consideration for ranking.

    Supplied by the external retrieval collaborator. Missing text is
    tolerated and scores as zero relevance rather than being rejected.

    Example:
        >>> paper = Candidate(title="Primate social cognition", doi="10.1/abc")
        >>> paper.identity
        'doi:10.1/abc'
    """

    title: str = ""
    abstract: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    year: Optional[int] = None
    citation_count: Optional[int] = None
    venue: Optional[str] = None
    doi: Optional[str] = None
    external_id: Optional[str] = None
    internal_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    metadata: dict[str, Any] = Field(default_factory=dict)
    scoring: ScoringRecord = Field(default_factory=ScoringRecord)

    @field_validator("title", mode="before")
    @classmethod
    def coerce_title(cls, v: Any) -> str:
        """Treat a missing title as empty text."""
        return "" if v is None else v

    @field_validator("citation_count")
    @classmethod
    def clamp_citations(cls, v: Optional[int]) -> Optional[int]:
        """Negative citation counts from upstream sources are clamped to 0."""
        if v is not None and v < 0:
            return 0
        return v

    @property
    def identity_kind(self) -> IdentityKind:
        """Source the identity is resolved from."""
        if normalize_doi(self.doi) or (self.external_id and self.external_id.strip()):
            return IdentityKind.PERSISTENT
        if self._derived_key() is not None:
            return IdentityKind.DERIVED
        return IdentityKind.INTERNAL

    @property
    def identity(self) -> str:
        """Stable identity used to address cached embeddings.

        Priority: DOI, external id, derived content key, internal id.
        """
        doi = normalize_doi(self.doi)
        if doi:
            return f"doi:{doi}"
        if self.external_id and self.external_id.strip():
            return f"id:{self.external_id.strip()}"
        derived = self._derived_key()
        if derived is not None:
            return f"key:{derived}"
        return f"internal:{self.internal_id}"

    def _derived_key(self) -> Optional[str]:
        title = normalize_key_text(self.title)
        if not title:
            return None
        first_author = ""
        if self.authors:
            parts = normalize_key_text(self.authors[0]).split()
            first_author = parts[-1] if parts else ""
        year = str(self.year) if self.year is not None else ""
        digest = hashlib.sha256(f"{title}|{first_author}|{year}".encode("utf-8"))
        return digest.hexdigest()[:32]

    @property
    def embedding_text(self) -> str:
        """Text sent to the embedding model: ``title. abstract`` truncated."""
        title = (self.title or "").strip()
        abstract = (self.abstract or "").strip()
        if title and abstract:
            text = f"{title}. {abstract}"
        else:
            text = title or abstract
        return text[:EMBEDDING_TEXT_LIMIT]

    @property
    def full_text(self) -> str:
        """Title, abstract and keywords joined for pattern matching."""
        parts = [self.title or "", self.abstract or "", " ".join(self.keywords)]
        return " ".join(p for p in parts if p)


def classify_query_complexity(text: str) -> QueryComplexity:
    """Classify a query as broad, specific or comprehensive.

    Boolean operators or seven or more content terms make a query
    comprehensive; a quoted phrase or three or more terms make it
    specific; anything shorter is broad.

    Args:
        text: Raw query text.

    Returns:
        The complexity class.
    """
    terms = tokenize(text)
    if _BOOLEAN_OPERATOR.search(text) or len(terms) >= 7:
        return QueryComplexity.COMPREHENSIVE
    if _QUOTED_PHRASE.search(text) or len(terms) >= 3:
        return QueryComplexity.SPECIFIC
    return QueryComplexity.BROAD


@dataclass
class Query:
    """A ranking query.

    The embedding is filled lazily, at most once per request, by the
    reranker.

    Attributes:
        text: Raw query text.
        complexity: Derived complexity class.
        terms: Content terms used for lexical scoring.
        embedding: Query embedding once computed.
    """

    text: str
    complexity: QueryComplexity = field(init=False)
    terms: list[str] = field(init=False)
    embedding: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.text or not self.text.strip():
            raise EmptyQueryError(self.text)
        self.terms = tokenize(self.text)
        self.complexity = classify_query_complexity(self.text)

    @property
    def normalized(self) -> str:
        """Normalized text used as the query cache key."""
        return normalize_text(self.text)


@dataclass
class RankingOptions:
    """Per-request ranking options.

    Attributes:
        min_threshold: Overrides the strict semantic similarity threshold.
        max_results: Maximum candidates per tier (defaults to configuration).
        batch_size: Embedding batch size (dynamic when None).
        cancellation: Cancellation token polled between batches and tiers.
        theme_fit_min: Opt-in minimum theme-fit composite for the complete tier.
    """

    min_threshold: Optional[float] = None
    max_results: Optional[int] = None
    batch_size: Optional[int] = None
    cancellation: Optional[CancellationToken] = None
    theme_fit_min: Optional[float] = None

    def __post_init__(self):
        if self.min_threshold is not None and not 0.0 <= self.min_threshold <= 1.0:
            raise ValueError("min_threshold must be between 0.0 and 1.0")
        if self.theme_fit_min is not None and not 0.0 <= self.theme_fit_min <= 1.0:
            raise ValueError("theme_fit_min must be between 0.0 and 1.0")
        if self.max_results is not None and self.max_results < 1:
            raise ValueError("max_results must be positive")
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError("batch_size must be positive")

    @property
    def is_cancelled(self) -> bool:
        """Whether the attached cancellation token has fired."""
        return self.cancellation is not None and self.cancellation.cancelled


@dataclass(frozen=True)
class RankedCandidate:
    """Immutable view of a candidate's scores at the time a tier was emitted."""

    candidate: Candidate
    identity: str
    rank: int
    final_score: float
    lexical_score: float
    semantic_score: Optional[float] = None
    theme_fit: Optional[float] = None
    domain: Optional[str] = None
    aspects: frozenset[str] = frozenset()
    explanation: str = ""

    @classmethod
    def snapshot(cls, candidate: Candidate, rank: int) -> "RankedCandidate":
        """Capture a detached copy of the candidate and its current scoring record.

        Later tiers rescore the live candidate in place; the copy keeps this
        tier's values.
        """
        scoring = candidate.scoring
        return cls(
            candidate=candidate.model_copy(deep=True),
            identity=candidate.identity,
            rank=rank,
            final_score=scoring.final_score,
            lexical_score=scoring.lexical_score,
            semantic_score=scoring.semantic_score,
            theme_fit=scoring.theme_fit,
            domain=scoring.domain,
            aspects=frozenset(scoring.aspects),
            explanation=scoring.explanation,
        )


@dataclass(frozen=True)
class TierMetadata:
    """Provenance of a tier result.

    Attributes:
        candidates_processed: Candidates considered by the tier.
        cache_hits: Embeddings served from the cache.
        embeddings_generated: Embeddings computed fresh.
        used_worker_pool: Whether any batch ran on the worker pool.
        rerank_tier: Cascade tier that produced the ranking, if any.
        filtered_out: Candidates removed by domain or aspect filtering.
        degraded: True when the tier carries a previous ranking after a failure.
    """

    candidates_processed: int = 0
    cache_hits: int = 0
    embeddings_generated: int = 0
    used_worker_pool: bool = False
    rerank_tier: Optional[str] = None
    filtered_out: int = 0
    degraded: bool = False


@dataclass(frozen=True)
class TierResult:
    """Immutable snapshot emitted by the progressive tier orchestrator.

    Attributes:
        tier: Tier label.
        version: Strictly increasing version within one request.
        candidates: Ranked candidate snapshots.
        latency_ms: Elapsed time since the request started.
        is_complete: True only for the final tier.
        metadata: Provenance metadata.
    """

    tier: TierName
    version: int
    candidates: tuple[RankedCandidate, ...]
    latency_ms: float
    is_complete: bool
    metadata: TierMetadata = field(default_factory=TierMetadata)

    @property
    def identities(self) -> list[str]:
        """Identities in rank order."""
        return [c.identity for c in self.candidates]
