# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""litrank - Relevance ranking core for federated literature search.

Takes a free-text query and a raw candidate set and produces a
progressively refined, ranked result stream (immediate, refined and
complete tiers) that degrades to lexical-only ranking when semantic
scoring is unavailable or unproductive.

Usage:
    >>> from litrank import create_orchestrator, RankingOptions
    >>> async with create_orchestrator() as orchestrator:
    ...     async for tier in orchestrator.stream(query, candidates):
    ...         print(tier.tier, tier.version, len(tier.candidates))

For installation:
    pip install litrank              # Core
    pip install "litrank[redis]"     # + remote embedding cache
"""

try:
    from litrank._version import __version__, __version_tuple__
except ImportError:
    # Package not installed (development mode without build)
    __version__ = "0.0.0.dev0"
    __version_tuple__ = (0, 0, 0, "dev0")

from litrank.cancellation import CancellationToken
from litrank.config import RankingConfig, load_config
from litrank.ranking.orchestrator import (
    ProgressiveTierOrchestrator,
    TierResultGate,
    create_orchestrator,
)
from litrank.schemas import (
    Candidate,
    EmptyQueryError,
    NoCandidatesError,
    Query,
    RankedCandidate,
    RankingError,
    RankingOptions,
    TierName,
    TierResult,
)

__all__ = [
    "__version__",
    "__version_tuple__",
    "CancellationToken",
    "Candidate",
    "EmptyQueryError",
    "NoCandidatesError",
    "ProgressiveTierOrchestrator",
    "Query",
    "RankedCandidate",
    "RankingConfig",
    "RankingError",
    "RankingOptions",
    "TierName",
    "TierResult",
    "TierResultGate",
    "create_orchestrator",
    "load_config",
]
