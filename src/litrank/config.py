# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Ranking configuration.

This module provides:
- RankingConfig dataclass tree with documented defaults
- load_config() to parse a YAML configuration file

Numeric values read from YAML are clamped to valid ranges and weight sets
are normalized, so a malformed file can never produce an unusable engine.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

logger = logging.getLogger(__name__)

# Default config location relative to a project root
DEFAULT_CONFIG_PATH = Path(".litrank") / "ranking.yaml"

# Subject domains retained by the domain filter
DEFAULT_ALLOWED_DOMAINS = (
    "Biology",
    "Medicine",
    "Environmental Science",
    "Neuroscience",
    "Veterinary Science",
    "Ecology",
    "Zoology",
    "Biochemistry",
    "Genetics",
    "Microbiology",
    "Psychology",
    "Behavioral Science",
    "Social Science",
    "Sociology",
    "Education",
    "Economics",
    "Political Science",
    "Anthropology",
    "Communication",
    "Computer Science",
    "Engineering",
    "Physics",
    "Chemistry",
    "Mathematics",
    "Materials Science",
    "Public Health",
    "Nursing",
    "Pharmacy",
    "Clinical Research",
    "Philosophy",
    "History",
    "Linguistics",
    "Literature",
    "Interdisciplinary",
    "Multidisciplinary",
)


@dataclass
class ScoreWeights:
    """Weights of the combined ranking score.

    Attributes:
        lexical: Weight of the min-max normalized lexical score.
        semantic: Weight of the semantic similarity.
        theme_fit: Weight of the theme-fit composite.
    """

    lexical: float = 0.30
    semantic: float = 0.30
    theme_fit: float = 0.40

    def normalized(self) -> "ScoreWeights":
        """Return a copy whose weights sum to 1."""
        total = self.lexical + self.semantic + self.theme_fit
        if total <= 0:
            return ScoreWeights()
        return ScoreWeights(self.lexical / total, self.semantic / total, self.theme_fit / total)


@dataclass
class ThemeFitWeights:
    """Weights of the four theme-fit sub-scores."""

    controversy: float = 0.30
    clarity: float = 0.30
    diversity: float = 0.20
    citation: float = 0.20

    def normalized(self) -> "ThemeFitWeights":
        """Return a copy whose weights sum to 1."""
        total = self.controversy + self.clarity + self.diversity + self.citation
        if total <= 0:
            return ThemeFitWeights()
        return ThemeFitWeights(
            self.controversy / total,
            self.clarity / total,
            self.diversity / total,
            self.citation / total,
        )


@dataclass
class LexicalConfig:
    """Lexical scorer parameters."""

    k1: float = 1.5
    b: float = 0.75
    title_weight: float = 3.0
    keyword_weight: float = 2.0
    phrase_bonus: float = 2.0
    min_coverage: float = 0.4
    low_coverage_penalty: float = 0.5


@dataclass
class CacheConfig:
    """Embedding cache parameters.

    Attributes:
        max_size: Maximum entries in the local store.
        ttl_seconds: Entry lifetime.
        model_tag: Optional model/version tag mixed into keys.
        compress: Store vectors as float16.
        redis_url: Remote backing store URL (local only when None).
        query_ttl_seconds: Lifetime of cached query embeddings.
    """

    max_size: int = 10000
    ttl_seconds: float = 86400.0
    model_tag: Optional[str] = None
    compress: bool = False
    redis_url: Optional[str] = None
    query_ttl_seconds: float = 300.0


@dataclass
class PoolConfig:
    """Embedding worker pool parameters."""

    size: int = 4
    task_timeout_s: float = 30.0
    startup_timeout_s: float = 60.0
    shutdown_timeout_s: float = 5.0
    # Growth a worker may add after its model loads
    max_worker_memory_mb: float = 2048.0
    max_tasks_per_worker: int = 0
    max_respawns: int = 3
    model_name: str = "all-MiniLM-L6-v2"
    device: Optional[str] = None


@dataclass
class RerankConfig:
    """Neural reranker parameters.

    Attributes:
        strict_threshold: Similarity required in the strict tier.
        relaxed_threshold: Similarity required in the relaxed tier.
        concurrency: Batches in flight per batch group.
        max_results: Default number of ranked candidates.
        max_candidates: Cap on candidates sent to semantic scoring.
        weights: Combined score weights with semantic similarity.
        fallback_weights: Combined score weights without semantic similarity.
    """

    strict_threshold: float = 0.65
    relaxed_threshold: float = 0.45
    concurrency: int = 4
    max_results: int = 200
    max_candidates: int = 1500
    weights: ScoreWeights = field(default_factory=ScoreWeights)
    fallback_weights: ScoreWeights = field(
        default_factory=lambda: ScoreWeights(lexical=0.40, semantic=0.0, theme_fit=0.60)
    )


@dataclass
class TierConfig:
    """Progressive tier sizes."""

    immediate_size: int = 50
    refined_size: int = 150


@dataclass
class ClassifierConfig:
    """Domain/aspect filter parameters."""

    allowed_domains: tuple[str, ...] = DEFAULT_ALLOWED_DOMAINS
    aspect_filtering: bool = True


@dataclass
class RankingConfig:
    """Complete ranking engine configuration."""

    lexical: LexicalConfig = field(default_factory=LexicalConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    rerank: RerankConfig = field(default_factory=RerankConfig)
    tiers: TierConfig = field(default_factory=TierConfig)
    theme_fit: ThemeFitWeights = field(default_factory=ThemeFitWeights)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)


def _clamp(value: Any, default: float, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(low, min(float(value), high))


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    return int(_clamp(value, default, low, high))


def _section(data: dict, name: str) -> dict:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def _load_weights(raw: Any, cls: type, default: Any) -> Any:
    if not isinstance(raw, dict):
        return default
    values = {}
    for f in fields(cls):
        values[f.name] = _clamp(raw.get(f.name), getattr(default, f.name), 0.0, 1.0)
    weights = cls(**values)
    if sum(values.values()) <= 0:
        logger.warning(f"All {cls.__name__} weights are zero, using defaults")
        return default
    return weights.normalized()


def load_config(path: Optional[Union[str, Path]] = None) -> RankingConfig:
    """Load ranking configuration from YAML.

    Args:
        path: Config file, or a directory containing ``.litrank/ranking.yaml``.
            Defaults to the current directory.

    Returns:
        RankingConfig with settings from the file or defaults.
    """
    config_path = Path(path) if path is not None else Path.cwd()
    if config_path.is_dir():
        config_path = config_path / DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return RankingConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        logger.warning(f"Could not read ranking config {config_path}: {e}")
        return RankingConfig()

    if not isinstance(data, dict):
        return RankingConfig()

    defaults = RankingConfig()

    lex = _section(data, "lexical")
    lexical = LexicalConfig(
        k1=_clamp(lex.get("k1"), defaults.lexical.k1, 0.0, 3.0),
        b=_clamp(lex.get("b"), defaults.lexical.b, 0.0, 1.0),
        title_weight=_clamp(lex.get("title_weight"), defaults.lexical.title_weight, 1.0, 10.0),
        keyword_weight=_clamp(lex.get("keyword_weight"), defaults.lexical.keyword_weight, 1.0, 10.0),
        phrase_bonus=_clamp(lex.get("phrase_bonus"), defaults.lexical.phrase_bonus, 0.0, 20.0),
        min_coverage=_clamp(lex.get("min_coverage"), defaults.lexical.min_coverage, 0.0, 1.0),
        low_coverage_penalty=_clamp(
            lex.get("low_coverage_penalty"), defaults.lexical.low_coverage_penalty, 0.0, 1.0
        ),
    )

    c = _section(data, "cache")
    redis_url = c.get("redis_url")
    model_tag = c.get("model_tag")
    cache = CacheConfig(
        max_size=_clamp_int(c.get("max_size"), defaults.cache.max_size, 1, 1_000_000),
        ttl_seconds=_clamp(c.get("ttl_seconds"), defaults.cache.ttl_seconds, 1.0, 30 * 86400.0),
        model_tag=str(model_tag) if model_tag else None,
        compress=bool(c.get("compress", defaults.cache.compress)),
        redis_url=redis_url if isinstance(redis_url, str) and redis_url else None,
        query_ttl_seconds=_clamp(
            c.get("query_ttl_seconds"), defaults.cache.query_ttl_seconds, 1.0, 86400.0
        ),
    )

    p = _section(data, "pool")
    model_name = p.get("model_name")
    device = p.get("device")
    pool = PoolConfig(
        size=_clamp_int(p.get("size"), defaults.pool.size, 1, 64),
        task_timeout_s=_clamp(p.get("task_timeout_s"), defaults.pool.task_timeout_s, 0.1, 600.0),
        startup_timeout_s=_clamp(
            p.get("startup_timeout_s"), defaults.pool.startup_timeout_s, 0.1, 3600.0
        ),
        shutdown_timeout_s=_clamp(
            p.get("shutdown_timeout_s"), defaults.pool.shutdown_timeout_s, 0.1, 600.0
        ),
        max_worker_memory_mb=_clamp(
            p.get("max_worker_memory_mb"), defaults.pool.max_worker_memory_mb, 64.0, 1_048_576.0
        ),
        max_tasks_per_worker=_clamp_int(p.get("max_tasks_per_worker"), 0, 0, 1_000_000),
        max_respawns=_clamp_int(p.get("max_respawns"), defaults.pool.max_respawns, 0, 100),
        model_name=model_name if isinstance(model_name, str) and model_name else defaults.pool.model_name,
        device=device if isinstance(device, str) and device else None,
    )

    r = _section(data, "rerank")
    strict = _clamp(r.get("strict_threshold"), defaults.rerank.strict_threshold, 0.0, 1.0)
    relaxed = _clamp(r.get("relaxed_threshold"), defaults.rerank.relaxed_threshold, 0.0, 1.0)
    rerank = RerankConfig(
        strict_threshold=strict,
        # Relaxed tier must never be stricter than the strict tier
        relaxed_threshold=min(relaxed, strict),
        concurrency=_clamp_int(r.get("concurrency"), defaults.rerank.concurrency, 1, 32),
        max_results=_clamp_int(r.get("max_results"), defaults.rerank.max_results, 1, 100_000),
        max_candidates=_clamp_int(
            r.get("max_candidates"), defaults.rerank.max_candidates, 1, 1_000_000
        ),
        weights=_load_weights(r.get("weights"), ScoreWeights, defaults.rerank.weights),
        fallback_weights=_load_weights(
            r.get("fallback_weights"), ScoreWeights, defaults.rerank.fallback_weights
        ),
    )

    t = _section(data, "tiers")
    immediate = _clamp_int(t.get("immediate_size"), defaults.tiers.immediate_size, 1, 100_000)
    tiers = TierConfig(
        immediate_size=immediate,
        refined_size=max(
            immediate, _clamp_int(t.get("refined_size"), defaults.tiers.refined_size, 1, 100_000)
        ),
    )

    cl = _section(data, "classifier")
    domains = cl.get("allowed_domains")
    if isinstance(domains, list) and domains:
        allowed = tuple(d for d in domains if isinstance(d, str) and d)
    else:
        allowed = DEFAULT_ALLOWED_DOMAINS
    classifier = ClassifierConfig(
        allowed_domains=allowed or DEFAULT_ALLOWED_DOMAINS,
        aspect_filtering=bool(cl.get("aspect_filtering", defaults.classifier.aspect_filtering)),
    )

    return RankingConfig(
        lexical=lexical,
        cache=cache,
        pool=pool,
        rerank=rerank,
        tiers=tiers,
        theme_fit=_load_weights(data.get("theme_fit"), ThemeFitWeights, defaults.theme_fit),
        classifier=classifier,
    )
