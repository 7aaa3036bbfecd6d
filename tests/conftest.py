# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration with shared fixtures and markers.

This file is automatically loaded by pytest and provides:
- Custom markers for test categories
- Deterministic mock embedders that count inference calls
- Candidate builders for ranking tests
"""

import threading
import zlib

import numpy as np
import pytest

from litrank.config import RankingConfig
from litrank.ranking.embedding_cache import CacheBackendError, EmbeddingCache
from litrank.schemas import Candidate
from litrank.text import tokenize

MOCK_DIMENSIONS = 64


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: Mark test as integration test (full pipeline)",
    )
    config.addinivalue_line(
        "markers",
        "slow: Mark test as slow-running (may be skipped in quick runs)",
    )


# ============================================================================
# Mock Embedders
# ============================================================================


class MockEmbedder:
    """Deterministic bag-of-words embedder.

    Each content term is hashed into one of ``dim`` buckets, so texts that
    share vocabulary have positive cosine similarity. Counts inference calls
    and embedded texts.
    """

    def __init__(self, dim: int = MOCK_DIMENSIONS, fail: bool = False):
        self.dim = dim
        self.fail = fail
        self.inference_calls = 0
        self.texts_embedded = 0
        self._lock = threading.Lock()

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        for term in tokenize(text):
            vector[zlib.crc32(term.encode("utf-8")) % self.dim] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts, batch_size: int = 32) -> np.ndarray:
        with self._lock:
            self.inference_calls += 1
            self.texts_embedded += len(texts)
        if self.fail:
            raise RuntimeError("mock inference failure")
        return np.array([self._vector(t) for t in texts], dtype=np.float32)


class OpposingEmbedder(MockEmbedder):
    """Embeds the query as +e0 and every other text as -e0.

    Every candidate therefore has semantic similarity 0.0 to the query,
    which empties both semantic tiers.
    """

    def __init__(self, query: str, dim: int = MOCK_DIMENSIONS):
        super().__init__(dim=dim)
        self.query = query

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        vector[0] = 1.0 if text == self.query else -1.0
        return vector


class FailingBackingStore:
    """Backing store that is unreachable for every operation."""

    def __init__(self):
        self.calls = 0

    def get(self, key):
        self.calls += 1
        raise CacheBackendError("get", key, "connection refused")

    def set(self, key, value, *, ttl_seconds=None):
        self.calls += 1
        raise CacheBackendError("set", key, "connection refused")

    def delete(self, key):
        self.calls += 1
        raise CacheBackendError("delete", key, "connection refused")


class DictBackingStore:
    """In-memory backing store recording writes."""

    def __init__(self):
        self.data = {}
        self.writes = 0

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, *, ttl_seconds=None):
        self.writes += 1
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


# ============================================================================
# Candidate Builders
# ============================================================================


PRIMATE_TOPICS = [
    "social cognition in chimpanzees",
    "tool use among wild capuchin monkeys",
    "vocal communication in bonobo groups",
    "dominance hierarchy and cooperation in macaques",
    "problem solving and memory in orangutans",
]

FILLER_TOPICS = [
    "soil nitrogen cycling in temperate forests",
    "distributed consensus protocols for databases",
    "monetary policy transmission in small economies",
    "curriculum reform in secondary schools",
    "thermal properties of ceramic composites",
]


def make_candidate(index: int, title: str, abstract: str = "", **kwargs) -> Candidate:
    """Build a candidate with a stable external id."""
    kwargs.setdefault("external_id", f"cand-{index}")
    kwargs.setdefault("year", 2015 + index % 8)
    return Candidate(title=title, abstract=abstract, **kwargs)


def make_corpus(size: int) -> list[Candidate]:
    """Corpus mixing primate research with unrelated filler records."""
    candidates = []
    for i in range(size):
        if i % 4 == 0:
            topic = PRIMATE_TOPICS[(i // 4) % len(PRIMATE_TOPICS)]
            abstract = (
                f"We study {topic}. Primate social behavior and cognition are examined "
                f"in wild and captive populations."
            )
        else:
            topic = FILLER_TOPICS[i % len(FILLER_TOPICS)]
            abstract = f"An empirical study of {topic} with field measurements."
        candidates.append(make_candidate(i, f"{topic} ({i})", abstract, citation_count=i % 50))
    return candidates


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def mock_embedder() -> MockEmbedder:
    """Counting bag-of-words embedder."""
    return MockEmbedder()


@pytest.fixture
def embedding_cache():
    """In-process embedding cache."""
    cache = EmbeddingCache(model_tag="mock")
    yield cache
    cache.close()


@pytest.fixture
def ranking_config() -> RankingConfig:
    """Default configuration with a small pool."""
    config = RankingConfig()
    config.pool.size = 2
    config.pool.task_timeout_s = 5.0
    config.pool.startup_timeout_s = 5.0
    return config


@pytest.fixture
def primate_candidates() -> list[Candidate]:
    """Small corpus about primate behavior plus off-topic records."""
    return [
        make_candidate(
            1,
            "Social cognition in wild chimpanzees",
            "We argue that chimpanzee social cognition is flexible. However, some "
            "researchers question this, while others report conflicting evidence.",
            doi="10.1000/chimp.1",
            citation_count=240,
        ),
        make_candidate(
            2,
            "Cooperation and communication in bonobo groups",
            "Findings indicate that bonobo groups show cooperation and social "
            "communication among primates.",
            citation_count=40,
        ),
        make_candidate(
            3,
            "Primate tourism and visitor experience",
            "Tourists visiting primate parks report high satisfaction with travel.",
        ),
        make_candidate(
            4,
            "Monetary policy in small open economies",
            "Economic analysis of markets, prices and trade under fiscal rules.",
        ),
        make_candidate(
            5,
            "Memory and problem solving in orangutans",
            "Cognitive tests of memory in orangutans and other great apes.",
            citation_count=12,
        ),
    ]


@pytest.fixture
def opposing_embedder():
    """Factory for embedders that empty both semantic tiers for a query."""
    return OpposingEmbedder


@pytest.fixture
def failing_store() -> FailingBackingStore:
    """Unreachable cache backing store."""
    return FailingBackingStore()


@pytest.fixture
def dict_store() -> DictBackingStore:
    """In-memory cache backing store."""
    return DictBackingStore()


@pytest.fixture
def candidate_factory():
    """Builder for single candidates."""
    return make_candidate


@pytest.fixture
def corpus_factory():
    """Builder for mixed corpora of a given size."""
    return make_corpus


@pytest.fixture
def embedder_class():
    """The counting mock embedder class, for building worker factories."""
    return MockEmbedder
