# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Embedding cache for candidate and query vectors.

Two-level LRU/TTL cache:
- Key: ``emb:<model-tag>:<candidate identity>``
- Local bounded in-memory store, always written synchronously
- Optional primary backing store (e.g. Redis), written fire-and-forget
- Transparent fallback to the local store when the primary is unreachable
- Entries validated on read; corrupted entries count as misses
- Thread-safe operations with hit/miss metrics

A cache is an optimization, never a correctness dependency: no backing
store failure is ever surfaced to callers.
"""

import base64
import logging
import math
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

import numpy as np

from litrank.text import normalize_text

logger = logging.getLogger(__name__)


class CacheBackendError(Exception):
    """Raised by a backing store when an operation fails."""

    def __init__(self, operation: str, key: str, reason: str):
        self.operation = operation
        self.key = key
        self.reason = reason
        super().__init__(f"Cache {operation} failed for {key}: {reason}")


class CacheBackingStore(Protocol):
    """Protocol for key-value stores with TTL support."""

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a value, or None when absent."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[float] = None) -> None:
        """Store a value with optional TTL."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key."""
        ...


@dataclass
class CacheEntry:
    """A cached embedding with its metadata.

    Attributes:
        vector: Embedding vector (float16 when compressed).
        compressed: Whether the vector is stored as float16.
        written_at: Unix timestamp of the write.
        model_tag: Model/version tag the vector was computed with.
    """

    vector: np.ndarray
    compressed: bool
    written_at: float
    model_tag: Optional[str] = None

    def is_expired(self, ttl_seconds: float) -> bool:
        """Check if this entry has expired."""
        return time.time() - self.written_at > ttl_seconds

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict for remote stores."""
        return {
            "v": base64.b64encode(self.vector.tobytes()).decode("ascii"),
            "dtype": "float16" if self.compressed else "float32",
            "dim": int(self.vector.shape[0]),
            "c": self.compressed,
            "t": self.written_at,
            "m": self.model_tag,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CacheEntry":
        """Deserialize a payload written by :meth:`to_payload`.

        Raises:
            ValueError: If the payload is malformed.
        """
        try:
            dtype = np.float16 if payload["dtype"] == "float16" else np.float32
            raw = base64.b64decode(payload["v"], validate=True)
            vector = np.frombuffer(raw, dtype=dtype)
            if vector.shape[0] != int(payload["dim"]):
                raise ValueError("dimension mismatch")
            return cls(
                vector=vector,
                compressed=bool(payload["c"]),
                written_at=float(payload["t"]),
                model_tag=payload.get("m"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed cache payload: {e}") from e

    def decoded(self) -> np.ndarray:
        """Vector as float32."""
        return self.vector.astype(np.float32)


class LocalBackingStore:
    """Bounded in-memory LRU store with TTL.

    Example:
        >>> store = LocalBackingStore(max_size=2, ttl_seconds=60)
        >>> store.set("a", 1)
        >>> store.get("a")
        1
    """

    def __init__(self, max_size: int = 10000, ttl_seconds: Optional[float] = None):
        """Initialize the store.

        Args:
            max_size: Maximum number of entries.
            ttl_seconds: Default lifetime of entries (None for no expiry).
        """
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds

        # OrderedDict maintains access order for LRU
        self._data: OrderedDict[str, tuple[Any, Optional[float]]] = OrderedDict()
        self._lock = threading.RLock()
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a value, refreshing its LRU position."""
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and time.time() > expires_at:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[float] = None) -> None:
        """Store a value, evicting the least recently used entry when full."""
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        expires_at = time.time() + ttl if ttl else None
        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._data.popitem(last=False)
                self._evictions += 1
            self._data[key] = (value, expires_at)
            self._data.move_to_end(key)

    def delete(self, key: str) -> None:
        """Remove a key."""
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._data.clear()

    def size(self) -> int:
        """Current number of entries."""
        with self._lock:
            return len(self._data)

    @property
    def evictions(self) -> int:
        """Number of LRU evictions so far."""
        with self._lock:
            return self._evictions


class RedisBackingStore:
    """Redis-backed remote store for cache payloads.

    Requires the ``redis`` package (install via ``pip install litrank[redis]``).
    Payloads are stored as JSON with a server-side TTL.

    Example:
        store = RedisBackingStore("redis://localhost:6379/0")
        cache = EmbeddingCache(backing_store=store)

    Raises:
        ImportError: If ``redis`` package is not installed.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        socket_timeout: float = 0.5,
    ):
        """Initialize the Redis store.

        Args:
            url: Redis connection URL.
            socket_timeout: Per-operation socket timeout in seconds.

        Raises:
            ImportError: If ``redis`` package not installed.
        """
        try:
            import redis
        except ImportError as exc:
            msg = (
                "Redis backing store requires 'redis' package. "
                "Install with: pip install litrank[redis]"
            )
            raise ImportError(msg) from exc

        self._client = redis.from_url(
            url,
            decode_responses=False,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._errors = (redis.RedisError, OSError)

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a payload by key."""
        import json

        try:
            raw = self._client.get(key)
        except self._errors as e:
            raise CacheBackendError("get", key, str(e)) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # Undecodable payloads are handed to the cache as corrupt entries
            return raw

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[float] = None) -> None:
        """Store a payload with optional TTL."""
        import json

        serialized = json.dumps(value)
        try:
            if ttl_seconds:
                self._client.setex(key, int(math.ceil(ttl_seconds)), serialized)
            else:
                self._client.set(key, serialized)
        except self._errors as e:
            raise CacheBackendError("set", key, str(e)) from e

    def delete(self, key: str) -> None:
        """Remove a key."""
        try:
            self._client.delete(key)
        except self._errors as e:
            raise CacheBackendError("delete", key, str(e)) from e

    def close(self) -> None:
        """Close the client connection pool."""
        self._client.close()


class EmbeddingCache:
    """Two-level LRU/TTL cache of embedding vectors keyed by candidate identity.

    Reads consult the local store first, then the primary backing store.
    Writes land in the local store immediately and are forwarded to the
    primary store on a background thread. When the primary store fails it is
    bypassed for ``retry_after_s`` seconds and the cache keeps serving from
    the local store.

    Example:
        >>> cache = EmbeddingCache(model_tag="all-MiniLM-L6-v2")
        >>> cache.put("doi:10.1/abc", vector)
        >>> cache.get("doi:10.1/abc") is not None
        True

    Attributes:
        max_size: Maximum entries in the local store.
        ttl_seconds: Lifetime of candidate embeddings.
        model_tag: Tag mixed into keys so model upgrades never hit stale vectors.
        compress: Store vectors as float16.
    """

    DEFAULT_MAX_SIZE = 10000
    DEFAULT_TTL_SECONDS = 86400  # 24 hours
    DEFAULT_QUERY_TTL_SECONDS = 300  # 5 minutes
    DEFAULT_QUERY_MAX_SIZE = 100
    DEFAULT_RETRY_AFTER_S = 30.0

    def __init__(
        self,
        backing_store: Optional[CacheBackingStore] = None,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        model_tag: Optional[str] = None,
        compress: bool = False,
        query_ttl_seconds: float = DEFAULT_QUERY_TTL_SECONDS,
        query_max_size: int = DEFAULT_QUERY_MAX_SIZE,
        retry_after_s: float = DEFAULT_RETRY_AFTER_S,
    ):
        """Initialize the cache.

        Args:
            backing_store: Optional primary store shared across processes.
            max_size: Maximum entries in the local store.
            ttl_seconds: Lifetime of candidate embeddings.
            model_tag: Optional model/version tag for keys.
            compress: Store vectors as float16.
            query_ttl_seconds: Lifetime of query embeddings.
            query_max_size: Maximum cached query embeddings.
            retry_after_s: How long a failed primary store is bypassed.
        """
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.model_tag = model_tag
        self.compress = compress
        self.query_ttl_seconds = query_ttl_seconds
        self.retry_after_s = retry_after_s

        self._primary = backing_store
        self._local = LocalBackingStore(max_size=max_size, ttl_seconds=ttl_seconds)
        self._queries = LocalBackingStore(max_size=query_max_size, ttl_seconds=query_ttl_seconds)
        self._writer: Optional[ThreadPoolExecutor] = None
        if backing_store is not None:
            self._writer = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="embedding-cache-writer"
            )

        self._lock = threading.Lock()
        self._primary_failed_at: Optional[float] = None
        self._closed = False

        # Metrics
        self._hits = 0
        self._misses = 0
        self._corrupt = 0
        self._primary_errors = 0

    def resolve_key(self, identity: str) -> str:
        """Build the cache key for a candidate identity."""
        if self.model_tag:
            return f"emb:{self.model_tag}:{identity}"
        return f"emb:{identity}"

    def query_key(self, text: str) -> str:
        """Build the cache key for a query text."""
        normalized = normalize_text(text)
        if self.model_tag:
            return f"query:{self.model_tag}:{normalized}"
        return f"query:{normalized}"

    def get(self, identity: str) -> Optional[np.ndarray]:
        """Get a cached embedding.

        Args:
            identity: Candidate identity.

        Returns:
            The float32 vector, or None on miss, expiry or corruption.
        """
        key = self.resolve_key(identity)
        value = self._local.get(key)
        from_primary = False
        if value is None:
            value = self._primary_get(key)
            from_primary = value is not None

        entry = self._validate(key, value)
        if entry is None or entry.is_expired(self.ttl_seconds):
            if entry is not None:
                self._local.delete(key)
            with self._lock:
                self._misses += 1
            return None

        if from_primary:
            self._local.set(key, entry)
        with self._lock:
            self._hits += 1
        return entry.decoded()

    def get_many(self, identities: Iterable[str]) -> dict[str, np.ndarray]:
        """Get cached embeddings for several identities.

        Returns:
            Mapping of identity to vector for the hits only.
        """
        found = {}
        for identity in identities:
            vector = self.get(identity)
            if vector is not None:
                found[identity] = vector
        return found

    def put(self, identity: str, vector: Any) -> None:
        """Cache an embedding.

        The local write is synchronous; the primary write is fire-and-forget.
        Invalid vectors are logged and dropped.

        Args:
            identity: Candidate identity.
            vector: Embedding vector.
        """
        entry = self._make_entry(vector)
        if entry is None:
            logger.warning(f"Refusing to cache invalid embedding for {identity}")
            return
        key = self.resolve_key(identity)
        self._local.set(key, entry)
        self._primary_set(key, entry)

    def get_query(self, text: str) -> Optional[np.ndarray]:
        """Get a cached query embedding by normalized text."""
        entry = self._validate(self.query_key(text), self._queries.get(self.query_key(text)))
        return entry.decoded() if entry is not None else None

    def put_query(self, text: str, vector: Any) -> None:
        """Cache a query embedding (local only, short TTL)."""
        entry = self._make_entry(vector)
        if entry is not None:
            self._queries.set(self.query_key(text), entry)

    def size(self) -> int:
        """Number of entries in the local store."""
        return self._local.size()

    def hit_rate(self) -> float:
        """Get cache hit rate."""
        with self._lock:
            total = self._hits + self._misses
            if total == 0:
                return 0.0
            return self._hits / total

    @property
    def primary_available(self) -> bool:
        """Whether the primary store is configured and not in a failure window."""
        if self._primary is None:
            return False
        with self._lock:
            if self._primary_failed_at is None:
                return True
            return time.monotonic() - self._primary_failed_at >= self.retry_after_s

    def get_metrics(self) -> dict[str, Any]:
        """Get cache metrics.

        Returns:
            Dictionary with cache statistics.
        """
        rate = self.hit_rate()
        with self._lock:
            return {
                "size": self._local.size(),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "corrupt": self._corrupt,
                "primary_errors": self._primary_errors,
                "evictions": self._local.evictions,
                "hit_rate": rate,
                "ttl_seconds": self.ttl_seconds,
            }

    def close(self) -> None:
        """Flush pending primary writes and release the backing store."""
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            # Pending writes are flushed only to a healthy store
            self._writer.shutdown(wait=True, cancel_futures=not self.primary_available)
        close = getattr(self._primary, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing cache backing store: {e}")

    def __enter__(self) -> "EmbeddingCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _make_entry(self, vector: Any) -> Optional[CacheEntry]:
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError):
            return None
        if array.ndim != 1 or array.size == 0 or not np.all(np.isfinite(array)):
            return None
        stored = array.astype(np.float16) if self.compress else array
        return CacheEntry(
            vector=stored,
            compressed=self.compress,
            written_at=time.time(),
            model_tag=self.model_tag,
        )

    def _validate(self, key: str, value: Any) -> Optional[CacheEntry]:
        """Turn a stored value into a usable entry, or None."""
        if value is None:
            return None
        try:
            entry = value if isinstance(value, CacheEntry) else CacheEntry.from_payload(value)
            vector = entry.vector
            if not isinstance(vector, np.ndarray) or vector.ndim != 1 or vector.size == 0:
                raise ValueError("vector is not a non-empty 1-d array")
            if not np.all(np.isfinite(vector)):
                raise ValueError("vector contains non-finite values")
            if entry.model_tag != self.model_tag:
                raise ValueError(f"model tag {entry.model_tag!r} != {self.model_tag!r}")
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding corrupted cache entry {key}: {e}")
            self._local.delete(key)
            with self._lock:
                self._corrupt += 1
            return None
        return entry

    def _primary_get(self, key: str) -> Optional[Any]:
        if not self.primary_available:
            return None
        try:
            value = self._primary.get(key)
        except Exception as e:
            self._mark_primary_failed("get", e)
            return None
        self._mark_primary_recovered()
        return value

    def _primary_set(self, key: str, entry: CacheEntry) -> None:
        if self._writer is None or self._closed or not self.primary_available:
            return
        payload = entry.to_payload()
        try:
            self._writer.submit(self._write_primary, key, payload)
        except RuntimeError:
            # Executor already shut down
            return

    def _write_primary(self, key: str, payload: dict[str, Any]) -> None:
        # Writes queued before a failure are dropped until the retry window ends
        if not self.primary_available:
            return
        try:
            self._primary.set(key, payload, ttl_seconds=self.ttl_seconds)
        except Exception as e:
            self._mark_primary_failed("set", e)
            return
        self._mark_primary_recovered()

    def _mark_primary_failed(self, operation: str, error: Exception) -> None:
        with self._lock:
            self._primary_errors += 1
            first_failure = self._primary_failed_at is None
            self._primary_failed_at = time.monotonic()
        if first_failure:
            logger.warning(
                f"Embedding cache backing store {operation} failed, "
                f"falling back to local store: {error}"
            )
        else:
            logger.debug(f"Embedding cache backing store {operation} failed again: {error}")

    def _mark_primary_recovered(self) -> None:
        with self._lock:
            if self._primary_failed_at is None:
                return
            self._primary_failed_at = None
        logger.info("Embedding cache backing store recovered")
