# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Embedding worker pool.

A fixed number of worker threads, each holding its own loaded embedding
model, consume immutable task messages from per-worker inboxes. Tasks are
dispatched round-robin (idle workers first) and answered through
``concurrent.futures.Future`` objects.

Per-task guarantees:
- A task that fails or misses its deadline is retried once on a different
  worker; a second failure raises WorkerTaskError.
- A retiring worker hands its queued tasks back to the pool, so nothing is
  silently dropped.

Per-worker guarantees:
- Workers share one process, so a worker is charged only for memory growth
  since the most recent model load. A worker retires when that growth
  exceeds the configured ceiling, after a task budget or after repeated
  failures.
- At most one worker retires for memory at a time, and only while a
  respawn is left, so memory pressure never empties the pool.
- Retired and crashed workers are respawned, bounded by ``max_respawns``.

Shutdown drains: each worker finishes everything already queued before it
exits.
"""

import asyncio
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Sequence

import numpy as np
import psutil

from litrank.config import PoolConfig
from litrank.ranking.embedder import Embedder, SentenceTransformerEmbedder

logger = logging.getLogger(__name__)

# Worker is retired after this many consecutive task failures
MAX_CONSECUTIVE_FAILURES = 3

# (memory percent upper bound, batch size) tiers, checked in order
BATCH_SIZE_TIERS = ((50.0, 64), (75.0, 32))
MIN_BATCH_SIZE = 16

_SHUTDOWN = object()


class PoolUnavailableError(Exception):
    """Raised when no worker can accept a task."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Embedding worker pool unavailable: {reason}")


class WorkerTaskError(Exception):
    """Raised when a task failed on every worker it was tried on."""

    def __init__(self, task_id: str, reason: str, attempts: int):
        self.task_id = task_id
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"Embedding task {task_id} failed after {attempts} attempt(s): {reason}")


class WorkerStatus(str, Enum):
    """Lifecycle states of a pool worker."""

    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    RETIRING = "retiring"
    ERROR = "error"
    EXITED = "exited"


@dataclass(frozen=True)
class EmbedTask:
    """Immutable task message.

    Attributes:
        task_id: Unique task identifier.
        texts: Texts to embed.
        deadline: ``time.monotonic()`` value after which the task is stale.
        batch_size: Encoder batch size.
        attempt: 0 for the first dispatch, 1 for the retry.
    """

    task_id: str
    texts: tuple[str, ...]
    deadline: float
    batch_size: int = 32
    attempt: int = 0


@dataclass(frozen=True)
class PoolHealth:
    """Snapshot of pool health.

    Attributes:
        total_workers: Workers that have not exited.
        ready_workers: Idle workers.
        busy_workers: Workers running a task.
        initializing_workers: Workers still loading their model.
        error_workers: Workers that failed to load or crashed.
        tasks_completed: Tasks completed across all workers.
        tasks_failed: Task attempts that raised or timed out.
        retries: Tasks retried on a second worker.
        respawns: Workers replaced so far.
    """

    total_workers: int
    ready_workers: int
    busy_workers: int
    initializing_workers: int
    error_workers: int
    tasks_completed: int
    tasks_failed: int
    retries: int
    respawns: int


def batch_size_for_pressure(memory_percent: float) -> int:
    """Batch size for the observed memory pressure.

    Args:
        memory_percent: System memory in use, 0-100.

    Returns:
        64 below 50% use, 32 below 75%, otherwise 16.
    """
    for limit, size in BATCH_SIZE_TIERS:
        if memory_percent < limit:
            return size
    return MIN_BATCH_SIZE


def process_memory_mb() -> float:
    """Resident memory of the current process in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def system_memory_percent() -> float:
    """System memory in use, 0-100."""
    return float(psutil.virtual_memory().percent)


class _Worker:
    """One pool worker: a thread, an inbox and an embedder."""

    def __init__(self, worker_id: int, pool: "EmbeddingWorkerPool"):
        self.worker_id = worker_id
        self.inbox: queue.Queue = queue.Queue()
        self.status = WorkerStatus.INITIALIZING
        self.tasks_completed = 0
        self.tasks_failed = 0
        self.consecutive_failures = 0
        self.last_memory_mb = 0.0
        self.baseline_memory_mb: Optional[float] = None
        self._pool = pool
        self.thread = threading.Thread(
            target=self._run, name=f"embedding-worker-{worker_id}", daemon=True
        )

    def _run(self) -> None:
        pool = self._pool
        try:
            embedder = pool.embedder_factory()
        except Exception as e:
            logger.error(f"Embedding worker {self.worker_id} failed to initialize: {e}")
            self.status = WorkerStatus.ERROR
            pool._on_worker_exit(self)
            return

        self.status = WorkerStatus.READY
        pool._on_worker_ready(self)

        while True:
            item = self.inbox.get()
            if item is _SHUTDOWN:
                break
            task, future = item
            if not future.set_running_or_notify_cancel():
                continue
            if time.monotonic() > task.deadline:
                future.set_exception(TimeoutError(f"task {task.task_id} expired in queue"))
                continue

            self.status = WorkerStatus.BUSY
            try:
                vectors = np.asarray(
                    embedder.embed_batch(list(task.texts), batch_size=task.batch_size),
                    dtype=np.float32,
                )
                if vectors.ndim != 2 or vectors.shape[0] != len(task.texts):
                    raise ValueError(
                        f"expected {len(task.texts)} vectors, got shape {vectors.shape}"
                    )
            except Exception as e:
                self.tasks_failed += 1
                self.consecutive_failures += 1
                future.set_exception(e)
            else:
                self.tasks_completed += 1
                self.consecutive_failures = 0
                pool._on_task_done()
                future.set_result(vectors)

            reason = pool._retire_reason(self)
            if reason:
                logger.warning(f"Retiring embedding worker {self.worker_id}: {reason}")
                self.status = WorkerStatus.RETIRING
                break
            self.status = WorkerStatus.READY

        pool._on_worker_exit(self)


class EmbeddingWorkerPool:
    """Fixed-size pool of embedding workers.

    Example:
        >>> pool = EmbeddingWorkerPool(PoolConfig(size=2))
        >>> pool.start(wait=True)
        True
        >>> vectors = pool.submit(["text one", "text two"])
        >>> pool.shutdown()

    Attributes:
        config: Pool parameters.
        embedder_factory: Builds one embedder per worker.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        embedder_factory: Optional[Callable[[], Embedder]] = None,
        memory_probe: Callable[[], float] = process_memory_mb,
        pressure_probe: Callable[[], float] = system_memory_percent,
    ):
        """Initialize the pool. Workers are not started until :meth:`start`.

        Args:
            config: Pool parameters; defaults when None.
            embedder_factory: Callable creating a worker's embedder. Defaults
                to an eagerly loaded SentenceTransformerEmbedder.
            memory_probe: Returns process memory in MB, sampled when a worker
                loads its model and after each task.
            pressure_probe: Returns system memory use in percent.
        """
        self.config = config or PoolConfig()
        self.embedder_factory = embedder_factory or self._default_factory
        self._memory_probe = memory_probe
        self._pressure_probe = pressure_probe

        self._lock = threading.RLock()
        self._workers: list[_Worker] = []
        self._next_id = 0
        self._rr_index = 0
        self._ready_event = threading.Event()
        self._started = False
        self._accepting = False

        self._tasks_completed = 0
        self._tasks_failed = 0
        self._retries = 0
        self._respawns = 0
        self._memory_retiring = False

    def _default_factory(self) -> Embedder:
        return SentenceTransformerEmbedder(
            model_name=self.config.model_name,
            device=self.config.device,
            lazy_load=False,
        )

    def start(self, wait: bool = False, timeout: Optional[float] = None) -> bool:
        """Spawn the workers.

        Args:
            wait: Block until at least one worker is ready.
            timeout: Maximum wait (defaults to the startup timeout).

        Returns:
            Whether the pool is ready.
        """
        with self._lock:
            if not self._started:
                self._started = True
                self._accepting = True
                for _ in range(self.config.size):
                    self._spawn_worker()
                logger.info(f"Embedding worker pool starting with {self.config.size} workers")
        if wait:
            self._ready_event.wait(timeout if timeout is not None else self.config.startup_timeout_s)
        return self.is_ready()

    def is_ready(self) -> bool:
        """Whether at least one worker can accept tasks."""
        with self._lock:
            return self._accepting and any(
                w.status in (WorkerStatus.READY, WorkerStatus.BUSY) for w in self._workers
            )

    def optimal_batch_size(self) -> int:
        """Batch size for the current memory pressure."""
        try:
            percent = self._pressure_probe()
        except Exception as e:
            logger.warning(f"Memory pressure probe failed, using smallest batch size: {e}")
            return MIN_BATCH_SIZE
        return batch_size_for_pressure(percent)

    def submit(
        self,
        texts: Sequence[str],
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
    ) -> np.ndarray:
        """Embed a batch of texts on the pool.

        Args:
            texts: Texts to embed.
            timeout: Per-attempt deadline in seconds (default task timeout).
            batch_size: Encoder batch size (dynamic when None).

        Returns:
            Array of shape (len(texts), dim).

        Raises:
            PoolUnavailableError: If no worker can accept the task.
            WorkerTaskError: If the task failed on two workers.
        """
        if not self.is_ready():
            raise PoolUnavailableError("no ready workers")
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)

        timeout_s = timeout if timeout is not None else self.config.task_timeout_s
        task = EmbedTask(
            task_id=uuid.uuid4().hex[:12],
            texts=tuple(texts),
            deadline=time.monotonic() + timeout_s,
            batch_size=batch_size or self.optimal_batch_size(),
        )

        tried: set[int] = set()
        last_error = "no worker available"
        for attempt in range(2):
            attempt_task = replace(task, attempt=attempt, deadline=time.monotonic() + timeout_s)
            future: Future = Future()
            worker = self._dispatch(attempt_task, future, exclude=tried)
            if worker is None:
                break
            tried.add(worker.worker_id)
            try:
                return future.result(timeout=timeout_s)
            except FuturesTimeoutError:
                future.cancel()
                last_error = f"timed out after {timeout_s:.1f}s on worker {worker.worker_id}"
            except Exception as e:
                last_error = f"worker {worker.worker_id}: {e}"
            with self._lock:
                self._tasks_failed += 1
            if attempt == 0:
                with self._lock:
                    self._retries += 1
                logger.warning(f"Embedding task {task.task_id} failed ({last_error}), retrying")

        if not tried:
            raise PoolUnavailableError("no ready workers")
        raise WorkerTaskError(task.task_id, last_error, attempts=len(tried))

    async def asubmit(
        self,
        texts: Sequence[str],
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
    ) -> np.ndarray:
        """Async wrapper around :meth:`submit`."""
        return await asyncio.to_thread(self.submit, texts, timeout, batch_size)

    def health(self) -> PoolHealth:
        """Get a snapshot of pool health."""
        with self._lock:
            live = [w for w in self._workers if w.status != WorkerStatus.EXITED]
            return PoolHealth(
                total_workers=len(live),
                ready_workers=sum(1 for w in live if w.status == WorkerStatus.READY),
                busy_workers=sum(1 for w in live if w.status == WorkerStatus.BUSY),
                initializing_workers=sum(
                    1 for w in live if w.status == WorkerStatus.INITIALIZING
                ),
                error_workers=sum(1 for w in live if w.status == WorkerStatus.ERROR),
                tasks_completed=self._tasks_completed,
                tasks_failed=self._tasks_failed,
                retries=self._retries,
                respawns=self._respawns,
            )

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting tasks, drain queued work and join the workers.

        Args:
            timeout: Total time to wait for workers (default shutdown timeout).
        """
        with self._lock:
            if not self._accepting:
                return
            self._accepting = False
            workers = list(self._workers)

        for worker in workers:
            worker.inbox.put(_SHUTDOWN)

        deadline = time.monotonic() + (
            timeout if timeout is not None else self.config.shutdown_timeout_s
        )
        for worker in workers:
            worker.thread.join(max(0.0, deadline - time.monotonic()))
            if worker.thread.is_alive():
                logger.warning(
                    f"Embedding worker {worker.worker_id} did not exit before shutdown timeout"
                )
        logger.info("Embedding worker pool shut down")

    def __enter__(self) -> "EmbeddingWorkerPool":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _spawn_worker(self) -> _Worker:
        worker = _Worker(self._next_id, self)
        self._next_id += 1
        self._workers.append(worker)
        worker.thread.start()
        return worker

    def _next_worker(
        self, exclude: set[int], include_initializing: bool = False
    ) -> Optional[_Worker]:
        """Round-robin over available workers, idle ones first."""
        with self._lock:
            if not self._accepting or not self._workers:
                return None
            accepted = {WorkerStatus.READY, WorkerStatus.BUSY}
            if include_initializing:
                accepted.add(WorkerStatus.INITIALIZING)
            count = len(self._workers)
            ordered = [self._workers[(self._rr_index + i) % count] for i in range(count)]
            available = [
                w
                for w in ordered
                if w.worker_id not in exclude
                and w.status in accepted
            ]
            if not available:
                return None
            idle = [w for w in available if w.status == WorkerStatus.READY and w.inbox.empty()]
            chosen = idle[0] if idle else available[0]
            self._rr_index = (self._workers.index(chosen) + 1) % count
            return chosen

    def _dispatch(
        self,
        task: EmbedTask,
        future: Future,
        exclude: set[int],
        include_initializing: bool = False,
    ) -> Optional[_Worker]:
        """Choose a worker and enqueue the task atomically."""
        with self._lock:
            worker = self._next_worker(exclude, include_initializing)
            if worker is not None:
                worker.inbox.put((task, future))
            return worker

    def _retire_reason(self, worker: _Worker) -> Optional[str]:
        reason = self._memory_retire_reason(worker)
        if reason:
            return reason
        budget = self.config.max_tasks_per_worker
        if budget and worker.tasks_completed >= budget:
            return f"completed {worker.tasks_completed} tasks"
        if worker.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            return f"{worker.consecutive_failures} consecutive failures"
        return None

    def _memory_retire_reason(self, worker: _Worker) -> Optional[str]:
        try:
            worker.last_memory_mb = self._memory_probe()
        except Exception as e:
            logger.debug(f"Memory sample failed for worker {worker.worker_id}: {e}")
            return None
        if worker.baseline_memory_mb is None:
            return None
        growth = worker.last_memory_mb - worker.baseline_memory_mb
        ceiling = self.config.max_worker_memory_mb
        if growth <= ceiling:
            return None
        with self._lock:
            if self._memory_retiring:
                return None
            if self._respawns >= self.config.max_respawns:
                logger.debug(
                    f"Embedding worker {worker.worker_id} over memory ceiling "
                    f"but no respawns left; keeping it"
                )
                return None
            self._memory_retiring = True
        return f"memory grew {growth:.0f}MB since model load, exceeds {ceiling:.0f}MB"

    def _rebaseline_memory(self) -> None:
        """Charge later growth from now; a model load is not any worker's growth."""
        try:
            current = self._memory_probe()
        except Exception as e:
            logger.debug(f"Memory sample failed while recording baseline: {e}")
            return
        with self._lock:
            for w in self._workers:
                if w.status != WorkerStatus.EXITED:
                    w.baseline_memory_mb = current

    def _on_worker_ready(self, worker: _Worker) -> None:
        logger.debug(f"Embedding worker {worker.worker_id} ready")
        self._rebaseline_memory()
        with self._lock:
            self._memory_retiring = False
        self._ready_event.set()

    def _on_task_done(self) -> None:
        with self._lock:
            self._tasks_completed += 1

    def _on_worker_exit(self, worker: _Worker) -> None:
        with self._lock:
            replace_worker = self._accepting and worker.status in (
                WorkerStatus.RETIRING,
                WorkerStatus.ERROR,
            )
            respawned = replace_worker and self._respawns < self.config.max_respawns
            if worker.status != WorkerStatus.ERROR or respawned:
                worker.status = WorkerStatus.EXITED
            if respawned:
                self._respawns += 1
                new_worker = self._spawn_worker()
                logger.info(
                    f"Respawned embedding worker {worker.worker_id} as {new_worker.worker_id} "
                    f"({self._respawns}/{self.config.max_respawns})"
                )
            elif replace_worker:
                logger.warning(
                    f"Embedding worker {worker.worker_id} not replaced: respawn limit reached"
                )
            if not respawned:
                self._memory_retiring = False
            self._hand_back_queued(worker)
            if not any(
                w.status in (WorkerStatus.INITIALIZING, WorkerStatus.READY, WorkerStatus.BUSY)
                for w in self._workers
            ):
                # Wake start(wait=True) callers; the pool has no usable worker
                self._ready_event.set()

    def _hand_back_queued(self, worker: _Worker) -> None:
        """Move tasks still queued on an exited worker to other workers."""
        while True:
            try:
                item = worker.inbox.get_nowait()
            except queue.Empty:
                return
            if item is _SHUTDOWN:
                continue
            task, future = item
            if self._dispatch(task, future, {worker.worker_id}, include_initializing=True) is None:
                if future.set_running_or_notify_cancel():
                    future.set_exception(PoolUnavailableError("no worker to take queued work"))
