"""
Background flush worker.

Flush jobs run on an asyncio worker pool, never inline with the request that
caused them. Each job walks this state machine:

    queued -> running -> completed
                      -> failed -> retrying -> running ...
                                -> failed_permanently

A failed attempt is retried after the backoff for that attempt (5s, 15s,
30s by default) until ``max_attempts`` is reached. A job that times out
counts as failed. Permanent failure is logged at CRITICAL and reported to
failure callbacks; it never propagates anywhere else, the stale entries
simply live until their own TTL.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from catalog.ops.errors import FlushJobError
from catalog.ops.invalidation.scope import InvalidationScope, ScopeMode
from catalog.ops.stats.registry import MetricsRegistry

if TYPE_CHECKING:
    from catalog.ops.cache.tree_cache import TreeCache

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    FAILED_PERMANENTLY = "failed_permanently"


ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.QUEUED: {JobState.RUNNING},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
    JobState.FAILED: {JobState.RETRYING, JobState.FAILED_PERMANENTLY},
    JobState.RETRYING: {JobState.RUNNING},
    JobState.COMPLETED: set(),
    JobState.FAILED_PERMANENTLY: set(),
}


@dataclass
class FlushJob:
    scope: InvalidationScope
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (5, 15, 30)
    timeout_seconds: float = 10.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.QUEUED
    attempts: int = 0
    last_error: str | None = None
    history: list[JobState] = field(default_factory=lambda: [JobState.QUEUED])
    created_at: float = field(default_factory=time.time)

    def transition(self, state: JobState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Flush job {self.id}: illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def backoff_for(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        if not self.backoff_seconds:
            return 0.0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds)) - 1]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope.to_dict(),
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "history": [state.value for state in self.history],
            "created_at": self.created_at,
        }


JobCallback = Callable[[FlushJob], None]


class FlushWorker:
    def __init__(
        self,
        cache: "TreeCache",
        metrics: MetricsRegistry,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_seconds: tuple[float, ...] = (5, 15, 30),
        timeout_seconds: float = 10.0,
        history_size: int = 200,
    ):
        self.cache = cache
        self.metrics = metrics
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_seconds = tuple(backoff_seconds)
        self.timeout_seconds = timeout_seconds
        self.recent_jobs: deque[FlushJob] = deque(maxlen=history_size)
        self._queue: asyncio.Queue[FlushJob] | None = None
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.Task] = set()
        self._success_callbacks: list[JobCallback] = []
        self._failure_callbacks: list[JobCallback] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def new_job(self, scope: InvalidationScope) -> FlushJob:
        return FlushJob(
            scope=scope,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            timeout_seconds=self.timeout_seconds,
        )

    def on_success(self, callback: JobCallback) -> None:
        self._success_callbacks.append(callback)

    def on_failure(self, callback: JobCallback) -> None:
        self._failure_callbacks.append(callback)

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._work(index), name=f"flush-worker-{index}") for index in range(self.concurrency)
        ]
        logger.info(f"Flush worker pool started with {self.concurrency} workers")

    async def stop(self) -> None:
        pending = len(self._timers) + (self._queue.qsize() if self._queue else 0)
        if pending:
            logger.warning(f"Stopping flush worker with {pending} pending job(s); affected entries expire by TTL")
        tasks = [*self._timers, *self._workers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._workers = []
        self._queue = None
        logger.info("Flush worker pool stopped")

    async def enqueue(self, job: FlushJob, delay: float = 0.0) -> None:
        if self._queue is None:
            raise RuntimeError("Flush worker is not started")
        if job.attempts == 0:
            self.recent_jobs.append(job)

        if delay > 0:
            timer = asyncio.create_task(self._enqueue_later(job, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
        else:
            self._queue.put_nowait(job)

    async def _enqueue_later(self, job: FlushJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every scheduled job, delayed ones and retries included, has finished."""
        while True:
            if self._timers:
                await asyncio.gather(*list(self._timers), return_exceptions=True)
            if self._queue is not None:
                # Retries scheduled by a failing attempt add new timers
                await self._queue.join()
            if not self._timers:
                return

    async def _work(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.run(job)
            finally:
                self._queue.task_done()

    async def execute(self, scope: InvalidationScope) -> int:
        """Evict what ``scope`` covers. Returns the number of entries removed."""
        if scope.mode is ScopeMode.FULL:
            return await self.cache.forget_all()
        if scope.mode is ScopeMode.ROOT_SHARD:
            removed = 0
            for root_id in sorted(scope.affected_root_ids):
                removed += await self.cache.forget_root_shard(root_id)
            return removed
        removed = 0
        for node_id in sorted(scope.affected_node_ids):
            removed += await self.cache.forget_key(node_id)
        return removed

    async def run(self, job: FlushJob) -> None:
        """Execute one attempt of ``job`` and move it to its next state."""
        mode = job.scope.mode.value
        job.attempts += 1
        job.transition(JobState.RUNNING)
        logger.info(f"Flush job {job.id} started (mode={mode}, attempt {job.attempts}/{job.max_attempts})")
        self.metrics.increment("flush_job_total", {"status": "started", "mode": mode})

        start_time = time.perf_counter()
        try:
            with self.metrics.span(
                "cache.flush",
                job_id=job.id,
                mode=mode,
                attempt=job.attempts,
                root_ids=",".join(str(i) for i in sorted(job.scope.affected_root_ids)),
            ) as span:
                removed = await asyncio.wait_for(self.execute(job.scope), timeout=job.timeout_seconds)
                span.set_attribute("cache.removed", removed)
        except Exception as e:
            duration = time.perf_counter() - start_time
            job.last_error = f"{type(e).__name__}: {e}"
            job.transition(JobState.FAILED)
            self.metrics.increment("flush_job_total", {"status": "failed", "mode": mode})
            self.metrics.observe("flush_job_duration_seconds", duration, {"mode": mode, "status": "failed"})
            await self._after_failure(job, e)
            return

        duration = time.perf_counter() - start_time
        job.transition(JobState.COMPLETED)
        self.metrics.increment("flush_job_total", {"status": "completed", "mode": mode})
        self.metrics.observe("flush_job_duration_seconds", duration, {"mode": mode, "status": "completed"})
        logger.info(f"Flush job {job.id} completed in {duration:.4f}s, {removed} entries evicted")
        self._notify(self._success_callbacks, job)

    async def _after_failure(self, job: FlushJob, error: Exception) -> None:
        if job.attempts < job.max_attempts:
            delay = job.backoff_for(job.attempts)
            job.transition(JobState.RETRYING)
            self.metrics.increment("flush_job_total", {"status": "retrying", "mode": job.scope.mode.value})
            logger.warning(f"Flush job {job.id} attempt {job.attempts} failed ({job.last_error}), retrying in {delay}s")
            await self.enqueue(job, delay=delay)
            return

        job.transition(JobState.FAILED_PERMANENTLY)
        failure = FlushJobError(job.id, job.attempts)
        failure.__cause__ = error
        self.metrics.increment("flush_job_total", {"status": "failed_permanently", "mode": job.scope.mode.value})
        logger.critical(
            f"Flush job {job.id} failed permanently after {job.attempts} attempts: {job.last_error}",
            exc_info=failure,
            extra={
                "job_id": job.id,
                "scope_mode": job.scope.mode.value,
                "affected_root_ids": sorted(job.scope.affected_root_ids),
                "affected_node_ids": sorted(job.scope.affected_node_ids),
                "attempts": job.attempts,
                "error_type": type(error).__name__,
            },
        )
        self._notify(self._failure_callbacks, job)

    @staticmethod
    def _notify(callbacks: list[JobCallback], job: FlushJob) -> None:
        for callback in callbacks:
            try:
                callback(job)
            except Exception:
                logger.exception(f"Flush job callback {callback!r} raised for job {job.id}")
