import logging
from typing import Protocol

from catalog.ops.cache.store import CacheStore
from catalog.ops.errors import CacheBackendUnavailableError
from catalog.ops.invalidation.scope import InvalidationScope
from catalog.ops.invalidation.worker import FlushJob
from catalog.ops.stats.registry import MetricsRegistry

logger = logging.getLogger(__name__)


class JobRunner(Protocol):
    def new_job(self, scope: InvalidationScope) -> FlushJob: ...

    async def enqueue(self, job: FlushJob, delay: float = 0.0) -> None: ...


class DebounceScheduler:
    """
    Collapses bursts of invalidations into one delayed flush per scope.

    For each debounce unit of a scope the scheduler tries to create a lock
    record with a TTL equal to the window, using the store's atomic
    create-if-absent. Units it wins go into one flush job, delayed by the
    window so the flush runs after every mutation of the burst committed.
    Units already locked are dropped: the job scheduled by the first caller
    of the window covers them.

    If the lock store is unreachable the scheduler fails open and schedules
    the flush anyway; a redundant flush is cheaper than a lost one.
    """

    def __init__(
        self, lock_store: CacheStore, runner: JobRunner, metrics: MetricsRegistry, window_seconds: float = 2.0
    ):
        self.lock_store = lock_store
        self.runner = runner
        self.metrics = metrics
        self.window_seconds = window_seconds

    async def schedule(self, scope: InvalidationScope) -> FlushJob | None:
        acquired = []
        fail_open = False

        for unit in scope.debounce_units():
            try:
                created = await self.lock_store.create_if_absent(unit.lock_key, self.window_seconds)
            except CacheBackendUnavailableError as e:
                logger.warning(f"Debounce lock store unavailable for {unit.lock_key}, scheduling unconditionally: {e}")
                fail_open = True
                created = True

            if created:
                acquired.append(unit)
            else:
                logger.debug(f"Flush for {unit.lock_key} already scheduled in this window")
                self.metrics.increment("debounce_total", {"result": "collapsed", "mode": unit.mode.value})

        if not acquired:
            return None

        job = self.runner.new_job(scope.narrowed_to(acquired))
        await self.runner.enqueue(job, delay=self.window_seconds)
        self.metrics.increment(
            "debounce_total", {"result": "fail_open" if fail_open else "scheduled", "mode": scope.mode.value}
        )
        logger.info(f"Scheduled flush job {job.id} for {job.scope.to_dict()} in {self.window_seconds}s")
        return job
