"""
Worker pool: polling loops that claim pending builds and run them.

Each worker acquires a build slot, claims the oldest pending event and runs
it as a tracked asyncio task, so at most max_concurrent_builds builds execute
at once. Manual re-runs are launched into the same pool and wait for a slot.

Shutdown:
- drain(): stop claiming, let running builds finish, wait until the store
  holds no running events
- abort(): cancel workers and in-flight builds without waiting
"""
import asyncio
import logging
from typing import Optional

from deadci.config import DeadCIConfig
from deadci.core.events import Event
from deadci.core.executor import JobExecutor
from deadci.core.metrics import metrics
from deadci.core.reporter import ReporterRegistry
from deadci.core.store import EventStore, EventStoreError
from deadci.schemas.events import EventStatus

logger = logging.getLogger(__name__)

# Poll interval while draining
DRAIN_POLL_INTERVAL = 0.1


class WorkerPool:
    """Fixed pool of polling workers with a bound on concurrent builds."""

    def __init__(
        self,
        config: DeadCIConfig,
        store: EventStore,
        executor: JobExecutor,
        reporters: ReporterRegistry,
    ):
        self._config = config
        self._store = store
        self._executor = executor
        self._reporters = reporters
        self._shutdown = asyncio.Event()
        self._slots = asyncio.Semaphore(config.max_concurrent_builds)
        self._workers: list[asyncio.Task] = []
        self._builds: set[asyncio.Task] = set()
        self._aborted = False

    @property
    def running_builds(self) -> int:
        return len(self._builds)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def start(self) -> None:
        """Start the polling workers on the running event loop."""
        for worker_id in range(1, self._config.workers + 1):
            task = asyncio.create_task(self._worker_loop(worker_id), name=f"deadci-worker-{worker_id}")
            self._workers.append(task)
        logger.info(
            f"worker_pool_started workers={self._config.workers} "
            f"max_concurrent_builds={self._config.max_concurrent_builds}"
        )

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._shutdown.is_set():
            await self._slots.acquire()
            if self._shutdown.is_set():
                self._slots.release()
                break

            try:
                event = self._store.claim_next_pending()
            except EventStoreError as e:
                logger.error(f"claim_failed worker_id={worker_id} error_type={type(e).__name__}")
                event = None

            if event is None:
                self._slots.release()
                await asyncio.sleep(self._config.poll_interval_s)
                continue

            logger.info(f"worker_claimed event_id={event.id} worker_id={worker_id}")
            self._spawn(event, slot_held=True)

        logger.info(f"worker_stopped worker_id={worker_id}")

    def launch(self, event: Event) -> asyncio.Task:
        """Run an event that is already running (manual re-run) in the pool."""
        event.assert_running()
        return self._spawn(event, slot_held=False)

    def _spawn(self, event: Event, slot_held: bool) -> asyncio.Task:
        task = asyncio.create_task(self._run_build(event, slot_held), name=f"deadci-build-{event.id}")
        self._builds.add(task)
        task.add_done_callback(self._builds.discard)
        return task

    async def _run_build(self, event: Event, slot_held: bool) -> Optional[EventStatus]:
        if not slot_held:
            await self._slots.acquire()
        try:
            metrics.inc("builds_started_total")
            await self._reporters.report(event)
            status, error = await self._executor.run(event)
            self._executor.finalize(event, status, error)
            await self._reporters.report(event)
            return status
        except EventStoreError as e:
            logger.error(f"build_store_fault event_id={event.id} error_type={type(e).__name__}")
            return None
        finally:
            self._slots.release()

    async def wait_idle(self) -> None:
        """Wait for all tracked builds to finish."""
        while self._builds:
            await asyncio.gather(*list(self._builds), return_exceptions=True)

    async def drain(self) -> None:
        """Graceful shutdown: stop polling and wait for running builds."""
        self._shutdown.set()
        logger.info("worker_pool_draining")
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)

        while True:
            try:
                running = self._store.count_by_status(EventStatus.RUNNING)
            except EventStoreError as e:
                logger.error(f"drain_count_failed error_type={type(e).__name__}")
                running = len(self._builds)
            if running == 0:
                break
            if not self._builds:
                # Rows left running by another process or an earlier abort
                logger.warning(f"drain_orphaned_running count={running}")
                break
            await asyncio.sleep(DRAIN_POLL_INTERVAL)
        logger.info("worker_pool_drained")

    def cancel_all(self) -> list[asyncio.Task]:
        """Set the abort flag and cancel every worker and build task."""
        self._aborted = True
        self._shutdown.set()
        tasks = self._workers + list(self._builds)
        for task in tasks:
            task.cancel()
        return tasks

    async def abort(self) -> None:
        """Immediate shutdown: cancel workers and in-flight builds."""
        tasks = self.cancel_all()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.warning(f"worker_pool_aborted cancelled_builds={len(tasks) - len(self._workers)}")
