"""
Tests for the worker pool: claiming, concurrency bound, drain and abort.
"""
import asyncio
import dataclasses
import time

import pytest

from deadci.core.events import InvalidTransitionError
from deadci.core.executor import JobExecutor
from deadci.core.intake import IntakeService
from deadci.core.reporter import ReporterRegistry
from deadci.core.worker_pool import WorkerPool
from deadci.schemas.events import CommitNotification, EventStatus, EventType


class RecordingReporter:
    def __init__(self):
        self.reported = []

    async def report(self, event):
        self.reported.append((event.commit, event.status))


class ScriptedExecutor(JobExecutor):
    """Executor whose run() waits on a gate instead of building."""

    def __init__(self, config, store, outcome=(EventStatus.SUCCESS, None), delay=0.0):
        super().__init__(config, store)
        self.outcome = outcome
        self.delay = delay
        self.gate = asyncio.Event()
        self.gate.set()
        self.active = 0
        self.max_active = 0
        self.started = 0

    async def run(self, event):
        event.assert_running()
        self.started += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            await self.gate.wait()
        finally:
            self.active -= 1
        event.append_log("scripted output\n")
        return self.outcome


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _pool(config, store, executor, reporter=None):
    registry = ReporterRegistry(store)
    if reporter is not None:
        registry.register("github.com", reporter)
    return WorkerPool(config, store, executor, registry)


class TestWorkerPool:
    """Tests for claiming and running builds."""

    @pytest.mark.asyncio
    async def test_pending_builds_run_to_completion(self, config, store, make_event):
        """Test that every pending event is claimed, run and reported twice."""
        reporter = RecordingReporter()
        executor = ScriptedExecutor(config, store)
        pool = _pool(config, store, executor, reporter)
        for commit in ("c1", "c2", "c3"):
            store.insert(make_event(commit))

        pool.start()
        await _wait_for(lambda: store.count_by_status(EventStatus.SUCCESS) == 3)
        await pool.drain()

        assert executor.started == 3
        for commit in ("c1", "c2", "c3"):
            assert reporter.reported.count((commit, EventStatus.RUNNING)) == 1
            assert reporter.reported.count((commit, EventStatus.SUCCESS)) == 1
        stored = store.list_events("github.com", "acme", "widgets", "main", "c1")[0]
        assert stored.log == b"scripted output\n\nsuccess"

    @pytest.mark.asyncio
    async def test_failed_outcome_recorded(self, config, store, make_event):
        """Test that the executor's outcome and message land in the log."""
        executor = ScriptedExecutor(config, store, outcome=(EventStatus.FAILED, "command exited with status 1"))
        pool = _pool(config, store, executor)
        event = make_event()
        store.insert(event)

        pool.start()
        await _wait_for(lambda: store.get(event.id).status == EventStatus.FAILED)
        await pool.drain()

        assert store.get(event.id).log.endswith(b"\nfailed: command exited with status 1")

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, config, store, make_event):
        """Test that no more than max_concurrent_builds run at once."""
        config = dataclasses.replace(config, workers=3, max_concurrent_builds=1)
        executor = ScriptedExecutor(config, store, delay=0.05)
        pool = _pool(config, store, executor)
        for commit in ("c1", "c2", "c3"):
            store.insert(make_event(commit))

        pool.start()
        await _wait_for(lambda: store.count_by_status(EventStatus.SUCCESS) == 3)
        await pool.drain()

        assert executor.max_active == 1

    @pytest.mark.asyncio
    async def test_launch_runs_rerun(self, config, store, make_event):
        """Test that a claimed re-run is executed by the pool."""
        executor = ScriptedExecutor(config, store)
        pool = _pool(config, store, executor)
        event = store.claim_for_rerun(make_event())

        status = await pool.launch(event)

        assert status == EventStatus.SUCCESS
        assert store.get(event.id).status == EventStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_launch_requires_running(self, config, store, make_event):
        """Test that only running events can be launched."""
        pool = _pool(config, store, ScriptedExecutor(config, store))
        event = make_event()
        store.insert(event)

        with pytest.raises(InvalidTransitionError):
            pool.launch(event)


class TestShutdown:
    """Tests for graceful drain and immediate abort."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_running_builds(self, config, store, make_event):
        """Test that drain returns only after in-flight builds finish."""
        executor = ScriptedExecutor(config, store)
        executor.gate.clear()
        pool = _pool(config, store, executor)
        event = make_event("c1")
        store.insert(event)

        pool.start()
        await _wait_for(lambda: executor.active == 1)
        drain = asyncio.create_task(pool.drain())
        await asyncio.sleep(0.05)

        assert not drain.done()
        assert pool.is_shutting_down
        late = make_event("c2")
        store.insert(late)

        executor.gate.set()
        await asyncio.wait_for(drain, timeout=5)

        assert store.get(event.id).status == EventStatus.SUCCESS
        assert store.get(late.id).status == EventStatus.PENDING
        assert store.count_by_status(EventStatus.RUNNING) == 0
        assert pool.running_builds == 0

    @pytest.mark.asyncio
    async def test_drain_with_nothing_running(self, config, store):
        """Test that an idle pool drains immediately."""
        pool = _pool(config, store, ScriptedExecutor(config, store))
        pool.start()

        await asyncio.wait_for(pool.drain(), timeout=5)

        assert pool.aborted is False

    @pytest.mark.asyncio
    async def test_abort_does_not_wait(self, config, store, make_event):
        """Test that abort cancels builds and leaves them running in the store."""
        executor = ScriptedExecutor(config, store)
        executor.gate.clear()
        pool = _pool(config, store, executor)
        event = make_event()
        store.insert(event)

        pool.start()
        await _wait_for(lambda: executor.active == 1)
        await asyncio.wait_for(pool.abort(), timeout=5)

        assert pool.aborted is True
        assert pool.running_builds == 0
        assert store.get(event.id).status == EventStatus.RUNNING


class TestEndToEnd:
    """Full path: notification, queue, git build, report."""

    @pytest.mark.asyncio
    async def test_push_builds_successfully(self, make_origin, config, store):
        """Test that a pushed commit is built and ends in success."""
        origin, sha = make_origin()
        reporter = RecordingReporter()
        registry = ReporterRegistry(store)
        registry.register("github.com", reporter)
        executor = JobExecutor(config, store)
        executor.clone_url = lambda event: str(origin)
        pool = WorkerPool(config, store, executor, registry)
        intake = IntakeService(store, registry, pool)

        event = await intake.handle_notification(
            CommitNotification(type=EventType.PUSH, owner="acme", repo="widgets", branch="main", commit=sha)
        )
        pool.start()
        await _wait_for(lambda: store.get(event.id).status == EventStatus.SUCCESS, timeout=30)
        await pool.drain()

        assert [status for _, status in reporter.reported] == [
            EventStatus.PENDING,
            EventStatus.RUNNING,
            EventStatus.SUCCESS,
        ]
        log = store.get(event.id).log.decode()
        assert f"running tests for acme/widgets@{sha}" in log
        assert log.endswith("\nsuccess")

    @pytest.mark.asyncio
    async def test_rerun_after_failure(self, make_origin, config, store, make_event):
        """Test that a failed build can be re-run and its old log is replaced."""
        origin, sha = make_origin()
        store.insert(make_event(commit=sha, status=EventStatus.FAILED, log=b"old output\nfailed"))
        registry = ReporterRegistry(store)
        executor = JobExecutor(config, store)
        executor.clone_url = lambda event: str(origin)
        pool = WorkerPool(config, store, executor, registry)
        intake = IntakeService(store, registry, pool)

        event = await intake.rerun(make_event(commit=sha).fingerprint)
        assert store.get(event.id).status == EventStatus.RUNNING
        await asyncio.wait_for(pool.wait_idle(), timeout=30)

        stored = store.get(event.id)
        assert stored.status == EventStatus.SUCCESS
        assert stored.log.startswith(b"Retrying...\n")
        assert b"old output" not in stored.log
