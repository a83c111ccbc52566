"""
Intake and dedup of commit notifications and manual re-run requests.

One live event per fingerprint:
- unknown fingerprint  -> insert pending, report
- known, not running   -> reset to pending, report
- known, running       -> untouched
"""
import logging
from typing import Optional

from deadci.core.events import Event, Fingerprint
from deadci.core.metrics import metrics
from deadci.core.reporter import ReporterRegistry
from deadci.core.store import DuplicateFingerprintError, EventStore
from deadci.core.worker_pool import WorkerPool
from deadci.schemas.events import CommitNotification, EventStatus

logger = logging.getLogger(__name__)


class IntakeService:
    """Turns notifications into new or requeued events."""

    def __init__(self, store: EventStore, reporters: ReporterRegistry, pool: WorkerPool):
        self._store = store
        self._reporters = reporters
        self._pool = pool

    async def handle_notification(self, notification: CommitNotification) -> Optional[Event]:
        """
        Queue a build for a commit notification.
        Returns the new or requeued event, or None if ignored or running.
        """
        if not notification.is_buildable:
            logger.info(f"notification_ignored type={notification.type.value} action={notification.action}")
            return None

        event = Event.from_notification(notification)
        existing = self._store.lookup(event.fingerprint)

        if existing is None:
            try:
                self._store.insert(event)
            except DuplicateFingerprintError:
                # Inserted concurrently (e.g. by a re-run); dedup against it
                return await self._requeue(event.fingerprint)
            metrics.inc("builds_queued_total")
            await self._reporters.report(event)
            return event

        if existing.status == EventStatus.RUNNING:
            logger.info(f"notification_skipped_running event_id={existing.id}")
            return None

        return await self._requeue(event.fingerprint)

    async def _requeue(self, fingerprint: Fingerprint) -> Optional[Event]:
        event = self._store.requeue(fingerprint)
        if event is not None:
            await self._reporters.report(event)
        return event

    async def rerun(self, fingerprint: Fingerprint) -> Event:
        """
        Re-run a build now, bypassing the queue.
        Raises EventRunningError if the build is currently running.
        """
        event = self._store.claim_for_rerun(Event.from_fingerprint(fingerprint))
        logger.info(f"rerun_started event_id={event.id}")
        self._pool.launch(event)
        return event
