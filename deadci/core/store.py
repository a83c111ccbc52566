"""
SQLite-backed event store for builds.

All mutating operations (insert, update, append, claim, requeue) are serialized by a
single process-wide lock; lookups and listings read without it.
Logs only event ids and statuses, never build output.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from deadci.core.events import (
    INTERRUPTED_MARKER,
    RETRY_MARKER,
    Event,
    Fingerprint,
    can_requeue,
)
from deadci.core.metrics import metrics
from deadci.db.database import make_session_factory
from deadci.db.models import BuildEvent
from deadci.schemas.events import EventStatus, EventType

logger = logging.getLogger(__name__)

# Maximum rows returned by list_events
LIST_LIMIT = 500

# Hierarchical filter columns, outermost first
FILTER_COLUMNS = ("domain", "owner", "repo", "branch", "commit")


class EventStoreError(Exception):
    """Storage fault or store contract violation."""
    pass


class AlreadyPersistedError(EventStoreError):
    """Insert called on an event that already has an id."""
    pass


class NotPersistedError(EventStoreError):
    """Update called on an event without an id."""
    pass


class DuplicateFingerprintError(EventStoreError):
    """A live row already exists for this fingerprint."""
    pass


class EventRunningError(EventStoreError):
    """The event is running and cannot be re-run or requeued."""
    pass


def _model_to_event(model: BuildEvent) -> Event:
    """Convert SQLAlchemy model to Event dataclass."""
    return Event(
        id=model.id,
        domain=model.domain,
        owner=model.owner,
        repo=model.repo,
        branch=model.branch,
        commit=model.commit,
        type=EventType(model.type),
        base_owner=model.base_owner,
        base_repo=model.base_repo,
        base_branch=model.base_branch,
        status=EventStatus(model.status),
        created_at=datetime.fromisoformat(model.created_at),
        log=bytes(model.log or b""),
    )


def _copy_event_to_model(event: Event, model: BuildEvent) -> None:
    model.created_at = event.created_at.isoformat()
    model.status = event.status.value
    model.domain = event.domain
    model.owner = event.owner
    model.repo = event.repo
    model.branch = event.branch
    model.commit = event.commit
    model.type = event.type.value
    model.base_owner = event.base_owner
    model.base_repo = event.base_repo
    model.base_branch = event.base_branch
    model.log = event.log


class EventStore:
    """Durable store of build events with atomic single-owner claims."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        self._lock = threading.Lock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session scope that turns storage faults into EventStoreError."""
        db = self._session_factory()
        try:
            yield db
        except IntegrityError as e:
            db.rollback()
            raise DuplicateFingerprintError("An event with this fingerprint already exists") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"store_fault error_type={type(e).__name__}")
            raise EventStoreError(f"Storage fault: {type(e).__name__}") from e
        finally:
            db.close()

    @staticmethod
    def _fingerprint_query(db: Session, fingerprint: Fingerprint):
        return db.query(BuildEvent).filter(
            BuildEvent.domain == fingerprint.domain,
            BuildEvent.owner == fingerprint.owner,
            BuildEvent.repo == fingerprint.repo,
            BuildEvent.branch == fingerprint.branch,
            BuildEvent.commit == fingerprint.commit,
        )

    def insert(self, event: Event) -> int:
        """Persist a new event, assigning its id. Returns the id."""
        if event.id:
            raise AlreadyPersistedError("Cannot insert an event that already has an id. Use update()")

        with self._lock, self._session() as db:
            model = BuildEvent()
            _copy_event_to_model(event, model)
            db.add(model)
            db.commit()
            event.id = model.id

        logger.info(f"event_inserted event_id={event.id} status={event.status.value}")
        return event.id

    def update(self, event: Event) -> None:
        """Overwrite the row matching event.id."""
        if not event.id:
            raise NotPersistedError("Cannot update an event with no id. Use insert()")

        with self._lock, self._session() as db:
            self._write(db, event)

    def _write(self, db: Session, event: Event) -> None:
        model = db.get(BuildEvent, event.id)
        if model is None:
            raise NotPersistedError(f"No stored event with id {event.id}")
        _copy_event_to_model(event, model)
        db.commit()

    def append_log(self, event_id: int, data: bytes | str) -> None:
        """
        Append to the stored log of an event, leaving every other column
        (status included) as it currently is in the database.
        """
        if not event_id:
            raise NotPersistedError("Cannot append to the log of an event with no id")
        if isinstance(data, str):
            data = data.encode("utf-8")

        with self._lock, self._session() as db:
            model = db.get(BuildEvent, event_id)
            if model is None:
                raise NotPersistedError(f"No stored event with id {event_id}")
            model.log = bytes(model.log or b"") + data
            db.commit()

    def fail_interrupted(self) -> int:
        """
        Mark events left running by a previous process as failed-boot.
        Returns the number of events changed.
        """
        with self._lock, self._session() as db:
            models = (
                db.query(BuildEvent)
                .filter(BuildEvent.status == EventStatus.RUNNING.value)
                .all()
            )
            for model in models:
                model.status = EventStatus.FAILED_BOOT.value
                model.log = bytes(model.log or b"") + INTERRUPTED_MARKER
            db.commit()
            event_ids = [m.id for m in models]

        for event_id in event_ids:
            logger.warning(f"event_interrupted event_id={event_id} status={EventStatus.FAILED_BOOT.value}")
        return len(event_ids)

    def lookup(self, fingerprint: Fingerprint) -> Optional[Event]:
        """Get the event for a fingerprint, or None."""
        with self._session() as db:
            model = self._fingerprint_query(db, fingerprint).first()
            if not model:
                return None
            return _model_to_event(model)

    def get(self, event_id: int) -> Optional[Event]:
        """Get an event by id, or None."""
        with self._session() as db:
            model = db.get(BuildEvent, event_id)
            if not model:
                return None
            return _model_to_event(model)

    def claim_next_pending(self) -> Optional[Event]:
        """
        Atomically take the oldest pending event and mark it running.
        A requeued event's previous log is replaced by a retry marker.
        Returns None when nothing is pending.
        """
        with self._lock, self._session() as db:
            model = (
                db.query(BuildEvent)
                .filter(BuildEvent.status == EventStatus.PENDING.value)
                .order_by(BuildEvent.id.asc())
                .first()
            )
            if not model:
                return None

            model.status = EventStatus.RUNNING.value
            if model.log:
                model.log = RETRY_MARKER
            db.commit()
            event = _model_to_event(model)

        logger.info(f"event_claimed event_id={event.id}")
        return event

    def requeue(self, fingerprint: Fingerprint) -> Optional[Event]:
        """
        Reset a stored, non-running event to pending.
        Returns the updated event, or None if it is running (left untouched).
        """
        with self._lock, self._session() as db:
            model = self._fingerprint_query(db, fingerprint).first()
            if not model:
                return None
            event = _model_to_event(model)
            if not can_requeue(event.status):
                logger.info(f"requeue_skipped event_id={event.id} status={event.status.value}")
                return None
            event.reset_pending()
            model.status = event.status.value
            db.commit()

        logger.info(f"event_requeued event_id={event.id}")
        metrics.inc("builds_requeued_total")
        return event

    def claim_for_rerun(self, event: Event) -> Event:
        """
        Mark the event for this fingerprint running with a retry marker,
        inserting it first if it is unknown. Raises EventRunningError if it
        is already running.
        """
        with self._lock, self._session() as db:
            model = self._fingerprint_query(db, event.fingerprint).first()
            if model is None:
                event.status = EventStatus.RUNNING
                event.log = RETRY_MARKER
                model = BuildEvent()
                _copy_event_to_model(event, model)
                db.add(model)
                db.commit()
                event.id = model.id
                claimed = event
            else:
                claimed = _model_to_event(model)
                if claimed.status == EventStatus.RUNNING:
                    raise EventRunningError(f"Unable to re-run already running build {claimed.path}")
                claimed.status = EventStatus.RUNNING
                claimed.log = RETRY_MARKER
                model.status = claimed.status.value
                model.log = claimed.log
                db.commit()

        logger.info(f"event_rerun_claimed event_id={claimed.id}")
        return claimed

    def list_events(self, *path: str) -> list[Event]:
        """
        List up to LIST_LIMIT events matching a hierarchical prefix
        (domain, owner, repo, branch, commit), most recent first.
        """
        if len(path) > len(FILTER_COLUMNS):
            raise ValueError(f"At most {len(FILTER_COLUMNS)} filter parts are allowed")

        with self._session() as db:
            query = db.query(BuildEvent)
            for column_name, value in zip(FILTER_COLUMNS, path):
                query = query.filter(getattr(BuildEvent, column_name) == value)
            models = (
                query.order_by(BuildEvent.created_at.desc(), BuildEvent.id.desc())
                .limit(LIST_LIMIT)
                .all()
            )
            return [_model_to_event(m) for m in models]

    def count_by_status(self, status: EventStatus) -> int:
        """Number of events currently in a status."""
        with self._session() as db:
            return (
                db.query(func.count(BuildEvent.id))
                .filter(BuildEvent.status == status.value)
                .scalar()
            ) or 0
