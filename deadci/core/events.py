"""
Build event record and its status state machine.

pending -> running -> {success, failed, failed-boot}
A terminal (or pending) event may be reset to pending, never a running one.
Only the store's claim operations may move an event to running.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from deadci.schemas.events import (
    CommitNotification,
    EventDetail,
    EventStatus,
    EventSummary,
    EventType,
)

TERMINAL_STATUSES = frozenset({
    EventStatus.SUCCESS,
    EventStatus.FAILED,
    EventStatus.FAILED_BOOT,
})

RETRY_MARKER = b"Retrying...\n"

# Appended at startup to builds a previous process left running
INTERRUPTED_MARKER = b"\nfailed-boot: build interrupted by a server restart\n"


class InvalidTransitionError(Exception):
    """A status change the state machine does not allow (programming error)."""
    pass


class Fingerprint(NamedTuple):
    """(domain, owner, repo, branch, commit): identifies one logical build."""
    domain: str
    owner: str
    repo: str
    branch: str
    commit: str

    @property
    def path(self) -> str:
        return "/".join(self)


def can_requeue(status: EventStatus) -> bool:
    """Whether an event in this status may be reset to pending."""
    return status == EventStatus.PENDING or status in TERMINAL_STATUSES


@dataclass
class Event:
    """One build attempt lineage. Flat record holding every provider field."""
    domain: str
    owner: str
    repo: str
    branch: str
    commit: str
    type: EventType = EventType.PUSH
    base_owner: Optional[str] = None
    base_repo: Optional[str] = None
    base_branch: Optional[str] = None
    status: EventStatus = EventStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    log: bytes = b""
    id: Optional[int] = None

    @classmethod
    def from_notification(cls, notification: CommitNotification) -> "Event":
        """Build a new pending event from a commit notification."""
        is_pr = notification.type == EventType.PULL_REQUEST
        return cls(
            domain=notification.domain,
            owner=notification.owner,
            repo=notification.repo,
            branch=notification.branch,
            commit=notification.commit,
            type=notification.type,
            base_owner=notification.base_owner if is_pr else None,
            base_repo=notification.base_repo if is_pr else None,
            base_branch=notification.base_branch if is_pr else None,
        )

    @classmethod
    def from_fingerprint(cls, fingerprint: Fingerprint) -> "Event":
        return cls(*fingerprint)

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.domain, self.owner, self.repo, self.branch, self.commit)

    @property
    def path(self) -> str:
        return self.fingerprint.path

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def report_owner(self) -> str:
        """Owner that receives statuses: the PR target, not the fork."""
        if self.type == EventType.PULL_REQUEST and self.base_owner:
            return self.base_owner
        return self.owner

    @property
    def report_repo(self) -> str:
        if self.type == EventType.PULL_REQUEST and self.base_repo:
            return self.base_repo
        return self.repo

    def full_url(self, base_url: str) -> str:
        """Detail view URL of this build."""
        return f"{base_url.rstrip('/')}/builds/{self.path}"

    def append_log(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.log += data

    def assert_running(self) -> None:
        if self.status != EventStatus.RUNNING:
            raise InvalidTransitionError(
                f"Event {self.path} must be running before it is executed (status={self.status.value})"
            )

    def reset_pending(self) -> None:
        """Requeue: allowed from pending or any terminal status."""
        if not can_requeue(self.status):
            raise InvalidTransitionError(f"Cannot requeue event {self.path} while {self.status.value}")
        self.status = EventStatus.PENDING

    def mark_terminal(self, status: EventStatus) -> None:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"{status.value} is not a terminal status")
        self.assert_running()
        self.status = status

    def to_summary(self, base_url: str) -> EventSummary:
        return EventSummary(**self._view_fields(base_url))

    def to_detail(self, base_url: str) -> EventDetail:
        return EventDetail(
            **self._view_fields(base_url),
            log=self.log.decode("utf-8", errors="replace"),
        )

    def _view_fields(self, base_url: str) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "domain": self.domain,
            "owner": self.owner,
            "repo": self.repo,
            "branch": self.branch,
            "commit": self.commit,
            "type": self.type,
            "status": self.status,
            "base_owner": self.base_owner,
            "base_repo": self.base_repo,
            "base_branch": self.base_branch,
            "url": self.full_url(base_url),
        }
