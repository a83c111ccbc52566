"""
Pydantic schemas for build events, commit notifications and API responses.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class EventStatus(str, Enum):
    """Build status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    FAILED_BOOT = "failed-boot"


class EventType(str, Enum):
    """Kind of source-control change that produced a build."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"


# Pull request actions that introduce new code to test
BUILDABLE_PR_ACTIONS = frozenset({"opened", "synchronize"})


class CommitNotification(BaseModel):
    """
    An already-validated commit event delivered by an intake collaborator.
    For pull requests, owner/repo/branch describe the head (possibly a fork)
    and base_* describe the repository the pull request targets.
    """
    domain: str = "github.com"
    type: EventType
    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    branch: str = Field(..., min_length=1)
    commit: str = Field(..., min_length=1)
    action: Optional[str] = None
    base_owner: Optional[str] = None
    base_repo: Optional[str] = None
    base_branch: Optional[str] = None

    @model_validator(mode="after")
    def check_pull_request_base(self):
        if self.type == EventType.PULL_REQUEST:
            if not (self.base_owner and self.base_repo and self.base_branch):
                raise ValueError("pull_request notifications require base_owner, base_repo and base_branch")
        return self

    @property
    def is_buildable(self) -> bool:
        """Pull requests are only built when they introduce new code."""
        if self.type == EventType.PULL_REQUEST:
            return self.action in BUILDABLE_PR_ACTIONS
        return True


class EventSummary(BaseModel):
    """Event as shown in list views (no log)."""
    id: int
    created_at: str
    domain: str
    owner: str
    repo: str
    branch: str
    commit: str
    type: EventType
    status: EventStatus
    base_owner: Optional[str] = None
    base_repo: Optional[str] = None
    base_branch: Optional[str] = None
    url: str


class EventDetail(EventSummary):
    """Event as shown in the detail view."""
    log: str


class EventListResponse(BaseModel):
    """Bounded, most-recent-first list of events."""
    items: list[EventSummary]
    count: int


class RerunResponse(BaseModel):
    """Response to a manual re-run request."""
    url: str
    status: EventStatus
