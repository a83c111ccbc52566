"""
SQLAlchemy models for build event persistence.
"""
from sqlalchemy import Column, Text, Integer, LargeBinary, Index

from deadci.db.database import Base


class BuildEvent(Base):
    """SQLite model for build events (one row per fingerprint)."""
    __tablename__ = "deadci"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(Text, nullable=False)  # ISO timestamp
    status = Column(Text, nullable=False, index=True)
    domain = Column(Text, nullable=False)
    owner = Column(Text, nullable=False)
    repo = Column(Text, nullable=False)
    branch = Column(Text, nullable=False)
    commit = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="push")  # "push" or "pull_request"

    # Pull request target (nullable for push)
    base_owner = Column(Text, nullable=True)
    base_repo = Column(Text, nullable=True)
    base_branch = Column(Text, nullable=True)

    log = Column(LargeBinary, nullable=False, default=b"")

    # Hierarchical filter indexes plus the fingerprint uniqueness guarantee
    __table_args__ = (
        Index("ix_deadci_domain", "domain"),
        Index("ix_deadci_owner", "domain", "owner"),
        Index("ix_deadci_repo", "domain", "owner", "repo"),
        Index("ix_deadci_branch", "domain", "owner", "repo", "branch"),
        Index("ix_deadci_fingerprint", "domain", "owner", "repo", "branch", "commit", unique=True),
    )
