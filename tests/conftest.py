"""
Pytest configuration and fixtures.
"""
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from deadci.config import DeadCIConfig
from deadci.core.events import Event
from deadci.core.store import EventStore
from deadci.db.database import init_db, make_engine

RUNTESTS_OK = """#!/bin/sh
echo "running tests for $DEADCI_OWNER/$DEADCI_REPO@$DEADCI_COMMIT"
echo "a warning on stderr" >&2
exit 0
"""


def _git(*args, cwd: Path) -> str:
    result = subprocess.run(
        [
            "git",
            "-c", "user.name=DeadCI Test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            "-c", "init.defaultBranch=main",
            *args,
        ],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def _make_origin(base: Path, repo: str = "widgets", runtests: str = RUNTESTS_OK) -> tuple[Path, str]:
    """
    Create a bare git repository <base>/origin/<repo>.git whose single
    commit holds an executable ./runtests script.
    Returns (bare repo path, commit sha).
    """
    work = base / "src" / repo
    work.mkdir(parents=True)
    _git("init", "-q", cwd=work)
    script = work / "runtests"
    script.write_text(runtests)
    script.chmod(0o755)
    _git("add", "runtests", cwd=work)
    _git("commit", "-q", "-m", "initial", cwd=work)
    sha = _git("rev-parse", "HEAD", cwd=work)

    bare = base / "origin" / f"{repo}.git"
    bare.parent.mkdir(parents=True, exist_ok=True)
    _git("clone", "-q", "--bare", str(work), str(bare), cwd=base)
    return bare, sha


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary directory."""
    return DeadCIConfig(
        command=("./runtests",),
        data_dir=tmp_path / "data",
        host="ci.example.com",
        port=9090,
        temp_dir=tmp_path / "tmp",
        workers=2,
        max_concurrent_builds=2,
        poll_interval_s=0.01,
    )


@pytest.fixture
def store(config):
    """Event store backed by a fresh SQLite file."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = make_engine(config.db_url)
    init_db(engine)
    yield EventStore(engine)
    engine.dispose()


@pytest.fixture
def make_event():
    """Factory for unsaved push events."""
    def _make(commit: str = "abc123", **kwargs) -> Event:
        fields = {
            "domain": "github.com",
            "owner": "acme",
            "repo": "widgets",
            "branch": "main",
            "commit": commit,
        }
        fields.update(kwargs)
        return Event(**fields)
    return _make


@pytest.fixture
def make_origin(tmp_path):
    """Factory for local bare repositories standing in for the provider."""
    if shutil.which("git") is None:
        pytest.skip("git binary not available")

    def _make(runtests: str = RUNTESTS_OK, repo: str = "widgets") -> tuple[Path, str]:
        return _make_origin(tmp_path, repo=repo, runtests=runtests)
    return _make
