"""
Job Executor - runs one claimed build to completion.

Steps:
1. Recreate an empty workspace derived from the build fingerprint
2. git clone (SSH or HTTPS, per config)
3. git checkout -q <commit>
4. Run the configured build command in the checkout
5. Stream stdout/stderr into the event log, persisting after every chunk
6. Map the outcome to success / failed / failed-boot

Security:
- No shell=True anywhere; commands are argv lists
- One workspace per fingerprint, cleared before each run
- No secrets in operator logs
"""
import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from deadci.config import DeadCIConfig
from deadci.core.events import Event
from deadci.core.metrics import metrics
from deadci.core.store import EventStore
from deadci.schemas.events import EventStatus, EventType

logger = logging.getLogger(__name__)

# Bytes read from a build output stream per chunk
READ_CHUNK_SIZE = 1024


class WorkspaceError(Exception):
    """Workspace could not be prepared."""
    pass


class WorkspaceManager:
    """Manages per-fingerprint scratch workspaces."""

    def __init__(self, base_dir: Path):
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, event: Event) -> Path:
        """Deterministic workspace path for a fingerprint."""
        workspace = (self._base_dir / event.path).resolve()
        if self._base_dir.resolve() not in workspace.parents:
            raise WorkspaceError(f"Unsafe workspace path for {event.path}")
        return workspace

    def recreate(self, event: Event) -> Path:
        """Remove any previous workspace for the event and create it empty."""
        workspace = self.path_for(event)
        try:
            if workspace.exists():
                shutil.rmtree(workspace)
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Unable to prepare workspace: {e}") from e
        logger.info(f"workspace_created event_id={event.id}")
        return workspace

    def cleanup(self, event: Event) -> bool:
        """Remove the workspace for an event."""
        workspace = self.path_for(event)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"workspace_cleaned event_id={event.id}")
            return True
        return False


def clone_url(event: Event, https_clone: bool) -> str:
    """Repository URL to clone the event's (head) repository from."""
    if https_clone:
        return f"https://{event.domain}/{event.owner}/{event.repo}.git"
    return f"git@{event.domain}:{event.owner}/{event.repo}.git"


def build_env(event: Event) -> dict[str, str]:
    """Process environment plus the DEADCI_* variables describing the build."""
    env = dict(os.environ)
    env.update({
        "DEADCI_DOMAIN": event.domain,
        "DEADCI_OWNER": event.owner,
        "DEADCI_REPO": event.repo,
        "DEADCI_BRANCH": event.branch,
        "DEADCI_COMMIT": event.commit,
        "DEADCI_TYPE": event.type.value,
    })
    if event.type == EventType.PULL_REQUEST:
        env.update({
            "DEADCI_BASEOWNER": event.base_owner or "",
            "DEADCI_BASEREPO": event.base_repo or "",
            "DEADCI_BASEBRANCH": event.base_branch or "",
        })
    return env


class JobExecutor:
    """Runs claimed events and records their terminal status."""

    def __init__(self, config: DeadCIConfig, store: EventStore, workspaces: Optional[WorkspaceManager] = None):
        self._config = config
        self._store = store
        self._workspaces = workspaces or WorkspaceManager(config.workspace_root)

    @property
    def workspaces(self) -> WorkspaceManager:
        return self._workspaces

    def clone_url(self, event: Event) -> str:
        return clone_url(event, self._config.https_clone)

    async def _run_git(self, event: Event, args: list[str], cwd: Path) -> int:
        """Run a git command, appending its combined output to the event log."""
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await proc.communicate()
        event.append_log(output or b"")
        self._store.update(event)
        return proc.returncode

    async def run(self, event: Event) -> tuple[EventStatus, Optional[str]]:
        """
        Execute a running event.

        Returns:
            Tuple of (terminal status, error message or None)
        """
        event.assert_running()
        logger.info(f"build_start event_id={event.id}")

        try:
            workspace = self._workspaces.recreate(event)
        except WorkspaceError as e:
            return EventStatus.FAILED_BOOT, str(e)

        try:
            code = await self._run_git(event, ["clone", self.clone_url(event)], cwd=workspace)
            if code != 0:
                return EventStatus.FAILED_BOOT, f"git clone exited with status {code}"

            checkout = workspace / event.repo
            code = await self._run_git(event, ["checkout", "-q", event.commit], cwd=checkout)
            if code != 0:
                return EventStatus.FAILED_BOOT, f"git checkout exited with status {code}"
        except OSError as e:
            return EventStatus.FAILED_BOOT, f"Unable to run git: {e}"

        return await self._run_command(event, checkout)

    async def _run_command(self, event: Event, cwd: Path) -> tuple[EventStatus, Optional[str]]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._config.command,
                cwd=str(cwd),
                env=build_env(event),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return EventStatus.FAILED_BOOT, f"Unable to start command: {e}"

        timeout = self._config.build_timeout_s or None
        try:
            await asyncio.wait_for(self._collect_output(event, proc), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning(f"build_timeout event_id={event.id} timeout={timeout}")
            return EventStatus.FAILED, f"build timed out after {timeout}s"
        except OSError as e:
            await self._kill(proc)
            return EventStatus.FAILED, f"Unable to read command output: {e}"
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            return EventStatus.FAILED, f"command exited with status {proc.returncode}"
        return EventStatus.SUCCESS, None

    async def _collect_output(self, event: Event, proc: asyncio.subprocess.Process) -> None:
        """Read both streams until EOF, then wait for the process to exit."""
        await asyncio.gather(
            self._pump(event, proc.stdout),
            self._pump(event, proc.stderr),
        )
        await proc.wait()

    async def _pump(self, event: Event, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            event.append_log(chunk)
            self._store.update(event)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    def finalize(self, event: Event, status: EventStatus, error: Optional[str]) -> None:
        """Append the outcome to the log and persist the terminal status."""
        if error:
            event.append_log(f"\n{status.value}: {error}")
        else:
            event.append_log(f"\n{status.value}")
        event.mark_terminal(status)
        self._store.update(event)

        if status == EventStatus.SUCCESS:
            metrics.inc("builds_succeeded_total")
        elif status == EventStatus.FAILED:
            metrics.inc("builds_failed_total")
        else:
            metrics.inc("builds_failed_boot_total")
        logger.info(f"build_done event_id={event.id} status={status.value}")
