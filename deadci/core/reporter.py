"""
Commit status reporting to source-control providers.

Reporting is best-effort: a failure is logged, appended to the event's own
log, and never changes the build outcome. Providers are registered per
domain; events from unregistered domains are not reported.
"""
import logging
from typing import Optional, Protocol

import httpx

from deadci.config import DeadCIConfig
from deadci.core.events import Event
from deadci.core.metrics import metrics
from deadci.core.store import EventStore, EventStoreError
from deadci.schemas.events import EventStatus

logger = logging.getLogger(__name__)

# Timeouts
HTTP_TIMEOUT = 30  # seconds

USER_AGENT = "DeadCI/1.0"

# Status context shown by the provider next to the commit
STATUS_CONTEXT = "deadci"

STATUS_DESCRIPTIONS = {
    EventStatus.PENDING: "Build queued - please wait",
    EventStatus.RUNNING: "Build and tests running - please wait",
    EventStatus.SUCCESS: "Build successful and tests passed",
    EventStatus.FAILED: "Build testing failed",
    EventStatus.FAILED_BOOT: "Error bootstrapping build environment",
}

GITHUB_STATES = {
    EventStatus.PENDING: "pending",
    EventStatus.RUNNING: "pending",
    EventStatus.SUCCESS: "success",
    EventStatus.FAILED: "failure",
    EventStatus.FAILED_BOOT: "error",
}


class ReportError(Exception):
    """A provider rejected or could not receive a report."""
    pass


def status_description(status: EventStatus) -> str:
    """Human-readable description of an internal status."""
    return STATUS_DESCRIPTIONS[status]


def translate_github_status(status: EventStatus) -> str:
    """Internal status in GitHub's commit status vocabulary."""
    return GITHUB_STATES[status]


class StatusReporter(Protocol):
    """A provider capable of receiving commit statuses."""

    async def report(self, event: Event) -> None:
        ...


class GitHubReporter:
    """Posts commit statuses and failure comments to the GitHub API."""

    def __init__(self, config: DeadCIConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._config.github_token)

    def _get_http_client(self) -> httpx.AsyncClient:
        """Create HTTP client with GitHub headers."""
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {self._config.github_token}",
        }
        return httpx.AsyncClient(
            base_url=self._config.github_api_url,
            timeout=HTTP_TIMEOUT,
            headers=headers,
            transport=self._transport,
        )

    async def report(self, event: Event) -> None:
        # No token: skip posting results
        if not self.enabled:
            return

        state = translate_github_status(event.status)
        description = status_description(event.status)
        url = event.full_url(self._config.base_url)
        repo_path = f"/repos/{event.report_owner}/{event.report_repo}"

        async with self._get_http_client() as client:
            response = await client.post(
                f"{repo_path}/statuses/{event.commit}",
                json={
                    "state": state,
                    "target_url": url,
                    "description": description,
                    "context": STATUS_CONTEXT,
                },
            )
            self._check(response, "status")

            # Comment only on genuine test failures, not on errors or passes
            if state == "failure":
                body = (
                    f"DeadCI - build {event.status.value}: {description}\n"
                    f"For details please see: {url}"
                )
                response = await client.post(
                    f"{repo_path}/commits/{event.commit}/comments",
                    json={"body": body},
                )
                self._check(response, "comment")

        logger.info(f"github_reported event_id={event.id} state={state}")

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.status_code >= 400:
            raise ReportError(f"GitHub {what} request failed: HTTP {response.status_code}")


class ReporterRegistry:
    """Maps a domain to the reporter that handles its events."""

    def __init__(self, store: EventStore):
        self._store = store
        self._reporters: dict[str, StatusReporter] = {}

    def register(self, domain: str, reporter: StatusReporter) -> None:
        self._reporters[domain] = reporter

    def get(self, domain: str) -> Optional[StatusReporter]:
        return self._reporters.get(domain)

    async def report(self, event: Event) -> bool:
        """
        Report the event's current status. Never raises.
        Returns False if the provider failed.
        """
        reporter = self._reporters.get(event.domain)
        if reporter is None:
            return True

        try:
            await reporter.report(event)
            return True
        except (ReportError, httpx.HTTPError) as e:
            message = str(e) or type(e).__name__
        except Exception as e:
            logger.exception(f"report_error event_id={event.id}")
            message = f"Unexpected error: {type(e).__name__}"

        metrics.inc("reports_failed_total")
        logger.warning(f"report_failed event_id={event.id} status={event.status.value} error={message}")
        # The row may have moved on (e.g. claimed) since this copy was taken
        line = f"\nreport error: {message}\n"
        event.append_log(line)
        if event.id:
            try:
                self._store.append_log(event.id, line)
            except EventStoreError as e:
                logger.error(f"report_log_persist_failed event_id={event.id} error_type={type(e).__name__}")
        return False


def build_registry(config: DeadCIConfig, store: EventStore) -> ReporterRegistry:
    """Registry with the providers enabled by configuration."""
    registry = ReporterRegistry(store)
    registry.register("github.com", GitHubReporter(config))
    return registry
