"""
Tests for configuration loading, logging and the event state machine.
"""
import json
import logging
from pathlib import Path

import pytest

from deadci.config import ConfigError, get_config, parse_command
from deadci.core.events import Event, InvalidTransitionError, can_requeue
from deadci.core.logging import JSONFormatter, setup_logging
from deadci.core.request_context import request_id_var
from deadci.schemas.events import EventStatus, EventType


class TestConfig:
    """Tests for environment configuration."""

    def test_missing_command(self, monkeypatch):
        """Test that a build command is required."""
        monkeypatch.delenv("DEADCI_COMMAND", raising=False)
        with pytest.raises(ConfigError):
            get_config()

    def test_command_is_split(self):
        """Test shell-style splitting of the build command."""
        assert parse_command("make test ARGS='-v -x'") == ("make", "test", "ARGS=-v -x")

    def test_blank_command(self):
        """Test that a whitespace-only command is rejected."""
        with pytest.raises(ConfigError):
            parse_command("   ")

    def test_defaults(self, monkeypatch):
        """Test default values."""
        for name in (
            "DEADCI_DATA_DIR", "DEADCI_PORT", "DEADCI_HTTPS_CLONE", "DEADCI_GITHUB_ENABLED",
            "DEADCI_GITHUB_TOKEN", "DEADCI_WORKERS", "DEADCI_MAX_CONCURRENT_BUILDS",
            "DEADCI_BUILD_TIMEOUT_S", "DEADCI_DATABASE_URL",
        ):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DEADCI_COMMAND", "./runtests")
        monkeypatch.setenv("DEADCI_HOST", "ci.example.com")

        config = get_config()

        assert config.command == ("./runtests",)
        assert config.port == 9090
        assert config.https_clone is False
        assert config.github_enabled is False
        assert config.github_token is None
        assert config.build_timeout_s == 0
        assert config.max_concurrent_builds == config.workers
        assert config.db_url == f"sqlite:///{Path('data') / 'deadci.db'}"
        assert config.base_url == "http://ci.example.com:9090"

    def test_overrides(self, monkeypatch, tmp_path):
        """Test values read from the environment."""
        monkeypatch.setenv("DEADCI_COMMAND", "./runtests")
        monkeypatch.setenv("DEADCI_DATA_DIR", str(tmp_path) + "/")
        monkeypatch.setenv("DEADCI_PORT", "8080")
        monkeypatch.setenv("DEADCI_HTTPS_CLONE", "true")
        monkeypatch.setenv("DEADCI_WORKERS", "4")
        monkeypatch.setenv("DEADCI_MAX_CONCURRENT_BUILDS", "2")
        monkeypatch.setenv("DEADCI_POLL_INTERVAL_MS", "250")
        monkeypatch.setenv("DEADCI_GITHUB_API_URL", "https://github.example.com/api/v3/")

        config = get_config()

        assert config.data_dir == tmp_path
        assert config.port == 8080
        assert config.https_clone is True
        assert config.workers == 4
        assert config.max_concurrent_builds == 2
        assert config.poll_interval_s == 0.25
        assert config.github_api_url == "https://github.example.com/api/v3"

    def test_invalid_integer(self, monkeypatch):
        """Test that malformed numbers are configuration errors."""
        monkeypatch.setenv("DEADCI_COMMAND", "./runtests")
        monkeypatch.setenv("DEADCI_WORKERS", "many")
        with pytest.raises(ConfigError):
            get_config()

    def test_invalid_boolean(self, monkeypatch):
        """Test that malformed booleans are configuration errors."""
        monkeypatch.setenv("DEADCI_COMMAND", "./runtests")
        monkeypatch.setenv("DEADCI_HTTPS_CLONE", "sometimes")
        with pytest.raises(ConfigError):
            get_config()


class TestEventStateMachine:
    """Tests for allowed status transitions."""

    def test_requeue_allowed_statuses(self):
        """Test which statuses may go back to pending."""
        assert can_requeue(EventStatus.PENDING)
        assert can_requeue(EventStatus.SUCCESS)
        assert can_requeue(EventStatus.FAILED)
        assert can_requeue(EventStatus.FAILED_BOOT)
        assert not can_requeue(EventStatus.RUNNING)

    def test_running_cannot_be_reset(self, make_event):
        """Test that a running event is never reset to pending."""
        event = make_event(status=EventStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            event.reset_pending()

    def test_terminal_requires_running(self, make_event):
        """Test that only running events become terminal."""
        with pytest.raises(InvalidTransitionError):
            make_event().mark_terminal(EventStatus.SUCCESS)

    def test_terminal_status_only(self, make_event):
        """Test that mark_terminal only accepts terminal statuses."""
        event = make_event(status=EventStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            event.mark_terminal(EventStatus.PENDING)
        event.mark_terminal(EventStatus.FAILED_BOOT)
        assert event.is_terminal

    def test_pull_request_reports_to_base(self, make_event):
        """Test that PR events report to the target repository."""
        event = make_event(
            owner="forker",
            type=EventType.PULL_REQUEST,
            base_owner="acme",
            base_repo="gadgets",
            base_branch="main",
        )
        assert event.report_owner == "acme"
        assert event.report_repo == "gadgets"
        assert make_event().report_owner == "acme"

    def test_full_url(self, make_event):
        """Test the detail URL of an event."""
        event = make_event()
        assert event.full_url("http://ci:9090/") == "http://ci:9090/builds/github.com/acme/widgets/main/abc123"

    def test_append_log_accepts_text(self):
        """Test that text is appended as UTF-8."""
        event = Event("github.com", "acme", "widgets", "main", "abc123")
        event.append_log("naïve\n")
        event.append_log(b"raw")
        assert event.log == "naïve\nraw".encode("utf-8")


class TestLogging:
    """Tests for structured JSON logging."""

    def test_json_line_with_extras(self):
        """Test that records become JSON with known extra fields."""
        record = logging.LogRecord("deadci.core.store", logging.INFO, __file__, 1, "event_claimed", None, None)
        record.event_id = 7
        record.unrelated = "dropped"

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "deadci.core.store"
        assert data["message"] == "event_claimed"
        assert data["event_id"] == 7
        assert "unrelated" not in data

    def test_request_id_from_context(self):
        """Test that lines logged while handling a request carry its id."""
        record = logging.LogRecord("deadci.core.store", logging.INFO, __file__, 1, "event_inserted", None, None)
        token = request_id_var.set("delivery-42")
        try:
            data = json.loads(JSONFormatter().format(record))
        finally:
            request_id_var.reset(token)

        assert data["request_id"] == "delivery-42"

    def test_setup_logging_installs_json_handler(self):
        """Test that setup_logging replaces root handlers."""
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
