"""
DeadCI configuration from environment variables.
Built once at startup and passed explicitly to every component.
"""
import os
import shlex
import socket
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class ConfigError(Exception):
    """Invalid or missing configuration."""
    pass


@dataclass(frozen=True)
class DeadCIConfig:
    """DeadCI configuration (immutable)."""
    command: tuple[str, ...]
    data_dir: Path = Path("data")
    database_url: Optional[str] = None
    host: str = "localhost"
    port: int = 9090
    temp_dir: Path = Path(tempfile.gettempdir())
    https_clone: bool = False
    # GitHub provider
    github_enabled: bool = False
    github_token: Optional[str] = None  # Never logged
    github_secret: Optional[str] = None  # Never logged
    github_api_url: str = "https://api.github.com"
    # Worker pool
    workers: int = 1
    max_concurrent_builds: int = 1
    poll_interval_s: float = 0.1
    build_timeout_s: int = 0
    log_level: str = "INFO"

    @property
    def db_url(self) -> str:
        """SQLAlchemy URL of the event database."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'deadci.db'}"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def workspace_root(self) -> Path:
        return self.temp_dir / "deadci"


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def parse_command(raw: Optional[str]) -> tuple[str, ...]:
    """Split the build command into argv, honouring shell-style quoting."""
    if raw is None or not raw.strip():
        raise ConfigError(
            "Missing DEADCI_COMMAND. Please specify a command to run to build / test your repositories."
        )
    try:
        argv = shlex.split(raw)
    except ValueError as e:
        raise ConfigError(f"DEADCI_COMMAND could not be parsed: {e}")
    if not argv:
        raise ConfigError("DEADCI_COMMAND is empty")
    return tuple(argv)


def get_config() -> DeadCIConfig:
    """Load DeadCI configuration from environment."""
    data_dir = Path(os.getenv("DEADCI_DATA_DIR", "data").rstrip("/ ") or "data")

    host = os.getenv("DEADCI_HOST", "").strip()
    if not host:
        host = socket.gethostname()

    temp_dir = os.getenv("DEADCI_TEMP_DIR", "").strip().rstrip("/")
    workers = _get_int("DEADCI_WORKERS", os.cpu_count() or 1, minimum=1)

    return DeadCIConfig(
        command=parse_command(os.getenv("DEADCI_COMMAND")),
        data_dir=data_dir,
        database_url=os.getenv("DEADCI_DATABASE_URL") or None,
        host=host,
        port=_get_int("DEADCI_PORT", 9090, minimum=1),
        temp_dir=Path(temp_dir) if temp_dir else Path(tempfile.gettempdir()),
        https_clone=_get_bool("DEADCI_HTTPS_CLONE", False),
        github_enabled=_get_bool("DEADCI_GITHUB_ENABLED", False),
        github_token=os.getenv("DEADCI_GITHUB_TOKEN") or None,
        github_secret=os.getenv("DEADCI_GITHUB_SECRET") or None,
        github_api_url=os.getenv("DEADCI_GITHUB_API_URL", "https://api.github.com").rstrip("/"),
        workers=workers,
        max_concurrent_builds=_get_int("DEADCI_MAX_CONCURRENT_BUILDS", workers, minimum=1),
        poll_interval_s=_get_int("DEADCI_POLL_INTERVAL_MS", 100, minimum=1) / 1000,
        build_timeout_s=_get_int("DEADCI_BUILD_TIMEOUT_S", 0),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
