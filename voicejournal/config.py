"""
Configuration management for voicejournal.

The configuration is stored as a TOML file in the store directory.
It specifies the AI backend, the retry policy, and the workspaces.

Environment variables override the file:
    VOICEJOURNAL_STORE_PATH       store directory (default ~/.voicejournal)
    VOICEJOURNAL_AI_API_BASE_URL  AI backend base URL
    VOICEJOURNAL_AI_API_TOKEN     optional bearer token
    VOICEJOURNAL_MAX_ATTEMPTS     failed attempts before a job errors
    VOICEJOURNAL_REQUEST_TIMEOUT  AI backend request timeout, seconds
    VOICEJOURNAL_WORKSPACE        workspace used when none is given
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .job_queue import RETRY_BACKOFF_SECONDS, STALE_CLAIM_SECONDS
from .types import DEFAULT_MAX_ATTEMPTS
from .workspace import DEFAULT_WORKSPACE, WorkspaceRouter


CONFIG_FILENAME = "voicejournal.toml"
CONFIG_VERSION = 1

DEFAULT_REQUEST_TIMEOUT = 60.0


def get_default_store_path() -> Path:
    """Store directory: VOICEJOURNAL_STORE_PATH or ~/.voicejournal."""
    env = os.environ.get("VOICEJOURNAL_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".voicejournal"


@dataclass
class BackendConfig:
    """Where the AI backend lives and how to talk to it."""
    base_url: str = ""
    token: str = ""
    timeout: float = DEFAULT_REQUEST_TIMEOUT


@dataclass
class QueueConfig:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff: float = RETRY_BACKOFF_SECONDS  # seconds, doubled per attempt
    stale_claim_seconds: float = STALE_CLAIM_SECONDS


@dataclass
class WorkspacesConfig:
    names: list[str] = field(default_factory=lambda: [DEFAULT_WORKSPACE])
    default: str = DEFAULT_WORKSPACE


@dataclass
class JournalConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    backend: BackendConfig = field(default_factory=BackendConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workspaces: WorkspacesConfig = field(default_factory=WorkspacesConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def validate(self) -> None:
        if self.queue.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1 (got {self.queue.max_attempts})")
        if self.queue.retry_backoff < 0:
            raise ValueError(f"retry_backoff must not be negative (got {self.queue.retry_backoff})")
        if self.queue.stale_claim_seconds < 0:
            raise ValueError(
                f"stale_claim_seconds must not be negative (got {self.queue.stale_claim_seconds})"
            )
        if self.backend.timeout <= 0:
            raise ValueError(f"Request timeout must be positive (got {self.backend.timeout})")
        if not self.workspaces.names:
            raise ValueError("At least one workspace is required")
        if self.workspaces.default not in self.workspaces.names:
            raise ValueError(
                f"Default workspace {self.workspaces.default!r} is not one of "
                f"{', '.join(self.workspaces.names)}"
            )

    def make_router(self) -> WorkspaceRouter:
        """A router over this store's workspaces."""
        return WorkspaceRouter(
            self.path,
            workspaces=self.workspaces.names,
            default=self.workspaces.default,
        )


def apply_env_overrides(config: JournalConfig) -> JournalConfig:
    """Return a copy of config with VOICEJOURNAL_* environment values applied."""
    backend = replace(config.backend)
    queue = replace(config.queue)
    workspaces = replace(config.workspaces, names=list(config.workspaces.names))

    if os.environ.get("VOICEJOURNAL_AI_API_BASE_URL"):
        backend.base_url = os.environ["VOICEJOURNAL_AI_API_BASE_URL"].strip()
    if os.environ.get("VOICEJOURNAL_AI_API_TOKEN"):
        backend.token = os.environ["VOICEJOURNAL_AI_API_TOKEN"].strip()
    if os.environ.get("VOICEJOURNAL_REQUEST_TIMEOUT"):
        try:
            backend.timeout = float(os.environ["VOICEJOURNAL_REQUEST_TIMEOUT"])
        except ValueError:
            raise ValueError("VOICEJOURNAL_REQUEST_TIMEOUT must be a number of seconds")
    if os.environ.get("VOICEJOURNAL_MAX_ATTEMPTS"):
        try:
            queue.max_attempts = int(os.environ["VOICEJOURNAL_MAX_ATTEMPTS"])
        except ValueError:
            raise ValueError("VOICEJOURNAL_MAX_ATTEMPTS must be an integer")
    if os.environ.get("VOICEJOURNAL_WORKSPACE"):
        workspaces.default = os.environ["VOICEJOURNAL_WORKSPACE"].strip()

    result = replace(config, backend=backend, queue=queue, workspaces=workspaces)
    result.validate()
    return result


def load_config(store_path: Path) -> JournalConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    backend = data.get("backend", {})
    queue = data.get("queue", {})
    workspaces = data.get("workspaces", {})
    names = list(workspaces.get("names") or [DEFAULT_WORKSPACE])

    config = JournalConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        backend=BackendConfig(
            base_url=str(backend.get("base_url", "")),
            token=str(backend.get("token", "")),
            timeout=float(backend.get("timeout", DEFAULT_REQUEST_TIMEOUT)),
        ),
        queue=QueueConfig(
            max_attempts=int(queue.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            retry_backoff=float(queue.get("retry_backoff", RETRY_BACKOFF_SECONDS)),
            stale_claim_seconds=float(queue.get("stale_claim_seconds", STALE_CLAIM_SECONDS)),
        ),
        workspaces=WorkspacesConfig(
            names=names,
            default=str(workspaces.get("default") or names[0]),
        ),
    )
    config.validate()
    return config


def save_config(config: JournalConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "backend": {
            "base_url": config.backend.base_url,
            "token": config.backend.token,
            "timeout": config.backend.timeout,
        },
        "queue": {
            "max_attempts": config.queue.max_attempts,
            "retry_backoff": config.queue.retry_backoff,
            "stale_claim_seconds": config.queue.stale_claim_seconds,
        },
        "workspaces": {
            "names": list(config.workspaces.names),
            "default": config.workspaces.default,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> JournalConfig:
    """
    Load existing config or create a new one with defaults, then apply
    environment overrides.

    This is the main entry point for config management.
    """
    store_path = Path(store_path) if store_path else get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = JournalConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config)
