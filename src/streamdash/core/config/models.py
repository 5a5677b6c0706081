"""
Configuration data models for streamdash.

These models define the structure of .streamdash.json and
~/.config/streamdash/config.json files, with validation and type
safety via Pydantic.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ApiConfig(BaseModel):
    """
    HTTP API server settings.

    The port is optional: when unset, a deterministic per-project port
    is derived during discovery.
    """
    enabled: bool = Field(
        default=True,
        description="Whether the dashboard API server may be started"
    )
    host: str = Field(
        default="127.0.0.1",
        description="Interface the API server binds to"
    )
    port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Fixed port (defaults to a per-project port)"
    )


class ScannerConfig(BaseModel):
    """
    Periodic commit scanner settings.
    """
    interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between commit scan passes"
    )
    git_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Kill a git call for a single worktree after this many seconds"
    )
    max_commits: int = Field(
        default=50,
        ge=1,
        description="Maximum commits read from one worktree per pass"
    )
    run_on_start: bool = Field(
        default=True,
        description="Run a scan pass as soon as the server starts"
    )


class EventsConfig(BaseModel):
    """
    Server-Sent Events settings.
    """
    heartbeat_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval of comment-only heartbeat frames"
    )
    queue_size: int = Field(
        default=100,
        ge=1,
        description="Pending frames per client before the client is dropped"
    )


class DiscoveryConfig(BaseModel):
    """
    Server discovery and lock settings.
    """
    base_port: int = Field(
        default=3001,
        ge=1024,
        le=65535,
        description="Lowest port of the per-project port range"
    )
    port_span: int = Field(
        default=1000,
        ge=1,
        description="Size of the range the per-project port is hashed into"
    )
    port_attempts: int = Field(
        default=10,
        ge=1,
        description="Ports probed forward from the preferred port"
    )
    claim_attempts: int = Field(
        default=3,
        ge=1,
        description="Discovery retries after losing a bind race"
    )
    probe: bool = Field(
        default=True,
        description="Confirm a live lock by calling the server's /health endpoint"
    )
    probe_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Timeout of the /health probe"
    )


class StreamdashConfig(BaseModel):
    """
    Main streamdash configuration model.

    Represents the merged configuration from defaults, user config,
    project config, and environment variables.

    Example:
        >>> config = StreamdashConfig(project_root=Path("/work/app"))
        >>> config.project_name
        'app'
    """
    project_root: Path
    project_name: str = ""
    database_path: Optional[Path] = None
    lock_file_path: Optional[Path] = None
    base_branch: str = Field(
        default="main",
        min_length=1,
        description="Branch that stream branches are compared and merged against"
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)

    model_config = ConfigDict(
        extra="ignore",
    )

    @field_validator("project_root")
    @classmethod
    def _absolute_root(cls, v: Path) -> Path:
        return Path(v).expanduser().resolve()

    def model_post_init(self, __context: object) -> None:
        if not self.project_name:
            self.project_name = self.project_root.name
        storage_dir = get_project_storage_dir(self.project_name)
        if self.database_path is None:
            self.database_path = storage_dir / "streams.db"
        if self.lock_file_path is None:
            self.lock_file_path = storage_dir / ".api-server.lock"

    @property
    def db_path(self) -> Path:
        """Resolved database path."""
        assert self.database_path is not None
        return Path(self.database_path)

    @property
    def lock_path(self) -> Path:
        """Resolved lock file path."""
        assert self.lock_file_path is not None
        return Path(self.lock_file_path)


def get_xdg_cache_home() -> Path:
    """Get XDG cache home directory (defaults to ~/.cache)."""
    if xdg_cache := os.environ.get("XDG_CACHE_HOME"):
        return Path(xdg_cache)
    return Path.home() / ".cache"


def get_project_storage_dir(project_name: str) -> Path:
    """
    Get the per-project storage directory.

    Database and lock file live outside the repository so that every
    worktree of the project resolves to the same store:
    ~/.cache/streamdash/projects/{project_name}/
    """
    return get_xdg_cache_home() / "streamdash" / "projects" / project_name
