"""Configuration schema for branchsync.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class GitConfig(BaseModel):
    """Working-tree and git behaviour settings."""

    root_dir: str = Field(
        default="~/.branchsync/repos",
        description="Root directory holding one working tree per lineage",
    )
    bot_name: str = Field(
        default="branchsync-bot",
        description="Author name for commits made on the platform's behalf",
    )
    bot_email: str = Field(
        default="bot@branchsync.dev",
        description="Author email for commits made on the platform's behalf",
    )
    lock_timeout: float = Field(
        default=120.0,
        ge=0,
        description="Seconds to wait for a working-tree lock held by another process",
    )
    lock_ttl: int = Field(
        default=600,
        ge=0,
        description="Seconds before a working-tree lock file is considered stale (0 = never)",
    )
    command_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds allowed for a single network git command",
    )

    @field_validator("root_dir")
    @classmethod
    def validate_root_dir(cls, v: str) -> str:
        """Warn if the arena root exists but is not a directory."""
        path = Path(v).expanduser()
        if path.exists() and not path.is_dir():
            warnings.warn(
                f"Working tree root exists but is not a directory: {v}",
                UserWarning,
            )
        return v


class QuotaConfig(BaseModel):
    """Private repository quota settings."""

    private_repo_limit: int = Field(
        default=3,
        ge=-1,
        description="Private repositories allowed per organization (-1 = unlimited)",
    )
    probe_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for the repository visibility probe",
    )


class StoreConfig(BaseModel):
    """Metadata store settings."""

    path: str = Field(
        default="",
        description="JSON file persisting application records (empty = in-memory only)",
    )


class ServerConfig(BaseModel):
    """MCP server settings."""

    transport: Literal["stdio", "http"] = Field(
        default="stdio",
        description="MCP transport",
    )
    host: str = Field(
        default="127.0.0.1",
        description="Host for HTTP transport",
    )
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port for HTTP transport",
    )
    origin: str = Field(
        default="http://localhost:8080",
        description="Base URL of the editor, used in README view/edit links",
    )
    user_email: str = Field(
        default="",
        description="Email of the operating user (empty = derive from git config)",
    )
    user_name: str = Field(
        default="",
        description="Display name of the operating user",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.branchsync/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if log directory doesn't exist (will be created on use)."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class BranchSyncConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    git: GitConfig = Field(default_factory=GitConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "BranchSyncConfig":
        """Create config with all defaults."""
        return cls()

    def repos_root(self) -> Path:
        return Path(self.git.root_dir).expanduser()
