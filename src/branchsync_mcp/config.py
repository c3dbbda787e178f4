"""Service wiring for the branchsync MCP server.

Builds one ``BranchSyncOrchestrator`` from the loaded configuration and
caches it for the life of the process.
"""

from __future__ import annotations

import os
import subprocess
import threading
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from branchsync.config_loader import get_config
from branchsync.config_schema import BranchSyncConfig
from branchsync.materializer import JsonTreeMaterializer
from branchsync.models import User
from branchsync.quota import PrivateRepoQuota
from branchsync.remote import RepoVisibilityProbe
from branchsync.store import InMemoryMetadataStore, InMemoryUserDataStore

from .arena import WorkingTreeArena
from .completion import CompletionSink
from .executor import GitPythonExecutor
from .observability import log_debug
from .orchestrator import BranchSyncOrchestrator


__all__ = [
    "get_branchsync_config",
    "reload_config",
    "get_orchestrator",
    "build_orchestrator",
    "reset_orchestrator",
    "get_mcp_transport_config",
    "get_version",
]


USER_DATA_FILENAME = "users.json"

_loaded_config: Optional[BranchSyncConfig] = None
_orchestrator: Optional[BranchSyncOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_branchsync_config(project_path: Optional[Path] = None) -> BranchSyncConfig:
    """Get the loaded configuration, falling back to defaults if loading fails."""
    global _loaded_config

    if _loaded_config is None:
        try:
            _loaded_config = get_config(project_path)
        except Exception as e:
            log_debug(f"Config loading failed, using defaults: {e}")
            _loaded_config = BranchSyncConfig()

    return _loaded_config


def reload_config(project_path: Optional[Path] = None) -> BranchSyncConfig:
    global _loaded_config
    _loaded_config = None
    return get_branchsync_config(project_path)


def _run_git_config(key: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "config", "--get", key],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    value = result.stdout.strip()
    return value or None


def _get_platform_identity(config: BranchSyncConfig) -> Tuple[str, str]:
    """Name and email of the operating user.

    Resolution order:
    1. server.user_name / server.user_email (config or env)
    2. git config user.name / user.email
    3. local account name
    """
    name = config.server.user_name or _run_git_config("user.name") or ""
    email = config.server.user_email or _run_git_config("user.email") or ""
    if not email:
        account = os.getenv("USER") or os.getenv("USERNAME") or "operator"
        email = f"{account}@localhost"
    return name, email


def build_orchestrator(config: BranchSyncConfig) -> BranchSyncOrchestrator:
    root = config.repos_root()
    store_path = Path(config.store.path).expanduser() if config.store.path else None
    user_data_path = store_path.with_name(USER_DATA_FILENAME) if store_path else None
    name, email = _get_platform_identity(config)

    return BranchSyncOrchestrator(
        store=InMemoryMetadataStore(store_path),
        user_store=InMemoryUserDataStore(user_data_path),
        user=User(email=email, name=name),
        executor=GitPythonExecutor(
            root,
            bot_name=config.git.bot_name,
            bot_email=config.git.bot_email,
            command_timeout=config.git.command_timeout,
        ),
        materializer=JsonTreeMaterializer(root),
        arena=WorkingTreeArena(
            root,
            lock_timeout=config.git.lock_timeout,
            lock_ttl=config.git.lock_ttl,
        ),
        probe=RepoVisibilityProbe(timeout=config.quota.probe_timeout),
        quota=PrivateRepoQuota(default_limit=config.quota.private_repo_limit),
        completion=CompletionSink(),
        bot_name=config.git.bot_name,
        bot_email=config.git.bot_email,
        origin=config.server.origin,
    )


def get_orchestrator() -> BranchSyncOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator(get_branchsync_config())
        return _orchestrator


def reset_orchestrator(orchestrator: Optional[BranchSyncOrchestrator] = None) -> None:
    """Replace (or drop, with None) the cached orchestrator."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = orchestrator


def get_mcp_transport_config() -> Dict[str, Any]:
    """Get MCP transport configuration.

    Returns dict with keys: transport, host, port
    """
    config = get_branchsync_config()
    return {
        "transport": config.server.transport,
        "host": config.server.host,
        "port": config.server.port,
    }


def get_version() -> str:
    try:
        return importlib_metadata.version("branchsync")
    except importlib_metadata.PackageNotFoundError:
        return os.getenv("BRANCHSYNC_VERSION", "0.0.0")
