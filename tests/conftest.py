from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from git import Actor, Repo

from branchsync.fs import dump_json


GIT_ENV = {
    # Deterministic branch names and no signing prompts for every git call
    "GIT_CONFIG_COUNT": "2",
    "GIT_CONFIG_KEY_0": "init.defaultBranch",
    "GIT_CONFIG_VALUE_0": "main",
    "GIT_CONFIG_KEY_1": "commit.gpgsign",
    "GIT_CONFIG_VALUE_1": "false",
}

TEST_ACTOR = Actor("Remote Author", "remote@example.com")


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))
    # Keep test runs from writing session logs under ~/.branchsync
    os.environ.setdefault("BRANCHSYNC_LOG_DISABLE_FILE", "1")
    os.environ.update(GIT_ENV)


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use asyncio backend only.

    The executor and stores use asyncio.to_thread, which is incompatible
    with trio.
    """
    return "asyncio"


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Empty bare repository acting as the remote."""
    path = tmp_path / "remote" / "storefront.git"
    path.mkdir(parents=True)
    Repo.init(path, bare=True, initial_branch="main")
    return path


def push_remote_change(
    remote: Path,
    workdir: Path,
    branch: str,
    files: dict,
    *,
    message: str = "remote change",
    new_branch: bool = False,
) -> str:
    """Commit ``files`` (relative path -> JSON document) on ``branch`` from a
    separate clone and push it. Returns the new commit sha."""
    if workdir.exists():
        repo = Repo(workdir)
        repo.git.fetch("origin")
    else:
        repo = Repo.clone_from(str(remote), workdir)
    if new_branch:
        repo.git.checkout("-B", branch, "origin/main")
    else:
        repo.git.checkout("-B", branch, f"origin/{branch}")
    for rel_path, document in files.items():
        target = workdir / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(dump_json(document), encoding="utf-8")
        repo.index.add([rel_path])
    commit = repo.index.commit(message, author=TEST_ACTOR, committer=TEST_ACTOR)
    repo.git.push("origin", f"{branch}:{branch}")
    return commit.hexsha


def home_page_document(title: str) -> dict:
    return {"name": "Home", "is_default": True, "layout": {"title": title}}
