"""Tests for the GitPython executor against real repositories."""
from __future__ import annotations

from pathlib import Path

import pytest
from git import Repo

from branchsync.errors import EmptyCommitError, NothingToFetchError, VcsCommandError, VcsError
from branchsync.models import Blocked, Mergeable
from branchsync_mcp import observability
from branchsync_mcp.executor import EMPTY_COMMIT_MESSAGE, GitPythonExecutor

from conftest import push_remote_change


SUFFIX = Path("org-1") / "app-1" / "storefront"
AUTHOR = ("Ada", "ada@example.com")


@pytest.fixture
def executor(tmp_path: Path) -> GitPythonExecutor:
    return GitPythonExecutor(tmp_path / "repos", command_timeout=30)


def _write(executor: GitPythonExecutor, name: str, content: str) -> None:
    path = executor.path_for(SUFFIX) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


async def _connected(executor: GitPythonExecutor, remote: Path) -> str:
    branch = await executor.clone(SUFFIX, str(remote), "", "")
    _write(executor, "f.json", "base\n")
    await executor.commit(SUFFIX, "initial", *AUTHOR)
    await executor.push(SUFFIX, str(remote), "", "", branch)
    return branch


@pytest.mark.anyio
async def test_clone_empty_remote(executor: GitPythonExecutor, remote_repo: Path):
    branch = await executor.clone(SUFFIX, str(remote_repo), "", "")
    assert branch == "main"
    assert (executor.path_for(SUFFIX) / ".git").is_dir()
    assert await executor.get_commit_history(SUFFIX) == []


@pytest.mark.anyio
async def test_clone_missing_remote_fails(executor: GitPythonExecutor, tmp_path: Path):
    with pytest.raises(VcsError):
        await executor.clone(SUFFIX, str(tmp_path / "missing.git"), "", "")


@pytest.mark.anyio
async def test_commit_nothing_raises_empty_commit(executor: GitPythonExecutor, remote_repo: Path):
    await _connected(executor, remote_repo)
    with pytest.raises(EmptyCommitError, match=EMPTY_COMMIT_MESSAGE):
        await executor.commit(SUFFIX, "nothing", *AUTHOR)
    assert await executor.commit(SUFFIX, "marker", *AUTHOR, allow_empty=True) == "Committed successfully!"

    history = await executor.get_commit_history(SUFFIX)
    assert [entry.message for entry in history] == ["marker", "initial"]
    assert history[0].author_email == "ada@example.com"


@pytest.mark.anyio
async def test_status_reports_changes_and_remote_counts(
    executor: GitPythonExecutor, remote_repo: Path, tmp_path: Path
):
    branch = await _connected(executor, remote_repo)
    status = await executor.get_status(SUFFIX, branch)
    assert status.is_clean
    assert (status.ahead_count, status.behind_count) == (0, 0)
    assert status.remote_branch == "origin/main"

    _write(executor, "f.json", "changed\n")
    _write(executor, "pages/new.json", "{}\n")
    status = await executor.get_status(SUFFIX, branch)
    assert sorted(status.modified) == ["f.json", "pages/new.json"]
    assert status.added == ["pages/new.json"]

    await executor.commit(SUFFIX, "local", *AUTHOR)
    push_remote_change(remote_repo, tmp_path / "other", "main", {"remote.json": {"by": "remote"}})
    await executor.fetch(SUFFIX, "", "")
    status = await executor.get_status(SUFFIX, branch)
    assert (status.ahead_count, status.behind_count) == (1, 1)


@pytest.mark.anyio
async def test_push_rejected_returns_marker(executor: GitPythonExecutor, remote_repo: Path, tmp_path: Path):
    branch = await _connected(executor, remote_repo)
    push_remote_change(remote_repo, tmp_path / "other", "main", {"remote.json": {"by": "remote"}})
    _write(executor, "f.json", "local\n")
    await executor.commit(SUFFIX, "local", *AUTHOR)

    result = await executor.push(SUFFIX, str(remote_repo), "", "", branch)
    assert result.startswith("REJECTED")


@pytest.mark.anyio
async def test_pull_fast_forward_and_nothing_to_fetch(
    executor: GitPythonExecutor, remote_repo: Path, tmp_path: Path
):
    branch = await _connected(executor, remote_repo)
    with pytest.raises(NothingToFetchError):
        await executor.pull(SUFFIX, str(remote_repo), branch, "", "")

    push_remote_change(remote_repo, tmp_path / "other", "main", {"remote.json": {"by": "remote"}})
    status = await executor.pull(SUFFIX, str(remote_repo), branch, "", "")
    assert status.status == "FAST_FORWARD"
    assert (executor.path_for(SUFFIX) / "remote.json").exists()


@pytest.mark.anyio
async def test_speculative_merge_conflict_then_reset(executor: GitPythonExecutor, remote_repo: Path):
    branch = await _connected(executor, remote_repo)
    await executor.create_and_checkout(SUFFIX, "feature")
    _write(executor, "f.json", "feature\n")
    await executor.commit(SUFFIX, "feature change", *AUTHOR)
    await executor.checkout(SUFFIX, branch)
    _write(executor, "f.json", "main\n")
    await executor.commit(SUFFIX, "main change", *AUTHOR)

    probe = await executor.is_mergeable(SUFFIX, "feature", branch)
    assert isinstance(probe, Blocked)
    assert probe.conflicting_files == ("f.json",)
    assert (await executor.get_status(SUFFIX, branch)).conflicting == ["f.json"]

    await executor.reset_hard(SUFFIX, branch)
    status = await executor.get_status(SUFFIX, branch)
    assert status.conflicting == [] and status.modified == []


@pytest.mark.anyio
async def test_speculative_merge_clean_leaves_tree_untouched(executor: GitPythonExecutor, remote_repo: Path):
    branch = await _connected(executor, remote_repo)
    await executor.create_and_checkout(SUFFIX, "feature")
    _write(executor, "other.json", "{}\n")
    await executor.commit(SUFFIX, "feature change", *AUTHOR)

    assert isinstance(await executor.is_mergeable(SUFFIX, "feature", branch), Mergeable)
    assert (await executor.get_status(SUFFIX, branch)).is_clean
    assert not (executor.path_for(SUFFIX) / "other.json").exists()

    assert await executor.merge(SUFFIX, "feature", branch) == "FAST_FORWARD"
    assert await executor.merge(SUFFIX, "feature", branch) == "ALREADY_UP_TO_DATE"


@pytest.mark.anyio
async def test_list_branches_and_upstreams(executor: GitPythonExecutor, remote_repo: Path):
    branch = await _connected(executor, remote_repo)
    await executor.create_and_checkout(SUFFIX, "feature")
    _write(executor, "feature.json", "{}\n")
    await executor.commit(SUFFIX, "feature change", *AUTHOR)

    branches = await executor.list_branches(SUFFIX, str(remote_repo), "", "", True)
    by_name = {b.name: b.is_default for b in branches}
    assert by_name == {"main": True, "feature": False, "origin/main": True}

    assert await executor.has_upstream(SUFFIX, "feature") is False
    assert await executor.has_upstream(SUFFIX, branch) is True
    assert await executor.has_upstream(SUFFIX, "missing") is False

    await executor.checkout(SUFFIX, branch)
    assert await executor.delete_branch(SUFFIX, "feature") is True
    assert await executor.delete_branch(SUFFIX, "feature") is False


@pytest.mark.anyio
async def test_upstream_survives_remote_branch_deletion(executor: GitPythonExecutor, remote_repo: Path):
    branch = await _connected(executor, remote_repo)
    await executor.create_and_checkout(SUFFIX, "feature")
    _write(executor, "feature.json", "{}\n")
    await executor.commit(SUFFIX, "feature change", *AUTHOR)
    await executor.push(SUFFIX, str(remote_repo), "", "", "feature")
    assert await executor.has_upstream(SUFFIX, "feature") is True

    Repo(remote_repo).git.branch("-D", "feature")
    await executor.checkout(SUFFIX, branch)
    await executor.fetch(SUFFIX, "", "", True)
    branches = {b.name for b in await executor.list_branches(SUFFIX, str(remote_repo), "", "", True)}
    assert "origin/feature" not in branches
    assert await executor.has_upstream(SUFFIX, "feature") is True


@pytest.mark.anyio
async def test_primitives_log_their_duration(executor: GitPythonExecutor, remote_repo: Path, monkeypatch):
    logged = []
    monkeypatch.setattr(
        observability, "log_action", lambda action, **fields: logged.append((action, fields["outcome"]))
    )
    await executor.clone(SUFFIX, str(remote_repo), "", "")
    with pytest.raises(VcsCommandError):
        await executor.checkout(SUFFIX, "does-not-exist")
    assert ("git.clone", "ok") in logged
    assert ("git.checkout", "error") in logged


@pytest.mark.anyio
async def test_checkout_remote_branch(executor: GitPythonExecutor, remote_repo: Path, tmp_path: Path):
    await _connected(executor, remote_repo)
    push_remote_change(
        remote_repo, tmp_path / "other", "remote-feature", {"remote.json": {"by": "remote"}}, new_branch=True
    )
    await executor.fetch(SUFFIX, "", "")
    assert await executor.checkout_remote(SUFFIX, "remote-feature") == "remote-feature"
    repo = Repo(executor.path_for(SUFFIX))
    assert repo.active_branch.name == "remote-feature"
    assert repo.active_branch.tracking_branch().name == "origin/remote-feature"


@pytest.mark.anyio
async def test_checkout_unknown_branch(executor: GitPythonExecutor, remote_repo: Path):
    await _connected(executor, remote_repo)
    with pytest.raises(VcsCommandError):
        await executor.checkout(SUFFIX, "does-not-exist")


@pytest.mark.anyio
async def test_fetch_prune_drops_deleted_remote_branches(executor: GitPythonExecutor, remote_repo: Path):
    branch = await _connected(executor, remote_repo)
    await executor.create_and_checkout(SUFFIX, "feature")
    await executor.push(SUFFIX, str(remote_repo), "", "", "feature")
    await executor.checkout(SUFFIX, branch)

    Repo(remote_repo).git.branch("-D", "feature")
    await executor.fetch(SUFFIX, "", "", prune=True)
    names = {b.name for b in await executor.list_branches(SUFFIX, str(remote_repo), "", "", False)}
    assert "origin/feature" not in names
    assert "feature" in names
