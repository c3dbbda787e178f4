"""Tests for branch naming, prune planning and merge readiness."""
from __future__ import annotations

import pytest

from branchsync.errors import (
    MergeBlockedByLocalChangesError,
    MergeBlockedByRemoteChangesError,
    UnsupportedForRemoteBranchError,
)
from branchsync.keys import generate_deploy_key
from branchsync.models import Application, Blocked, GitBranch, GitMetadata, GitStatus, Mergeable, Page
from branchsync_mcp.branches import (
    conflict_branch_name,
    mark_default,
    new_branch_record,
    plan_prune,
    strip_remote,
)
from branchsync_mcp.merging import BlockReason, assess_branch, raise_if_blocked, require_local_names


def test_strip_remote_and_conflict_name():
    assert strip_remote("origin/feature") == "feature"
    assert strip_remote("feature") == "feature"
    assert conflict_branch_name("main") == "main_mergeConflict"


def test_new_branch_record_strips_key_and_privacy():
    root = Application(organization_id="org-1", name="App", pages=[Page(name="Home", is_default=True)])
    root.git_metadata = GitMetadata(
        default_application_id=root.id,
        branch_name="main",
        repo_name="storefront",
        is_repo_private=True,
        git_auth=generate_deploy_key(),
    )
    record = new_branch_record(root, "feature")
    assert record.id != root.id
    assert record.pages[0].id != root.pages[0].id
    assert record.git_metadata.branch_name == "feature"
    assert record.git_metadata.default_application_id == root.id
    assert record.git_metadata.git_auth is None
    assert record.git_metadata.is_repo_private is None
    assert not record.is_root
    # Source untouched
    assert root.git_metadata.git_auth is not None


def test_mark_default_matches_remote_names():
    branches = [GitBranch("main"), GitBranch("feature"), GitBranch("origin/main")]
    marked = mark_default(branches, "main")
    assert [b.is_default for b in marked] == [True, False, True]
    assert not any(b.is_default for b in mark_default(branches, None))


def test_plan_prune_spares_protected_branches():
    branches = [
        GitBranch("main", is_default=True),
        GitBranch("feature"),
        GitBranch("current"),
        GitBranch("gone"),
        GitBranch("origin/main", is_default=True),
        GitBranch("origin/feature"),
    ]
    plan = plan_prune(branches, protected=("main", "current", None))
    assert plan.stale == ["gone"]
    assert plan.remote_default == "main"
    assert [b.name for b in plan.remaining(branches, ["gone"])] == [
        "main", "feature", "current", "origin/main", "origin/feature",
    ]


def test_plan_prune_without_remote_default():
    plan = plan_prune([GitBranch("main")], protected=("main",))
    assert plan.stale == []
    assert plan.remote_default is None


def test_assess_branch_behind_remote():
    probe = assess_branch(GitStatus(behind_count=2, modified=["pages/Home.json"]), "main")
    assert probe == Blocked(reason=BlockReason.REMOTE_CHANGES.value, branch="main", behind_count=2)
    with pytest.raises(MergeBlockedByRemoteChangesError) as exc_info:
        raise_if_blocked(probe)
    assert exc_info.value.behind_count == 2


def test_assess_branch_local_changes():
    probe = assess_branch(GitStatus(modified=["pages/Home.json"]), "feature")
    with pytest.raises(MergeBlockedByLocalChangesError) as exc_info:
        raise_if_blocked(probe)
    assert exc_info.value.branch == "feature"


def test_assess_branch_ready():
    probe = assess_branch(GitStatus(ahead_count=3), "main")
    assert isinstance(probe, Mergeable)
    raise_if_blocked(probe)


def test_require_local_names():
    require_local_names("main", "feature")
    with pytest.raises(UnsupportedForRemoteBranchError):
        require_local_names("main", "origin/feature")
