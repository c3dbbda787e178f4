"""Tests for the domain error taxonomy."""
from __future__ import annotations

from branchsync.errors import (
    ActionFailedError,
    BranchSyncError,
    DuplicateBranchNameError,
    InvalidConfigurationError,
    InvalidSshConfigurationError,
    MergeBlockedByRemoteChangesError,
    MergeConflictError,
    NonFastForwardError,
    QuotaExceededError,
    TransportError,
    VcsError,
)


def test_action_failed_names_action_and_detail():
    err = ActionFailedError(" push ", "permission denied")
    assert err.action == "push"
    assert err.message == "git push failed. Details: permission denied"
    assert err.to_dict() == {
        "code": "GIT_ACTION_FAILED",
        "message": "git push failed. Details: permission denied",
        "action": "push",
    }


def test_ssh_configuration_is_a_configuration_error():
    err = InvalidSshConfigurationError()
    assert isinstance(err, InvalidConfigurationError)
    assert err.code == "INVALID_GIT_SSH_CONFIGURATION"
    assert "deploy key" in err.message


def test_non_fast_forward_is_distinct_from_action_failed():
    err = NonFastForwardError()
    assert not isinstance(err, ActionFailedError)
    assert err.code == "GIT_PUSH_REJECTED"
    assert "git pull" in err.message


def test_merge_blocked_by_remote_changes_carries_count_and_branch():
    err = MergeBlockedByRemoteChangesError(2, "main")
    assert err.behind_count == 2
    assert err.branch == "main"
    assert "ahead of local by 2 commits on branch main" in err.message


def test_merge_conflict_lists_files():
    err = MergeConflictError("main", ["pages/Home.json"])
    assert "pages/Home.json" in err.message
    assert err.to_dict()["conflicting_files"] == ["pages/Home.json"]
    assert "unknown files" in MergeConflictError("main").message


def test_codes_are_unique_per_error():
    codes = [
        cls.code
        for cls in (
            ActionFailedError,
            DuplicateBranchNameError,
            InvalidConfigurationError,
            InvalidSshConfigurationError,
            MergeConflictError,
            NonFastForwardError,
            QuotaExceededError,
        )
    ]
    assert len(codes) == len(set(codes))


def test_executor_errors_are_not_domain_errors():
    assert issubclass(TransportError, VcsError)
    assert not issubclass(TransportError, BranchSyncError)
