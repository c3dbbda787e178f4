"""Merge readiness checks.

A branch can take part in a merge only when it is level with its tracked
remote and has nothing uncommitted. Readiness is evaluated as a
``Mergeable | Blocked`` value first; the orchestrator decides whether a
``Blocked`` result becomes an error.
"""

from __future__ import annotations

from enum import Enum

from branchsync.errors import (
    MergeBlockedByLocalChangesError,
    MergeBlockedByRemoteChangesError,
    UnsupportedForRemoteBranchError,
)
from branchsync.models import Blocked, GitStatus, Mergeable, MergeProbe

from .branches import is_remote_qualified


class BlockReason(str, Enum):
    """Why a branch is not ready for a merge."""

    REMOTE_CHANGES = "remote_changes"  # behind its remote, needs a pull
    LOCAL_CHANGES = "local_changes"  # uncommitted paths, needs a commit


def assess_branch(status: GitStatus, branch: str) -> MergeProbe:
    if status.behind_count > 0:
        return Blocked(
            reason=BlockReason.REMOTE_CHANGES.value,
            branch=branch,
            behind_count=status.behind_count,
        )
    if status.modified:
        return Blocked(reason=BlockReason.LOCAL_CHANGES.value, branch=branch)
    return Mergeable()


def raise_if_blocked(probe: MergeProbe) -> None:
    """Turn a readiness ``Blocked`` into its domain error."""
    if isinstance(probe, Mergeable):
        return
    if probe.reason == BlockReason.REMOTE_CHANGES.value:
        raise MergeBlockedByRemoteChangesError(probe.behind_count, probe.branch)
    raise MergeBlockedByLocalChangesError(probe.branch)


def require_local_names(*branches: str) -> None:
    for branch in branches:
        if is_remote_qualified(branch):
            raise UnsupportedForRemoteBranchError(branch)
