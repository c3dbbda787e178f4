"""Branch names, branch records and prune reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from branchsync.models import Application, GitBranch, new_id
from branchsync.snapshots import detach_pages

from .executor import REMOTE


REMOTE_PREFIX = f"{REMOTE}/"
CONFLICT_BRANCH_SUFFIX = "_mergeConflict"


def is_remote_qualified(branch: str) -> bool:
    return branch.startswith(REMOTE_PREFIX)


def strip_remote(branch: str) -> str:
    return branch[len(REMOTE_PREFIX):] if is_remote_qualified(branch) else branch


def conflict_branch_name(branch: str) -> str:
    return f"{branch}{CONFLICT_BRANCH_SUFFIX}"


def new_branch_record(source: Application, branch_name: str) -> Application:
    """Branch record for ``branch_name`` cloned from ``source``.

    The copy gets a fresh id and fresh page ids. It never carries key
    material or a privacy flag of its own; both stay on the lineage root.
    """
    record = detach_pages(source)
    record.id = new_id()
    meta = source.git_metadata.model_copy(deep=True)
    meta.branch_name = branch_name
    meta.default_application_id = source.lineage_id
    meta.git_auth = None
    meta.is_repo_private = None
    record.git_metadata = meta
    return record


def mark_default(branches: Iterable[GitBranch], default_branch: Optional[str]) -> List[GitBranch]:
    return [
        GitBranch(name=b.name, is_default=bool(default_branch) and strip_remote(b.name) == default_branch)
        for b in branches
    ]


@dataclass
class PrunePlan:
    """Local branches whose remote counterpart is gone."""

    stale: List[str] = field(default_factory=list)
    remote_default: Optional[str] = None

    def remaining(self, branches: Iterable[GitBranch], deleted: Iterable[str]) -> List[GitBranch]:
        gone = set(deleted)
        return [b for b in branches if b.name not in gone]


def plan_prune(branches: List[GitBranch], protected: Iterable[Optional[str]]) -> PrunePlan:
    """Compare local branches against the fetched remote branch list.

    ``protected`` names (the current branch, the lineage's primary branch)
    are never considered stale.
    """
    keep = {name for name in protected if name}
    remote = {strip_remote(b.name) for b in branches if is_remote_qualified(b.name)}
    stale = [
        b.name
        for b in branches
        if not is_remote_qualified(b.name) and b.name not in remote and b.name not in keep
    ]
    remote_default = next(
        (strip_remote(b.name) for b in branches if b.is_default and is_remote_qualified(b.name)),
        None,
    )
    return PrunePlan(stale=stale, remote_default=remote_default)
