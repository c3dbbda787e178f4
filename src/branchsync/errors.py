"""Error taxonomy for branch-synchronized version control.

Domain errors (``BranchSyncError`` subclasses) are what callers of the
orchestrator see. Executor errors (``VcsError`` subclasses) are raised by the
VCS executor and are always normalized by the orchestrator before they reach
a caller.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


GIT_CONFIG_ERROR = (
    "Unable to find the git configuration, please configure your application "
    "with git to use version control service"
)
PUSH_REJECTED_MESSAGE = (
    "Failed to push some refs to remote\n"
    "> To prevent you from losing history, non-fast-forward updates were rejected\n"
    "> Merge the remote changes (e.g. 'git pull') before pushing again."
)
PULL_UNCOMMITTED_MESSAGE = (
    "There are uncommitted changes present in your local. "
    "Please commit them first and then try git pull"
)


class BranchSyncError(Exception):
    """Base class for errors surfaced by branchsync operations."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidParameterError(BranchSyncError):
    """A required input is missing or malformed."""

    code = "INVALID_PARAMETER"

    def __init__(self, parameter: str):
        super().__init__(f"Please enter a valid parameter {parameter}.")
        self.parameter = parameter


class InvalidConfigurationError(BranchSyncError):
    """Version-control metadata is incomplete or unusable."""

    code = "INVALID_GIT_CONFIGURATION"

    def __init__(self, detail: str = GIT_CONFIG_ERROR):
        super().__init__(f"Git configuration is invalid. Details: {detail}")
        self.detail = detail


class InvalidSshConfigurationError(InvalidConfigurationError):
    """The lineage has no usable deploy key pair."""

    code = "INVALID_GIT_SSH_CONFIGURATION"

    def __init__(self, detail: str = "SSH key pair is missing for the application"):
        super().__init__(
            f"{detail}. Please generate a deploy key and add it to the remote repository"
        )


class ActionFailedError(BranchSyncError):
    """A VCS primitive failed while performing ``action``."""

    code = "GIT_ACTION_FAILED"

    def __init__(self, action: str, detail: str):
        action = action.strip()
        super().__init__(f"git {action} failed. Details: {detail}")
        self.action = action
        self.detail = detail

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["action"] = self.action
        return payload


class NonFastForwardError(BranchSyncError):
    """The remote rejected a push because it would rewrite history."""

    code = "GIT_PUSH_REJECTED"

    def __init__(self, detail: str = PUSH_REJECTED_MESSAGE):
        super().__init__(f"git push failed. Details: {detail}")
        self.action = "push"
        self.detail = detail


class QuotaExceededError(BranchSyncError):
    code = "GIT_APPLICATION_LIMIT_ERROR"

    def __init__(self, limit: int):
        super().__init__(
            f"You have reached the limit of {limit} private git repositories "
            "for this organization. Make the repository public or upgrade your plan."
        )
        self.limit = limit


class DuplicateBranchNameError(BranchSyncError):
    code = "DUPLICATE_KEY_USER_ERROR"

    def __init__(self, branch: str):
        super().__init__(
            f"remotes/origin/{branch} already exists. Please use a different branch name."
        )
        self.branch = branch


class UnsupportedForRemoteBranchError(BranchSyncError):
    code = "UNSUPPORTED_OPERATION_FOR_REMOTE_BRANCH"

    def __init__(self, branch: str):
        super().__init__(
            f"This operation is not supported for remote branch {branch}. "
            "Please use the local branch name instead."
        )
        self.branch = branch


class MergeBlockedByRemoteChangesError(BranchSyncError):
    code = "GIT_MERGE_FAILED_REMOTE_CHANGES"

    def __init__(self, behind_count: int, branch: str):
        super().__init__(
            f"Remote is ahead of local by {behind_count} commits on branch {branch}. "
            "Please pull remote changes first and try again."
        )
        self.behind_count = behind_count
        self.branch = branch


class MergeBlockedByLocalChangesError(BranchSyncError):
    code = "GIT_MERGE_FAILED_LOCAL_CHANGES"

    def __init__(self, branch: str):
        super().__init__(
            f"There are uncommitted changes present in your local branch {branch}. "
            "Please commit them first and try again."
        )
        self.branch = branch


class MergeConflictError(BranchSyncError):
    code = "GIT_MERGE_CONFLICTS"

    def __init__(self, branch: str, conflicting_files: Optional[Sequence[str]] = None):
        self.branch = branch
        self.conflicting_files: List[str] = list(conflicting_files or [])
        files = ", ".join(self.conflicting_files) or "unknown files"
        super().__init__(
            f"Merge conflicts found on branch {branch} ({files}). Please resolve them "
            "manually on the remote, or create a conflicted branch and pull again."
        )

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["conflicting_files"] = list(self.conflicting_files)
        return payload


class RepoNotEmptyError(BranchSyncError):
    code = "INVALID_GIT_REPO"

    def __init__(self) -> None:
        super().__init__(
            "The remote repository is not empty. Please use an empty repository "
            "to connect the application."
        )


class ResourceNotFoundError(BranchSyncError):
    code = "NO_RESOURCE_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"Unable to find {resource} {identifier}")
        self.resource = resource
        self.identifier = identifier


class FileSystemError(BranchSyncError):
    code = "GIT_FILE_SYSTEM_ERROR"

    def __init__(self, detail: str):
        super().__init__(f"Error while accessing the file system. Details: {detail}")
        self.detail = detail


# Executor-level errors. Never surfaced to callers directly.


class VcsError(Exception):
    """Failure inside a VCS executor primitive."""


class TransportError(VcsError):
    """Network or authentication failure talking to the remote."""


class EmptyCommitError(VcsError):
    """Nothing staged for commit."""


class NothingToFetchError(VcsError):
    """The tracked remote branch has no new commits."""


class VcsMergeConflictError(VcsError):
    def __init__(self, message: str, conflicting_files: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.conflicting_files: List[str] = list(conflicting_files or [])


class VcsCommandError(VcsError):
    """Any other git failure."""
