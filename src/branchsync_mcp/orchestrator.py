"""Branch sync orchestrator.

Keeps three stores consistent for every git-connected application lineage:

- the metadata store (application records, one per branch)
- the working tree (a materialized copy of one branch at a time)
- the remote repository

Every public operation is started as a detached task through the
``CompletionSink`` and runs to completion even if its caller goes away. Work
on a working tree happens while holding that tree's arena key; helpers named
``_*_locked`` expect the key to be held already and never take it again.

Protocol per operation, in short:

1. load the lineage root and the branch record, validate metadata
2. take the working-tree key
3. check out the branch and materialize its database snapshot
4. run the VCS primitives
5. rehydrate the database from the working tree when git changed it
6. commit/push the rehydrated state so database and remote re-converge
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import httpx

from branchsync.errors import (
    GIT_CONFIG_ERROR,
    PULL_UNCOMMITTED_MESSAGE,
    ActionFailedError,
    BranchSyncError,
    DuplicateBranchNameError,
    EmptyCommitError,
    InvalidConfigurationError,
    InvalidParameterError,
    InvalidSshConfigurationError,
    MergeConflictError,
    NonFastForwardError,
    NothingToFetchError,
    QuotaExceededError,
    RepoNotEmptyError,
    ResourceNotFoundError,
    TransportError,
    VcsError,
    VcsMergeConflictError,
)
from branchsync.identity import ProfileService
from branchsync.keys import generate_deploy_key
from branchsync.materializer import WorkingTreeMaterializer
from branchsync.models import (
    DEFAULT_PROFILE_KEY,
    Application,
    Blocked,
    GitAuth,
    GitBranch,
    GitLogEntry,
    GitMetadata,
    GitProfile,
    GitStatus,
    Mergeable,
    MergeStatus,
    PullResult,
    User,
    probe_to_status,
)
from branchsync.quota import UNLIMITED, PrivateRepoQuota
from branchsync.remote import RepoVisibilityProbe, repo_name_from_url, to_browser_url
from branchsync.snapshots import apply_snapshot, export_snapshot, reset_page_lineage
from branchsync.store import MetadataStore, Permission, UserDataStore

from .arena import WorkingTreeArena
from .branches import (
    conflict_branch_name,
    is_remote_qualified,
    mark_default,
    new_branch_record,
    plan_prune,
    strip_remote,
)
from .completion import CompletionSink
from .executor import EMPTY_COMMIT_MESSAGE, VcsExecutor
from .merging import assess_branch, raise_if_blocked, require_local_names
from .observability import log_action, log_debug, log_warning, track_git_event


DEFAULT_COMMIT_MESSAGE = "System generated commit, "
NOTHING_TO_FETCH_STATUS = "Nothing to fetch from remote. All changes are up to date."
CONFLICTED_SUCCESS_MESSAGE = (
    " branch has been created from conflicted state. Please resolve merge "
    "conflicts in remote and pull again"
)
RECONFIGURE_MESSAGE = "Please reconfigure the application to connect to git repo"
PUSH_WRITE_ACCESS_MESSAGE = (
    "Uh oh! you haven't provided the write permission to deploy keys. "
    "Write access is needed to push to remote, please provide one to proceed"
)
MERGE_CHECK_FAILED = "Merge check failed!"


class CommitReason(str, Enum):
    CONFLICT_STATE = "for conflicted state"
    CONNECT_FLOW = "initial commit"
    BRANCH_CREATED = "after creating a new branch: "
    SYNC_WITH_REMOTE_AFTER_PULL = "for syncing changes with remote after git pull"
    SYNC_REMOTE_AFTER_MERGE = "for syncing changes with local branch after git merge, branch: "


def default_commit_message(reason: CommitReason, detail: str = "") -> str:
    return f"{DEFAULT_COMMIT_MESSAGE}{reason.value}{detail}"


@contextmanager
def vcs_action(action: str, transport_detail: Optional[str] = None) -> Iterator[None]:
    """Normalize executor failures raised inside the block into ``ActionFailedError``."""
    try:
        yield
    except TransportError as e:
        raise ActionFailedError(action, transport_detail or str(e)) from e
    except VcsError as e:
        raise ActionFailedError(action, str(e)) from e


@dataclass
class OperationContext:
    """Everything one operation needs about a lineage.

    ``root`` is the lineage's default record and the only holder of the
    deploy key. ``application`` is the branch record the operation works on,
    which may be ``root`` itself.
    """

    root: Application
    key: Path
    application: Application

    @property
    def meta(self) -> GitMetadata:
        return self.root.git_metadata

    @property
    def lineage_id(self) -> str:
        return self.root.id

    @property
    def organization_id(self) -> str:
        return self.root.organization_id

    @property
    def branch(self) -> str:
        return self.application.branch_name or ""

    @property
    def auth(self) -> GitAuth:
        return self.meta.git_auth or GitAuth()

    def for_branch(self, application: Application) -> "OperationContext":
        return OperationContext(root=self.root, key=self.key, application=application)

    def event_fields(self) -> Dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "application_id": self.lineage_id,
            "branch_application_id": self.application.id,
            "is_repo_private": self.meta.is_repo_private,
        }


def _require_branch(name: Optional[str]) -> str:
    if not name or not name.strip():
        raise InvalidParameterError("branch name")
    return name.strip()


def _missing_metadata_field(meta: Optional[GitMetadata]) -> Optional[str]:
    if meta is None:
        return "git configuration"
    if not meta.branch_name:
        return "branch name"
    if not meta.default_application_id:
        return "default application"
    if not meta.repo_name:
        return "repository name"
    return None


class BranchSyncOrchestrator:
    """Connect, commit, push, pull, branch and merge git-connected applications."""

    def __init__(
        self,
        *,
        store: MetadataStore,
        user_store: UserDataStore,
        user: User,
        executor: VcsExecutor,
        materializer: WorkingTreeMaterializer,
        arena: WorkingTreeArena,
        probe: Optional[RepoVisibilityProbe] = None,
        quota: Optional[PrivateRepoQuota] = None,
        completion: Optional[CompletionSink] = None,
        bot_name: str = "branchsync-bot",
        bot_email: str = "bot@branchsync.dev",
        origin: str = "",
    ):
        self.store = store
        self.user_store = user_store
        self.user = user
        self.executor = executor
        self.materializer = materializer
        self.arena = arena
        self.probe = probe or RepoVisibilityProbe()
        self.quota = quota or PrivateRepoQuota()
        self.completion = completion or CompletionSink()
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.origin = origin
        self.profiles = ProfileService(user_store, user)

    # Loading and validation

    async def _load_root(self, lineage_id: str, permission: Permission = Permission.MANAGE) -> Application:
        if not lineage_id:
            raise InvalidParameterError("application id")
        record = await self.store.get(lineage_id, permission)
        if record.is_root:
            return record
        return await self.store.get(record.lineage_id, permission)

    async def _context(
        self,
        lineage_id: str,
        branch_name: Optional[str] = None,
        *,
        require_keys: bool = False,
        permission: Permission = Permission.MANAGE,
    ) -> OperationContext:
        root = await self._load_root(lineage_id, permission)
        missing = _missing_metadata_field(root.git_metadata)
        if missing == "git configuration":
            raise InvalidConfigurationError(GIT_CONFIG_ERROR)
        if missing:
            raise InvalidConfigurationError(f"Unable to find {missing}")
        if require_keys and not root.git_metadata.has_key_pair():
            raise InvalidSshConfigurationError()

        meta = root.git_metadata
        key = self.arena.key_for(root.organization_id, root.id, meta.repo_name)
        ctx = OperationContext(root=root, key=key, application=root)
        if branch_name is None or branch_name == meta.branch_name:
            return ctx
        record = await self._find_branch(ctx, branch_name, permission)
        if record is None:
            raise ResourceNotFoundError("application", f"for branch {branch_name} of {lineage_id}")
        return ctx.for_branch(record)

    async def _find_branch(
        self, ctx: OperationContext, branch_name: str, permission: Permission = Permission.MANAGE
    ) -> Optional[Application]:
        if branch_name == ctx.meta.branch_name:
            return ctx.root
        record = await self.store.find_by_branch(ctx.lineage_id, branch_name, permission)
        if record is not None:
            missing = _missing_metadata_field(record.git_metadata)
            if missing:
                raise InvalidConfigurationError(f"Unable to find {missing}")
        return record

    async def _check_private_quota(self, organization_id: str, lineage_id: str) -> None:
        limit = await self.quota.limit_for(organization_id)
        if limit == UNLIMITED:
            return
        connected = await self.store.count_git_connected(organization_id, exclude_lineage=lineage_id)
        if self.quota.exceeded(limit, connected):
            raise QuotaExceededError(limit)

    async def _recheck_privacy(self, ctx: OperationContext) -> None:
        """Re-probe a repository last seen public and enforce the quota if it turned private."""
        meta = ctx.meta
        if meta.is_repo_private is True:
            return
        if not meta.browser_supported_remote_url:
            meta.browser_supported_remote_url = to_browser_url(meta.remote_url or "")
        try:
            private = await self.probe.is_private(meta.remote_url or "")
        except httpx.HTTPError as e:
            log_debug(f"[ORCHESTRATOR] visibility probe failed, skipping check: {e}")
            return
        if private == meta.is_repo_private:
            return
        if private:
            await self._check_private_quota(ctx.organization_id, ctx.lineage_id)
        meta.is_repo_private = private
        ctx.root = await self.store.save(ctx.root)
        if ctx.application.id == ctx.root.id:
            ctx.application = ctx.root

    # Working-tree steps (arena key held)

    async def _materialize_locked(self, ctx: OperationContext) -> None:
        with vcs_action("checkout", f"Unable to find {ctx.branch}"):
            await self.executor.checkout(ctx.key, ctx.branch)
        await self.materializer.serialize(export_snapshot(ctx.application), ctx.key, ctx.branch)

    async def _rehydrate_locked(self, ctx: OperationContext) -> Application:
        snapshot = await self.materializer.deserialize(
            ctx.organization_id, ctx.lineage_id, ctx.meta.repo_name, ctx.branch
        )
        root = None if ctx.application.id == ctx.root.id else ctx.root
        updated = apply_snapshot(ctx.application, snapshot, root)
        return await self.store.save(updated)

    async def _commit_locked(self, ctx: OperationContext, message: str, do_push: bool) -> str:
        await self._recheck_privacy(ctx)
        await self._materialize_locked(ctx)
        author = await self.profiles.resolve_author(ctx.lineage_id)

        with vcs_action("commit"):
            try:
                status = await self.executor.commit(
                    ctx.key, message, author.author_name, author.author_email
                )
            except EmptyCommitError:
                status = EMPTY_COMMIT_MESSAGE
        result = "Commit Result : " + status
        if do_push:
            result += ".\nPush Result : " + await self._push_locked(ctx)
        return result

    async def _push_locked(self, ctx: OperationContext, branch: Optional[str] = None) -> str:
        if not ctx.meta.has_key_pair():
            raise InvalidConfigurationError(RECONFIGURE_MESSAGE)
        branch = branch or ctx.branch
        with vcs_action("checkout"):
            await self.executor.checkout(ctx.key, branch)
        with vcs_action("push", PUSH_WRITE_ACCESS_MESSAGE):
            result = await self.executor.push(
                ctx.key, ctx.meta.remote_url, ctx.auth.public_key, ctx.auth.private_key, branch
            )
        if "REJECTED" in result:
            raise NonFastForwardError()
        return result

    async def _status_locked(self, ctx: OperationContext, branch_name: str, *, fetch: bool = True) -> GitStatus:
        branch_name = strip_remote(branch_name)
        record = await self._find_branch(ctx, branch_name)
        if record is None:
            record = await self._checkout_remote_locked(ctx, branch_name)
        branch_ctx = ctx.for_branch(record)
        await self._materialize_locked(branch_ctx)
        with vcs_action("status"):
            if fetch:
                await self.executor.fetch(ctx.key, ctx.auth.public_key, ctx.auth.private_key, True)
            return await self.executor.get_status(ctx.key, branch_name)

    async def _checkout_remote_locked(self, ctx: OperationContext, branch_name: str) -> Application:
        """Track ``origin/<branch_name>`` locally and build its branch record from the files."""
        with vcs_action("fetch"):
            await self.executor.fetch(ctx.key, ctx.auth.public_key, ctx.auth.private_key, False)
        with vcs_action(f"checkout -t origin/{branch_name}"):
            await self.executor.checkout_remote(ctx.key, branch_name)
        record = await self.store.save(new_branch_record(ctx.root, branch_name))
        return await self._rehydrate_locked(ctx.for_branch(record))

    async def _list_branches_locked(self, ctx: OperationContext, from_remote: bool) -> List[GitBranch]:
        with vcs_action("branch --list"):
            return await self.executor.list_branches(
                ctx.key, ctx.meta.remote_url, ctx.auth.private_key, ctx.auth.public_key, from_remote
            )

    async def _delete_branch_record(self, ctx: OperationContext, branch_name: str) -> None:
        record = await self.store.find_by_branch(ctx.lineage_id, branch_name, Permission.MANAGE)
        if record is not None and record.id != ctx.root.id:
            await self.store.delete(record.id)

    async def _assert_ready_for_merge(self, ctx: OperationContext, source: str, dest: str) -> None:
        raise_if_blocked(assess_branch(await self._status_locked(ctx, source), source))
        raise_if_blocked(assess_branch(await self._status_locked(ctx, dest), dest))

    # connect

    async def connect(
        self,
        lineage_id: str,
        remote_url: str,
        profile: Optional[GitProfile] = None,
        origin: Optional[str] = None,
    ) -> Application:
        """Link a lineage root to an empty remote repository and push its first commit."""
        return await self.completion.run(
            self._connect(lineage_id, remote_url, profile, origin or self.origin),
            name=f"git_connect:{lineage_id}",
        )

    async def _connect(
        self, lineage_id: str, remote_url: str, profile: Optional[GitProfile], origin: str
    ) -> Application:
        with track_git_event("git_connect", application_id=lineage_id) as event:
            if not remote_url or not remote_url.strip():
                raise InvalidParameterError("Remote Url")
            if not origin or not origin.strip():
                raise InvalidParameterError("origin")
            remote_url = remote_url.strip()

            root = await self._load_root(lineage_id)
            event.update(organization_id=root.organization_id, branch_application_id=root.id)
            meta = root.git_metadata
            if meta is None or not meta.has_key_pair():
                raise InvalidSshConfigurationError()

            if profile is not None:
                await self.profiles.update_or_create(profile, lineage_id)
            else:
                await self.profiles.get_default_or_create()

            try:
                private = await self.probe.is_private(remote_url)
            except httpx.HTTPError as e:
                log_debug(f"[ORCHESTRATOR] visibility probe failed, assuming private: {e}")
                private = True
            event["is_repo_private"] = private
            if private and meta.is_repo_private is not True:
                await self._check_private_quota(root.organization_id, root.id)

            repo_name = repo_name_from_url(remote_url)
            key = self.arena.key_for(root.organization_id, root.id, repo_name)
            async with self.arena.hold(key, "connect"):
                try:
                    default_branch = await self.executor.clone(
                        key, remote_url, meta.git_auth.private_key, meta.git_auth.public_key
                    )
                except TransportError as e:
                    raise InvalidConfigurationError(str(e)) from e
                except VcsError as e:
                    raise ActionFailedError("clone", str(e)) from e

                if not await self.materializer.is_empty(key):
                    await self.materializer.remove_repo(key)
                    raise RepoNotEmptyError()

                meta.default_application_id = root.id
                meta.branch_name = default_branch
                meta.default_branch_name = default_branch
                meta.remote_url = remote_url
                meta.repo_name = repo_name
                meta.browser_supported_remote_url = to_browser_url(remote_url)
                meta.is_repo_private = private
                root = await self.store.save(root)
                ctx = OperationContext(root=root, key=key, application=root)

                try:
                    await self._initial_commit_locked(ctx, origin)
                except BranchSyncError:
                    await self.materializer.remove_repo(key)
                    await self._reset_connection(root)
                    raise
            log_action("git.connect", lineage_id=lineage_id, repo=repo_name, branch=default_branch)
            return root

    async def _initial_commit_locked(self, ctx: OperationContext, origin: str) -> None:
        await self.materializer.serialize(export_snapshot(ctx.root), ctx.key, ctx.branch)
        page = ctx.root.default_page()
        view_url = f"{origin.rstrip('/')}/applications/{ctx.root.id}/pages/{page.id if page else ''}"
        await self.materializer.initialize_readme(ctx.key, view_url, f"{view_url}/edit")

        author = await self.profiles.resolve_author(ctx.lineage_id)
        with vcs_action("commit"):
            try:
                await self.executor.commit(
                    ctx.key,
                    default_commit_message(CommitReason.CONNECT_FLOW),
                    author.author_name,
                    author.author_email,
                )
            except EmptyCommitError:
                pass
        try:
            result = await self.executor.push(
                ctx.key, ctx.meta.remote_url, ctx.auth.public_key, ctx.auth.private_key, ctx.branch
            )
        except TransportError as e:
            raise InvalidConfigurationError(str(e)) from e
        except VcsError as e:
            raise ActionFailedError("push", str(e)) from e
        # The remote was empty, so a rejection here means the key cannot write.
        if "REJECTED" in result:
            raise ActionFailedError("push", PUSH_WRITE_ACCESS_MESSAGE)

    async def _reset_connection(self, root: Application) -> None:
        """Forget a half-made connection, keeping the lineage's deploy key."""
        auth = root.git_metadata.git_auth if root.git_metadata else None
        root.git_metadata = GitMetadata(default_application_id=root.id, git_auth=auth)
        await self.store.save(root)

    # commit / push

    async def commit(
        self,
        lineage_id: str,
        branch_name: str,
        message: Optional[str] = None,
        do_push: bool = False,
    ) -> str:
        """Commit the branch's current database state; optionally push it.

        Nothing to commit is not an error: the result text says so.
        """
        return await self.completion.run(
            self._commit(lineage_id, branch_name, message, do_push),
            name=f"git_commit:{lineage_id}:{branch_name}",
        )

    async def _commit(self, lineage_id: str, branch_name: str, message: Optional[str], do_push: bool) -> str:
        with track_git_event("git_commit", application_id=lineage_id) as event:
            branch_name = _require_branch(branch_name)
            ctx = await self._context(lineage_id, branch_name)
            event.update(ctx.event_fields())
            message = message or default_commit_message(CommitReason.CONNECT_FLOW)
            async with self.arena.hold(ctx.key, "commit"):
                return await self._commit_locked(ctx, message, do_push)

    async def push(self, lineage_id: str, branch_name: str) -> str:
        return await self.completion.run(
            self._push(lineage_id, branch_name), name=f"git_push:{lineage_id}:{branch_name}"
        )

    async def _push(self, lineage_id: str, branch_name: str) -> str:
        with track_git_event("git_push", application_id=lineage_id) as event:
            branch_name = _require_branch(branch_name)
            ctx = await self._context(lineage_id, branch_name)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "push"):
                return await self._push_locked(ctx)

    # pull

    async def pull(self, lineage_id: str, branch_name: str) -> PullResult:
        """Merge the tracked remote branch into a clean branch and re-converge.

        Raises:
            ActionFailedError: the branch has uncommitted changes
            MergeConflictError: the remote changes conflict (merge aborted)
        """
        return await self.completion.run(
            self._pull(lineage_id, branch_name), name=f"git_pull:{lineage_id}:{branch_name}"
        )

    async def _pull(self, lineage_id: str, branch_name: str) -> PullResult:
        with track_git_event("git_pull", application_id=lineage_id) as event:
            branch_name = _require_branch(branch_name)
            ctx = await self._context(lineage_id, branch_name)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "pull"):
                status = await self._status_locked(ctx, branch_name, fetch=False)
                if status.modified:
                    raise ActionFailedError("pull", PULL_UNCOMMITTED_MESSAGE)

                try:
                    merge_status = await self.executor.pull(
                        ctx.key, ctx.meta.remote_url, branch_name,
                        ctx.auth.private_key, ctx.auth.public_key,
                    )
                except NothingToFetchError:
                    merge_status = MergeStatus(status=NOTHING_TO_FETCH_STATUS, mergeable=True)
                except VcsMergeConflictError as e:
                    raise MergeConflictError(branch_name, e.conflicting_files) from e
                except VcsError as e:
                    raise ActionFailedError("pull", str(e)) from e

                updated = await self._rehydrate_locked(ctx)
                ctx = ctx.for_branch(updated)
                if updated.id == ctx.root.id:
                    ctx.root = updated
                await self._commit_locked(
                    ctx, default_commit_message(CommitReason.SYNC_WITH_REMOTE_AFTER_PULL), True
                )
                return PullResult(merge_status=merge_status, application=updated)

    # branches

    async def create_branch(self, lineage_id: str, branch_name: str, source_branch: str) -> Application:
        """Create ``branch_name`` from ``source_branch``, then commit and push it."""
        return await self.completion.run(
            self._create_branch(lineage_id, branch_name, source_branch),
            name=f"git_create_branch:{lineage_id}:{branch_name}",
        )

    async def _create_branch(self, lineage_id: str, branch_name: str, source_branch: str) -> Application:
        with track_git_event("git_create_branch", application_id=lineage_id) as event:
            branch_name = _require_branch(branch_name)
            source_branch = _require_branch(source_branch)
            require_local_names(source_branch, branch_name)
            ctx = await self._context(lineage_id, source_branch)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "create branch"):
                await self._materialize_locked(ctx)
                with vcs_action("fetch"):
                    await self.executor.fetch(ctx.key, ctx.auth.public_key, ctx.auth.private_key, False)
                branches = await self._list_branches_locked(ctx, from_remote=False)
                if any(strip_remote(b.name) == branch_name for b in branches):
                    raise DuplicateBranchNameError(branch_name)

                with vcs_action("branch"):
                    await self.executor.create_and_checkout(ctx.key, branch_name)
                record = new_branch_record(ctx.application, branch_name)
                record = apply_snapshot(record, export_snapshot(ctx.application), ctx.root)
                record = await self.store.save(record)
                event["branch_application_id"] = record.id

                await self._commit_locked(
                    ctx.for_branch(record),
                    default_commit_message(CommitReason.BRANCH_CREATED, branch_name),
                    True,
                )
                return record

    async def checkout_branch(self, lineage_id: str, branch_name: str) -> Application:
        """Resolve a branch record; ``origin/<name>`` checks out a remote branch first."""
        return await self.completion.run(
            self._checkout_branch(lineage_id, branch_name),
            name=f"git_checkout_branch:{lineage_id}:{branch_name}",
        )

    async def _checkout_branch(self, lineage_id: str, branch_name: str) -> Application:
        branch_name = _require_branch(branch_name)
        if is_remote_qualified(branch_name):
            return await self._checkout_remote_branch(lineage_id, branch_name)

        with track_git_event("git_checkout_branch", application_id=lineage_id) as event:
            ctx = await self._context(
                lineage_id, branch_name, require_keys=True, permission=Permission.READ
            )
            event.update(ctx.event_fields())
            return ctx.application

    async def _checkout_remote_branch(self, lineage_id: str, branch_name: str) -> Application:
        with track_git_event("git_checkout_remote_branch", application_id=lineage_id) as event:
            bare = strip_remote(branch_name)
            ctx = await self._context(lineage_id)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "checkout remote branch"):
                local = [
                    b.name
                    for b in await self._list_branches_locked(ctx, from_remote=False)
                    if not is_remote_qualified(b.name)
                ]
                if bare in local or await self._find_branch(ctx, bare) is not None:
                    raise ActionFailedError("checkout", f"{branch_name} already exists")
                record = await self._checkout_remote_locked(ctx, bare)
                event["branch_application_id"] = record.id
                return record

    async def list_branches(
        self, lineage_id: str, prune: bool = False, current_branch: Optional[str] = None
    ) -> List[GitBranch]:
        """List local and ``origin/`` branches.

        With ``prune`` the remote is fetched first and local branches deleted
        on the remote are removed, together with their branch records. Local
        branches holding commits that were never pushed are kept.
        """
        return await self.completion.run(
            self._list_branches(lineage_id, prune, current_branch),
            name=f"git_list_branches:{lineage_id}",
        )

    async def _list_branches(
        self, lineage_id: str, prune: bool, current_branch: Optional[str]
    ) -> List[GitBranch]:
        ctx = await self._context(lineage_id)
        meta = ctx.meta
        if not prune:
            async with self.arena.hold(ctx.key, "list branches"):
                branches = await self._list_branches_locked(ctx, from_remote=False)
            return mark_default(branches, meta.default_branch_name or meta.branch_name)

        with track_git_event("git_prune", **ctx.event_fields()):
            async with self.arena.hold(ctx.key, "prune branches"):
                return await self._prune_locked(ctx, current_branch)

    async def _prune_locked(self, ctx: OperationContext, current_branch: Optional[str]) -> List[GitBranch]:
        meta = ctx.meta
        with vcs_action("fetch"):
            await self.executor.fetch(ctx.key, ctx.auth.public_key, ctx.auth.private_key, True)
        branches = await self._list_branches_locked(ctx, from_remote=True)
        plan = plan_prune(branches, protected=(meta.branch_name, current_branch))

        deleted: List[str] = []
        if plan.stale:
            with vcs_action("checkout"):
                await self.executor.checkout(ctx.key, meta.branch_name)
        for name in plan.stale:
            with vcs_action("config"):
                pushed = await self.executor.has_upstream(ctx.key, name)
            if not pushed:
                log_warning(f"[ORCHESTRATOR] keeping {name}: it was never pushed")
                continue
            await self._delete_branch_record(ctx, name)
            with vcs_action("branch -D"):
                await self.executor.delete_branch(ctx.key, name)
            deleted.append(name)

        recorded_default = meta.default_branch_name or meta.branch_name
        if plan.remote_default and plan.remote_default != recorded_default:
            meta.default_branch_name = plan.remote_default
            ctx.root = await self.store.save(ctx.root)
        log_action("git.prune", lineage_id=ctx.lineage_id, deleted=deleted)
        return plan.remaining(branches, deleted)

    # status / history

    async def status(self, lineage_id: str, branch_name: str) -> GitStatus:
        """Status of a branch's freshly materialized state against its remote."""
        return await self.completion.run(
            self._status(lineage_id, branch_name), name=f"git_status:{lineage_id}:{branch_name}"
        )

    async def _status(self, lineage_id: str, branch_name: str) -> GitStatus:
        branch_name = strip_remote(_require_branch(branch_name))
        ctx = await self._context(lineage_id)
        async with self.arena.hold(ctx.key, "status"):
            return await self._status_locked(ctx, branch_name)

    async def get_commit_history(self, lineage_id: str, branch_name: str) -> List[GitLogEntry]:
        return await self.completion.run(
            self._get_commit_history(lineage_id, branch_name),
            name=f"git_log:{lineage_id}:{branch_name}",
        )

    async def _get_commit_history(self, lineage_id: str, branch_name: str) -> List[GitLogEntry]:
        branch_name = _require_branch(branch_name)
        ctx = await self._context(lineage_id, branch_name, permission=Permission.READ)
        async with self.arena.hold(ctx.key, "log"):
            await self._materialize_locked(ctx)
            with vcs_action("log"):
                return await self.executor.get_commit_history(ctx.key)

    # merge

    async def is_branch_mergeable(self, lineage_id: str, source: str, dest: str) -> MergeStatus:
        """Trial-merge ``source`` into ``dest``; the destination is always left clean."""
        return await self.completion.run(
            self._is_branch_mergeable(lineage_id, source, dest),
            name=f"git_merge_status:{lineage_id}:{source}:{dest}",
        )

    async def _is_branch_mergeable(self, lineage_id: str, source: str, dest: str) -> MergeStatus:
        source, dest = _require_branch(source), _require_branch(dest)
        require_local_names(source, dest)
        ctx = await self._context(lineage_id, require_keys=True)
        async with self.arena.hold(ctx.key, "merge status"):
            await self._assert_ready_for_merge(ctx, source, dest)
            try:
                probe = await self.executor.is_mergeable(ctx.key, source, dest)
            except VcsError as e:
                probe = Blocked(reason=f"{MERGE_CHECK_FAILED} {e}")
            if isinstance(probe, Mergeable):
                return probe_to_status(probe)
            with vcs_action("reset --hard HEAD"):
                await self.executor.reset_hard(ctx.key, dest)
            return probe_to_status(probe)

    async def merge(self, lineage_id: str, source: str, dest: str) -> PullResult:
        """Merge ``source`` into ``dest``, rehydrate ``dest`` and push it.

        Conflicts are never resolved here; they raise ``MergeConflictError``.
        """
        return await self.completion.run(
            self._merge(lineage_id, source, dest), name=f"git_merge:{lineage_id}:{source}:{dest}"
        )

    async def _merge(self, lineage_id: str, source: str, dest: str) -> PullResult:
        with track_git_event("git_merge", application_id=lineage_id) as event:
            source, dest = _require_branch(source), _require_branch(dest)
            require_local_names(source, dest)
            ctx = await self._context(lineage_id, require_keys=True)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "merge"):
                await self._assert_ready_for_merge(ctx, source, dest)
                try:
                    outcome = await self.executor.merge(ctx.key, source, dest)
                except VcsMergeConflictError as e:
                    raise MergeConflictError(dest, e.conflicting_files) from e
                except VcsError as e:
                    raise ActionFailedError("merge", str(e)) from e

                record = await self._find_branch(ctx, dest)
                if record is None:
                    raise ResourceNotFoundError("application", f"for branch {dest} of {lineage_id}")
                dest_ctx = ctx.for_branch(record)
                updated = await self._rehydrate_locked(dest_ctx)
                dest_ctx = dest_ctx.for_branch(updated)
                if updated.id == dest_ctx.root.id:
                    dest_ctx.root = updated
                event["branch_application_id"] = updated.id
                await self._commit_locked(
                    dest_ctx, default_commit_message(CommitReason.SYNC_REMOTE_AFTER_MERGE, source), True
                )
                return PullResult(merge_status=MergeStatus(status=outcome, mergeable=True), application=updated)

    async def create_conflicted_branch(self, lineage_id: str, branch_name: str) -> str:
        """Push the branch's state as ``<branch>_mergeConflict`` for resolution on the remote."""
        return await self.completion.run(
            self._create_conflicted_branch(lineage_id, branch_name),
            name=f"git_create_merge_conflict_branch:{lineage_id}:{branch_name}",
        )

    async def _create_conflicted_branch(self, lineage_id: str, branch_name: str) -> str:
        with track_git_event("git_create_merge_conflict_branch", application_id=lineage_id) as event:
            branch_name = _require_branch(branch_name)
            ctx = await self._context(lineage_id, branch_name)
            event.update(ctx.event_fields())
            conflicted = conflict_branch_name(branch_name)
            async with self.arena.hold(ctx.key, "create conflicted branch"):
                await self._materialize_locked(ctx)
                with vcs_action("branch"):
                    await self.executor.create_and_checkout(ctx.key, conflicted)
                with vcs_action("commit"):
                    try:
                        await self.executor.commit(
                            ctx.key,
                            default_commit_message(CommitReason.CONFLICT_STATE),
                            self.bot_name,
                            self.bot_email,
                            allow_empty=True,
                        )
                    except EmptyCommitError:
                        pass
                try:
                    await self._push_locked(ctx, conflicted)
                finally:
                    with vcs_action("checkout"):
                        await self.executor.checkout(ctx.key, branch_name)
                    with vcs_action("branch -D"):
                        await self.executor.delete_branch(ctx.key, conflicted)
            return f"{conflicted}{CONFLICTED_SUCCESS_MESSAGE}"

    # detach

    async def detach(self, lineage_id: str) -> Application:
        """Unlink a lineage from git: drop its branch records and working tree."""
        return await self.completion.run(self._detach(lineage_id), name=f"git_detach:{lineage_id}")

    async def _detach(self, lineage_id: str) -> Application:
        with track_git_event("git_detach", application_id=lineage_id) as event:
            ctx = await self._context(lineage_id)
            meta = ctx.meta
            if not meta.has_key_pair():
                raise InvalidConfigurationError(RECONFIGURE_MESSAGE)
            event.update(ctx.event_fields())
            async with self.arena.hold(ctx.key, "detach"):
                try:
                    branches = await self._list_branches_locked(ctx, from_remote=False)
                except ActionFailedError as e:
                    log_warning(f"[ORCHESTRATOR] detaching without a working tree: {e.detail}")
                    branches = []
                names = {
                    b.name for b in branches if not is_remote_qualified(b.name)
                } - {meta.branch_name}
                for name in sorted(names):
                    await self._delete_branch_record(ctx, name)
                # Records whose branch was never checked out here
                for record in await self.store.list_lineage(ctx.lineage_id):
                    if record.id != ctx.root.id:
                        await self.store.delete(record.id)

                root = reset_page_lineage(ctx.root)
                root.git_metadata = None
                root = await self.store.save(root)
                await self.materializer.remove_repo(ctx.key)
            return root

    # keys and profiles

    async def generate_deploy_key(self, lineage_id: str) -> str:
        """Create the lineage's deploy key pair and return its public half."""
        return await self.completion.run(
            self._generate_deploy_key(lineage_id), name=f"git_generate_key:{lineage_id}"
        )

    async def _generate_deploy_key(self, lineage_id: str) -> str:
        with track_git_event("git_generate_key", application_id=lineage_id) as event:
            application = await self.store.get(lineage_id, Permission.MANAGE)
            event["organization_id"] = application.organization_id
            if not application.is_root:
                raise InvalidParameterError("application id")
            auth = generate_deploy_key()
            meta = application.git_metadata or GitMetadata(default_application_id=application.id)
            meta.git_auth = auth
            application.git_metadata = meta
            await self.store.save(application)
            await self.user_store.add_deploy_key(self.user.email, auth)
            return auth.public_key

    async def get_or_create_profile(self) -> GitProfile:
        return await self.profiles.get_default_or_create()

    async def get_profile(self, key: str = DEFAULT_PROFILE_KEY) -> GitProfile:
        return await self.profiles.get_profile(key)

    async def update_or_create_profile(
        self, profile: GitProfile, key: str = DEFAULT_PROFILE_KEY
    ) -> Dict[str, GitProfile]:
        return await self.profiles.update_or_create(profile, key)

    async def get_git_metadata(self, lineage_id: str) -> Dict[str, Any]:
        """Root metadata without the private key, plus the user's profiles for it."""
        root = await self._load_root(lineage_id, Permission.READ)
        if root.git_metadata is None:
            raise InvalidConfigurationError(GIT_CONFIG_ERROR)
        data = root.git_metadata.public_view()
        data["profiles"] = {
            key: profile.model_dump() for key, profile in (await self.profiles.profiles_for(root.id)).items()
        }
        return data

    async def drain(self, timeout: Optional[float] = None) -> bool:
        return await self.completion.drain(timeout)
