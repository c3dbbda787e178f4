"""VCS executor: git primitives against per-lineage working trees.

``GitPythonExecutor`` drives git through GitPython. Every primitive runs in a
worker thread (``asyncio.to_thread``) so the event loop never blocks on git.
Failures are raised as ``VcsError`` subclasses:

- ``TransportError``: the remote could not be reached or refused our key
- ``EmptyCommitError``: nothing to commit
- ``NothingToFetchError``: the tracked remote branch has nothing new
- ``VcsMergeConflictError``: a merge stopped on conflicts (already aborted)
- ``VcsCommandError``: anything else

A push rejected as non-fast-forward is *not* raised; the returned result text
carries a ``REJECTED`` marker instead.
"""

from __future__ import annotations

import asyncio
import functools
import os
import shlex
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from git import GitCommandError, Head, InvalidGitRepositoryError, NoSuchPathError, Repo

from branchsync.errors import (
    EmptyCommitError,
    NothingToFetchError,
    TransportError,
    VcsCommandError,
    VcsError,
    VcsMergeConflictError,
)
from branchsync.models import (
    Blocked,
    GitBranch,
    GitLogEntry,
    GitStatus,
    Mergeable,
    MergeProbe,
    MergeStatus,
)
from branchsync.remote import is_ssh_url

from .observability import log_debug, timeit


REMOTE = "origin"
EMPTY_COMMIT_MESSAGE = "On current branch nothing to commit, working tree clean"
NOTHING_TO_FETCH_MESSAGE = "Nothing to fetch"

NETWORK_TOKENS = (
    "could not read from remote repository",
    "could not resolve hostname",
    "permission denied",
    "network is unreachable",
    "failed to connect to",
    "connection timed out",
    "connection refused",
    "authentication failed",
    "host key verification failed",
    "repository not found",
    "does not appear to be a git repository",
)
REJECTION_TOKENS = ("[rejected]", "non-fast-forward", "fetch first")
# Porcelain XY codes of unmerged paths
CONFLICT_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


class VcsExecutor(Protocol):
    async def clone(self, suffix: Path, url: str, private_key: str, public_key: str) -> str: ...

    async def checkout(self, suffix: Path, branch: str) -> bool: ...

    async def checkout_remote(self, suffix: Path, branch: str) -> str: ...

    async def create_and_checkout(self, suffix: Path, branch: str) -> str: ...

    async def fetch(self, suffix: Path, public_key: str, private_key: str, prune: bool = False) -> str: ...

    async def commit(
        self, suffix: Path, message: str, author_name: str, author_email: str, allow_empty: bool = False
    ) -> str: ...

    async def push(self, suffix: Path, url: str, public_key: str, private_key: str, branch: str) -> str: ...

    async def pull(self, suffix: Path, url: str, branch: str, private_key: str, public_key: str) -> MergeStatus: ...

    async def merge(self, suffix: Path, source: str, dest: str) -> str: ...

    async def is_mergeable(self, suffix: Path, source: str, dest: str) -> MergeProbe: ...

    async def list_branches(
        self, suffix: Path, url: str, private_key: str, public_key: str, from_remote: bool
    ) -> List[GitBranch]: ...

    async def delete_branch(self, suffix: Path, branch: str) -> bool: ...

    async def reset_hard(self, suffix: Path, branch: str) -> bool: ...

    async def get_status(self, suffix: Path, branch: str) -> GitStatus: ...

    async def get_commit_history(self, suffix: Path) -> List[GitLogEntry]: ...

    async def has_upstream(self, suffix: Path, branch: str) -> bool: ...


def _error_text(error: GitCommandError) -> str:
    parts = [str(error), str(getattr(error, "stdout", "") or ""), str(getattr(error, "stderr", "") or "")]
    return "\n".join(parts).lower()


def _classify(error: GitCommandError, action: str) -> VcsError:
    text = _error_text(error)
    detail = (str(getattr(error, "stderr", "") or "").strip() or str(error)).strip()
    if any(token in text for token in NETWORK_TOKENS):
        return TransportError(f"{action}: {detail}")
    return VcsCommandError(f"{action}: {detail}")


def _git_action(action: str):
    """Time a primitive and translate its GitPython failures into ``VcsError``."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                with timeit(f"git.{action}"):
                    return fn(self, *args, **kwargs)
            except VcsError:
                raise
            except GitCommandError as e:
                raise _classify(e, action) from e
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise VcsCommandError(f"{action}: no git repository at {e}") from e

        return wrapper

    return decorator


def _ref_exists(repo: Repo, ref: str) -> bool:
    try:
        repo.git.rev_parse("--verify", "--quiet", ref)
        return True
    except GitCommandError:
        return False


def _conflicting_paths(repo: Repo) -> List[str]:
    try:
        output = repo.git.diff("--name-only", "--diff-filter=U")
    except GitCommandError:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def _abort_merge(repo: Repo) -> None:
    if (Path(repo.git_dir) / "MERGE_HEAD").exists():
        repo.git.merge("--abort")
    else:
        repo.git.reset("--hard", "HEAD")


def _strip_ref(ref: str, prefix: str) -> str:
    return ref[len(prefix):] if ref.startswith(prefix) else ref


class GitPythonExecutor:
    """Runs git primitives for working trees below ``root``."""

    def __init__(
        self,
        root: Path,
        *,
        bot_name: str = "branchsync-bot",
        bot_email: str = "bot@branchsync.dev",
        command_timeout: float = 120.0,
    ):
        self.root = Path(root).expanduser()
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.command_timeout = command_timeout

        # Prepare git environment once (propagated to all git operations)
        self._env = os.environ.copy()
        # Fail fast instead of hanging on credential prompts
        self._env.setdefault("GIT_TERMINAL_PROMPT", "0")
        self._env.setdefault("GCM_INTERACTIVE", "never")
        self._env.setdefault("GIT_ASKPASS", "echo")
        self._env.setdefault("GIT_HTTP_LOW_SPEED_LIMIT", "1")
        self._env.setdefault("GIT_HTTP_LOW_SPEED_TIME", "30")

    def path_for(self, suffix: Path) -> Path:
        return self.root / suffix

    def _open(self, suffix: Path) -> Repo:
        return Repo(self.path_for(suffix))

    def _identity_env(self, name: str, email: str) -> Dict[str, str]:
        env = dict(self._env)
        env.update(
            GIT_AUTHOR_NAME=name,
            GIT_AUTHOR_EMAIL=email,
            GIT_COMMITTER_NAME=name,
            GIT_COMMITTER_EMAIL=email,
        )
        return env

    @contextmanager
    def _auth_env(self, url: str, private_key: str) -> Iterator[Dict[str, str]]:
        """Environment for a network command, with the deploy key when SSH is used."""
        env = self._identity_env(self.bot_name, self.bot_email)
        if not (private_key and is_ssh_url(url)):
            yield env
            return

        fd, key_path = tempfile.mkstemp(prefix="branchsync-key-")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(private_key if private_key.endswith("\n") else private_key + "\n")
            os.chmod(key_path, 0o600)
            # BatchMode so a bad key fails instead of prompting
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {shlex.quote(key_path)} -o IdentitiesOnly=yes -o BatchMode=yes "
                "-o StrictHostKeyChecking=accept-new"
            )
            yield env
        finally:
            try:
                os.unlink(key_path)
            except FileNotFoundError:
                pass

    # Synchronous primitives (run in worker threads)

    @_git_action("clone")
    def _clone(self, suffix: Path, url: str, private_key: str) -> str:
        path = self.path_for(suffix)
        if path.exists():
            shutil.rmtree(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        log_debug(f"GIT_OP_START: clone {url}", path=str(path))
        with self._auth_env(url, private_key) as env:
            repo = Repo.clone_from(url, path, env=env)
        log_debug(f"GIT_OP_END: clone {url}")
        # Works for empty remotes too, where HEAD is still unborn
        return repo.git.symbolic_ref("--short", "HEAD").strip()

    @_git_action("checkout")
    def _checkout(self, suffix: Path, branch: str) -> bool:
        # Working tree content is always re-derived from the database, so
        # uncommitted files from another branch are safe to discard.
        self._open(suffix).git.checkout("--force", branch)
        return True

    @_git_action("checkout remote")
    def _checkout_remote(self, suffix: Path, branch: str) -> str:
        repo = self._open(suffix)
        repo.git.checkout("--force", "-b", branch, "--track", f"{REMOTE}/{branch}")
        return branch

    @_git_action("branch")
    def _create_and_checkout(self, suffix: Path, branch: str) -> str:
        # No --force: the source branch's materialized content comes along
        self._open(suffix).git.checkout("-b", branch)
        return branch

    @_git_action("fetch")
    def _fetch(self, suffix: Path, private_key: str, prune: bool) -> str:
        repo = self._open(suffix)
        url = repo.remote(REMOTE).url
        args = [REMOTE, "--prune"] if prune else [REMOTE]
        log_debug(f"GIT_OP_START: fetch {' '.join(args)}")
        with self._auth_env(url, private_key) as env:
            repo.git.fetch(*args, env=env, kill_after_timeout=self.command_timeout)
        log_debug("GIT_OP_END: fetch")
        return "success"

    @_git_action("commit")
    def _commit(self, suffix: Path, message: str, author_name: str, author_email: str, allow_empty: bool) -> str:
        repo = self._open(suffix)
        repo.git.add("-A")
        if not allow_empty and not repo.git.status("--porcelain").strip():
            raise EmptyCommitError(EMPTY_COMMIT_MESSAGE)
        args = ["-m", message]
        if allow_empty:
            args.append("--allow-empty")
        repo.git.commit(*args, env=self._identity_env(author_name, author_email))
        return "Committed successfully!"

    @_git_action("push")
    def _push(self, suffix: Path, url: str, private_key: str, branch: str) -> str:
        repo = self._open(suffix)
        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        log_debug(f"GIT_OP_START: push {REMOTE} {refspec}")
        with self._auth_env(url, private_key) as env:
            try:
                output = repo.git.push(
                    "--porcelain",
                    "--set-upstream",
                    REMOTE,
                    refspec,
                    env=env,
                    kill_after_timeout=self.command_timeout,
                )
            except GitCommandError as e:
                text = _error_text(e)
                if "[remote rejected]" in text:
                    return f"REJECTED_OTHER_REASON: {branch}"
                if any(token in text for token in REJECTION_TOKENS):
                    return f"REJECTED_NONFASTFORWARD: {branch}"
                raise
        log_debug("GIT_OP_END: push")
        rejected = "\n".join(line for line in output.splitlines() if line.startswith("!")).lower()
        if "[remote rejected]" in rejected:
            return f"REJECTED_OTHER_REASON: {branch}"
        if rejected:
            return f"REJECTED_NONFASTFORWARD: {branch}"
        lines = [line for line in output.splitlines() if line.startswith(("=", " ", "+", "*", "-"))]
        return "Pushed successfully" + (f": {lines[0].strip()}" if lines else "")

    def _merge_ref(self, repo: Repo, ref: str, label: str) -> None:
        try:
            repo.git.merge(ref, "--no-edit", env=self._identity_env(self.bot_name, self.bot_email))
        except GitCommandError as e:
            conflicts = _conflicting_paths(repo)
            _abort_merge(repo)
            if conflicts or "conflict" in _error_text(e):
                raise VcsMergeConflictError(f"Merge conflict while merging {ref} into {label}", conflicts) from e
            raise

    @_git_action("pull")
    def _pull(self, suffix: Path, url: str, branch: str, private_key: str) -> MergeStatus:
        repo = self._open(suffix)
        with self._auth_env(url, private_key) as env:
            repo.git.fetch(REMOTE, env=env, kill_after_timeout=self.command_timeout)
        remote_ref = f"{REMOTE}/{branch}"
        if not _ref_exists(repo, f"refs/remotes/{remote_ref}") or repo.is_ancestor(remote_ref, "HEAD"):
            raise NothingToFetchError(NOTHING_TO_FETCH_MESSAGE)
        fast_forward = repo.is_ancestor("HEAD", remote_ref)
        self._merge_ref(repo, remote_ref, branch)
        return MergeStatus(status="FAST_FORWARD" if fast_forward else "MERGED", mergeable=True)

    @_git_action("merge")
    def _merge(self, suffix: Path, source: str, dest: str) -> str:
        repo = self._open(suffix)
        repo.git.checkout("--force", dest)
        if repo.is_ancestor(source, dest):
            return "ALREADY_UP_TO_DATE"
        fast_forward = repo.is_ancestor(dest, source)
        self._merge_ref(repo, source, dest)
        return "FAST_FORWARD" if fast_forward else "MERGED"

    @_git_action("merge status")
    def _is_mergeable(self, suffix: Path, source: str, dest: str) -> MergeProbe:
        repo = self._open(suffix)
        repo.git.checkout("--force", dest)
        if repo.is_ancestor(source, dest):
            return Mergeable("ALREADY_UP_TO_DATE")
        try:
            repo.git.merge(
                "--no-commit", "--no-ff", source,
                env=self._identity_env(self.bot_name, self.bot_email),
            )
        except GitCommandError as e:
            conflicts = _conflicting_paths(repo)
            reason = "Merge conflicts found" if conflicts else f"Merge failed: {str(e.stderr or e).strip()}"
            # Left in place for the caller's hard reset
            return Blocked(reason=reason, conflicting_files=tuple(conflicts))
        _abort_merge(repo)
        return Mergeable()

    @_git_action("branch --list")
    def _list_branches(self, suffix: Path, url: str, private_key: str, from_remote: bool) -> List[GitBranch]:
        repo = self._open(suffix)
        default: Optional[str] = None
        if from_remote:
            with self._auth_env(url, private_key) as env:
                output = repo.git.ls_remote(
                    "--symref", REMOTE, "HEAD", env=env, kill_after_timeout=self.command_timeout
                )
            for line in output.splitlines():
                if line.startswith("ref:"):
                    default = _strip_ref(line.split()[1], "refs/heads/")
                    break
        else:
            try:
                default = _strip_ref(
                    repo.git.symbolic_ref(f"refs/remotes/{REMOTE}/HEAD").strip(),
                    f"refs/remotes/{REMOTE}/",
                )
            except GitCommandError:
                default = None

        local = [
            _strip_ref(ref, "refs/heads/")
            for ref in repo.git.for_each_ref("--format=%(refname)", "refs/heads").splitlines()
            if ref
        ]
        remote = [
            _strip_ref(ref, f"refs/remotes/{REMOTE}/")
            for ref in repo.git.for_each_ref("--format=%(refname)", f"refs/remotes/{REMOTE}").splitlines()
            if ref
        ]
        branches = [GitBranch(name=name, is_default=name == default) for name in local]
        branches.extend(
            GitBranch(name=f"{REMOTE}/{name}", is_default=name == default)
            for name in remote
            if name != "HEAD"
        )
        return branches

    @_git_action("branch -D")
    def _delete_branch(self, suffix: Path, branch: str) -> bool:
        repo = self._open(suffix)
        if not _ref_exists(repo, f"refs/heads/{branch}"):
            return False
        repo.git.branch("-D", branch)
        return True

    @_git_action("reset --hard HEAD")
    def _reset_hard(self, suffix: Path, branch: str) -> bool:
        repo = self._open(suffix)
        _abort_merge(repo)
        repo.git.checkout("--force", branch)
        repo.git.reset("--hard", "HEAD")
        return True

    def _ahead_behind(self, repo: Repo, branch: str) -> Tuple[int, int]:
        local_ref = f"refs/heads/{branch}"
        remote_ref = f"refs/remotes/{REMOTE}/{branch}"
        if not (_ref_exists(repo, local_ref) and _ref_exists(repo, remote_ref)):
            return 0, 0
        counts = repo.git.rev_list("--left-right", "--count", f"{local_ref}...{remote_ref}").split()
        return int(counts[0]), int(counts[1])

    @_git_action("status")
    def _get_status(self, suffix: Path, branch: str) -> GitStatus:
        repo = self._open(suffix)
        status = GitStatus()
        # Not stripped: the first line may start with a significant space
        for line in repo.git.status("--porcelain", "--untracked-files=all").splitlines():
            if len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip('"')
            if code in CONFLICT_CODES:
                status.conflicting.append(path)
                continue
            status.modified.append(path)
            if code == "??" or "A" in code:
                status.added.append(path)
            elif "D" in code:
                status.removed.append(path)
        status.ahead_count, status.behind_count = self._ahead_behind(repo, branch)
        if _ref_exists(repo, f"refs/remotes/{REMOTE}/{branch}"):
            status.remote_branch = f"{REMOTE}/{branch}"
        return status

    @_git_action("log")
    def _get_commit_history(self, suffix: Path) -> List[GitLogEntry]:
        repo = self._open(suffix)
        if not repo.head.is_valid():
            return []
        return [
            GitLogEntry(
                commit_id=commit.hexsha,
                author_name=commit.author.name or "",
                author_email=commit.author.email or "",
                message=commit.message.strip(),
                committed_at=commit.committed_datetime.isoformat(),
            )
            for commit in repo.iter_commits("HEAD")
        ]

    @_git_action("config")
    def _has_upstream(self, suffix: Path, branch: str) -> bool:
        """True once ``branch`` has been pushed or checked out from the remote.

        The upstream setting outlives the remote branch itself.
        """
        repo = self._open(suffix)
        if not _ref_exists(repo, f"refs/heads/{branch}"):
            return False
        return Head(repo, f"refs/heads/{branch}").tracking_branch() is not None

    # Async surface

    async def clone(self, suffix: Path, url: str, private_key: str, public_key: str) -> str:
        return await asyncio.to_thread(self._clone, suffix, url, private_key)

    async def checkout(self, suffix: Path, branch: str) -> bool:
        return await asyncio.to_thread(self._checkout, suffix, branch)

    async def checkout_remote(self, suffix: Path, branch: str) -> str:
        return await asyncio.to_thread(self._checkout_remote, suffix, branch)

    async def create_and_checkout(self, suffix: Path, branch: str) -> str:
        return await asyncio.to_thread(self._create_and_checkout, suffix, branch)

    async def fetch(self, suffix: Path, public_key: str, private_key: str, prune: bool = False) -> str:
        return await asyncio.to_thread(self._fetch, suffix, private_key, prune)

    async def commit(
        self, suffix: Path, message: str, author_name: str, author_email: str, allow_empty: bool = False
    ) -> str:
        return await asyncio.to_thread(self._commit, suffix, message, author_name, author_email, allow_empty)

    async def push(self, suffix: Path, url: str, public_key: str, private_key: str, branch: str) -> str:
        return await asyncio.to_thread(self._push, suffix, url, private_key, branch)

    async def pull(self, suffix: Path, url: str, branch: str, private_key: str, public_key: str) -> MergeStatus:
        return await asyncio.to_thread(self._pull, suffix, url, branch, private_key)

    async def merge(self, suffix: Path, source: str, dest: str) -> str:
        return await asyncio.to_thread(self._merge, suffix, source, dest)

    async def is_mergeable(self, suffix: Path, source: str, dest: str) -> MergeProbe:
        return await asyncio.to_thread(self._is_mergeable, suffix, source, dest)

    async def list_branches(
        self, suffix: Path, url: str, private_key: str, public_key: str, from_remote: bool
    ) -> List[GitBranch]:
        return await asyncio.to_thread(self._list_branches, suffix, url, private_key, from_remote)

    async def delete_branch(self, suffix: Path, branch: str) -> bool:
        return await asyncio.to_thread(self._delete_branch, suffix, branch)

    async def reset_hard(self, suffix: Path, branch: str) -> bool:
        return await asyncio.to_thread(self._reset_hard, suffix, branch)

    async def get_status(self, suffix: Path, branch: str) -> GitStatus:
        return await asyncio.to_thread(self._get_status, suffix, branch)

    async def get_commit_history(self, suffix: Path) -> List[GitLogEntry]:
        return await asyncio.to_thread(self._get_commit_history, suffix)

    async def has_upstream(self, suffix: Path, branch: str) -> bool:
        return await asyncio.to_thread(self._has_upstream, suffix, branch)
