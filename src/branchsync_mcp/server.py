"""Branchsync MCP Server

FastMCP server exposing branch-synchronized version control to agents and
editors. All tools are namespaced as branchsync_* for provider compatibility.

Every tool returns text: JSON for structured results, or a line of the form
``Error [CODE]: message`` when the operation failed with a domain error.
"""

import sys
if sys.version_info < (3, 10):
    raise RuntimeError(
        f"Branchsync MCP requires Python 3.10+; found {sys.version.split()[0]}"
    )

# Standard library imports
import json
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

# Third-party imports
from fastmcp import FastMCP, Context

# Local application imports
from branchsync.errors import BranchSyncError
from branchsync.models import Application, GitProfile
from .config import get_branchsync_config, get_orchestrator, get_version
from .observability import log_action, log_warning


_T = TypeVar("_T")

mcp = FastMCP(name="Branchsync")


# Instrument FastMCP tool execution for observability
try:
    from fastmcp.tools.tool import FunctionTool  # type: ignore

    _orig_run = FunctionTool.run

    async def _instrumented_run(self, arguments):  # type: ignore
        tool_name = getattr(self, "name", "<unknown>")
        input_chars = len(json.dumps(arguments, default=str)) if arguments else 0
        start_time = time.perf_counter()
        outcome = "ok"
        try:
            return await _orig_run(self, arguments)
        except Exception:
            outcome = "error"
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000.0
            try:
                log_action(
                    "mcp.tool",
                    tool_name=tool_name,
                    input_chars=input_chars,
                    duration_ms=duration_ms,
                    outcome=outcome,
                )
            except Exception:
                pass

    FunctionTool.run = _instrumented_run  # type: ignore
except Exception:
    # Instrumentation is best effort; tools work without it
    pass


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def _application_view(application: Application) -> dict:
    """Application record as returned to callers (never the private key)."""
    data = application.model_dump(mode="json", exclude={"git_metadata": {"git_auth"}})
    if application.git_metadata is not None:
        data["git_metadata"] = application.git_metadata.public_view()
    return data


def _format_error(error: BranchSyncError) -> str:
    return f"Error [{error.code}]: {error.message}"


async def _respond(operation: Awaitable[_T], render: Callable[[_T], str]) -> str:
    try:
        result = await operation
    except BranchSyncError as e:
        log_warning(f"[MCP] {e.code}: {e.message}")
        return _format_error(e)
    return render(result)


# ============================================================================
# Diagnostics
# ============================================================================


@mcp.tool(name="branchsync_health")
def health(ctx: Context) -> str:
    """Check server health and configuration.

    Example output:
        Branchsync MCP Server v0.1.0
        Status: Healthy
        Working Trees: /home/me/.branchsync/repos
        Operations In Flight: 0
    """
    config = get_branchsync_config()
    orchestrator = get_orchestrator()
    lines = [
        f"Branchsync MCP Server v{get_version()}",
        "Status: Healthy",
        f"Working Trees: {config.repos_root()}",
        f"Operations In Flight: {orchestrator.completion.pending}",
        f"Operator: {orchestrator.user.email}",
    ]
    return "\n".join(lines)


# ============================================================================
# Keys, profiles and metadata
# ============================================================================


@mcp.tool(name="branchsync_generate_deploy_key")
async def generate_deploy_key(ctx: Context, application_id: str) -> str:
    """Generate a deploy key pair for an application and return the public key.

    Add the public key to the remote repository with write access before
    connecting.

    Args:
        application_id: Id of the application (lineage root)
    """
    return await _respond(
        get_orchestrator().generate_deploy_key(application_id),
        lambda public_key: _to_json({"public_key": public_key}),
    )


@mcp.tool(name="branchsync_get_profile")
async def get_profile(ctx: Context, application_id: str = "") -> str:
    """Get the git author profile used for commits.

    Args:
        application_id: Lineage to read the per-application profile of.
            Empty returns the global profile, creating it from the
            operator's identity when missing.
    """
    orchestrator = get_orchestrator()
    operation = (
        orchestrator.get_profile(application_id)
        if application_id
        else orchestrator.get_or_create_profile()
    )
    return await _respond(operation, lambda profile: _to_json(profile.model_dump()))


@mcp.tool(name="branchsync_update_profile")
async def update_profile(
    ctx: Context,
    author_name: str = "",
    author_email: str = "",
    application_id: str = "",
    use_global_profile: Optional[bool] = None,
) -> str:
    """Create or update a git author profile.

    Args:
        author_name: Commit author name
        author_email: Commit author email
        application_id: Lineage for a per-application profile; empty updates
            the global profile
        use_global_profile: For per-application profiles, defer to the
            global profile instead
    """
    profile = GitProfile(
        author_name=author_name,
        author_email=author_email,
        use_global_profile=use_global_profile,
    )
    orchestrator = get_orchestrator()
    operation = (
        orchestrator.update_or_create_profile(profile, application_id)
        if application_id
        else orchestrator.update_or_create_profile(profile)
    )
    return await _respond(
        operation,
        lambda profiles: _to_json({key: p.model_dump() for key, p in profiles.items()}),
    )


@mcp.tool(name="branchsync_metadata")
async def metadata(ctx: Context, application_id: str) -> str:
    """Show an application's git metadata (public key only) and author profiles."""
    return await _respond(get_orchestrator().get_git_metadata(application_id), _to_json)


# ============================================================================
# Connect / detach
# ============================================================================


@mcp.tool(name="branchsync_connect")
async def connect(
    ctx: Context,
    application_id: str,
    remote_url: str,
    author_name: str = "",
    author_email: str = "",
    use_global_profile: Optional[bool] = None,
    origin: str = "",
) -> str:
    """Connect an application to an empty remote repository.

    Clones the remote, writes the application into it, and pushes an initial
    commit using the application's deploy key.

    Args:
        application_id: Id of the application (lineage root)
        remote_url: SSH URL of an empty repository
        author_name: Commit author for this application (optional)
        author_email: Commit author email for this application (optional)
        use_global_profile: Use the global profile instead of the above
        origin: Editor base URL for README links (default from config)
    """
    profile = None
    if author_name or author_email or use_global_profile is not None:
        profile = GitProfile(
            author_name=author_name,
            author_email=author_email,
            use_global_profile=use_global_profile,
        )
    return await _respond(
        get_orchestrator().connect(application_id, remote_url, profile, origin or None),
        lambda app: _to_json(_application_view(app)),
    )


@mcp.tool(name="branchsync_detach")
async def detach(ctx: Context, application_id: str) -> str:
    """Disconnect an application from git, deleting its other branches."""
    return await _respond(
        get_orchestrator().detach(application_id),
        lambda app: _to_json(_application_view(app)),
    )


# ============================================================================
# Commit / push / pull
# ============================================================================


@mcp.tool(name="branchsync_commit")
async def commit(
    ctx: Context,
    application_id: str,
    branch_name: str,
    message: str = "",
    do_push: bool = False,
) -> str:
    """Commit the current state of a branch.

    Args:
        application_id: Id of the lineage root
        branch_name: Branch to commit
        message: Commit message (default: system generated)
        do_push: Push after committing
    """
    return await _respond(
        get_orchestrator().commit(application_id, branch_name, message or None, do_push),
        lambda text: text,
    )


@mcp.tool(name="branchsync_push")
async def push(ctx: Context, application_id: str, branch_name: str) -> str:
    """Push a branch's commits to the remote."""
    return await _respond(get_orchestrator().push(application_id, branch_name), lambda text: text)


@mcp.tool(name="branchsync_pull")
async def pull(ctx: Context, application_id: str, branch_name: str) -> str:
    """Pull remote changes into a branch and update the application.

    The branch must have no uncommitted changes.
    """
    return await _respond(
        get_orchestrator().pull(application_id, branch_name),
        lambda result: _to_json({
            "merge_status": result.merge_status.to_dict(),
            "application": _application_view(result.application),
        }),
    )


# ============================================================================
# Branches
# ============================================================================


@mcp.tool(name="branchsync_create_branch")
async def create_branch(
    ctx: Context,
    application_id: str,
    branch_name: str,
    source_branch: str,
) -> str:
    """Create a branch from an existing local branch and push it."""
    return await _respond(
        get_orchestrator().create_branch(application_id, branch_name, source_branch),
        lambda app: _to_json(_application_view(app)),
    )


@mcp.tool(name="branchsync_checkout_branch")
async def checkout_branch(ctx: Context, application_id: str, branch_name: str) -> str:
    """Open a branch. Use origin/<name> to check out a remote-only branch."""
    return await _respond(
        get_orchestrator().checkout_branch(application_id, branch_name),
        lambda app: _to_json(_application_view(app)),
    )


@mcp.tool(name="branchsync_list_branches")
async def list_branches(
    ctx: Context,
    application_id: str,
    prune: bool = False,
    current_branch: str = "",
) -> str:
    """List branches; with prune, drop local branches deleted on the remote.

    Args:
        application_id: Id of the lineage root
        prune: Fetch first and delete stale local branches
        current_branch: Branch the caller has open (never pruned)
    """
    return await _respond(
        get_orchestrator().list_branches(application_id, prune, current_branch or None),
        lambda branches: _to_json([b.to_dict() for b in branches]),
    )


@mcp.tool(name="branchsync_status")
async def status(ctx: Context, application_id: str, branch_name: str) -> str:
    """Show a branch's changes and how far it is ahead of or behind the remote."""
    return await _respond(
        get_orchestrator().status(application_id, branch_name),
        lambda result: _to_json(result.to_dict()),
    )


@mcp.tool(name="branchsync_commit_history")
async def commit_history(ctx: Context, application_id: str, branch_name: str) -> str:
    """List the commits of a branch, newest first."""
    return await _respond(
        get_orchestrator().get_commit_history(application_id, branch_name),
        lambda entries: _to_json([entry.to_dict() for entry in entries]),
    )


# ============================================================================
# Merge
# ============================================================================


@mcp.tool(name="branchsync_merge_status")
async def merge_status(
    ctx: Context,
    application_id: str,
    source_branch: str,
    destination_branch: str,
) -> str:
    """Check whether source_branch merges cleanly into destination_branch."""
    return await _respond(
        get_orchestrator().is_branch_mergeable(application_id, source_branch, destination_branch),
        lambda result: _to_json(result.to_dict()),
    )


@mcp.tool(name="branchsync_merge")
async def merge(
    ctx: Context,
    application_id: str,
    source_branch: str,
    destination_branch: str,
) -> str:
    """Merge source_branch into destination_branch and push the result."""
    return await _respond(
        get_orchestrator().merge(application_id, source_branch, destination_branch),
        lambda result: _to_json({
            "merge_status": result.merge_status.to_dict(),
            "application": _application_view(result.application),
        }),
    )


@mcp.tool(name="branchsync_create_conflicted_branch")
async def create_conflicted_branch(ctx: Context, application_id: str, branch_name: str) -> str:
    """Push a branch's state as <branch>_mergeConflict to resolve conflicts on the remote."""
    return await _respond(
        get_orchestrator().create_conflicted_branch(application_id, branch_name),
        lambda text: text,
    )


def main():
    """Entry point for branchsync-mcp command."""
    from .config import get_mcp_transport_config

    transport_config = get_mcp_transport_config()
    transport = transport_config["transport"]

    if transport == "http":
        host = transport_config["host"]
        port = transport_config["port"]

        print(f"Starting Branchsync MCP Server on http://{host}:{port}", file=sys.stderr)

        mcp.run(transport="http", host=host, port=port)
    else:
        # stdio transport (default)
        mcp.run()


if __name__ == "__main__":
    main()
