"""Branchsync MCP Server

FastMCP server that exposes branch-synchronized version control to AI agents
and editors. Tools are namespaced as branchsync_* for provider compatibility.
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("branchsync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .server import mcp

__all__ = ["mcp"]
