"""Remote repository URL helpers and the visibility probe."""

from __future__ import annotations

import re
from typing import Optional

import httpx


_SCP_LIKE = re.compile(r"^(?:[\w.\-]+@)?(?P<host>[\w.\-]+):(?!//)(?P<path>.+)$")
_SSH_URL = re.compile(r"^ssh://(?:[\w.\-]+@)?(?P<host>[\w.\-]+)(?::\d+)?/(?P<path>.+)$")


def repo_name_from_url(url: str) -> str:
    """Last path component of a remote URL without ``.git``.

    >>> repo_name_from_url("git@github.com:acme/storefront.git")
    'storefront'
    """
    tail = url.rstrip("/").replace("\\", "/")
    tail = re.split(r"[/:]", tail)[-1]
    if tail.endswith(".git"):
        tail = tail[: -len(".git")]
    return tail


def is_ssh_url(url: str) -> bool:
    if url.startswith("ssh://"):
        return True
    if "://" in url or url.startswith(("/", ".", "~")):
        return False
    return bool(_SCP_LIKE.match(url))


def to_browser_url(url: str) -> str:
    """Convert an SSH remote into the https URL a browser would open.

    Local paths and non-SSH URLs are returned without a trailing ``.git``.
    """
    url = url.strip()
    match = _SSH_URL.match(url) if url.startswith("ssh://") else None
    if match is None and is_ssh_url(url):
        match = _SCP_LIKE.match(url)
    if match is not None:
        path = match.group("path").lstrip("/")
        url = f"https://{match.group('host')}/{path}"
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


class RepoVisibilityProbe:
    """Decides whether a remote repository is private.

    A repository whose browser URL answers HTTP 200 to an anonymous request
    is public; anything else is treated as private.
    """

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    async def is_private(self, remote_url: str) -> bool:
        """Probe ``remote_url``.

        Raises:
            httpx.HTTPError: the probe could not reach the host
        """
        browser_url = to_browser_url(remote_url)
        if not browser_url.startswith(("http://", "https://")):
            # Local or file remotes are never publicly reachable
            return True
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            response = await client.get(browser_url)
        return response.status_code != 200
