"""Working-tree arena: one exclusive lock per lineage working tree.

Every working tree lives at ``root / <organization>/<lineage>/<repo>``. An
operation holds the key for its whole checkout/commit/push sequence: an
``asyncio.Lock`` serializes tasks in this process and an ``AdvisoryLock``
file serializes processes sharing the same root. Different keys never wait
on each other.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict

from branchsync.errors import ActionFailedError
from branchsync.fs import repo_suffix
from branchsync.lock import AdvisoryLock

from .observability import log_debug


LOCKS_DIR_NAME = ".locks"


class WorkingTreeArena:
    def __init__(self, root: Path, *, lock_timeout: float = 120.0, lock_ttl: int = 600):
        self.root = Path(root).expanduser()
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self._locks: Dict[Path, asyncio.Lock] = {}
        self._holders: Dict[Path, int] = {}

    @staticmethod
    def key_for(organization_id: str, lineage_id: str, repo_name: str) -> Path:
        return repo_suffix(organization_id, lineage_id, repo_name)

    def path_for(self, key: Path) -> Path:
        return self.root / key

    def _lock_path(self, key: Path) -> Path:
        return self.root / LOCKS_DIR_NAME / ("__".join(key.parts) + ".lock")

    @asynccontextmanager
    async def hold(self, key: Path, operation: str) -> AsyncIterator[Path]:
        """Hold ``key`` exclusively for the duration of the block.

        Raises:
            ActionFailedError: another process kept the working tree locked
                past ``lock_timeout``
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                file_lock = AdvisoryLock(
                    self._lock_path(key),
                    ttl=self.lock_ttl,
                    timeout=self.lock_timeout,
                    operation=operation,
                )
                if not await asyncio.to_thread(file_lock.acquire):
                    holder = file_lock.holder() or {}
                    raise ActionFailedError(
                        operation,
                        f"working tree {key.as_posix()} is locked by pid {holder.get('pid', '?')} "
                        f"({holder.get('op', 'unknown operation')})",
                    )
                log_debug(f"[ARENA] acquired {key.as_posix()} for {operation}")
                try:
                    yield self.path_for(key)
                finally:
                    file_lock.release()
                    log_debug(f"[ARENA] released {key.as_posix()} after {operation}")
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)
