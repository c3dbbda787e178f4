from __future__ import annotations

import getpass
import os
import time
from pathlib import Path
from typing import Optional

from .fs import utcnow_iso


class AdvisoryLock:
    """File-based advisory lock guarding one working tree across processes.

    The lock file records who holds it so a stuck operation can be diagnosed:
    ``pid=123 time=2025-01-01T00:00:00Z user=alice op=commit``

    Environment variables (optional):
    - BRANCHSYNC_LOCK_TTL: seconds before a lock file is considered stale
    - BRANCHSYNC_LOCK_POLL: polling interval in seconds while waiting
    """

    def __init__(
        self,
        path: Path,
        *,
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        operation: str = "",
    ):
        self.path = Path(path)
        self.ttl = ttl if ttl is not None else int(os.getenv("BRANCHSYNC_LOCK_TTL", "600"))
        self.poll = float(os.getenv("BRANCHSYNC_LOCK_POLL", "0.1"))
        self.timeout = timeout
        self.operation = operation
        self.acquired = False

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.ttl

    def _write_holder(self) -> None:
        try:
            user = os.getenv("BRANCHSYNC_USER") or getpass.getuser()
        except Exception:
            user = "unknown"
        op = self.operation.replace(" ", "_") or "-"
        self.path.write_text(
            f"pid={os.getpid()} time={utcnow_iso()} user={user} op={op}\n",
            encoding="utf-8",
        )

    def holder(self) -> Optional[dict]:
        """Parse the lock file; None when the lock is free or unreadable."""
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, OSError):
            return None
        info = {}
        for part in content.split():
            if "=" in part:
                key, value = part.split("=", 1)
                info[key] = value
        if "pid" in info:
            try:
                info["pid"] = int(info["pid"])
            except ValueError:
                pass
        return info or None

    def acquire(self) -> bool:
        start = time.time()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                os.close(fd)
                self._write_holder()
                self.acquired = True
                return True
            except FileExistsError:
                if self.timeout == 0:
                    return False
                # ttl<=0 means never stale
                if self.ttl > 0 and self._is_stale():
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if self.timeout is not None and (time.time() - start) >= self.timeout:
                    return False
                time.sleep(self.poll)

    def release(self) -> None:
        if self.acquired:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self.acquired = False
