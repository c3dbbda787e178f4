from __future__ import annotations

import os
import time
from pathlib import Path

from branchsync.lock import AdvisoryLock


def test_lock_acquire_release(tmp_path: Path):
    p = tmp_path / ".t.lock"
    lock = AdvisoryLock(p, timeout=1)
    assert lock.acquire() is True
    assert p.exists()
    lock.release()
    assert not p.exists()


def test_lock_timeout_while_held(tmp_path: Path):
    p = tmp_path / ".t.lock"
    l1 = AdvisoryLock(p, timeout=0, ttl=60)
    assert l1.acquire() is True
    try:
        l2 = AdvisoryLock(p, timeout=0.2, ttl=60)
        start = time.time()
        assert l2.acquire() is False
        assert time.time() - start >= 0.2
        assert AdvisoryLock(p, timeout=0).acquire() is False
    finally:
        l1.release()


def test_stale_lock_is_broken(tmp_path: Path):
    p = tmp_path / ".t.lock"
    p.write_text("pid=1 time=2000-01-01T00:00:00Z user=ghost op=commit\n", encoding="utf-8")
    old = time.time() - 120
    os.utime(p, (old, old))

    lock = AdvisoryLock(p, timeout=0.5, ttl=60)
    assert lock.acquire() is True
    assert lock.holder()["pid"] == os.getpid()
    lock.release()


def test_zero_ttl_never_stale(tmp_path: Path):
    p = tmp_path / ".t.lock"
    p.write_text("pid=1\n", encoding="utf-8")
    old = time.time() - 3600
    os.utime(p, (old, old))
    assert AdvisoryLock(p, timeout=0.2, ttl=0).acquire() is False


def test_holder_records_operation(tmp_path: Path):
    p = tmp_path / ".t.lock"
    lock = AdvisoryLock(p, timeout=1, operation="create branch")
    assert lock.acquire() is True
    try:
        holder = lock.holder()
        assert holder["op"] == "create_branch"
        assert holder["pid"] == os.getpid()
    finally:
        lock.release()
    assert AdvisoryLock(p).holder() is None
