from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote


_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_component(value: str, *, default: str = "") -> str:
    value = value.strip()
    if not value:
        return default
    sanitized = _SANITIZE_PATTERN.sub("-", value)
    sanitized = sanitized.strip("-._")
    return sanitized or (default or "untitled")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def repo_suffix(organization_id: str, lineage_id: str, repo_name: str) -> Path:
    """Relative working-tree location for one lineage's clone."""
    return Path(
        _sanitize_component(organization_id, default="org"),
        _sanitize_component(lineage_id, default="app"),
        _sanitize_component(repo_name, default="repo"),
    )


def page_filename(page_name: str) -> str:
    """File name for a page. Percent-encoded, so distinct names never share a file."""
    return f"{quote(page_name, safe='') or '%'}.json"


def dump_json(data: Any) -> str:
    # Stable key order and trailing newline keep re-serialization a no-op for git.
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def write_if_changed(path: Path, content: str) -> bool:
    """Write ``content`` unless the file already holds exactly that text."""
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return True


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` atomically (temp + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dump_json(data))
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def remove_tree(path: Path) -> bool:
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
