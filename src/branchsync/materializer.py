"""Working-tree materialization of application snapshots.

Layout of a materialized working tree::

    README.md            seeded on connect
    application.json     name, settings and page order
    pages/<name>.json    one file per page, name percent-encoded

All files are written with sorted keys and a trailing newline, so serializing
an unchanged snapshot leaves the working tree untouched.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Protocol

from .errors import FileSystemError, InvalidParameterError
from .fs import dump_json, page_filename, remove_tree, repo_suffix, write_if_changed
from .models import ApplicationSnapshot, PageSnapshot


APPLICATION_FILE = "application.json"
PAGES_DIR = "pages"
README_FILE = "README.md"
GIT_DIR = ".git"

README_TEMPLATE = """\
# Version-controlled application

This repository is managed by branchsync. Every branch holds one version of
the application; files under `pages/` are generated, so make changes in the
editor and commit from there.

- View the application: {view_url}
- Edit the application: {edit_url}
"""


class WorkingTreeMaterializer(Protocol):
    root: Path

    async def serialize(self, snapshot: ApplicationSnapshot, suffix: Path, branch: str) -> Path: ...

    async def deserialize(
        self, organization_id: str, lineage_id: str, repo_name: str, branch: str
    ) -> ApplicationSnapshot: ...

    async def is_empty(self, suffix: Path) -> bool: ...

    async def initialize_readme(self, suffix: Path, view_url: str, edit_url: str) -> Path: ...

    async def remove_repo(self, suffix: Path) -> bool: ...


class JsonTreeMaterializer:
    """Writes snapshots as a tree of JSON files below ``root / suffix``.

    The caller is responsible for having checked out ``branch`` in the
    working tree before (de)serializing.
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def path_for(self, suffix: Path) -> Path:
        return self.root / suffix

    def _write_tree(self, snapshot: ApplicationSnapshot, repo_path: Path) -> Path:
        files = {}
        for page in snapshot.pages:
            filename = page_filename(page.name)
            if filename in files:
                raise InvalidParameterError(f"page name '{page.name}' (used by more than one page)")
            files[filename] = page

        app_doc = {
            "name": snapshot.name,
            "settings": snapshot.settings,
            "pages": [page.name for page in snapshot.pages],
        }
        write_if_changed(repo_path / APPLICATION_FILE, dump_json(app_doc))

        pages_dir = repo_path / PAGES_DIR
        for filename, page in files.items():
            write_if_changed(pages_dir / filename, dump_json(page.model_dump(mode="json")))

        if pages_dir.is_dir():
            for stale in pages_dir.glob("*.json"):
                if stale.name not in files:
                    stale.unlink()
        return repo_path

    def _read_tree(self, repo_path: Path, branch: str) -> ApplicationSnapshot:
        app_file = repo_path / APPLICATION_FILE
        if not app_file.is_file():
            raise FileSystemError(f"{APPLICATION_FILE} is missing on branch {branch}")
        app_doc = json.loads(app_file.read_text(encoding="utf-8"))

        pages_by_name = {}
        pages_dir = repo_path / PAGES_DIR
        if pages_dir.is_dir():
            for page_file in sorted(pages_dir.glob("*.json")):
                page = PageSnapshot.model_validate(
                    json.loads(page_file.read_text(encoding="utf-8"))
                )
                pages_by_name[page.name] = page

        ordered: List[PageSnapshot] = []
        for name in app_doc.get("pages", []):
            page = pages_by_name.pop(name, None)
            if page is not None:
                ordered.append(page)
        ordered.extend(pages_by_name[name] for name in sorted(pages_by_name))

        return ApplicationSnapshot(
            name=app_doc.get("name") or "",
            settings=app_doc.get("settings", {}),
            pages=ordered,
        )

    async def serialize(self, snapshot: ApplicationSnapshot, suffix: Path, branch: str) -> Path:
        try:
            return await asyncio.to_thread(self._write_tree, snapshot, self.path_for(suffix))
        except OSError as e:
            raise FileSystemError(f"unable to write branch {branch}: {e}") from e

    async def deserialize(
        self, organization_id: str, lineage_id: str, repo_name: str, branch: str
    ) -> ApplicationSnapshot:
        repo_path = self.path_for(repo_suffix(organization_id, lineage_id, repo_name))
        try:
            return await asyncio.to_thread(self._read_tree, repo_path, branch)
        except (OSError, ValueError) as e:
            raise FileSystemError(f"unable to read branch {branch}: {e}") from e

    async def is_empty(self, suffix: Path) -> bool:
        """True when the working tree holds nothing besides ``.git``."""
        repo_path = self.path_for(suffix)
        if not repo_path.exists():
            return True
        return not any(entry.name != GIT_DIR for entry in repo_path.iterdir())

    async def initialize_readme(self, suffix: Path, view_url: str, edit_url: str) -> Path:
        readme = self.path_for(suffix) / README_FILE
        content = README_TEMPLATE.format(view_url=view_url, edit_url=edit_url)
        try:
            await asyncio.to_thread(write_if_changed, readme, content)
        except OSError as e:
            raise FileSystemError(f"unable to write {README_FILE}: {e}") from e
        return readme

    async def remove_repo(self, suffix: Path) -> bool:
        return await asyncio.to_thread(remove_tree, self.path_for(suffix))
