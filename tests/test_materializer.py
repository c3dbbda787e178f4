"""Tests for JSON working-tree materialization."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from branchsync.errors import FileSystemError, InvalidParameterError
from branchsync.fs import repo_suffix
from branchsync.materializer import APPLICATION_FILE, PAGES_DIR, README_FILE, JsonTreeMaterializer
from branchsync.models import ApplicationSnapshot, PageSnapshot


SUFFIX = repo_suffix("org-1", "app-1", "storefront")


def _snapshot(*pages: PageSnapshot) -> ApplicationSnapshot:
    return ApplicationSnapshot(name="Storefront", settings={"theme": "dark"}, pages=list(pages))


@pytest.fixture
def materializer(tmp_path: Path) -> JsonTreeMaterializer:
    return JsonTreeMaterializer(tmp_path)


@pytest.mark.anyio
async def test_serialize_then_deserialize_keeps_page_order(materializer: JsonTreeMaterializer):
    snapshot = _snapshot(
        PageSnapshot(name="Zeta", layout={"widgets": [1, 2]}),
        PageSnapshot(name="Alpha", is_default=True),
    )
    await materializer.serialize(snapshot, SUFFIX, "main")
    restored = await materializer.deserialize("org-1", "app-1", "storefront", "main")
    assert restored == snapshot


@pytest.mark.anyio
async def test_similar_page_names_get_separate_files(materializer: JsonTreeMaterializer, tmp_path: Path):
    snapshot = _snapshot(
        PageSnapshot(name="Home Page", layout={"v": 1}),
        PageSnapshot(name="Home-Page", layout={"v": 2}),
        PageSnapshot(name="Home/Page", layout={"v": 3}),
    )
    await materializer.serialize(snapshot, SUFFIX, "main")
    files = sorted(p.name for p in (tmp_path / SUFFIX / PAGES_DIR).iterdir())
    assert files == ["Home%20Page.json", "Home%2FPage.json", "Home-Page.json"]

    restored = await materializer.deserialize("org-1", "app-1", "storefront", "main")
    assert restored == snapshot


@pytest.mark.anyio
async def test_duplicate_page_names_are_rejected(materializer: JsonTreeMaterializer, tmp_path: Path):
    snapshot = _snapshot(PageSnapshot(name="Home"), PageSnapshot(name="Home"))
    with pytest.raises(InvalidParameterError, match="Home"):
        await materializer.serialize(snapshot, SUFFIX, "main")
    assert not (tmp_path / SUFFIX / APPLICATION_FILE).exists()


@pytest.mark.anyio
async def test_deserialize_without_name_leaves_it_empty(materializer: JsonTreeMaterializer, tmp_path: Path):
    (tmp_path / SUFFIX).mkdir(parents=True)
    (tmp_path / SUFFIX / APPLICATION_FILE).write_text('{"pages": []}\n', encoding="utf-8")
    restored = await materializer.deserialize("org-1", "app-1", "storefront", "main")
    assert restored.name == ""


@pytest.mark.anyio
async def test_serialize_removes_deleted_pages(materializer: JsonTreeMaterializer, tmp_path: Path):
    await materializer.serialize(_snapshot(PageSnapshot(name="Home"), PageSnapshot(name="About")), SUFFIX, "main")
    await materializer.serialize(_snapshot(PageSnapshot(name="Home")), SUFFIX, "main")
    pages = sorted(p.name for p in (tmp_path / SUFFIX / PAGES_DIR).iterdir())
    assert pages == ["Home.json"]


@pytest.mark.anyio
async def test_unchanged_snapshot_leaves_files_untouched(materializer: JsonTreeMaterializer, tmp_path: Path):
    snapshot = _snapshot(PageSnapshot(name="Home"))
    await materializer.serialize(snapshot, SUFFIX, "main")
    app_file = tmp_path / SUFFIX / APPLICATION_FILE
    before = app_file.stat().st_mtime_ns
    await materializer.serialize(snapshot, SUFFIX, "main")
    assert app_file.stat().st_mtime_ns == before


@pytest.mark.anyio
async def test_files_are_sorted_json(materializer: JsonTreeMaterializer, tmp_path: Path):
    await materializer.serialize(_snapshot(PageSnapshot(name="Home", layout={"b": 1, "a": 2})), SUFFIX, "main")
    text = (tmp_path / SUFFIX / PAGES_DIR / "Home.json").read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert text.index('"a"') < text.index('"b"')
    assert json.loads(text)["name"] == "Home"


@pytest.mark.anyio
async def test_deserialize_without_application_file(materializer: JsonTreeMaterializer, tmp_path: Path):
    (tmp_path / SUFFIX).mkdir(parents=True)
    with pytest.raises(FileSystemError, match="application.json is missing on branch feature"):
        await materializer.deserialize("org-1", "app-1", "storefront", "feature")


@pytest.mark.anyio
async def test_deserialize_invalid_json(materializer: JsonTreeMaterializer, tmp_path: Path):
    (tmp_path / SUFFIX).mkdir(parents=True)
    (tmp_path / SUFFIX / APPLICATION_FILE).write_text("{not json", encoding="utf-8")
    with pytest.raises(FileSystemError):
        await materializer.deserialize("org-1", "app-1", "storefront", "main")


@pytest.mark.anyio
async def test_is_empty_ignores_git_dir(materializer: JsonTreeMaterializer, tmp_path: Path):
    assert await materializer.is_empty(SUFFIX) is True
    (tmp_path / SUFFIX / ".git").mkdir(parents=True)
    assert await materializer.is_empty(SUFFIX) is True
    (tmp_path / SUFFIX / "notes.txt").write_text("hi", encoding="utf-8")
    assert await materializer.is_empty(SUFFIX) is False


@pytest.mark.anyio
async def test_readme_and_remove_repo(materializer: JsonTreeMaterializer, tmp_path: Path):
    readme = await materializer.initialize_readme(SUFFIX, "http://editor/view", "http://editor/edit")
    assert readme == tmp_path / SUFFIX / README_FILE
    content = readme.read_text(encoding="utf-8")
    assert "http://editor/view" in content and "http://editor/edit" in content

    assert await materializer.remove_repo(SUFFIX) is True
    assert not (tmp_path / SUFFIX).exists()
    assert await materializer.remove_repo(SUFFIX) is False
