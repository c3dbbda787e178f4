"""Conversion between application records and branch-independent snapshots."""

from __future__ import annotations

from typing import Dict, Optional

from .models import Application, ApplicationSnapshot, Page, PageSnapshot


def export_snapshot(application: Application) -> ApplicationSnapshot:
    return ApplicationSnapshot(
        name=application.name,
        settings=dict(application.settings),
        pages=[
            PageSnapshot(name=page.name, is_default=page.is_default, layout=dict(page.layout))
            for page in application.pages
        ],
    )


def apply_snapshot(
    application: Application,
    snapshot: ApplicationSnapshot,
    root: Optional[Application] = None,
) -> Application:
    """Replace ``application``'s content with ``snapshot``.

    An empty snapshot name leaves the record's name alone.

    Pages keep their id when a page of the same name already exists. Each
    page's ``default_page_id`` points at the same-named page of ``root``
    when there is one, otherwise at itself.
    """
    updated = application.model_copy(deep=True)
    existing: Dict[str, Page] = {page.name: page for page in application.pages}
    root_pages: Dict[str, Page] = {page.name: page for page in root.pages} if root else {}

    pages = []
    for page_snapshot in snapshot.pages:
        page = existing.get(page_snapshot.name)
        page = page.model_copy(deep=True) if page else Page(name=page_snapshot.name)
        page.is_default = page_snapshot.is_default
        page.layout = dict(page_snapshot.layout)
        root_page = root_pages.get(page.name)
        page.default_page_id = root_page.id if root_page else page.id
        pages.append(page)

    if pages and not any(page.is_default for page in pages):
        pages[0].is_default = True

    if snapshot.name:
        updated.name = snapshot.name
    updated.settings = dict(snapshot.settings)
    updated.pages = pages
    return updated


def detach_pages(application: Application) -> Application:
    """Give ``application`` fresh page ids, independent of its source record."""
    copy = application.model_copy(deep=True)
    copy.pages = [
        Page(name=page.name, is_default=page.is_default, layout=dict(page.layout))
        for page in application.pages
    ]
    return copy


def reset_page_lineage(application: Application) -> Application:
    """Make every page's ``default_page_id`` self-referential."""
    copy = application.model_copy(deep=True)
    for page in copy.pages:
        page.default_page_id = page.id
    return copy
