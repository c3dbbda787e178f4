"""Metadata and user-data stores.

The orchestrator only depends on the ``MetadataStore`` and ``UserDataStore``
protocols. The in-memory implementations here keep records in dictionaries
and optionally persist them to a JSON file after every write.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from .errors import ResourceNotFoundError
from .fs import write_json_atomic
from .models import Application, GitAuth, GitProfile


class Permission(str, Enum):
    READ = "read"
    MANAGE = "manage"


# (application, requested permission) -> allowed
Authorizer = Callable[[Application, Permission], bool]


def _allow_all(application: Application, permission: Permission) -> bool:
    return True


class MetadataStore(Protocol):
    async def get(self, application_id: str, permission: Permission = Permission.READ) -> Application: ...

    async def find_by_branch(
        self, lineage_id: str, branch_name: str, permission: Permission = Permission.READ
    ) -> Optional[Application]: ...

    async def list_lineage(self, lineage_id: str) -> List[Application]: ...

    async def save(self, application: Application) -> Application: ...

    async def delete(self, application_id: str) -> bool: ...

    async def count_git_connected(self, organization_id: str, exclude_lineage: Optional[str] = None) -> int: ...


class UserDataStore(Protocol):
    async def get_profiles(self, user_email: str) -> Dict[str, GitProfile]: ...

    async def save_profiles(self, user_email: str, profiles: Dict[str, GitProfile]) -> Dict[str, GitProfile]: ...

    async def add_deploy_key(self, user_email: str, auth: GitAuth) -> None: ...


def _load_json(path: Optional[Path]) -> dict:
    if path is None or not path.exists():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


class InMemoryMetadataStore:
    """Dictionary-backed application store.

    Records are copied on the way in and out, so callers must ``save`` to
    make a change visible, as with a database.
    """

    def __init__(self, path: Optional[Path] = None, authorizer: Optional[Authorizer] = None):
        self.path = Path(path).expanduser() if path else None
        self._authorize = authorizer or _allow_all
        self._lock = asyncio.Lock()
        self._records: Dict[str, Application] = {
            app_id: Application.model_validate(data)
            for app_id, data in _load_json(self.path).get("applications", {}).items()
        }

    async def _persist(self) -> None:
        if self.path is None:
            return
        payload = {
            "applications": {
                app_id: app.model_dump(mode="json") for app_id, app in self._records.items()
            }
        }
        await asyncio.to_thread(write_json_atomic, self.path, payload)

    def _visible(self, application: Application, permission: Permission) -> bool:
        return self._authorize(application, permission)

    async def get(self, application_id: str, permission: Permission = Permission.READ) -> Application:
        record = self._records.get(application_id)
        if record is None or not self._visible(record, permission):
            raise ResourceNotFoundError("application", application_id)
        return record.model_copy(deep=True)

    async def find_by_branch(
        self, lineage_id: str, branch_name: str, permission: Permission = Permission.READ
    ) -> Optional[Application]:
        for record in self._records.values():
            if (
                record.git_metadata is not None
                and record.lineage_id == lineage_id
                and record.git_metadata.branch_name == branch_name
                and self._visible(record, permission)
            ):
                return record.model_copy(deep=True)
        return None

    async def list_lineage(self, lineage_id: str) -> List[Application]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.lineage_id == lineage_id
        ]

    async def save(self, application: Application) -> Application:
        async with self._lock:
            existing = self._records.get(application.id)
            if existing is not None and not self._visible(existing, Permission.MANAGE):
                raise ResourceNotFoundError("application", application.id)
            self._records[application.id] = application.model_copy(deep=True)
            await self._persist()
        return application.model_copy(deep=True)

    async def delete(self, application_id: str) -> bool:
        async with self._lock:
            removed = self._records.pop(application_id, None)
            if removed is not None:
                await self._persist()
        return removed is not None

    async def count_git_connected(self, organization_id: str, exclude_lineage: Optional[str] = None) -> int:
        count = 0
        for record in self._records.values():
            meta = record.git_metadata
            if (
                record.organization_id == organization_id
                and record.is_root
                and meta is not None
                and meta.remote_url
                and record.id != exclude_lineage
            ):
                count += 1
        return count


class InMemoryUserDataStore:
    """Per-user git profiles and generated deploy keys."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else None
        self._lock = asyncio.Lock()
        data = _load_json(self.path)
        self._profiles: Dict[str, Dict[str, GitProfile]] = {
            email: {key: GitProfile.model_validate(p) for key, p in profiles.items()}
            for email, profiles in data.get("profiles", {}).items()
        }
        self._deploy_keys: Dict[str, List[GitAuth]] = {
            email: [GitAuth.model_validate(k) for k in keys]
            for email, keys in data.get("deploy_keys", {}).items()
        }

    async def _persist(self) -> None:
        if self.path is None:
            return
        payload = {
            "profiles": {
                email: {key: p.model_dump(mode="json") for key, p in profiles.items()}
                for email, profiles in self._profiles.items()
            },
            "deploy_keys": {
                email: [k.model_dump(mode="json") for k in keys]
                for email, keys in self._deploy_keys.items()
            },
        }
        await asyncio.to_thread(write_json_atomic, self.path, payload)

    async def get_profiles(self, user_email: str) -> Dict[str, GitProfile]:
        return {
            key: profile.model_copy()
            for key, profile in self._profiles.get(user_email, {}).items()
        }

    async def save_profiles(self, user_email: str, profiles: Dict[str, GitProfile]) -> Dict[str, GitProfile]:
        async with self._lock:
            self._profiles[user_email] = {key: p.model_copy() for key, p in profiles.items()}
            await self._persist()
        return await self.get_profiles(user_email)

    async def add_deploy_key(self, user_email: str, auth: GitAuth) -> None:
        async with self._lock:
            self._deploy_keys.setdefault(user_email, []).append(auth.model_copy())
            await self._persist()

    async def deploy_keys(self, user_email: str) -> List[GitAuth]:
        return [k.model_copy() for k in self._deploy_keys.get(user_email, [])]
