"""Private repository quota per organization."""

from __future__ import annotations

from typing import Dict, Optional


UNLIMITED = -1


class PrivateRepoQuota:
    """Static quota: one global limit with optional per-organization overrides."""

    def __init__(self, default_limit: int = 3, overrides: Optional[Dict[str, int]] = None):
        self.default_limit = default_limit
        self.overrides = dict(overrides or {})

    async def limit_for(self, organization_id: str) -> int:
        return self.overrides.get(organization_id, self.default_limit)

    @staticmethod
    def exceeded(limit: int, connected_count: int) -> bool:
        return limit != UNLIMITED and limit <= connected_count
