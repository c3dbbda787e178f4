"""Commit author resolution and git profile management.

Resolution order for a lineage:

1. the lineage's own profile, unless it defers to the global profile or is empty
2. the user's global (``default``) profile
3. the platform identity (account name, or email local part)
"""

from __future__ import annotations

from typing import Dict, Optional

from .errors import InvalidConfigurationError, InvalidParameterError
from .models import DEFAULT_PROFILE_KEY, GitProfile, User
from .store import UserDataStore


MISSING_AUTHOR_MESSAGE = (
    "Unable to find git author configuration for logged-in user. "
    "You can set up a git profile from the user profile section."
)


def platform_profile(user: User) -> GitProfile:
    return GitProfile(author_name=user.display_name(), author_email=user.email)


def resolve_author_profile(
    profiles: Dict[str, GitProfile],
    lineage_id: str,
    user: Optional[User] = None,
) -> Optional[GitProfile]:
    """Pick the profile to attribute a commit in ``lineage_id`` to."""
    lineage_profile = profiles.get(lineage_id)
    if (
        lineage_profile is not None
        and lineage_profile.use_global_profile is not True
        and lineage_profile.is_populated()
    ):
        return lineage_profile

    global_profile = profiles.get(DEFAULT_PROFILE_KEY)
    if global_profile is not None and global_profile.is_populated():
        return global_profile

    if user is not None:
        return platform_profile(user)
    return None


class ProfileService:
    """Profiles of one user, backed by a ``UserDataStore``."""

    def __init__(self, store: UserDataStore, user: User):
        self.store = store
        self.user = user

    async def update_or_create(
        self, profile: GitProfile, key: str = DEFAULT_PROFILE_KEY
    ) -> Dict[str, GitProfile]:
        """Store ``profile`` under ``key`` and return all of the user's profiles.

        The global profile and any lineage profile that does not defer to the
        global one must carry both an author name and an email.
        """
        strict = key == DEFAULT_PROFILE_KEY or profile.use_global_profile is False
        if strict and not profile.author_name.strip():
            raise InvalidParameterError("Author Name")
        if strict and not profile.author_email.strip():
            raise InvalidParameterError("Author Email")
        if not key or not key.strip():
            raise InvalidParameterError("application id")

        profile = profile.model_copy()
        if key == DEFAULT_PROFILE_KEY:
            profile.use_global_profile = None
        elif profile.use_global_profile is not True:
            profile.use_global_profile = False

        profiles = await self.store.get_profiles(self.user.email)
        if profiles.get(key) == profile and DEFAULT_PROFILE_KEY in profiles:
            return profiles

        profiles[key] = profile
        if DEFAULT_PROFILE_KEY not in profiles:
            profiles[DEFAULT_PROFILE_KEY] = platform_profile(self.user)
        return await self.store.save_profiles(self.user.email, profiles)

    async def get_profile(self, key: str = DEFAULT_PROFILE_KEY) -> GitProfile:
        profiles = await self.store.get_profiles(self.user.email)
        profile = profiles.get(key)
        if profile is None:
            return GitProfile(author_name="", author_email="", use_global_profile=True)
        if profile.use_global_profile is None:
            profile.use_global_profile = True
        return profile

    async def get_default_or_create(self) -> GitProfile:
        profiles = await self.store.get_profiles(self.user.email)
        profile = profiles.get(DEFAULT_PROFILE_KEY)
        if profile is None or not profile.author_name.strip() or not profile.author_email.strip():
            profile = platform_profile(self.user)
            profiles[DEFAULT_PROFILE_KEY] = profile
            await self.store.save_profiles(self.user.email, profiles)
        profile.use_global_profile = None
        return profile

    async def profiles_for(self, lineage_id: str) -> Dict[str, GitProfile]:
        profiles = await self.store.get_profiles(self.user.email)
        return {
            key: profiles[key]
            for key in (DEFAULT_PROFILE_KEY, lineage_id)
            if key in profiles
        }

    async def resolve_author(self, lineage_id: str) -> GitProfile:
        """Author for a commit in ``lineage_id``; never returns an unnamed profile."""
        profiles = await self.store.get_profiles(self.user.email)
        profile = resolve_author_profile(profiles, lineage_id, self.user)
        if profile is None or not profile.is_populated():
            raise InvalidConfigurationError(MISSING_AUTHOR_MESSAGE)
        return profile
