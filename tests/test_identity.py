"""Tests for commit author resolution and profile management."""
from __future__ import annotations

import pytest

from branchsync.errors import InvalidConfigurationError, InvalidParameterError
from branchsync.identity import ProfileService, resolve_author_profile
from branchsync.models import DEFAULT_PROFILE_KEY, GitProfile, User
from branchsync.store import InMemoryUserDataStore


USER = User(email="ada@example.com", name="Ada Lovelace")


def test_lineage_profile_wins_when_populated():
    profiles = {
        DEFAULT_PROFILE_KEY: GitProfile(author_name="Global", author_email="g@example.com"),
        "app-1": GitProfile(author_name="Local", author_email="l@example.com", use_global_profile=False),
    }
    assert resolve_author_profile(profiles, "app-1", USER).author_name == "Local"


def test_lineage_profile_deferring_to_global():
    profiles = {
        DEFAULT_PROFILE_KEY: GitProfile(author_name="Global", author_email="g@example.com"),
        "app-1": GitProfile(author_name="Local", author_email="l@example.com", use_global_profile=True),
    }
    assert resolve_author_profile(profiles, "app-1", USER).author_name == "Global"


def test_empty_profiles_fall_back_to_platform_identity():
    profile = resolve_author_profile({}, "app-1", USER)
    assert profile.author_name == "Ada Lovelace"
    assert profile.author_email == "ada@example.com"


def test_platform_identity_uses_email_local_part_without_name():
    profile = resolve_author_profile({}, "app-1", User(email="grace@example.com"))
    assert profile.author_name == "grace"


def test_nothing_resolves_without_user():
    assert resolve_author_profile({}, "app-1") is None


@pytest.mark.anyio
async def test_global_profile_requires_name_and_email():
    service = ProfileService(InMemoryUserDataStore(), USER)
    with pytest.raises(InvalidParameterError):
        await service.update_or_create(GitProfile(author_name="", author_email="a@example.com"))
    with pytest.raises(InvalidParameterError):
        await service.update_or_create(GitProfile(author_name="Ada", author_email=""))


@pytest.mark.anyio
async def test_lineage_profile_creation_seeds_global_profile():
    service = ProfileService(InMemoryUserDataStore(), USER)
    profiles = await service.update_or_create(
        GitProfile(author_name="Ada", author_email="ada@work.example"), "app-1"
    )
    assert profiles["app-1"].use_global_profile is False
    assert profiles[DEFAULT_PROFILE_KEY].author_name == "Ada Lovelace"


@pytest.mark.anyio
async def test_deferring_lineage_profile_may_be_empty():
    service = ProfileService(InMemoryUserDataStore(), USER)
    profiles = await service.update_or_create(GitProfile(use_global_profile=True), "app-1")
    assert profiles["app-1"].use_global_profile is True
    author = await service.resolve_author("app-1")
    assert author.author_name == "Ada Lovelace"


@pytest.mark.anyio
async def test_missing_profile_reads_as_use_global():
    service = ProfileService(InMemoryUserDataStore(), USER)
    profile = await service.get_profile("unknown-app")
    assert profile.use_global_profile is True
    assert profile.author_name == ""


@pytest.mark.anyio
async def test_get_default_or_create_persists_platform_profile():
    store = InMemoryUserDataStore()
    service = ProfileService(store, USER)
    profile = await service.get_default_or_create()
    assert profile.author_email == "ada@example.com"
    stored = await store.get_profiles(USER.email)
    assert stored[DEFAULT_PROFILE_KEY].author_name == "Ada Lovelace"


@pytest.mark.anyio
async def test_resolve_author_rejects_unnamed_identity():
    service = ProfileService(InMemoryUserDataStore(), User(email=""))
    with pytest.raises(InvalidConfigurationError):
        await service.resolve_author("app-1")
