"""Data model for version-controlled applications.

Persisted records (applications, metadata, profiles) are Pydantic models so
stores can round-trip them through JSON. Operation results are plain
dataclasses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field
from ulid import ULID


DEFAULT_PROFILE_KEY = "default"


def new_id() -> str:
    return str(ULID())


class GitAuth(BaseModel):
    """Deploy key pair authenticating a lineage to its remote."""

    public_key: str = Field(default="", description="OpenSSH public key")
    private_key: str = Field(default="", description="OpenSSH private key (PEM)")
    generated_at: str = Field(default="", description="UTC timestamp of generation")

    def is_empty(self) -> bool:
        return not (self.public_key.strip() and self.private_key.strip())


class GitMetadata(BaseModel):
    """Version-control metadata attached to an application record."""

    repo_name: Optional[str] = None
    remote_url: Optional[str] = None
    browser_supported_remote_url: Optional[str] = None
    branch_name: Optional[str] = None
    default_branch_name: Optional[str] = None
    default_application_id: Optional[str] = None
    is_repo_private: Optional[bool] = None
    git_auth: Optional[GitAuth] = None

    def has_key_pair(self) -> bool:
        return self.git_auth is not None and not self.git_auth.is_empty()

    def public_view(self) -> Dict[str, Any]:
        """Metadata safe to return to callers (no private key)."""
        data = self.model_dump(exclude={"git_auth"})
        data["public_key"] = self.git_auth.public_key if self.git_auth else None
        return data


class Page(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    is_default: bool = False
    # Id of the same page in the lineage root; equals ``id`` outside a lineage.
    default_page_id: str = ""
    layout: Dict[str, Any] = Field(default_factory=dict)


class Application(BaseModel):
    """Database-resident application definition."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    pages: List[Page] = Field(default_factory=list)
    git_metadata: Optional[GitMetadata] = None

    @property
    def is_root(self) -> bool:
        meta = self.git_metadata
        return meta is None or meta.default_application_id in (None, self.id)

    @property
    def lineage_id(self) -> str:
        meta = self.git_metadata
        if meta and meta.default_application_id:
            return meta.default_application_id
        return self.id

    @property
    def branch_name(self) -> Optional[str]:
        return self.git_metadata.branch_name if self.git_metadata else None

    def default_page(self) -> Optional[Page]:
        for page in self.pages:
            if page.is_default:
                return page
        return self.pages[0] if self.pages else None


class GitProfile(BaseModel):
    author_name: str = ""
    author_email: str = ""
    use_global_profile: Optional[bool] = None

    def is_populated(self) -> bool:
        return bool(self.author_name.strip())


class User(BaseModel):
    """Platform identity of the operator."""

    email: str
    name: str = ""
    username: str = ""

    def display_name(self) -> str:
        if self.name.strip():
            return self.name
        return (self.username or self.email).split("@")[0]


class PageSnapshot(BaseModel):
    name: str
    is_default: bool = False
    layout: Dict[str, Any] = Field(default_factory=dict)


class ApplicationSnapshot(BaseModel):
    """Id-free, branch-independent content of an application."""

    name: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    pages: List[PageSnapshot] = Field(default_factory=list)


@dataclass
class GitStatus:
    """Working tree status against a branch's tracked remote."""

    modified: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    conflicting: List[str] = field(default_factory=list)
    ahead_count: int = 0
    behind_count: int = 0
    remote_branch: str = ""

    @property
    def is_clean(self) -> bool:
        return not (self.modified or self.conflicting)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["is_clean"] = self.is_clean
        return data


@dataclass
class MergeStatus:
    status: str = ""
    mergeable: bool = True
    conflicting_files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Mergeable:
    status: str = "Merge can be performed"


@dataclass(frozen=True)
class Blocked:
    reason: str
    conflicting_files: Tuple[str, ...] = ()
    branch: str = ""
    behind_count: int = 0


# Result of a speculative merge
MergeProbe = Union[Mergeable, Blocked]


def probe_to_status(probe: MergeProbe) -> MergeStatus:
    if isinstance(probe, Mergeable):
        return MergeStatus(status=probe.status, mergeable=True)
    return MergeStatus(
        status=probe.reason,
        mergeable=False,
        conflicting_files=list(probe.conflicting_files),
    )


@dataclass
class GitBranch:
    name: str
    is_default: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GitLogEntry:
    commit_id: str
    author_name: str
    author_email: str
    message: str
    committed_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PullResult:
    merge_status: MergeStatus
    application: Application

    def to_dict(self) -> dict:
        return {
            "merge_status": self.merge_status.to_dict(),
            "application": self.application.model_dump(
                exclude={"git_metadata": {"git_auth"}}
            ),
        }
