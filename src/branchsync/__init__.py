"""branchsync: keep database-resident applications in sync with git branches."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("branchsync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .lock import AdvisoryLock  # noqa: F401
from .models import Application, GitMetadata, GitProfile  # noqa: F401

__all__ = [
    "AdvisoryLock",
    "Application",
    "GitMetadata",
    "GitProfile",
    "__version__",
]
