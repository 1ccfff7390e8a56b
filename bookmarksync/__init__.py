"""bookmarksync: private bookmarks kept in sync across sessions."""

from .client import BookmarkClient, ClientStatus
from .config import Config, load_config
from .errors import (
    AuthError,
    BookmarkSyncError,
    ConfigurationMissing,
    MutationError,
    QueryError,
    ValidationError,
)
from .models import (
    Authenticated,
    Authenticating,
    Bookmark,
    Identity,
    SessionState,
    Unauthenticated,
)

__version__ = "0.1.0"

__all__ = [
    "Authenticated",
    "Authenticating",
    "AuthError",
    "Bookmark",
    "BookmarkClient",
    "BookmarkSyncError",
    "ClientStatus",
    "Config",
    "ConfigurationMissing",
    "Identity",
    "MutationError",
    "QueryError",
    "SessionState",
    "Unauthenticated",
    "ValidationError",
    "load_config",
]
