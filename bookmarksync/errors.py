"""Error types raised by bookmarksync components."""


class BookmarkSyncError(Exception):
    """Base class for all bookmarksync errors.

    The string form of every error is meant to be shown to the user.
    """


class AuthError(BookmarkSyncError):
    """Sign-in, sign-out or session lookup failed."""


class QueryError(BookmarkSyncError):
    """Loading the bookmark list failed."""


class MutationError(BookmarkSyncError):
    """Inserting or deleting a bookmark failed."""


class ValidationError(MutationError):
    """A mutation was rejected locally before any request was sent."""


class ConfigurationMissing(BookmarkSyncError):
    """The backend is not configured, so no capability is available."""
