"""Data model: identities, bookmarks and session states."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class Identity:
    """The signed-in principal that bookmarks belong to."""

    id: str
    email: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None

    @property
    def display_name(self) -> str:
        """Name to show for this identity: full name, else email, else id."""
        return self.full_name or self.email or self.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
        }

    @classmethod
    def from_user(cls, user: dict[str, Any]) -> "Identity":
        """Create from an auth server user object.

        Display attributes live in ``user_metadata`` for OAuth users.
        """
        metadata = user.get("user_metadata") or {}
        return cls(
            id=user["id"],
            email=user.get("email"),
            full_name=metadata.get("full_name") or metadata.get("name"),
            avatar_url=metadata.get("avatar_url"),
        )


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into a timezone-aware datetime."""
    if isinstance(value, datetime):
        ts = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Bookmark:
    """A saved link owned by exactly one identity."""

    id: str
    url: str
    title: str | None
    owner_id: str
    created_at: datetime

    @property
    def display_title(self) -> str:
        return self.title or self.url

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "user_id": self.owner_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Bookmark":
        """Create from a backend table row."""
        return cls(
            id=str(row["id"]),
            url=row["url"],
            title=row.get("title"),
            owner_id=str(row["user_id"]),
            created_at=parse_timestamp(row["created_at"]),
        )


def sort_newest_first(bookmarks: list[Bookmark]) -> list[Bookmark]:
    """Order bookmarks by creation time, newest first."""
    return sorted(bookmarks, key=lambda b: b.created_at, reverse=True)


class SessionState:
    """Base for the three session states."""

    name = "unknown"

    @property
    def identity(self) -> Identity | None:
        return None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def to_dict(self) -> dict[str, Any]:
        identity = self.identity
        return {
            "state": self.name,
            "identity": identity.to_dict() if identity else None,
        }


@dataclass(frozen=True)
class Unauthenticated(SessionState):
    """No user is signed in."""

    name = "unauthenticated"


@dataclass(frozen=True)
class Authenticating(SessionState):
    """A sign-in or sign-out is in progress."""

    name = "authenticating"


@dataclass(frozen=True)
class Authenticated(SessionState):
    """A user is signed in."""

    user: Identity
    name = "authenticated"

    @property
    def identity(self) -> Identity | None:
        return self.user
