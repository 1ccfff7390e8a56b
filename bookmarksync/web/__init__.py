"""Local web interface for bookmarksync."""

from .app import create_app

__all__ = ["create_app"]
