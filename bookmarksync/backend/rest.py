"""HTTP adapter for a Supabase-style backend.

Talks to the auth server (GoTrue, under ``/auth/v1``) and the REST data
API (PostgREST, under ``/rest/v1``). The access token of the signed-in
user is persisted to a small YAML file so a later process can resume the
session.
"""

import logging
import webbrowser
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx
import yaml

from ..config import BackendConfig
from ..errors import AuthError, MutationError, QueryError
from ..models import Bookmark, Identity
from .base import (
    AuthBackend,
    AuthCallback,
    MutationBackend,
    QueryBackend,
    Subscription,
)

logger = logging.getLogger(__name__)

BOOKMARK_COLUMNS = "id,url,title,user_id,created_at"


def _error_message(response: httpx.Response) -> str:
    """Pull a human readable message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in ("message", "msg", "error_description", "error"):
            if data.get(key):
                return str(data[key])

    text = response.text.strip()
    return f"HTTP {response.status_code}: {text}" if text else f"HTTP {response.status_code}"


class SessionFile:
    """Access and refresh tokens persisted between runs."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, Any]:
        """Stored tokens, or an empty dict if none are usable.

        An unreadable file is removed so the next sign-in starts clean.
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Discarding unreadable session file {self.path}: {e}")
            self.clear()
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, access_token: str, refresh_token: str | None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(
                {"access_token": access_token, "refresh_token": refresh_token}, f
            )
        self.path.chmod(0o600)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class SupabaseRestBackend(AuthBackend, QueryBackend, MutationBackend):
    """Auth, query and mutation capabilities over HTTP.

    Change notifications are not part of this adapter; pair it with a
    ChangeFeed such as MQTTChangeFeed.
    """

    def __init__(
        self,
        config: BackendConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the adapter.

        Args:
            config: Backend configuration (url, anon key, session file).
            transport: Optional httpx transport, mainly for tests.
        """
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.session_file = SessionFile(config.session_file)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._listeners: dict[int, AuthCallback] = {}
        self._next_listener_id = 0
        self.last_authorize_url: str | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
                headers={"apikey": self.config.anon_key},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _auth_headers(self, token: str | None = None) -> dict[str, str]:
        bearer = token or self._access_token or self.config.anon_key
        return {"Authorization": f"Bearer {bearer}"}

    # ==================== Auth ====================

    async def _fetch_user(self, access_token: str) -> Identity | None:
        """Resolve a token to an identity, or None if the token is rejected."""
        client = await self._get_client()
        try:
            response = await client.get(
                "/auth/v1/user", headers=self._auth_headers(access_token)
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Could not reach auth server: {e}") from e

        if response.status_code in (401, 403):
            return None
        if response.status_code != 200:
            raise AuthError(_error_message(response))
        try:
            return Identity.from_user(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuthError(f"Malformed user response from auth server: {e}") from e

    async def _refresh(self, refresh_token: str) -> tuple[str, str | None] | None:
        client = await self._get_client()
        try:
            response = await client.post(
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Could not reach auth server: {e}") from e

        if response.status_code != 200:
            logger.info(f"Session refresh rejected: {_error_message(response)}")
            return None
        try:
            data = response.json()
            return data["access_token"], data.get("refresh_token", refresh_token)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuthError(f"Malformed token response from auth server: {e}") from e

    async def get_current_session(self) -> Identity | None:
        stored = self.session_file.load()
        access_token = stored.get("access_token")
        refresh_token = stored.get("refresh_token")
        if not isinstance(access_token, str) or not access_token:
            return None
        if not isinstance(refresh_token, str):
            refresh_token = None

        identity = await self._fetch_user(access_token)
        if identity is None and refresh_token:
            tokens = await self._refresh(refresh_token)
            if tokens is not None:
                access_token, refresh_token = tokens
                identity = await self._fetch_user(access_token)

        if identity is None:
            logger.info("Stored session is no longer valid")
            self.session_file.clear()
            self._access_token = self._refresh_token = None
            return None

        self._access_token, self._refresh_token = access_token, refresh_token
        self.session_file.save(access_token, refresh_token)
        return identity

    def subscribe(self, callback: AuthCallback) -> Subscription:
        self._next_listener_id += 1
        listener_id = self._next_listener_id
        self._listeners[listener_id] = callback
        return Subscription(
            lambda: self._listeners.pop(listener_id, None),
            name=f"auth-{listener_id}",
        )

    def _emit(self, identity: Identity | None) -> None:
        for callback in list(self._listeners.values()):
            callback(identity)

    def authorize_url(self, redirect_to: str | None = None) -> str:
        params = {"provider": self.config.oauth_provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    async def sign_in_interactive(self, redirect_to: str | None = None) -> None:
        url = self.authorize_url(redirect_to or self.config.redirect_to)
        self.last_authorize_url = url
        logger.info(f"Opening browser for sign-in: {url}")
        if not webbrowser.open(url):
            raise AuthError(f"Could not open a browser. Visit {url} to sign in")

    async def set_session(self, access_token: str, refresh_token: str | None = None) -> Identity:
        """Complete a sign-in with tokens delivered by the OAuth redirect.

        Raises:
            AuthError: If the auth server rejects the token.
        """
        identity = await self._fetch_user(access_token)
        if identity is None:
            raise AuthError("Invalid or expired access token")

        self._access_token, self._refresh_token = access_token, refresh_token
        self.session_file.save(access_token, refresh_token)
        logger.info(f"Signed in as {identity.display_name}")
        self._emit(identity)
        return identity

    async def sign_out(self) -> None:
        token = self._access_token
        if token:
            client = await self._get_client()
            try:
                response = await client.post(
                    "/auth/v1/logout", headers=self._auth_headers(token)
                )
            except httpx.HTTPError as e:
                raise AuthError(f"Could not reach auth server: {e}") from e
            # An already expired token means the session is gone anyway.
            if response.status_code >= 400 and response.status_code not in (401, 403, 404):
                raise AuthError(_error_message(response))

        self._access_token = self._refresh_token = None
        self.session_file.clear()
        self._emit(None)

    # ==================== Data ====================

    async def _renew_session(self) -> bool:
        """Swap an expired access token for a fresh one.

        Returns:
            True if a new token is in place. Otherwise the session is
            dropped and subscribers are told the user is signed out.
        """
        tokens = None
        if self._refresh_token:
            tokens = await self._refresh(self._refresh_token)

        if tokens is None:
            logger.warning("Session expired and could not be refreshed")
            self._access_token = self._refresh_token = None
            self.session_file.clear()
            self._emit(None)
            return False

        self._access_token, self._refresh_token = tokens
        self.session_file.save(*tokens)
        logger.info("Refreshed expired access token")
        return True

    async def _send(
        self,
        method: str,
        path: str,
        error_cls: type[QueryError] | type[MutationError],
        action: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a data request, refreshing the session once on 401.

        Raises:
            QueryError or MutationError (``error_cls``): If the request
                could not be sent, or the session expired for good.
        """
        client = await self._get_client()
        for attempt in range(2):
            try:
                response = await client.request(
                    method,
                    path,
                    headers={**self._auth_headers(), **(headers or {})},
                    **kwargs,
                )
            except httpx.HTTPError as e:
                raise error_cls(f"Failed to {action}: {e}") from e

            if response.status_code != 401 or self._access_token is None or attempt:
                return response

            try:
                renewed = await self._renew_session()
            except AuthError as e:
                raise error_cls(f"Failed to {action}: {e}") from e
            if not renewed:
                raise error_cls("Your session has expired. Sign in again")
        return response

    async def query(self, table: str, owner_id: str) -> list[Bookmark]:
        response = await self._send(
            "GET",
            f"/rest/v1/{table}",
            QueryError,
            "load bookmarks",
            params={
                "select": BOOKMARK_COLUMNS,
                "user_id": f"eq.{owner_id}",
                "order": "created_at.desc",
            },
        )
        if response.status_code != 200:
            raise QueryError(_error_message(response))

        try:
            return [Bookmark.from_row(row) for row in response.json()]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise QueryError(f"Malformed bookmark list from backend: {e}") from e

    async def insert(self, table: str, record: dict[str, Any]) -> None:
        response = await self._send(
            "POST",
            f"/rest/v1/{table}",
            MutationError,
            "save bookmark",
            headers={"Prefer": "return=minimal"},
            json=record,
        )
        if response.status_code >= 400:
            raise MutationError(_error_message(response))

    async def delete(self, table: str, id: str, owner_id: str) -> None:
        response = await self._send(
            "DELETE",
            f"/rest/v1/{table}",
            MutationError,
            "delete bookmark",
            params={"id": f"eq.{id}", "user_id": f"eq.{owner_id}"},
        )
        if response.status_code >= 400:
            raise MutationError(_error_message(response))
