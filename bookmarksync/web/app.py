"""FastAPI application serving a local bookmark page and JSON API."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from ..backend.rest import SupabaseRestBackend
from ..client import BookmarkClient
from ..config import Config
from ..errors import AuthError

logger = logging.getLogger(__name__)

# Template directory
TEMPLATE_DIR = Path(__file__).parent / "templates"


class BookmarkIn(BaseModel):
    url: str
    title: str | None = None


class SessionIn(BaseModel):
    access_token: str
    refresh_token: str | None = None


class LoginIn(BaseModel):
    redirect_to: str | None = None


def create_app(config: Config, client: BookmarkClient | None = None) -> FastAPI:
    """Create the web application.

    Args:
        config: Application configuration.
        client: Optional pre-built client. Built from ``config`` if omitted.

    Returns:
        Configured FastAPI application. The client is started and stopped
        with the application lifespan.
    """
    if client is None:
        client = BookmarkClient.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await client.start()
        try:
            yield
        finally:
            await client.stop()

    app = FastAPI(
        title="bookmarksync",
        description="Private bookmarks that stay in sync across sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.client = client

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

    def require_ready() -> None:
        if not client.ready:
            raise HTTPException(status_code=503, detail=client.status.configuration_error)

    def require_identity() -> None:
        require_ready()
        if client.session.identity is None:
            raise HTTPException(status_code=401, detail="Sign in to manage your bookmarks")

    # ==================== HTML Routes ====================

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        """Bookmark list page."""
        status = client.status
        if not status.ready:
            return templates.TemplateResponse(
                request,
                "not_configured.html",
                {"message": status.configuration_error},
                status_code=503,
            )
        return templates.TemplateResponse(
            request,
            "index.html",
            {"status": status, "refresh_seconds": 5},
        )

    @app.post("/bookmarks")
    async def add_bookmark_form(request: Request):
        form = await request.form()
        await client.add_bookmark(str(form.get("url", "")), str(form.get("title", "")))
        return RedirectResponse("/", status_code=303)

    @app.post("/bookmarks/{bookmark_id}/delete")
    async def delete_bookmark_form(bookmark_id: str):
        await client.remove_bookmark(bookmark_id)
        return RedirectResponse("/", status_code=303)

    @app.post("/logout")
    async def logout_form():
        await client.sign_out()
        return RedirectResponse("/", status_code=303)

    @app.get("/auth/login")
    async def auth_login(request: Request):
        """Send the browser to the identity provider."""
        require_ready()
        callback = str(request.url_for("auth_callback"))
        auth = client.backend.auth
        if isinstance(auth, SupabaseRestBackend):
            return RedirectResponse(auth.authorize_url(callback), status_code=303)

        await client.sign_in(callback)
        return RedirectResponse("/", status_code=303)

    @app.get("/auth/callback", response_class=HTMLResponse)
    async def auth_callback(request: Request):
        """Landing page of the OAuth redirect; posts the token fragment back."""
        return templates.TemplateResponse(request, "callback.html", {})

    # ==================== JSON API ====================

    @app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        return client.status.to_dict()

    @app.get("/api/bookmarks")
    async def api_bookmarks() -> dict[str, Any]:
        require_identity()
        status = client.status
        return {
            "count": len(status.bookmarks),
            "loading": status.loading,
            "error": status.error,
            "bookmarks": [b.to_dict() for b in status.bookmarks],
        }

    @app.post("/api/bookmarks", status_code=202)
    async def api_add_bookmark(body: BookmarkIn) -> dict[str, Any]:
        """Save a bookmark. The list updates once the change is observed."""
        require_identity()
        if not body.url.strip():
            raise HTTPException(status_code=400, detail="A URL is required")
        if not await client.add_bookmark(body.url, body.title):
            raise HTTPException(status_code=502, detail=client.error)
        return {"status": "accepted"}

    @app.delete("/api/bookmarks/{bookmark_id}", status_code=202)
    async def api_delete_bookmark(bookmark_id: str) -> dict[str, Any]:
        require_identity()
        if not await client.remove_bookmark(bookmark_id):
            raise HTTPException(status_code=502, detail=client.error)
        return {"status": "accepted"}

    @app.post("/api/auth/login")
    async def api_login(body: LoginIn) -> dict[str, Any]:
        require_ready()
        if not await client.sign_in(body.redirect_to):
            raise HTTPException(status_code=502, detail=client.error)
        return client.status.to_dict()

    @app.post("/api/auth/session")
    async def api_set_session(body: SessionIn) -> dict[str, Any]:
        """Complete a sign-in with tokens from the OAuth redirect."""
        require_ready()
        auth = client.backend.auth
        if not isinstance(auth, SupabaseRestBackend):
            raise HTTPException(status_code=501, detail="Backend does not accept tokens")
        try:
            identity = await auth.set_session(body.access_token, body.refresh_token)
        except AuthError as e:
            logger.warning(f"Rejected session token: {e}")
            raise HTTPException(status_code=401, detail=str(e))
        return {"identity": identity.to_dict()}

    @app.post("/api/auth/logout")
    async def api_logout() -> dict[str, Any]:
        require_ready()
        if not await client.sign_out():
            raise HTTPException(status_code=502, detail=client.error)
        return client.status.to_dict()

    return app
