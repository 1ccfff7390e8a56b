"""Tests for the web interface."""

import pytest

from bookmarksync.backend.memory import create_memory_backend
from bookmarksync.client import BookmarkClient
from bookmarksync.config import Config
from bookmarksync.models import Identity

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient
from bookmarksync.web import create_app

ALICE = Identity(id="alice", email="alice@example.com", full_name="Alice Liddell")


@pytest.fixture
def config():
    """Create a test configuration."""
    config = Config()
    config.backend.kind = "memory"
    return config


@pytest.fixture
def memory():
    """Backend bundle with Alice already signed in."""
    return create_memory_backend(ALICE)


@pytest.fixture
def store(memory):
    return memory[1]


@pytest.fixture
def bookmark_client(memory):
    return BookmarkClient(memory[0])


@pytest.fixture
def app(config, bookmark_client):
    """Create the FastAPI app."""
    return create_app(config, client=bookmark_client)


@pytest.fixture
def client(app, bookmark_client):
    """Create a test client with the lifespan running."""
    with TestClient(app) as tc:
        tc.portal.call(bookmark_client.wait_idle)
        yield tc


def settle(tc, bookmark_client):
    """Let change notifications and reloads finish."""
    tc.portal.call(bookmark_client.wait_idle)


class TestPages:
    """Tests for HTML pages."""

    def test_index_lists_bookmarks(self, app, bookmark_client, store):
        store.seed("alice", "https://docs.python.org", "Python docs")
        store.seed("bob", "https://secret.example", "Bob's")

        with TestClient(app) as tc:
            settle(tc, bookmark_client)
            response = tc.get("/")

        assert response.status_code == 200
        assert "Python docs" in response.text
        assert "Alice Liddell" in response.text
        assert "secret.example" not in response.text

    def test_index_empty_state(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "any bookmarks yet" in response.text

    def test_index_signed_out(self, client, store, bookmark_client):
        store.expire_session()
        settle(client, bookmark_client)

        response = client.get("/")

        assert response.status_code == 200
        assert "Sign in to manage your bookmarks" in response.text
        assert 'href="/auth/login"' in response.text

    def test_not_configured(self):
        with TestClient(create_app(Config())) as tc:
            response = tc.get("/")

        assert response.status_code == 503
        assert "not configured" in response.text

    def test_add_form(self, client, store, bookmark_client):
        response = client.post(
            "/bookmarks",
            data={"url": "https://example.com", "title": ""},
            follow_redirects=False,
        )
        settle(client, bookmark_client)

        assert response.status_code == 303
        assert response.headers["location"] == "/"
        assert [b.url for b in store.rows()] == ["https://example.com"]
        assert store.rows()[0].title is None
        assert "https://example.com" in client.get("/").text

    def test_delete_form(self, client, store, bookmark_client):
        bookmark = store.seed("alice", "https://example.com")
        settle(client, bookmark_client)

        response = client.post(f"/bookmarks/{bookmark.id}/delete", follow_redirects=False)
        settle(client, bookmark_client)

        assert response.status_code == 303
        assert store.rows() == []

    def test_logout_form(self, client, store):
        response = client.post("/logout", follow_redirects=False)

        assert response.status_code == 303
        assert store.current_user is None

    def test_login_starts_sign_in(self, client, store):
        store.expire_session()

        response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 303
        assert store.sign_in_requests == 1
        assert store.pending_redirect.endswith("/auth/callback")

    def test_callback_page(self, client):
        response = client.get("/auth/callback")

        assert response.status_code == 200
        assert "/api/auth/session" in response.text


class TestAPI:
    """Tests for the JSON API."""

    def test_status(self, client):
        data = client.get("/api/status").json()

        assert data["ready"] is True
        assert data["session"]["state"] == "authenticated"
        assert data["session"]["identity"]["id"] == "alice"
        assert data["error"] is None

    def test_status_not_configured(self):
        with TestClient(create_app(Config())) as tc:
            data = tc.get("/api/status").json()

        assert data["ready"] is False
        assert "not configured" in data["configuration_error"]

    def test_list_bookmarks(self, client, store, bookmark_client):
        store.seed("alice", "https://one.example")
        store.seed("alice", "https://two.example", "Two")
        settle(client, bookmark_client)

        data = client.get("/api/bookmarks").json()

        assert data["count"] == 2
        assert [b["url"] for b in data["bookmarks"]] == ["https://two.example", "https://one.example"]
        assert all(b["user_id"] == "alice" for b in data["bookmarks"])

    def test_list_requires_sign_in(self, client, store, bookmark_client):
        store.expire_session()
        settle(client, bookmark_client)

        response = client.get("/api/bookmarks")

        assert response.status_code == 401

    def test_list_not_configured(self):
        with TestClient(create_app(Config())) as tc:
            response = tc.get("/api/bookmarks")

        assert response.status_code == 503

    def test_add_bookmark(self, client, store, bookmark_client):
        response = client.post("/api/bookmarks", json={"url": " https://example.com ", "title": "Ex"})
        settle(client, bookmark_client)

        assert response.status_code == 202
        data = client.get("/api/bookmarks").json()
        assert data["bookmarks"][0]["url"] == "https://example.com"
        assert data["bookmarks"][0]["title"] == "Ex"

    def test_add_blank_url(self, client, store):
        response = client.post("/api/bookmarks", json={"url": "   "})

        assert response.status_code == 400
        assert response.json()["detail"] == "A URL is required"
        assert store.rows() == []

    def test_add_failure(self, client, store):
        store.fail_next("insert", "connection reset")

        response = client.post("/api/bookmarks", json={"url": "https://example.com"})

        assert response.status_code == 502
        assert response.json()["detail"] == "connection reset"

    def test_delete_bookmark(self, client, store, bookmark_client):
        bookmark = store.seed("alice", "https://example.com")
        settle(client, bookmark_client)

        response = client.delete(f"/api/bookmarks/{bookmark.id}")
        settle(client, bookmark_client)

        assert response.status_code == 202
        assert client.get("/api/bookmarks").json()["count"] == 0

    def test_delete_foreign_bookmark_is_accepted(self, client, store):
        bobs = store.seed("bob", "https://bobs.example")

        response = client.delete(f"/api/bookmarks/{bobs.id}")

        assert response.status_code == 202
        assert [b.id for b in store.rows()] == [bobs.id]

    def test_set_session_needs_rest_backend(self, client):
        response = client.post("/api/auth/session", json={"access_token": "token"})

        assert response.status_code == 501

    def test_login_and_logout(self, client, store, bookmark_client):
        data = client.post("/api/auth/logout").json()
        assert data["session"]["state"] == "unauthenticated"

        data = client.post("/api/auth/login", json={"redirect_to": "http://localhost/cb"}).json()
        assert data["session"]["state"] == "authenticating"
        assert store.pending_redirect == "http://localhost/cb"

    def test_logout_failure(self, client, store):
        store.fail_next("sign_out", "auth server down")

        response = client.post("/api/auth/logout")

        assert response.status_code == 502
        assert client.get("/api/status").json()["session"]["state"] == "authenticated"
