"""Tests for session.py and the Supabase auth calls it relies on."""

import json

import httpx
import pytest

from app.core.session import SessionManager
from app.providers.supabase import AuthError, AuthEvent, SupabaseClient

USER = {"id": "user-1", "email": "ada@example.com"}
TOKEN_BODY = {
    "access_token": "token-1",
    "refresh_token": "refresh-1",
    "expires_in": 3600,
    "token_type": "bearer",
    "user": USER,
}


class FakeSupabase:
    """Minimal GoTrue + PostgREST backend keyed by path."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.profiles: list[dict] = [{"id": "user-1", "name": "Ada"}]
        self.settings: list[dict] = []
        self.signup_body: dict = TOKEN_BODY

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/token":
            body = json.loads(request.content)
            if body.get("password") == "wrong":
                return httpx.Response(400, json={"error_description": "Invalid login credentials"})
            return httpx.Response(200, json=TOKEN_BODY)
        if path == "/auth/v1/signup":
            return httpx.Response(200, json=self.signup_body)
        if path in ("/auth/v1/logout", "/auth/v1/recover"):
            return httpx.Response(204)
        if path == "/auth/v1/user":
            return httpx.Response(200, json=USER)
        if path == "/rest/v1/profiles":
            if request.method == "PATCH":
                body = json.loads(request.content)
                for row in self.profiles:
                    row.update(body)
                return httpx.Response(200, json=self.profiles)
            return httpx.Response(200, json=self.profiles)
        if path == "/rest/v1/user_settings":
            if request.method == "POST":
                row = {"theme": "light", "notifications_enabled": True, **json.loads(request.content)}
                self.settings = [row]
                return httpx.Response(201, json=[row])
            return httpx.Response(200, json=self.settings)
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def backend():
    return FakeSupabase()


@pytest.fixture
def client(backend):
    return SupabaseClient(
        "https://project.supabase.co", "anon-key", transport=httpx.MockTransport(backend.handler)
    )


@pytest.fixture
def sessions(client):
    return SessionManager(client, password_reset_redirect_url="https://app.example/reset")


class TestAuth:
    @pytest.mark.asyncio
    async def test_log_in_loads_profile(self, sessions):
        user = await sessions.log_in("ada@example.com", "secret")

        assert user.id == "user-1"
        assert user.name == "Ada"
        assert user.email == "ada@example.com"
        assert sessions.current_user_id == "user-1"

    @pytest.mark.asyncio
    async def test_log_in_without_profile_uses_default_name(self, sessions, backend):
        backend.profiles = []
        user = await sessions.log_in("ada@example.com", "secret")
        assert user.name == "New User"

    @pytest.mark.asyncio
    async def test_bad_credentials(self, sessions):
        with pytest.raises(AuthError, match="Invalid login credentials") as exc_info:
            await sessions.log_in("ada@example.com", "wrong")
        assert exc_info.value.status_code == 400
        assert sessions.current_user_id is None

    @pytest.mark.asyncio
    async def test_sign_up_with_confirmation_pending(self, sessions, backend):
        backend.signup_body = {"id": "user-2", "email": "bob@example.com"}
        assert await sessions.sign_up("Bob", "bob@example.com", "secret") is False

    @pytest.mark.asyncio
    async def test_sign_up_sends_name(self, sessions, backend):
        assert await sessions.sign_up("Ada", "ada@example.com", "secret") is True
        body = json.loads(backend.requests[0].content)
        assert body["data"] == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_password_reset_redirect(self, sessions, backend):
        await sessions.send_password_reset_email("ada@example.com")
        assert backend.requests[0].url.params["redirect_to"] == "https://app.example/reset"

    @pytest.mark.asyncio
    async def test_listeners_notified_until_unsubscribed(self, sessions):
        events = []
        subscription = sessions.on_auth_state_change(lambda event, session: events.append(event))

        await sessions.log_in("ada@example.com", "secret")
        subscription.unsubscribe()
        await sessions.log_out()

        assert events == [AuthEvent.SIGNED_IN]
        assert sessions.current_user_id is None


class TestSessionLookup:
    @pytest.mark.asyncio
    async def test_no_session(self, sessions):
        assert await sessions.get_session() == (None, None)

    @pytest.mark.asyncio
    async def test_missing_settings_row_gives_defaults(self, sessions):
        await sessions.log_in("ada@example.com", "secret")

        user, settings = await sessions.get_session()

        assert user.name == "Ada"
        assert settings.theme == "light"
        assert settings.notifications_enabled is True

    @pytest.mark.asyncio
    async def test_stored_settings(self, sessions, backend):
        backend.settings = [{"user_id": "user-1", "theme": "dark", "notifications_enabled": False}]
        await sessions.log_in("ada@example.com", "secret")

        _, settings = await sessions.get_session()

        assert settings.theme == "dark"
        assert settings.notifications_enabled is False

    @pytest.mark.asyncio
    async def test_missing_profile_is_error(self, sessions, backend):
        await sessions.log_in("ada@example.com", "secret")
        backend.profiles = []

        with pytest.raises(AuthError, match="profile"):
            await sessions.get_session()


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_requires_login(self, sessions):
        with pytest.raises(AuthError) as exc_info:
            await sessions.update_user("user-1", "Ada L.")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_cannot_update_other_user(self, sessions):
        await sessions.log_in("ada@example.com", "secret")
        with pytest.raises(AuthError) as exc_info:
            await sessions.update_user_settings("user-9", theme="dark")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_update_user_name(self, sessions):
        await sessions.log_in("ada@example.com", "secret")
        user = await sessions.update_user("user-1", "Ada L.")
        assert user.name == "Ada L."

    @pytest.mark.asyncio
    async def test_update_settings_upserts(self, sessions, backend):
        await sessions.log_in("ada@example.com", "secret")

        settings = await sessions.update_user_settings("user-1", theme="dark")

        assert settings.theme == "dark"
        request = backend.requests[-1]
        assert request.url.params["on_conflict"] == "user_id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert json.loads(request.content) == {"user_id": "user-1", "theme": "dark"}

    @pytest.mark.asyncio
    async def test_invalid_theme(self, sessions):
        await sessions.log_in("ada@example.com", "secret")
        with pytest.raises(ValueError):
            await sessions.update_user_settings("user-1", theme="purple")
