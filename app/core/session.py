"""Session and user settings management on top of Supabase auth.

Profiles live in ``profiles`` (keyed by user id), preferences in
``user_settings`` (keyed by ``user_id``). A missing settings row means
defaults; a missing profile row is an error.
"""

from __future__ import annotations

import logging
from typing import Any

from app.providers.content_types import User, UserSettings
from app.providers.supabase import (
    NO_ROWS_CODE,
    AuthError,
    AuthListener,
    AuthSubscription,
    StoreError,
    SupabaseClient,
)

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
SETTINGS_TABLE = "user_settings"


def _to_user(auth_user: dict[str, Any], profile: dict[str, Any] | None) -> User:
    return User(
        id=str(auth_user["id"]),
        email=auth_user.get("email") or "",
        name=(profile or {}).get("name") or "New User",
    )


def _to_settings(row: dict[str, Any] | None) -> UserSettings:
    row = row or {}
    notifications = row.get("notifications_enabled")
    return UserSettings(
        theme=row.get("theme") or "light",
        notifications_enabled=True if notifications is None else bool(notifications),
    )


class SessionManager:
    """Sign-up/log-in/log-out, session lookup and profile/settings updates."""

    def __init__(self, client: SupabaseClient, password_reset_redirect_url: str | None = None) -> None:
        self._client = client
        self._reset_redirect = password_reset_redirect_url

    @property
    def current_user_id(self) -> str | None:
        session = self._client.session
        return session.user_id if session else None

    async def sign_up(self, name: str, email: str, password: str) -> bool:
        """Create an account. Returns True when a session was issued right away
        (False means the user has to confirm their email first)."""
        session = await self._client.sign_up(email, password, data={"name": name})
        logger.info(f"Signed up new user (session issued: {session is not None})")
        return session is not None

    async def log_in(self, email: str, password: str) -> User:
        session = await self._client.sign_in_with_password(email, password)
        try:
            profile = await self._client.select_one(
                PROFILES_TABLE, filters={"id": f"eq.{session.user_id}"}
            )
        except StoreError as e:
            if e.code != NO_ROWS_CODE:
                raise AuthError(f"Could not load profile: {e}", e.status_code) from e
            profile = None
        return _to_user(session.user, profile)

    async def log_out(self) -> None:
        await self._client.sign_out()

    async def send_password_reset_email(self, email: str) -> None:
        await self._client.reset_password_for_email(email, redirect_to=self._reset_redirect)

    def on_auth_state_change(self, callback: AuthListener) -> AuthSubscription:
        return self._client.on_auth_state_change(callback)

    async def get_user_profile_and_settings(self, auth_user: dict[str, Any]) -> tuple[User, UserSettings]:
        user_id = str(auth_user["id"])
        try:
            profile = await self._client.select_one(PROFILES_TABLE, filters={"id": f"eq.{user_id}"})
        except StoreError as e:
            raise AuthError(f"Could not load profile: {e}", e.status_code) from e

        try:
            settings_row: dict[str, Any] | None = await self._client.select_one(
                SETTINGS_TABLE, filters={"user_id": f"eq.{user_id}"}
            )
        except StoreError as e:
            # New users may not have a settings row yet
            if e.code != NO_ROWS_CODE:
                raise AuthError(f"Could not load settings: {e}", e.status_code) from e
            settings_row = None

        return _to_user(auth_user, profile), _to_settings(settings_row)

    async def get_session(self) -> tuple[User | None, UserSettings | None]:
        """The signed-in user with their settings, or ``(None, None)``."""
        session = await self._client.get_session()
        if session is None:
            return None, None
        return await self.get_user_profile_and_settings(session.user)

    def _require_user(self, user_id: str) -> None:
        if self.current_user_id is None:
            raise AuthError("User not authenticated.", 401)
        if self.current_user_id != user_id:
            raise AuthError("Cannot modify another user's data.", 403)

    async def update_user(self, user_id: str, name: str) -> User:
        self._require_user(user_id)
        try:
            rows = await self._client.update(
                PROFILES_TABLE, {"name": name}, filters={"id": f"eq.{user_id}"}
            )
        except StoreError as e:
            raise AuthError(f"Could not update profile: {e}", e.status_code) from e
        if not rows:
            raise AuthError("User not found", 404)
        auth_user = await self._client.get_user()
        return _to_user(auth_user, rows[0])

    async def update_user_settings(
        self,
        user_id: str,
        theme: str | None = None,
        notifications_enabled: bool | None = None,
    ) -> UserSettings:
        """Change preferences. Creates the settings row if it does not exist yet."""
        self._require_user(user_id)
        values: dict[str, Any] = {"user_id": user_id}
        if theme is not None:
            UserSettings(theme=theme)  # validates the value
            values["theme"] = theme
        if notifications_enabled is not None:
            values["notifications_enabled"] = notifications_enabled
        try:
            row = await self._client.upsert(SETTINGS_TABLE, values, on_conflict="user_id")
        except StoreError as e:
            raise AuthError(f"Could not update settings: {e}", e.status_code) from e
        return _to_settings(row)
