"""Supabase REST client (PostgREST row store + GoTrue auth)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

# PostgREST error code for "JSON object requested, multiple (or no) rows returned"
NO_ROWS_CODE = "PGRST116"


class StoreError(Exception):
    """Row store read/write failed or was rejected."""

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class AuthError(Exception):
    """Credential or session failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthEvent:
    """Auth state change event names (same strings as the JS client)."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass
class AuthSession:
    """An issued GoTrue session."""

    access_token: str
    refresh_token: str
    user: dict[str, Any]
    expires_at: float | None = None
    token_type: str = "bearer"

    @property
    def user_id(self) -> str:
        return str(self.user["id"])

    @property
    def expired(self) -> bool:
        # treated as expired 30s before the server says so
        return self.expires_at is not None and time.time() >= self.expires_at - 30

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> AuthSession:
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + float(data["expires_in"])
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            user=data.get("user") or {},
            expires_at=float(expires_at) if expires_at is not None else None,
            token_type=data.get("token_type", "bearer"),
        )


AuthListener = Callable[[str, "AuthSession | None"], Any]


@dataclass
class AuthSubscription:
    """Handle returned by ``on_auth_state_change``."""

    _listeners: list[AuthListener]
    _callback: AuthListener
    active: bool = field(default=True)

    def unsubscribe(self) -> None:
        if self.active and self._callback in self._listeners:
            self._listeners.remove(self._callback)
        self.active = False


def _error_message(resp: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, code) from a PostgREST or GoTrue error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase, None
    if not isinstance(body, dict):
        return str(body), None
    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or resp.reason_phrase
    )
    code = body.get("code") or body.get("error_code")
    return str(message), str(code) if code is not None else None


class SupabaseClient:
    """Client for a Supabase project's REST endpoints.

    Holds the current auth session in memory; every row-store request is
    sent with the session's access token so row-level security applies.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("Supabase URL is required")
        if not anon_key:
            raise ValueError("Supabase anon key is required")
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self._client = httpx.AsyncClient(
            base_url=self.url,
            headers={"apikey": anon_key},
            timeout=timeout,
            transport=transport,
        )
        self._session: AuthSession | None = None
        self._listeners: list[AuthListener] = []

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SupabaseClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    @property
    def session(self) -> AuthSession | None:
        return self._session

    @property
    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    def _bearer(self) -> dict[str, str]:
        token = self._session.access_token if self._session else self.anon_key
        return {"Authorization": f"Bearer {token}"}

    # ------------------------------------------------------------------
    # Row store (PostgREST)
    # ------------------------------------------------------------------

    async def _rest(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        headers = self._bearer()
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = await self._client.request(
                method, f"/rest/v1/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise StoreError(f"Row store unreachable: {e}") from e

        if resp.status_code >= 400:
            message, code = _error_message(resp)
            logger.warning(f"Row store {method} {table} failed with {resp.status_code} ({code})")
            if resp.status_code in (401, 403):
                raise StoreError(f"Not authorized: {message}", resp.status_code, code)
            raise StoreError(message, resp.status_code, code)

        if resp.status_code == 204 or not resp.content:
            return []
        data = resp.json()
        return data if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        *,
        filters: dict[str, str] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        """SELECT rows. ``filters`` use PostgREST syntax, e.g. ``{"id": "eq.1"}``."""
        params = {"select": columns, **(filters or {})}
        if order:
            params["order"] = order
        return await self._rest("GET", table, params=params)

    async def select_one(self, table: str, *, filters: dict[str, str]) -> dict[str, Any]:
        """SELECT exactly one row; raises StoreError(code=PGRST116) when none match."""
        rows = await self.select(table, filters=filters)
        if len(rows) != 1:
            raise StoreError(
                f"Expected one row from {table}, got {len(rows)}",
                status_code=406,
                code=NO_ROWS_CODE,
            )
        return rows[0]

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._rest("POST", table, json=row, prefer="return=representation")
        if not rows:
            raise StoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def upsert(
        self,
        table: str,
        row: dict[str, Any],
        *,
        on_conflict: str | None = None,
    ) -> dict[str, Any]:
        params = {"on_conflict": on_conflict} if on_conflict else None
        rows = await self._rest(
            "POST",
            table,
            params=params,
            json=row,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if not rows:
            raise StoreError(f"Upsert into {table} returned no row")
        return rows[0]

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        filters: dict[str, str],
    ) -> list[dict[str, Any]]:
        return await self._rest(
            "PATCH", table, params=filters, json=values, prefer="return=representation"
        )

    async def delete(self, table: str, *, filters: dict[str, str]) -> list[dict[str, Any]]:
        return await self._rest("DELETE", table, params=filters, prefer="return=representation")

    # ------------------------------------------------------------------
    # Auth (GoTrue)
    # ------------------------------------------------------------------

    async def _auth(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        bearer: bool = False,
    ) -> dict[str, Any]:
        headers = self._bearer() if bearer else {}
        try:
            resp = await self._client.request(
                method, f"/auth/v1/{path}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Auth service unreachable: {e}") from e

        if resp.status_code >= 400:
            message, _ = _error_message(resp)
            logger.warning(f"Auth {method} {path} failed with {resp.status_code}")
            raise AuthError(message, resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def on_auth_state_change(self, callback: AuthListener) -> AuthSubscription:
        """Register ``callback(event, session)`` for sign-in/sign-out notifications."""
        self._listeners.append(callback)
        return AuthSubscription(self._listeners, callback)

    def _emit(self, event: str, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception(f"Auth listener failed for {event}")

    def _set_session(self, session: AuthSession | None, event: str) -> None:
        self._session = session
        self._emit(event, session)

    async def sign_up(
        self,
        email: str,
        password: str,
        data: dict[str, Any] | None = None,
    ) -> AuthSession | None:
        """Register a user. Returns a session unless email confirmation is pending."""
        body = await self._auth(
            "POST", "signup", json={"email": email, "password": password, "data": data or {}}
        )
        if body.get("access_token"):
            session = AuthSession.from_response(body)
            self._set_session(session, AuthEvent.SIGNED_IN)
            return session
        return None

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        body = await self._auth(
            "POST",
            "token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if not body.get("access_token") or not body.get("user"):
            raise AuthError("Log in failed, no user returned.")
        session = AuthSession.from_response(body)
        self._set_session(session, AuthEvent.SIGNED_IN)
        return session

    async def refresh_session(self) -> AuthSession:
        if self._session is None or not self._session.refresh_token:
            raise AuthError("No session to refresh")
        body = await self._auth(
            "POST",
            "token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self._session.refresh_token},
        )
        session = AuthSession.from_response(body)
        self._set_session(session, AuthEvent.TOKEN_REFRESHED)
        return session

    async def get_session(self) -> AuthSession | None:
        """Current session, refreshed first if the access token has expired."""
        if self._session is not None and self._session.expired:
            try:
                return await self.refresh_session()
            except AuthError:
                self._set_session(None, AuthEvent.SIGNED_OUT)
                raise
        return self._session

    async def get_user(self) -> dict[str, Any]:
        if self._session is None:
            raise AuthError("User not authenticated.")
        return await self._auth("GET", "user", bearer=True)

    async def sign_out(self) -> None:
        if self._session is not None:
            await self._auth("POST", "logout", bearer=True)
        self._set_session(None, AuthEvent.SIGNED_OUT)

    async def reset_password_for_email(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._auth("POST", "recover", params=params, json={"email": email})
