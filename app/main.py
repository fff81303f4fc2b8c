from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import cached_property
from typing import Any

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from app.core.actions import ActionResult, ContentActions, normalize_user_tags
from app.core.ai_gateway import AIError, AIProvider, GeoLocation, get_ai_provider
from app.core.content_store import CONTENT_TABLE, ContentStore
from app.core.enrichment_job import EnrichmentJobStore
from app.core.enrichment_pipeline import EnrichmentRunner
from app.core.session import SessionManager
from app.core.settings import Settings
from app.providers.content_types import (
    AspectRatio,
    ContentDraft,
    ContentItem,
    ContentType,
    User,
    UserSettings,
    is_ai_pending,
)
from app.providers.realtime import RealtimeChangeFeed
from app.providers.supabase import AuthError, StoreError, SupabaseClient

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


class Services:
    """Application service container. Clients are created on first use and reused."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._ai: AIProvider | None = None

    @cached_property
    def supabase(self) -> SupabaseClient:
        return SupabaseClient(
            self.settings.supabase_url,
            self.settings.supabase_anon_key,
            timeout=self.settings.store_timeout_seconds,
        )

    @cached_property
    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=60.0)

    def ai(self) -> AIProvider:
        """The AI provider. Raises AIError on first use if no key is configured."""
        if self._ai is None:
            self._ai = get_ai_provider(self.settings)
        return self._ai

    @cached_property
    def store(self) -> ContentStore:
        client = self.supabase
        feed = RealtimeChangeFeed(
            client.url,
            client.anon_key,
            CONTENT_TABLE,
            access_token=lambda: client.access_token,
        )
        return ContentStore(client, change_feed=feed)

    @cached_property
    def sessions(self) -> SessionManager:
        return SessionManager(self.supabase, self.settings.password_reset_redirect_url)

    @cached_property
    def runner(self) -> EnrichmentRunner:
        return EnrichmentRunner(self.store, self.ai, EnrichmentJobStore(), http_client=self.http)

    @cached_property
    def actions(self) -> ContentActions:
        return ContentActions(self.store, self.ai, self.runner, http_client=self.http)

    async def aclose(self) -> None:
        # In-flight enrichments are not cancelled; let them finish first.
        if "runner" in self.__dict__:
            await self.runner.drain()
        if self._ai is not None:
            await self._ai.aclose()
        if "http" in self.__dict__:
            await self.http.aclose()
        if "supabase" in self.__dict__:
            await self.supabase.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    services = Services(settings)
    app.state.services = services
    try:
        yield
    finally:
        await services.aclose()


app = FastAPI(title="content-organizer", lifespan=lifespan)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ==================== Serialization ====================


def item_to_dict(item: ContentItem, grace_seconds: int, now: datetime | None = None) -> dict[str, Any]:
    data = item.to_row()
    data.setdefault("tags", [])
    data["ai_pending"] = is_ai_pending(item, now=now, grace_seconds=grace_seconds)
    return data


def user_to_dict(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def settings_to_dict(settings: UserSettings | None) -> dict[str, Any] | None:
    if settings is None:
        return None
    return {"theme": settings.theme, "notifications_enabled": settings.notifications_enabled}


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def result_response(result: ActionResult, services: Services) -> Any:
    if not result.ok:
        status = {
            None: 400,
            "ValidationError": 400,
            "ValueError": 400,
            "AuthError": 401,
        }.get(result.error_kind, 502)
        return error_response(result.error or "Unknown error", status)
    body: dict[str, Any] = {"ok": True}
    if result.item is not None:
        body["item"] = item_to_dict(result.item, services.settings.ai_pending_grace_seconds)
    if result.data is not None:
        body["data"] = result.data
    return body


# ==================== Request bodies ====================


class SignUpBody(BaseModel):
    name: str
    email: str
    password: str


class LogInBody(BaseModel):
    email: str
    password: str


class PasswordResetBody(BaseModel):
    email: str


class ProfileBody(BaseModel):
    name: str = Field(min_length=1)


class SettingsBody(BaseModel):
    theme: str | None = None
    notifications_enabled: bool | None = None


class NewItemBody(BaseModel):
    type: ContentType
    content: str = Field(min_length=1)
    mime_type: str | None = None
    tags: list[str] = []


class ItemPatchBody(BaseModel):
    content: str | None = None
    category: str | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    tags: list[str] | None = None


class TagBody(BaseModel):
    tag: str


class PromptBody(BaseModel):
    prompt: str = Field(min_length=1)


class GenerateImageBody(BaseModel):
    prompt: str = Field(min_length=1)
    aspect_ratio: AspectRatio = AspectRatio.SQUARE


class ChatBody(BaseModel):
    prompt: str = Field(min_length=1)
    use_deep_thought: bool = False
    latitude: float | None = None
    longitude: float | None = None


# ==================== Auth & Settings ====================


@app.post("/api/auth/signup")
async def api_signup(body: SignUpBody, services: Services = Depends(get_services)):
    try:
        has_session = await services.sessions.sign_up(body.name, body.email, body.password)
    except AuthError as e:
        return error_response(str(e), 400)
    return {"has_session": has_session}


@app.post("/api/auth/login")
async def api_login(body: LogInBody, services: Services = Depends(get_services)):
    try:
        user = await services.sessions.log_in(body.email, body.password)
    except AuthError as e:
        return error_response(str(e), 401)
    return {"user": user_to_dict(user)}


@app.post("/api/auth/logout")
async def api_logout(services: Services = Depends(get_services)):
    try:
        await services.sessions.log_out()
    except AuthError as e:
        return error_response(str(e), 502)
    return {"ok": True}


@app.post("/api/auth/password-reset")
async def api_password_reset(body: PasswordResetBody, services: Services = Depends(get_services)):
    try:
        await services.sessions.send_password_reset_email(body.email)
    except AuthError as e:
        return error_response(str(e), 400)
    return {"ok": True}


@app.get("/api/auth/session")
async def api_session(services: Services = Depends(get_services)):
    try:
        user, user_settings = await services.sessions.get_session()
    except AuthError as e:
        return error_response(str(e), 401)
    return {"user": user_to_dict(user), "settings": settings_to_dict(user_settings)}


@app.patch("/api/profile")
async def api_update_profile(body: ProfileBody, services: Services = Depends(get_services)):
    user_id = services.sessions.current_user_id
    if user_id is None:
        return error_response("User not authenticated.", 401)
    try:
        user = await services.sessions.update_user(user_id, body.name)
    except AuthError as e:
        return error_response(f"Failed to update profile: {e}", 502)
    return {"user": user_to_dict(user)}


@app.patch("/api/settings")
async def api_update_settings(body: SettingsBody, services: Services = Depends(get_services)):
    user_id = services.sessions.current_user_id
    if user_id is None:
        return error_response("User not authenticated.", 401)
    try:
        updated = await services.sessions.update_user_settings(
            user_id, theme=body.theme, notifications_enabled=body.notifications_enabled
        )
    except ValueError as e:
        return error_response(str(e), 400)
    except AuthError as e:
        return error_response(f"Failed to save settings: {e}", 502)
    return {"settings": settings_to_dict(updated)}


# ==================== Content ====================


@app.get("/api/items")
async def api_items(services: Services = Depends(get_services)):
    try:
        items = await services.store.fetch_all()
    except StoreError as e:
        return error_response(f"Could not load your content: {e}", 502)
    grace = services.settings.ai_pending_grace_seconds
    now = datetime.now(timezone.utc)
    return {"items": [item_to_dict(i, grace, now) for i in items]}


@app.get("/api/items/stream")
async def api_items_stream(request: Request, services: Services = Depends(get_services)):
    """SSE stream of full collection snapshots.

    Sends one ``snapshot`` event on connect and another after every change.
    When the live feed ends a ``closed`` event is sent and the stream ends,
    so the client can reconnect. The subscription is released when the
    stream ends or the client disconnects.
    """
    queue: asyncio.Queue[list[ContentItem] | None] = asyncio.Queue()
    # None marks the end of the subscription
    subscription = services.store.subscribe(queue.put_nowait, on_close=lambda: queue.put_nowait(None))
    grace = services.settings.ai_pending_grace_seconds

    async def event_generator():
        try:
            while not await request.is_disconnected():
                try:
                    items = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if items is None:
                    yield "event: closed\ndata: {}\n\n"
                    break
                now = datetime.now(timezone.utc)
                payload = {"items": [item_to_dict(i, grace, now) for i in items]}
                yield f"event: snapshot\ndata: {json.dumps(payload)}\n\n"
        finally:
            subscription.unsubscribe()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/items")
async def api_add_item(body: NewItemBody, services: Services = Depends(get_services)):
    try:
        draft = ContentDraft(
            type=body.type,
            content=body.content,
            mime_type=body.mime_type,
            tags=normalize_user_tags(body.tags),
        )
    except ValueError as e:
        return error_response(str(e), 400)
    result = await services.actions.add_item(draft)
    return result_response(result, services)


@app.patch("/api/items/{item_id}")
async def api_update_item(item_id: str, body: ItemPatchBody, services: Services = Depends(get_services)):
    fields = body.model_dump(exclude_none=True)
    if "content" in fields:
        result = await services.actions.edit_content(item_id, fields.pop("content"))
        if not result.ok or not fields:
            return result_response(result, services)
    result = await services.actions.update_item(item_id, fields)
    return result_response(result, services)


@app.delete("/api/items/{item_id}")
async def api_delete_item(item_id: str, services: Services = Depends(get_services)):
    try:
        await services.store.delete(item_id)
    except StoreError as e:
        return error_response(f"Could not delete the item: {e}", 404 if e.status_code == 404 else 502)
    return {"ok": True}


@app.post("/api/items/{item_id}/tags")
async def api_add_tag(item_id: str, body: TagBody, services: Services = Depends(get_services)):
    return result_response(await services.actions.add_tag(item_id, body.tag), services)


@app.delete("/api/items/{item_id}/tags/{tag}")
async def api_remove_tag(item_id: str, tag: str, services: Services = Depends(get_services)):
    return result_response(await services.actions.remove_tag(item_id, tag), services)


@app.post("/api/items/{item_id}/analyze")
async def api_analyze(item_id: str, services: Services = Depends(get_services)):
    return result_response(await services.actions.analyze_image(item_id), services)


@app.post("/api/items/{item_id}/transcribe")
async def api_transcribe(item_id: str, services: Services = Depends(get_services)):
    return result_response(await services.actions.transcribe(item_id), services)


@app.post("/api/items/{item_id}/summarize")
async def api_summarize(item_id: str, services: Services = Depends(get_services)):
    return result_response(await services.actions.summarize(item_id), services)


@app.post("/api/items/{item_id}/edit-image")
async def api_edit_image(item_id: str, body: PromptBody, services: Services = Depends(get_services)):
    return result_response(await services.actions.edit_image(item_id, body.prompt), services)


@app.post("/api/images/generate")
async def api_generate_image(body: GenerateImageBody, services: Services = Depends(get_services)):
    result = await services.actions.generate_image_item(body.prompt, body.aspect_ratio)
    return result_response(result, services)


@app.post("/api/organize")
async def api_organize(services: Services = Depends(get_services)):
    return result_response(await services.actions.organize(), services)


@app.post("/api/chat")
async def api_chat(body: ChatBody, services: Services = Depends(get_services)):
    location = None
    if body.latitude is not None and body.longitude is not None:
        location = GeoLocation(latitude=body.latitude, longitude=body.longitude)
    result = await services.actions.chat(body.prompt, body.use_deep_thought, location)
    if not result.ok:
        return result_response(result, services)
    response = result.data
    sources = None
    if response.grounding_sources is not None:
        sources = [{"uri": s.uri, "title": s.title} for s in response.grounding_sources]
    return {"role": "model", "text": response.text, "grounding_sources": sources}


# ==================== Enrichment & Providers ====================


@app.get("/api/enrichment/jobs")
def api_enrichment_jobs(
    limit: int = 20, item_id: str | None = None, services: Services = Depends(get_services)
):
    """Recent background enrichment jobs, newest first, optionally for one item."""
    jobs = services.runner.jobs
    listed = jobs.list_for_item(item_id) if item_id else jobs.list_recent(limit)
    return {
        "jobs": [job.to_dict() for job in listed],
        "counts": jobs.count_by_status(),
        "in_flight": services.runner.pending,
    }


@app.get("/api/providers/health")
async def api_providers_health(services: Services = Depends(get_services)):
    """Check the generative model provider."""
    try:
        health = await services.ai().health_check()
    except AIError as e:
        return {"providers": [{"provider": e.provider, "healthy": False, "message": str(e)}]}
    return {
        "providers": [
            {
                "provider": health.provider,
                "model": health.model,
                "healthy": health.healthy,
                "message": health.message,
                "latency_ms": health.latency_ms,
            }
        ]
    }


def run() -> None:
    settings = Settings.from_env()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
