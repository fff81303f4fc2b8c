"""User-triggered content operations.

Each operation catches gateway failures and returns an ``ActionResult``
carrying a user-facing message instead of raising. Enrichment of new items
is handed to the background runner and never awaited here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import httpx

from app.core.ai_gateway import AIError, AIProvider, GeoLocation, ValidationError
from app.core.content_store import ContentStore
from app.core.enrichment_pipeline import EnrichmentRunner
from app.core.media import load_blob
from app.core.prompts import get_prompt
from app.providers.content_types import (
    AspectRatio,
    AudioItem,
    ContentDraft,
    ContentItem,
    ContentType,
    ImageItem,
    merge_tags,
)
from app.providers.supabase import AuthError, StoreError

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (StoreError, AIError, ValidationError, AuthError)
# loading a stored audio payload can also fail on a bad data URI or download
MEDIA_ERRORS = (*GATEWAY_ERRORS, ValueError, httpx.HTTPError)

ORGANIZE_PREVIEW_CHARS = 100


@dataclass
class ActionResult:
    """Outcome of a user-triggered operation."""

    ok: bool
    item: ContentItem | None = None
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def success(cls, item: ContentItem | None = None, data: Any = None) -> ActionResult:
        return cls(ok=True, item=item, data=data)

    @classmethod
    def failure(cls, message: str, exc: BaseException | None = None) -> ActionResult:
        return cls(ok=False, error=message, error_kind=type(exc).__name__ if exc else None)


def normalize_user_tags(tags: Iterable[str]) -> tuple[str, ...]:
    """Trim and lowercase user-entered tags, dropping empty ones and duplicates."""
    return merge_tags((), (t.strip().lower() for t in tags if t.strip()))


def organize_preview(item: ContentItem) -> dict[str, str]:
    """What the batch organizer sees of an item: text/url content shortened,
    binary content replaced by a ``[type]`` placeholder."""
    if item.type in (ContentType.TEXT, ContentType.URL):
        content = item.content[:ORGANIZE_PREVIEW_CHARS]
    else:
        content = f"[{item.type.value}]"
    return {"id": item.id, "type": item.type.value, "content": content}


class ContentActions:
    """Operations behind the dashboard, content cards and chat."""

    def __init__(
        self,
        store: ContentStore,
        get_ai: Callable[[], AIProvider],
        runner: EnrichmentRunner,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._get_ai = get_ai
        self._runner = runner
        self._http_client = http_client

    def _fail(self, message: str, exc: BaseException) -> ActionResult:
        logger.warning(f"{message} ({type(exc).__name__}: {exc})")
        return ActionResult.failure(message, exc)

    # ------------------------------------------------------------------
    # Plain edits
    # ------------------------------------------------------------------

    async def add_item(self, draft: ContentDraft) -> ActionResult:
        """Create an item and start its background enrichment."""
        try:
            item = await self._store.create(draft)
        except GATEWAY_ERRORS as e:
            return self._fail("Could not add your content. Please try again.", e)
        self._runner.spawn(item)
        return ActionResult.success(item)

    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> ActionResult:
        if fields.get("tags") is not None:
            fields = {**fields, "tags": normalize_user_tags(fields["tags"])}
        try:
            item = await self._store.update(item_id, fields)
        except ValueError as e:
            return ActionResult.failure(str(e), e)
        except GATEWAY_ERRORS as e:
            return self._fail("Could not save your changes.", e)
        return ActionResult.success(item)

    async def edit_content(self, item_id: str, content: str) -> ActionResult:
        """Replace the text of a note. Other item types are not editable."""
        try:
            item = await self._store.get(item_id)
            if item.type != ContentType.TEXT:
                return ActionResult.failure("Only text notes can be edited.")
            if item.content == content:
                return ActionResult.success(item)
            updated = await self._store.update(item_id, {"content": content})
        except GATEWAY_ERRORS as e:
            return self._fail("Could not save your changes.", e)
        return ActionResult.success(updated)

    async def add_tag(self, item_id: str, tag: str) -> ActionResult:
        new_tags = normalize_user_tags([tag])
        if not new_tags:
            return ActionResult.failure("Tag must not be empty.")
        new_tag = new_tags[0]
        try:
            item = await self._store.get(item_id)
            if new_tag in item.tags:
                return ActionResult.success(item)
            updated = await self._store.update(item_id, {"tags": merge_tags(item.tags, [new_tag])})
        except GATEWAY_ERRORS as e:
            return self._fail("Could not add the tag.", e)
        return ActionResult.success(updated)

    async def remove_tag(self, item_id: str, tag: str) -> ActionResult:
        try:
            item = await self._store.get(item_id)
            remaining = [t for t in item.tags if t != tag]
            updated = await self._store.update(item_id, {"tags": remaining})
        except GATEWAY_ERRORS as e:
            return self._fail("Could not remove the tag.", e)
        return ActionResult.success(updated)

    # ------------------------------------------------------------------
    # On-demand AI actions
    # ------------------------------------------------------------------

    async def analyze_image(self, item_id: str, prompt: str | None = None) -> ActionResult:
        prompt = prompt or get_prompt("analyze_image").template
        try:
            item = await self._store.get(item_id)
            if not isinstance(item, ImageItem):
                return ActionResult.failure("Only images can be analyzed.")
            analysis = await self._get_ai().analyze_image(item.content, item.mime_type, prompt)
            updated = await self._store.update(item_id, {"ai_analysis": analysis})
        except GATEWAY_ERRORS as e:
            return self._fail("Failed to analyze image.", e)
        return ActionResult.success(updated)

    async def _transcribe(self, item: AudioItem) -> str:
        blob = await load_blob(item.content, item.mime_type, self._http_client)
        return await self._get_ai().transcribe_audio(blob)

    async def transcribe(self, item_id: str) -> ActionResult:
        try:
            item = await self._store.get(item_id)
            if not isinstance(item, AudioItem):
                return ActionResult.failure("Only audio clips can be transcribed.")
            transcription = await self._transcribe(item)
            updated = await self._store.update(item_id, {"transcription": transcription})
        except MEDIA_ERRORS as e:
            return self._fail("Failed to transcribe audio.", e)
        return ActionResult.success(updated)

    async def summarize(self, item_id: str) -> ActionResult:
        """Summarize a note, link or audio clip. Audio without a transcript is
        transcribed first and both results are stored."""
        try:
            item = await self._store.get(item_id)
            if item.type not in (ContentType.TEXT, ContentType.URL, ContentType.AUDIO):
                return ActionResult.failure("This item cannot be summarized.")

            fields: dict[str, Any] = {}
            if isinstance(item, AudioItem):
                text = item.transcription
                if not text:
                    text = await self._transcribe(item)
                    fields["transcription"] = text
            else:
                text = item.content

            fields["summary"] = await self._get_ai().summarize_content(text, item.type)
            updated = await self._store.update(item_id, fields)
        except MEDIA_ERRORS as e:
            return self._fail("Failed to generate summary.", e)
        return ActionResult.success(updated)

    async def edit_image(self, item_id: str, prompt: str) -> ActionResult:
        if not prompt.strip():
            return ActionResult.failure("Describe the edit first.")
        try:
            item = await self._store.get(item_id)
            if not isinstance(item, ImageItem):
                return ActionResult.failure("Only images can be edited.")
            edited = await self._get_ai().edit_image(item.content, item.mime_type, prompt)
            updated = await self._store.update(
                item_id, {"content": edited.image_data, "mime_type": edited.mime_type}
            )
        except GATEWAY_ERRORS as e:
            return self._fail("Failed to edit image.", e)
        return ActionResult.success(updated)

    async def generate_image_item(
        self,
        prompt: str,
        aspect_ratio: AspectRatio | str = AspectRatio.SQUARE,
    ) -> ActionResult:
        """Generate an image and add it as an ``ai_image`` item."""
        try:
            image = await self._get_ai().generate_image(prompt, aspect_ratio)
        except GATEWAY_ERRORS as e:
            return self._fail("Failed to generate image.", e)
        draft = ContentDraft(
            type=ContentType.AI_IMAGE, content=image.image_data, mime_type=image.mime_type
        )
        return await self.add_item(draft)

    async def organize(self) -> ActionResult:
        """Batch-assign category and priority to every item.

        Only ids returned by the model are updated; the rest stay untouched.
        """
        try:
            items = await self._store.fetch_all()
            if not items:
                return ActionResult.success(data={"updated": 0})
            organized = await self._get_ai().organize_content([organize_preview(i) for i in items])
            known = {i.id for i in items}
            updates = [
                (o.id, {"category": o.category, "priority": o.priority})
                for o in organized
                if o.id in known and (o.category is not None or o.priority is not None)
            ]
            await self._store.batch_update(updates)
        except GATEWAY_ERRORS as e:
            return self._fail(f"AI organization failed: {str(e) or 'An unknown error occurred.'}", e)
        logger.info(f"Organized {len(updates)} of {len(items)} items")
        return ActionResult.success(data={"updated": len(updates)})

    async def chat(
        self,
        prompt: str,
        use_deep_thought: bool = False,
        location: GeoLocation | None = None,
    ) -> ActionResult:
        try:
            response = await self._get_ai().get_chat_response(prompt, use_deep_thought, location)
        except GATEWAY_ERRORS as e:
            return self._fail("Sorry, I couldn't get a response. Please try again.", e)
        return ActionResult.success(data=response)
