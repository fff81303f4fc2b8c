"""Content Store Gateway.

Translates between ContentItem objects and rows of the ``content_items``
table and exposes a live subscription that re-delivers the full collection
whenever the table changes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence

from app.providers.content_types import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    ContentDraft,
    ContentItem,
    merge_tags,
)
from app.providers.supabase import StoreError, SupabaseClient

logger = logging.getLogger(__name__)

CONTENT_TABLE = "content_items"

# Fields a partial update may touch. id, type and created_at never change.
UPDATABLE_FIELDS = frozenset(
    {
        "content",
        "mime_type",
        "category",
        "priority",
        "tags",
        "ai_analysis",
        "transcription",
        "summary",
    }
)

SnapshotCallback = Callable[[list[ContentItem]], "Awaitable[None] | None"]


class ChangeFeed(Protocol):
    """Anything that yields one message per remote change of the table.

    The first message arrives once the feed is live, so a re-fetch on it
    covers every change made while connecting.
    """

    def changes(self) -> AsyncIterator[dict[str, Any]]:
        ...


class Subscription:
    """Handle for a live subscription. ``unsubscribe()`` stops all delivery.

    ``active`` turns False when the owner unsubscribes and also when the
    subscription ends on its own (feed closed or failed).
    """

    def __init__(self, on_close: Callable[[], None] | None = None) -> None:
        self._active = True
        self._task: asyncio.Task[None] | None = None
        self._on_close = on_close

    @property
    def active(self) -> bool:
        return self._active

    def bind(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def unsubscribe(self) -> None:
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _close(self) -> None:
        was_active = self._active
        self._active = False
        if was_active and self._on_close is not None:
            self._on_close()


def to_update_row(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Column values for a partial update. ``None`` values are skipped so they
    never overwrite a stored value."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    row: dict[str, Any] = {}
    for name, value in fields.items():
        if value is None:
            continue
        if name == "tags":
            value = list(merge_tags((), value))
        elif name == "priority":
            value = int(value)
            if not MIN_PRIORITY <= value <= MAX_PRIORITY:
                raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {value}")
        row[name] = value
    return row


def _to_item(row: dict[str, Any]) -> ContentItem:
    try:
        return ContentItem.from_row(row)
    except (KeyError, TypeError, ValueError) as e:
        raise StoreError(f"Malformed content row {row.get('id')!r}: {e}") from e


class ContentStore:
    """Gateway for the ``content_items`` table."""

    def __init__(self, client: SupabaseClient, change_feed: ChangeFeed | None = None) -> None:
        self._client = client
        self._change_feed = change_feed

    async def fetch_all(self) -> list[ContentItem]:
        """All items of the signed-in user, newest first. Malformed rows are
        logged and left out."""
        rows = await self._client.select(CONTENT_TABLE, order="created_at.desc")
        items: list[ContentItem] = []
        for row in rows:
            try:
                items.append(_to_item(row))
            except StoreError as e:
                logger.warning(f"Skipping row: {e}")
        return items

    async def get(self, item_id: str) -> ContentItem:
        row = await self._client.select_one(CONTENT_TABLE, filters={"id": f"eq.{item_id}"})
        return _to_item(row)

    async def create(self, draft: ContentDraft) -> ContentItem:
        """Insert a new item. The store assigns ``id`` and ``created_at``."""
        session = self._client.session
        if session is None:
            raise StoreError("User not authenticated.", status_code=401)
        row = {**draft.to_row(), "user_id": session.user_id}
        created = await self._client.insert(CONTENT_TABLE, row)
        item = _to_item(created)
        logger.info(f"Created {item.type.value} item {item.id}")
        return item

    async def update(self, item_id: str, fields: Mapping[str, Any]) -> ContentItem:
        """Change only the supplied fields of one item."""
        values = to_update_row(fields)
        if not values:
            return await self.get(item_id)
        rows = await self._client.update(
            CONTENT_TABLE, values, filters={"id": f"eq.{item_id}"}
        )
        if not rows:
            raise StoreError(f"Content item {item_id} not found", status_code=404)
        return _to_item(rows[0])

    async def batch_update(self, updates: Sequence[tuple[str, Mapping[str, Any]]]) -> None:
        """Apply several partial updates. Rows update independently; any
        failure is reported as one StoreError without per-row detail."""
        if not updates:
            return
        results = await asyncio.gather(
            *(self.update(item_id, fields) for item_id, fields in updates),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                if not isinstance(failure, (StoreError, ValueError)):
                    raise failure
            raise StoreError(
                f"Batch update failed for {len(failures)} of {len(updates)} items"
            ) from failures[0]

    async def delete(self, item_id: str) -> None:
        rows = await self._client.delete(CONTENT_TABLE, filters={"id": f"eq.{item_id}"})
        if not rows:
            raise StoreError(f"Content item {item_id} not found", status_code=404)

    def subscribe(
        self,
        callback: SnapshotCallback,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription:
        """Deliver the full collection now and again after every remote change.

        Must be called from inside a running event loop. The returned handle
        has to be unsubscribed by its owner. ``on_close`` is called once if
        the subscription ends without being unsubscribed.
        """
        subscription = Subscription(on_close)
        subscription.bind(
            asyncio.get_running_loop().create_task(self._run_subscription(subscription, callback))
        )
        return subscription

    async def _deliver(self, subscription: Subscription, callback: SnapshotCallback) -> None:
        try:
            items = await self.fetch_all()
        except StoreError as e:
            logger.warning(f"Snapshot fetch failed, skipping delivery: {e}")
            return
        if not subscription.active:
            return
        result = callback(items)
        if inspect.isawaitable(result):
            await result

    async def _run_subscription(self, subscription: Subscription, callback: SnapshotCallback) -> None:
        try:
            await self._deliver(subscription, callback)
            if self._change_feed is None:
                return
            async for _change in self._change_feed.changes():
                if not subscription.active:
                    break
                await self._deliver(subscription, callback)
            logger.info("Content change feed ended")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Content subscription stopped")
        finally:
            subscription._close()
