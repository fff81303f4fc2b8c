"""Content item types shared by the store gateway, the AI gateway and the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Iterable

# Display hint: items without a category younger than this are shown as "AI pending"
AI_PENDING_GRACE_SECONDS = 15

MIN_PRIORITY = 1
MAX_PRIORITY = 5


class ContentType(str, Enum):
    """Kind of payload stored in a content item. Fixed at creation."""

    TEXT = "text"
    URL = "url"
    IMAGE = "image"
    AI_IMAGE = "ai_image"
    AUDIO = "audio"

    @property
    def is_binary(self) -> bool:
        return self in BINARY_TYPES


BINARY_TYPES = frozenset({ContentType.IMAGE, ContentType.AI_IMAGE, ContentType.AUDIO})
IMAGE_TYPES = frozenset({ContentType.IMAGE, ContentType.AI_IMAGE})


class AspectRatio(str, Enum):
    """Aspect ratios accepted by image generation."""

    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    STANDARD = "4:3"
    STANDARD_PORTRAIT = "3:4"


def merge_tags(existing: Iterable[str] | None, new: Iterable[str] | None) -> tuple[str, ...]:
    """Append new tags to existing ones, dropping duplicates.

    Order is preserved and the first occurrence wins. Comparison is
    case-sensitive; callers lowercase user and AI tags before merging.
    """
    merged: list[str] = []
    seen: set[str] = set()
    for tag in [*(existing or ()), *(new or ())]:
        if tag in seen:
            continue
        seen.add(tag)
        merged.append(tag)
    return tuple(merged)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        raise ValueError("created_at is required")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_priority(priority: int | None) -> None:
    if priority is not None and not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}")


@dataclass(frozen=True, kw_only=True)
class ContentItem:
    """A persisted piece of user content. Use the per-type subclasses."""

    allowed_types: ClassVar[frozenset[ContentType]] = frozenset()

    id: str
    type: ContentType
    content: str
    created_at: datetime
    category: str | None = None
    priority: int | None = None
    tags: tuple[str, ...] = ()
    ai_analysis: str | None = None
    transcription: str | None = None
    summary: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ContentType(self.type))
        if self.type not in self.allowed_types:
            raise ValueError(f"{type(self).__name__} cannot hold content of type '{self.type.value}'")
        object.__setattr__(self, "created_at", _parse_timestamp(self.created_at))
        object.__setattr__(self, "tags", merge_tags((), self.tags))
        _check_priority(self.priority)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ContentItem:
        """Build the matching variant from a ``content_items`` row."""
        content_type = ContentType(row["type"])
        variant = _VARIANTS[content_type]
        names = {f.name for f in fields(variant)}
        kwargs = {k: v for k, v in row.items() if k in names and v is not None}
        kwargs["id"] = str(row["id"])
        kwargs["tags"] = tuple(row.get("tags") or ())
        return variant(**kwargs)

    def to_row(self) -> dict[str, Any]:
        """Column mapping for this item. ``None`` fields are omitted."""
        row: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "type":
                value = value.value
            elif f.name == "created_at":
                value = value.isoformat()
            elif f.name == "tags":
                value = list(value)
            row[f.name] = value
        return row


@dataclass(frozen=True, kw_only=True)
class TextItem(ContentItem):
    """A free-text note."""

    allowed_types: ClassVar[frozenset[ContentType]] = frozenset({ContentType.TEXT})

    type: ContentType = ContentType.TEXT


@dataclass(frozen=True, kw_only=True)
class UrlItem(ContentItem):
    """A saved link. ``content`` holds the URL."""

    allowed_types: ClassVar[frozenset[ContentType]] = frozenset({ContentType.URL})

    type: ContentType = ContentType.URL


@dataclass(frozen=True, kw_only=True)
class _BinaryItem(ContentItem):
    mime_type: str

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.mime_type:
            raise ValueError(f"mime_type is required for '{self.type.value}' content")


@dataclass(frozen=True, kw_only=True)
class ImageItem(_BinaryItem):
    """An uploaded (``image``) or generated (``ai_image``) picture as a data URI."""

    allowed_types: ClassVar[frozenset[ContentType]] = IMAGE_TYPES

    type: ContentType = ContentType.IMAGE


@dataclass(frozen=True, kw_only=True)
class AudioItem(_BinaryItem):
    """A recorded audio clip as a data URI."""

    allowed_types: ClassVar[frozenset[ContentType]] = frozenset({ContentType.AUDIO})

    type: ContentType = ContentType.AUDIO


_VARIANTS: dict[ContentType, type[ContentItem]] = {
    ContentType.TEXT: TextItem,
    ContentType.URL: UrlItem,
    ContentType.IMAGE: ImageItem,
    ContentType.AI_IMAGE: ImageItem,
    ContentType.AUDIO: AudioItem,
}


@dataclass(frozen=True)
class ContentDraft:
    """A content item before the store has assigned ``id`` and ``created_at``."""

    type: ContentType
    content: str
    mime_type: str | None = None
    category: str | None = None
    priority: int | None = None
    tags: tuple[str, ...] = ()
    ai_analysis: str | None = None
    transcription: str | None = None
    summary: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ContentType(self.type))
        if self.type.is_binary and not self.mime_type:
            raise ValueError(f"mime_type is required for '{self.type.value}' content")
        if not self.type.is_binary and self.mime_type is not None:
            raise ValueError(f"'{self.type.value}' content does not carry a mime_type")
        if not self.content:
            raise ValueError("content must not be empty")
        object.__setattr__(self, "tags", merge_tags((), self.tags))
        _check_priority(self.priority)

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {"type": self.type.value, "content": self.content}
        for name in ("mime_type", "category", "priority", "ai_analysis", "transcription", "summary"):
            value = getattr(self, name)
            if value is not None:
                row[name] = value
        if self.tags:
            row["tags"] = list(self.tags)
        return row


def is_ai_pending(
    item: ContentItem,
    now: datetime | None = None,
    grace_seconds: int = AI_PENDING_GRACE_SECONDS,
) -> bool:
    """True while a fresh item has no category yet. Display hint only, never stored."""
    if item.category:
        return False
    now = now or datetime.now(timezone.utc)
    return (now - item.created_at).total_seconds() < grace_seconds


@dataclass(frozen=True)
class User:
    """Signed-in user identity joined with the profile row."""

    id: str
    email: str
    name: str = "New User"


@dataclass(frozen=True)
class UserSettings:
    """Per-user preferences. Defaults apply when no settings row exists."""

    theme: str = "light"
    notifications_enabled: bool = True

    def __post_init__(self) -> None:
        if self.theme not in ("light", "dark"):
            raise ValueError(f"theme must be 'light' or 'dark', got {self.theme!r}")


@dataclass(frozen=True)
class GroundingSource:
    """A citation returned with a chat answer that used retrieval."""

    uri: str
    title: str
