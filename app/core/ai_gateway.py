"""AI Capability Gateway for the hosted generative model (Gemini REST API).

Every call maps a typed request to a typed response or raises:
- ``AIError`` for model/transport failures and malformed structured output
- ``ValidationError`` when the caller passes content the call cannot take
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
import pydantic

from app.core.media import MediaBlob, inline_base64
from app.core.prompts import get_prompt, render_prompt
from app.core.settings import Settings
from app.providers.content_types import (
    IMAGE_TYPES,
    MAX_PRIORITY,
    MIN_PRIORITY,
    AspectRatio,
    ContentType,
    GroundingSource,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "Gemini"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

MAX_CATEGORIZE_CHARS = 2000
MAX_TAGS = 4
DEEP_THOUGHT_BUDGET = 32768

SUMMARY_KINDS = frozenset({ContentType.TEXT, ContentType.AUDIO, ContentType.URL})


class AIError(Exception):
    """Error during a generative model call."""

    def __init__(self, message: str, provider: str = PROVIDER_NAME, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class ValidationError(Exception):
    """The request cannot be served for this kind of content."""


@dataclass(frozen=True)
class GeneratedImage:
    """Image returned by an edit or generate call."""

    image_data: str  # data URI
    mime_type: str


@dataclass(frozen=True)
class Categorization:
    category: str
    tags: tuple[str, ...]


@dataclass(frozen=True)
class OrganizedItem:
    id: str
    category: str | None
    priority: int | None


@dataclass(frozen=True)
class ChatResponse:
    text: str
    grounding_sources: list[GroundingSource] | None = None


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None


# Response schemas sent to the model and used to validate what comes back.

CATEGORIZE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "category": {
            "type": "STRING",
            "description": "A single, relevant category for the content.",
        },
        "tags": {
            "type": "ARRAY",
            "description": "A list of 2-4 relevant lowercase tags.",
            "items": {"type": "STRING"},
        },
    },
    "required": ["category", "tags"],
}

ORGANIZE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "organizedItems": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING"},
                    "category": {"type": "STRING"},
                    "priority": {"type": "INTEGER"},
                },
                "required": ["id", "category", "priority"],
            },
        }
    },
    "required": ["organizedItems"],
}


class _CategorizePayload(pydantic.BaseModel):
    category: str
    tags: list[str]


class _OrganizePayload(pydantic.BaseModel):
    organizedItems: list[Any]


class _OrganizedEntry(pydantic.BaseModel):
    id: pydantic.StrictStr
    category: str | None = None
    priority: int | None = None

    @pydantic.field_validator("category", mode="before")
    @classmethod
    def _category_must_be_text(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @pydantic.field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            return int(str(value).strip())
        except ValueError:
            return None


def normalize_tags(tags: Sequence[str]) -> tuple[str, ...]:
    """Lowercase, strip, dedupe and cap tags from the model."""
    normalized: list[str] = []
    for tag in tags:
        cleaned = str(tag).strip().lower()
        if cleaned and cleaned not in normalized:
            normalized.append(cleaned)
    return tuple(normalized[:MAX_TAGS])


def _strip_fences(text: str) -> str:
    content = text.strip()
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
    return content.strip()


def parse_structured(text: str, schema: type[pydantic.BaseModel]) -> pydantic.BaseModel:
    """Parse a JSON response and validate it. Anything malformed is an AIError."""
    try:
        return schema.model_validate(json.loads(_strip_fences(text)))
    except json.JSONDecodeError as e:
        raise AIError(f"Model returned invalid JSON: {e}") from e
    except pydantic.ValidationError as e:
        raise AIError(f"Model response does not match schema: {e.error_count()} error(s)") from e


class AIProvider(ABC):
    """Abstract base class for generative AI providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def analyze_image(self, image_data: str, mime_type: str, prompt: str) -> str:
        ...

    @abstractmethod
    async def edit_image(self, image_data: str, mime_type: str, prompt: str) -> GeneratedImage:
        ...

    @abstractmethod
    async def generate_image(self, prompt: str, aspect_ratio: AspectRatio | str) -> GeneratedImage:
        ...

    @abstractmethod
    async def transcribe_audio(self, audio: MediaBlob) -> str:
        ...

    @abstractmethod
    async def summarize_content(self, text: str, kind: ContentType | str) -> str:
        ...

    @abstractmethod
    async def categorize_and_tag_content(
        self,
        content_type: ContentType | str,
        content: str,
        mime_type: str | None = None,
    ) -> Categorization:
        ...

    @abstractmethod
    async def organize_content(self, items: Sequence[dict[str, str]]) -> list[OrganizedItem]:
        ...

    @abstractmethod
    async def get_chat_response(
        self,
        prompt: str,
        use_deep_thought: bool = False,
        location: GeoLocation | None = None,
    ) -> ChatResponse:
        ...

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...

    async def aclose(self) -> None:
        """Release network resources."""


class GeminiProvider(AIProvider):
    """Gemini REST provider.

    Constructed once per application and reused; construction fails when
    no API key is configured.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model_fast: str = "gemini-2.5-flash",
        model_pro: str = "gemini-2.5-pro",
        model_image_edit: str = "gemini-2.5-flash-image",
        model_image_gen: str = "imagen-4.0-generate-001",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise AIError("GEMINI_API_KEY not set. Configure it in the environment.")
        self.model_fast = model_fast
        self.model_pro = model_pro
        self.model_image_edit = model_image_edit
        self.model_image_gen = model_image_gen
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> GeminiProvider:
        return cls(
            settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            model_fast=settings.model_fast,
            model_pro=settings.model_pro,
            model_image_edit=settings.model_image_edit,
            model_image_gen=settings.model_image_gen,
            timeout=settings.ai_timeout_seconds,
        )

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, model: str, method: str, body: dict[str, Any]) -> dict[str, Any]:
        start = time.monotonic()
        try:
            response = await self._client.post(f"/models/{model}:{method}", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"{model}:{method} failed with {status}")
            if status == 429:
                if "quota" in e.response.text.lower():
                    raise AIError("Gemini quota exhausted.", retriable=False) from e
                raise AIError("Gemini rate limit hit.", retriable=True) from e
            if status in (401, 403):
                raise AIError("Gemini API key invalid or not permitted.") from e
            if status == 404:
                raise AIError(f"Model '{model}' not available.") from e
            if status == 400:
                raise AIError(f"Gemini rejected the request: {e.response.text}") from e
            raise AIError(
                f"Gemini API error: {status} - {e.response.text}",
                retriable=status >= 500,
            ) from e
        except httpx.HTTPError as e:
            raise AIError(f"Gemini unreachable: {e}", retriable=True) from e

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.debug(f"{model}:{method} answered in {latency_ms}ms")
        try:
            return response.json()
        except ValueError as e:
            raise AIError("Gemini returned a non-JSON body") from e

    async def _generate(
        self,
        model: str,
        parts: list[dict[str, Any]],
        *,
        generation_config: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config
        if tools:
            body["tools"] = tools
        if tool_config:
            body["toolConfig"] = tool_config
        return await self._post(model, "generateContent", body)

    @staticmethod
    def _first_candidate(data: dict[str, Any]) -> dict[str, Any]:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback", {}).get("blockReason")
            raise AIError(f"Gemini returned no candidates{f' ({feedback})' if feedback else ''}")
        return candidates[0]

    @classmethod
    def _text_of(cls, data: dict[str, Any]) -> str:
        parts = cls._first_candidate(data).get("content", {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        if not text.strip():
            raise AIError("Gemini returned an empty text response")
        return text

    @staticmethod
    def _inline_part(data: str, mime_type: str) -> dict[str, Any]:
        return {"inlineData": {"mimeType": mime_type, "data": inline_base64(data)}}

    @staticmethod
    def _json_config(schema: dict[str, Any]) -> dict[str, Any]:
        return {"responseMimeType": "application/json", "responseSchema": schema}

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def analyze_image(self, image_data: str, mime_type: str, prompt: str) -> str:
        data = await self._generate(
            self.model_fast,
            [self._inline_part(image_data, mime_type), {"text": prompt}],
        )
        return self._text_of(data)

    async def edit_image(self, image_data: str, mime_type: str, prompt: str) -> GeneratedImage:
        data = await self._generate(
            self.model_image_edit,
            [self._inline_part(image_data, mime_type), {"text": prompt}],
            generation_config={"responseModalities": ["IMAGE"]},
        )
        parts = self._first_candidate(data).get("content", {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                out_type = inline.get("mimeType") or mime_type
                return GeneratedImage(
                    image_data=f"data:{out_type};base64,{inline['data']}",
                    mime_type=out_type,
                )
        raise AIError("Failed to edit image.")

    async def generate_image(self, prompt: str, aspect_ratio: AspectRatio | str) -> GeneratedImage:
        try:
            ratio = AspectRatio(aspect_ratio)
        except ValueError as e:
            raise ValidationError(f"Unsupported aspect ratio: {aspect_ratio}") from e

        data = await self._post(
            self.model_image_gen,
            "predict",
            {
                "instances": [{"prompt": prompt}],
                "parameters": {
                    "sampleCount": 1,
                    "aspectRatio": ratio.value,
                    "outputOptions": {"mimeType": "image/png"},
                },
            },
        )
        predictions = data.get("predictions") or []
        encoded = predictions[0].get("bytesBase64Encoded") if predictions else None
        if not encoded:
            raise AIError("Failed to generate image.")
        out_type = predictions[0].get("mimeType") or "image/png"
        return GeneratedImage(image_data=f"data:{out_type};base64,{encoded}", mime_type=out_type)

    async def transcribe_audio(self, audio: MediaBlob) -> str:
        data = await self._generate(
            self.model_fast,
            [
                {"inlineData": {"mimeType": audio.mime_type, "data": audio.base64}},
                {"text": get_prompt("transcribe_audio").template},
            ],
        )
        return self._text_of(data)

    async def summarize_content(self, text: str, kind: ContentType | str) -> str:
        try:
            kind = ContentType(kind)
        except ValueError as e:
            raise ValidationError(f"Unsupported content type for summary: {kind}") from e
        if kind not in SUMMARY_KINDS:
            raise ValidationError(f"Unsupported content type for summary: {kind.value}")

        if kind == ContentType.URL:
            # The model fetches the page itself through search grounding.
            data = await self._generate(
                self.model_pro,
                [{"text": render_prompt("summarize_url", url=text)}],
                tools=[{"googleSearch": {}}],
            )
        else:
            key = "summarize_audio" if kind == ContentType.AUDIO else "summarize_text"
            data = await self._generate(
                self.model_fast, [{"text": render_prompt(key, content=text)}]
            )
        return self._text_of(data)

    async def categorize_and_tag_content(
        self,
        content_type: ContentType | str,
        content: str,
        mime_type: str | None = None,
    ) -> Categorization:
        """Category plus up to four lowercase tags.

        Only text and image content is accepted; URL and audio items must be
        reduced to text (summary / transcript) by the caller first.
        """
        try:
            content_type = ContentType(content_type)
        except ValueError as e:
            raise ValidationError(f"Unsupported content type for categorization: {content_type}") from e

        if content_type == ContentType.TEXT:
            model = self.model_pro
            parts = [
                {"text": render_prompt("categorize_text", content=content[:MAX_CATEGORIZE_CHARS])}
            ]
        elif content_type in IMAGE_TYPES:
            if not mime_type:
                raise ValidationError("Mime type is required for image analysis.")
            model = self.model_fast
            parts = [
                self._inline_part(content, mime_type),
                {"text": render_prompt("categorize_image")},
            ]
        else:
            raise ValidationError(
                f"Unsupported content type for categorization: {content_type.value}"
            )

        data = await self._generate(
            model, parts, generation_config=self._json_config(CATEGORIZE_SCHEMA)
        )
        payload = parse_structured(self._text_of(data), _CategorizePayload)
        category = payload.category.strip()
        if not category:
            raise AIError("Model returned an empty category")
        return Categorization(category=category, tags=normalize_tags(payload.tags))

    async def organize_content(self, items: Sequence[dict[str, str]]) -> list[OrganizedItem]:
        """Category and priority (1-5) for each item. Entries without a string
        id are dropped; ids the model leaves out are simply absent."""
        prompt = render_prompt("organize", items_json=json.dumps(list(items), indent=2))
        data = await self._generate(
            self.model_pro,
            [{"text": prompt}],
            generation_config=self._json_config(ORGANIZE_SCHEMA),
        )
        payload = parse_structured(self._text_of(data), _OrganizePayload)

        organized: list[OrganizedItem] = []
        for raw in payload.organizedItems:
            try:
                entry = _OrganizedEntry.model_validate(raw)
            except pydantic.ValidationError:
                logger.debug(f"Dropping organize entry without a valid id: {raw!r}")
                continue
            priority = entry.priority
            if priority is not None:
                priority = max(MIN_PRIORITY, min(MAX_PRIORITY, priority))
            organized.append(
                OrganizedItem(id=entry.id, category=entry.category, priority=priority)
            )
        return organized

    async def get_chat_response(
        self,
        prompt: str,
        use_deep_thought: bool = False,
        location: GeoLocation | None = None,
    ) -> ChatResponse:
        model = self.model_pro if use_deep_thought else self.model_fast
        tools: list[dict[str, Any]] = [{"googleSearch": {}}]
        tool_config: dict[str, Any] | None = None
        if location is not None:
            tools.append({"googleMaps": {}})
            tool_config = {
                "retrievalConfig": {
                    "latLng": {"latitude": location.latitude, "longitude": location.longitude}
                }
            }
        generation_config = (
            {"thinkingConfig": {"thinkingBudget": DEEP_THOUGHT_BUDGET}} if use_deep_thought else None
        )

        data = await self._generate(
            model,
            [{"text": prompt}],
            generation_config=generation_config,
            tools=tools,
            tool_config=tool_config,
        )
        text = self._text_of(data)
        chunks = self._first_candidate(data).get("groundingMetadata", {}).get("groundingChunks")
        sources = None
        if chunks:
            sources = []
            for chunk in chunks:
                ref = chunk.get("web") or chunk.get("maps") or {}
                if ref.get("uri"):
                    sources.append(GroundingSource(uri=ref["uri"], title=ref.get("title") or ref["uri"]))
        return ChatResponse(text=text, grounding_sources=sources)

    async def health_check(self) -> HealthCheckResult:
        """Check Gemini connectivity and authentication."""
        start = time.monotonic()
        try:
            await self._generate(
                self.model_fast,
                [{"text": "Say 'OK'"}],
                generation_config={"maxOutputTokens": 5},
            )
        except AIError as e:
            return HealthCheckResult(
                healthy=False, provider=self.name, model=self.model_fast, message=str(e)
            )
        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self.model_fast,
            message="Connected",
            latency_ms=int((time.monotonic() - start) * 1000),
        )


def get_ai_provider(settings: Settings, provider_name: str = "gemini") -> AIProvider:
    """Factory function to build an AI provider.

    Raises:
        ValueError: If the provider is unknown.
        AIError: If the provider's credentials are missing.
    """
    provider_name = provider_name.lower()
    if provider_name == "gemini":
        return GeminiProvider.from_settings(settings)
    raise ValueError(f"Unknown provider: {provider_name}. Available: gemini")
