"""Tests for ai_gateway.py (Gemini provider over a mocked transport)."""

import json

import httpx
import pytest

from app.core.ai_gateway import (
    AIError,
    GeminiProvider,
    GeoLocation,
    ValidationError,
    get_ai_provider,
    normalize_tags,
    parse_structured,
    _CategorizePayload,
)
from app.core.media import MediaBlob
from app.core.settings import Settings
from app.providers.content_types import AspectRatio, ContentType


def _text_response(text: str, **candidate_extra) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, **candidate_extra}]}


class FakeGemini:
    """Returns queued JSON bodies and records what was sent."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def body(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)

    def path(self, index: int = 0) -> str:
        return self.requests[index].url.path


def _provider(fake: FakeGemini) -> GeminiProvider:
    return GeminiProvider(
        "test-key",
        model_fast="fast",
        model_pro="pro",
        model_image_edit="edit",
        model_image_gen="imagen",
        transport=httpx.MockTransport(fake.handler),
    )


def _settings(api_key: str = "key") -> Settings:
    return Settings(
        app_env="test",
        log_level="INFO",
        supabase_url="https://project.supabase.co",
        supabase_anon_key="anon",
        gemini_api_key=api_key,
        gemini_base_url="https://gemini.test/v1beta",
        model_fast="fast",
        model_pro="pro",
        model_image_edit="edit",
        model_image_gen="imagen",
        ai_timeout_seconds=5.0,
        store_timeout_seconds=5.0,
        ai_pending_grace_seconds=15,
    )


class TestConstruction:
    def test_missing_key_raises(self):
        with pytest.raises(AIError, match="GEMINI_API_KEY"):
            GeminiProvider("")

    def test_factory_builds_gemini(self):
        assert get_ai_provider(_settings()).name == "Gemini"

    def test_factory_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            get_ai_provider(_settings(), "openai")

    def test_factory_missing_key(self):
        with pytest.raises(AIError):
            get_ai_provider(_settings(api_key=""))


class TestStructuredParsing:
    def test_normalize_tags(self):
        assert normalize_tags([" Food ", "food", "Shopping", "a", "b", "c"]) == (
            "food",
            "shopping",
            "a",
            "b",
        )

    def test_fenced_json(self):
        payload = parse_structured('```json\n{"category": "Work", "tags": []}\n```', _CategorizePayload)
        assert payload.category == "Work"

    def test_invalid_json(self):
        with pytest.raises(AIError, match="invalid JSON"):
            parse_structured("not json", _CategorizePayload)

    def test_schema_mismatch(self):
        with pytest.raises(AIError, match="schema"):
            parse_structured('{"category": "Work"}', _CategorizePayload)


class TestCategorize:
    @pytest.mark.asyncio
    async def test_text_uses_pro_model_with_truncation(self):
        fake = FakeGemini(_text_response('{"category": "Shopping", "tags": ["Groceries", "food"]}'))
        ai = _provider(fake)

        result = await ai.categorize_and_tag_content(ContentType.TEXT, "x" * 5000)

        assert result.category == "Shopping"
        assert result.tags == ("groceries", "food")
        assert fake.path().endswith("/models/pro:generateContent")
        body = fake.body()
        prompt = body["contents"][0]["parts"][0]["text"]
        assert "x" * 2000 + "..." in prompt
        assert "x" * 2001 not in prompt
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert fake.requests[0].headers["x-goog-api-key"] == "test-key"

    @pytest.mark.asyncio
    async def test_image_uses_fast_model_and_inline_data(self):
        fake = FakeGemini(_text_response('{"category": "Travel", "tags": ["beach"]}'))
        ai = _provider(fake)

        await ai.categorize_and_tag_content(ContentType.IMAGE, "data:image/png;base64,AAAA", "image/png")

        assert fake.path().endswith("/models/fast:generateContent")
        inline = fake.body()["contents"][0]["parts"][0]["inlineData"]
        assert inline == {"mimeType": "image/png", "data": "AAAA"}

    @pytest.mark.asyncio
    async def test_image_without_mime_type(self):
        fake = FakeGemini()
        with pytest.raises(ValidationError):
            await _provider(fake).categorize_and_tag_content(ContentType.IMAGE, "AAAA")
        assert fake.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content_type", [ContentType.URL, ContentType.AUDIO])
    async def test_unsupported_types(self, content_type):
        fake = FakeGemini()
        with pytest.raises(ValidationError):
            await _provider(fake).categorize_and_tag_content(content_type, "x", "audio/webm")
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        fake = FakeGemini(_text_response("I think this is about work"))
        with pytest.raises(AIError):
            await _provider(fake).categorize_and_tag_content(ContentType.TEXT, "note")


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_rate_limit_is_retriable(self):
        fake = FakeGemini(httpx.Response(429, text="slow down"))
        with pytest.raises(AIError) as exc_info:
            await _provider(fake).analyze_image("AAAA", "image/png", "describe")
        assert exc_info.value.retriable is True
        assert exc_info.value.provider == "Gemini"

    @pytest.mark.asyncio
    async def test_quota_is_not_retriable(self):
        fake = FakeGemini(httpx.Response(429, text="Quota exceeded for project"))
        with pytest.raises(AIError) as exc_info:
            await _provider(fake).analyze_image("AAAA", "image/png", "describe")
        assert exc_info.value.retriable is False

    @pytest.mark.asyncio
    async def test_server_error_is_retriable(self):
        fake = FakeGemini(httpx.Response(503, text="unavailable"))
        with pytest.raises(AIError) as exc_info:
            await _provider(fake).analyze_image("AAAA", "image/png", "describe")
        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        fake = FakeGemini({"promptFeedback": {"blockReason": "SAFETY"}})
        with pytest.raises(AIError, match="SAFETY"):
            await _provider(fake).analyze_image("AAAA", "image/png", "describe")


class TestImages:
    @pytest.mark.asyncio
    async def test_edit_image_returns_data_uri(self):
        fake = FakeGemini(
            {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]}}]}
        )
        image = await _provider(fake).edit_image("data:image/jpeg;base64,AAAA", "image/jpeg", "add a hat")

        assert image.image_data == "data:image/png;base64,QUJD"
        assert image.mime_type == "image/png"
        assert fake.body()["generationConfig"]["responseModalities"] == ["IMAGE"]

    @pytest.mark.asyncio
    async def test_edit_image_without_image_part(self):
        fake = FakeGemini(_text_response("I can't do that"))
        with pytest.raises(AIError, match="Failed to edit image"):
            await _provider(fake).edit_image("AAAA", "image/png", "add a hat")

    @pytest.mark.asyncio
    async def test_generate_image(self):
        fake = FakeGemini({"predictions": [{"bytesBase64Encoded": "UE5H"}]})
        image = await _provider(fake).generate_image("a cat", AspectRatio.LANDSCAPE)

        assert image.image_data == "data:image/png;base64,UE5H"
        assert fake.path().endswith("/models/imagen:predict")
        assert fake.body()["parameters"]["aspectRatio"] == "16:9"

    @pytest.mark.asyncio
    async def test_generate_image_bad_ratio(self):
        fake = FakeGemini()
        with pytest.raises(ValidationError):
            await _provider(fake).generate_image("a cat", "2:1")

    @pytest.mark.asyncio
    async def test_generate_image_empty(self):
        fake = FakeGemini({"predictions": []})
        with pytest.raises(AIError):
            await _provider(fake).generate_image("a cat", "1:1")


class TestTextCapabilities:
    @pytest.mark.asyncio
    async def test_transcribe_sends_audio_inline(self):
        fake = FakeGemini(_text_response("hello world"))
        text = await _provider(fake).transcribe_audio(MediaBlob(data=b"abc", mime_type="audio/webm"))

        assert text == "hello world"
        inline = fake.body()["contents"][0]["parts"][0]["inlineData"]
        assert inline == {"mimeType": "audio/webm", "data": "YWJj"}

    @pytest.mark.asyncio
    async def test_summarize_url_uses_search(self):
        fake = FakeGemini(_text_response("A page about cats."))
        summary = await _provider(fake).summarize_content("https://cats.example", ContentType.URL)

        assert summary == "A page about cats."
        assert fake.path().endswith("/models/pro:generateContent")
        assert fake.body()["tools"] == [{"googleSearch": {}}]
        assert "https://cats.example" in fake.body()["contents"][0]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_summarize_text_has_no_tools(self):
        fake = FakeGemini(_text_response("Short."))
        await _provider(fake).summarize_content("long text", "text")
        assert "tools" not in fake.body()

    @pytest.mark.asyncio
    async def test_summarize_image_rejected(self):
        with pytest.raises(ValidationError):
            await _provider(FakeGemini()).summarize_content("AAAA", ContentType.IMAGE)

    @pytest.mark.asyncio
    async def test_empty_text_is_error(self):
        fake = FakeGemini(_text_response("   "))
        with pytest.raises(AIError, match="empty"):
            await _provider(fake).summarize_content("x", ContentType.TEXT)


class TestOrganize:
    @pytest.mark.asyncio
    async def test_filters_and_clamps(self):
        payload = {
            "organizedItems": [
                {"id": "1", "category": "Work", "priority": 9},
                {"id": 2, "category": "Home", "priority": 2},
                {"category": "Orphan", "priority": 3},
                {"id": "3", "category": "Home", "priority": "0"},
            ]
        }
        fake = FakeGemini(_text_response(json.dumps(payload)))

        organized = await _provider(fake).organize_content(
            [{"id": "1", "type": "text", "content": "report"}]
        )

        assert [(o.id, o.category, o.priority) for o in organized] == [
            ("1", "Work", 5),
            ("3", "Home", 1),
        ]
        assert fake.body()["generationConfig"]["responseSchema"]["required"] == ["organizedItems"]

    @pytest.mark.asyncio
    async def test_missing_list_is_error(self):
        fake = FakeGemini(_text_response('{"items": []}'))
        with pytest.raises(AIError):
            await _provider(fake).organize_content([])


class TestChat:
    @pytest.mark.asyncio
    async def test_fast_chat_without_grounding(self):
        fake = FakeGemini(_text_response("Hi!"))
        response = await _provider(fake).get_chat_response("hello")

        assert response.text == "Hi!"
        assert response.grounding_sources is None
        assert fake.path().endswith("/models/fast:generateContent")
        assert "generationConfig" not in fake.body()

    @pytest.mark.asyncio
    async def test_deep_thought_with_location(self):
        fake = FakeGemini(
            _text_response(
                "Try the cafe.",
                groundingMetadata={
                    "groundingChunks": [
                        {"web": {"uri": "https://a.example", "title": "A"}},
                        {"maps": {"uri": "https://maps.example/cafe", "title": "Cafe"}},
                        {"web": {}},
                    ]
                },
            )
        )
        response = await _provider(fake).get_chat_response(
            "coffee nearby?", use_deep_thought=True, location=GeoLocation(52.5, 13.4)
        )

        body = fake.body()
        assert fake.path().endswith("/models/pro:generateContent")
        assert body["generationConfig"] == {"thinkingConfig": {"thinkingBudget": 32768}}
        assert {"googleMaps": {}} in body["tools"]
        assert body["toolConfig"]["retrievalConfig"]["latLng"] == {"latitude": 52.5, "longitude": 13.4}
        assert [(s.uri, s.title) for s in response.grounding_sources] == [
            ("https://a.example", "A"),
            ("https://maps.example/cafe", "Cafe"),
        ]


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        fake = FakeGemini(_text_response("OK"))
        result = await _provider(fake).health_check()
        assert result.healthy
        assert result.model == "fast"

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        fake = FakeGemini(httpx.Response(401, text="bad key"))
        result = await _provider(fake).health_check()
        assert not result.healthy
        assert "invalid" in result.message
