"""Tests for script synthesis and the text generation client."""
import pytest

from viralshort.pipeline.script_synthesis import (
    MIN_WORDS,
    clean_source_text,
    count_words,
    sanitize_script,
    synthesize_script,
)
from viralshort.services import text_service
from viralshort.services.text_service import ChatCompletionService, TextGenerationError


def words(n: int, token: str = "mot") -> str:
    return " ".join([token] * n)


class _ScriptedText:
    """Returns queued completions in order and records the prompts."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    async def complete(self, system_prompt, user_prompt, temperature=0.5, max_tokens=800):
        self.prompts.append(user_prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class TestSanitize:
    def test_strips_labels_digits_and_brackets(self):
        raw = "Part 1: The [big] reveal {now}\n2. It cost 300 euros (really)\n- Final <word>"
        cleaned = sanitize_script(raw)

        assert not any(ch.isdigit() for ch in cleaned)
        for ch in "[]{}()<>/":
            assert ch not in cleaned
        assert not cleaned.lower().startswith("part")
        assert "reveal" in cleaned
        assert "Final word" in cleaned

    def test_keeps_allowed_punctuation(self):
        assert sanitize_script("C'est incroyable, non ? Oui !") == "C'est incroyable, non? Oui!"

    def test_removes_symbols(self):
        assert sanitize_script("Wow #viral @home & more") == "Wow viral home more"

    def test_clean_source_text_drops_emojis(self):
        assert clean_source_text("Hello \U0001F525 world") == "Hello world"


class TestSynthesizeScript:
    @pytest.mark.asyncio
    async def test_long_enough_script_is_used(self):
        backend = _ScriptedText(words(220))

        result = await synthesize_script("a transcript", backend, language="fr")

        assert result.source == "generated"
        assert result.word_count == 220
        assert len(backend.prompts) == 1
        assert "Language: fr" in backend.prompts[0]

    @pytest.mark.asyncio
    async def test_short_script_triggers_one_extension(self):
        backend = _ScriptedText(words(120), words(230))

        result = await synthesize_script("a transcript", backend)

        assert result.source == "extended"
        assert result.word_count == 230
        assert len(backend.prompts) == 2
        assert "only 120 words" in backend.prompts[1]

    @pytest.mark.asyncio
    async def test_extension_is_not_repeated(self):
        backend = _ScriptedText(words(50), words(90))

        result = await synthesize_script("a transcript", backend)

        assert result.word_count == 90
        assert result.word_count < MIN_WORDS
        assert len(backend.prompts) == 2

    @pytest.mark.asyncio
    async def test_backend_failure_returns_original_transcript(self):
        backend = _ScriptedText(TextGenerationError("Text generation timed out"))
        transcript = "Le texte original de la video."

        result = await synthesize_script(transcript, backend)

        assert result.source == "original"
        assert result.text == transcript
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_failed_extension_returns_original_transcript(self):
        backend = _ScriptedText(words(100), TextGenerationError("HTTP 500"))

        result = await synthesize_script("original text", backend)

        assert result.text == "original text"
        assert result.source == "original"

    @pytest.mark.asyncio
    async def test_output_is_sanitized(self):
        backend = _ScriptedText("Part 1: " + words(210) + " [laughs] 42")

        result = await synthesize_script("a transcript", backend)

        assert "[" not in result.text
        assert "42" not in result.text
        assert count_words(result.text) == result.word_count


class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = ""

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload


class _FakeClient:
    def __init__(self, response):
        self.response = response
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, headers=None, json=None):
        self.requests.append((url, headers, json))
        return self.response


class TestChatCompletionService:
    @pytest.mark.asyncio
    async def test_returns_message_content(self, monkeypatch):
        client = _FakeClient(_FakeResponse(200, {"choices": [{"message": {"content": "  Bonjour  "}}]}))
        monkeypatch.setattr(text_service.httpx, "AsyncClient", lambda **kwargs: client)

        service = ChatCompletionService(api_key="key", base_url="https://llm.test/v1/")
        content = await service.complete("system", "user")

        assert content == "Bonjour"
        url, headers, body = client.requests[0]
        assert url == "https://llm.test/v1/chat/completions"
        assert headers["Authorization"] == "Bearer key"
        assert [m["role"] for m in body["messages"]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_http_error_includes_detail(self, monkeypatch):
        client = _FakeClient(_FakeResponse(401, {"error": {"message": "Invalid API key"}}))
        monkeypatch.setattr(text_service.httpx, "AsyncClient", lambda **kwargs: client)

        with pytest.raises(TextGenerationError, match="HTTP 401.*Invalid API key"):
            await ChatCompletionService(api_key="key").complete("system", "user")

    @pytest.mark.asyncio
    async def test_malformed_payload(self, monkeypatch):
        client = _FakeClient(_FakeResponse(200, {"choices": []}))
        monkeypatch.setattr(text_service.httpx, "AsyncClient", lambda **kwargs: client)

        with pytest.raises(TextGenerationError, match="invalid provider response"):
            await ChatCompletionService(api_key="key").complete("system", "user")
