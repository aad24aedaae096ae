"""Text generation backend (OpenAI-compatible chat completions)."""
import logging
from typing import Optional

import httpx

from viralshort.config import settings
from viralshort.services.backend_http import extract_error_detail

logger = logging.getLogger(__name__)


class TextGenerationError(RuntimeError):
    """Raised when the text generation backend fails."""


class ChatCompletionService:
    """Minimal chat-completions client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = settings.openai_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.script_model
        self.timeout = timeout or settings.script_timeout_seconds

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.5,
        max_tokens: int = 800,
    ) -> str:
        """Return the assistant message for a single-turn conversation."""
        if not self.api_key:
            raise TextGenerationError("Text generation API key not configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=body,
                )
        except httpx.TimeoutException as exc:
            raise TextGenerationError("Text generation timed out") from exc
        except httpx.RequestError as exc:
            raise TextGenerationError(f"Unable to reach text generation backend: {exc}") from exc

        if response.status_code != 200:
            detail = extract_error_detail(response)
            raise TextGenerationError(f"Text generation failed (HTTP {response.status_code}): {detail}")

        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise TextGenerationError("Text generation failed: invalid provider response") from exc

        return (content or "").strip()
