"""Speech-to-text backend (OpenAI-compatible transcription endpoint)."""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from viralshort.config import settings
from viralshort.services.backend_http import extract_error_detail

logger = logging.getLogger(__name__)
TRANSCRIPTION_HTTP_TIMEOUT_SECONDS = 180.0
CONNECT_TIMEOUT_SECONDS = 15.0


class SpeechToTextError(RuntimeError):
    """Raised when the speech recognition backend fails."""


def assign_words_to_segments(
    segments: List[Dict[str, Any]],
    words: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Attach word timestamps to the segment whose span contains the word start."""
    result = [dict(segment, words=list(segment.get("words") or [])) for segment in segments]
    if not words or not result:
        return result

    index = 0
    for word in sorted(words, key=lambda w: float(w.get("start", 0) or 0)):
        start = float(word.get("start", 0) or 0)
        while index < len(result) - 1 and start >= float(result[index].get("end", 0) or 0):
            index += 1
        result[index]["words"].append({
            "word": str(word.get("word", "")).strip(),
            "start": start,
            "end": float(word.get("end", start) or start),
        })
    return result


class WhisperTranscriptionService:
    """Client for `/audio/transcriptions` with segment and word timestamps."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.api_key = settings.openai_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.transcription_model

    async def transcribe(self, audio_path: Path, language: Optional[str] = None) -> Dict[str, Any]:
        """
        Transcribe an audio file.

        Returns:
            {"text": str, "segments": [{"start", "end", "text", "words": [...]}]}

        Raises:
            SpeechToTextError: with a message naming the failure kind
                (timed out, rate limit, connection interrupted, HTTP error)
        """
        if not self.api_key:
            raise SpeechToTextError("Speech-to-text API key not configured")

        audio_path = Path(audio_path)
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": ["segment", "word"],
        }
        if language:
            data["language"] = language

        timeout = httpx.Timeout(TRANSCRIPTION_HTTP_TIMEOUT_SECONDS, connect=CONNECT_TIMEOUT_SECONDS)
        try:
            with open(audio_path, "rb") as audio_file:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(
                        f"{self.base_url}/audio/transcriptions",
                        headers={"Authorization": f"Bearer {self.api_key}"},
                        data=data,
                        files={"file": (audio_path.name, audio_file, "audio/wav")},
                    )
        except httpx.TimeoutException as exc:
            raise SpeechToTextError("Transcription request timed out") from exc
        except httpx.RequestError as exc:
            raise SpeechToTextError(f"Transcription connection interrupted: {exc}") from exc

        if response.status_code == 429:
            raise SpeechToTextError(
                f"Transcription rate limit exceeded (429): {extract_error_detail(response)}"
            )
        if response.status_code != 200:
            detail = extract_error_detail(response)
            raise SpeechToTextError(f"Transcription failed (HTTP {response.status_code}): {detail}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise SpeechToTextError("Transcription failed: invalid provider response") from exc

        segments = [
            {
                "start": segment.get("start"),
                "end": segment.get("end"),
                "text": str(segment.get("text", "")).strip(),
            }
            for segment in payload.get("segments") or []
        ]
        segments = assign_words_to_segments(segments, payload.get("words") or [])

        logger.info(f"Transcribed {audio_path.name}: {len(segments)} segments")
        return {"text": str(payload.get("text", "")).strip(), "segments": segments}
