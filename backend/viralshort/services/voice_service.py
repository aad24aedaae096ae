"""Text-to-speech backend (ElevenLabs)."""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from viralshort.config import settings
from viralshort.services.backend_http import extract_error_detail

logger = logging.getLogger(__name__)

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.5,
    "use_speaker_boost": True,
}


class VoiceSynthesisError(RuntimeError):
    """Raised when speech synthesis fails."""


class ElevenLabsVoiceService:
    """Client for `/text-to-speech/{voice_id}` (MP3 audio) and the `/voices` listing."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = settings.elevenlabs_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.elevenlabs_base_url).rstrip("/")
        self.model_id = model_id or settings.elevenlabs_model_id
        self.timeout = timeout or settings.voice_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def synthesize(self, text: str, output_path: Path, voice_id: Optional[str] = None) -> Path:
        """Synthesize text to an MP3 file."""
        if not self.api_key:
            raise VoiceSynthesisError("Voice API key not configured")
        if not text.strip():
            raise VoiceSynthesisError("Nothing to synthesize")

        voice_id = voice_id or settings.default_voice_id
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/text-to-speech/{voice_id}",
                    headers={
                        "xi-api-key": self.api_key,
                        "Accept": "audio/mpeg",
                    },
                    params={"output_format": "mp3_44100_128"},
                    json={
                        "text": text,
                        "model_id": self.model_id,
                        "voice_settings": VOICE_SETTINGS,
                    },
                )
        except httpx.TimeoutException as exc:
            raise VoiceSynthesisError("Voice synthesis timed out") from exc
        except httpx.RequestError as exc:
            raise VoiceSynthesisError(f"Unable to reach voice backend: {exc}") from exc

        if response.status_code != 200:
            detail = extract_error_detail(response)
            raise VoiceSynthesisError(f"Voice synthesis failed (HTTP {response.status_code}): {detail}")

        if not response.content:
            raise VoiceSynthesisError("Voice synthesis returned no audio")

        output_path.write_bytes(response.content)
        logger.info(f"Voice generated: {output_path} ({len(response.content)} bytes)")
        return output_path

    async def list_voices(self) -> List[Dict[str, Any]]:
        """
        List the voices available to the configured account.

        Returns:
            One dict per voice with voice_id, name, category and labels

        Raises:
            VoiceSynthesisError: if the key is missing or the backend fails
        """
        if not self.api_key:
            raise VoiceSynthesisError("Voice API key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/voices",
                    headers={
                        "xi-api-key": self.api_key,
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as exc:
            raise VoiceSynthesisError("Voice listing timed out") from exc
        except httpx.RequestError as exc:
            raise VoiceSynthesisError(f"Unable to reach voice backend: {exc}") from exc

        if response.status_code != 200:
            detail = extract_error_detail(response)
            raise VoiceSynthesisError(f"Voice listing failed (HTTP {response.status_code}): {detail}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise VoiceSynthesisError("Voice listing returned invalid JSON") from exc

        voices = []
        entries = payload.get("voices") if isinstance(payload, dict) else None
        for voice in entries or []:
            if not voice.get("voice_id"):
                continue
            voices.append({
                "voice_id": voice["voice_id"],
                "name": voice.get("name") or voice["voice_id"],
                "category": voice.get("category"),
                "labels": voice.get("labels") or {},
            })
        return voices
