"""Transcription stage: audio extraction, speech recognition, placeholder fallback."""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from viralshort.config import settings
from viralshort.utils.retry import exponential_backoff, retry_async

from .errors import RecoverableBackendError, UnrecoverableStageError
from .models import Transcription, TranscriptSegment, Word

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = (
    "The original audio could not be transcribed. "
    "Here are the most striking moments of this video."
)

# Substrings marking transient speech backend failures
RETRYABLE_MARKERS = (
    "interrupt",
    "econnreset",
    "timeout",
    "timed out",
    "rate limit",
    "rate-limit",
    "429",
    "too many requests",
)

# Used when the backend returns text without segments and the media length is unknown
DEFAULT_SEGMENT_SECONDS = 60.0


def is_retryable_transcription_error(error: Exception) -> bool:
    if isinstance(error, RecoverableBackendError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


async def _transcribe_once(speech, audio_path: Path, language: Optional[str]) -> Dict[str, Any]:
    """One backend call; transient failures come out as RecoverableBackendError."""
    try:
        return await speech.transcribe(audio_path, language)
    except RecoverableBackendError:
        raise
    except Exception as e:
        if is_retryable_transcription_error(e):
            raise RecoverableBackendError(str(e), stage="transcribing") from e
        raise


def build_placeholder_transcript(duration: float, error: Optional[str] = None) -> Transcription:
    """One synthetic segment of filler text with evenly spread word timings."""
    tokens = PLACEHOLDER_TEXT.split()
    step = duration / len(tokens)
    words = [
        Word(word=token, start=round(i * step, 3), end=round((i + 1) * step, 3))
        for i, token in enumerate(tokens)
    ]
    segment = TranscriptSegment(start=0.0, end=float(duration), text=PLACEHOLDER_TEXT, words=words)
    return Transcription(transcript=PLACEHOLDER_TEXT, segments=[segment], is_placeholder=True, error=error)


def to_transcription(raw: Dict[str, Any], media_duration: Optional[float] = None) -> Transcription:
    """Validate backend output into a Transcription."""
    text = str(raw.get("text") or "").strip()
    segments = [
        segment
        for segment in (TranscriptSegment.from_dict(item) for item in raw.get("segments") or [])
        if segment is not None
    ]
    dropped = len(raw.get("segments") or []) - len(segments)
    if dropped:
        logger.warning(f"Dropped {dropped} malformed transcript segments")

    if not segments and text:
        logger.info("No segments found, creating a synthetic segment from the text")
        segments = [TranscriptSegment(
            start=0.0,
            end=media_duration or DEFAULT_SEGMENT_SECONDS,
            text=text,
        )]

    if not text:
        text = " ".join(segment.text for segment in segments).strip()

    if not text:
        raise UnrecoverableStageError("Transcription returned no text", stage="transcribing")

    return Transcription(transcript=text, segments=segments)


async def transcribe_media(
    media_path: Path,
    work_dir: Path,
    speech,
    media,
    language: Optional[str] = None,
    target_duration: float = 85.0,
    progress_callback=None,
    max_attempts: int = 3,
    budget_seconds: Optional[float] = None,
    sleep=asyncio.sleep,
) -> Transcription:
    """
    Transcribe a media file. Never raises.

    Args:
        media_path: Video or audio to transcribe
        work_dir: Session working directory
        speech: Backend with `async transcribe(audio_path, language) -> dict`
        media: Media helpers (extract_audio, probe_duration)
        language: Spoken language hint
        target_duration: Length of the placeholder transcript
        progress_callback: Optional async callback(progress: float, message: str)
        max_attempts: Attempts against the backend before the fallback path
        budget_seconds: Wall-clock budget for the whole stage
        sleep: Awaitable sleep used between retries

    Returns:
        Transcription, flagged is_placeholder when everything failed
    """
    budget_seconds = budget_seconds or settings.transcription_budget_seconds
    work_dir = Path(work_dir)

    async def report(pct: float, message: str):
        if progress_callback:
            await progress_callback(pct, message)

    async def run() -> Transcription:
        await report(5, "Extracting audio...")
        audio_path = await media.extract_audio(
            media_path, work_dir / "audio.wav", settings.transcription_sample_rate
        )

        await report(20, "Transcribing audio...")
        try:
            raw = await retry_async(
                lambda: _transcribe_once(speech, audio_path, language),
                is_retryable=lambda e: isinstance(e, RecoverableBackendError),
                max_attempts=max_attempts,
                backoff=exponential_backoff(2.0),
                sleep=sleep,
                description="Transcription",
            )
        except Exception as e:
            logger.warning(f"Transcription failed ({e}), retrying with a fresh audio extraction")
            await report(50, "Retrying transcription with re-extracted audio...")
            fallback_audio = await media.extract_audio(
                media_path, work_dir / "audio_fallback.wav", settings.transcription_sample_rate
            )
            raw = await speech.transcribe(fallback_audio, language)

        await report(90, "Processing transcription...")
        try:
            media_duration = await media.probe_duration(media_path)
        except Exception as e:
            logger.debug(f"Could not probe media duration: {e}")
            media_duration = None
        return to_transcription(raw, media_duration)

    try:
        transcription = await asyncio.wait_for(run(), timeout=budget_seconds)
    except asyncio.TimeoutError:
        error = f"Transcription timed out after {budget_seconds:.0f}s"
        logger.error(f"{error}, using placeholder transcript")
        transcription = build_placeholder_transcript(target_duration, error=error)
    except Exception as e:
        logger.error(f"Transcription failed: {e}, using placeholder transcript")
        transcription = build_placeholder_transcript(target_duration, error=f"Transcription failed: {e}")

    await report(100, "Transcription complete")
    return transcription
