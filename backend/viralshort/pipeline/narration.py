"""Narration stage: text-to-speech with a source-audio fallback."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import UnrecoverableStageError
from .models import ArtifactKind, MediaArtifact

logger = logging.getLogger(__name__)


@dataclass
class NarrationResult:
    artifact: MediaArtifact
    duration: float
    from_source_audio: bool = False
    error: Optional[str] = None


async def synthesize_narration(
    text: str,
    work_dir: Path,
    voice_backend,
    media,
    source_media: Path,
    fallback_duration: float,
    voice_id: Optional[str] = None,
    progress_callback=None,
) -> NarrationResult:
    """
    Produce the narration track and its measured duration.

    Falls back to the audio of source_media (the combined highlight clip)
    when synthesis is unavailable or fails, and to silence when that has
    no usable audio either. Only a media tool unable to write silence
    makes it raise.
    """
    work_dir = Path(work_dir)

    async def report(pct: float, message: str):
        if progress_callback:
            await progress_callback(pct, message)

    error: Optional[str] = None
    try:
        if not getattr(voice_backend, "is_configured", True):
            raise UnrecoverableStageError("Voice backend not configured", stage="creating_voice")
        await report(10, "Synthesizing voice...")
        path = await voice_backend.synthesize(text, work_dir / "narration.mp3", voice_id)
        duration = await media.probe_duration(path)
        if duration <= 0:
            raise UnrecoverableStageError("Synthesized narration is empty", stage="creating_voice")
        await report(100, f"Voice ready ({duration:.1f}s)")
        logger.info(f"Narration duration: {duration:.2f}s")
        return NarrationResult(
            artifact=MediaArtifact(path=Path(path), kind=ArtifactKind.NARRATED, validated=True, duration=duration),
            duration=duration,
        )
    except Exception as e:
        error = f"Voice generation failed: {e}"
        logger.warning(f"{error}, using the source audio instead")

    await report(50, "Using original audio...")
    try:
        path = await media.extract_audio(source_media, work_dir / "narration_source.wav", 48000)
        duration = await media.probe_duration(path)
        if duration <= 0:
            raise UnrecoverableStageError("Source audio is empty", stage="creating_voice")
        from_source = True
    except Exception as e:
        logger.warning(f"No usable source audio ({e}), using silence")
        duration = float(fallback_duration)
        path = await media.create_silent_audio(work_dir / "narration_silence.wav", duration)
        from_source = False

    await report(100, f"Audio ready ({duration:.1f}s)")
    return NarrationResult(
        artifact=MediaArtifact(path=Path(path), kind=ArtifactKind.NARRATED, validated=False, duration=duration),
        duration=duration,
        from_source_audio=from_source,
        error=error,
    )
