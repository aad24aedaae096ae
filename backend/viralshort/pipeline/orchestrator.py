"""Linear stage sequence for one session."""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from viralshort.config import settings
from viralshort.services.speech_service import WhisperTranscriptionService
from viralshort.services.text_service import ChatCompletionService
from viralshort.services.voice_service import ElevenLabsVoiceService
from viralshort.utils import ffmpeg, ytdlp
from viralshort.workers.progress_tracker import ProgressReporter, ProgressStage

from .acquisition import acquire_source
from .composition import combine_highlights, compose_and_finalize, resolve_music_path
from .models import MediaArtifact, PipelineSession
from .narration import synthesize_narration
from .script_synthesis import synthesize_script
from .segment_selector import SelectorConfig, select_segments, total_duration
from .subtitles import build_cues, rebase_words, write_ass_file
from .transcription import transcribe_media

logger = logging.getLogger(__name__)


@dataclass
class PipelineBackends:
    """External collaborators, swappable for tests."""
    media: Any = field(default_factory=lambda: ffmpeg)
    downloader: Any = field(default_factory=lambda: ytdlp)
    speech: Any = field(default_factory=WhisperTranscriptionService)
    text: Any = field(default_factory=ChatCompletionService)
    voice: Any = field(default_factory=ElevenLabsVoiceService)


@dataclass
class PipelineOutcome:
    artifact: MediaArtifact
    last_error: Optional[str] = None
    acquisition_tier: Optional[str] = None
    subtitle_mode: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.last_error is not None


class ShortPipeline:
    """Runs acquisition through finalization for a session."""

    def __init__(
        self,
        backends: Optional[PipelineBackends] = None,
        output_dir: Optional[Path] = None,
        music_dir: Optional[Path] = None,
        selector_config: Optional[SelectorConfig] = None,
        sleep=asyncio.sleep,
    ):
        self.backends = backends or PipelineBackends()
        self.output_dir = Path(output_dir or settings.output_dir)
        self.music_dir = Path(music_dir or settings.music_dir)
        self.selector_config = selector_config or SelectorConfig()
        self._sleep = sleep

    async def run(self, session: PipelineSession, reporter: ProgressReporter) -> PipelineOutcome:
        """
        Run every stage in order.

        Only FatalIOError propagates; every other failure degrades the
        result and is remembered as session.last_error.
        """
        media = self.backends.media
        Path(session.work_dir).mkdir(parents=True, exist_ok=True)

        # Acquisition
        session.current_stage = ProgressStage.DOWNLOADING.value
        await reporter(ProgressStage.DOWNLOADING, 0, "Starting download...")
        acquisition = await acquire_source(
            session,
            self.backends.downloader,
            media,
            progress_callback=reporter.scoped(ProgressStage.DOWNLOADING, 0, 100),
        )
        raw = session.add_artifact(acquisition.artifact)
        if acquisition.failures:
            session.record_error(ProgressStage.DOWNLOADING.value, acquisition.last_error)

        # Transcription
        session.current_stage = ProgressStage.TRANSCRIBING.value
        transcription = await transcribe_media(
            raw.path,
            session.work_dir,
            self.backends.speech,
            media,
            language=session.language,
            target_duration=session.target_duration,
            progress_callback=reporter.scoped(ProgressStage.TRANSCRIBING, 0, 100),
            sleep=self._sleep,
        )
        if transcription.is_placeholder:
            session.record_error(ProgressStage.TRANSCRIBING.value, transcription.error)

        # Selection and script
        session.current_stage = ProgressStage.GENERATING_SCRIPT.value
        await reporter(ProgressStage.GENERATING_SCRIPT, 0, "Selecting best segments...")
        selection = select_segments(transcription.segments, session.target_duration, self.selector_config)
        logger.info(
            f"[{session.key}] {len(selection)} segments selected, "
            f"{total_duration(selection):.1f}s of {session.target_duration:.0f}s"
        )

        script = await synthesize_script(
            transcription.transcript,
            self.backends.text,
            target_duration=session.target_duration,
            language=session.language,
            progress_callback=reporter.scoped(ProgressStage.GENERATING_SCRIPT, 5, 60),
        )
        if script.error:
            session.record_error(ProgressStage.GENERATING_SCRIPT.value, script.error)

        await reporter(ProgressStage.GENERATING_SCRIPT, 60, "Extracting highlights...")
        combined, combine_failures = await combine_highlights(
            raw,
            selection,
            session.work_dir,
            media,
            progress_callback=reporter.scoped(ProgressStage.GENERATING_SCRIPT, 60, 100),
        )
        session.add_artifact(combined)
        if combine_failures:
            name, error = combine_failures[-1]
            session.record_error(ProgressStage.GENERATING_SCRIPT.value, f"Highlight {name} failed: {error}")

        # Narration
        session.current_stage = ProgressStage.CREATING_VOICE.value
        narration = await synthesize_narration(
            script.text,
            session.work_dir,
            self.backends.voice,
            media,
            source_media=combined.path,
            fallback_duration=total_duration(selection),
            voice_id=session.voice_id,
            progress_callback=reporter.scoped(ProgressStage.CREATING_VOICE, 0, 100),
        )
        session.add_artifact(narration.artifact)
        if narration.error:
            session.record_error(ProgressStage.CREATING_VOICE.value, narration.error)

        # Subtitles
        session.current_stage = ProgressStage.ADDING_SUBTITLES.value
        await reporter(ProgressStage.ADDING_SUBTITLES, 10, "Building subtitles...")
        timed_words = None
        # Word timings only describe the narration when it is the clip's own audio
        if (
            narration.from_source_audio
            and not transcription.is_placeholder
            and transcription.has_word_timestamps
            and combined.metadata.get("strategy") == "concat_segments"
        ):
            timed_words = rebase_words(selection)

        cues, subtitle_mode = build_cues(script.text, narration.duration, timed_words)
        subtitles_path = None
        if cues:
            try:
                subtitles_path = write_ass_file(
                    cues,
                    Path(session.work_dir) / "subtitles.ass",
                    settings.output_width,
                    settings.output_height,
                )
            except OSError as e:
                session.record_error(ProgressStage.ADDING_SUBTITLES.value, f"Subtitle writing failed: {e}")
        await reporter(ProgressStage.ADDING_SUBTITLES, 100, f"{len(cues)} subtitles created ({subtitle_mode})")

        # Composition and finalization
        session.current_stage = ProgressStage.FINALIZING.value
        await reporter(ProgressStage.FINALIZING, 0, "Composing final video...")
        final = await compose_and_finalize(
            combined,
            narration.artifact,
            narration.duration,
            session.editing_style.value,
            session.work_dir,
            self.output_dir,
            media,
            subtitles_path=subtitles_path,
            music_path=resolve_music_path(self.music_dir, session.background_music),
            progress_callback=reporter.scoped(ProgressStage.FINALIZING, 0, 95),
        )
        session.add_artifact(final)

        return PipelineOutcome(
            artifact=final,
            last_error=session.last_error,
            acquisition_tier=acquisition.tier,
            subtitle_mode=subtitle_mode,
        )
