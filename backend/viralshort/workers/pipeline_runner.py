"""Background pipeline runner using asyncio."""
import asyncio
import hashlib
import logging
import shutil
import sys
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from viralshort.config import settings
from viralshort.pipeline.models import EditingStyle, PipelineSession
from viralshort.pipeline.orchestrator import ShortPipeline
from viralshort.workers.progress_tracker import (
    ProgressRecord,
    ProgressStage,
    ProgressTracker,
    normalize_session_key,
    progress_tracker,
)

logger = logging.getLogger(__name__)


@dataclass
class ShortOptions:
    """Caller options for one run."""
    start_time: float = 0.0
    target_duration: Optional[float] = None
    editing_style: str = EditingStyle.DYNAMIC.value
    voice: Optional[str] = None
    language: Optional[str] = None
    background_music: Optional[str] = None


class PipelineRunner:
    """Starts pipeline runs as tasks and answers progress polls."""

    def __init__(
        self,
        tracker: Optional[ProgressTracker] = None,
        pipeline: Optional[ShortPipeline] = None,
        work_dir: Optional[Path] = None,
    ):
        self.tracker = tracker or progress_tracker
        self._pipeline = pipeline
        self.work_dir = Path(work_dir or settings.work_dir)
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def pipeline(self) -> ShortPipeline:
        # Backends are built lazily so importing the runner needs no credentials
        if self._pipeline is None:
            self._pipeline = ShortPipeline()
        return self._pipeline

    def create_session(self, source_url: str, options: ShortOptions) -> PipelineSession:
        key = normalize_session_key(source_url)
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
        return PipelineSession(
            key=key,
            source_url=source_url.strip(),
            work_dir=self.work_dir / f"{digest}_{int(time.time() * 1000)}",
            target_duration=options.target_duration or settings.target_duration,
            editing_style=EditingStyle(options.editing_style or EditingStyle.DYNAMIC.value),
            language=options.language or settings.default_language,
            voice_id=options.voice or settings.default_voice_id,
            background_music=options.background_music,
            start_offset=max(0.0, options.start_time or 0.0),
            download_window=settings.download_window_seconds,
        )

    async def start(self, source_url: str, options: Optional[ShortOptions] = None) -> str:
        """
        Start a pipeline run in the background.

        Returns:
            The session key to poll with
        """
        options = options or ShortOptions()
        key = normalize_session_key(source_url)

        if key in self._running:
            logger.warning(f"Pipeline for {key} is already running")
            return key

        session = self.create_session(source_url, options)
        session.work_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Starting pipeline for {key} in {session.work_dir}")

        task = asyncio.create_task(self._run(session))
        self._running[key] = task
        return key

    async def _run(self, session: PipelineSession):
        """Run a session with error reporting and cleanup."""
        reporter = self.tracker.reporter(session.key)
        try:
            outcome = await self.pipeline.run(session, reporter)

            final_path = outcome.artifact.path
            self.tracker.register_artifact(session.key, final_path)
            message = "Video processing complete"
            if outcome.last_error:
                message += f" (Error: {outcome.last_error})"
            await reporter(
                ProgressStage.COMPLETE,
                100,
                message,
                **self.tracker.artifact_fields(final_path),
            )
            logger.info(f"Pipeline for {session.key} completed: {final_path}")

        except asyncio.CancelledError:
            logger.info(f"Pipeline for {session.key} was cancelled")
            raise

        except Exception as e:
            logger.error(
                f"Pipeline for {session.key} failed in {session.current_stage}: {e}\n"
                f"{traceback.format_exc()}"
            )
            await reporter(ProgressStage.FINALIZING, 100, f"Error: {e}")

        finally:
            self._cleanup(session.work_dir)
            self._running.pop(session.key, None)

    @staticmethod
    def _cleanup(work_dir: Path):
        """Best-effort removal of a session working directory."""
        work_dir = Path(work_dir)
        if not work_dir.exists():
            return

        def log_failure(function, path, error):
            if isinstance(error, tuple):
                error = error[1]
            logger.warning(f"Could not delete {path}: {error}")

        if sys.version_info >= (3, 12):
            shutil.rmtree(work_dir, onexc=log_failure)
        else:
            shutil.rmtree(work_dir, onerror=log_failure)
        logger.debug(f"Cleaned up {work_dir}")

    def poll(self, source_url: str) -> ProgressRecord:
        """Latest progress for a session; never raises."""
        return self.tracker.read(normalize_session_key(source_url))

    def is_running(self, source_url: str) -> bool:
        return normalize_session_key(source_url) in self._running

    async def join(self, source_url: str):
        """Wait for a running session to finish."""
        task = self._running.get(normalize_session_key(source_url))
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await self.tracker.flush()

    async def shutdown(self):
        """Cancel all running pipelines."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()

        if tasks:
            await asyncio.gather(
                *tasks,
                return_exceptions=True
            )

        self._running.clear()


# Global pipeline runner instance
pipeline_runner = PipelineRunner()
