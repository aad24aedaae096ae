"""Session-keyed progress store with a staleness watchdog.

Pipeline stages never write records directly: they publish ProgressEvents
through a ProgressReporter, and the tracker's consumer task applies them.
A separately scheduled sweeper compensates for stalled progress and
promotes stuck finalizations to complete.
"""
import asyncio
import enum
import logging
import re
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import quote

from viralshort.config import settings

logger = logging.getLogger(__name__)


class ProgressStage(str, enum.Enum):
    """Pipeline stage as seen by polling callers."""
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    GENERATING_SCRIPT = "generating_script"
    CREATING_VOICE = "creating_voice"
    ADDING_SUBTITLES = "adding_subtitles"
    FINALIZING = "finalizing"
    COMPLETE = "complete"


def normalize_session_key(url: str) -> str:
    """Normalize a source URL into a session key (trim, drop one trailing slash)."""
    return re.sub(r"/$", "", url.strip())


@dataclass
class ProgressRecord:
    """Latest progress state for one session."""
    stage: ProgressStage = ProgressStage.DOWNLOADING
    percent: float = 0.0
    message: Optional[str] = None
    last_updated: float = 0.0
    video_url: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "percent": self.percent,
            "message": self.message,
            "last_updated": self.last_updated,
            "video_url": self.video_url,
            "download_url": self.download_url,
            "file_name": self.file_name,
        }


@dataclass
class ProgressEvent:
    """A progress message emitted by a stage."""
    session_key: str
    stage: ProgressStage
    percent: float
    message: Optional[str] = None
    timestamp: float = 0.0
    video_url: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None


class SqlProgressLog:
    """Diagnostic sink appending every report to the progress_events table."""

    async def append(self, event: ProgressEvent) -> None:
        from viralshort.db.database import async_session_maker
        from viralshort.models.progress_event import ProgressEventLog

        async with async_session_maker() as session:
            session.add(ProgressEventLog(
                session_key=event.session_key,
                stage=event.stage.value,
                percent=event.percent,
                message=event.message,
            ))
            await session.commit()


class ProgressReporter:
    """Async callable handed to stages; publishes events for one session."""

    def __init__(self, tracker: "ProgressTracker", session_key: str):
        self._tracker = tracker
        self.session_key = normalize_session_key(session_key)

    async def __call__(
        self,
        stage: ProgressStage,
        percent: float,
        message: Optional[str] = None,
        **artifact,
    ) -> None:
        await self._tracker.publish(ProgressEvent(
            session_key=self.session_key,
            stage=ProgressStage(stage),
            percent=percent,
            message=message,
            timestamp=time.time(),
            **artifact,
        ))

    def scoped(
        self,
        stage: ProgressStage,
        low: float,
        high: float,
    ) -> Callable[[float, Optional[str]], Awaitable[None]]:
        """
        Build a progress_callback(pct, message) mapping 0-100 into [low, high] of a stage.
        """
        async def callback(pct: float, message: Optional[str] = None):
            pct = max(0.0, min(100.0, pct))
            await self(stage, low + (high - low) * pct / 100, message)

        return callback


class ProgressTracker:
    """Concurrency-safe progress store plus watchdog sweeper."""

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        event_log=None,
        url_prefix: str = "/api/video",
        sweep_interval: float = 15.0,
        stale_after: float = 30.0,
        estimated_step: float = 10.0,
        estimated_cap: float = 95.0,
        purge_after: float = 3600.0,
        download_stall_after: float = 180.0,
        recovery_percent: float = 10.0,
        auto_complete_after: float = 120.0,
        auto_complete_on_read_after: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.output_dir = Path(output_dir) if output_dir else None
        self.url_prefix = url_prefix.rstrip("/")
        self.sweep_interval = sweep_interval
        self.stale_after = stale_after
        self.estimated_step = estimated_step
        self.estimated_cap = estimated_cap
        self.purge_after = purge_after
        self.download_stall_after = download_stall_after
        self.recovery_percent = recovery_percent
        self.auto_complete_after = auto_complete_after
        self.auto_complete_on_read_after = auto_complete_on_read_after
        self._event_log = event_log
        self._clock = clock

        self._records: Dict[str, ProgressRecord] = {}
        self._last_reported: Dict[str, float] = {}
        self._artifacts: Dict[str, Path] = {}
        self._lock = threading.Lock()

        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._sweeper_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def report(
        self,
        session_key: str,
        stage: ProgressStage,
        percent: float,
        message: Optional[str] = None,
        **artifact,
    ) -> ProgressRecord:
        """Overwrite-merge a genuine update into the session record."""
        key = normalize_session_key(session_key)
        now = self._clock()
        changes = {k: v for k, v in artifact.items() if v is not None}
        if message is not None:
            changes["message"] = message

        with self._lock:
            current = self._records.get(key) or ProgressRecord(last_updated=now)
            updated = replace(
                current,
                stage=ProgressStage(stage),
                percent=max(0.0, min(100.0, float(percent))),
                last_updated=now,
                **changes,
            )
            self._records[key] = updated
            self._last_reported[key] = now

        logger.debug(
            f"Progress updated for {key}: {updated.stage.value} - "
            f"{updated.percent:.0f}% - {updated.message or 'No message'}"
        )
        return updated

    def register_artifact(self, session_key: str, path: Path) -> None:
        """Record which final artifact belongs to a session."""
        with self._lock:
            self._artifacts[normalize_session_key(session_key)] = Path(path)

    def artifact_fields(self, path: Path) -> dict:
        """Derive caller-facing URLs and a suggested filename for an artifact."""
        quoted = quote(str(path), safe="")
        return {
            "video_url": f"{self.url_prefix}/stream?path={quoted}",
            "download_url": f"{self.url_prefix}/download?path={quoted}",
            "file_name": Path(path).name,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, session_key: str) -> ProgressRecord:
        """
        Return the current record, or a default one for unknown keys.

        A record stuck at finalizing/100 for longer than the on-read
        threshold is promoted to complete first.
        """
        key = normalize_session_key(session_key)
        with self._lock:
            record = self._records.get(key)

        if record is None:
            return ProgressRecord(
                stage=ProgressStage.DOWNLOADING,
                percent=0.0,
                message="Starting process...",
                last_updated=self._clock(),
            )

        now = self._clock()
        stalled_for = now - self._last_reported.get(key, record.last_updated)
        if self._is_stuck_finalizing(record) and stalled_for > self.auto_complete_on_read_after:
            logger.info(f"Process appears stuck in finalizing for {key}, attempting auto-completion")
            promoted = self._auto_complete(key, record, now)
            if promoted is not None:
                return promoted

        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Message passing
    # ------------------------------------------------------------------

    def reporter(self, session_key: str) -> ProgressReporter:
        return ProgressReporter(self, session_key)

    async def publish(self, event: ProgressEvent) -> None:
        """Queue an event for the consumer, or apply it inline when none runs."""
        if self._consumer_task is None or self._consumer_task.done():
            await self._handle(event)
            return
        await self._queue.put(event)

    async def flush(self) -> None:
        """Wait until every queued event has been applied."""
        if self._queue is not None and self._consumer_task is not None and not self._consumer_task.done():
            await self._queue.join()

    async def _handle(self, event: ProgressEvent) -> None:
        self.report(
            event.session_key,
            event.stage,
            event.percent,
            event.message,
            video_url=event.video_url,
            download_url=event.download_url,
            file_name=event.file_name,
        )
        if self._event_log is None:
            return
        try:
            await self._event_log.append(event)
        except Exception as e:
            logger.debug(f"Diagnostic progress log write failed: {e}")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception:
                logger.exception(f"Failed to apply progress event for {event.session_key}")
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Run one watchdog pass over all records.

        Returns:
            Number of records changed or purged
        """
        now = self._clock() if now is None else now
        with self._lock:
            snapshot = list(self._records.items())

        changed = 0
        for key, record in snapshot:
            if now - record.last_updated > self.purge_after:
                if self._purge(key, record):
                    changed += 1
                continue

            if record.stage == ProgressStage.COMPLETE:
                continue

            stalled_for = now - self._last_reported.get(key, record.last_updated)

            if self._is_stuck_finalizing(record):
                if stalled_for > self.auto_complete_after:
                    logger.info(f"Auto-completing stuck process for {key} after timeout")
                    if self._auto_complete(key, record, now) is not None:
                        changed += 1
                continue

            # Estimated bumps are spaced by the record's own age, stalls by the last genuine report
            if now - record.last_updated <= self.stale_after:
                continue

            if record.stage == ProgressStage.DOWNLOADING and stalled_for > self.download_stall_after:
                logger.warning(f"Download appears stuck for {key}, moving to transcription")
                updated = replace(
                    record,
                    stage=ProgressStage.TRANSCRIBING,
                    percent=self.recovery_percent,
                    message="Starting transcription (recovery mode)",
                    last_updated=now,
                )
            else:
                bumped = min(record.percent + self.estimated_step, self.estimated_cap)
                if bumped <= record.percent:
                    continue
                updated = replace(
                    record,
                    percent=bumped,
                    message=f"{record.stage.value} in progress (estimated)",
                    last_updated=now,
                )

            if self._swap(key, record, updated):
                changed += 1

        return changed

    def start(self) -> None:
        """Start the consumer and sweeper tasks on the running loop."""
        if self._consumer_task is None or self._consumer_task.done():
            self._queue = asyncio.Queue()
            self._consumer_task = asyncio.create_task(self._consume())
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._run_sweeper())

    async def stop(self) -> None:
        """Drain pending events, then cancel background tasks."""
        await self.flush()
        tasks = [t for t in (self._consumer_task, self._sweeper_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer_task = None
        self._sweeper_task = None

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Progress sweep failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_stuck_finalizing(record: ProgressRecord) -> bool:
        if record.stage != ProgressStage.FINALIZING or record.percent < 100:
            return False
        # Failed runs also park at finalizing/100; they must not adopt another artifact
        return not (record.message or "").startswith("Error")

    def _swap(self, key: str, expected: ProgressRecord, updated: ProgressRecord) -> bool:
        """Replace a record only if nobody wrote a fresher one meanwhile."""
        with self._lock:
            if self._records.get(key) is not expected:
                return False
            self._records[key] = updated
            return True

    def _purge(self, key: str, expected: ProgressRecord) -> bool:
        with self._lock:
            if self._records.get(key) is not expected:
                return False
            del self._records[key]
            self._last_reported.pop(key, None)
            self._artifacts.pop(key, None)
        logger.debug(f"Purged idle progress record for {key}")
        return True

    def _find_artifact(self, key: str) -> Optional[Path]:
        """
        Locate the deliverable for a session.

        The explicitly registered artifact wins. Otherwise the most recently
        modified .mp4 of the output directory is used, which is ambiguous
        when several sessions finalize concurrently.
        """
        with self._lock:
            registered = self._artifacts.get(key)
        if registered is not None and registered.exists():
            return registered

        if self.output_dir is None or not self.output_dir.exists():
            return None

        try:
            candidates = sorted(
                (p for p in self.output_dir.iterdir() if p.suffix == ".mp4" and p.is_file()),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
        except OSError as e:
            logger.error(f"Error scanning output directory for auto-completion: {e}")
            return None
        return candidates[0] if candidates else None

    def _auto_complete(self, key: str, record: ProgressRecord, now: float) -> Optional[ProgressRecord]:
        artifact = self._find_artifact(key)
        if artifact is None:
            return None

        logger.info(f"Found latest video file for {key}: {artifact.name}")
        updated = replace(
            record,
            stage=ProgressStage.COMPLETE,
            percent=100.0,
            message="Video processing complete (auto-completed)",
            last_updated=now,
            **self.artifact_fields(artifact),
        )
        if not self._swap(key, record, updated):
            return None
        return updated


# Global tracker instance
progress_tracker = ProgressTracker(
    output_dir=settings.output_dir,
    event_log=SqlProgressLog(),
    url_prefix=settings.artifact_url_prefix,
    sweep_interval=settings.progress_sweep_interval_seconds,
)
