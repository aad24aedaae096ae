"""Composition and finalization: highlight extraction, final mux, verify/repair chain."""
import logging
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from viralshort.config import settings
from viralshort.utils.fallback import AllStrategiesFailed, Strategy, run_strategies
from viralshort.utils.ffmpeg import FFmpegError

from .errors import FatalIOError
from .models import ArtifactKind, MediaArtifact, SelectedSegment

logger = logging.getLogger(__name__)


async def _require_valid(media, path: Path, label: str) -> Path:
    if not await media.has_video_stream(path):
        raise FFmpegError(f"{label} produced an invalid video: {path}")
    return Path(path)


async def combine_highlights(
    raw: MediaArtifact,
    selection: Sequence[SelectedSegment],
    work_dir: Path,
    media,
    progress_callback=None,
    timeout: Optional[float] = None,
) -> Tuple[MediaArtifact, List[Tuple[str, Exception]]]:
    """
    Cut the selected segments out of the raw media and join them.

    Falls back to the first segment alone, then to the raw media itself.
    Each ffmpeg attempt is bounded by `timeout` (default from settings).

    Returns:
        (combined artifact, failures of the strategies tried before the winner)
    """
    work_dir = Path(work_dir)
    if timeout is None:
        timeout = settings.extract_timeout_seconds
    ranges = [(s.start, s.end) for s in selection]
    has_audio = bool(raw.metadata.get("audio_codec"))

    async def concat_segments():
        path = await media.export_compound_clip(
            raw.path,
            work_dir / "combined.mp4",
            ranges,
            include_audio=has_audio,
            progress_callback=progress_callback,
        )
        return await _require_valid(media, path, "Segment concatenation")

    async def first_segment():
        start, end = ranges[0]
        path = await media.export_clip(
            raw.path,
            work_dir / "combined_first.mp4",
            start,
            end,
            progress_callback=progress_callback,
        )
        return await _require_valid(media, path, "First segment export")

    async def raw_source():
        return await _require_valid(media, raw.path, "Raw source")

    strategies = [
        Strategy("concat_segments", concat_segments, timeout=timeout),
        Strategy("first_segment", first_segment, timeout=timeout),
        Strategy("raw_source", raw_source),
    ]

    try:
        result = await run_strategies(strategies)
    except AllStrategiesFailed as e:
        raise FatalIOError(f"Could not extract highlights: {e.last_error}", stage="finalizing") from e

    logger.info(f"Highlights combined with strategy '{result.name}'")
    kind = ArtifactKind.RAW if result.name == "raw_source" else ArtifactKind.COMBINED
    if result.name == "first_segment":
        kind = ArtifactKind.EXTRACTED_SEGMENT
    artifact = MediaArtifact(path=result.value, kind=kind, validated=True, metadata={"strategy": result.name})
    return artifact, result.failures


async def finalize_video(
    candidate: Path,
    work_dir: Path,
    media,
    timeout: Optional[float] = None,
) -> Tuple[Path, str]:
    """
    Verify a candidate and repair it if needed.

    Tries the candidate as is, then a lenient re-encode, a fast re-encode
    and a plain stream copy. The first output passing validation wins.
    A repair step running past `timeout` counts as failed.

    Raises:
        FatalIOError: when no attempt yields a valid video
    """
    candidate = Path(candidate)
    work_dir = Path(work_dir)
    if timeout is None:
        timeout = settings.repair_timeout_seconds

    def repair(operation, name: str):
        async def run():
            output = work_dir / f"{candidate.stem}_{name}.mp4"
            await operation(candidate, output)
            return await _require_valid(media, output, name)
        return run

    async def as_is():
        return await _require_valid(media, candidate, "Candidate")

    strategies = [
        Strategy("candidate", as_is),
        Strategy("lenient_reencode", repair(media.reencode_lenient, "lenient"), timeout=timeout),
        Strategy("fast_reencode", repair(media.reencode_fast, "fast"), timeout=timeout),
        Strategy("stream_copy", repair(media.remux_copy, "copy"), timeout=timeout),
    ]

    try:
        result = await run_strategies(strategies)
    except AllStrategiesFailed as e:
        raise FatalIOError(f"Finalization failed: {e.last_error}", stage="finalizing") from e

    if result.name != "candidate":
        logger.warning(f"Candidate {candidate.name} repaired with '{result.name}'")
    return result.value, result.name


def resolve_music_path(music_dir: Path, name: Optional[str]) -> Optional[Path]:
    """Map a background-music selector to `<music_dir>/<name>.mp3`."""
    if not name:
        return None
    path = Path(music_dir) / f"{Path(name).stem}.mp3"
    if not path.exists():
        logger.warning(f"Background music '{name}' not found at {path}, skipping")
        return None
    return path


async def compose_and_finalize(
    video: MediaArtifact,
    narration: MediaArtifact,
    duration: float,
    style: str,
    work_dir: Path,
    output_dir: Path,
    media,
    subtitles_path: Optional[Path] = None,
    music_path: Optional[Path] = None,
    progress_callback=None,
    compose_timeout: Optional[float] = None,
    repair_timeout: Optional[float] = None,
) -> MediaArtifact:
    """
    Render the short, validate or repair it, and move it to output_dir.

    The output is named `viral_short_<ms>_<suffix>.mp4`, the random suffix
    keeping two runs finishing in the same millisecond apart.

    Raises:
        FatalIOError: when neither rendering nor any repair succeeds
    """
    work_dir = Path(work_dir)
    output_dir = Path(output_dir)
    candidate = work_dir / "candidate.mp4"
    if compose_timeout is None:
        compose_timeout = settings.compose_timeout_seconds

    async def render(with_subtitles: bool, with_music: bool):
        return await media.compose_short(
            video.path,
            narration.path,
            candidate,
            style,
            duration,
            subtitles_path=subtitles_path if with_subtitles else None,
            music_path=music_path if with_music else None,
            progress_callback=progress_callback,
        )

    strategies = [Strategy("full", lambda: render(True, True), timeout=compose_timeout)]
    if subtitles_path or music_path:
        strategies.append(Strategy("plain", lambda: render(False, False), timeout=compose_timeout))

    try:
        rendered = await run_strategies(strategies)
        candidate_path = Path(rendered.value)
    except AllStrategiesFailed as e:
        logger.error(f"Composition failed: {e}")
        # The repair chain still gets a chance on whatever was written
        candidate_path = candidate

    final_path, strategy = await finalize_video(candidate_path, work_dir, media, timeout=repair_timeout)

    output_dir.mkdir(parents=True, exist_ok=True)
    destination = output_dir / f"viral_short_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.mp4"
    shutil.move(str(final_path), str(destination))
    logger.info(f"Final video written to {destination} (strategy: {strategy})")

    return MediaArtifact(
        path=destination,
        kind=ArtifactKind.FINAL,
        validated=True,
        duration=duration,
        metadata={"repair_strategy": strategy},
    )


@dataclass
class RepairOutcome:
    path: Path
    status: str  # "valid", "repaired" or "failed"
    strategy: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "status": self.status,
            "strategy": self.strategy,
            "error": self.error,
        }


async def scan_and_repair(output_dir: Path, media, keep_backup: bool = True) -> List[RepairOutcome]:
    """
    Validate every .mp4 in output_dir and repair invalid ones in place.

    The original file is kept next to the repaired one with a `.bak` suffix.
    """
    output_dir = Path(output_dir)
    outcomes: List[RepairOutcome] = []

    for path in sorted(output_dir.glob("*.mp4")):
        if await media.has_video_stream(path):
            outcomes.append(RepairOutcome(path=path, status="valid"))
            continue

        logger.info(f"Repairing invalid video: {path.name}")
        scratch = output_dir / f".repair_{path.stem}"
        scratch.mkdir(exist_ok=True)
        try:
            # Only the re-encode steps apply; the file as is already failed validation
            repaired, strategy = await finalize_video(path, scratch, media)
            if keep_backup:
                shutil.copy2(path, path.with_suffix(".mp4.bak"))
            shutil.move(str(repaired), str(path))
            outcomes.append(RepairOutcome(path=path, status="repaired", strategy=strategy))
        except FatalIOError as e:
            logger.error(f"Could not repair {path.name}: {e}")
            outcomes.append(RepairOutcome(path=path, status="failed", error=str(e)))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    return outcomes
