"""Acquisition stage: quality-ordered download chain with a placeholder floor."""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from viralshort.config import settings
from viralshort.utils.fallback import AllStrategiesFailed, Strategy, run_strategies

from .errors import DegradedQualityError, FatalIOError
from .models import ArtifactKind, MediaArtifact, PipelineSession

logger = logging.getLogger(__name__)

ULTRA_FORMAT = (
    "bv*[height>=1440][fps>=50][vcodec^=avc1]+ba[acodec^=mp4a]"
    "/bv*[height>=1440]+ba/bv*+ba/b"
)
ULTRA_SORT = "res,fps,vcodec:h264,acodec:aac"
HIGH_FORMAT = "bv*[height<=1080][ext=mp4]+ba[ext=m4a]/bv*[height<=1080]+ba/b[height<=1080]"
DIRECT_FORMAT = "b[ext=mp4]/b"

TIER_LABELS = {
    "ultra": "Ultra quality download",
    "high": "High quality download",
    "direct": "Direct transfer",
    "placeholder": "Placeholder generation",
}


@dataclass
class AcquisitionResult:
    artifact: MediaArtifact
    tier: str
    failures: List[Tuple[str, Exception]] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.tier == "placeholder"

    @property
    def last_error(self) -> Optional[str]:
        if not self.failures:
            return None
        name, error = self.failures[-1]
        return f"{TIER_LABELS.get(name, name)} failed: {error}"


def _metadata(info) -> dict:
    return {
        "width": info.width,
        "height": info.height,
        "codec": info.video_codec,
        "bitrate": info.bit_rate,
        "audio_codec": info.audio_codec,
        "duration": info.duration,
    }


async def acquire_source(
    session: PipelineSession,
    downloader,
    media,
    progress_callback=None,
    min_height: Optional[int] = None,
) -> AcquisitionResult:
    """
    Fetch the source window, degrading through the tiers.

    Tiers: ultra (>=1440p, parallel fragments) -> high (<=1080p) ->
    direct transfer -> placeholder video.

    Raises:
        FatalIOError: when not even the placeholder could be written
    """
    min_height = min_height or settings.min_source_height
    work_dir = Path(session.work_dir)
    start = session.start_offset
    window = session.download_window
    section = (start, start + window)

    async def report(pct: float, message: Optional[str] = None):
        if progress_callback:
            await progress_callback(pct, message)

    async def probe(path: Path, tier: str) -> MediaArtifact:
        info = await media.get_video_info(path)
        logger.info(
            f"[{session.key}] {tier} tier got {info.width}x{info.height} "
            f"{info.video_codec} @ {info.fps:.0f}fps"
        )
        return MediaArtifact(path=Path(path), kind=ArtifactKind.RAW, validated=True,
                             duration=info.duration, metadata=_metadata(info))

    async def ultra():
        path = await downloader.download_video(
            session.source_url,
            work_dir / "ultra",
            format_selector=ULTRA_FORMAT,
            extra_args=["-S", ULTRA_SORT, "--concurrent-fragments", "8"],
            section=section,
            progress_callback=report,
        )
        artifact = await probe(path, "ultra")
        if artifact.metadata["height"] < min_height:
            raise DegradedQualityError(
                f"resolution {artifact.metadata['height']}p below {min_height}p",
                stage="downloading",
            )
        return artifact

    async def high():
        path = await downloader.download_video(
            session.source_url,
            work_dir / "high",
            format_selector=HIGH_FORMAT,
            extra_args=["--concurrent-fragments", "1"],
            section=section,
            progress_callback=report,
        )
        return await probe(path, "high")

    async def direct():
        await report(5, "Resolving direct media URL...")
        media_url = await downloader.resolve_direct_url(session.source_url, DIRECT_FORMAT)
        full = await downloader.download_direct(
            media_url,
            work_dir / "direct" / "full.mp4",
            retries=settings.direct_transfer_retries,
            progress_callback=report,
        )
        await report(90, "Extracting requested window...")
        path = await media.extract_window(full, work_dir / "direct" / "source.mp4", start, window)
        return await probe(path, "direct")

    async def placeholder():
        await report(50, "Creating placeholder video...")
        path = await media.create_placeholder_video(
            work_dir / "placeholder.mp4",
            session.target_duration,
        )
        return MediaArtifact(
            path=Path(path),
            kind=ArtifactKind.RAW,
            validated=False,
            duration=session.target_duration,
            metadata={
                "width": settings.output_width,
                "height": settings.output_height,
                "codec": "h264",
                "bitrate": None,
                "audio_codec": "aac",
                "duration": session.target_duration,
                "placeholder": True,
            },
        )

    strategies = [
        Strategy("ultra", ultra, timeout=settings.ultra_tier_timeout),
        Strategy("high", high, timeout=settings.high_tier_timeout),
        Strategy("direct", direct, timeout=settings.direct_tier_timeout),
        Strategy("placeholder", placeholder, timeout=settings.placeholder_tier_timeout),
    ]
    next_label = {"ultra": "high quality", "high": "direct transfer", "direct": "placeholder"}

    async def on_failure(name: str, error: Exception):
        logger.error(f"[{session.key}] {TIER_LABELS[name]} failed: {error}")
        if name in next_label:
            await report(0, f"{TIER_LABELS[name]} failed, trying {next_label[name]}...")

    try:
        result = await run_strategies(strategies, on_failure=on_failure)
    except AllStrategiesFailed as e:
        raise FatalIOError(f"No source media could be obtained: {e.last_error}", stage="downloading") from e

    await report(100, "Download complete" if result.name != "placeholder" else "Using placeholder video")
    return AcquisitionResult(artifact=result.value, tier=result.name, failures=result.failures)
