"""yt-dlp utilities for source video download."""
import asyncio
import json
import logging
import math
import re
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from viralshort.config import settings
from viralshort.utils.retry import retry_async

logger = logging.getLogger(__name__)

DIRECT_HTTP_TIMEOUT_SECONDS = 30.0
DIRECT_CHUNK_SIZE = 1024 * 1024

VIDEO_EXTENSIONS = ("mp4", "mkv", "webm", "mov")


class YtdlpError(Exception):
    """yt-dlp related error."""
    pass


def check_ytdlp_available() -> bool:
    """Check if yt-dlp is available."""
    return shutil.which(settings.ytdlp_path) is not None


def cleanup_partials(output_dir: Path) -> None:
    """Remove leftover partial downloads from a previous attempt."""
    output_dir = Path(output_dir)
    if not output_dir.exists():
        return
    for pattern in ("*.part", "*.ytdl"):
        for partial in output_dir.glob(pattern):
            try:
                partial.unlink()
            except OSError as e:
                logger.warning(f"Could not remove partial file {partial}: {e}")


def _find_downloaded_file(output_dir: Path, filename: str) -> Optional[Path]:
    for ext in VIDEO_EXTENSIONS:
        potential_path = output_dir / f"{filename}.{ext}"
        # Make sure it's not a partial file
        if potential_path.exists() and potential_path.stat().st_size > 1000:
            return potential_path
    return None


async def download_video(
    url: str,
    output_dir: Path,
    filename: str = "source",
    format_selector: str = "bv*[ext=mp4]+ba[ext=m4a]/bv*[ext=mp4]+ba/bv*+ba/bv*",
    extra_args: Optional[List[str]] = None,
    section: Optional[Tuple[float, float]] = None,
    progress_callback=None,
    silence_timeout: Optional[float] = None,
) -> Path:
    """
    Download a video with yt-dlp.

    Args:
        url: Source URL
        output_dir: Directory to save the video
        filename: Base filename without extension
        format_selector: yt-dlp `-f` expression
        extra_args: Additional yt-dlp arguments (format sort, fragments...)
        section: Optional (start, end) window in seconds
        progress_callback: Optional async callback(progress: float, message: str)
        silence_timeout: Seconds without output before a synthetic progress step

    Returns:
        Path to downloaded video file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    silence_timeout = silence_timeout or settings.download_silence_seconds

    cleanup_partials(output_dir)

    output_template = str(output_dir / f"{filename}.%(ext)s")

    cmd = [
        settings.ytdlp_path,
        "-f", format_selector,
        "--merge-output-format", "mp4",
        "-o", output_template,
        "--no-playlist",
        "--progress",
        "--newline",
        "--force-overwrites",
    ]
    if section is not None:
        start, end = section
        cmd += ["--download-sections", f"*{start:.0f}-{end:.0f}"]
    if extra_args:
        cmd += list(extra_args)
    cmd.append(url)

    logger.info(f"Running yt-dlp command: {' '.join(cmd)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT
        )
    except FileNotFoundError as e:
        raise YtdlpError(f"yt-dlp not found at {settings.ytdlp_path}") from e

    merged_path: Optional[Path] = None
    downloaded_path: Optional[Path] = None
    output_lines = []
    last_progress = 0.0

    try:
        while True:
            try:
                line = await asyncio.wait_for(proc.stdout.readline(), timeout=silence_timeout)
            except asyncio.TimeoutError:
                # Tool is silent: keep the caller alive with a small synthetic step
                if progress_callback:
                    last_progress = min(last_progress + 2, 85)
                    await progress_callback(last_progress, "Downloading (no progress output)...")
                continue

            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            output_lines.append(line_str)

            if progress_callback:
                # Match download progress like "[download]  50.0% of 123.45MiB"
                progress_match = re.search(r"\[download\]\s+(\d+\.?\d*)%", line_str)
                if progress_match:
                    progress = float(progress_match.group(1))
                    last_progress = max(last_progress, progress * 0.9)  # Leave room for merge
                    await progress_callback(last_progress, f"Downloading: {progress:.1f}%")
                elif "Merging formats" in line_str:
                    await progress_callback(90, "Merging formats...")
                elif "[Merger]" in line_str:
                    await progress_callback(92, "Merging video and audio...")

            if "Merging formats into" in line_str:
                merge_match = re.search(r'Merging formats into "(.+)"', line_str)
                if merge_match:
                    merged_path = Path(merge_match.group(1))
            elif "Destination:" in line_str:
                dest_match = re.search(r"Destination:\s+(.+)", line_str)
                if dest_match:
                    downloaded_path = Path(dest_match.group(1))

        await proc.wait()
    except asyncio.CancelledError:
        # Tier timeout: do not leave the tool running
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        cleanup_partials(output_dir)
        raise

    if proc.returncode != 0:
        logger.error("yt-dlp failed with output:\n" + "\n".join(output_lines[-20:]))
        cleanup_partials(output_dir)
        raise YtdlpError(f"Download failed (exit code {proc.returncode})")

    if merged_path and merged_path.exists():
        final_path = merged_path
    elif downloaded_path and downloaded_path.exists() and downloaded_path.suffix.lstrip(".") in VIDEO_EXTENSIONS:
        final_path = downloaded_path
    else:
        final_path = _find_downloaded_file(output_dir, filename)

    if not final_path:
        logger.error(f"No video file found in {output_dir}. Last yt-dlp output:\n" + "\n".join(output_lines[-20:]))
        raise YtdlpError("Download completed but video file not found")

    if progress_callback:
        await progress_callback(95, "Verifying download...")

    logger.info(f"Downloaded {url} to {final_path}")
    return final_path


async def get_video_info_ytdlp(url: str) -> dict:
    """
    Get source video information without downloading.

    Args:
        url: Source video URL

    Returns:
        Dictionary with video metadata (yt-dlp `--dump-json` output)
    """
    cmd = [
        settings.ytdlp_path,
        "--dump-json",
        "--no-download",
        "--no-playlist",
        url
    ]

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise YtdlpError(f"yt-dlp not found at {settings.ytdlp_path}") from e

    stdout, stderr = await proc.communicate()

    if proc.returncode != 0:
        error_msg = stderr.decode(errors="ignore")[-500:]
        raise YtdlpError(f"Failed to get video info: {error_msg}")

    try:
        return json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise YtdlpError(f"Failed to parse video info: {e}") from e


async def get_source_duration(url: str) -> int:
    """Source length in whole seconds (rounded down)."""
    info = await get_video_info_ytdlp(url)
    duration = info.get("duration")
    if not isinstance(duration, (int, float)) or duration < 0:
        raise YtdlpError("Source reports no duration")
    return math.floor(duration)


async def resolve_direct_url(url: str, format_selector: str = "b[ext=mp4]/b") -> str:
    """Ask yt-dlp for a direct media URL (`-g`) without downloading."""
    cmd = [
        settings.ytdlp_path,
        "-g",
        "-f", format_selector,
        "--no-playlist",
        url
    ]

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise YtdlpError(f"yt-dlp not found at {settings.ytdlp_path}") from e

    stdout, stderr = await proc.communicate()

    if proc.returncode != 0:
        raise YtdlpError(f"Failed to resolve direct URL: {stderr.decode(errors='ignore')[-500:]}")

    urls = [line.strip() for line in stdout.decode().splitlines() if line.strip()]
    if not urls:
        raise YtdlpError("yt-dlp returned no direct URL")
    return urls[0]


def is_transient_transfer_error(error: Exception) -> bool:
    """Network failures and 5xx/429 responses are worth another attempt."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


async def download_direct(
    media_url: str,
    output_path: Path,
    retries: int = None,
    progress_callback=None,
    sleep=asyncio.sleep,
) -> Path:
    """
    Stream a direct media URL to disk.

    Args:
        media_url: URL returned by resolve_direct_url
        output_path: Destination file
        retries: Total transfer attempts
        progress_callback: Optional async callback(progress: float, message: str)

    Returns:
        Path to the written file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    retries = retries or settings.direct_transfer_retries

    async def transfer() -> Path:
        timeout = httpx.Timeout(None, connect=DIRECT_HTTP_TIMEOUT_SECONDS, read=DIRECT_HTTP_TIMEOUT_SECONDS)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", media_url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or 0)
                received = 0
                last_reported = 0.0
                with open(output_path, "wb") as f:
                    async for chunk in response.aiter_bytes(DIRECT_CHUNK_SIZE):
                        f.write(chunk)
                        received += len(chunk)
                        if progress_callback and total:
                            progress = min(100.0, received * 100 / total)
                            if progress - last_reported >= 5:
                                await progress_callback(progress, f"Transferring: {progress:.0f}%")
                                last_reported = progress
        return output_path

    try:
        await retry_async(
            transfer,
            is_retryable=is_transient_transfer_error,
            max_attempts=retries,
            sleep=sleep,
            description="Direct transfer",
        )
    except httpx.HTTPError as e:
        output_path.unlink(missing_ok=True)
        raise YtdlpError(f"Direct transfer failed: {e}") from e

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise YtdlpError("Direct transfer produced an empty file")

    return output_path
