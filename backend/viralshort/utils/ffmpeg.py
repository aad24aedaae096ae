"""FFmpeg and ffprobe utilities."""
import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from viralshort.config import settings

logger = logging.getLogger(__name__)

# Files smaller than this are treated as broken output
MIN_VALID_FILE_BYTES = 1000


@dataclass
class VideoInfo:
    """Video metadata container."""
    duration: float
    width: int
    height: int
    fps: float
    video_codec: str
    audio_codec: Optional[str]
    format_name: str
    bit_rate: Optional[int]


class FFmpegError(Exception):
    """FFmpeg related error."""
    pass


def check_ffmpeg_available() -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(settings.ffmpeg_path) is not None


def check_ffprobe_available() -> bool:
    """Check if ffprobe is available."""
    return shutil.which(settings.ffprobe_path) is not None


async def _kill(proc) -> None:
    """Stop a media tool that is still running."""
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def _run(cmd: List[str], description: str) -> bytes:
    """Run a media tool command, raising FFmpegError with the stderr tail on failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise FFmpegError(f"{description} failed: {cmd[0]} not found") from e

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        # Strategy timeout: do not leave ffmpeg running
        await _kill(proc)
        raise

    if proc.returncode != 0:
        tail = stderr.decode("utf-8", errors="ignore")[-2000:]
        raise FFmpegError(f"{description} failed: {tail}")

    return stdout


async def _run_with_progress(
    cmd: List[str],
    total_duration: float,
    description: str,
    progress_callback=None,
) -> None:
    """Run ffmpeg with `-progress pipe:1` and forward percentage updates."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    stderr_task = asyncio.create_task(proc.stderr.read())

    try:
        last_progress = 0
        while True:
            line = await proc.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            if progress_callback and total_duration > 0 and line_str.startswith("out_time_ms="):
                try:
                    out_time_us = int(line_str.split("=")[1])
                    out_time_s = out_time_us / 1_000_000
                    progress = min(100, (out_time_s / total_duration) * 100)
                    if progress - last_progress >= 1:
                        await progress_callback(progress)
                        last_progress = progress
                except (ValueError, IndexError):
                    pass

        await proc.wait()
        stderr = await stderr_task
    except asyncio.CancelledError:
        stderr_task.cancel()
        await _kill(proc)
        raise

    if proc.returncode != 0:
        raise FFmpegError(f"{description} failed: {stderr.decode('utf-8', errors='ignore')[-2000:]}")


async def get_video_info(video_path: str | Path) -> VideoInfo:
    """
    Get video metadata using ffprobe.

    Args:
        video_path: Path to video file

    Returns:
        VideoInfo with video metadata

    Raises:
        FFmpegError: If ffprobe fails
    """
    video_path = Path(video_path)
    if not video_path.exists():
        raise FFmpegError(f"Video file not found: {video_path}")

    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video_path)
    ]

    stdout = await _run(cmd, "ffprobe")

    try:
        data = json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise FFmpegError(f"Failed to parse ffprobe output: {e}")

    # Find video stream
    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise FFmpegError("No video stream found")

    # Parse frame rate
    fps_str = video_stream.get("r_frame_rate", "30/1")
    if "/" in fps_str:
        num, den = fps_str.split("/")
        fps = float(num) / float(den) if float(den) > 0 else 30.0
    else:
        fps = float(fps_str)

    # Get duration
    duration = float(data.get("format", {}).get("duration", 0) or 0)
    if duration == 0:
        duration = float(video_stream.get("duration", 0) or 0)

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=fps,
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        format_name=data.get("format", {}).get("format_name", "unknown"),
        bit_rate=int(data.get("format", {}).get("bit_rate", 0) or 0) or None
    )


async def probe_duration(media_path: str | Path) -> float:
    """Measure a media file's duration in seconds."""
    media_path = Path(media_path)
    if not media_path.exists():
        raise FFmpegError(f"Media file not found: {media_path}")

    cmd = [
        settings.ffprobe_path,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(media_path)
    ]
    stdout = await _run(cmd, "Duration probe")

    try:
        return float(stdout.decode().strip())
    except ValueError:
        raise FFmpegError(f"Unreadable duration for {media_path}: {stdout!r}")


async def has_video_stream(video_path: str | Path) -> bool:
    """
    Check that a file exists, is not truncated and has a decodable video stream.
    """
    video_path = Path(video_path)
    if not video_path.exists():
        logger.error(f"Video file does not exist: {video_path}")
        return False

    size = video_path.stat().st_size
    if size < MIN_VALID_FILE_BYTES:
        logger.error(f"Video file is too small ({size} bytes): {video_path}")
        return False

    cmd = [
        settings.ffprobe_path,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=codec_name,width,height",
        "-of", "json",
        str(video_path)
    ]
    try:
        stdout = await _run(cmd, "Stream probe")
        data = json.loads(stdout.decode() or "{}")
    except (FFmpegError, json.JSONDecodeError) as e:
        logger.error(f"Video validation failed for {video_path}: {e}")
        return False

    valid = bool(data.get("streams"))
    logger.info(f"Video validation result for {video_path}: {'Valid' if valid else 'Invalid'}")
    return valid


async def extract_audio(
    video_path: str | Path,
    output_path: str | Path,
    sample_rate: int = 16000,
) -> Path:
    """Extract a mono PCM WAV track for speech recognition."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-y",
        "-i", str(video_path),
        "-vn",
        "-acodec", "pcm_s16le",
        "-ar", str(sample_rate),
        "-ac", "1",
        str(output_path)
    ]
    await _run(cmd, "Audio extraction")
    return output_path


async def extract_window(
    source_path: str | Path,
    output_path: str | Path,
    start_time: float,
    duration: Optional[float] = None,
) -> Path:
    """Cut [start, start + duration] out of a full download without re-encoding video."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-i", str(source_path),
        "-ss", str(start_time),
    ]
    if duration:
        cmd += ["-t", str(duration)]
    cmd += [
        "-c:v", "copy",
        "-c:a", "aac",
        str(output_path)
    ]
    await _run(cmd, "Window extraction")
    return output_path


async def create_placeholder_video(
    output_path: str | Path,
    duration: float,
    width: int = None,
    height: int = None,
) -> Path:
    """Write a black video with a silent audio track."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    width = width or settings.output_width
    height = height or settings.output_height

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-f", "lavfi",
        "-i", f"color=c=black:s={width}x{height}:r=30:d={duration}",
        "-f", "lavfi",
        "-i", "anullsrc=r=48000:cl=stereo",
        "-t", str(duration),
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-shortest",
        str(output_path)
    ]
    await _run(cmd, "Placeholder generation")
    return output_path


async def create_silent_audio(output_path: str | Path, duration: float) -> Path:
    """Write a silent stereo WAV of the given duration."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-f", "lavfi",
        "-i", "anullsrc=r=48000:cl=stereo",
        "-t", str(duration),
        "-acodec", "pcm_s16le",
        str(output_path)
    ]
    await _run(cmd, "Silence generation")
    return output_path


async def export_clip(
    source_path: str | Path,
    output_path: str | Path,
    start_time: float,
    end_time: float,
    progress_callback=None
) -> Path:
    """
    Export a clip from the source video.

    Args:
        source_path: Path to source video
        output_path: Path for output file
        start_time: Start time in seconds
        end_time: End time in seconds
        progress_callback: Optional async callback(progress: float)

    Returns:
        Path to exported clip
    """
    source_path = Path(source_path)
    output_path = Path(output_path)

    # Ensure output directory exists
    output_path.parent.mkdir(parents=True, exist_ok=True)

    duration = end_time - start_time

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", str(start_time),
        "-i", str(source_path),
        "-t", str(duration),
        "-c:v", settings.export_video_codec,
        "-preset", settings.export_video_preset,
        "-crf", str(settings.export_video_crf),
        "-c:a", settings.export_audio_codec,
        "-b:a", settings.export_audio_bitrate,
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        str(output_path)
    ]

    await _run_with_progress(cmd, duration, "Export", progress_callback)
    return output_path


async def export_compound_clip(
    source_path: str | Path,
    output_path: str | Path,
    segments: List[Tuple[float, float]],
    include_audio: bool = True,
    progress_callback=None
) -> Path:
    """
    Export a compound clip by concatenating multiple segments.

    Args:
        source_path: Path to source video
        output_path: Path for output file
        segments: List of (start_time, end_time) tuples
        include_audio: Whether the source has an audio stream to carry over
        progress_callback: Optional async callback(progress: float)

    Returns:
        Path to exported clip
    """
    source_path = Path(source_path)
    output_path = Path(output_path)

    output_path.parent.mkdir(parents=True, exist_ok=True)

    if not segments:
        raise FFmpegError("No segments to export")

    # Build filter complex for the segments
    filter_parts = []
    concat_inputs = []

    for i, (start, end) in enumerate(segments):
        part = f"[0:v]trim=start={start}:end={end},setpts=PTS-STARTPTS[v{i}]"
        if include_audio:
            part += f";[0:a]atrim=start={start}:end={end},asetpts=PTS-STARTPTS[a{i}]"
            concat_inputs.append(f"[v{i}][a{i}]")
        else:
            concat_inputs.append(f"[v{i}]")
        filter_parts.append(part)

    audio_streams = 1 if include_audio else 0
    filter_complex = ";".join(filter_parts)
    filter_complex += f";{''.join(concat_inputs)}concat=n={len(segments)}:v=1:a={audio_streams}[outv]"
    if include_audio:
        filter_complex += "[outa]"

    total_duration = sum(end - start for start, end in segments)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-i", str(source_path),
        "-filter_complex", filter_complex,
        "-map", "[outv]",
    ]
    if include_audio:
        cmd += ["-map", "[outa]"]
    cmd += [
        "-c:v", settings.export_video_codec,
        "-preset", settings.export_video_preset,
        "-crf", str(settings.export_video_crf),
        "-c:a", settings.export_audio_codec,
        "-b:a", settings.export_audio_bitrate,
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        str(output_path)
    ]

    await _run_with_progress(cmd, total_duration, "Compound export", progress_callback)
    return output_path


def escape_filter_path(path: str | Path) -> str:
    """Escape a file path for use inside a filtergraph argument."""
    return (
        str(path)
        .replace("\\", "/")
        .replace(":", "\\:")
        .replace("'", "\\'")
    )


def build_style_filter(style: str, width: int, height: int) -> Tuple[str, str]:
    """
    Build the framing filtergraph for an editing style.

    Returns:
        (filtergraph reading [0:v], output label)
    """
    label = "styled"

    if style == "minimal":
        # Blurred full-frame background with the uncropped frame inset on top
        filtergraph = (
            f"[0:v]split=2[base][top];"
            f"[base]scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},gblur=sigma=50:steps=6[blurred];"
            f"[top]scale={width}:{height}:force_original_aspect_ratio=decrease[inset];"
            f"[blurred][inset]overlay=(W-w)/2:(H-h)/2,setsar=1[{label}]"
        )
    elif style == "dramatic":
        over_w = int(round(width * 1.2 / 2)) * 2
        over_h = int(round(height * 1.2 / 2)) * 2
        filtergraph = (
            f"[0:v]scale={over_w}:{over_h}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},eq=contrast=1.15:saturation=1.1,"
            f"unsharp=5:5:1.0,setsar=1[{label}]"
        )
    else:
        # dynamic: direct fill crop
        filtergraph = (
            f"[0:v]scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},setsar=1[{label}]"
        )

    return filtergraph, label


def build_compose_command(
    video_path: str | Path,
    narration_path: str | Path,
    output_path: str | Path,
    style: str,
    duration: float,
    subtitles_path: Optional[str | Path] = None,
    music_path: Optional[str | Path] = None,
    music_volume: float = None,
    width: int = None,
    height: int = None,
) -> List[str]:
    """Build the ffmpeg invocation muxing styled video, subtitles, narration and music."""
    width = width or settings.output_width
    height = height or settings.output_height
    music_volume = settings.background_music_volume if music_volume is None else music_volume

    style_graph, label = build_style_filter(style, width, height)
    graph = [style_graph]

    video_label = label
    if subtitles_path:
        graph.append(
            f"[{label}]subtitles='{escape_filter_path(subtitles_path)}':"
            f"original_size={width}x{height}[subbed]"
        )
        video_label = "subbed"
    graph.append(f"[{video_label}]format=yuv420p[v]")

    cmd = [
        settings.ffmpeg_path,
        "-y",
        # Loop the picture so it always covers the narration
        "-stream_loop", "-1",
        "-i", str(video_path),
        "-i", str(narration_path),
    ]

    if music_path:
        cmd += ["-stream_loop", "-1", "-i", str(music_path)]
        graph.append(
            f"[1:a]volume=1.0[voice];[2:a]volume={music_volume}[music];"
            f"[voice][music]amix=inputs=2:duration=first:dropout_transition=2[a]"
        )
        audio_map = "[a]"
    else:
        audio_map = "1:a"

    cmd += [
        "-filter_complex", ";".join(graph),
        "-map", "[v]",
        "-map", audio_map,
        "-t", f"{duration:.3f}",
        "-c:v", settings.export_video_codec,
        "-preset", settings.export_video_preset,
        "-crf", str(settings.export_video_crf),
        "-c:a", settings.export_audio_codec,
        "-b:a", settings.export_audio_bitrate,
        "-ar", "48000",
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        str(output_path)
    ]
    return cmd


async def compose_short(
    video_path: str | Path,
    narration_path: str | Path,
    output_path: str | Path,
    style: str,
    duration: float,
    subtitles_path: Optional[str | Path] = None,
    music_path: Optional[str | Path] = None,
    progress_callback=None,
) -> Path:
    """Render the vertical short: framing, burned subtitles, narration, optional music."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = build_compose_command(
        video_path, narration_path, output_path, style, duration,
        subtitles_path=subtitles_path,
        music_path=music_path,
    )
    logger.info(f"Composing short with style '{style}' ({duration:.1f}s)")
    await _run_with_progress(cmd, duration, "Composition", progress_callback)
    return output_path


async def reencode_lenient(input_path: str | Path, output_path: str | Path) -> Path:
    """Re-encode while ignoring minor decode errors."""
    cmd = [
        settings.ffmpeg_path,
        "-err_detect", "ignore_err",
        "-i", str(input_path),
        "-c:v", "libx264",
        "-preset", "medium",
        "-crf", "23",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        "-y",
        str(output_path)
    ]
    await _run(cmd, "Lenient re-encode")
    return Path(output_path)


async def reencode_fast(input_path: str | Path, output_path: str | Path) -> Path:
    """Fast, lower-quality re-encode."""
    cmd = [
        settings.ffmpeg_path,
        "-i", str(input_path),
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-crf", "28",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        "-y",
        str(output_path)
    ]
    await _run(cmd, "Fast re-encode")
    return Path(output_path)


async def remux_copy(input_path: str | Path, output_path: str | Path) -> Path:
    """Copy streams into a fresh container without re-encoding."""
    cmd = [
        settings.ffmpeg_path,
        "-i", str(input_path),
        "-c", "copy",
        "-movflags", "+faststart",
        "-y",
        str(output_path)
    ]
    await _run(cmd, "Stream copy")
    return Path(output_path)
