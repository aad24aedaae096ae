"""API routes."""
import logging
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query

from viralshort.api.schemas import (
    ConvertRequest,
    ConvertResponse,
    DurationRequest,
    DurationResponse,
    HealthResponse,
    ProgressResponse,
    VoicesResponse,
)
from viralshort.services.voice_service import ElevenLabsVoiceService, VoiceSynthesisError
from viralshort.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available
from viralshort.utils.ytdlp import YtdlpError, check_ytdlp_available, get_source_duration
from viralshort.workers.pipeline_runner import ShortOptions, pipeline_runner

router = APIRouter()
logger = logging.getLogger(__name__)

voice_service = ElevenLabsVoiceService()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check API health and dependencies."""
    ffmpeg_ok = check_ffmpeg_available()
    ffprobe_ok = check_ffprobe_available()
    ytdlp_ok = check_ytdlp_available()

    all_ok = ffmpeg_ok and ffprobe_ok and ytdlp_ok

    message = None
    if not all_ok:
        missing = []
        if not ffmpeg_ok:
            missing.append("ffmpeg")
        if not ffprobe_ok:
            missing.append("ffprobe")
        if not ytdlp_ok:
            missing.append("yt-dlp")
        message = f"Missing dependencies: {', '.join(missing)}"

    return HealthResponse(
        status="healthy" if all_ok else "degraded",
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        ytdlp_available=ytdlp_ok,
        message=message
    )


@router.post("/video/convert", response_model=ConvertResponse, status_code=202)
async def convert_video(request: ConvertRequest):
    """Start a conversion; progress is polled separately."""
    options = ShortOptions(
        start_time=request.start_time,
        target_duration=request.target_duration,
        editing_style=request.editing_style,
        voice=request.voice,
        language=request.language,
        background_music=request.background_music,
    )
    key = await pipeline_runner.start(request.url, options)
    return ConvertResponse(
        session_key=key,
        progress_url=f"/api/video/progress?url={quote(key, safe='')}",
    )


@router.get("/video/progress", response_model=ProgressResponse)
async def get_progress(url: str = Query(..., description="Source URL used to start the conversion")):
    """Latest progress record; unknown sessions get the default record."""
    record = pipeline_runner.poll(url)
    return ProgressResponse(**record.to_dict())


@router.get("/voices", response_model=VoicesResponse)
async def list_voices():
    """Narration voices available from the voice backend."""
    if not voice_service.is_configured:
        raise HTTPException(status_code=503, detail="Voice API key not configured")
    try:
        voices = await voice_service.list_voices()
    except VoiceSynthesisError as e:
        logger.error(f"Voice listing failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return VoicesResponse(voices=voices)


@router.post("/video/duration", response_model=DurationResponse)
async def get_video_duration(request: DurationRequest):
    """Source length in whole seconds, looked up without downloading."""
    try:
        duration = await get_source_duration(request.url.strip())
    except YtdlpError as e:
        logger.error(f"Duration lookup failed for {request.url}: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to get video duration: {e}")
    return DurationResponse(duration=duration)
