"""Pydantic schemas for API requests and responses."""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    ytdlp_available: bool
    message: Optional[str] = None


class ConvertRequest(BaseModel):
    """Request to turn a source video into a short."""
    url: str = Field(..., min_length=1, description="Source video URL")
    start_time: float = Field(0.0, ge=0, description="Offset into the source in seconds")
    target_duration: Optional[float] = Field(None, gt=0, le=180, description="Short length in seconds")
    editing_style: Literal["minimal", "dynamic", "dramatic"] = "dynamic"
    voice: Optional[str] = Field(None, description="Voice identifier for narration")
    language: Optional[str] = Field(None, description="Spoken language code")
    background_music: Optional[str] = Field(None, description="Background track name")


class ConvertResponse(BaseModel):
    """Accepted conversion."""
    session_key: str
    progress_url: str


class ProgressResponse(BaseModel):
    """Latest progress for a session."""
    stage: str
    percent: float
    message: Optional[str] = None
    last_updated: float
    video_url: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None


class VoiceInfo(BaseModel):
    """One narration voice offered by the voice backend."""
    voice_id: str
    name: str
    category: Optional[str] = None
    labels: Dict[str, Any] = Field(default_factory=dict)


class VoicesResponse(BaseModel):
    """Available narration voices."""
    voices: List[VoiceInfo]


class DurationRequest(BaseModel):
    """Request for the length of a source video."""
    url: str = Field(..., min_length=1, description="Source video URL")


class DurationResponse(BaseModel):
    """Source length in whole seconds."""
    duration: int
