"""Application configuration."""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # App settings
    app_name: str = "ViralShort"
    debug: bool = True

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Database (diagnostic progress log)
    database_url: str = "sqlite+aiosqlite:///./data/viralshort.db"

    # Data directories
    data_dir: Path = Path("./data")
    work_dir: Path = Path("./data/work")  # One subdirectory per session, deleted at run end
    output_dir: Path = Path("./data/output")  # Final shorts only
    music_dir: Path = Path("./data/music")  # Background tracks, <name>.mp3

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # yt-dlp settings
    ytdlp_path: str = "yt-dlp"

    # Pipeline defaults
    target_duration: float = 85.0  # 1min25 short
    download_window_seconds: float = 180.0  # Margin of source content to fetch
    default_language: str = "fr"
    default_voice_id: str = "pNInz6obpgDQGcFmaJgB"
    min_source_height: int = 720  # Below this, the ultra tier counts as failed
    output_width: int = 1080
    output_height: int = 1920

    # Acquisition tier timeouts (seconds)
    ultra_tier_timeout: float = 240.0
    high_tier_timeout: float = 300.0
    direct_tier_timeout: float = 300.0
    placeholder_tier_timeout: float = 60.0
    download_silence_seconds: float = 8.0
    direct_transfer_retries: int = 3

    # Transcription
    transcription_budget_seconds: float = 300.0
    transcription_sample_rate: int = 16000

    # Backends (OpenAI-compatible speech + chat, ElevenLabs voice)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"
    script_model: str = "gpt-4o-mini"
    script_timeout_seconds: float = 60.0
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    voice_timeout_seconds: float = 120.0

    # Export settings
    export_video_codec: str = "libx264"
    export_video_preset: str = "veryfast"
    export_video_crf: int = 18
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "192k"
    background_music_volume: float = 0.15

    # Composition timeouts (seconds, per attempt)
    extract_timeout_seconds: float = 600.0  # Highlight cut and concatenation
    compose_timeout_seconds: float = 900.0  # Final mux with filters
    repair_timeout_seconds: float = 600.0  # Each re-encode or remux repair

    # Progress tracking
    progress_sweep_interval_seconds: float = 15.0
    artifact_url_prefix: str = "/api/video"


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.work_dir.mkdir(parents=True, exist_ok=True)
settings.output_dir.mkdir(parents=True, exist_ok=True)
settings.music_dir.mkdir(parents=True, exist_ok=True)
