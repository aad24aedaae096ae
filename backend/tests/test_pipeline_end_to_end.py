"""End-to-end runs of the pipeline with fake backends."""
import pytest
from fastapi import HTTPException

from viralshort.api import routes
from viralshort.api.schemas import ConvertRequest, DurationRequest
from viralshort.pipeline.orchestrator import PipelineBackends, ShortPipeline
from viralshort.services.speech_service import SpeechToTextError
from viralshort.services.voice_service import VoiceSynthesisError
from viralshort.utils.ffmpeg import FFmpegError
from viralshort.utils.ytdlp import YtdlpError
from viralshort.workers.pipeline_runner import PipelineRunner, ShortOptions
from viralshort.workers.progress_tracker import ProgressStage, ProgressTracker

URL = "https://www.youtube.com/watch?v=e2e"
VALID = b"\x00" * 2048


class _FailingDownloader:
    def __init__(self):
        self.attempts = 0

    async def download_video(self, url, output_dir, **kwargs):
        self.attempts += 1
        raise YtdlpError("yt-dlp failed: Sign in to confirm you're not a bot")

    async def resolve_direct_url(self, url, format_selector=None):
        self.attempts += 1
        raise YtdlpError("yt-dlp -g failed: Requested format is not available")

    async def download_direct(self, media_url, output_path, retries=None, progress_callback=None):
        raise AssertionError("not reached")


class _FakeMedia:
    """Every operation writes a small valid-looking file."""

    def __init__(self, placeholder_error=None, narration_seconds=78.0):
        self.placeholder_error = placeholder_error
        self.narration_seconds = narration_seconds
        self.calls = []

    def _write(self, name, output_path):
        self.calls.append(name)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(VALID)
        return output_path

    async def has_video_stream(self, path):
        return path.exists() and path.stat().st_size >= 1000

    async def probe_duration(self, path):
        return self.narration_seconds

    async def get_video_info(self, path):
        raise AssertionError("downloads never succeed in these runs")

    async def extract_audio(self, video_path, output_path, sample_rate=16000):
        return self._write("extract_audio", output_path)

    async def extract_window(self, source, output_path, start, duration):
        return self._write("extract_window", output_path)

    async def create_placeholder_video(self, output_path, duration, width=None, height=None):
        if self.placeholder_error:
            raise self.placeholder_error
        return self._write("create_placeholder_video", output_path)

    async def create_silent_audio(self, output_path, duration):
        return self._write("create_silent_audio", output_path)

    async def export_compound_clip(self, source, output_path, segments, include_audio=True, progress_callback=None):
        return self._write("export_compound_clip", output_path)

    async def export_clip(self, source, output_path, start, end, progress_callback=None):
        return self._write("export_clip", output_path)

    async def compose_short(self, video, narration, output_path, style, duration,
                            subtitles_path=None, music_path=None, progress_callback=None):
        if progress_callback:
            await progress_callback(50, "Composing: 50%")
        return self._write("compose_short", output_path)

    async def reencode_lenient(self, input_path, output_path):
        return self._write("reencode_lenient", output_path)

    async def reencode_fast(self, input_path, output_path):
        return self._write("reencode_fast", output_path)

    async def remux_copy(self, input_path, output_path):
        return self._write("remux_copy", output_path)


class _RejectingSpeech:
    async def transcribe(self, audio_path, language=None):
        raise SpeechToTextError("Transcription failed (HTTP 400): Invalid file format")


class _Text:
    async def complete(self, system_prompt, user_prompt, temperature=0.5, max_tokens=800):
        return " ".join(["incroyable"] * 210)


class _Voice:
    is_configured = True

    async def synthesize(self, text, output_path, voice_id=None):
        output_path.write_bytes(b"ID3")
        return output_path


async def _no_sleep(delay):
    return None


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "output"
    path.mkdir()
    return path


def make_runner(tmp_path, output_dir, media):
    tracker = ProgressTracker(output_dir=output_dir)
    backends = PipelineBackends(
        media=media,
        downloader=_FailingDownloader(),
        speech=_RejectingSpeech(),
        text=_Text(),
        voice=_Voice(),
    )
    pipeline = ShortPipeline(backends=backends, output_dir=output_dir, music_dir=tmp_path / "music", sleep=_no_sleep)
    return PipelineRunner(tracker=tracker, pipeline=pipeline, work_dir=tmp_path / "work")


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_failed_downloads_still_produce_a_short(self, tmp_path, output_dir):
        media = _FakeMedia()
        runner = make_runner(tmp_path, output_dir, media)

        key = await runner.start(URL + "/", ShortOptions(target_duration=85.0, editing_style="dramatic"))
        assert key == URL
        assert runner.is_running(URL)
        await runner.join(URL)

        record = runner.poll(URL)
        assert record.stage == ProgressStage.COMPLETE
        assert record.percent == 100
        assert record.message.startswith("Video processing complete (Error:")
        assert record.file_name.startswith("viral_short_")
        assert record.download_url.startswith("/api/video/download?path=")
        assert (output_dir / record.file_name).exists()
        assert "create_placeholder_video" in media.calls
        assert "compose_short" in media.calls

        assert not runner.is_running(URL)
        assert list((tmp_path / "work").iterdir()) == []

    @pytest.mark.asyncio
    async def test_fatal_failure_reports_error(self, tmp_path, output_dir):
        media = _FakeMedia(placeholder_error=FFmpegError("Placeholder generation failed: no lavfi"))
        runner = make_runner(tmp_path, output_dir, media)

        await runner.start(URL)
        await runner.join(URL)

        record = runner.poll(URL)
        assert record.stage == ProgressStage.FINALIZING
        assert record.percent == 100
        assert record.message.startswith("Error")
        assert "no lavfi" in record.message
        assert record.file_name is None
        assert list(output_dir.iterdir()) == []
        assert list((tmp_path / "work").iterdir()) == []

    @pytest.mark.asyncio
    async def test_duplicate_start_reuses_running_session(self, tmp_path, output_dir):
        runner = make_runner(tmp_path, output_dir, _FakeMedia())

        first = await runner.start(URL)
        second = await runner.start(" " + URL)
        await runner.join(URL)

        assert first == second
        assert len(list(output_dir.glob("viral_short_*.mp4"))) == 1

    def test_session_options(self, tmp_path, output_dir):
        runner = make_runner(tmp_path, output_dir, _FakeMedia())

        session = runner.create_session(URL, ShortOptions(start_time=-5, language="en", background_music="chill"))

        assert session.start_offset == 0.0
        assert session.language == "en"
        assert session.target_duration == 85.0
        assert session.editing_style.value == "dynamic"
        assert session.work_dir.parent == tmp_path / "work"


class TestRoutes:
    @pytest.mark.asyncio
    async def test_unknown_session_gets_default_progress(self, monkeypatch, tmp_path, output_dir):
        runner = make_runner(tmp_path, output_dir, _FakeMedia())
        monkeypatch.setattr(routes, "pipeline_runner", runner)

        response = await routes.get_progress(url="https://unknown.test/video")

        assert response.stage == "downloading"
        assert response.percent == 0
        assert response.message == "Starting process..."

    @pytest.mark.asyncio
    async def test_convert_then_poll(self, monkeypatch, tmp_path, output_dir):
        runner = make_runner(tmp_path, output_dir, _FakeMedia())
        monkeypatch.setattr(routes, "pipeline_runner", runner)

        accepted = await routes.convert_video(ConvertRequest(url=URL, editing_style="minimal"))
        await runner.join(URL)
        response = await routes.get_progress(url=URL)

        assert accepted.session_key == URL
        assert accepted.progress_url.startswith("/api/video/progress?url=https%3A%2F%2F")
        assert response.stage == "complete"
        assert response.file_name.startswith("viral_short_")

    def test_target_duration_is_bounded(self):
        with pytest.raises(ValueError):
            ConvertRequest(url=URL, target_duration=600)

    @pytest.mark.asyncio
    async def test_list_voices(self, monkeypatch):
        async def fake_list():
            return [{"voice_id": "v1", "name": "Adam", "category": "premade", "labels": {}}]

        monkeypatch.setattr(routes.voice_service, "api_key", "key")
        monkeypatch.setattr(routes.voice_service, "list_voices", fake_list)

        response = await routes.list_voices()

        assert [v.voice_id for v in response.voices] == ["v1"]
        assert response.voices[0].name == "Adam"

    @pytest.mark.asyncio
    async def test_list_voices_without_key(self, monkeypatch):
        monkeypatch.setattr(routes.voice_service, "api_key", "")

        with pytest.raises(HTTPException) as exc_info:
            await routes.list_voices()

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_list_voices_backend_failure(self, monkeypatch):
        async def fake_list():
            raise VoiceSynthesisError("Voice listing failed (HTTP 401): invalid api key")

        monkeypatch.setattr(routes.voice_service, "api_key", "bad")
        monkeypatch.setattr(routes.voice_service, "list_voices", fake_list)

        with pytest.raises(HTTPException) as exc_info:
            await routes.list_voices()

        assert exc_info.value.status_code == 502
        assert "invalid api key" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_video_duration(self, monkeypatch):
        seen = []

        async def fake_duration(url):
            seen.append(url)
            return 212

        monkeypatch.setattr(routes, "get_source_duration", fake_duration)

        response = await routes.get_video_duration(DurationRequest(url=" " + URL))

        assert response.duration == 212
        assert seen == [URL]

    @pytest.mark.asyncio
    async def test_video_duration_failure(self, monkeypatch):
        async def fake_duration(url):
            raise YtdlpError("Failed to get video info: Video unavailable")

        monkeypatch.setattr(routes, "get_source_duration", fake_duration)

        with pytest.raises(HTTPException) as exc_info:
            await routes.get_video_duration(DurationRequest(url=URL))

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail.startswith("Failed to get video duration")

    def test_duration_request_needs_url(self):
        with pytest.raises(ValueError):
            DurationRequest(url="")
