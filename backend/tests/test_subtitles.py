"""Tests for subtitle cue generation and narration fallback."""
import re

import pytest

from viralshort.pipeline.models import SelectedSegment, TranscriptSegment, Word
from viralshort.pipeline.narration import synthesize_narration
from viralshort.pipeline.subtitles import (
    SYNC_OFFSET_SECONDS,
    build_cues,
    build_distributed_cues,
    build_word_timed_cues,
    format_ass_time,
    rebase_words,
    split_into_lines,
    write_ass_file,
)
from viralshort.services.voice_service import VoiceSynthesisError

SCRIPT = (
    "Part 1: Ce jour-la, 3 amis ont decide de tout quitter [musique] "
    "pour traverser le desert {a pied} avec seulement 2 bouteilles d'eau. "
    "Personne ne pensait qu'ils y arriveraient, et pourtant..."
)


class TestFormatting:
    def test_ass_time(self):
        assert format_ass_time(3723.456) == "1:02:03.46"
        assert format_ass_time(0) == "0:00:00.00"
        assert format_ass_time(-1) == "0:00:00.00"

    def test_lines_respect_max_chars(self):
        lines = split_into_lines("un deux trois quatre cinq six sept huit neuf dix onze douze", 20)

        assert all(len(line) <= 20 for line in lines)
        assert " ".join(lines).split() == "un deux trois quatre cinq six sept huit neuf dix onze douze".split()


class TestDistributedCues:
    def test_cues_are_clean_ordered_and_offset(self):
        cues = build_distributed_cues(SCRIPT, 30.0)

        assert cues
        for cue in cues:
            assert not re.search(r"[\d\[\]{}()]", cue.text)
            assert cue.text == cue.text.upper()
            assert len(cue.text) <= 40
            assert cue.end > cue.start
        starts = [c.start for c in cues]
        assert starts == sorted(starts)
        assert cues[0].start == pytest.approx(SYNC_OFFSET_SECONDS)
        assert cues[-1].end == pytest.approx(30.0)

    def test_empty_script_gives_no_cues(self):
        assert build_distributed_cues("[42] {}", 10.0) == []

    def test_build_cues_without_words_distributes(self):
        cues, mode = build_cues(SCRIPT, 20.0, timed_words=None)

        assert mode == "distributed"
        assert cues


class TestWordTimedCues:
    def test_each_cue_shows_neighbouring_words(self):
        words = [
            Word("alpha", 0.0, 0.4),
            Word("beta", 0.5, 0.9),
            Word("gamma", 1.0, 1.4),
        ]

        cues = build_word_timed_cues(words)

        assert [c.text for c in cues] == ["ALPHA BETA", "ALPHA BETA GAMMA", "BETA GAMMA"]
        assert cues[0].end == 0.5
        assert cues[1].end == 1.0
        assert cues[2].end == 1.4

    def test_words_past_duration_are_dropped(self):
        words = [Word("un", 0.0, 1.0), Word("deux", 1.0, 2.0), Word("trois", 5.0, 6.0)]

        cues = build_word_timed_cues(words, duration=3.0)

        assert len(cues) == 2
        assert cues[-1].end <= 3.0

    def test_words_sharing_a_start_do_not_overlap(self):
        words = [Word("un", 1.0, 1.0), Word("deux", 1.0, 1.3), Word("trois", 1.3, 1.6)]

        cues = build_word_timed_cues(words)

        assert [(c.start, c.end) for c in cues] == [(1.0, 1.3), (1.3, 1.6)]
        assert cues[0].text == "UN DEUX TROIS"
        for cue, following in zip(cues, cues[1:]):
            assert cue.start < cue.end <= following.start

    def test_zero_length_last_word_gets_minimum_time(self):
        cues = build_word_timed_cues([Word("fin", 2.0, 2.0)])

        assert cues[0].end > cues[0].start

    def test_digit_only_words_are_skipped(self):
        cues = build_word_timed_cues([Word("42", 0.0, 0.5), Word("ans", 0.5, 1.0)])
        assert len(cues) == 1

    def test_build_cues_prefers_timed_words(self):
        cues, mode = build_cues(SCRIPT, 10.0, timed_words=[Word("salut", 0.0, 0.5)])

        assert mode == "word_timed"
        assert cues[0].text == "SALUT"

    def test_rebase_words_onto_highlight_timeline(self):
        first = TranscriptSegment(10.0, 14.0, "a b", words=[Word("a", 10.5, 11.0), Word("b", 13.0, 13.5)])
        second = TranscriptSegment(30.0, 33.0, "c", words=[Word("c", 31.0, 31.5), Word("late", 40.0, 41.0)])
        selection = [SelectedSegment(first, 0.9), SelectedSegment(second, 0.8)]

        rebased = rebase_words(selection)

        assert [w.word for w in rebased] == ["a", "b", "c"]
        assert [w.start for w in rebased] == pytest.approx([0.5, 3.0, 5.0])


class TestAssFile:
    def test_header_and_dialogue_lines(self, tmp_path):
        cues = build_distributed_cues("bonjour a tous", 4.0)
        path = write_ass_file(cues, tmp_path / "subs" / "captions.ass")

        content = path.read_text(encoding="utf-8")
        assert "PlayResX: 1080" in content
        assert "PlayResY: 1920" in content
        assert ",288,1" in content
        dialogue = [line for line in content.splitlines() if line.startswith("Dialogue:")]
        assert len(dialogue) == len(cues)
        assert dialogue[0].endswith("BONJOUR A TOUS")


class _FakeMedia:
    def __init__(self, durations=None, extract_error=None):
        self.durations = durations or {}
        self.extract_error = extract_error
        self.silence = []

    async def probe_duration(self, path):
        return self.durations.get(path.name, 0.0)

    async def extract_audio(self, video_path, output_path, sample_rate=16000):
        if self.extract_error:
            raise self.extract_error
        output_path.write_bytes(b"RIFF")
        return output_path

    async def create_silent_audio(self, output_path, duration):
        self.silence.append(duration)
        output_path.write_bytes(b"RIFF")
        return output_path


class _FakeVoice:
    def __init__(self, error=None, configured=True):
        self.error = error
        self.is_configured = configured

    async def synthesize(self, text, output_path, voice_id=None):
        if self.error:
            raise self.error
        output_path.write_bytes(b"ID3")
        return output_path


class TestNarration:
    @pytest.mark.asyncio
    async def test_synthesized_voice(self, tmp_path):
        media = _FakeMedia({"narration.mp3": 78.2})

        result = await synthesize_narration("script", tmp_path, _FakeVoice(), media, tmp_path / "combined.mp4", 80.0)

        assert result.duration == 78.2
        assert not result.from_source_audio
        assert result.error is None
        assert result.artifact.path.name == "narration.mp3"

    @pytest.mark.asyncio
    async def test_voice_failure_uses_source_audio(self, tmp_path):
        media = _FakeMedia({"narration_source.wav": 81.0})
        voice = _FakeVoice(error=VoiceSynthesisError("Voice synthesis failed (HTTP 401): invalid key"))

        result = await synthesize_narration("script", tmp_path, voice, media, tmp_path / "combined.mp4", 80.0)

        assert result.from_source_audio
        assert result.duration == 81.0
        assert "HTTP 401" in result.error

    @pytest.mark.asyncio
    async def test_unconfigured_voice_skips_synthesis(self, tmp_path):
        media = _FakeMedia({"narration_source.wav": 60.0})

        result = await synthesize_narration(
            "script", tmp_path, _FakeVoice(configured=False), media, tmp_path / "combined.mp4", 80.0
        )

        assert result.from_source_audio
        assert "not configured" in result.error

    @pytest.mark.asyncio
    async def test_no_source_audio_falls_back_to_silence(self, tmp_path):
        media = _FakeMedia(extract_error=RuntimeError("no audio stream"))
        voice = _FakeVoice(error=VoiceSynthesisError("Voice synthesis timed out"))

        result = await synthesize_narration("script", tmp_path, voice, media, tmp_path / "combined.mp4", 42.0)

        assert not result.from_source_audio
        assert result.duration == 42.0
        assert media.silence == [42.0]
