"""Subtitle stage: cue generation and ASS file writing."""
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .models import SelectedSegment, SubtitleCue, Word
from .script_synthesis import sanitize_script

logger = logging.getLogger(__name__)

MAX_LINE_CHARS = 40
SYNC_OFFSET_SECONDS = 0.5  # Captions lag speech onset slightly
CONTEXT_WORDS = 1
MIN_CUE_SECONDS = 0.05

ASS_HEADER = """[Script Info]
ScriptType: v4.00+
PlayResX: {width}
PlayResY: {height}
WrapStyle: 2
ScaledBorderAndShadow: yes

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Default,Montserrat Bold,78,&H00FFFFFF,&H000000FF,&H00000000,&H00000000,1,0,0,0,100,100,0,0,1,2,0,2,10,10,{margin_v},1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""


def sanitize_cue_text(text: str) -> str:
    """Uppercase text without digits, brackets or braces."""
    return sanitize_script(text).upper()


def format_ass_time(seconds: float) -> str:
    """Format seconds as H:MM:SS.cc."""
    centis = max(0, int(round(seconds * 100)))
    hours, centis = divmod(centis, 360000)
    minutes, centis = divmod(centis, 6000)
    secs, centis = divmod(centis, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def split_into_lines(text: str, max_chars: int = MAX_LINE_CHARS) -> List[str]:
    """Greedily pack words into lines of at most max_chars characters."""
    lines: List[str] = []
    current: List[str] = []
    length = 0
    for word in text.split():
        extra = len(word) + (1 if current else 0)
        if current and length + extra > max_chars:
            lines.append(" ".join(current))
            current, length = [], 0
            extra = len(word)
        current.append(word)
        length += extra
    if current:
        lines.append(" ".join(current))
    return lines


def rebase_words(selection: Sequence[SelectedSegment]) -> List[Word]:
    """Map word timestamps from source time onto the concatenated highlight timeline."""
    rebased: List[Word] = []
    offset = 0.0
    for selected in selection:
        for word in selected.segment.words:
            if word.start < selected.start or word.start >= selected.end:
                continue
            start = offset + (word.start - selected.start)
            end = offset + (min(word.end, selected.end) - selected.start)
            rebased.append(Word(word=word.word, start=start, end=max(end, start)))
        offset += selected.duration
    return rebased


def build_word_timed_cues(
    words: Sequence[Word],
    duration: Optional[float] = None,
    context: int = CONTEXT_WORDS,
) -> List[SubtitleCue]:
    """
    One cue per word, active until the next word starts.

    The displayed text includes `context` neighbouring words on each side.
    Cues never overlap: a word starting together with the next one gets no
    cue of its own and only shows as context.
    """
    ordered = sorted(
        (w for w in words if duration is None or w.start < duration),
        key=lambda w: w.start,
    )
    cues: List[SubtitleCue] = []
    for i, word in enumerate(ordered):
        if not sanitize_cue_text(word.word):
            continue
        last = i + 1 == len(ordered)
        end = word.end if last else ordered[i + 1].start
        if duration is not None:
            end = min(end, duration)
        if last:
            end = max(end, word.start + MIN_CUE_SECONDS)
        elif end <= word.start:
            continue

        window = ordered[max(0, i - context):i + context + 1]
        text = sanitize_cue_text(" ".join(w.word for w in window))
        cues.append(SubtitleCue(start=word.start, end=end, text=text))
    return cues


def build_distributed_cues(
    script: str,
    duration: float,
    max_chars: int = MAX_LINE_CHARS,
    sync_offset: float = SYNC_OFFSET_SECONDS,
) -> List[SubtitleCue]:
    """Spread script lines evenly over the narration duration."""
    lines = split_into_lines(sanitize_cue_text(script), max_chars)
    if not lines or duration <= 0:
        return []

    per_line = duration / len(lines)
    cues = []
    for i, line in enumerate(lines):
        start = i * per_line + sync_offset
        end = start + per_line
        if i == len(lines) - 1:
            end = max(duration, start + MIN_CUE_SECONDS)
        cues.append(SubtitleCue(start=start, end=end, text=line))
    return cues


def build_cues(
    script: str,
    narration_duration: float,
    timed_words: Optional[Sequence[Word]] = None,
) -> Tuple[List[SubtitleCue], str]:
    """
    Choose the cue mode by data availability.

    Returns:
        (cues, mode) where mode is "word_timed" or "distributed"
    """
    if timed_words:
        cues = build_word_timed_cues(timed_words, duration=narration_duration)
        if cues:
            return cues, "word_timed"
        logger.info("No displayable timed words, distributing script lines instead")
    return build_distributed_cues(script, narration_duration), "distributed"


def write_ass_file(
    cues: Sequence[SubtitleCue],
    output_path: Path,
    width: int = 1080,
    height: int = 1920,
) -> Path:
    """Write cues as an Advanced SubStation Alpha file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    lines = [ASS_HEADER.format(width=width, height=height, margin_v=int(height * 0.15))]
    for cue in cues:
        lines.append(
            f"Dialogue: 0,{format_ass_time(cue.start)},{format_ass_time(cue.end)},"
            f"Default,,0,0,0,,{cue.text}\n"
        )

    output_path.write_text("".join(lines), encoding="utf-8")
    logger.info(f"Wrote {len(cues)} subtitle cues to {output_path}")
    return output_path
