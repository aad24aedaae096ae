"""Data types passed between pipeline stages."""
import enum
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EditingStyle(str, enum.Enum):
    """Framing variant applied by the composition stage."""
    MINIMAL = "minimal"
    DYNAMIC = "dynamic"
    DRAMATIC = "dramatic"


class ArtifactKind(str, enum.Enum):
    RAW = "raw"
    EXTRACTED_SEGMENT = "extracted_segment"
    COMBINED = "combined"
    NARRATED = "narrated"
    SUBTITLED = "subtitled"
    FINAL = "final"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass
class Word:
    word: str
    start: float
    end: float


@dataclass
class TranscriptSegment:
    """A time-bounded span of transcript text."""
    start: float
    end: float
    text: str
    words: List[Word] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def is_valid(self) -> bool:
        return _is_number(self.start) and _is_number(self.end) and self.start < self.end

    @property
    def word_count(self) -> int:
        if self.words:
            return len(self.words)
        return len(self.text.split())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TranscriptSegment"]:
        """Build a segment from backend output, or None when it is malformed."""
        if not isinstance(data, dict):
            return None
        start, end = data.get("start"), data.get("end")
        if not (_is_number(start) and _is_number(end)) or start >= end:
            return None

        words = []
        for entry in data.get("words") or []:
            if not isinstance(entry, dict):
                continue
            w_start, w_end = entry.get("start"), entry.get("end")
            if not (_is_number(w_start) and _is_number(w_end)):
                continue
            words.append(Word(word=str(entry.get("word", "")).strip(), start=float(w_start), end=float(w_end)))

        return cls(start=float(start), end=float(end), text=str(data.get("text") or "").strip(), words=words)


@dataclass
class SelectedSegment:
    """A transcript segment chosen for the highlight, with its importance score."""
    segment: TranscriptSegment
    importance: float

    @property
    def start(self) -> float:
        return self.segment.start

    @property
    def end(self) -> float:
        return self.segment.end

    @property
    def duration(self) -> float:
        return self.segment.duration

    @property
    def text(self) -> str:
        return self.segment.text


@dataclass
class Transcription:
    """Transcription stage output."""
    transcript: str
    segments: List[TranscriptSegment]
    is_placeholder: bool = False
    error: Optional[str] = None  # Why the placeholder was used

    @property
    def has_word_timestamps(self) -> bool:
        return any(segment.words for segment in self.segments)


@dataclass
class SubtitleCue:
    """One subtitle display unit. Times in seconds."""
    start: float
    end: float
    text: str


@dataclass
class MediaArtifact:
    """A media file produced by a stage."""
    path: Path
    kind: ArtifactKind
    validated: bool = False
    duration: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineSession:
    """State of one pipeline run."""
    key: str
    source_url: str
    work_dir: Path
    target_duration: float = 85.0
    editing_style: EditingStyle = EditingStyle.DYNAMIC
    language: str = "fr"
    voice_id: Optional[str] = None
    background_music: Optional[str] = None
    start_offset: float = 0.0
    download_window: float = 180.0
    current_stage: str = "downloading"
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    artifacts: Dict[ArtifactKind, MediaArtifact] = field(default_factory=dict)

    def record_error(self, stage: str, error: Union[Exception, str]) -> None:
        """Remember a non-fatal failure; it surfaces in the final progress message."""
        self.last_error = str(error)
        logger.warning(f"[{self.key}] {stage} degraded: {error}")

    def add_artifact(self, artifact: MediaArtifact) -> MediaArtifact:
        self.artifacts[artifact.kind] = artifact
        return artifact

    def path(self, name: str) -> Path:
        """Path of a file inside the session working directory."""
        return self.work_dir / name
