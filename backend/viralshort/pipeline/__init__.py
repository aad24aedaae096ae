# Short pipeline - acquisition to finalized vertical short
"""
Short Pipeline: Narrated Highlight Generation

Stages, each with its own retry/fallback policy:
1. Acquisition: quality-ordered download chain with a placeholder floor
2. Transcription: speech recognition with backoff and a placeholder transcript
3. Segment selection: importance-scored, duration-targeted highlights
4. Script synthesis: length-constrained rewrite with sanitization
5. Narration: text-to-speech, falling back to the clip's own audio
6. Subtitles: word-timed or duration-distributed cues
7. Composition: styled vertical render plus verify/repair chain
"""

from .orchestrator import PipelineBackends, PipelineOutcome, ShortPipeline
from .segment_selector import SelectorConfig, select_segments

__all__ = [
    "PipelineBackends",
    "PipelineOutcome",
    "ShortPipeline",
    "SelectorConfig",
    "select_segments",
]
