"""Importance-scored, duration-targeted transcript segment selection.

Source transcripts rarely come as clean, evenly spaced segments, so the
selection degrades through several tiers instead of failing:

1. Keep segments between min and max duration.
2. Too few survivors: admit shorter segments and split long ones.
3. Still nothing: any segment with valid timestamps, else a synthetic one.
4. Score, keep the top candidates, accumulate chronologically with an
   overlap limit until the target duration is reached.
5. Short of target: drop the overlap limit, then pull from the original pool.
"""
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import SelectedSegment, TranscriptSegment

logger = logging.getLogger(__name__)


@dataclass
class SelectorConfig:
    """Thresholds and weights for segment selection."""

    # Duration filter
    min_segment_seconds: float = 3.0
    max_segment_seconds: float = 25.0
    relaxed_min_seconds: float = 1.5  # Admitted when the pool is sparse
    split_chunk_seconds: float = 10.0  # Long segments are cut into ~10s pieces
    min_valid_segments: int = 8

    # Importance score
    ideal_duration: float = 7.5
    duration_tolerance: float = 5.0
    words_norm: int = 20
    duration_weight: float = 0.6
    words_weight: float = 0.4

    # Accumulation
    top_k: int = 30
    max_overlap_seconds: float = 1.0
    relax_overlap_ratio: float = 0.7  # Below this share of target, overlap is allowed
    original_pool_ratio: float = 0.5  # Below this share, unfiltered segments are used
    upper_tolerance: float = 1.1  # Normal tiers never exceed 110% of target


def calculate_importance_score(segment: TranscriptSegment, config: Optional[SelectorConfig] = None) -> float:
    """
    Score a segment in [0, 1].

    Rewards durations close to the ideal pacing length and dense speech.
    """
    config = config or SelectorConfig()
    duration_term = max(0.0, 1 - abs(config.ideal_duration - segment.duration) / config.duration_tolerance)
    words_term = min(1.0, segment.word_count / config.words_norm)
    return config.duration_weight * duration_term + config.words_weight * words_term


def split_long_segment(segment: TranscriptSegment, chunk_seconds: float = 10.0) -> List[TranscriptSegment]:
    """Split a segment into roughly equal pieces of about chunk_seconds."""
    pieces = max(1, math.ceil(segment.duration / chunk_seconds))
    if pieces == 1:
        return [segment]

    length = segment.duration / pieces
    result = []
    for i in range(pieces):
        start = segment.start + i * length
        end = segment.end if i == pieces - 1 else start + length
        words = [w for w in segment.words if w.start >= start and w.end <= end]
        result.append(TranscriptSegment(start=start, end=end, text=segment.text, words=words))
    return result


def overlap_seconds(a, b) -> float:
    return max(0.0, min(a.end, b.end) - max(a.start, b.start))


def synthetic_segment(target_duration: float) -> SelectedSegment:
    return SelectedSegment(
        segment=TranscriptSegment(start=0.0, end=float(target_duration), text=""),
        importance=0.0,
    )


def _candidates(valid: List[TranscriptSegment], config: SelectorConfig) -> List[TranscriptSegment]:
    candidates = [
        s for s in valid
        if config.min_segment_seconds <= s.duration <= config.max_segment_seconds
    ]
    if len(candidates) >= config.min_valid_segments:
        return candidates

    logger.info(
        f"Only {len(candidates)} segments within "
        f"{config.min_segment_seconds}-{config.max_segment_seconds}s, relaxing filter"
    )
    relaxed: List[TranscriptSegment] = []
    for segment in valid:
        if segment.duration > config.max_segment_seconds:
            relaxed.extend(split_long_segment(segment, config.split_chunk_seconds))
        elif segment.duration >= config.relaxed_min_seconds:
            relaxed.append(segment)
    relaxed.sort(key=lambda s: s.start)
    return relaxed


def _accumulate(
    selected: List[SelectedSegment],
    pool: Iterable[SelectedSegment],
    total: float,
    target: float,
    cap: Optional[float],
    max_overlap: Optional[float],
) -> float:
    for candidate in pool:
        if total >= target:
            break
        if any(candidate is s for s in selected):
            continue
        if cap is not None and total + candidate.duration > cap:
            continue
        if max_overlap is not None and any(
            overlap_seconds(candidate, s) > max_overlap for s in selected
        ):
            continue
        selected.append(candidate)
        total += candidate.duration
    return total


def select_segments(
    segments: List[TranscriptSegment],
    target_duration: float,
    config: Optional[SelectorConfig] = None,
) -> List[SelectedSegment]:
    """
    Pick segments summing to roughly target_duration.

    Args:
        segments: Transcript segments, possibly malformed or unordered
        target_duration: Desired total duration in seconds
        config: Selection thresholds

    Returns:
        Non-empty list of SelectedSegment sorted by start
    """
    config = config or SelectorConfig()
    valid = sorted((s for s in segments if s.is_valid), key=lambda s: s.start)

    candidates = _candidates(valid, config)
    if not candidates:
        candidates = list(valid)
    if not candidates:
        logger.warning("No usable transcript segments, using a synthetic segment")
        return [synthetic_segment(target_duration)]

    scored = [SelectedSegment(segment=s, importance=calculate_importance_score(s, config)) for s in candidates]
    top = sorted(scored, key=lambda s: s.importance, reverse=True)[:config.top_k]
    top.sort(key=lambda s: s.start)

    cap = target_duration * config.upper_tolerance
    selected: List[SelectedSegment] = []
    total = _accumulate(selected, top, 0.0, target_duration, cap, config.max_overlap_seconds)

    if total < target_duration * config.relax_overlap_ratio:
        logger.info(f"Selection at {total:.1f}s, allowing overlapping segments")
        total = _accumulate(selected, top, total, target_duration, cap, None)

    if total < target_duration * config.original_pool_ratio:
        logger.info(f"Selection at {total:.1f}s, pulling from the unfiltered pool")
        used = {(s.start, s.end) for s in selected}
        extra = [
            SelectedSegment(segment=s, importance=calculate_importance_score(s, config))
            for s in valid
            if (s.start, s.end) not in used
        ]
        total = _accumulate(selected, extra, total, target_duration, None, None)

    if not selected:
        return [synthetic_segment(target_duration)]

    selected.sort(key=lambda s: s.start)
    logger.info(
        f"Selected {len(selected)} segments totalling {total:.1f}s "
        f"(target {target_duration:.1f}s) from {len(segments)} input segments"
    )
    return selected


def total_duration(selection: List[SelectedSegment]) -> float:
    return sum(s.duration for s in selection)
