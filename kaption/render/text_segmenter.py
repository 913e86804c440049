"""Caption segmentation from word-level timings.

Packs a sentence's words into single-line segments that fit a given width,
then normalizes each segment's display duration for readability:

1. Trim tokens and drop empty ones
2. Split tokens wider than the line into fitting character runs
3. Greedily pack tokens into lines
4. Time each line from its first and last word
5. Clamp durations by reading speed, keep a gap before the next line and
   stay inside the sentence window

Width measurement is injected, so segmentation itself does no font work.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from kaption.config import get_settings
from kaption.schemas.caption import CaptionCue, WordTiming

logger = logging.getLogger(__name__)

MeasureWidth = Callable[[str], float]


@dataclass(frozen=True)
class TimedSegment:
    """A single caption line with its timing and words."""

    text: str
    start: float
    end: float
    words: tuple[WordTiming, ...] = ()

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "start": self.start,
            "end": self.end,
            "words": [w.model_dump() for w in self.words],
        }


@dataclass
class _Stats:
    splits: int = 0
    line_breaks: int = 0
    duration_adjusted: int = 0
    details: list[str] = field(default_factory=list)


def visible_char_count(text: str) -> int:
    """Characters excluding whitespace."""
    return sum(1 for ch in text if not ch.isspace())


def normalize_words(words: list[WordTiming]) -> list[WordTiming]:
    """Trim each token and drop tokens that were pure whitespace."""
    out = []
    for w in words:
        text = w.text.strip()
        if text:
            out.append(WordTiming(text=text, start=w.start, end=w.end))
    return out


def explode_word(
    word: WordTiming,
    max_width: float,
    measure_width: MeasureWidth,
) -> list[WordTiming]:
    """Split a token wider than ``max_width`` into fitting character runs.

    Every run holds at least one character, so a single glyph wider than the
    line still makes progress. The word's duration is shared by character
    count and the last run ends exactly at the word's end.
    """
    if measure_width(word.text) <= max_width:
        return [word]

    parts: list[str] = []
    current = ""
    for ch in word.text:
        candidate = current + ch
        if measure_width(candidate) <= max_width or not current:
            current = candidate
        else:
            parts.append(current)
            current = ch
    if current:
        parts.append(current)

    total_chars = max(1, len(word.text))
    total_duration = word.end - word.start
    result = []
    acc_start = word.start
    for i, part in enumerate(parts):
        duration = total_duration * len(part) / total_chars
        end = word.end if i == len(parts) - 1 else min(acc_start + duration, word.end)
        result.append(WordTiming(text=part, start=acc_start, end=end))
        acc_start = end
    return result


def pack_lines(
    words: list[WordTiming],
    max_width: float,
    measure_width: MeasureWidth,
    joiner: str = " ",
) -> list[tuple[int, int]]:
    """Greedy line packing; returns inclusive (first, last) index ranges."""
    if not words:
        return []
    ranges = []
    start_idx = 0
    line_text = words[0].text
    for i in range(1, len(words)):
        candidate = line_text + joiner + words[i].text
        if measure_width(candidate) <= max_width:
            line_text = candidate
        else:
            ranges.append((start_idx, i - 1))
            start_idx = i
            line_text = words[i].text
    ranges.append((start_idx, len(words) - 1))
    return ranges


def normalize_timing(
    segments: list[TimedSegment],
    *,
    target_cps: float,
    min_dur: float,
    max_dur: float,
    gap: float,
    expand_short_cues: bool,
    sentence_window: tuple[float, float] | None,
) -> tuple[list[TimedSegment], int]:
    """Clamp segment ends by reading speed, next-segment gap and window.

    Starts never move. Returns the new segments and how many changed by more
    than 50 ms.
    """
    adjusted = 0
    out = []
    for i, seg in enumerate(segments):
        raw_duration = seg.end - seg.start
        ideal = max(1, visible_char_count(seg.text)) / target_cps
        duration = min(max_dur, max(min_dur, ideal))
        if not expand_short_cues and duration > raw_duration:
            duration = raw_duration

        target_end = seg.start + duration
        if i + 1 < len(segments):
            target_end = min(target_end, segments[i + 1].start - gap)
        if sentence_window is not None:
            target_end = min(target_end, sentence_window[1])
        new_end = max(seg.start, target_end)

        if abs((new_end - seg.start) - raw_duration) > 0.05:
            adjusted += 1
            logger.debug(
                f"[SEGMENT] Adjust '{seg.text}' {raw_duration:.2f}s -> {new_end - seg.start:.2f}s"
            )
        out.append(TimedSegment(text=seg.text, start=seg.start, end=new_end, words=seg.words))
    return out, adjusted


def segment(
    words: list[WordTiming],
    max_width: float,
    measure_width: MeasureWidth,
    joiner: str = " ",
    target_cps: float = 15,
    min_dur: float = 1.0,
    max_dur: float = 4.5,
    gap: float = 0.08,
    expand_short_cues: bool = False,
    sentence_window: tuple[float, float] | None = None,
) -> list[TimedSegment]:
    """Pack one sentence's word timings into timed single-line segments.

    Args:
        words: Ordered word timings for one sentence
        max_width: Usable line width in the units of ``measure_width``
        measure_width: Width of a string at the layout font
        joiner: " " for space-separated scripts, "" for CJK
        target_cps: Reading speed in visible characters per second
        min_dur: Shortest display time (only lengthens with expand_short_cues)
        max_dur: Longest display time
        gap: Minimum gap before the next segment's start
        expand_short_cues: Allow lengthening segments shorter than their ideal
        sentence_window: Optional (start, end) no segment may end after

    Returns:
        Segments in order; empty when there are no visible words
    """
    stats = _Stats()

    prepared: list[WordTiming] = []
    for word in normalize_words(words):
        parts = explode_word(word, max_width, measure_width)
        if len(parts) > 1:
            stats.splits += 1
        prepared.extend(parts)

    ranges = pack_lines(prepared, max_width, measure_width, joiner)
    stats.line_breaks = max(0, len(ranges) - 1)

    timed = []
    for first, last in ranges:
        line_words = tuple(prepared[first:last + 1])
        timed.append(TimedSegment(
            text=joiner.join(w.text for w in line_words),
            start=line_words[0].start,
            end=line_words[-1].end,
            words=line_words,
        ))

    normalized, stats.duration_adjusted = normalize_timing(
        timed,
        target_cps=target_cps,
        min_dur=min_dur,
        max_dur=max_dur,
        gap=gap,
        expand_short_cues=expand_short_cues,
        sentence_window=sentence_window,
    )
    logger.debug(
        f"[SEGMENT] Summary: splits={stats.splits}, breaks={stats.line_breaks}, "
        f"adjusted={stats.duration_adjusted}"
    )
    return normalized


def layout_max_width(canvas_width: float, ratio: float | None = None) -> float:
    """Usable caption width inside the displayed video rect."""
    if ratio is None:
        ratio = get_settings().segment_width_ratio
    return canvas_width * ratio


def reference_font_size(canvas_height: float, ratio: float | None = None) -> float:
    """Layout font size derived from the displayed video rect height."""
    if ratio is None:
        ratio = get_settings().segment_font_ratio
    return canvas_height * ratio


def segment_cue(
    cue: CaptionCue,
    max_width: float,
    measure_width: MeasureWidth,
    **params,
) -> list[CaptionCue]:
    """Split a cue with word timings into one cue per segment.

    Style and karaoke settings are kept; each new cue carries only its own
    words and is bounded by the original cue's range. Cues without words
    pass through unchanged.
    """
    if not cue.words:
        return [cue]

    settings = get_settings()
    options = {
        "joiner": settings.segment_joiner,
        "target_cps": settings.segment_target_cps,
        "min_dur": settings.segment_min_duration_s,
        "max_dur": settings.segment_max_duration_s,
        "gap": settings.segment_gap_s,
        "expand_short_cues": settings.segment_expand_short_cues,
    }
    options.update(params)
    options.setdefault("sentence_window", (cue.start, cue.end))

    segments = segment(list(cue.words), max_width, measure_width, **options)
    return [
        cue.model_copy(update={
            "text": seg.text,
            "start": seg.start,
            "end": seg.end,
            "words": seg.words,
        })
        for seg in segments
    ]
