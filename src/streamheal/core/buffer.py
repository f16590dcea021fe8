"""Buffered-range analysis and heal-point search.

When an ad break is stripped from a live stream the player is often left
parked at the end of one buffered range while fresh content keeps arriving
in a later range. A heal point is a seek target inside buffered data that
lets playback resume without a reload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from streamheal.core import media

logger = logging.getLogger(__name__)

EXHAUSTED_REMAINING_S = 0.5   # Less than this left in the current range = exhausted
NUDGE_OFFSET_S = 0.5          # Nudge lands this far past the playhead
NUDGE_END_MARGIN_S = 0.1      # Never nudge this close to a range end
DEFAULT_MIN_BUFFER_S = 2.0


@dataclass(frozen=True)
class BufferRange:
    start: float
    end: float

    @property
    def size(self) -> float:
        return self.end - self.start

    def contains(self, t: float) -> bool:
        return self.start <= t <= self.end


@dataclass(frozen=True)
class BufferAhead:
    has_buffer: bool
    buffer_ahead: float | None    # None when the playhead sits in a gap
    range_start: float | None = None
    range_end: float | None = None


@dataclass(frozen=True)
class HealPoint:
    start: float
    end: float
    gap_size: float
    headroom: float
    is_nudge: bool
    range_index: int

    @property
    def key(self) -> str:
        """Identity used to detect the same point failing repeatedly."""
        return f"{self.start:.2f}-{self.end:.2f}"


@dataclass(frozen=True)
class SeekValidation:
    valid: bool
    buffer_range: BufferRange | None = None
    headroom: float = 0.0
    reason: str | None = None


def get_ranges(handle) -> list[BufferRange]:
    """Buffered ranges of a handle; unreadable or malformed data yields []."""
    raw = media.read(handle, "buffered", None) or []
    ranges = []
    try:
        for start, end in raw:
            ranges.append(BufferRange(float(start), float(end)))
    except (TypeError, ValueError) as e:
        logger.debug("Ignoring malformed buffered ranges %r: %s", raw, e)
        return []
    return ranges


def format_ranges(ranges: list[BufferRange]) -> str:
    return ", ".join(f"[{r.start:.2f}-{r.end:.2f}]" for r in ranges)


def buffer_ahead(handle) -> BufferAhead:
    ranges = get_ranges(handle)
    if not ranges:
        return BufferAhead(has_buffer=False, buffer_ahead=None)
    t = media.current_time(handle)
    if t is None:
        return BufferAhead(has_buffer=True, buffer_ahead=None)
    for r in ranges:
        if r.contains(t):
            return BufferAhead(True, r.end - t, r.start, r.end)
    return BufferAhead(has_buffer=True, buffer_ahead=None)


def is_buffer_exhausted(handle) -> bool:
    ranges = get_ranges(handle)
    if not ranges:
        return True
    t = media.current_time(handle)
    if t is None:
        return True
    for r in ranges:
        if r.contains(t):
            return (r.end - t) < EXHAUSTED_REMAINING_S
    # Fell off the buffer entirely
    return True


def find_heal_point(
    ranges: list[BufferRange],
    current_time: float,
    min_buffer_s: float = DEFAULT_MIN_BUFFER_S,
) -> HealPoint | None:
    """Find the best seek target ahead of current_time.

    Nudges (the range holding the playhead, or one starting within
    NUDGE_OFFSET_S after it) are considered before any gap jump, so a
    contiguous extension always beats skipping content.
    """
    threshold = current_time + NUDGE_OFFSET_S

    for i, r in enumerate(ranges):
        if r.end <= current_time or r.start > threshold:
            continue
        heal_start = max(r.start, threshold)
        if heal_start >= r.end - NUDGE_END_MARGIN_S:
            continue
        headroom = r.end - heal_start
        if headroom < min_buffer_s:
            continue
        return HealPoint(
            start=heal_start,
            end=r.end,
            gap_size=heal_start - current_time,
            headroom=headroom,
            is_nudge=True,
            range_index=i,
        )

    for i, r in enumerate(ranges):
        if r.start <= threshold:
            continue
        if r.size < min_buffer_s:
            continue
        return HealPoint(
            start=r.start,
            end=r.end,
            gap_size=r.start - current_time,
            headroom=r.size,
            is_nudge=False,
            range_index=i,
        )

    return None


def find_handle_heal_point(handle, min_buffer_s: float = DEFAULT_MIN_BUFFER_S) -> HealPoint | None:
    t = media.current_time(handle)
    if t is None:
        return None
    return find_heal_point(get_ranges(handle), t, min_buffer_s)


def calculate_safe_target(point: HealPoint, edge_guard_s: float) -> float:
    """Pick a seek target inside point, away from both range edges.

    Small windows get their midpoint; larger ones are entered by at most
    half a second so most of the headroom stays available.
    """
    size = point.end - point.start
    if size < 1.0:
        target = point.start + size * 0.5
    else:
        target = point.start + min(0.5, size - 1.0)
    return min(target, max(point.start, point.end - edge_guard_s))


def validate_seek_target(handle, target: float) -> SeekValidation:
    ranges = get_ranges(handle)
    if not ranges:
        return SeekValidation(valid=False, reason="no_buffer")
    for r in ranges:
        if r.contains(target):
            headroom = r.end - target
            if headroom <= 0:
                break
            return SeekValidation(valid=True, buffer_range=r, headroom=headroom)
    return SeekValidation(valid=False, reason="target_not_in_buffer")
