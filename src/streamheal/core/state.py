"""Per-handle playback state and its guarded transitions.

MonitorState is owned by exactly one PlaybackMonitor. Its ``state`` field is
only ever changed through set_state(), which refuses most transitions while
a heal is in flight so stray media events cannot corrupt it.

Timestamps are scheduler milliseconds; 0 means "never happened".
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class PlaybackState(str, enum.Enum):
    PLAYING = "PLAYING"
    PAUSED = "PAUSED"
    STALLED = "STALLED"
    HEALING = "HEALING"
    RESET = "RESET"
    ERROR = "ERROR"
    ENDED = "ENDED"


# States that count as "not healthy playback" for switching decisions
STALLED_STATES = frozenset({
    PlaybackState.STALLED, PlaybackState.RESET, PlaybackState.ERROR, PlaybackState.ENDED,
})


@dataclass
class MonitorState:
    state: PlaybackState = PlaybackState.PLAYING

    # Progress
    first_seen_time: float = 0.0
    first_ready_time: float = 0.0
    last_time: float = 0.0
    last_progress_time: float = 0.0
    progress_start_time: float = 0.0
    progress_streak_ms: float = 0.0
    progress_eligible: bool = False
    has_progress: bool = False

    # Stall
    pause_from_stall: bool = False
    stall_start_time: float = 0.0
    last_stall_event_time: float = 0.0
    last_heal_attempt_time: float = 0.0
    heal_defer_since: float = 0.0
    heal_defer_count: int = 0

    # No-heal-point backoff
    no_heal_point_count: int = 0
    next_heal_allowed_time: float = 0.0
    no_heal_point_refresh_until: float = 0.0
    no_heal_point_quiet_until: float = 0.0

    # Play errors
    play_error_count: int = 0
    last_play_error_time: float = 0.0
    next_play_heal_allowed_time: float = 0.0
    heal_point_repeat_count: int = 0
    last_heal_point_key: str | None = None

    # Buffer starvation
    buffer_starved: bool = False
    buffer_starved_since: float = 0.0
    buffer_starve_until: float = 0.0
    last_buffer_ahead: float | None = None
    last_buffer_ahead_update_time: float = 0.0
    last_buffer_ahead_increase_time: float = 0.0
    last_buffer_starve_rescan_time: float = 0.0

    # Reset pending
    reset_pending_at: float = 0.0
    reset_pending_reason: str | None = None
    reset_pending_type: str | None = None

    # Media watcher (self-recovery signals)
    last_src: str | None = None
    last_src_change_time: float = 0.0
    last_ready_state: int | None = None
    last_ready_state_change_time: float = 0.0
    last_network_state: int | None = None
    last_network_state_change_time: float = 0.0
    last_buffered_length: int | None = None
    last_buffered_length_change_time: float = 0.0

    # Dead candidate
    dead_candidate_since: float = 0.0
    dead_candidate_until: float = 0.0

    # Escalation bookkeeping
    last_emergency_switch_at: float = 0.0
    last_refresh_at: float = 0.0
    catch_up_attempts: int = 0

    # Log throttles
    last_backoff_log_time: float = 0.0
    last_play_backoff_log_time: float = 0.0
    last_starve_skip_log_time: float = 0.0
    last_self_recover_skip_log_time: float = 0.0
    last_non_active_log_time: float = 0.0
    last_heal_defer_log_time: float = 0.0

    @property
    def reset_pending(self) -> bool:
        return bool(self.reset_pending_at)

    def is_dead(self, now: float) -> bool:
        return bool(self.dead_candidate_until) and now < self.dead_candidate_until


def can_transition(ms: MonitorState, next_state: PlaybackState, allow_during_healing: bool = False) -> bool:
    if ms.state != PlaybackState.HEALING:
        return True
    return next_state == PlaybackState.HEALING or allow_during_healing


def set_state(
    ms: MonitorState,
    next_state: PlaybackState,
    reason: str = "",
    allow_during_healing: bool = False,
    video_id: str = "",
) -> bool:
    """Apply a transition. Returns True only when the state actually changed."""
    if not can_transition(ms, next_state, allow_during_healing):
        logger.debug("[STATE] %s: %s -> %s dropped while healing (%s)",
                     video_id, ms.state.value, next_state.value, reason)
        return False
    if ms.state == next_state:
        return False
    logger.debug("[STATE] %s: %s -> %s (%s)", video_id, ms.state.value, next_state.value, reason)
    ms.state = next_state
    return True


def to_playing(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.PLAYING, reason, video_id=video_id)


def to_paused(ms: MonitorState, reason: str = "", allow_during_healing: bool = False,
              video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.PAUSED, reason, allow_during_healing, video_id)


def to_stalled(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.STALLED, reason, video_id=video_id)


def to_healing(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.HEALING, reason, video_id=video_id)


def to_reset(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.RESET, reason, True, video_id)


def to_error(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.ERROR, reason, True, video_id)


def to_ended(ms: MonitorState, reason: str = "", video_id: str = "") -> bool:
    return set_state(ms, PlaybackState.ENDED, reason, True, video_id)


# --- Bookkeeping helpers shared by tracker and recovery code ---

def reset_no_heal_point_state(ms: MonitorState):
    ms.no_heal_point_count = 0
    ms.next_heal_allowed_time = 0.0
    ms.no_heal_point_refresh_until = 0.0


def reset_play_error_state(ms: MonitorState):
    ms.play_error_count = 0
    ms.next_play_heal_allowed_time = 0.0
    ms.last_play_error_time = 0.0
    ms.last_play_backoff_log_time = 0.0
    ms.last_heal_point_key = None
    ms.heal_point_repeat_count = 0


def clear_reset_pending(ms: MonitorState):
    ms.reset_pending_at = 0.0
    ms.reset_pending_reason = None
    ms.reset_pending_type = None


def clear_buffer_starvation(ms: MonitorState):
    ms.buffer_starved = False
    ms.buffer_starved_since = 0.0
    ms.buffer_starve_until = 0.0


def mark_emergency_switch(ms: MonitorState, now: float):
    ms.last_emergency_switch_at = now


def mark_refresh(ms: MonitorState, now: float):
    ms.last_refresh_at = now
