"""Per-handle progress, readiness, reset and starvation bookkeeping.

PlaybackTracker writes to one MonitorState from media notifications and
watchdog ticks. It never decides recovery actions; it only keeps the facts
(progress streaks, pending resets, starvation, media property changes) that
the watchdog, scorer and policies read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media
from streamheal.core.state import (
    MonitorState,
    clear_buffer_starvation,
    clear_reset_pending,
    reset_no_heal_point_state,
    reset_play_error_state,
    to_reset,
)

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.metrics import Metrics

logger = logging.getLogger(__name__)

MIN_PROGRESS_DELTA_S = 0.05
BUFFER_GROWTH_DELTA_S = 0.05


@dataclass(frozen=True)
class ResetAssessment:
    has_buffer: bool
    has_src: bool
    low_ready_state: bool
    is_hard_reset: bool
    is_soft_reset: bool


@dataclass(frozen=True)
class ResetDetail:
    reason: str
    reset_type: str
    pending_for_ms: float
    video_id: str


class PlaybackTracker:
    def __init__(
        self,
        handle,
        video_id: str,
        state: MonitorState,
        config: Config,
        scheduler: Scheduler,
        metrics: Metrics | None = None,
    ):
        self.handle = handle
        self.video_id = video_id
        self.state = state
        self.config = config
        self.scheduler = scheduler
        self.metrics = metrics
        self._reset_callback: Callable[[ResetDetail], None] | None = None
        self._init_logged = False
        self._init_timeout_logged = False
        self._last_starve_log = 0.0

    # --- Progress ---

    def update_progress(self, reason: str):
        """Record a time advance. Ignored while paused or for sub-50ms jitter."""
        st = self.state
        now = self.scheduler.now()
        t = media.current_time(self.handle)
        if t is None:
            return
        time_delta = t - st.last_time
        progress_gap_ms = now - st.last_progress_time if st.last_progress_time else None
        st.last_time = t

        if media.read(self.handle, "paused", True) or time_delta <= MIN_PROGRESS_DELTA_S:
            return

        if st.stall_start_time:
            stall_ms = now - st.stall_start_time
            st.stall_start_time = 0.0
            if self.metrics:
                self.metrics.record_stall_duration(stall_ms, video_id=self.video_id, reason=reason)
            logger.debug("[STALL_DURATION] %s: stalled %.0fms (ended by %s)",
                         self.video_id, stall_ms, reason)

        self._update_streak(reason, now, progress_gap_ms)

        if st.reset_pending:
            self.clear_reset_pending("progress")

        if st.no_heal_point_count > 0 or st.next_heal_allowed_time > 0:
            logger.debug("[BACKOFF] %s: cleared on progress (%d no-heal points)",
                         self.video_id, st.no_heal_point_count)
            reset_no_heal_point_state(st)
        if st.play_error_count > 0 or st.next_play_heal_allowed_time > 0 or st.heal_point_repeat_count > 0:
            logger.debug("[PLAY_BACKOFF] %s: cleared on progress", self.video_id)
            reset_play_error_state(st)
        st.last_emergency_switch_at = 0.0
        if st.buffer_starved or st.buffer_starved_since:
            logger.debug("[STARVE_CLEAR] %s: cleared on progress", self.video_id)
            clear_buffer_starvation(st)

    def _update_streak(self, reason: str, now: float, progress_gap_ms: float | None):
        st = self.state
        mon = self.config.monitoring
        if not st.progress_start_time or (
            progress_gap_ms is not None and progress_gap_ms > mon.progress_streak_reset_ms
        ):
            if st.progress_start_time:
                logger.debug("[PROGRESS] %s: streak reset after %.0fms gap",
                             self.video_id, progress_gap_ms or 0)
            st.progress_start_time = now
            st.progress_streak_ms = 0.0
            st.progress_eligible = False
        else:
            st.progress_streak_ms = now - st.progress_start_time

        st.last_progress_time = now
        st.pause_from_stall = False

        if not st.progress_eligible and st.progress_streak_ms >= mon.candidate_min_progress_ms:
            st.progress_eligible = True
            logger.debug("[PROGRESS] %s: candidate eligible (%s)", self.video_id, reason)

        if not st.has_progress:
            st.has_progress = True
            logger.info("[PROGRESS] %s: initial progress observed (%s)", self.video_id, reason)

    def mark_ready(self, reason: str):
        st = self.state
        if st.first_ready_time:
            return
        ready_state = media.read(self.handle, "ready_state", 0) or 0
        if not media.has_src(self.handle) and ready_state < 1:
            return
        st.first_ready_time = self.scheduler.now()
        logger.debug("[READY] %s: initial ready state %d (%s)", self.video_id, ready_state, reason)
        if st.reset_pending:
            assessment = self.evaluate_reset_state()
            if not assessment.is_hard_reset and not assessment.is_soft_reset:
                self.clear_reset_pending("ready")

    def mark_stall_event(self, reason: str):
        st = self.state
        st.last_stall_event_time = self.scheduler.now()
        if not st.stall_start_time:
            st.stall_start_time = st.last_stall_event_time
        if not st.pause_from_stall:
            st.pause_from_stall = True
            logger.debug("[STALL] %s: marked paused due to stall (%s)", self.video_id, reason)

    def should_skip_until_progress(self) -> bool:
        """True while a fresh handle is still inside its initial-progress grace."""
        st = self.state
        if st.has_progress:
            return False
        now = self.scheduler.now()
        self.mark_ready("watchdog_ready_check")
        grace_ms = self.config.stall.init_progress_grace_ms or self.config.stall.stall_confirm_ms
        baseline = st.first_ready_time or st.first_seen_time
        if now - baseline < grace_ms:
            if not self._init_logged:
                self._init_logged = True
                logger.debug("[WATCHDOG] %s: awaiting initial progress (grace %dms)",
                             self.video_id, grace_ms)
            return True
        if not self._init_timeout_logged:
            self._init_timeout_logged = True
            logger.debug("[WATCHDOG] %s: initial progress timeout after %.0fms",
                         self.video_id, now - baseline)
        return False

    # --- Reset pending ---

    def evaluate_reset_state(self) -> ResetAssessment:
        snap = media.lite_snapshot(self.handle)
        has_buffer = bool(buffer.get_ranges(self.handle))
        has_src = bool(snap.current_src)
        low_ready = snap.ready_state <= media.HAVE_METADATA
        return ResetAssessment(
            has_buffer=has_buffer,
            has_src=has_src,
            low_ready_state=low_ready,
            is_hard_reset=not has_src and low_ready,
            is_soft_reset=(
                low_ready
                and not has_buffer
                and snap.network_state in (media.NETWORK_EMPTY, media.NETWORK_NO_SOURCE)
            ),
        )

    def handle_reset(self, reason: str, on_reset: Callable[[ResetDetail], None] | None):
        assessment = self.evaluate_reset_state()
        if not assessment.is_hard_reset and not assessment.is_soft_reset:
            logger.debug("[RESET_SKIP] %s: %s suppressed (has_buffer=%s)",
                         self.video_id, reason, assessment.has_buffer)
            return
        st = self.state
        if not st.reset_pending_at:
            st.reset_pending_at = self.scheduler.now()
            st.reset_pending_reason = reason
            st.reset_pending_type = "hard" if assessment.is_hard_reset else "soft"
            logger.info("[RESET_PENDING] %s: %s reset pending (%s)",
                        self.video_id, st.reset_pending_type, reason)
        self._reset_callback = on_reset

    def clear_reset_pending(self, reason: str) -> bool:
        if not self.state.reset_pending_at:
            return False
        logger.info("[RESET_CLEAR] %s: pending reset cleared (%s)", self.video_id, reason)
        clear_reset_pending(self.state)
        self._reset_callback = None
        return True

    def evaluate_reset_pending(self, trigger: str) -> bool:
        """Advance a pending reset. Returns True while the reset is (or just became) active."""
        st = self.state
        if not st.reset_pending_at:
            return False
        assessment = self.evaluate_reset_state()
        if not assessment.is_hard_reset and not assessment.is_soft_reset:
            self.clear_reset_pending(trigger or "recovered")
            return False

        pending_for_ms = self.scheduler.now() - st.reset_pending_at
        if pending_for_ms < self.config.stall.reset_grace_ms:
            return True

        detail = ResetDetail(
            reason=st.reset_pending_reason or trigger,
            reset_type=st.reset_pending_type or ("hard" if assessment.is_hard_reset else "soft"),
            pending_for_ms=pending_for_ms,
            video_id=self.video_id,
        )
        to_reset(st, detail.reason, self.video_id)
        logger.warning("[RESET] %s: %s reset confirmed after %.0fms (%s)",
                       self.video_id, detail.reset_type, pending_for_ms, detail.reason)
        callback = self._reset_callback
        clear_reset_pending(st)
        self._reset_callback = None
        if callback is not None:
            callback(detail)
        return True

    # --- Starvation ---

    def update_buffer_starvation(self, info: buffer.BufferAhead, reason: str) -> bool:
        st = self.state
        cfg = self.config.stall
        now = self.scheduler.now()

        ahead = info.buffer_ahead
        if ahead is None:
            if not info.has_buffer:
                st.last_buffer_ahead = None
                return False
            ahead = 0.0

        previous = st.last_buffer_ahead
        st.last_buffer_ahead = ahead
        st.last_buffer_ahead_update_time = now
        if previous is not None:
            if ahead > previous + BUFFER_GROWTH_DELTA_S:
                st.last_buffer_ahead_increase_time = now
        elif ahead > 0:
            st.last_buffer_ahead_increase_time = now

        if ahead <= cfg.buffer_starve_threshold_s:
            if not st.buffer_starved_since:
                st.buffer_starved_since = now
            starved_for = now - st.buffer_starved_since
            if not st.buffer_starved and starved_for >= cfg.buffer_starve_confirm_ms:
                st.buffer_starved = True
                st.buffer_starve_until = now + cfg.buffer_starve_backoff_ms
                self._last_starve_log = now
                logger.info("[STARVE] %s: buffer starvation detected (ahead=%.3fs, %s)",
                            self.video_id, ahead, reason)
            elif st.buffer_starved and now - self._last_starve_log >= self.config.logging.starve_log_ms:
                self._last_starve_log = now
                if now >= st.buffer_starve_until:
                    st.buffer_starve_until = now + cfg.buffer_starve_backoff_ms
                logger.debug("[STARVE] %s: starvation persists for %.0fms", self.video_id, starved_for)
            return st.buffer_starved

        if st.buffer_starved or st.buffer_starved_since:
            logger.debug("[STARVE_CLEAR] %s: buffer recovered (ahead=%.3fs)", self.video_id, ahead)
            clear_buffer_starvation(st)
            st.last_starve_skip_log_time = 0.0
        return False

    # --- Media watcher ---

    def update_media_watcher(self):
        """Record property changes (self-recovery signals) and dead-candidate status."""
        st = self.state
        mon = self.config.monitoring
        now = self.scheduler.now()
        snap = media.lite_snapshot(self.handle)

        if snap.current_src != st.last_src:
            logger.debug("[SRC] %s: source changed %r -> %r", self.video_id, st.last_src, snap.current_src)
            st.last_src = snap.current_src
            st.last_src_change_time = now
        if snap.ready_state != st.last_ready_state:
            logger.debug("[MEDIA_STATE] %s: readyState %s -> %s",
                         self.video_id, st.last_ready_state, snap.ready_state)
            st.last_ready_state = snap.ready_state
            st.last_ready_state_change_time = now
        if snap.network_state != st.last_network_state:
            logger.debug("[MEDIA_STATE] %s: networkState %s -> %s",
                         self.video_id, st.last_network_state, snap.network_state)
            st.last_network_state = snap.network_state
            st.last_network_state_change_time = now

        if not snap.current_src and snap.ready_state == media.HAVE_NOTHING:
            if not st.dead_candidate_since:
                st.dead_candidate_since = now
            if now - st.dead_candidate_since >= mon.dead_candidate_after_ms:
                if not st.dead_candidate_until:
                    logger.info("[DEAD] %s: marked dead candidate", self.video_id)
                st.dead_candidate_until = now + mon.dead_candidate_cooldown_ms
        elif st.dead_candidate_since or st.dead_candidate_until:
            logger.debug("[DEAD_CLEAR] %s: source/readiness returned", self.video_id)
            st.dead_candidate_since = 0.0
            st.dead_candidate_until = 0.0

        if snap.buffered_length != st.last_buffered_length:
            logger.debug("[MEDIA_STATE] %s: buffered range count %s -> %s",
                         self.video_id, st.last_buffered_length, snap.buffered_length)
            st.last_buffered_length = snap.buffered_length
            st.last_buffered_length_change_time = now
