"""Per-handle playback monitor: media event dispatch plus the watchdog.

The handle's owner forwards every media notification through dispatch();
the watchdog tick runs on the scheduler at ``watchdog_interval_ms`` and
confirms stalls that notifications alone cannot see (a frozen playhead
with no events at all).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media
from streamheal.core.media import MediaEvent
from streamheal.core.state import (
    MonitorState,
    PlaybackState,
    to_ended,
    to_error,
    to_paused,
    to_playing,
    to_stalled,
)
from streamheal.core.tracker import PlaybackTracker, ResetDetail

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler, TimerHandle
    from streamheal.core.metrics import Metrics

logger = logging.getLogger(__name__)

TRIGGER_WATCHDOG = "WATCHDOG"


@dataclass(frozen=True)
class StallDetail:
    trigger: str
    stalled_for_ms: float
    buffer_exhausted: bool
    paused: bool
    pause_from_stall: bool

    def as_dict(self) -> dict:
        return {
            "trigger": self.trigger,
            "stalled_for_ms": round(self.stalled_for_ms),
            "buffer_exhausted": self.buffer_exhausted,
            "paused": self.paused,
            "pause_from_stall": self.pause_from_stall,
        }


class PlaybackMonitor:
    """Owns the MonitorState of one handle.

    Callbacks:
        on_stall(monitor, StallDetail): watchdog confirmed a stall
        on_reset(monitor, ResetDetail): a pending reset outlived its grace
        on_removed(monitor): handle detached from the live document
        is_healing(): True while the heal pipeline holds this handle
        is_active(): True when this handle is the active candidate
    """

    def __init__(
        self,
        handle,
        video_id: str,
        config: Config,
        scheduler: Scheduler,
        *,
        on_stall: Callable[[PlaybackMonitor, StallDetail], None] | None = None,
        on_reset: Callable[[PlaybackMonitor, ResetDetail], None] | None = None,
        on_removed: Callable[[PlaybackMonitor], None] | None = None,
        is_healing: Callable[[], bool] | None = None,
        is_active: Callable[[], bool] | None = None,
        metrics: Metrics | None = None,
    ):
        self.handle = handle
        self.video_id = video_id
        self.config = config
        self.scheduler = scheduler
        self.state = MonitorState()
        self.state.first_seen_time = scheduler.now()
        self.tracker = PlaybackTracker(handle, video_id, self.state, config, scheduler, metrics)
        self._on_stall = on_stall or (lambda m, d: None)
        self._on_reset = on_reset or (lambda m, d: None)
        self._on_removed = on_removed or (lambda m: None)
        self._is_healing = is_healing or (lambda: False)
        self._is_active = is_active or (lambda: True)
        self._timer: TimerHandle | None = None
        self._last_watchdog_log = 0.0
        self._handlers = {
            "timeupdate": self._on_timeupdate,
            "playing": self._on_playing,
            "loadedmetadata": self._on_ready,
            "loadeddata": self._on_ready,
            "canplay": self._on_ready,
            "waiting": self._on_waiting,
            "stalled": self._on_waiting,
            "pause": self._on_pause,
            "ended": self._on_ended,
            "error": self._on_error,
            "abort": self._on_abort,
            "emptied": self._on_emptied,
        }

    # --- Lifecycle ---

    def start(self):
        if self._timer is not None:
            return
        self.state.last_time = media.current_time(self.handle) or 0.0
        self._timer = self.scheduler.call_every(self.config.stall.watchdog_interval_ms, self.tick)
        logger.debug("[MONITOR] %s: watchdog started", self.video_id)

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("[MONITOR] %s: watchdog stopped", self.video_id)

    @property
    def running(self) -> bool:
        return self._timer is not None

    # --- Event dispatch ---

    def dispatch(self, event: MediaEvent | str) -> bool:
        """Route one media notification. Returns False for unknown event types."""
        event_type = event if isinstance(event, str) else event.type
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("[EVENT] %s: ignoring unknown media event %r", self.video_id, event_type)
            return False
        logger.debug("[EVENT] %s: %s (state=%s)", self.video_id, event_type, self.state.state.value)
        handler()
        return True

    def _on_timeupdate(self):
        self.tracker.update_progress("timeupdate")
        if not media.read(self.handle, "paused", True) and self.state.state != PlaybackState.HEALING:
            to_playing(self.state, "timeupdate", self.video_id)

    def _on_playing(self):
        self.tracker.mark_ready("playing")
        self.state.pause_from_stall = False
        self.state.last_time = media.current_time(self.handle) or self.state.last_time
        if self.state.state != PlaybackState.HEALING:
            to_playing(self.state, "playing", self.video_id)

    def _on_ready(self):
        self.tracker.mark_ready("ready")

    def _on_waiting(self):
        self.tracker.mark_stall_event("waiting")
        if not media.read(self.handle, "paused", True):
            to_stalled(self.state, "waiting", self.video_id)

    def _on_pause(self):
        exhausted = buffer.is_buffer_exhausted(self.handle)
        ended = bool(media.read(self.handle, "ended", False))
        if exhausted and not ended:
            self.tracker.mark_stall_event("pause_buffer_exhausted")
            to_stalled(self.state, "pause_buffer_exhausted", self.video_id)
            return
        to_paused(self.state, "pause", allow_during_healing=True, video_id=self.video_id)

    def _on_ended(self):
        self.state.pause_from_stall = False
        logger.info("[ENDED] %s: playback ended at %s", self.video_id, media.current_time(self.handle))
        to_ended(self.state, "ended", self.video_id)

    def _on_error(self):
        self.state.pause_from_stall = False
        logger.warning("[ERROR] %s: media error (code=%s)",
                       self.video_id, media.read(self.handle, "error_code"))
        to_error(self.state, "error", self.video_id)

    def _on_abort(self):
        self.state.pause_from_stall = False
        to_paused(self.state, "abort", video_id=self.video_id)
        self.tracker.handle_reset("abort", self._reset_callback)

    def _on_emptied(self):
        self.state.pause_from_stall = False
        self.tracker.handle_reset("emptied", self._reset_callback)

    def _reset_callback(self, detail: ResetDetail):
        self._on_reset(self, detail)

    # --- Watchdog ---

    def tick(self):
        st = self.state
        now = self.scheduler.now()
        if not media.is_attached(self.handle):
            logger.info("[CLEANUP] %s: handle detached", self.video_id)
            self.stop()
            self._on_removed(self)
            return

        self.tracker.evaluate_reset_pending("watchdog")
        if st.reset_pending:
            return
        if self._is_healing():
            return

        exhausted = buffer.is_buffer_exhausted(self.handle)
        paused = bool(media.read(self.handle, "paused", True))
        paused_after_stall = (
            st.last_stall_event_time > 0
            and now - st.last_stall_event_time < self.config.stall.paused_stall_grace_ms
        )
        pause_from_stall = st.pause_from_stall or paused_after_stall
        if paused and exhausted and not pause_from_stall:
            self.tracker.mark_stall_event("watchdog_pause_buffer_exhausted")
            pause_from_stall = True
        if paused and not pause_from_stall:
            to_paused(st, "watchdog_paused", video_id=self.video_id)
            return
        if paused and pause_from_stall and st.state != PlaybackState.STALLED:
            to_stalled(st, "paused_buffer_exhausted" if exhausted else "paused_after_stall",
                       self.video_id)

        if self.tracker.should_skip_until_progress():
            return

        if self._is_active():
            self.tracker.update_buffer_starvation(buffer.buffer_ahead(self.handle), "watchdog")

        self.tracker.update_media_watcher()

        stalled_for_ms = now - (st.last_progress_time or st.first_seen_time or now)
        if stalled_for_ms < self.stall_confirm_ms(exhausted):
            return

        if st.state != PlaybackState.STALLED:
            to_stalled(st, "watchdog_no_progress", self.video_id)

        log_interval = 0 if self._is_active() else self.config.logging.non_active_log_ms
        if now - self._last_watchdog_log > log_interval:
            self._last_watchdog_log = now
            logger.debug("[WATCHDOG] %s: no progress for %.0fms (exhausted=%s, pause_from_stall=%s)",
                         self.video_id, stalled_for_ms, exhausted, pause_from_stall)

        self._on_stall(self, StallDetail(
            trigger=TRIGGER_WATCHDOG,
            stalled_for_ms=stalled_for_ms,
            buffer_exhausted=exhausted,
            paused=paused,
            pause_from_stall=pause_from_stall,
        ))

    def stall_confirm_ms(self, buffer_exhausted: bool) -> float:
        """Longer confirmation window while buffered data is still available."""
        base = self.config.stall.stall_confirm_ms
        if buffer_exhausted:
            return base
        return base + self.config.stall.stall_confirm_buffer_ok_ms
