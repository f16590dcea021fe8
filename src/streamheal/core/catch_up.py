"""Post-heal catch-up: seek back toward the live edge once playback is stable."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from streamheal.core import buffer, media
from streamheal.core.media import MediaReadError, PlayError

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler, TimerHandle
    from streamheal.core.monitor import PlaybackMonitor

logger = logging.getLogger(__name__)


class CatchUpController:
    def __init__(self, config: Config, scheduler: Scheduler):
        self.config = config
        self.scheduler = scheduler
        self._timers: dict[str, TimerHandle] = {}

    def pending(self, video_id: str) -> bool:
        return video_id in self._timers

    def schedule(self, monitor: PlaybackMonitor, reason: str) -> bool:
        """Arm a catch-up for monitor unless one is already pending."""
        video_id = monitor.video_id
        if video_id in self._timers:
            return False
        monitor.state.catch_up_attempts = 0
        delay = self.config.recovery.catch_up_delay_ms
        logger.debug("[CATCH_UP] %s: scheduled in %dms (%s)", video_id, delay, reason)
        self._timers[video_id] = self.scheduler.call_later(delay, lambda: self.attempt(monitor, reason))
        return True

    def cancel(self, video_id: str):
        timer = self._timers.pop(video_id, None)
        if timer is not None:
            timer.cancel()

    def attempt(self, monitor: PlaybackMonitor, reason: str) -> bool:
        """Try one catch-up seek. Returns True when a seek was issued."""
        rec = self.config.recovery
        ms = monitor.state
        handle = monitor.handle
        video_id = monitor.video_id
        self._timers.pop(video_id, None)
        ms.catch_up_attempts += 1

        if not media.is_attached(handle):
            logger.debug("[CATCH_UP] %s: skipped, handle detached", video_id)
            return False

        now = self.scheduler.now()
        stall_ago = now - ms.last_stall_event_time if ms.last_stall_event_time else None
        ready_state = media.read(handle, "ready_state", 0) or 0
        stable = (
            not media.read(handle, "paused", True)
            and ready_state >= media.HAVE_FUTURE_DATA
            and ms.progress_streak_ms >= self.config.monitoring.candidate_min_progress_ms
            and (stall_ago is None or stall_ago >= rec.catch_up_stable_ms)
        )
        if not stable:
            logger.debug("[CATCH_UP] %s: deferred, playback unstable (attempt %d, streak=%.0fms)",
                         video_id, ms.catch_up_attempts, ms.progress_streak_ms)
            if ms.catch_up_attempts < rec.catch_up_max_attempts:
                self._timers[video_id] = self.scheduler.call_later(
                    rec.catch_up_retry_ms, lambda: self.attempt(monitor, reason))
            return False

        ranges = buffer.get_ranges(handle)
        t = media.current_time(handle)
        if not ranges or t is None:
            logger.debug("[CATCH_UP] %s: skipped, no buffer", video_id)
            return False

        buffer_end = ranges[-1].end
        behind = buffer_end - t
        if behind < rec.catch_up_min_s:
            logger.debug("[CATCH_UP] %s: already near live (%.2fs behind)", video_id, behind)
            return False

        target = max(t, buffer_end - rec.heal_edge_guard_s)
        validation = buffer.validate_seek_target(handle, target)
        if not validation.valid:
            logger.debug("[CATCH_UP] %s: invalid target %.3f (%s)", video_id, target, validation.reason)
            return False

        logger.info("[CATCH_UP] %s: seeking %.3f -> %.3f (%.2fs behind, %s)",
                    video_id, t, target, behind, reason)
        try:
            handle.seek(target)
        except (PlayError, MediaReadError, OSError) as e:
            logger.warning("[CATCH_UP] %s: seek failed: %s", video_id, e)
            return False
        return True
