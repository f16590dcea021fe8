"""Confirmed-stall entry point: gate the stall, then hand it to the heal pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.heal import HealAttempt, HealPipeline
    from streamheal.core.metrics import Metrics
    from streamheal.core.monitor import PlaybackMonitor, StallDetail
    from streamheal.core.recovery import RecoveryManager
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)

HANDLED = "handled"
REFRESH = "refresh"
SKIP = "skip"


@dataclass(frozen=True)
class StallOutcome:
    action: str
    reason: str
    attempt: HealAttempt | None = None


class StallHandler:
    def __init__(
        self,
        config: Config,
        scheduler: Scheduler,
        selector: CandidateSelector,
        recovery: RecoveryManager,
        heal_pipeline: HealPipeline,
        *,
        on_rescan: Callable[[str, dict], None] | None = None,
        metrics: Metrics | None = None,
        emit: Callable[..., None] | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.selector = selector
        self.recovery = recovery
        self.heal_pipeline = heal_pipeline
        self.on_rescan = on_rescan or (lambda reason, detail: None)
        self.metrics = metrics
        self._emit = emit or (lambda *a, **k: None)

    def on_stall(self, monitor: PlaybackMonitor, detail: StallDetail) -> StallOutcome:
        """Run one stall notification through the gates; at most one heal is started."""
        now = self.scheduler.now()
        video_id = monitor.video_id
        ms = monitor.state

        if not media.has_src(monitor.handle):
            if self.recovery.request_refresh(monitor, "no_source", trigger=detail.trigger, detail="no_source"):
                return StallOutcome(REFRESH, "no_source")

        if self.recovery.should_skip_stall(monitor):
            return StallOutcome(SKIP, "policy_skip")

        progressed_since_attempt = ms.last_progress_time > ms.last_heal_attempt_time
        if progressed_since_attempt and now - ms.last_heal_attempt_time < self.config.stall.retry_cooldown_ms:
            logger.debug("[DEBOUNCE] %s: last heal attempt %.0fms ago (state=%s)",
                         video_id, now - ms.last_heal_attempt_time, ms.state.value)
            return StallOutcome(SKIP, "debounce")

        ms.last_heal_attempt_time = now
        self._maybe_rescan_starved(monitor, now)
        self.selector.evaluate_candidates("stall")

        active_id = self.selector.active_id
        if active_id and active_id != video_id:
            if not ms.progress_eligible:
                self.recovery.probe(video_id, "stall_non_active")
            if now - ms.last_non_active_log_time >= self.config.logging.non_active_log_ms:
                ms.last_non_active_log_time = now
                logger.debug("[STALL_SKIP] %s: stall on non-active handle (active=%s, stalled_for=%.0fms)",
                             video_id, active_id, detail.stalled_for_ms)
            return StallOutcome(SKIP, "non_active")

        snap = media.lite_snapshot(monitor.handle)
        logger.warning("[STALL] %s: stall detected (%s, stalled_for=%.0fms, exhausted=%s, paused=%s, "
                       "t=%s, ready_state=%d, network_state=%d, buffers=%s)",
                       video_id, detail.trigger, detail.stalled_for_ms, detail.buffer_exhausted,
                       snap.paused, snap.current_time, snap.ready_state, snap.network_state,
                       buffer.format_ranges(buffer.get_ranges(monitor.handle)) or "none")
        self._emit("stall", f"Stall on {video_id}", f"trigger={detail.trigger} "
                   f"stalled_for={detail.stalled_for_ms:.0f}ms", video_id=video_id)
        if self.metrics:
            self.metrics.increment("stalls_detected")
        attempt = self.heal_pipeline.attempt_heal(monitor)
        return StallOutcome(HANDLED, detail.trigger, attempt)

    def _maybe_rescan_starved(self, monitor: PlaybackMonitor, now: float):
        ms = monitor.state
        if not ms.buffer_starved:
            return
        if now - ms.last_buffer_starve_rescan_time < self.config.stall.buffer_starve_rescan_cooldown_ms:
            return
        ms.last_buffer_starve_rescan_time = now
        self.selector.activate_probation("buffer_starved")
        info = buffer.buffer_ahead(monitor.handle)
        self.on_rescan("buffer_starved", {
            "video_id": monitor.video_id,
            "buffer_ahead": info.buffer_ahead,
            "has_buffer": info.has_buffer,
        })
