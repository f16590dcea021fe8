"""Monitor registry: the id -> PlaybackMonitor arena shared by the engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from streamheal.core import media
from streamheal.core.monitor import PlaybackMonitor

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler, TimerHandle
    from streamheal.core.metrics import Metrics
    from streamheal.core.monitor import StallDetail
    from streamheal.core.recovery import RecoveryManager
    from streamheal.core.selection import CandidateSelector
    from streamheal.core.tracker import ResetDetail

logger = logging.getLogger(__name__)


class MonitorRegistry:
    """Assigns ``video-N`` ids and owns the lifecycle of every PlaybackMonitor.

    ``monitors`` is handed by reference to the selector, recovery and
    signal router; only this class adds or removes entries.
    """

    def __init__(self, config: Config, scheduler: Scheduler, *,
                 metrics: Metrics | None = None, emit: Callable[..., None] | None = None):
        self.config = config
        self.scheduler = scheduler
        self.metrics = metrics
        self._emit = emit or (lambda *a, **k: None)
        self.monitors: dict[str, PlaybackMonitor] = {}
        self._ids: dict[int, tuple[object, str]] = {}
        self._next_id = 1
        self._eval_timer: TimerHandle | None = None
        self.selector: CandidateSelector | None = None
        self.recovery: RecoveryManager | None = None
        self._on_stall: Callable[[PlaybackMonitor, StallDetail], object] = lambda m, d: None
        self._is_healing: Callable[[str], bool] = lambda video_id: False
        self._on_removed: Callable[[str], object] = lambda video_id: None

    def bind(
        self,
        selector: CandidateSelector,
        recovery: RecoveryManager,
        *,
        on_stall: Callable[[PlaybackMonitor, StallDetail], object] | None = None,
        is_healing: Callable[[str], bool] | None = None,
        on_removed: Callable[[str], object] | None = None,
    ):
        self.selector = selector
        self.recovery = recovery
        if on_stall is not None:
            self._on_stall = on_stall
        if is_healing is not None:
            self._is_healing = is_healing
        if on_removed is not None:
            self._on_removed = on_removed

    # --- Ids ---

    def video_id(self, handle) -> str:
        """Stable id for handle, assigned on first sight."""
        entry = self._ids.get(id(handle))
        if entry is not None and entry[0] is handle:
            return entry[1]
        video_id = f"video-{self._next_id}"
        self._next_id += 1
        self._ids[id(handle)] = (handle, video_id)
        return video_id

    def reset_video_id(self, handle):
        self._ids.pop(id(handle), None)

    def resolve(self, handle_or_id) -> str | None:
        if isinstance(handle_or_id, str):
            return handle_or_id if handle_or_id in self.monitors else None
        entry = self._ids.get(id(handle_or_id))
        if entry is not None and entry[0] is handle_or_id and entry[1] in self.monitors:
            return entry[1]
        return None

    def __len__(self) -> int:
        return len(self.monitors)

    def __contains__(self, handle_or_id) -> bool:
        return self.resolve(handle_or_id) is not None

    # --- Lifecycle ---

    def monitor(self, handle) -> PlaybackMonitor | None:
        """Start monitoring handle. Returns the existing monitor if already registered."""
        if handle is None:
            return None
        if self.selector is None:
            logger.debug("[SKIP] Candidate selector not bound yet")
            return None
        existing = self.resolve(handle)
        if existing is not None:
            logger.debug("[SKIP] %s already monitored", existing)
            return self.monitors[existing]

        video_id = self.video_id(handle)
        logger.info("[VIDEO] %s registered (%s)", video_id, media.lite_snapshot(handle).as_dict())
        monitor = PlaybackMonitor(
            handle, video_id, self.config, self.scheduler,
            on_stall=self._on_stall,
            on_reset=self._on_reset,
            on_removed=lambda m: self.stop_monitoring(m.video_id),
            is_healing=lambda: self._is_healing(video_id),
            is_active=lambda: self.selector.active_id == video_id,
            metrics=self.metrics,
        )
        self.monitors[video_id] = monitor
        monitor.start()
        self._start_evaluation()
        self.selector.prune(video_id, self.stop_monitoring)
        self.selector.evaluate_candidates("register")
        logger.info("[MONITOR] %s: started monitoring (interval=%dms, total=%d)",
                    video_id, self.config.stall.watchdog_interval_ms, len(self.monitors))
        return monitor

    def stop_monitoring(self, handle_or_id) -> bool:
        """Remove a monitor. Every removal path (prune, sweep, detach) ends here."""
        video_id = self.resolve(handle_or_id)
        if video_id is None:
            return False
        self._on_removed(video_id)
        monitor = self.monitors.pop(video_id)
        monitor.stop()
        self.reset_video_id(monitor.handle)
        if self.recovery is not None:
            self.recovery.on_monitor_removed(video_id)
        if self.selector is not None and self.selector.active_id == video_id:
            self.selector.set_active_id(None, "removed")
            if self.monitors:
                self.selector.evaluate_candidates("removed")
        self._stop_evaluation_if_idle()
        logger.info("[STOP] %s: stopped monitoring (remaining=%d)", video_id, len(self.monitors))
        return True

    def sweep(self) -> list[str]:
        """Drop monitors whose handle is no longer attached. Returns the removed ids."""
        removed = [vid for vid, m in list(self.monitors.items()) if not media.is_attached(m.handle)]
        for video_id in removed:
            logger.info("[CLEANUP] %s: handle detached", video_id)
            self.stop_monitoring(video_id)
        return removed

    def stop_all(self):
        for video_id in list(self.monitors):
            self.stop_monitoring(video_id)

    # --- Periodic evaluation ---

    def _start_evaluation(self):
        if self._eval_timer is not None or self.selector is None:
            return
        self._eval_timer = self.scheduler.call_every(
            self.config.stall.watchdog_interval_ms,
            lambda: self.selector.evaluate_candidates("interval"),
        )

    def _stop_evaluation_if_idle(self):
        if self.monitors or self._eval_timer is None:
            return
        self._eval_timer.cancel()
        self._eval_timer = None
        if self.selector is not None:
            self.selector.set_active_id(None, "idle")

    @property
    def evaluating(self) -> bool:
        return self._eval_timer is not None

    def _on_reset(self, monitor: PlaybackMonitor, detail: ResetDetail):
        logger.info("[RESET] %s: reset detected (%s, type=%s, pending_for=%.0fms)",
                    monitor.video_id, detail.reason, detail.reset_type, detail.pending_for_ms)
        self._emit("reset", f"Reset on {monitor.video_id}", f"reason={detail.reason} type={detail.reset_type}",
                   video_id=monitor.video_id)
        if self.selector is not None:
            self.selector.evaluate_candidates("reset")
