"""StreamHealer: one healing engine instance wired over a set of media handles.

Usage:
    healer = StreamHealer(config, scheduler, discover=lambda: handles)
    healer.scan("startup")
    ...
    healer.dispatch("video-1", "waiting")
    healer.handle_external_signal({"type": "playhead_stall", "playhead_seconds": 12.3})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable

from streamheal.config import Config
from streamheal.core.catch_up import CatchUpController
from streamheal.core.clock import LoopScheduler
from streamheal.core.heal import HealOutcome, HealPipeline
from streamheal.core.metrics import Metrics
from streamheal.core.recovery import RecoveryManager, RefreshCallback, RefreshStore
from streamheal.core.registry import MonitorRegistry
from streamheal.core.selection import CandidateSelector
from streamheal.core.signals import ExternalSignalRouter
from streamheal.core.stall_handler import StallHandler, StallOutcome

if TYPE_CHECKING:
    from streamheal.core.clock import Scheduler
    from streamheal.core.heal import HealAttempt
    from streamheal.core.media import MediaEvent
    from streamheal.core.monitor import PlaybackMonitor, StallDetail

logger = logging.getLogger(__name__)


class StreamHealer:
    def __init__(
        self,
        config: Config | None = None,
        scheduler: Scheduler | None = None,
        *,
        discover: Callable[[], Iterable] | None = None,
        on_refresh: RefreshCallback | None = None,
        refresh_store: RefreshStore | None = None,
        emit: Callable[..., None] | None = None,
        metrics: Metrics | None = None,
    ):
        self.config = config or Config()
        self.scheduler = scheduler or LoopScheduler()
        self.metrics = metrics or Metrics()
        self.discover = discover
        self._emit = emit or (lambda *a, **k: None)

        self.registry = MonitorRegistry(self.config, self.scheduler, metrics=self.metrics, emit=self._emit)
        self.monitors = self.registry.monitors
        self.selector = CandidateSelector(self.monitors, self.config, self.scheduler, emit=self._emit)
        self.recovery = RecoveryManager(
            self.monitors, self.selector, self.config, self.scheduler,
            on_rescan=self.scan,
            on_refresh=on_refresh,
            refresh_store=refresh_store,
            emit=self._emit,
            metrics=self.metrics,
        )
        self.selector.set_lock_checker(self.recovery.is_failover_active)
        self.catch_up = CatchUpController(self.config, self.scheduler)
        self.heal_pipeline = HealPipeline(
            self.config, self.scheduler, self.recovery,
            catch_up=self.catch_up,
            on_detached=self._on_detached,
            metrics=self.metrics,
            emit=self._emit,
        )
        self.stall_handler = StallHandler(
            self.config, self.scheduler, self.selector, self.recovery, self.heal_pipeline,
            on_rescan=self.scan,
            metrics=self.metrics,
            emit=self._emit,
        )
        self.signals = ExternalSignalRouter(
            self.monitors, self.selector, self.recovery, self.config, self.scheduler,
            on_stall=self.on_stall_detected,
            on_rescan=self.scan,
            emit=self._emit,
        )
        self.registry.bind(
            self.selector, self.recovery,
            on_stall=self.on_stall_detected,
            is_healing=self.heal_pipeline.is_healing,
            on_removed=self._cancel_work,
        )

    # --- Monitoring ---

    def monitor(self, handle) -> PlaybackMonitor | None:
        return self.registry.monitor(handle)

    def stop_monitoring(self, handle_or_id) -> bool:
        return self.registry.stop_monitoring(handle_or_id)

    def _cancel_work(self, video_id: str):
        self.heal_pipeline.cancel(video_id, "monitor_removed")
        self.catch_up.cancel(video_id)

    def scan(self, reason: str = "manual", detail: dict | None = None) -> int:
        """Register every handle the discover callback reports. Returns the number of new monitors."""
        self.registry.sweep()
        if self.discover is None:
            self.selector.evaluate_candidates(f"scan_{reason}")
            return 0
        before = len(self.monitors)
        handles = list(self.discover())
        logger.info("[SCAN] Rescan requested (%s, found=%d, detail=%s)", reason, len(handles), detail or {})
        for handle in handles:
            self.registry.monitor(handle)
        self.selector.evaluate_candidates(f"scan_{reason}")
        added = max(len(self.monitors) - before, 0)
        logger.info("[SCAN] Rescan complete (%s, new=%d, total=%d)", reason, added, len(self.monitors))
        return added

    def dispatch(self, handle_id: str, event: MediaEvent | str) -> bool:
        """Forward a media notification from the handle's owner to its monitor."""
        monitor = self.monitors.get(handle_id)
        if monitor is None:
            logger.debug("[EVENT] Dropping %r for unknown handle %s", event, handle_id)
            return False
        return monitor.dispatch(event)

    # --- Healing ---

    def on_stall_detected(self, monitor: PlaybackMonitor, detail: StallDetail) -> StallOutcome:
        return self.stall_handler.on_stall(monitor, detail)

    def attempt_heal(self, handle_or_id,
                     on_complete: Callable[[HealOutcome], None] | None = None) -> HealAttempt | None:
        video_id = self.registry.resolve(handle_or_id)
        if video_id is None:
            return None
        return self.heal_pipeline.attempt_heal(self.monitors[video_id], on_complete)

    def handle_external_signal(self, signal) -> bool:
        return self.signals.handle_signal(signal)

    def _on_detached(self, monitor: PlaybackMonitor, reason: str):
        self.scan("detached", {"reason": reason, "video_id": monitor.video_id})

    # --- Introspection ---

    def get_stats(self) -> dict:
        return {
            "heal_attempts": self.heal_pipeline.attempts,
            "is_healing": self.heal_pipeline.is_healing(),
            "monitored_count": len(self.monitors),
            "active_id": self.selector.active_id,
            "last_good_id": self.selector.last_good_id,
            "probation_active": self.selector.is_probation_active(),
            "failover": self.recovery.failover.status(),
            "metrics": self.metrics.summary(),
        }

    def monitor_snapshots(self) -> list[dict]:
        """Per-handle state and score, active first."""
        snapshots = []
        active_id = self.selector.active_id
        for score in self.selector.score_all():
            ms = self.monitors[score.id].state
            entry = score.as_dict()
            entry.update({
                "active": score.id == active_id,
                "state": ms.state.value,
                "healing": self.heal_pipeline.is_healing(score.id),
                "no_heal_point_count": ms.no_heal_point_count,
                "play_error_count": ms.play_error_count,
                "buffer_starved": ms.buffer_starved,
            })
            snapshots.append(entry)
        snapshots.sort(key=lambda e: not e["active"])
        return snapshots

    def shutdown(self):
        for video_id in list(self.monitors):
            self.stop_monitoring(video_id)
        self.recovery.failover.reset("shutdown")
        logger.info("StreamHealer shut down (attempts=%d)", self.heal_pipeline.attempts)
