"""Recovery manager: policy engine plus failover, probes and refresh requests."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Protocol

from streamheal.core import buffer, media
from streamheal.core.applier import NoHealPointResult, PlayFailureResult, RecoveryPolicy
from streamheal.core.failover import FailoverManager
from streamheal.core.policies import PLAY_STUCK, PlayFailure, RecoveryContext
from streamheal.core.state import MonitorState, mark_refresh

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.metrics import Metrics
    from streamheal.core.monitor import PlaybackMonitor
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)


class RefreshStore(Protocol):
    """Persists the wall-clock time of the last automatic refresh request."""

    def get_last_auto_refresh(self) -> float | None:
        ...

    def set_last_auto_refresh(self, timestamp: float) -> None:
        ...


RefreshCallback = Callable[[str, str, str], None]


class RecoveryManager:
    def __init__(
        self,
        monitors: dict[str, PlaybackMonitor],
        selector: CandidateSelector,
        config: Config,
        scheduler: Scheduler,
        *,
        on_rescan: Callable[[str, dict], None] | None = None,
        on_refresh: RefreshCallback | None = None,
        refresh_store: RefreshStore | None = None,
        emit: Callable[..., None] | None = None,
        metrics: Metrics | None = None,
    ):
        self.monitors = monitors
        self.selector = selector
        self.config = config
        self.scheduler = scheduler
        self.on_refresh = on_refresh or (lambda video_id, reason, detail: None)
        self.refresh_store = refresh_store
        self._emit = emit or (lambda *a, **k: None)
        self.metrics = metrics
        self.policy = RecoveryPolicy(
            config,
            scheduler,
            lambda: len(self.monitors),
            selector=selector,
            on_rescan=on_rescan,
            on_persistent_failure=self._persistent_failure,
            emit=emit,
            metrics=metrics,
        )
        self.failover = FailoverManager(
            monitors, selector, config, scheduler,
            reset_backoff=self.policy.reset_backoff,
            emit=emit,
            metrics=metrics,
        )

    def context(self, monitor: PlaybackMonitor, **kwargs) -> RecoveryContext:
        return self.policy.context(monitor.handle, monitor.state, monitor.video_id, **kwargs)

    # --- Resets ---

    def reset_backoff(self, ms: MonitorState, reason: str, video_id: str = ""):
        self.policy.reset_backoff(ms, reason, video_id)

    def reset_play_error(self, ms: MonitorState, reason: str, video_id: str = ""):
        self.policy.reset_play_error(ms, reason, video_id)

    def reset_recovery(self, ms: MonitorState, reason: str, video_id: str = ""):
        self.reset_backoff(ms, reason, video_id)
        self.reset_play_error(ms, reason, video_id)

    # --- Decisions ---

    def should_skip_stall(self, monitor: PlaybackMonitor) -> bool:
        if self.failover.should_ignore_stall(monitor.video_id):
            return True
        return self.policy.should_skip_stall(self.context(monitor))

    def handle_no_heal_point(self, monitor: PlaybackMonitor, reason: str) -> NoHealPointResult:
        ctx = self.context(monitor, reason=reason)
        result = self.policy.handle_no_heal_point(ctx, reason)
        if result.emergency_switched:
            return result
        if result.should_failover:
            self.failover.attempt(monitor.video_id, reason, monitor.state)
        return result

    def handle_play_failure(self, monitor: PlaybackMonitor, failure: PlayFailure) -> PlayFailureResult:
        ctx = self.context(monitor, reason=failure.reason)
        result = self.policy.handle_play_failure(ctx, failure)

        if failure.error_name == PLAY_STUCK and len(self.monitors) <= 1:
            info = buffer.buffer_ahead(monitor.handle)
            ready_state = media.read(monitor.handle, "ready_state", 0) or 0
            refresh_ready = (
                info.has_buffer
                and (info.buffer_ahead or 0.0) >= self.config.recovery.min_heal_headroom_s
                and ready_state >= media.HAVE_FUTURE_DATA
            )
            if refresh_ready and monitor.state.play_error_count >= self.config.stall.play_stuck_refresh_after:
                if self.request_refresh(monitor, "play_stuck", trigger=failure.reason,
                                        detail=failure.error or "play_stuck"):
                    return result

        if not (result.probation_triggered or result.repeat_stuck or result.should_failover):
            return result
        before = self.selector.active_id
        self.selector.evaluate_candidates("play_error")
        if result.should_failover and self.selector.active_id == before:
            self.failover.attempt(monitor.video_id, failure.reason or "play_error", monitor.state)
        return result

    # --- Refresh ---

    def request_refresh(
        self,
        monitor: PlaybackMonitor,
        reason: str = "source_loss",
        *,
        trigger: str | None = None,
        detail: str | None = None,
        reset_type: str | None = None,
    ) -> bool:
        """Ask the handle owner to reload the source, at most once per refresh cooldown."""
        ms = monitor.state
        now = self.scheduler.now()
        if ms.last_refresh_at and now - ms.last_refresh_at < self.config.stall.refresh_cooldown_ms:
            logger.debug("[REFRESH_SKIP] %s: cooldown active (%s)", monitor.video_id, reason)
            return False
        mark_refresh(ms, now)
        logger.warning("[REFRESH] %s: refresh requested (%s, trigger=%s, reset_type=%s, no_heal_points=%d)",
                       monitor.video_id, reason, trigger, reset_type, ms.no_heal_point_count)
        return self._persistent_failure(monitor.video_id, reason, detail or "source_loss")

    def _persistent_failure(self, video_id: str, reason: str, detail: str) -> bool:
        cooldown_s = self.config.stall.refresh_cooldown_ms / 1000
        wall_now = time.time()
        if self.refresh_store is not None:
            last = self.refresh_store.get_last_auto_refresh()
            if last and wall_now - last < cooldown_s:
                logger.info("[REFRESH_SKIP] %s: last automatic refresh %.0fs ago (%s)",
                            video_id, wall_now - last, reason)
                return False
            self.refresh_store.set_last_auto_refresh(wall_now)
        if self.metrics:
            self.metrics.increment("refresh_requests")
        self._emit("refresh", f"Refresh requested for {video_id}", f"reason={reason} detail={detail}",
                   video_id=video_id)
        self.on_refresh(video_id, reason, detail)
        return True

    # --- Failover passthroughs ---

    def probe(self, video_id: str, reason: str) -> bool:
        return self.failover.probes.probe(video_id, reason)

    def is_failover_active(self) -> bool:
        return self.failover.in_progress

    def on_monitor_removed(self, video_id: str):
        self.failover.on_monitor_removed(video_id)
