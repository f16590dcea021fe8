"""Failover to another monitored handle, and play() probes of non-active handles."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from streamheal.core import media
from streamheal.core.media import MediaReadError, PlayError
from streamheal.core.scoring import CandidateScore
from streamheal.core.state import MonitorState

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler, TimerHandle
    from streamheal.core.metrics import Metrics
    from streamheal.core.monitor import PlaybackMonitor
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)


def _start_play(handle) -> str | None:
    """Call play() without waiting. Returns an error name on immediate rejection."""
    try:
        handle.play()
    except PlayError as e:
        return e.name
    except (MediaReadError, OSError) as e:
        return type(e).__name__
    return None


@dataclass
class ProbeStats:
    counts: Counter = field(default_factory=Counter)
    reasons: Counter = field(default_factory=Counter)
    last_summary_time: float = 0.0
    last_error: str | None = None
    last_state: str | None = None
    last_ready_state: int | None = None
    last_has_src: bool | None = None


class ProbeController:
    """Nudges non-active handles with play() so they can prove themselves as candidates."""

    def __init__(self, monitors: dict[str, PlaybackMonitor], config: Config, scheduler: Scheduler):
        self.monitors = monitors
        self.config = config
        self.scheduler = scheduler
        self._last_probe: dict[str, float] = {}
        self._stats: dict[str, ProbeStats] = {}

    def stats(self, video_id: str) -> ProbeStats:
        return self._stats.setdefault(video_id, ProbeStats())

    def _maybe_log_summary(self, video_id: str, stats: ProbeStats):
        now = self.scheduler.now()
        interval = self.config.logging.non_active_log_ms
        if now - stats.last_summary_time < interval:
            return
        stats.last_summary_time = now
        if not stats.counts:
            return
        logger.info("[PROBE_SUMMARY] %s: %s (reasons=%s, last_state=%s, last_error=%s)",
                    video_id, dict(stats.counts), dict(stats.reasons), stats.last_state, stats.last_error)
        stats.counts.clear()
        stats.reasons.clear()
        stats.last_error = None

    def probe(self, video_id: str, reason: str) -> bool:
        monitor = self.monitors.get(video_id)
        stats = self.stats(video_id)
        if reason:
            stats.reasons[reason] += 1
        if monitor is None:
            return False
        handle = monitor.handle
        if not media.is_attached(handle):
            stats.counts["skip_detached"] += 1
            self._maybe_log_summary(video_id, stats)
            return False

        now = self.scheduler.now()
        last = self._last_probe.get(video_id, 0.0)
        if last and now - last < self.config.monitoring.probe_cooldown_ms:
            stats.counts["skip_cooldown"] += 1
            self._maybe_log_summary(video_id, stats)
            return False

        has_src = media.has_src(handle)
        ready_state = media.read(handle, "ready_state", 0) or 0
        stats.last_ready_state = ready_state
        stats.last_has_src = has_src
        if not has_src and ready_state < media.HAVE_CURRENT_DATA:
            stats.counts["skip_not_ready"] += 1
            self._maybe_log_summary(video_id, stats)
            return False

        self._last_probe[video_id] = now
        stats.counts["attempt"] += 1
        stats.last_state = monitor.state.state.value
        error = _start_play(handle)
        if error:
            stats.counts["play_rejected"] += 1
            stats.last_error = error
        self._maybe_log_summary(video_id, stats)
        return True

    def forget(self, video_id: str):
        self._last_probe.pop(video_id, None)
        self._stats.pop(video_id, None)


class FailoverManager:
    """One failover at a time: switch, wait for progress, keep or revert."""

    def __init__(
        self,
        monitors: dict[str, PlaybackMonitor],
        selector: CandidateSelector,
        config: Config,
        scheduler: Scheduler,
        reset_backoff: Callable[[MonitorState, str, str], None] | None = None,
        emit: Callable[..., None] | None = None,
        metrics: Metrics | None = None,
    ):
        self.monitors = monitors
        self.selector = selector
        self.config = config
        self.scheduler = scheduler
        self.reset_backoff = reset_backoff or (lambda ms, reason, video_id: None)
        self._emit = emit or (lambda *a, **k: None)
        self.metrics = metrics
        self.probes = ProbeController(monitors, config, scheduler)
        self.in_progress = False
        self.from_id: str | None = None
        self.to_id: str | None = None
        self.start_time = 0.0
        self.last_attempt_time = 0.0
        self.baseline_progress_time = 0.0
        self.recent_failures: dict[str, float] = {}
        self._timer: TimerHandle | None = None

    def reset(self, reason: str):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.in_progress:
            logger.info("[FAILOVER] Cleared (%s, from=%s, to=%s)", reason, self.from_id, self.to_id)
        self.in_progress = False
        self.from_id = None
        self.to_id = None
        self.start_time = 0.0
        self.baseline_progress_time = 0.0

    def _excluded(self, now: float) -> set[str]:
        cooldown = self.config.stall.failover_cooldown_ms
        for video_id, failed_at in list(self.recent_failures.items()):
            if now - failed_at >= cooldown:
                del self.recent_failures[video_id]
        return set(self.recent_failures)

    def select_candidate(self, from_id: str | None, excluded: set[str]) -> CandidateScore | None:
        """Highest-scoring trusted, live, non-fallback handle other than from_id."""
        best: CandidateScore | None = None
        for video_id in list(self.monitors):
            if video_id == from_id or video_id in excluded:
                continue
            s = self.selector.score(video_id)
            if s is None or not s.trusted or s.dead_candidate:
                continue
            if media.is_fallback_src(s.vs.current_src):
                continue
            if best is None or s.score > best.score:
                best = s
        return best

    def attempt(self, from_id: str, reason: str, ms: MonitorState | None = None) -> bool:
        now = self.scheduler.now()
        stall = self.config.stall
        if self.in_progress:
            logger.debug("[FAILOVER_SKIP] %s: failover already in progress (%s)", from_id, reason)
            return False
        if self.last_attempt_time and now - self.last_attempt_time < stall.failover_cooldown_ms:
            logger.debug("[FAILOVER_SKIP] %s: cooldown active (%.0fms since last attempt)",
                         from_id, now - self.last_attempt_time)
            return False

        excluded = self._excluded(now)
        candidate = self.select_candidate(from_id, excluded)
        if candidate is None:
            logger.info("[FAILOVER_SKIP] %s: no trusted candidate available (%s, excluded=%s)",
                        from_id, reason, sorted(excluded))
            return False

        to_id = candidate.id
        target = self.monitors[to_id]
        self.in_progress = True
        self.last_attempt_time = now
        self.from_id = from_id
        self.to_id = to_id
        self.start_time = now
        self.baseline_progress_time = target.state.last_progress_time

        self.selector.set_active_id(to_id, "failover")
        stalled_for = now - ms.last_progress_time if ms and ms.last_progress_time else None
        logger.warning("[FAILOVER] Switching %s -> %s (%s, stalled_for=%sms, score=%d)",
                       from_id, to_id, reason, stalled_for, candidate.score)
        self._emit("failover", f"Failover {from_id} -> {to_id}", reason, video_id=from_id)
        if self.metrics:
            self.metrics.increment("failovers")

        error = _start_play(target.handle)
        if error:
            logger.info("[FAILOVER_PLAY] %s: play rejected (%s)", to_id, error)

        self._timer = self.scheduler.call_later(
            stall.failover_progress_timeout_ms, lambda: self._check(from_id, to_id))
        return True

    def _check(self, from_id: str, to_id: str):
        self._timer = None
        if not self.in_progress or self.to_id != to_id:
            return
        target = self.monitors.get(to_id)
        latest = target.state.last_progress_time if target else 0.0
        progressed = (
            target is not None
            and target.state.has_progress
            and latest > self.baseline_progress_time
            and latest >= self.start_time
        )
        if progressed:
            logger.info("[FAILOVER_SUCCESS] %s -> %s progressed after %.0fms",
                        from_id, to_id, latest - self.start_time)
            self.reset_backoff(target.state, "failover_success", to_id)
            self.recent_failures.pop(to_id, None)
        else:
            logger.warning("[FAILOVER_REVERT] %s did not progress within %dms, back to %s",
                           to_id, self.config.stall.failover_progress_timeout_ms, from_id)
            self.recent_failures[to_id] = self.scheduler.now()
            if from_id in self.monitors:
                self.selector.set_active_id(from_id, "failover_revert")
        self.reset("timeout")

    def should_ignore_stall(self, video_id: str) -> bool:
        if self.in_progress and self.to_id == video_id:
            elapsed = self.scheduler.now() - self.start_time
            if elapsed < self.config.stall.failover_progress_timeout_ms:
                logger.debug("[FAILOVER] %s: stall ignored during failover (%.0fms)", video_id, elapsed)
                return True
        return False

    def on_monitor_removed(self, video_id: str):
        self.probes.forget(video_id)
        if self.in_progress and video_id in (self.to_id, self.from_id):
            self.reset("monitor_removed")

    def status(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "from": self.from_id,
            "to": self.to_id,
            "recent_failures": sorted(self.recent_failures),
        }
