"""Applies recovery decisions: the only writer of backoff/escalation state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from streamheal.core.backoff import BackoffManager
from streamheal.core.policies import (
    NoHealPointDecision,
    NoHealPointPolicy,
    PlayErrorDecision,
    PlayErrorPolicy,
    PlayFailure,
    ProbationPolicy,
    RecoveryContext,
    StallSkipDecision,
    StallSkipPolicy,
)
from streamheal.core.state import MonitorState, mark_emergency_switch, mark_refresh, reset_play_error_state

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.metrics import Metrics
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoHealPointResult:
    should_failover: bool = False
    refreshed: bool = False
    probation_triggered: bool = False
    emergency_switched: bool = False
    quieted: bool = False


@dataclass(frozen=True)
class PlayFailureResult:
    should_failover: bool = False
    probation_triggered: bool = False
    repeat_stuck: bool = False


class RecoveryDecisionApplier:
    def __init__(
        self,
        config: Config,
        backoff: BackoffManager,
        probation: ProbationPolicy,
        selector: CandidateSelector | None = None,
        on_persistent_failure: Callable[[str, str, str], None] | None = None,
        emit: Callable[..., None] | None = None,
        metrics: Metrics | None = None,
    ):
        self.config = config
        self.backoff = backoff
        self.probation = probation
        self.selector = selector
        self.on_persistent_failure = on_persistent_failure or (lambda video_id, reason, detail: None)
        self._emit = emit or (lambda *a, **k: None)
        self.metrics = metrics

    def apply(self, decision):
        if isinstance(decision, NoHealPointDecision):
            return self.apply_no_heal_point(decision)
        if isinstance(decision, PlayErrorDecision):
            return self.apply_play_failure(decision)
        if isinstance(decision, StallSkipDecision):
            return self.apply_stall_skip(decision)
        return None

    # --- No heal point ---

    def _emergency_switch(self, ms: MonitorState, reason: str, now: float, **options) -> bool:
        if self.selector is None:
            return False
        if options:
            label = "Last-resort switch after no-heal point"
        else:
            label = "Emergency switch after no-heal point"
        picked = self.selector.select_emergency_candidate(reason, label=label, **options)
        if picked is None:
            return False
        mark_emergency_switch(ms, now)
        return True

    def _refresh(self, video_id: str, ms: MonitorState, reason: str, now: float) -> bool:
        mark_refresh(ms, now)
        ms.no_heal_point_refresh_until = 0.0
        logger.warning("[REFRESH] %s: refreshing after %d no-heal points (%s)",
                       video_id, ms.no_heal_point_count, reason)
        ms.no_heal_point_count = 0
        self.on_persistent_failure(video_id, reason, "no_heal_point")
        return True

    def apply_no_heal_point(self, d: NoHealPointDecision) -> NoHealPointResult:
        ctx = d.context
        ms = ctx.state
        video_id = ctx.video_id
        stall = self.config.stall

        self.backoff.apply_backoff(video_id, ms, d.reason)
        if self.metrics:
            self.metrics.increment("no_heal_points")
        self._emit("no_heal_point", f"No heal point on {video_id}",
                   f"reason={d.reason} count={ms.no_heal_point_count}", video_id=video_id)

        if d.quiet_eligible:
            ms.no_heal_point_quiet_until = d.quiet_until
            ms.next_heal_allowed_time = d.quiet_until
            dc = ctx.decision_context()
            logger.warning("[BACKOFF] %s: recovery quieted for %dms after %d no-heal points "
                           "(stalled_for=%sms, starved=%s)",
                           video_id, stall.no_heal_point_quiet_ms, ms.no_heal_point_count,
                           dc.stalled_for_ms, ms.buffer_starved)
            return NoHealPointResult(quieted=True)

        if d.should_set_refresh_window:
            ms.no_heal_point_refresh_until = d.refresh_until

        if d.should_rescan_no_buffer:
            self.probation.trigger_rescan_for_key(
                f"no_buffer:{video_id}", "no_buffer",
                {"video_id": video_id, "reason": d.reason, "buffer_ranges": "none"},
            )

        probation_triggered = d.probation_eligible and self.probation.maybe_trigger_probation(
            video_id, ms, d.reason, ms.no_heal_point_count, stall.probation_after_no_heal_points,
        )

        emergency = d.emergency_eligible and self._emergency_switch(ms, d.reason, ctx.now)
        last_resort = not emergency and d.last_resort_eligible and self._emergency_switch(
            ms, f"{d.reason}_last_resort", ctx.now,
            min_ready_state=stall.no_heal_point_last_resort_min_ready_state,
            require_src=stall.no_heal_point_last_resort_require_src,
            allow_dead=stall.no_heal_point_last_resort_allow_dead,
        )
        refreshed = (
            not emergency and not last_resort and d.refresh_eligible
            and self._refresh(video_id, ms, d.reason, ctx.now)
        )
        return NoHealPointResult(
            should_failover=d.should_failover,
            refreshed=refreshed,
            probation_triggered=probation_triggered,
            emergency_switched=emergency or last_resort,
        )

    # --- Play failure ---

    def apply_play_failure(self, d: PlayErrorDecision) -> PlayFailureResult:
        ctx = d.context
        ms = ctx.state
        video_id = ctx.video_id
        failure = d.failure

        ms.play_error_count = d.count
        ms.last_play_error_time = ctx.now
        ms.next_play_heal_allowed_time = ctx.now + d.backoff_ms
        if self.metrics:
            self.metrics.increment("play_errors")
        logger.warning("[PLAY_BACKOFF] %s: play failed (%s, error=%s), count=%d, backoff=%.0fms%s",
                       video_id, failure.reason, failure.error_name or failure.error, d.count,
                       d.backoff_ms, " (abort)" if d.is_abort else "")
        self._emit("play_error", f"Play failed on {video_id}",
                   f"error={failure.error_name or failure.error} count={d.count}", video_id=video_id)

        if d.repeat_stuck:
            logger.warning("[HEALPOINT_STUCK] %s: heal point %s failed %d times in a row",
                           video_id, failure.heal_range, failure.heal_point_repeat_count)

        probation_triggered = d.probation_eligible and self.probation.maybe_trigger_probation(
            video_id, ms, failure.reason or "play_error", d.count,
            self.config.stall.probation_after_play_errors,
        )
        if d.repeat_stuck and not probation_triggered:
            self.probation.trigger_rescan("healpoint_stuck", {
                "video_id": video_id,
                "count": failure.heal_point_repeat_count,
                "trigger": "healpoint_stuck",
            })
        return PlayFailureResult(d.should_failover, probation_triggered, d.repeat_stuck)

    # --- Stall skip ---

    def apply_stall_skip(self, d: StallSkipDecision) -> bool:
        """Returns True when stall handling should be skipped. Skip logs are throttled."""
        if not d.should_skip:
            return False
        ms = d.context.state
        now = d.context.now
        video_id = d.context.video_id
        log_cfg = self.config.logging

        if d.reason == "backoff":
            if now - ms.last_backoff_log_time > log_cfg.backoff_log_interval_ms:
                ms.last_backoff_log_time = now
                logger.debug("[BACKOFF] %s: stall skipped due to backoff (remaining=%.0fms, count=%d)",
                             video_id, d.remaining_ms, ms.no_heal_point_count)
        elif d.reason == "buffer_starve":
            if now - ms.last_starve_skip_log_time > log_cfg.starve_log_ms:
                ms.last_starve_skip_log_time = now
                logger.debug("[STARVE_SKIP] %s: stall skipped due to buffer starvation "
                             "(remaining=%.0fms, ahead=%s)",
                             video_id, d.remaining_ms,
                             f"{ms.last_buffer_ahead:.3f}" if ms.last_buffer_ahead is not None else None)
        elif d.reason == "play_backoff":
            if now - ms.last_play_backoff_log_time > log_cfg.backoff_log_interval_ms:
                ms.last_play_backoff_log_time = now
                logger.debug("[PLAY_BACKOFF] %s: stall skipped due to play backoff "
                             "(remaining=%.0fms, errors=%d)",
                             video_id, d.remaining_ms, ms.play_error_count)
        elif d.reason == "self_recover" and d.self_recover is not None:
            if now - ms.last_self_recover_skip_log_time > log_cfg.backoff_log_interval_ms:
                ms.last_self_recover_skip_log_time = now
                sr = d.self_recover
                logger.debug("[SELF_RECOVER_SKIP] %s: stall skipped for self-recovery window "
                             "(stalled_for=%.0fms, grace=%.0fms, signals=%s)",
                             video_id, sr.stalled_for_ms, sr.grace_ms, ",".join(sr.signals))
        elif d.reason == "quiet":
            logger.debug("[BACKOFF] %s: stall skipped, recovery quiet for %.0fms", video_id, d.remaining_ms)
        return True


class RecoveryPolicy:
    """Policy engine facade: decide with the policies, apply with the applier."""

    def __init__(
        self,
        config: Config,
        scheduler: Scheduler,
        monitor_count: Callable[[], int],
        selector: CandidateSelector | None = None,
        on_rescan: Callable[[str, dict], None] | None = None,
        on_persistent_failure: Callable[[str, str, str], None] | None = None,
        emit: Callable[..., None] | None = None,
        metrics: Metrics | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.backoff = BackoffManager(config.stall, scheduler)
        self.probation = ProbationPolicy(config, scheduler, selector, on_rescan)
        self.no_heal_point = NoHealPointPolicy(config, monitor_count, selector is not None)
        self.play_error = PlayErrorPolicy(config, monitor_count)
        self.stall_skip = StallSkipPolicy(config, self.backoff)
        self.applier = RecoveryDecisionApplier(
            config, self.backoff, self.probation, selector, on_persistent_failure, emit, metrics,
        )

    def context(self, handle, ms: MonitorState, video_id: str, **kwargs) -> RecoveryContext:
        return RecoveryContext(handle, ms, video_id, self.scheduler.now(), **kwargs)

    def reset_backoff(self, ms: MonitorState, reason: str, video_id: str = ""):
        self.backoff.reset_backoff(ms, reason, video_id)

    def reset_play_error(self, ms: MonitorState, reason: str, video_id: str = ""):
        if ms.play_error_count > 0 or ms.next_play_heal_allowed_time > 0:
            logger.debug("[PLAY_BACKOFF] %s: reset (%s, previous errors=%d, repeats=%d)",
                         video_id, reason, ms.play_error_count, ms.heal_point_repeat_count)
        reset_play_error_state(ms)

    def handle_no_heal_point(self, ctx: RecoveryContext, reason: str) -> NoHealPointResult:
        return self.applier.apply_no_heal_point(self.no_heal_point.decide(ctx, reason))

    def handle_play_failure(self, ctx: RecoveryContext, failure: PlayFailure) -> PlayFailureResult:
        return self.applier.apply_play_failure(self.play_error.decide(ctx, failure))

    def should_skip_stall(self, ctx: RecoveryContext) -> bool:
        return self.applier.apply_stall_skip(self.stall_skip.decide(ctx))
