"""Recovery decisions: no-heal-point, play failure, stall skip, probation.

The three decide() functions only read their RecoveryContext and return a
decision object; RecoveryDecisionApplier (core/applier.py) is the single
place that mutates MonitorState and triggers side effects from them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media
from streamheal.core.backoff import BackoffManager, BackoffStatus, backoff_delay
from streamheal.core.buffer import BufferRange
from streamheal.core.state import MonitorState

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)

ABORT_ERROR = "AbortError"
PLAY_STUCK = "PLAY_STUCK"


# --- Context ---

@dataclass(frozen=True)
class DecisionContext:
    """Media facts sampled once per decision."""

    now: float
    video_id: str
    ranges: tuple[BufferRange, ...]
    buffer_end: float | None
    headroom: float | None
    buffer_ahead: float | None
    has_buffer: bool
    has_src: bool
    current_time: float | None
    paused: bool | None
    ready_state: int
    network_state: int
    stalled_for_ms: float | None


def build_decision_context(handle, ms: MonitorState | None, video_id: str, now: float) -> DecisionContext:
    ranges = tuple(buffer.get_ranges(handle))
    t = media.current_time(handle)
    buffer_end = ranges[-1].end if ranges else None
    headroom = max(0.0, buffer_end - t) if buffer_end is not None and t is not None else None
    info = buffer.buffer_ahead(handle)
    return DecisionContext(
        now=now,
        video_id=video_id,
        ranges=ranges,
        buffer_end=buffer_end,
        headroom=headroom,
        buffer_ahead=info.buffer_ahead,
        has_buffer=info.has_buffer,
        has_src=media.has_src(handle),
        current_time=t,
        paused=media.read(handle, "paused"),
        ready_state=media.read(handle, "ready_state", 0) or 0,
        network_state=media.read(handle, "network_state", 0) or 0,
        stalled_for_ms=now - ms.last_progress_time if ms and ms.last_progress_time else None,
    )


@dataclass
class RecoveryContext:
    handle: object
    state: MonitorState
    video_id: str
    now: float
    trigger: str | None = None
    reason: str | None = None
    detail: dict = field(default_factory=dict)
    _decision: DecisionContext | None = field(default=None, repr=False)

    def decision_context(self) -> DecisionContext:
        if self._decision is None:
            self._decision = build_decision_context(self.handle, self.state, self.video_id, self.now)
        return self._decision


# --- Decisions ---

@dataclass(frozen=True)
class NoHealPointDecision:
    context: RecoveryContext
    reason: str
    next_count: int
    should_set_refresh_window: bool = False
    refresh_until: float = 0.0
    should_rescan_no_buffer: bool = False
    probation_eligible: bool = False
    should_failover: bool = False
    emergency_eligible: bool = False
    last_resort_eligible: bool = False
    refresh_eligible: bool = False
    quiet_eligible: bool = False
    quiet_until: float = 0.0


@dataclass(frozen=True)
class PlayFailure:
    """What went wrong in one heal attempt's seek/play phase."""

    reason: str = "play_error"
    error: str | None = None
    error_name: str | None = None
    heal_range: str | None = None
    heal_point_repeat_count: int = 0

    @property
    def is_abort(self) -> bool:
        return self.error_name == ABORT_ERROR or "aborted" in (self.error or "").lower()


@dataclass(frozen=True)
class PlayErrorDecision:
    context: RecoveryContext
    failure: PlayFailure
    count: int
    backoff_ms: float
    is_abort: bool
    repeat_stuck: bool
    probation_eligible: bool
    should_failover: bool


@dataclass(frozen=True)
class SelfRecoverSignals:
    stalled_for_ms: float
    grace_ms: float
    extra_grace_ms: float
    signals: tuple[str, ...]
    buffer_ahead: float | None
    buffer_starved: bool


@dataclass(frozen=True)
class StallSkipDecision:
    context: RecoveryContext
    should_skip: bool
    reason: str
    remaining_ms: float = 0.0
    backoff: BackoffStatus | None = None
    self_recover: SelfRecoverSignals | None = None


# --- Probation ---

class ProbationPolicy:
    """Rate-limited probation activation plus candidate rescan requests."""

    def __init__(
        self,
        config: Config,
        scheduler: Scheduler,
        selector: CandidateSelector | None = None,
        on_rescan: Callable[[str, dict], None] | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.selector = selector
        self.on_rescan = on_rescan or (lambda reason, detail: None)
        self._last_rescan_at = 0.0
        self._last_rescan_by_key: dict[str, float] = {}

    def can_rescan(self, now: float | None = None) -> bool:
        if now is None:
            now = self.scheduler.now()
        return now - self._last_rescan_at >= self.config.stall.probation_rescan_cooldown_ms

    def trigger_rescan(self, reason: str, detail: dict | None = None) -> bool:
        now = self.scheduler.now()
        if not self.can_rescan(now):
            return False
        self._last_rescan_at = now
        if self.selector is not None:
            self.selector.activate_probation(reason)
        self.on_rescan(reason, detail or {})
        return True

    def trigger_rescan_for_key(self, key: str, reason: str, detail: dict | None = None) -> bool:
        """Like trigger_rescan, but rate-limited per key (e.g. ``no_buffer:video-2``)."""
        now = self.scheduler.now()
        last = self._last_rescan_by_key.get(key, 0.0)
        if last and now - last < self.config.stall.probation_rescan_cooldown_ms:
            return False
        self._last_rescan_by_key[key] = now
        if self.selector is not None:
            self.selector.activate_probation(reason)
        self.on_rescan(reason, detail or {})
        return True

    def maybe_trigger_probation(self, video_id: str, ms: MonitorState | None, trigger: str | None,
                                count: int, threshold: int) -> bool:
        if ms is None or count < threshold:
            return False
        reason = trigger or "probation"
        return self.trigger_rescan(reason, {"video_id": video_id, "count": count, "trigger": reason})


# --- No heal point ---

class NoHealPointPolicy:
    def __init__(
        self,
        config: Config,
        monitor_count: Callable[[], int],
        can_select_emergency: bool = True,
    ):
        self.config = config
        self.monitor_count = monitor_count
        self.can_select_emergency = can_select_emergency

    def _can_emergency_switch(self, ms: MonitorState, next_count: int, now: float) -> bool:
        stall = self.config.stall
        if not self.can_select_emergency or not stall.no_heal_point_emergency_switch:
            return False
        if next_count < stall.no_heal_point_emergency_after:
            return False
        if self.monitor_count() < 2:
            return False
        return now - ms.last_emergency_switch_at >= stall.no_heal_point_emergency_cooldown_ms

    def _can_last_resort_switch(self, ms: MonitorState, next_count: int, now: float) -> bool:
        stall = self.config.stall
        if not stall.no_heal_point_last_resort_switch:
            return False
        if next_count < stall.no_heal_point_last_resort_after:
            return False
        if stall.no_heal_point_last_resort_require_starved and not ms.buffer_starved:
            return False
        if self.monitor_count() < 2:
            return False
        return self._can_emergency_switch(ms, next_count, now)

    def _can_refresh(self, ms: MonitorState, next_count: int, now: float, refresh_until: float) -> bool:
        stall = self.config.stall
        if next_count < stall.refresh_after_no_heal_points:
            return False
        if refresh_until and now < refresh_until:
            return False
        next_allowed = ms.last_refresh_at + stall.refresh_cooldown_ms if ms.last_refresh_at else 0
        return now >= next_allowed

    def decide(self, ctx: RecoveryContext, reason: str) -> NoHealPointDecision:
        stall = self.config.stall
        ms = ctx.state
        dc = ctx.decision_context()
        now = dc.now
        next_count = ms.no_heal_point_count + 1
        monitors = self.monitor_count()

        should_set_refresh_window = (
            next_count >= stall.refresh_after_no_heal_points
            and bool(dc.ranges)
            and dc.headroom is not None
            and dc.headroom < self.config.recovery.min_heal_headroom_s
            and dc.has_src
            and dc.ready_state >= stall.no_heal_point_refresh_min_ready_state
            and not ms.no_heal_point_refresh_until
        )
        refresh_until = ms.no_heal_point_refresh_until or (
            now + stall.no_heal_point_refresh_delay_ms if should_set_refresh_window else 0.0
        )
        stalled_long = dc.stalled_for_ms is not None and dc.stalled_for_ms >= stall.failover_after_stall_ms
        should_failover = monitors > 1 and (
            next_count >= stall.failover_after_no_heal_points or stalled_long
        )
        quiet_eligible = (
            monitors <= 1
            and next_count >= stall.no_heal_point_quiet_after
            and ms.buffer_starved
            and stalled_long
        )

        return NoHealPointDecision(
            context=ctx,
            reason=reason,
            next_count=next_count,
            should_set_refresh_window=should_set_refresh_window,
            refresh_until=refresh_until,
            should_rescan_no_buffer=not dc.ranges,
            probation_eligible=next_count >= stall.probation_after_no_heal_points,
            should_failover=should_failover,
            emergency_eligible=self._can_emergency_switch(ms, next_count, now),
            last_resort_eligible=self._can_last_resort_switch(ms, next_count, now),
            refresh_eligible=self._can_refresh(ms, next_count, now, refresh_until),
            quiet_eligible=quiet_eligible,
            quiet_until=now + stall.no_heal_point_quiet_ms if quiet_eligible else 0.0,
        )


# --- Play failure ---

class PlayErrorPolicy:
    def __init__(self, config: Config, monitor_count: Callable[[], int]):
        self.config = config
        self.monitor_count = monitor_count

    def decide(self, ctx: RecoveryContext, failure: PlayFailure) -> PlayErrorDecision:
        stall = self.config.stall
        ms = ctx.state
        now = ctx.now

        count = ms.play_error_count
        if ms.last_play_error_time and now - ms.last_play_error_time > stall.play_error_decay_ms:
            count = 0
        count += 1

        is_abort = failure.is_abort
        if is_abort:
            base = stall.play_abort_backoff_base_ms or stall.play_error_backoff_base_ms
            maximum = stall.play_abort_backoff_max_ms or stall.play_error_backoff_max_ms
        else:
            base = stall.play_error_backoff_base_ms
            maximum = stall.play_error_backoff_max_ms

        repeat_stuck = failure.heal_point_repeat_count >= stall.healpoint_repeat_failover_count
        should_failover = self.monitor_count() > 1 and (
            count >= stall.failover_after_play_errors or repeat_stuck
        )
        return PlayErrorDecision(
            context=ctx,
            failure=failure,
            count=count,
            backoff_ms=backoff_delay(base, maximum, count),
            is_abort=is_abort,
            repeat_stuck=repeat_stuck,
            probation_eligible=count >= stall.probation_after_play_errors,
            should_failover=should_failover,
        )


# --- Stall skip ---

class StallSkipPolicy:
    def __init__(self, config: Config, backoff: BackoffManager):
        self.config = config
        self.backoff = backoff

    def collect_self_recover_signals(self, ms: MonitorState, dc: DecisionContext) -> SelfRecoverSignals | None:
        """Media activity newer than the last progress suggests the player is recovering on its own."""
        stall = self.config.stall
        stalled_for = dc.stalled_for_ms
        if stalled_for is None or (stall.self_recover_max_ms and stalled_for > stall.self_recover_max_ms):
            return None

        base_grace = stall.self_recover_grace_ms
        extra_grace = 0 if ms.buffer_starved else stall.self_recover_extra_ms
        extended_grace = base_grace + extra_grace
        if stall.self_recover_max_ms:
            extended_grace = min(extended_grace, stall.self_recover_max_ms)

        now = dc.now

        def within(ts: float, window_ms: float) -> bool:
            return ts > ms.last_progress_time and now - ts <= window_ms

        signals = []
        strong = False
        if within(ms.last_ready_state_change_time, extended_grace):
            signals.append("ready_state")
            strong = True
        if within(ms.last_buffer_ahead_increase_time, extended_grace):
            signals.append("buffer_growth")
            strong = True
        if within(ms.last_src_change_time, base_grace):
            signals.append("src_change")
        if within(ms.last_network_state_change_time, base_grace):
            signals.append("network_state")
        if within(ms.last_buffered_length_change_time, base_grace):
            signals.append("buffer_ranges")

        if not signals:
            return None
        return SelfRecoverSignals(
            stalled_for_ms=stalled_for,
            grace_ms=extended_grace if strong else base_grace,
            extra_grace_ms=extra_grace if strong else 0,
            signals=tuple(signals),
            buffer_ahead=ms.last_buffer_ahead,
            buffer_starved=ms.buffer_starved,
        )

    def decide(self, ctx: RecoveryContext) -> StallSkipDecision:
        ms = ctx.state
        now = ctx.now

        if ms.no_heal_point_quiet_until and now < ms.no_heal_point_quiet_until:
            return StallSkipDecision(ctx, True, "quiet", ms.no_heal_point_quiet_until - now)

        status = self.backoff.get_backoff_status(ms, now)
        if status.should_skip:
            return StallSkipDecision(ctx, True, "backoff", status.remaining_ms, backoff=status)

        if ms.buffer_starve_until and now < ms.buffer_starve_until:
            return StallSkipDecision(ctx, True, "buffer_starve", ms.buffer_starve_until - now)

        if ms.next_play_heal_allowed_time and now < ms.next_play_heal_allowed_time:
            return StallSkipDecision(ctx, True, "play_backoff", ms.next_play_heal_allowed_time - now)

        signals = self.collect_self_recover_signals(ms, ctx.decision_context())
        if signals is not None:
            return StallSkipDecision(ctx, True, "self_recover", self_recover=signals)

        return StallSkipDecision(ctx, False, "none")
