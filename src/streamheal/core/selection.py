"""Candidate evaluation, switch policy, probation, pruning and emergency picks.

Exactly one monitored handle is the *active* candidate: the one the stall
handler heals. CandidateSelector re-scores all handles on every evaluation
and decides whether the active candidate should change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable

from streamheal.core import media
from streamheal.core.scoring import CLEARLY_BAD_REASONS, CandidateScore, score_candidate
from streamheal.core.state import STALLED_STATES, MonitorState, PlaybackState

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.monitor import PlaybackMonitor

logger = logging.getLogger(__name__)

ACTION_NONE = "none"
ACTION_STAY = "stay"
ACTION_SWITCH = "switch"
ACTION_FAST_SWITCH = "fast_switch"


@dataclass(frozen=True)
class Evaluation:
    scores: tuple[CandidateScore, ...]
    current: CandidateScore | None
    best: CandidateScore | None
    best_non_dead: CandidateScore | None
    best_trusted: CandidateScore | None
    best_trusted_non_dead: CandidateScore | None

    @property
    def preferred(self) -> CandidateScore | None:
        return self.best_trusted_non_dead or self.best_non_dead or self.best_trusted or self.best


def evaluate(scores: list[CandidateScore], active_id: str | None) -> Evaluation:
    """Pick the best candidates per category; ties keep the earlier entry."""
    best = best_non_dead = best_trusted = best_trusted_non_dead = current = None
    for s in scores:
        if s.id == active_id:
            current = s
        if best is None or s.score > best.score:
            best = s
        if not s.dead_candidate and (best_non_dead is None or s.score > best_non_dead.score):
            best_non_dead = s
        if s.trusted:
            if best_trusted is None or s.score > best_trusted.score:
                best_trusted = s
            if not s.dead_candidate and (
                best_trusted_non_dead is None or s.score > best_trusted_non_dead.score
            ):
                best_trusted_non_dead = s
    return Evaluation(tuple(scores), current, best, best_non_dead, best_trusted, best_trusted_non_dead)


class Probation:
    """Time-boxed window that relaxes trust/progress requirements for switching."""

    def __init__(self, scheduler: Scheduler, window_ms: float):
        self.scheduler = scheduler
        self.window_ms = window_ms
        self.until = 0.0
        self.reason: str | None = None

    def activate(self, reason: str) -> float:
        self.until = self.scheduler.now() + self.window_ms
        self.reason = reason
        logger.info("[PROBATION] Active for %dms (%s)", self.window_ms, reason)
        return self.until

    def is_active(self) -> bool:
        if not self.until:
            return False
        if self.scheduler.now() >= self.until:
            logger.debug("[PROBATION] Window expired (%s)", self.reason)
            self.until = 0.0
            self.reason = None
            return False
        return True


@dataclass(frozen=True)
class PolicyResult:
    allow: bool
    delta: int = 0
    current_score: int | None = None
    suppression: str | None = None


@dataclass(frozen=True)
class SwitchDecision:
    action: str
    reason: str
    from_id: str | None
    to_id: str | None
    suppression: str | None = None
    preferred: CandidateScore | None = None
    active_state: PlaybackState | None = None
    active_is_stalled: bool = False
    active_no_heal_points: int = 0
    active_stalled_for_ms: float | None = None
    probation_active: bool = False
    probation_ready: bool = False
    policy: PolicyResult | None = None


class SwitchPolicy:
    def __init__(self, config: Config):
        self.config = config

    def should_switch(self, current: CandidateScore | None, best: CandidateScore) -> PolicyResult:
        if current is None:
            return PolicyResult(allow=True)
        delta = best.score - current.score
        current_bad = current.has_reason(*CLEARLY_BAD_REASONS)
        if not best.progress_eligible and not current_bad:
            return PolicyResult(False, delta, current.score, "insufficient_progress")
        if not current_bad and delta < self.config.monitoring.candidate_switch_delta:
            return PolicyResult(False, delta, current.score, "score_delta")
        return PolicyResult(True, delta, current.score)

    def decide(
        self,
        *,
        now: float,
        current: CandidateScore | None,
        current_state: MonitorState | None,
        preferred: CandidateScore | None,
        active_id: str | None,
        probation_active: bool,
        reason: str,
    ) -> SwitchDecision:
        if preferred is None or preferred.id == active_id:
            return SwitchDecision(ACTION_NONE, reason, active_id, preferred.id if preferred else None,
                                  preferred=preferred)

        mon = self.config.monitoring
        stall = self.config.stall
        active_state = current.state if current else None
        no_heal_points = current_state.no_heal_point_count if current_state else 0
        stalled_for_ms = (
            now - current_state.last_progress_time
            if current_state and current_state.last_progress_time else None
        )
        active_healing = active_state == PlaybackState.HEALING
        active_is_stalled = current is None or active_state in STALLED_STATES
        probation_ready = (
            probation_active
            and preferred.progress_streak_ms >= mon.probation_min_progress_ms
            and (preferred.vs.ready_state >= mon.probation_ready_state or bool(preferred.vs.current_src))
        )

        base = dict(
            reason=reason,
            from_id=active_id,
            to_id=preferred.id,
            preferred=preferred,
            active_state=active_state,
            active_is_stalled=active_is_stalled,
            active_no_heal_points=no_heal_points,
            active_stalled_for_ms=stalled_for_ms,
            probation_active=probation_active,
            probation_ready=probation_ready,
        )

        fast_switch = (
            active_healing
            and preferred.trusted
            and preferred.progress_eligible
            and preferred.progress_streak_ms >= mon.candidate_min_progress_ms
            and (
                no_heal_points >= stall.fast_switch_after_no_heal_points
                or (stalled_for_ms is not None and stalled_for_ms >= stall.fast_switch_after_stall_ms)
            )
        )
        if fast_switch:
            return SwitchDecision(ACTION_FAST_SWITCH, **base)

        if not preferred.progress_eligible and not probation_ready:
            return SwitchDecision(ACTION_STAY, suppression="preferred_not_progress_eligible", **base)
        if not active_is_stalled:
            return SwitchDecision(ACTION_STAY, suppression="active_not_stalled", **base)
        if current is not None and current.trusted and not preferred.trusted:
            return SwitchDecision(ACTION_STAY, suppression="trusted_active_blocks_untrusted", **base)
        if not preferred.trusted and not probation_active:
            return SwitchDecision(ACTION_STAY, suppression="untrusted_outside_probation", **base)

        for_policy = replace(preferred, progress_eligible=True) if probation_ready else preferred
        policy = self.should_switch(current, for_policy)
        if policy.allow:
            return SwitchDecision(ACTION_SWITCH, policy=policy, **base)
        return SwitchDecision(ACTION_STAY, suppression=policy.suppression or "score_delta",
                              policy=policy, **base)


@dataclass
class ActiveContext:
    active_id: str | None
    monitor: PlaybackMonitor | None
    active_state: PlaybackState | None
    active_is_stalled: bool
    active_is_severe: bool


@dataclass
class ForceSwitchResult:
    context: ActiveContext
    active_id: str | None
    switched: bool = False
    suppressed: bool = False

    @property
    def active_is_stalled(self) -> bool:
        return self.context.active_is_stalled


@dataclass(frozen=True)
class EmergencyPick:
    id: str
    score: CandidateScore


@dataclass
class SelectorState:
    active_id: str | None = None
    last_good_id: str | None = None
    last_decision: SwitchDecision | None = field(default=None, repr=False)


class CandidateSelector:
    """Scores monitored handles and owns the active/last-good candidate ids.

    ``monitors`` is the registry's live mapping of id -> PlaybackMonitor; the
    selector reads it but never adds or removes entries itself (pruning goes
    through the stop_monitoring callback).
    """

    def __init__(
        self,
        monitors: dict[str, PlaybackMonitor],
        config: Config,
        scheduler: Scheduler,
        emit: Callable[..., None] | None = None,
    ):
        self.monitors = monitors
        self.config = config
        self.scheduler = scheduler
        self.policy = SwitchPolicy(config)
        self.probation = Probation(scheduler, config.monitoring.probation_window_ms)
        self.selector_state = SelectorState()
        self._emit = emit or (lambda *a, **k: None)
        self._lock_checker: Callable[[], bool] | None = None

    # --- Active id ---

    @property
    def active_id(self) -> str | None:
        return self.selector_state.active_id

    @property
    def last_good_id(self) -> str | None:
        return self.selector_state.last_good_id

    def set_active_id(self, video_id: str | None, reason: str = ""):
        previous = self.selector_state.active_id
        self.selector_state.active_id = video_id
        if video_id != previous and video_id is not None:
            self._emit("switch", f"Active candidate {video_id}", f"from={previous} reason={reason}",
                       video_id=video_id)

    def clear_last_good(self):
        self.selector_state.last_good_id = None

    def set_lock_checker(self, fn: Callable[[], bool] | None):
        """Install a predicate that freezes automatic switching (failover in flight)."""
        self._lock_checker = fn

    def activate_probation(self, reason: str) -> float:
        return self.probation.activate(reason)

    def is_probation_active(self) -> bool:
        return self.probation.is_active()

    # --- Scoring ---

    def score(self, video_id: str) -> CandidateScore | None:
        monitor = self.monitors.get(video_id)
        if monitor is None:
            return None
        return score_candidate(video_id, monitor.handle, monitor.state,
                               self.scheduler.now(), self.config.monitoring)

    def score_all(self) -> list[CandidateScore]:
        now = self.scheduler.now()
        return [
            score_candidate(vid, m.handle, m.state, now, self.config.monitoring)
            for vid, m in list(self.monitors.items())
        ]

    # --- Evaluation ---

    def evaluate_candidates(self, reason: str) -> CandidateScore | None:
        """Re-score everything and apply a switch decision. Returns the preferred candidate."""
        sel = self.selector_state
        if self._lock_checker is not None and self._lock_checker():
            logger.debug("[CANDIDATE] Failover lock active, skipping evaluation (%s)", reason)
            return self.score(sel.active_id) if sel.active_id else None

        if not self.monitors:
            sel.active_id = None
            sel.last_good_id = None
            return None

        result = evaluate(self.score_all(), sel.active_id)

        if result.best_trusted is not None:
            sel.last_good_id = result.best_trusted.id
        elif sel.last_good_id and sel.last_good_id not in self.monitors:
            sel.last_good_id = None

        preferred = result.preferred

        if not sel.active_id or sel.active_id not in self.monitors:
            fallback = sel.last_good_id if sel.last_good_id in self.monitors else (
                preferred.id if preferred else None
            )
            if fallback:
                logger.info("[CANDIDATE] Active video set to %s (no active, %s)", fallback, reason)
                self.set_active_id(fallback, "no_active")
                result = evaluate(list(result.scores), fallback)

        if preferred is None or preferred.id == sel.active_id:
            return preferred

        current_monitor = self.monitors.get(sel.active_id) if sel.active_id else None
        decision = self.policy.decide(
            now=self.scheduler.now(),
            current=result.current,
            current_state=current_monitor.state if current_monitor else None,
            preferred=preferred,
            active_id=sel.active_id,
            probation_active=self.probation.is_active(),
            reason=reason,
        )
        sel.last_decision = decision

        if decision.action == ACTION_FAST_SWITCH:
            logger.warning(
                "[CANDIDATE] Fast switch from healing dead-end %s -> %s "
                "(no_heal_points=%d, stalled_for=%sms, score=%d)",
                decision.from_id, decision.to_id, decision.active_no_heal_points,
                decision.active_stalled_for_ms, preferred.score,
            )
            self.set_active_id(decision.to_id, "fast_switch")
        elif decision.action == ACTION_SWITCH:
            logger.info(
                "[CANDIDATE] Active video switched %s -> %s (delta=%s, score=%d, reason=%s)",
                decision.from_id, decision.to_id,
                decision.policy.delta if decision.policy else None, preferred.score, reason,
            )
            self.set_active_id(decision.to_id, reason)
        elif decision.action == ACTION_STAY:
            logger.debug("[CANDIDATE] Staying on %s over %s (%s)",
                         decision.from_id, decision.to_id, decision.suppression)
        return preferred

    # --- Pruning ---

    def prune(self, exclude_id: str | None, stop_monitoring: Callable[[str], None]) -> str | None:
        """Evict the worst unprotected monitor when over the cap. Returns the evicted id."""
        cap = self.config.monitoring.max_video_monitors
        if len(self.monitors) <= cap:
            return None

        protected = {i for i in (self.active_id, self.last_good_id) if i}
        worst: CandidateScore | None = None
        for vid in list(self.monitors):
            if vid == exclude_id or vid in protected:
                continue
            s = self.score(vid)
            if s is not None and (worst is None or s.score < worst.score):
                worst = s

        if worst is None:
            logger.debug("[PRUNE_SKIP] All candidates protected (protected=%s, cap=%d, total=%d)",
                         sorted(protected), cap, len(self.monitors))
            return None
        logger.info("[PRUNE] Stopped monitor %s due to cap (score=%d, cap=%d)", worst.id, worst.score, cap)
        stop_monitoring(worst.id)
        return worst.id

    # --- Emergency / forced switches ---

    def select_emergency_candidate(
        self,
        reason: str,
        *,
        min_ready_state: int | None = None,
        require_src: bool | None = None,
        allow_dead: bool | None = None,
        label: str = "Emergency switch after no-heal point",
    ) -> EmergencyPick | None:
        stall = self.config.stall
        if min_ready_state is None:
            min_ready_state = stall.no_heal_point_emergency_min_ready_state
        if require_src is None:
            require_src = stall.no_heal_point_emergency_require_src
        if allow_dead is None:
            allow_dead = stall.no_heal_point_emergency_allow_dead

        from_id = self.active_id
        best: CandidateScore | None = None
        for vid in list(self.monitors):
            if vid == from_id:
                continue
            s = self.score(vid)
            if s is None:
                continue
            if "fallback_src" in s.reasons or media.is_fallback_src(s.vs.current_src):
                logger.debug("[CANDIDATE] Emergency candidate %s skipped (fallback source)", vid)
                continue
            if s.dead_candidate and not allow_dead:
                continue
            if s.vs.ready_state < min_ready_state:
                continue
            if require_src and not s.vs.current_src:
                continue
            if best is None or s.score > best.score:
                best = s

        if best is None:
            return None
        self.set_active_id(best.id, reason)
        logger.warning("[CANDIDATE] %s: %s -> %s (reason=%s, ready_state=%d, score=%d)",
                       label, from_id, best.id, reason, best.vs.ready_state, best.score)
        return EmergencyPick(best.id, best)

    def active_context(self) -> ActiveContext:
        active_id = self.active_id
        monitor = self.monitors.get(active_id) if active_id else None
        ms = monitor.state if monitor else None
        active_state = ms.state if ms else None
        is_stalled = monitor is None or active_state in (
            PlaybackState.STALLED, PlaybackState.RESET, PlaybackState.ERROR,
        )
        is_severe = is_stalled and (
            active_state in (PlaybackState.RESET, PlaybackState.ERROR)
            or bool(ms and ms.buffer_starved)
        )
        return ActiveContext(active_id, monitor, active_state, is_stalled, is_severe)

    def force_switch(
        self,
        best: CandidateScore | None,
        reason: str = "forced",
        *,
        require_severe: bool = True,
        require_progress_eligible: bool = True,
        label: str = "Forced switch",
    ) -> ForceSwitchResult:
        ctx = self.active_context()
        if best is None or not ctx.active_id or best.id == ctx.active_id:
            return ForceSwitchResult(ctx, ctx.active_id)

        if "fallback_src" in best.reasons or media.is_fallback_src(best.vs.current_src):
            logger.info("[CANDIDATE] %s suppressed: %s is a fallback source (%s)", label, best.id, reason)
            return ForceSwitchResult(ctx, ctx.active_id, suppressed=True)

        eligible = not require_progress_eligible or best.progress_eligible
        active_ok = ctx.active_is_severe if require_severe else ctx.active_is_stalled
        if eligible and active_ok:
            self.set_active_id(best.id, reason)
            logger.warning("[CANDIDATE] %s: %s -> %s (reason=%s, score=%d)",
                           label, ctx.active_id, best.id, reason, best.score)
            return ForceSwitchResult(ctx, best.id, switched=True)

        logger.debug("[CANDIDATE] %s suppressed: %s -> %s (eligible=%s, severe=%s)",
                     label, ctx.active_id, best.id, best.progress_eligible, ctx.active_is_severe)
        return ForceSwitchResult(ctx, ctx.active_id, suppressed=True)
