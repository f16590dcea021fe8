"""Single-flight heal attempts: poll for a heal point, seek into it, verify playback.

Every wait in an attempt is a scheduled re-entry rather than a sleep. A
HealAttempt owns a monotonic deadline and a CancelToken and walks through

    poll -> revalidate -> seek -> settle -> verify -> finish

one scheduler tick at a time. The pipeline lock (one attempt per handle) is
released in finish() whatever the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media
from streamheal.core.buffer import HealPoint
from streamheal.core.clock import CancelToken
from streamheal.core.media import MediaReadError, PlayError
from streamheal.core.policies import ABORT_ERROR, PLAY_STUCK, PlayFailure
from streamheal.core.state import MonitorState, PlaybackState, set_state, to_healing

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.catch_up import CatchUpController
    from streamheal.core.clock import Scheduler, TimerHandle
    from streamheal.core.metrics import Metrics
    from streamheal.core.monitor import PlaybackMonitor
    from streamheal.core.recovery import RecoveryManager

logger = logging.getLogger(__name__)

SUCCESS = "success"
ALREADY_PLAYING = "already_playing"
SELF_RECOVERED = "self_recovered"
NO_HEAL_POINT = "no_heal_point"
STALE_GONE = "stale_gone"
FAILED = "failed"
ABORTED = "aborted"
ALREADY_HEALING = "already_healing"

INVALID_TARGET = "INVALID_TARGET"
POLL_LOG_EVERY = 25


@dataclass(frozen=True)
class HealOutcome:
    status: str
    reason: str = ""
    error_name: str | None = None
    heal_point: HealPoint | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (SUCCESS, ALREADY_PLAYING, SELF_RECOVERED)

    def as_dict(self) -> dict:
        point = self.heal_point
        return {
            "status": self.status,
            "reason": self.reason,
            "error_name": self.error_name,
            "heal_point": f"{point.start:.2f}-{point.end:.2f}" if point else None,
            "duration_ms": round(self.duration_ms),
        }


@dataclass(frozen=True)
class SeekResult:
    success: bool
    already_playing: bool = False
    error: str | None = None
    error_name: str | None = None

    @property
    def is_abort(self) -> bool:
        return self.error_name == ABORT_ERROR or "aborted" in (self.error or "").lower()

    @property
    def is_play_failure(self) -> bool:
        return self.is_abort or self.error_name == PLAY_STUCK


def update_heal_point_repeat(ms: MonitorState, point: HealPoint | None, succeeded: bool) -> int:
    """Count consecutive failures on the same heal point; success or a new point resets."""
    if succeeded or point is None:
        ms.last_heal_point_key = None
        ms.heal_point_repeat_count = 0
        return 0
    if point.key == ms.last_heal_point_key:
        ms.heal_point_repeat_count += 1
    else:
        ms.last_heal_point_key = point.key
        ms.heal_point_repeat_count = 1
    return ms.heal_point_repeat_count


def _future_error(pending) -> BaseException | None:
    """Exception carried by a settled play() future, if any."""
    if pending is None or not hasattr(pending, "done"):
        return None
    try:
        if not pending.done():
            return None
        return pending.exception()
    except (AttributeError, TypeError):
        return None


class HealAttempt:
    def __init__(
        self,
        pipeline: HealPipeline,
        monitor: PlaybackMonitor,
        on_complete: Callable[[HealOutcome], None] | None = None,
    ):
        self.pipeline = pipeline
        self.monitor = monitor
        self.handle = monitor.handle
        self.state = monitor.state
        self.video_id = monitor.video_id
        self.config = pipeline.config
        self.scheduler = pipeline.scheduler
        self.token = CancelToken()
        self.started_at = self.scheduler.now()
        self.deadline = self.started_at + self.config.stall.heal_timeout_s * 1000
        self.outcome: HealOutcome | None = None
        self.poll_count = 0
        self._on_complete = on_complete
        self._timer: TimerHandle | None = None
        self._point: HealPoint | None = None
        self._play_pending = None
        self._retried = False

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def cancel(self, reason: str = "cancelled"):
        self.token.cancel(reason)

    def elapsed_ms(self) -> float:
        return self.scheduler.now() - self.started_at

    # --- Scheduling ---

    def _schedule(self, delay_ms: float, step: Callable[[], None]):
        self._timer = self.scheduler.call_later(delay_ms, lambda: self._run(step))

    def _run(self, step: Callable[[], None]):
        if self.done:
            return
        if self.token.cancelled:
            self._finish(HealOutcome(ABORTED, self.token.reason or "cancelled"))
            return
        try:
            step()
        except Exception:
            logger.exception("[HEAL] %s: unexpected error during heal", self.video_id)
            if self.pipeline.metrics:
                self.pipeline.metrics.increment("heals_failed")
                self.pipeline.metrics.increment("errors")
            self._finish(HealOutcome(FAILED, "unexpected_error", heal_point=self._point))

    def start(self):
        ms = self.state
        to_healing(ms, "heal_start", self.video_id)
        ms.last_heal_attempt_time = self.started_at
        ms.heal_defer_since = 0.0
        ms.heal_defer_count = 0
        ranges = buffer.format_ranges(buffer.get_ranges(self.handle))
        logger.info("[HEAL] %s: attempt #%d started (t=%s, buffers=%s, timeout=%.0fms)",
                    self.video_id, self.pipeline.attempts, media.current_time(self.handle),
                    ranges or "none", self.deadline - self.started_at)
        self._run(self._poll)

    # --- Poll ---

    def has_recovered(self) -> bool:
        last = self.state.last_progress_time
        return bool(last) and self.scheduler.now() - last < self.config.stall.recovery_window_ms

    def _reset_defer(self):
        self.state.heal_defer_since = 0.0
        self.state.heal_defer_count = 0

    def _poll(self):
        self.poll_count += 1
        now = self.scheduler.now()
        rec = self.config.recovery

        if not media.is_attached(self.handle):
            self._abort_detached("poll_abort")
            return

        if self.has_recovered():
            self._reset_defer()
            logger.info("[HEAL] %s: self-recovered during poll #%d (%.0fms)",
                        self.video_id, self.poll_count, self.elapsed_ms())
            self._self_recovered("self_recovered")
            return

        if now >= self.deadline:
            logger.info("[HEAL] %s: poll timed out after %d polls (%.0fms)",
                        self.video_id, self.poll_count, self.elapsed_ms())
            self._no_point(NO_HEAL_POINT, "poll_timeout")
            return

        point = buffer.find_handle_heal_point(self.handle, rec.min_heal_buffer_s)
        if point is not None:
            if point.headroom >= rec.min_heal_headroom_s:
                self._reset_defer()
                logger.info("[HEAL] %s: heal point found (%s %.2f-%.2f, headroom=%.2fs, polls=%d)",
                            self.video_id, "NUDGE" if point.is_nudge else "GAP",
                            point.start, point.end, point.headroom, self.poll_count)
                self._revalidate(point)
                return
            if self._can_override(point):
                self._reset_defer()
                self._revalidate(point)
                return
            if self._defer(point, now):
                return
        elif self.poll_count % POLL_LOG_EVERY == 0:
            logger.debug("[HEAL] %s: still polling (attempt %d, %.0fms, buffers=%s)",
                         self.video_id, self.poll_count, self.elapsed_ms(),
                         buffer.format_ranges(buffer.get_ranges(self.handle)) or "none")

        self._schedule(self.config.stall.heal_poll_interval_ms, self._poll)

    def _can_override(self, point: HealPoint) -> bool:
        """Accept a low-headroom point across a real gap or off an exhausted buffer."""
        rec = self.config.recovery
        is_gap = not point.is_nudge and point.gap_size > 0 and point.range_index > 0
        headroom_ok = point.headroom >= rec.gap_override_min_headroom_s
        gap_ok = is_gap and point.gap_size >= rec.gap_override_min_gap_s and headroom_ok
        exhausted_ok = headroom_ok and buffer.is_buffer_exhausted(self.handle)
        if gap_ok or exhausted_ok:
            logger.info("[GAP_OVERRIDE] %s: low headroom heal allowed (%s, headroom=%.2fs, gap=%.2fs)",
                        self.video_id, "gap" if gap_ok else "buffer_exhausted",
                        point.headroom, point.gap_size)
            return True
        return False

    def _defer(self, point: HealPoint, now: float) -> bool:
        """Track a low-headroom deferral. Returns True when the attempt ended."""
        ms = self.state
        rec = self.config.recovery
        if not ms.heal_defer_since:
            ms.heal_defer_since = now
        ms.heal_defer_count += 1
        defer_ms = now - ms.heal_defer_since
        if rec.heal_defer_abort_ms and defer_ms >= rec.heal_defer_abort_ms:
            logger.info("[HEAL_DEFER] %s: deferral limit reached after %.0fms, treating as no heal point",
                        self.video_id, defer_ms)
            self._reset_defer()
            self._no_point(NO_HEAL_POINT, "defer_limit")
            return True
        if now - ms.last_heal_defer_log_time >= self.config.logging.heal_defer_log_ms:
            ms.last_heal_defer_log_time = now
            logger.debug("[HEAL_DEFER] %s: headroom %.2fs < %.2fs at %.2f-%.2f (buffers=%s)",
                         self.video_id, point.headroom, rec.min_heal_headroom_s, point.start, point.end,
                         buffer.format_ranges(buffer.get_ranges(self.handle)))
        return False

    # --- Revalidate ---

    def _revalidate(self, point: HealPoint):
        if not media.is_attached(self.handle):
            self._abort_detached("pre_revalidate")
            return
        fresh = buffer.find_handle_heal_point(self.handle, self.config.recovery.min_heal_buffer_s)
        if fresh is None:
            if self.has_recovered():
                logger.info("[HEAL] %s: heal point gone but playback recovered", self.video_id)
                self._self_recovered("stale_recovered")
                return
            logger.info("[HEAL] %s: heal point %.2f-%.2f gone before seek",
                        self.video_id, point.start, point.end)
            self._no_point(STALE_GONE, "stale_gone", point)
            return
        if (fresh.start, fresh.end) != (point.start, point.end):
            logger.debug("[HEAL] %s: heal point moved %.2f-%.2f -> %.2f-%.2f",
                         self.video_id, point.start, point.end, fresh.start, fresh.end)
        self._seek(fresh)

    # --- Seek and verify ---

    def _seek(self, point: HealPoint):
        self._point = point
        if not media.is_attached(self.handle):
            self._abort_detached("pre_seek")
            return
        target = buffer.calculate_safe_target(point, self.config.recovery.heal_edge_guard_s)
        validation = buffer.validate_seek_target(self.handle, target)
        logger.info("[SEEK] %s: %s -> %.3f (heal range %.2f-%.2f, valid=%s, headroom=%.2f)",
                    self.video_id, media.current_time(self.handle), target,
                    point.start, point.end, validation.valid, validation.headroom)
        if not validation.valid:
            logger.warning("[SEEK_ABORT] %s: invalid seek target %.3f (%s)",
                           self.video_id, target, validation.reason)
            self._seek_done(SeekResult(False, error=validation.reason, error_name=INVALID_TARGET))
            return
        try:
            self.handle.seek(target)
        except (PlayError, MediaReadError, OSError) as e:
            name = getattr(e, "name", type(e).__name__)
            logger.warning("[SEEK_ERROR] %s: seek failed (%s: %s)", self.video_id, name, e)
            self._seek_done(SeekResult(False, error=str(e), error_name=name))
            return
        self._schedule(self.config.recovery.seek_settle_ms, self._settled)

    def _settled(self):
        logger.debug("[SEEKED] %s: now at %s (ready_state=%s)", self.video_id,
                     media.current_time(self.handle), media.read(self.handle, "ready_state"))
        if not media.read(self.handle, "paused", True):
            logger.info("[ALREADY_PLAYING] %s: playback resumed on its own", self.video_id)
            self._seek_done(SeekResult(True, already_playing=True))
            return
        try:
            self._play_pending = self.handle.play()
        except PlayError as e:
            logger.warning("[PLAY_ERROR] %s: play rejected (%s: %s)", self.video_id, e.name, e.message)
            self._seek_done(SeekResult(False, error=e.message or str(e), error_name=e.name))
            return
        except (MediaReadError, OSError) as e:
            logger.warning("[PLAY_ERROR] %s: play failed (%s)", self.video_id, e)
            self._seek_done(SeekResult(False, error=str(e), error_name=type(e).__name__))
            return
        self._schedule(self.config.recovery.playback_verify_ms, self._verify)

    def _verify(self):
        error = _future_error(self._play_pending)
        self._play_pending = None
        if error is not None:
            name = getattr(error, "name", type(error).__name__)
            logger.warning("[PLAY_ERROR] %s: play failed (%s: %s)", self.video_id, name, error)
            self._seek_done(SeekResult(False, error=str(error), error_name=name))
            return
        paused = bool(media.read(self.handle, "paused", True))
        ready_state = media.read(self.handle, "ready_state", 0) or 0
        if not paused and ready_state >= media.HAVE_FUTURE_DATA:
            logger.info("[SUCCESS] %s: playback resumed at %s (ready_state=%d)",
                        self.video_id, media.current_time(self.handle), ready_state)
            self._seek_done(SeekResult(True))
            return
        logger.warning("[PLAY_STUCK] %s: play returned but not playing (paused=%s, ready_state=%d)",
                       self.video_id, paused, ready_state)
        self._seek_done(SeekResult(False, error="Play did not resume", error_name=PLAY_STUCK))

    def _seek_done(self, result: SeekResult):
        if not result.success and result.is_abort and not self._retried:
            self._retried = True
            self._schedule(self.config.recovery.heal_retry_delay_ms, lambda: self._retry(result))
            return
        self._classify(result)

    def _retry(self, first: SeekResult):
        point = buffer.find_handle_heal_point(self.handle, self.config.recovery.min_heal_buffer_s)
        if point is None:
            logger.info("[HEAL] %s: retry after %s skipped, no heal point", self.video_id, first.error_name)
            self._classify(first)
            return
        logger.info("[HEAL] %s: retrying after %s at %.2f-%.2f",
                    self.video_id, first.error_name, point.start, point.end)
        self._seek(point)

    def _classify(self, result: SeekResult):
        pipeline = self.pipeline
        ms = self.state
        point = self._point
        if result.success:
            update_heal_point_repeat(ms, point, True)
            if pipeline.metrics:
                pipeline.metrics.increment("heals_successful")
            pipeline.recovery.reset_recovery(ms, "heal_success", self.video_id)
            logger.info("[HEAL] %s: complete in %.0fms (buffer end delta=%s)",
                        self.video_id, self.elapsed_ms(), _buffer_end_delta(self.handle))
            if pipeline.catch_up is not None:
                pipeline.catch_up.schedule(self.monitor, "post_heal")
            status = ALREADY_PLAYING if result.already_playing else SUCCESS
            self._finish(HealOutcome(status, "heal_success", heal_point=point))
            return

        repeat = update_heal_point_repeat(ms, point, False)
        if pipeline.metrics:
            pipeline.metrics.increment("heals_failed")
        logger.warning("[HEAL] %s: failed after %.0fms (%s: %s, repeat=%d)",
                       self.video_id, self.elapsed_ms(), result.error_name, result.error, repeat)
        if result.is_play_failure or repeat >= self.config.stall.healpoint_repeat_failover_count:
            pipeline.recovery.handle_play_failure(self.monitor, PlayFailure(
                reason="play_error" if result.is_play_failure else "healpoint_repeat",
                error=result.error,
                error_name=result.error_name,
                heal_range=f"{point.start:.2f}-{point.end:.2f}" if point else None,
                heal_point_repeat_count=repeat,
            ))
        status = ABORTED if result.is_abort else FAILED
        self._finish(HealOutcome(status, result.error or "seek_failed", result.error_name, point))

    # --- Terminal paths ---

    def _self_recovered(self, reason: str):
        self.pipeline.recovery.reset_recovery(self.state, reason, self.video_id)
        self._finish(HealOutcome(SELF_RECOVERED, reason))

    def _no_point(self, status: str, reason: str, point: HealPoint | None = None):
        pipeline = self.pipeline
        if pipeline.metrics:
            pipeline.metrics.increment("heals_failed")
        pipeline.recovery.handle_no_heal_point(self.monitor, status)
        update_heal_point_repeat(self.state, None, False)
        self._finish(HealOutcome(status, reason, heal_point=point))

    def _abort_detached(self, reason: str):
        logger.info("[DETACHED] %s: heal aborted (%s)", self.video_id, reason)
        self._finish(HealOutcome(ABORTED, reason))
        self.pipeline.on_detached(self.monitor, reason)

    def _finish(self, outcome: HealOutcome):
        if self.done:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.outcome = HealOutcome(outcome.status, outcome.reason, outcome.error_name,
                                   outcome.heal_point, self.elapsed_ms())
        self.pipeline._release(self)

        ms = self.state
        if media.read(self.handle, "paused", True):
            final = PlaybackState.PAUSED
        elif self.has_recovered():
            final = PlaybackState.PLAYING
        else:
            final = PlaybackState.STALLED
        set_state(ms, final, f"heal_{outcome.status}", allow_during_healing=True, video_id=self.video_id)

        self.pipeline.emit("heal", f"Heal {outcome.status} on {self.video_id}",
                           f"reason={outcome.reason} duration={self.outcome.duration_ms:.0f}ms",
                           video_id=self.video_id)
        if self._on_complete is not None:
            self._on_complete(self.outcome)


def _buffer_end_delta(handle) -> float | None:
    ranges = buffer.get_ranges(handle)
    t = media.current_time(handle)
    if not ranges or t is None:
        return None
    return round(ranges[-1].end - t, 3)


class HealPipeline:
    """Owns the per-handle heal lock and starts attempts."""

    def __init__(
        self,
        config: Config,
        scheduler: Scheduler,
        recovery: RecoveryManager,
        *,
        catch_up: CatchUpController | None = None,
        on_detached: Callable[[PlaybackMonitor, str], None] | None = None,
        metrics: Metrics | None = None,
        emit: Callable[..., None] | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.recovery = recovery
        self.catch_up = catch_up
        self.on_detached = on_detached or (lambda monitor, reason: None)
        self.metrics = metrics
        self.emit = emit or (lambda *a, **k: None)
        self.attempts = 0
        self._in_flight: dict[str, HealAttempt] = {}

    def is_healing(self, video_id: str | None = None) -> bool:
        if video_id is None:
            return bool(self._in_flight)
        return video_id in self._in_flight

    def current(self, video_id: str) -> HealAttempt | None:
        return self._in_flight.get(video_id)

    def attempt_heal(
        self,
        monitor: PlaybackMonitor,
        on_complete: Callable[[HealOutcome], None] | None = None,
    ) -> HealAttempt:
        attempt = HealAttempt(self, monitor, on_complete)
        video_id = monitor.video_id
        if video_id in self._in_flight:
            logger.info("[BLOCKED] %s: already healing", video_id)
            attempt.outcome = HealOutcome(ABORTED, ALREADY_HEALING)
            if on_complete is not None:
                on_complete(attempt.outcome)
            return attempt
        if not media.is_attached(monitor.handle):
            logger.info("[DETACHED] %s: heal skipped, handle detached", video_id)
            attempt.outcome = HealOutcome(ABORTED, "pre_heal")
            self.on_detached(monitor, "pre_heal")
            if on_complete is not None:
                on_complete(attempt.outcome)
            return attempt

        self._in_flight[video_id] = attempt
        self.attempts += 1
        attempt.start()
        return attempt

    def cancel(self, video_id: str, reason: str = "cancelled"):
        attempt = self._in_flight.get(video_id)
        if attempt is not None:
            attempt.cancel(reason)

    def _release(self, attempt: HealAttempt):
        if self._in_flight.get(attempt.video_id) is attempt:
            del self._in_flight[attempt.video_id]
