"""External signal routing: console-derived hints forwarded by the host.

Signals arrive as plain dicts (``{"type", "level", "message", ...}``) from
whatever watches the player's console; each known type has a handler that
may confirm a stall, request a rescan or ask for a source refresh.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from streamheal.core import buffer, media
from streamheal.core.media import MediaReadError, PlayError
from streamheal.core.monitor import StallDetail

if TYPE_CHECKING:
    from streamheal.config import Config
    from streamheal.core.clock import Scheduler
    from streamheal.core.monitor import PlaybackMonitor
    from streamheal.core.recovery import RecoveryManager
    from streamheal.core.selection import CandidateSelector

logger = logging.getLogger(__name__)

TRIGGER_CONSOLE_STALL = "CONSOLE_STALL"
MATCH_WINDOW_S = 2.0


def _format_seconds(value) -> float | None:
    if isinstance(value, (int, float)) and math.isfinite(value):
        return round(float(value), 3)
    return None


@dataclass(frozen=True)
class ExternalSignal:
    type: str = "unknown"
    level: str = "unknown"
    message: str = ""
    playhead_seconds: float | None = None
    buffer_end_seconds: float | None = None
    url: str | None = None
    filename: str | None = None
    lineno: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ExternalSignal:
        return cls(
            type=str(data.get("type") or "unknown"),
            level=str(data.get("level") or "unknown"),
            message=str(data.get("message") or ""),
            playhead_seconds=_format_seconds(data.get("playhead_seconds", data.get("playheadSeconds"))),
            buffer_end_seconds=_format_seconds(data.get("buffer_end_seconds", data.get("bufferEndSeconds"))),
            url=data.get("url"),
            filename=data.get("filename"),
            lineno=data.get("lineno"),
        )


@dataclass(frozen=True)
class Attribution:
    id: str | None
    reason: str
    playhead_seconds: float | None
    active_id: str | None
    delta_seconds: float | None = None
    candidates: list[dict] = field(default_factory=list)


class PlayheadAttribution:
    """Resolves a hinted playhead position to the monitored handle it belongs to."""

    def __init__(self, monitors: dict[str, PlaybackMonitor], selector: CandidateSelector,
                 match_window_s: float = MATCH_WINDOW_S):
        self.monitors = monitors
        self.selector = selector
        self.match_window_s = match_window_s

    def _candidates(self, playhead: float) -> list[dict]:
        candidates = []
        for video_id, monitor in list(self.monitors.items()):
            t = media.current_time(monitor.handle)
            if t is None:
                continue
            candidates.append({
                "video_id": video_id,
                "current_time": round(t, 3),
                "delta_seconds": round(abs(t - playhead), 3),
            })
        candidates.sort(key=lambda c: c["delta_seconds"])
        return candidates

    def resolve(self, playhead: float | None) -> Attribution:
        active_id = self.selector.active_id
        if playhead is None:
            return Attribution(active_id, "active_fallback" if active_id else "no_active", None, active_id)
        candidates = self._candidates(playhead)
        if not candidates:
            return Attribution(None, "no_candidates", playhead, active_id)
        best = candidates[0]
        if best["delta_seconds"] <= self.match_window_s:
            reason = "active_match" if best["video_id"] == active_id else "closest_match"
            return Attribution(best["video_id"], reason, playhead, active_id,
                               best["delta_seconds"], candidates)
        return Attribution(None, "no_match", playhead, active_id, None, candidates)


class ExternalSignalRouter:
    def __init__(
        self,
        monitors: dict[str, PlaybackMonitor],
        selector: CandidateSelector,
        recovery: RecoveryManager,
        config: Config,
        scheduler: Scheduler,
        *,
        on_stall: Callable[[PlaybackMonitor, StallDetail], object] | None = None,
        on_rescan: Callable[[str, dict], None] | None = None,
        emit: Callable[..., None] | None = None,
    ):
        self.monitors = monitors
        self.selector = selector
        self.recovery = recovery
        self.config = config
        self.scheduler = scheduler
        self.on_stall = on_stall or (lambda monitor, detail: None)
        self.on_rescan = on_rescan or (lambda reason, detail: None)
        self._emit = emit or (lambda *a, **k: None)
        self.attribution = PlayheadAttribution(monitors, selector)
        self._handlers: dict[str, Callable[[ExternalSignal], bool]] = {
            "playhead_stall": self._on_playhead_stall,
            "processing_asset": self._on_processing_asset,
            "decoder_error": self._on_decoder_error,
            "adblock_block": self._on_adblock,
            "adblock_hint": self._on_adblock,
        }

    def truncate(self, message) -> str:
        return str(message)[:self.config.logging.log_message_max_len]

    def handle_signal(self, signal: ExternalSignal | dict | None) -> bool:
        """Route one external signal. Returns True when a handler consumed it."""
        if not signal or not self.monitors:
            return False
        if isinstance(signal, dict):
            signal = ExternalSignal.from_dict(signal)
        self._emit("signal", f"External signal {signal.type}", self.truncate(signal.message))
        handler = self._handlers.get(signal.type)
        if handler is None:
            logger.info("[EXTERNAL] Unhandled external signal (type=%s, level=%s): %s",
                        signal.type, signal.level, self.truncate(signal.message))
            return False
        return handler(signal)

    # --- Helpers ---

    def active_entry(self) -> tuple[str, PlaybackMonitor] | None:
        """The active monitor, or the first registered one when nothing is active."""
        active_id = self.selector.active_id
        if active_id and active_id in self.monitors:
            return active_id, self.monitors[active_id]
        for video_id, monitor in self.monitors.items():
            return video_id, monitor
        return None

    def log_candidate_snapshot(self, reason: str):
        candidates = [s.as_dict() for s in self.selector.score_all()]
        logger.info("[CANDIDATE_SNAPSHOT] Candidates scored (%s): %s", reason, candidates)

    def probe_candidates(self, reason: str, exclude_id: str | None = None) -> int:
        attempted = 0
        attempts = {}
        for video_id in list(self.monitors):
            if video_id == exclude_id:
                continue
            ok = self.recovery.probe(video_id, reason)
            attempts[video_id] = ok
            attempted += ok
        logger.info("[PROBE_BURST] Probing candidates (%s, exclude=%s, attempted=%d): %s",
                    reason, exclude_id, attempted, attempts)
        return attempted

    # --- Handlers ---

    def _on_playhead_stall(self, signal: ExternalSignal) -> bool:
        attribution = self.attribution.resolve(signal.playhead_seconds)
        if attribution.id is None:
            logger.info("[STALL_HINT_UNATTRIBUTED] Console playhead stall warning (%s, playhead=%s, "
                        "buffer_end=%s, active=%s): %s",
                        attribution.reason, attribution.playhead_seconds, signal.buffer_end_seconds,
                        attribution.active_id, self.truncate(signal.message))
            return True
        monitor = self.monitors.get(attribution.id)
        if monitor is None:
            return True

        now = self.scheduler.now()
        ms = monitor.state
        ms.last_stall_event_time = now
        ms.pause_from_stall = True
        progress_ago = now - ms.last_progress_time if ms.last_progress_time else None
        logger.info("[STALL_HINT] %s: console playhead stall warning (%s, delta=%s, "
                    "progress_ago=%s, state=%s): %s",
                    attribution.id, attribution.reason, attribution.delta_seconds, progress_ago,
                    media.lite_snapshot(monitor.handle).as_dict(), self.truncate(signal.message))

        if not ms.has_progress or not ms.last_progress_time:
            return True
        if progress_ago >= self.config.stall.stall_confirm_ms:
            self.on_stall(monitor, StallDetail(
                trigger=TRIGGER_CONSOLE_STALL,
                stalled_for_ms=progress_ago,
                buffer_exhausted=buffer.is_buffer_exhausted(monitor.handle),
                paused=bool(media.read(monitor.handle, "paused", True)),
                pause_from_stall=True,
            ))
        return True

    def _on_processing_asset(self, signal: ExternalSignal) -> bool:
        message = self.truncate(signal.message)
        logger.warning("[ASSET_HINT] Processing/offline asset detected (level=%s): %s", signal.level, message)
        self.selector.activate_probation("processing_asset")
        self.log_candidate_snapshot("processing_asset")
        self.on_rescan("processing_asset", {"level": signal.level, "message": message})

        if self.recovery.is_failover_active():
            logger.debug("[ASSET_HINT_SKIP] Failover in progress")
            return True

        best = self.selector.evaluate_candidates("processing_asset")
        outcome = self.selector.force_switch(
            best, "processing_asset",
            require_severe=True,
            require_progress_eligible=True,
            label="Forced switch after processing asset",
        )
        active_id = outcome.active_id
        stalled = outcome.active_is_stalled

        if outcome.suppressed and stalled and best is not None and best.id != active_id:
            self.recovery.probe(best.id, "processing_asset")

        stall = self.config.stall
        if stalled and stall.processing_asset_last_resort_switch:
            self.selector.select_emergency_candidate(
                "processing_asset_last_resort",
                min_ready_state=stall.no_heal_point_last_resort_min_ready_state,
                require_src=stall.no_heal_point_last_resort_require_src,
                allow_dead=stall.no_heal_point_last_resort_allow_dead,
                label="Last-resort switch after processing asset",
            )
            active_id = self.selector.active_id

        if stalled:
            self.probe_candidates("processing_asset", active_id)

        monitor = self.monitors.get(active_id) if active_id else None
        if monitor is not None:
            try:
                monitor.handle.play()
            except (PlayError, MediaReadError, OSError) as e:
                logger.info("[ASSET_HINT_PLAY] %s: play rejected (%s)", active_id, getattr(e, "name", e))
        return True

    def _on_decoder_error(self, signal: ExternalSignal) -> bool:
        logger.warning("[ERROR] Decoder error signal observed (type=%s, level=%s, file=%s:%s): %s",
                       signal.type, signal.level, signal.filename, signal.lineno,
                       self.truncate(signal.message))
        active = self.active_entry()
        if active is None:
            return True
        _, monitor = active
        self.recovery.request_refresh(monitor, "decoder_error", trigger=signal.type,
                                      detail=self.truncate(signal.message or "decoder_error"))
        return True

    def _on_adblock(self, signal: ExternalSignal) -> bool:
        logger.info("[ADBLOCK_HINT] Ad-block signal observed (type=%s, level=%s, url=%s): %s",
                    signal.type, signal.level, self.truncate(signal.url) if signal.url else None,
                    self.truncate(signal.message))
        return True
