"""Supervisor - runs the healing engine against mpv instances.

Owns the scheduler loop thread, one MPVMediaHandle per configured IPC
socket and the StreamHealer. Every poll interval each handle is sampled
and the media events implied by the change are dispatched to its monitor.
Work arriving from other threads (HTTP handlers) is handed to the loop
with call_soon_threadsafe(); reads wait for the loop via call_on_loop().
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import TYPE_CHECKING, Callable, TypeVar

from streamheal.config import Config
from streamheal.core.clock import LoopScheduler
from streamheal.core.healer import StreamHealer
from streamheal.server.mpv_handle import MPVClient, MPVMediaHandle

if TYPE_CHECKING:
    from streamheal.core.clock import TimerHandle
    from streamheal.server.database import Database
    from streamheal.server.events import EventBus

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOOP_CALL_TIMEOUT_S = 5.0


class HealerSupervisor:
    """Background engine runner.

    The supervisor loop:
    1. Samples every mpv handle
    2. Registers handles that came up, lets the registry drop ones that went away
    3. Dispatches synthesized media events to the monitors
    4. Reloads the source when the engine requests a refresh
    """

    def __init__(
        self,
        config: Config,
        db: Database | None = None,
        event_bus: EventBus | None = None,
        scheduler: LoopScheduler | None = None,
        handles: list[MPVMediaHandle] | None = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.scheduler = scheduler or LoopScheduler()
        if handles is None:
            handles = [MPVMediaHandle(MPVClient(path), name=path) for path in config.server.mpv_sockets]
        self.handles = handles
        self.healer = StreamHealer(
            config, self.scheduler,
            discover=self._attached_handles,
            on_refresh=self._on_refresh,
            refresh_store=db,
            emit=self._emit,
        )
        self._poll_timer: TimerHandle | None = None

    @property
    def is_running(self) -> bool:
        return self._poll_timer is not None

    def start(self):
        """Start the scheduler loop and the polling timer."""
        if self._poll_timer is not None:
            return
        self._poll_timer = self.scheduler.call_every(self.config.server.poll_interval_ms, self.poll)
        self.scheduler.call_soon_threadsafe(lambda: self.healer.scan("startup"))
        if hasattr(self.scheduler, "start"):
            self.scheduler.start()
        logger.info("Supervisor started (%d mpv sockets, poll=%dms)",
                    len(self.handles), self.config.server.poll_interval_ms)

    def stop(self):
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None
        self.call_on_loop(self.healer.shutdown)
        if hasattr(self.scheduler, "stop"):
            self.scheduler.stop()
        logger.info("Supervisor stopped")

    def _attached_handles(self) -> list[MPVMediaHandle]:
        return [h for h in self.handles if h.is_attached()]

    def poll(self):
        """Sample every handle once and forward the implied media events."""
        appeared = False
        for handle in self.handles:
            was_attached = handle.is_attached()
            events = handle.poll()
            if handle.is_attached() and not was_attached:
                logger.info("mpv at %s is up", handle.name)
                appeared = True
                continue
            video_id = self.healer.registry.resolve(handle)
            if video_id is None:
                continue
            for event in events:
                self.healer.dispatch(video_id, event)
        if appeared:
            self.healer.scan("mpv_connected")

    def _on_refresh(self, video_id: str, reason: str, detail: str):
        monitor = self.healer.monitors.get(video_id)
        if monitor is None:
            return
        handle = monitor.handle
        if isinstance(handle, MPVMediaHandle) and not handle.reload():
            logger.warning("Refresh of %s (%s) failed: mpv rejected loadfile", video_id, reason)

    def _emit(self, event_type: str, title: str = "", detail: str = "", video_id: str | None = None):
        """Emit an event if the event bus is available."""
        if self.event_bus:
            self.event_bus.emit(event_type, title, detail, video_id=video_id)

    # --- Cross-thread entry points ---

    def call_on_loop(self, fn: Callable[[], T], timeout: float = LOOP_CALL_TIMEOUT_S) -> T:
        """Run fn on the scheduler loop and wait for its result.

        Engine state is only touched on the loop thread. Without a running
        loop (tests, or before start()) fn runs inline.
        """
        scheduler = self.scheduler
        if not getattr(scheduler, "running", False) or scheduler.on_loop_thread():
            return fn()
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn())
            except Exception as e:
                future.set_exception(e)

        scheduler.call_soon_threadsafe(run)
        return future.result(timeout=timeout)

    def submit_signal(self, signal: dict):
        self.scheduler.call_soon_threadsafe(lambda: self.healer.handle_external_signal(signal))

    def request_scan(self, reason: str = "api"):
        self.scheduler.call_soon_threadsafe(lambda: self.healer.scan(reason))

    def get_status(self) -> dict:
        return self.call_on_loop(self._status)

    def get_monitors(self) -> list[dict]:
        return self.call_on_loop(self.healer.monitor_snapshots)

    def get_health(self) -> dict:
        return self.call_on_loop(lambda: {
            "monitors": len(self.healer.monitors),
            "healing": self.healer.heal_pipeline.is_healing(),
        })

    def _status(self) -> dict:
        return {
            "running": self.is_running,
            "sockets": [
                {"name": h.name, "connected": h.is_attached(), "video_id": self.healer.registry.resolve(h)}
                for h in self.handles
            ],
            **self.healer.get_stats(),
        }
