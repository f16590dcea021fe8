"""Tests for the post-heal catch-up controller."""

from types import SimpleNamespace

import pytest

from streamheal.core.catch_up import CatchUpController
from streamheal.core.state import MonitorState


@pytest.fixture
def controller(config, scheduler):
    return CatchUpController(config, scheduler)


@pytest.fixture
def make_monitor(make_handle):
    def build(streak_ms=4000.0, **handle_kwargs):
        state = MonitorState(progress_streak_ms=streak_ms, progress_eligible=streak_ms >= 3000)
        return SimpleNamespace(handle=make_handle(**handle_kwargs), state=state, video_id="video-1")
    return build


class TestSchedule:
    def test_single_pending_timer(self, controller, make_monitor):
        monitor = make_monitor()
        assert controller.schedule(monitor, "post_heal") is True
        assert controller.schedule(monitor, "post_heal") is False
        assert controller.pending("video-1") is True

    def test_cancel(self, controller, make_monitor, scheduler):
        monitor = make_monitor()
        controller.schedule(monitor, "post_heal")
        controller.cancel("video-1")
        assert controller.pending("video-1") is False
        scheduler.advance(10000)
        assert monitor.handle.seeks == []

    def test_fires_after_delay(self, controller, make_monitor, scheduler, config):
        monitor = make_monitor()
        controller.schedule(monitor, "post_heal")
        scheduler.advance(config.recovery.catch_up_delay_ms - 1)
        assert monitor.handle.seeks == []
        scheduler.advance(1)
        assert monitor.handle.seeks == [pytest.approx(29.65)]
        assert controller.pending("video-1") is False


class TestAttempt:
    def test_seeks_near_buffer_end(self, controller, make_monitor):
        monitor = make_monitor()
        assert controller.attempt(monitor, "post_heal") is True
        assert monitor.handle.seeks == [pytest.approx(29.65)]
        assert monitor.state.catch_up_attempts == 1

    def test_already_near_live(self, controller, make_monitor):
        monitor = make_monitor(buffered=[(0.0, 12.0)])
        assert controller.attempt(monitor, "post_heal") is False
        assert monitor.handle.seeks == []

    def test_unstable_retries_then_gives_up(self, controller, make_monitor, scheduler, config):
        monitor = make_monitor(streak_ms=0.0)
        assert controller.attempt(monitor, "post_heal") is False
        assert controller.pending("video-1") is True

        scheduler.advance(config.recovery.catch_up_retry_ms * 2)
        assert monitor.state.catch_up_attempts == config.recovery.catch_up_max_attempts
        assert controller.pending("video-1") is False
        assert monitor.handle.seeks == []

    def test_recent_stall_is_unstable(self, controller, make_monitor, scheduler):
        monitor = make_monitor()
        monitor.state.last_stall_event_time = scheduler.now() - 1000
        assert controller.attempt(monitor, "post_heal") is False

    def test_paused_is_unstable(self, controller, make_monitor):
        monitor = make_monitor(paused=True)
        assert controller.attempt(monitor, "post_heal") is False

    def test_detached(self, controller, make_monitor):
        monitor = make_monitor()
        monitor.handle.attached = False
        assert controller.attempt(monitor, "post_heal") is False
        assert controller.pending("video-1") is False
