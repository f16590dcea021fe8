"""Tests for PlaybackTracker progress, reset and starvation bookkeeping."""

import pytest

from streamheal.core import media
from streamheal.core.buffer import BufferAhead
from streamheal.core.metrics import Metrics
from streamheal.core.state import MonitorState, PlaybackState
from streamheal.core.tracker import PlaybackTracker


@pytest.fixture
def handle(make_handle):
    return make_handle(current_time=10.0)


@pytest.fixture
def tracker(handle, config, scheduler):
    state = MonitorState(first_seen_time=scheduler.now(), last_time=10.0)
    return PlaybackTracker(handle, "video-1", state, config, scheduler, Metrics())


def step(tracker, handle, scheduler, count=1, delta_s=0.25, step_ms=250):
    for _ in range(count):
        handle.current_time += delta_s
        scheduler.advance(step_ms)
        tracker.update_progress("timeupdate")


class TestProgress:
    def test_first_progress(self, tracker, handle, scheduler):
        step(tracker, handle, scheduler)
        st = tracker.state
        assert st.has_progress is True
        assert st.last_progress_time == scheduler.now()
        assert st.progress_start_time == scheduler.now()
        assert st.progress_streak_ms == 0

    def test_jitter_ignored(self, tracker, handle, scheduler):
        step(tracker, handle, scheduler, delta_s=0.01)
        assert tracker.state.has_progress is False

    def test_paused_ignored(self, tracker, handle, scheduler):
        handle.paused = True
        step(tracker, handle, scheduler)
        assert tracker.state.has_progress is False
        assert tracker.state.last_time == pytest.approx(10.25)

    def test_unreadable_time_ignored(self, tracker, handle, scheduler):
        handle.current_time = float("nan")
        scheduler.advance(250)
        tracker.update_progress("timeupdate")
        assert tracker.state.has_progress is False

    def test_becomes_eligible_after_streak(self, tracker, handle, scheduler):
        step(tracker, handle, scheduler, count=12)
        assert tracker.state.progress_eligible is False
        step(tracker, handle, scheduler, count=4)
        assert tracker.state.progress_streak_ms >= 3000
        assert tracker.state.progress_eligible is True

    def test_streak_resets_after_gap(self, tracker, handle, scheduler):
        step(tracker, handle, scheduler, count=16)
        assert tracker.state.progress_eligible is True
        scheduler.advance(3000)
        step(tracker, handle, scheduler)
        assert tracker.state.progress_streak_ms == 0
        assert tracker.state.progress_eligible is False

    def test_progress_clears_backoff(self, tracker, handle, scheduler):
        st = tracker.state
        st.no_heal_point_count = 2
        st.next_heal_allowed_time = scheduler.now() + 5000
        st.play_error_count = 1
        st.next_play_heal_allowed_time = scheduler.now() + 2000
        st.buffer_starved = True
        step(tracker, handle, scheduler)
        assert st.no_heal_point_count == 0
        assert st.next_heal_allowed_time == 0
        assert st.play_error_count == 0
        assert st.next_play_heal_allowed_time == 0
        assert st.buffer_starved is False

    def test_stall_duration_recorded(self, tracker, handle, scheduler):
        tracker.mark_stall_event("waiting")
        assert tracker.state.pause_from_stall is True
        scheduler.advance(1200)
        step(tracker, handle, scheduler)
        assert tracker.metrics.get("stalls_duration_count") == 1
        assert tracker.metrics.get("stalls_duration_last_ms") == 1450
        assert tracker.state.pause_from_stall is False


class TestInitialGrace:
    def test_waits_for_initial_progress(self, tracker, scheduler):
        assert tracker.should_skip_until_progress() is True
        assert tracker.state.first_ready_time == scheduler.now()
        scheduler.advance(4999)
        assert tracker.should_skip_until_progress() is True
        scheduler.advance(1)
        assert tracker.should_skip_until_progress() is False

    def test_no_skip_after_progress(self, tracker, handle, scheduler):
        step(tracker, handle, scheduler)
        assert tracker.should_skip_until_progress() is False


class TestResetPending:
    def test_hard_reset_confirmed_after_grace(self, tracker, handle, scheduler):
        handle.current_src = ""
        handle.ready_state = media.HAVE_NOTHING
        confirmed = []
        tracker.handle_reset("emptied", confirmed.append)
        assert tracker.state.reset_pending_type == "hard"

        scheduler.advance(1000)
        assert tracker.evaluate_reset_pending("watchdog") is True
        assert confirmed == []

        scheduler.advance(1000)
        assert tracker.evaluate_reset_pending("watchdog") is True
        assert len(confirmed) == 1
        assert confirmed[0].reset_type == "hard"
        assert confirmed[0].reason == "emptied"
        assert tracker.state.state == PlaybackState.RESET
        assert tracker.state.reset_pending is False

    def test_soft_reset(self, tracker, handle):
        handle.ready_state = media.HAVE_METADATA
        handle.buffered = []
        handle.network_state = media.NETWORK_NO_SOURCE
        tracker.handle_reset("abort", None)
        assert tracker.state.reset_pending_type == "soft"

    def test_reset_suppressed_while_buffered(self, tracker):
        tracker.handle_reset("emptied", None)
        assert tracker.state.reset_pending is False

    def test_pending_reset_cleared_on_recovery(self, tracker, handle, scheduler):
        handle.current_src = ""
        handle.ready_state = media.HAVE_NOTHING
        tracker.handle_reset("emptied", None)
        handle.current_src = "https://cdn.example.com/live/next.m3u8"
        handle.ready_state = media.HAVE_ENOUGH_DATA
        assert tracker.evaluate_reset_pending("watchdog") is False
        assert tracker.state.reset_pending is False

    def test_pending_reset_cleared_by_progress(self, tracker, handle, scheduler):
        tracker.state.reset_pending_at = scheduler.now()
        step(tracker, handle, scheduler)
        assert tracker.state.reset_pending is False


class TestStarvation:
    def test_starvation_confirmed(self, tracker, scheduler, config):
        low = BufferAhead(True, 0.2)
        assert tracker.update_buffer_starvation(low, "watchdog") is False
        scheduler.advance(2000)
        assert tracker.update_buffer_starvation(low, "watchdog") is True
        st = tracker.state
        assert st.buffer_starved is True
        assert st.buffer_starve_until == scheduler.now() + config.stall.buffer_starve_backoff_ms

    def test_starvation_clears(self, tracker, scheduler):
        low = BufferAhead(True, 0.2)
        tracker.update_buffer_starvation(low, "watchdog")
        scheduler.advance(2000)
        tracker.update_buffer_starvation(low, "watchdog")
        assert tracker.update_buffer_starvation(BufferAhead(True, 5.0), "watchdog") is False
        assert tracker.state.buffer_starved is False
        assert tracker.state.buffer_starved_since == 0

    def test_no_buffer_at_all(self, tracker):
        assert tracker.update_buffer_starvation(BufferAhead(False, None), "watchdog") is False
        assert tracker.state.last_buffer_ahead is None

    def test_buffer_growth_recorded(self, tracker, scheduler):
        tracker.update_buffer_starvation(BufferAhead(True, 1.0), "watchdog")
        scheduler.advance(1000)
        tracker.update_buffer_starvation(BufferAhead(True, 3.0), "watchdog")
        assert tracker.state.last_buffer_ahead_increase_time == scheduler.now()


class TestMediaWatcher:
    def test_records_changes(self, tracker, scheduler):
        tracker.update_media_watcher()
        st = tracker.state
        assert st.last_src_change_time == scheduler.now()
        assert st.last_ready_state == 4
        assert st.last_buffered_length == 1

    def test_dead_candidate(self, tracker, handle, scheduler):
        handle.current_src = ""
        handle.ready_state = media.HAVE_NOTHING
        tracker.update_media_watcher()
        scheduler.advance(10000)
        tracker.update_media_watcher()
        assert tracker.state.is_dead(scheduler.now()) is True

        handle.current_src = "https://cdn.example.com/live/next.m3u8"
        tracker.update_media_watcher()
        assert tracker.state.dead_candidate_until == 0
