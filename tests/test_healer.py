"""End-to-end tests for StreamHealer on a ManualScheduler."""

from streamheal.core.healer import StreamHealer


def freeze(healer, handle, *, paused=True):
    """Stop the playhead the way a stalled player does."""
    handle.paused = paused
    healer.dispatch(healer.registry.resolve(handle), "waiting")


class TestStallToHeal:
    def test_heals_frozen_playhead(self, healer, make_handle, playback, scheduler, events):
        handle = make_handle()
        healer.monitor(handle)
        playback(handle, 4000)
        freeze(healer, handle)

        scheduler.advance(4000)
        assert healer.heal_pipeline.attempts == 1
        assert handle.seeks == [15.0]

        scheduler.advance(550)
        assert healer.heal_pipeline.is_healing() is False
        assert handle.paused is False
        assert healer.metrics.get("heals_successful") == 1
        kinds = [e[0] for e in events]
        assert kinds.index("stall") < kinds.index("heal")

    def test_no_heal_point_backs_off(self, healer, make_handle, playback, scheduler):
        handle = make_handle()
        monitor = healer.monitor(handle)
        playback(handle, 4000)
        freeze(healer, handle)
        handle.buffered = [(0.0, handle.current_time + 0.2)]

        for _ in range(200):
            scheduler.advance(200)
            if healer.metrics.get("no_heal_points") >= 1:
                break
        assert healer.metrics.get("no_heal_points") == 1
        assert monitor.state.next_heal_allowed_time > scheduler.now()

        attempts = healer.heal_pipeline.attempts
        scheduler.advance(4000)
        assert healer.heal_pipeline.attempts == attempts
        assert healer.metrics.get("no_heal_points") == 1

    def test_progress_resets_backoff(self, healer, make_handle, playback, scheduler):
        handle = make_handle()
        monitor = healer.monitor(handle)
        playback(handle, 4000)
        monitor.state.no_heal_point_count = 2
        monitor.state.next_heal_allowed_time = scheduler.now() + 10000
        playback(handle, 500)
        assert monitor.state.no_heal_point_count == 0
        assert monitor.state.next_heal_allowed_time == 0


class TestCandidates:
    def test_switches_away_from_stalled_active(self, healer, make_handle, playback, events):
        first, second = make_handle(), make_handle()
        healer.monitor(first)
        healer.monitor(second)
        playback([first, second], 4000)
        assert healer.selector.active_id == "video-1"

        freeze(healer, first, paused=False)
        playback(second, 3000)
        assert healer.selector.active_id == "video-2"
        assert any(e[0] == "switch" for e in events)

    def test_snapshots_put_active_first(self, healer, make_handle, playback):
        first, second = make_handle(), make_handle()
        healer.monitor(first)
        healer.monitor(second)
        playback([first, second], 4000)
        healer.selector.set_active_id("video-2")
        snapshots = healer.monitor_snapshots()
        assert [s["id"] for s in snapshots] == ["video-2", "video-1"]
        assert snapshots[0]["active"] is True
        assert snapshots[0]["healing"] is False


class TestScan:
    def test_discovers_new_handles(self, config, scheduler, make_handle):
        handles = [make_handle(), make_handle()]
        healer = StreamHealer(config, scheduler, discover=lambda: [h for h in handles if h.attached])
        try:
            assert healer.scan("startup") == 2
            assert healer.scan("again") == 0
            handles[0].attached = False
            healer.scan("cleanup")
            assert list(healer.monitors) == ["video-2"]
        finally:
            healer.shutdown()

    def test_scan_without_discovery(self, healer):
        assert healer.scan() == 0


class TestStatsAndShutdown:
    def test_get_stats(self, healer, make_handle):
        healer.monitor(make_handle())
        stats = healer.get_stats()
        assert stats["monitored_count"] == 1
        assert stats["active_id"] == "video-1"
        assert stats["heal_attempts"] == 0
        assert stats["is_healing"] is False
        assert stats["failover"]["in_progress"] is False
        assert "stalls_detected" in stats["metrics"]

    def test_dispatch_unknown_handle(self, healer):
        assert healer.dispatch("video-9", "waiting") is False

    def test_shutdown_stops_everything(self, healer, make_handle, scheduler):
        handle = make_handle(paused=True)
        healer.monitor(handle)
        attempt = healer.attempt_heal(handle)
        healer.shutdown()
        assert len(healer.monitors) == 0
        scheduler.advance(1000)
        assert attempt.done is True
        assert handle.play_calls == 0
