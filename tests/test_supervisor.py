"""Tests for HealerSupervisor driving mpv handles on a ManualScheduler."""

import threading

import pytest

from streamheal.core.clock import LoopScheduler, ManualScheduler
from streamheal.server.mpv_handle import MPVMediaHandle
from streamheal.server.supervisor import HealerSupervisor


@pytest.fixture
def mpv_clients(make_mpv_client):
    return [make_mpv_client("/tmp/mpv-a"), make_mpv_client("/tmp/mpv-b")]


@pytest.fixture
def supervisor(config, event_bus, mpv_clients):
    handles = [MPVMediaHandle(c, name=c.socket_path) for c in mpv_clients]
    sup = HealerSupervisor(config, event_bus=event_bus, scheduler=ManualScheduler(), handles=handles)
    yield sup
    sup.stop()


class TestPolling:
    def test_first_poll_registers_connected_handles(self, supervisor):
        supervisor.poll()
        assert sorted(supervisor.healer.monitors) == ["video-1", "video-2"]

    def test_disconnected_handle_not_registered(self, supervisor, mpv_clients):
        mpv_clients[1].connected = False
        supervisor.poll()
        assert list(supervisor.healer.monitors) == ["video-1"]

    def test_events_reach_monitor(self, supervisor, mpv_clients):
        supervisor.poll()
        monitor = supervisor.healer.monitors["video-1"]
        mpv_clients[0].props["time-pos"] = 10.25
        supervisor.scheduler.advance(250)
        supervisor.poll()
        assert monitor.state.has_progress is True
        assert monitor.state.last_progress_time == supervisor.scheduler.now()

    def test_start_polls_on_interval(self, supervisor):
        supervisor.start()
        assert supervisor.is_running is True
        supervisor.scheduler.advance(supervisor.config.server.poll_interval_ms)
        assert len(supervisor.healer.monitors) == 2

    def test_stop(self, supervisor):
        supervisor.start()
        supervisor.scheduler.advance(250)
        supervisor.stop()
        assert supervisor.is_running is False
        assert len(supervisor.healer.monitors) == 0


class TestCrossThread:
    def test_signal_runs_on_loop(self, supervisor, event_bus):
        supervisor.poll()
        supervisor.submit_signal({"type": "custom", "level": "info", "message": "hello"})
        assert event_bus.recent(event_type="signal") == []
        supervisor.scheduler.run_pending()
        recent = event_bus.recent(event_type="signal")
        assert recent[0]["title"] == "External signal custom"

    def test_request_scan(self, supervisor, mpv_clients):
        for handle in supervisor.handles:
            handle.poll()
        supervisor.request_scan("api")
        assert len(supervisor.healer.monitors) == 0
        supervisor.scheduler.run_pending()
        assert len(supervisor.healer.monitors) == 2


class TestRefresh:
    def test_refresh_reloads_source(self, supervisor, mpv_clients):
        supervisor.poll()
        supervisor._on_refresh("video-1", "decoder_error", "")
        assert mpv_clients[0].loaded == [mpv_clients[0].props["path"]]
        assert mpv_clients[1].loaded == []

    def test_refresh_unknown_video(self, supervisor, mpv_clients):
        supervisor._on_refresh("video-9", "decoder_error", "")
        assert mpv_clients[0].loaded == []


class TestStatus:
    def test_get_status(self, supervisor):
        supervisor.poll()
        status = supervisor.get_status()
        assert status["running"] is False
        assert status["monitored_count"] == 2
        assert status["sockets"][0] == {"name": "/tmp/mpv-a", "connected": True, "video_id": "video-1"}

    def test_emit_without_bus(self, config):
        sup = HealerSupervisor(config, scheduler=ManualScheduler(), handles=[])
        sup._emit("heal", "Heal success on video-1")

    def test_emit_forwards_video_id(self, supervisor, event_bus):
        supervisor._emit("heal", "Heal success on video-1", "reason=heal_success", video_id="video-1")
        assert event_bus.recent(event_type="heal")[0]["video_id"] == "video-1"

    def test_engine_events_carry_video_id(self, supervisor, event_bus):
        supervisor.poll()
        supervisor.healer.handle_external_signal({"type": "decoder_error", "message": "decode failed"})
        refresh = event_bus.recent(event_type="refresh")[0]
        assert refresh["video_id"] == (supervisor.healer.selector.active_id or "video-1")
        assert refresh["title"] == f"Refresh requested for {refresh['video_id']}"


@pytest.fixture
def loop_supervisor(config):
    """Supervisor on a real LoopScheduler thread."""
    sup = HealerSupervisor(config, scheduler=LoopScheduler(), handles=[])
    sup.start()
    yield sup
    sup.stop()


class TestCallOnLoop:
    def test_runs_on_loop_thread(self, loop_supervisor):
        name = loop_supervisor.call_on_loop(lambda: threading.current_thread().name)
        assert name == "streamheal-loop"

    def test_inline_without_loop(self, supervisor):
        assert supervisor.call_on_loop(lambda: threading.current_thread().name) == \
            threading.current_thread().name

    def test_errors_reach_caller(self, loop_supervisor):
        with pytest.raises(ZeroDivisionError):
            loop_supervisor.call_on_loop(lambda: 1 / 0)

    def test_nested_call_runs_inline(self, loop_supervisor):
        """A call made from the loop thread does not wait on itself."""
        result = loop_supervisor.call_on_loop(lambda: loop_supervisor.call_on_loop(lambda: 42))
        assert result == 42

    def test_reads_run_on_loop_thread(self, loop_supervisor, monkeypatch):
        healer = loop_supervisor.healer
        seen = []
        original = healer.monitor_snapshots

        def snapshots():
            seen.append(threading.current_thread().name)
            return original()

        monkeypatch.setattr(healer, "monitor_snapshots", snapshots)
        assert loop_supervisor.get_monitors() == []
        assert loop_supervisor.get_status()["monitored_count"] == 0
        assert loop_supervisor.get_health() == {"monitors": 0, "healing": False}
        assert seen == ["streamheal-loop"]
