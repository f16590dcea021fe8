"""Tests for external signal parsing, attribution and routing."""

import pytest

from streamheal.core.signals import ExternalSignal, PlayheadAttribution


class TestExternalSignal:
    def test_from_dict_accepts_camel_case(self):
        s = ExternalSignal.from_dict({"type": "playhead_stall", "playheadSeconds": 12.34567,
                                      "bufferEndSeconds": 20})
        assert s.type == "playhead_stall"
        assert s.playhead_seconds == 12.346
        assert s.buffer_end_seconds == 20.0
        assert s.level == "unknown"

    def test_non_finite_positions_dropped(self):
        s = ExternalSignal.from_dict({"type": "playhead_stall", "playhead_seconds": float("nan")})
        assert s.playhead_seconds is None

    def test_defaults(self):
        s = ExternalSignal.from_dict({})
        assert s.type == "unknown"
        assert s.message == ""


class TestAttribution:
    @pytest.fixture
    def attribution(self, healer, make_handle):
        healer.monitor(make_handle(current_time=10.0))
        healer.monitor(make_handle(current_time=50.0, buffered=[(40.0, 70.0)]))
        healer.selector.set_active_id("video-1")
        return PlayheadAttribution(healer.monitors, healer.selector)

    def test_active_match(self, attribution):
        a = attribution.resolve(10.5)
        assert a.id == "video-1"
        assert a.reason == "active_match"
        assert a.delta_seconds == 0.5

    def test_closest_match(self, attribution):
        a = attribution.resolve(49.0)
        assert a.id == "video-2"
        assert a.reason == "closest_match"

    def test_no_match(self, attribution):
        a = attribution.resolve(30.0)
        assert a.id is None
        assert a.reason == "no_match"
        assert [c["video_id"] for c in a.candidates] == ["video-1", "video-2"]

    def test_without_playhead_uses_active(self, attribution):
        a = attribution.resolve(None)
        assert a.id == "video-1"
        assert a.reason == "active_fallback"


class TestRouting:
    def test_no_monitors(self, healer):
        assert healer.handle_external_signal({"type": "playhead_stall"}) is False

    def test_unknown_type(self, healer, make_handle, events):
        healer.monitor(make_handle())
        assert healer.handle_external_signal({"type": "mystery", "message": "hello"}) is False
        assert ("signal", "External signal mystery", "hello") in events

    def test_message_truncated(self, healer, make_handle, events, config):
        healer.monitor(make_handle())
        healer.handle_external_signal({"type": "adblock_hint", "message": "x" * 1000})
        detail = [e for e in events if e[0] == "signal"][0][2]
        assert len(detail) == config.logging.log_message_max_len

    def test_playhead_stall_confirms_stall(self, healer, make_handle, playback, scheduler):
        handle = make_handle()
        monitor = healer.monitor(handle)
        playback(handle, 4000)
        scheduler.advance(3000)
        assert healer.heal_pipeline.attempts == 0

        assert healer.handle_external_signal({
            "type": "playhead_stall", "playhead_seconds": handle.current_time,
            "message": "Playhead stalled",
        }) is True
        assert monitor.state.last_stall_event_time == scheduler.now()
        assert healer.heal_pipeline.attempts == 1

    def test_playhead_stall_before_progress(self, healer, make_handle, scheduler):
        handle = make_handle()
        monitor = healer.monitor(handle)
        assert healer.handle_external_signal({"type": "playhead_stall", "playhead_seconds": 10.0}) is True
        assert monitor.state.pause_from_stall is True
        assert healer.heal_pipeline.attempts == 0

    def test_unattributed_playhead_stall(self, healer, make_handle):
        handle = make_handle()
        monitor = healer.monitor(handle)
        assert healer.handle_external_signal({"type": "playhead_stall", "playhead_seconds": 500.0}) is True
        assert monitor.state.last_stall_event_time == 0

    def test_decoder_error_refreshes_active(self, healer, make_handle, refreshes):
        healer.monitor(make_handle())
        healer.handle_external_signal({"type": "decoder_error", "message": "decode failed"})
        assert refreshes == [("video-1", "decoder_error", "decode failed")]

    def test_decoder_error_detail_is_truncated(self, healer, make_handle, refreshes, events, config):
        healer.monitor(make_handle())
        message = "MEDIA_ERR_DECODE " + "x" * 2000
        healer.handle_external_signal({"type": "decoder_error", "message": message})
        limit = config.logging.log_message_max_len
        video_id, reason, detail = refreshes[0]
        assert detail == message[:limit]
        refresh_events = [e for e in events if e[0] == "refresh"]
        assert len(refresh_events[0][2]) < limit + 40

    def test_processing_asset_opens_probation(self, healer, make_handle):
        handle = make_handle(paused=True)
        healer.monitor(handle)
        assert healer.handle_external_signal({"type": "processing_asset", "message": "404_processing"}) is True
        assert healer.selector.is_probation_active() is True
        assert handle.play_calls == 1

    def test_adblock_is_consumed(self, healer, make_handle, refreshes):
        healer.monitor(make_handle())
        assert healer.handle_external_signal({"type": "adblock_block", "url": "https://ads.example.com/x.js"})
        assert refreshes == []
