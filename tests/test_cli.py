"""Tests for the streamheal client command."""

import httpx
import pytest

import streamheal.client
from streamheal.cli import run_client

STATUS = {
    "running": True,
    "active_id": "video-1",
    "last_good_id": "video-1",
    "monitored_count": 2,
    "is_healing": False,
    "failover": {"in_progress": True, "from": "video-2", "to": "video-1"},
    "sockets": [{"name": "/tmp/mpv-a", "connected": True, "video_id": "video-1"},
                {"name": "/tmp/mpv-b", "connected": False, "video_id": None}],
    "metrics": {"stalls_detected": 3, "heals_successful": 2, "heals_failed": 1, "heal_rate": "66.7%"},
}

MONITORS = [
    {"id": "video-1", "active": True, "state": "PLAYING", "score": 13, "trusted": True,
     "reasons": ["progress", "ready"]},
    {"id": "video-2", "active": False, "state": "STALLED", "score": -2, "trusted": False,
     "reasons": ["stalled"]},
]

EVENTS = [{"event_type": "heal", "title": "Heal success on video-1", "detail": "reason=heal_success",
           "created_at": 1700000000.0}]


def routes(request):
    path = request.url.path
    if path == "/api/status":
        return httpx.Response(200, json=STATUS)
    if path == "/api/monitors":
        return httpx.Response(200, json=MONITORS)
    if path == "/api/events/recent":
        return httpx.Response(200, json=EVENTS)
    if path == "/api/signal":
        return httpx.Response(202, json={"ok": True, "type": "decoder_error"})
    if path == "/api/scan":
        return httpx.Response(202, json={"ok": True})
    return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def mock_server(monkeypatch):
    """Route the CLI's client through a MockTransport."""
    handler = {"fn": routes}

    class MockedClient(streamheal.client.StreamHealClient):
        def __init__(self, host="127.0.0.1", port=5070, transport=None):
            super().__init__(host, port, transport=httpx.MockTransport(lambda r: handler["fn"](r)))

    monkeypatch.setattr(streamheal.client, "StreamHealClient", MockedClient)
    return handler


class TestRunClient:
    def test_no_command_prints_help(self, capsys):
        assert run_client([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_status(self, mock_server, capsys):
        assert run_client(["status"]) == 0
        out = capsys.readouterr().out
        assert "video-1" in out
        assert "Failover:  video-2 -> video-1" in out
        assert "/tmp/mpv-b" in out
        assert "66.7%" in out

    def test_monitors(self, mock_server, capsys):
        assert run_client(["monitors"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert any(line.startswith("* video-1") for line in lines)
        assert any("stalled" in line for line in lines)

    def test_events(self, mock_server, capsys):
        assert run_client(["events", "--limit", "1"]) == 0
        assert "Heal success on video-1" in capsys.readouterr().out

    def test_signal(self, mock_server, capsys):
        assert run_client(["signal", "decoder_error", "MEDIA_ERR_DECODE", "--level", "error"]) == 0
        assert "Signal decoder_error accepted" in capsys.readouterr().out

    def test_scan(self, mock_server, capsys):
        assert run_client(["scan"]) == 0
        assert "Scan requested" in capsys.readouterr().out

    def test_server_error(self, mock_server, capsys):
        mock_server["fn"] = lambda request: httpx.Response(500, json={"error": "boom"})
        assert run_client(["status"]) == 1
        assert "Error:" in capsys.readouterr().err
