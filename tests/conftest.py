"""Shared test fixtures for streamheal test suite."""

import pytest

from streamheal.config import Config, ServerConfig
from streamheal.core.clock import ManualScheduler
from streamheal.core.healer import StreamHealer
from streamheal.server.app import create_app
from streamheal.server.database import Database
from streamheal.server.events import EventBus
from streamheal.server.supervisor import HealerSupervisor

LIVE_SRC = "https://cdn.example.com/live/master.m3u8"


class FakeHandle:
    """In-memory media handle. Tests move its playhead by hand."""

    def __init__(
        self,
        current_time: float = 10.0,
        buffered=None,
        paused: bool = False,
        ready_state: int = 4,
        network_state: int = 1,
        current_src: str = LIVE_SRC,
        ended: bool = False,
        error_code=None,
    ):
        self.current_time = current_time
        self.buffered = [(0.0, 30.0)] if buffered is None else buffered
        self.paused = paused
        self.ready_state = ready_state
        self.network_state = network_state
        self.current_src = current_src
        self.ended = ended
        self.error_code = error_code
        self.playback_rate = 1.0
        self.volume = 100.0
        self.attached = True
        self.resumes = True          # play() unpauses
        self.play_errors = []        # exceptions raised by successive play() calls
        self.play_calls = 0
        self.seeks = []

    def is_attached(self) -> bool:
        return self.attached

    def play(self):
        self.play_calls += 1
        if self.play_errors:
            raise self.play_errors.pop(0)
        if self.resumes:
            self.paused = False
        return None

    def seek(self, time: float):
        self.seeks.append(time)
        self.current_time = time


class FakeMPVClient:
    """Stands in for MPVClient: properties live in a dict, commands are recorded."""

    def __init__(self, socket_path: str = "/tmp/fake-mpv", **props):
        self.socket_path = socket_path
        self.connected = True
        self.props = {
            "idle-active": False,
            "time-pos": 10.0,
            "pause": False,
            "paused-for-cache": False,
            "eof-reached": False,
            "path": LIVE_SRC,
            "speed": 1.0,
            "volume": 80.0,
            "demuxer-cache-state": {"seekable-ranges": [{"start": 0.0, "end": 30.0}], "cache-end": 30.0},
        }
        self.props.update(props)
        self.accept_commands = True
        self.seeks = []
        self.loaded = []

    def connect(self, timeout=5.0):
        return self.connected

    def get_property(self, name, default=None):
        return self.props.get(name, default)

    def set_property(self, name, value):
        if not self.accept_commands:
            return False
        self.props[name] = value
        return True

    def seek(self, seconds, mode="absolute"):
        if not self.accept_commands:
            return False
        self.seeks.append(seconds)
        return True

    def loadfile(self, url):
        self.loaded.append(url)
        return self.accept_commands


def advance_playback(scheduler, healer, handles, ms, step_ms=250):
    """Advance the clock while the given handles make steady progress."""
    ids = [healer.registry.resolve(h) for h in handles]
    for _ in range(int(ms // step_ms)):
        for h in handles:
            h.current_time += step_ms / 1000
        scheduler.advance(step_ms)
        for h, video_id in zip(handles, ids):
            healer.dispatch(video_id, "timeupdate")


@pytest.fixture
def make_handle():
    """Factory for FakeHandle instances."""
    return FakeHandle


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def config(tmp_path):
    return Config(server=ServerConfig(
        mpv_sockets=[],
        data_dir=str(tmp_path / "data"),
        db_file=str(tmp_path / "data" / "test.db"),
    ))


@pytest.fixture
def events():
    """Events emitted by the engine, as (event_type, title, detail) tuples."""
    return []


@pytest.fixture
def refreshes():
    """Refresh requests received by the handle owner, as (video_id, reason, detail)."""
    return []


@pytest.fixture
def healer(config, scheduler, events, refreshes):
    """StreamHealer on a ManualScheduler, recording emits and refresh requests."""
    h = StreamHealer(
        config, scheduler,
        on_refresh=lambda video_id, reason, detail: refreshes.append((video_id, reason, detail)),
        emit=lambda event_type, title="", detail="", video_id=None: events.append((event_type, title, detail)),
    )
    yield h
    h.shutdown()


@pytest.fixture
def playback(scheduler, healer):
    """Callable (handles, ms) that plays the handles forward for ms."""
    def run(handles, ms, step_ms=250):
        if not isinstance(handles, (list, tuple)):
            handles = [handles]
        advance_playback(scheduler, healer, handles, ms, step_ms)
    return run


@pytest.fixture
def db(tmp_path):
    """Create a fresh test database."""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def event_bus(db):
    """Create an EventBus instance backed by the test database."""
    return EventBus(db)


@pytest.fixture
def app(config):
    """Create a Flask test app whose supervisor runs on a ManualScheduler."""
    supervisor = HealerSupervisor(config, scheduler=ManualScheduler(), handles=[])
    app = create_app(config, supervisor=supervisor, start=False)
    app.config["TESTING"] = True
    yield app
    supervisor.stop()


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()


@pytest.fixture
def make_mpv_client():
    """Factory for FakeMPVClient instances."""
    return FakeMPVClient
