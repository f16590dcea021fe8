"""mpv-backed media handles.

MPVClient speaks mpv's JSON IPC protocol over a Unix socket. MPVMediaHandle
adapts one mpv instance to the engine's media handle contract: poll()
samples the player properties into a snapshot the engine reads from, and
synthesizes the media events mpv itself does not report in that form.
Ref: https://mpv.io/manual/master/#json-ipc
"""

import json
import logging
import math
import socket
import threading
import time
from dataclasses import dataclass, field

from streamheal.core import media
from streamheal.core.media import MediaReadError, PlayError

logger = logging.getLogger(__name__)

# Cached seconds ahead of the playhead that count as "enough data"
ENOUGH_DATA_S = 5.0


class MPVError(MediaReadError):
    """Error communicating with mpv."""


class MPVClient:
    """Client for mpv's JSON IPC protocol over Unix socket.

    Usage:
        client = MPVClient("/tmp/mpv-socket")
        client.connect()
        client.set_property("pause", False)
        pos = client.get_property("time-pos")
    """

    def __init__(self, socket_path: str = "/tmp/mpv-socket"):
        self.socket_path = socket_path
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        self._request_id = 0
        self._recv_buffer = b""

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, timeout: float = 5.0) -> bool:
        """Connect to the mpv IPC socket.

        Returns True if connected, False if the socket doesn't exist yet.
        """
        with self._lock:
            if self._sock is not None:
                return True
            try:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(timeout)
                sock.connect(self.socket_path)
                self._sock = sock
                self._recv_buffer = b""
                logger.info("Connected to mpv at %s", self.socket_path)
                return True
            except (FileNotFoundError, ConnectionRefusedError):
                logger.debug("mpv socket not available at %s", self.socket_path)
                return False
            except OSError as e:
                logger.warning("Failed to connect to mpv: %s", e)
                return False

    def disconnect(self):
        with self._lock:
            if self._sock:
                try:
                    self._sock.close()
                except OSError:
                    pass
                self._sock = None
                self._recv_buffer = b""

    def _send(self, data: dict) -> dict | None:
        """Send a JSON command and wait for the response."""
        if not self._sock:
            if not self.connect():
                return None

        self._request_id += 1
        data["request_id"] = self._request_id

        msg = json.dumps(data) + "\n"
        try:
            self._sock.sendall(msg.encode("utf-8"))
        except OSError:
            self.disconnect()
            return None

        return self._recv_response(self._request_id)

    def _recv_response(self, request_id: int, timeout: float = 2.0) -> dict | None:
        """Read lines from the socket until our response arrives."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            while b"\n" in self._recv_buffer:
                line, self._recv_buffer = self._recv_buffer.split(b"\n", 1)
                if not line.strip():
                    continue
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if "event" in msg:
                    continue
                if msg.get("request_id") == request_id:
                    return msg

            try:
                remaining = max(0.1, deadline - time.monotonic())
                self._sock.settimeout(remaining)
                chunk = self._sock.recv(4096)
                if not chunk:
                    self.disconnect()
                    return None
                self._recv_buffer += chunk
            except socket.timeout:
                break
            except OSError:
                self.disconnect()
                return None
        return None

    def command(self, *args) -> dict | None:
        """Send a command to mpv, e.g. command("seek", 10, "absolute")."""
        return self._send({"command": list(args)})

    def get_property(self, name: str, default=None):
        """Get an mpv property value, or default when unavailable."""
        resp = self._send({"command": ["get_property", name]})
        if resp and resp.get("error") == "success":
            return resp.get("data")
        return default

    def set_property(self, name: str, value) -> bool:
        resp = self._send({"command": ["set_property", name, value]})
        return resp is not None and resp.get("error") == "success"

    def seek(self, seconds: float, mode: str = "absolute") -> bool:
        resp = self.command("seek", seconds, mode)
        return resp is not None and resp.get("error") == "success"

    def loadfile(self, url: str) -> bool:
        resp = self.command("loadfile", url, "replace")
        return resp is not None and resp.get("error") == "success"


@dataclass
class MPVSnapshot:
    """One sample of the mpv properties the engine cares about."""

    connected: bool = False
    idle: bool = True
    time_pos: float | None = None
    paused: bool = True
    paused_for_cache: bool = False
    eof: bool = False
    path: str = ""
    speed: float = 1.0
    volume: float = 100.0
    ranges: list[tuple[float, float]] = field(default_factory=list)
    cache_end: float | None = None


def _finite(value) -> float | None:
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def _parse_ranges(cache_state) -> list[tuple[float, float]]:
    if not isinstance(cache_state, dict):
        return []
    ranges = []
    for r in cache_state.get("seekable-ranges") or []:
        start, end = _finite(r.get("start")), _finite(r.get("end"))
        if start is not None and end is not None and end > start:
            ranges.append((start, end))
    ranges.sort()
    return ranges


class MPVMediaHandle:
    """Media handle over one mpv IPC socket.

    Attribute reads come from the last poll() snapshot. Reads raise
    MPVError while the socket is disconnected, which the engine treats as
    missing data.
    """

    def __init__(self, client: MPVClient, name: str = ""):
        self.client = client
        self.name = name or client.socket_path
        self.snapshot = MPVSnapshot()
        self.error_code: int | None = None
        self.refresh_requested = False

    def __repr__(self):
        return f"MPVMediaHandle({self.name!r})"

    # --- Sampling ---

    def sample(self) -> MPVSnapshot:
        if not self.client.connected and not self.client.connect(timeout=1.0):
            return MPVSnapshot(connected=False)
        get = self.client.get_property
        cache_state = get("demuxer-cache-state")
        snap = MPVSnapshot(
            connected=self.client.connected,
            idle=bool(get("idle-active", True)),
            time_pos=_finite(get("time-pos")),
            paused=bool(get("pause", True)),
            paused_for_cache=bool(get("paused-for-cache", False)),
            eof=bool(get("eof-reached", False)),
            path=get("path", "") or "",
            speed=_finite(get("speed")) or 1.0,
            volume=_finite(get("volume")) or 100.0,
            ranges=_parse_ranges(cache_state),
            cache_end=_finite(cache_state.get("cache-end")) if isinstance(cache_state, dict) else None,
        )
        return snap

    def poll(self) -> list[str]:
        """Refresh the snapshot and return the media events implied by the change."""
        previous = self.snapshot
        current = self.sample()
        self.snapshot = current
        return diff_events(previous, current)

    def _require(self) -> MPVSnapshot:
        if not self.snapshot.connected:
            raise MPVError(f"mpv at {self.name} is not connected")
        return self.snapshot

    # --- Media handle contract ---

    def is_attached(self) -> bool:
        return self.snapshot.connected

    @property
    def current_time(self) -> float:
        t = self._require().time_pos
        return t if t is not None else math.nan

    @property
    def paused(self) -> bool:
        snap = self._require()
        return snap.paused or snap.paused_for_cache or snap.idle

    @property
    def ready_state(self) -> int:
        snap = self._require()
        if snap.idle or not snap.path:
            return media.HAVE_NOTHING
        if snap.time_pos is None:
            return media.HAVE_METADATA
        ahead = _buffer_ahead(snap)
        if snap.paused_for_cache or ahead <= 0:
            return media.HAVE_CURRENT_DATA
        if ahead >= ENOUGH_DATA_S:
            return media.HAVE_ENOUGH_DATA
        return media.HAVE_FUTURE_DATA

    @property
    def network_state(self) -> int:
        snap = self._require()
        if snap.idle:
            return media.NETWORK_EMPTY
        if not snap.path:
            return media.NETWORK_NO_SOURCE
        if snap.paused_for_cache:
            return media.NETWORK_LOADING
        return media.NETWORK_IDLE

    @property
    def buffered(self) -> list[tuple[float, float]]:
        return list(self._require().ranges)

    @property
    def ended(self) -> bool:
        return self._require().eof

    @property
    def current_src(self) -> str:
        return self._require().path

    @property
    def playback_rate(self) -> float:
        return self._require().speed

    @property
    def volume(self) -> float:
        return self._require().volume

    def play(self):
        if not self.client.connected:
            raise PlayError("AbortError", f"mpv at {self.name} is not connected")
        if not self.client.set_property("pause", False):
            raise PlayError("NotAllowedError", "mpv rejected unpause")
        return None

    def seek(self, time: float) -> None:
        if not self.client.seek(time, "absolute"):
            raise MPVError(f"seek to {time:.3f} failed on {self.name}")

    def reload(self) -> bool:
        """Reload the current source (the handle owner's answer to a refresh request)."""
        path = self.snapshot.path
        if not path:
            return False
        logger.info("Reloading %s on %s", path, self.name)
        return self.client.loadfile(path)


def _buffer_ahead(snap: MPVSnapshot) -> float:
    if snap.time_pos is None:
        return 0.0
    for start, end in snap.ranges:
        if start <= snap.time_pos <= end:
            return end - snap.time_pos
    if snap.cache_end is not None:
        return max(0.0, snap.cache_end - snap.time_pos)
    return 0.0


def diff_events(previous: MPVSnapshot, current: MPVSnapshot) -> list[str]:
    """Media events implied by two consecutive snapshots, in dispatch order."""
    events = []
    if not current.connected:
        return events
    if current.path != previous.path:
        if previous.path:
            events.append("emptied")
        if current.path:
            events.append("loadedmetadata")
    if current.eof and not previous.eof:
        events.append("ended")
        return events
    if current.paused_for_cache and not previous.paused_for_cache:
        events.append("waiting")
    elif previous.paused_for_cache and not current.paused_for_cache and not current.paused:
        events.append("canplay")
    if current.paused and not previous.paused:
        events.append("pause")
    elif previous.paused and not current.paused and not current.paused_for_cache:
        events.append("playing")
    if (current.time_pos is not None
            and previous.time_pos is not None
            and current.time_pos != previous.time_pos):
        events.append("timeupdate")
    return events
