"""Media handle contract consumed by the engine.

A media handle is a live reference to one playable element (an mpv
instance, a browser video element bridged over IPC, a test double...). The
engine only reads the attributes below and calls play()/seek().
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# readyState tiers
HAVE_NOTHING = 0
HAVE_METADATA = 1
HAVE_CURRENT_DATA = 2
HAVE_FUTURE_DATA = 3
HAVE_ENOUGH_DATA = 4

# networkState values
NETWORK_EMPTY = 0
NETWORK_IDLE = 1
NETWORK_LOADING = 2
NETWORK_NO_SOURCE = 3

FALLBACK_SRC_PATTERN = re.compile(
    r"(404_processing|_404/404_processing|_404_processing|_404)", re.IGNORECASE
)

MEDIA_EVENTS = (
    "timeupdate", "playing", "loadedmetadata", "loadeddata", "canplay",
    "waiting", "stalled", "pause", "ended", "error", "abort", "emptied",
)


class MediaReadError(Exception):
    """A handle attribute could not be read (detached, IPC dropped...)."""


class PlayError(Exception):
    """play() was rejected by the handle.

    ``name`` follows the DOM exception naming the engine classifies on
    (``AbortError``, ``NotAllowedError``, ``NotSupportedError``...).
    """

    def __init__(self, name: str, message: str = ""):
        super().__init__(message or name)
        self.name = name
        self.message = message


@runtime_checkable
class MediaHandle(Protocol):
    current_time: float
    paused: bool
    ready_state: int
    network_state: int
    buffered: list[tuple[float, float]]
    error_code: int | None
    ended: bool
    current_src: str
    playback_rate: float
    volume: float

    def is_attached(self) -> bool:
        ...

    def play(self) -> Any:
        """Resume playback.

        Returns None on synchronous success, or a future-like object with
        done()/exception() that settles later. Raises PlayError on an
        immediate rejection.
        """

    def seek(self, time: float) -> None:
        ...


@dataclass(frozen=True)
class MediaEvent:
    """Tagged notification forwarded by the handle's owner to dispatch()."""

    type: str
    detail: dict = field(default_factory=dict)


@dataclass(frozen=True)
class LiteSnapshot:
    ready_state: int
    network_state: int
    paused: bool
    current_time: float | None
    current_src: str
    buffered_length: int
    ended: bool
    error_code: int | None

    def as_dict(self) -> dict:
        return {
            "ready_state": self.ready_state,
            "network_state": self.network_state,
            "paused": self.paused,
            "current_time": round(self.current_time, 3) if self.current_time is not None else None,
            "current_src": self.current_src,
            "buffered_length": self.buffered_length,
            "ended": self.ended,
            "error_code": self.error_code,
        }


def read(handle, name: str, default=None):
    """Read a handle attribute, treating any read failure as missing data."""
    try:
        return getattr(handle, name)
    except (MediaReadError, AttributeError, OSError) as e:
        logger.debug("Handle read failed for %s: %s", name, e)
        return default


def current_time(handle) -> float | None:
    value = read(handle, "current_time")
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def has_src(handle) -> bool:
    return bool(read(handle, "current_src", ""))


def is_attached(handle) -> bool:
    try:
        return bool(handle.is_attached())
    except (MediaReadError, OSError):
        return False


def is_fallback_src(src: str | None) -> bool:
    return bool(src) and FALLBACK_SRC_PATTERN.search(src) is not None


def lite_snapshot(handle) -> LiteSnapshot:
    buffered = read(handle, "buffered", None) or []
    return LiteSnapshot(
        ready_state=read(handle, "ready_state", 0) or 0,
        network_state=read(handle, "network_state", 0) or 0,
        paused=bool(read(handle, "paused", True)),
        current_time=current_time(handle),
        current_src=read(handle, "current_src", "") or "",
        buffered_length=len(buffered),
        ended=bool(read(handle, "ended", False)),
        error_code=read(handle, "error_code", None),
    )
