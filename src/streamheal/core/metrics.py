"""Healing counters and stall-duration history."""

from __future__ import annotations

import threading
import time

STALL_HISTORY_MAX = 20

COUNTERS = (
    "stalls_detected",
    "heals_successful",
    "heals_failed",
    "no_heal_points",
    "play_errors",
    "failovers",
    "refresh_requests",
    "errors",
)


class Metrics:
    """Counters shared by one StreamHealer instance.

    Reads may come from HTTP threads while the engine loop writes, so access
    goes through a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._stall_history: list[dict] = []
        self.reset()

    def reset(self):
        with self._lock:
            self._counters = {name: 0 for name in COUNTERS}
            self._counters.update({
                "stalls_duration_total_ms": 0,
                "stalls_duration_max_ms": 0,
                "stalls_duration_last_ms": 0,
                "stalls_duration_count": 0,
            })
            self._stall_history = []
            self._session_start = time.time()

    def increment(self, name: str, value: int = 1):
        with self._lock:
            if name in self._counters:
                self._counters[name] += value

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0)

    def record_stall_duration(self, duration_ms: float, **detail):
        if duration_ms <= 0:
            return
        with self._lock:
            c = self._counters
            c["stalls_duration_count"] += 1
            c["stalls_duration_total_ms"] += duration_ms
            c["stalls_duration_last_ms"] = duration_ms
            c["stalls_duration_max_ms"] = max(c["stalls_duration_max_ms"], duration_ms)
            self._stall_history.append({"ms": round(duration_ms), "at": time.time(), **detail})
            del self._stall_history[:-STALL_HISTORY_MAX]

    def summary(self) -> dict:
        with self._lock:
            c = dict(self._counters)
            history = [entry["ms"] for entry in self._stall_history]
            session_start = self._session_start
        count = c["stalls_duration_count"]
        detected = c["stalls_detected"]
        c["stall_duration_avg_ms"] = round(c["stalls_duration_total_ms"] / count) if count else 0
        c["stall_duration_recent_ms"] = history
        c["heal_rate"] = f"{c['heals_successful'] / detected * 100:.1f}%" if detected else "N/A"
        c["uptime_s"] = round(time.time() - session_start, 1)
        return c
