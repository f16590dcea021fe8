"""HTTP client for a running streamheal server.

Used by the ``streamheal`` command to query status and push signals.
"""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class StreamHealAPIError(Exception):
    """Error communicating with the streamheal server."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamHealClient:
    """HTTP client for the streamheal REST API.

    Usage:
        client = StreamHealClient("127.0.0.1", 5070)
        status = client.get_status()
        client.send_signal("playhead_stall", message="Playhead stalling at 12.3")
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 5070, transport: httpx.BaseTransport | None = None):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self._client = httpx.Client(base_url=self.base_url, timeout=DEFAULT_TIMEOUT, transport=transport)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.ConnectError:
            raise StreamHealAPIError(f"Cannot connect to {self.base_url}")
        except httpx.TimeoutException:
            raise StreamHealAPIError("Request timed out")
        except httpx.HTTPStatusError as e:
            raise StreamHealAPIError(str(e), e.response.status_code)

    def _get(self, path: str, params: dict | None = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, data: dict | None = None) -> Any:
        return self._request("POST", path, json=data)

    # --- Status ---

    def get_status(self) -> dict:
        return self._get("/api/status")

    def get_monitors(self) -> list[dict]:
        return self._get("/api/monitors")

    def get_metrics(self) -> dict:
        return self._get("/api/metrics")

    def health(self) -> dict:
        return self._get("/api/health")

    def is_reachable(self) -> bool:
        try:
            self.health()
            return True
        except StreamHealAPIError:
            return False

    # --- Input ---

    def send_signal(self, signal_type: str, message: str = "", level: str = "warning", **extra) -> dict:
        payload = {"type": signal_type, "level": level, "message": message}
        payload.update({k: v for k, v in extra.items() if v is not None})
        return self._post("/api/signal", payload)

    def scan(self, reason: str = "cli") -> dict:
        return self._post("/api/scan", {"reason": reason})

    # --- Events ---

    def recent_events(self, limit: int = 20, event_type: str | None = None) -> list[dict]:
        params = {"limit": limit}
        if event_type:
            params["type"] = event_type
        return self._get("/api/events/recent", params)
