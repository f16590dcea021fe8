"""Linear-growth, capped backoff for repeated no-heal-point failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from streamheal.core.state import MonitorState, reset_no_heal_point_state

if TYPE_CHECKING:
    from streamheal.config import StallConfig
    from streamheal.core.clock import Scheduler

logger = logging.getLogger(__name__)


def backoff_delay(base_ms: float, max_ms: float, count: int) -> float:
    """``min(base * count, max)``: non-decreasing in count, capped at max."""
    return min(base_ms * count, max_ms)


@dataclass(frozen=True)
class BackoffStatus:
    should_skip: bool
    remaining_ms: float = 0.0
    no_heal_point_count: int = 0


class BackoffManager:
    def __init__(self, config: StallConfig, scheduler: Scheduler):
        self.config = config
        self.scheduler = scheduler

    def reset_backoff(self, ms: MonitorState, reason: str, video_id: str = ""):
        now = self.scheduler.now()
        remaining = max(ms.next_heal_allowed_time - now, 0) if ms.next_heal_allowed_time else 0
        if ms.no_heal_point_count > 0 or remaining > 0:
            logger.debug("[BACKOFF] %s: reset (%s, previous no-heal points=%d, remaining=%.0fms)",
                         video_id, reason, ms.no_heal_point_count, remaining)
        reset_no_heal_point_state(ms)

    def apply_backoff(self, video_id: str, ms: MonitorState, reason: str) -> float:
        """Count one more no-heal point and push next_heal_allowed_time out."""
        count = ms.no_heal_point_count + 1
        delay = backoff_delay(self.config.no_heal_point_backoff_base_ms,
                              self.config.no_heal_point_backoff_max_ms, count)
        ms.no_heal_point_count = count
        ms.next_heal_allowed_time = self.scheduler.now() + delay
        logger.info("[BACKOFF] %s: no heal point (%s), count=%d, next heal in %.0fms",
                    video_id, reason, count, delay)
        return delay

    def get_backoff_status(self, ms: MonitorState, now: float | None = None) -> BackoffStatus:
        if now is None:
            now = self.scheduler.now()
        if ms.next_heal_allowed_time and now < ms.next_heal_allowed_time:
            return BackoffStatus(True, ms.next_heal_allowed_time - now, ms.no_heal_point_count)
        return BackoffStatus(False)
