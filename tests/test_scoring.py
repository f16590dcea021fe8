"""Tests for candidate scoring and trust classification."""

import pytest

from streamheal.config import MonitoringConfig
from streamheal.core.scoring import (
    TRUST_BAD_REASON,
    TRUST_OK,
    TRUST_PROGRESS_INELIGIBLE,
    TRUST_PROGRESS_STALE,
    score_candidate,
)
from streamheal.core.state import MonitorState, PlaybackState

NOW = 100_000.0


def progressing_state(progress_ago_ms=500.0, streak_ms=4000.0, **kwargs) -> MonitorState:
    return MonitorState(
        has_progress=True,
        last_progress_time=NOW - progress_ago_ms,
        progress_streak_ms=streak_ms,
        progress_eligible=streak_ms >= 3000,
        **kwargs,
    )


@pytest.fixture
def mon():
    return MonitoringConfig()


class TestScoreCandidate:
    def test_healthy_candidate(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(), NOW, mon)
        assert s.score == 9
        assert s.reasons == ("playing", "ready_high", "recent_progress", "buffered", "time_nonzero")
        assert s.trusted is True
        assert s.trust_reason == TRUST_OK
        assert s.progress_ago_ms == 500

    def test_fresh_candidate(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), MonitorState(), NOW, mon)
        assert s.score == 1
        assert "no_progress" in s.reasons
        assert "progress_short" in s.reasons
        assert s.trusted is False
        assert s.trust_reason == TRUST_PROGRESS_INELIGIBLE

    def test_fallback_source_not_trusted(self, make_handle, mon):
        handle = make_handle(current_src="https://cdn.example.com/slate/404_processing.m3u8")
        s = score_candidate("video-1", handle, progressing_state(), NOW, mon)
        assert s.score == 5
        assert "fallback_src" in s.reasons
        assert s.trusted is False
        assert s.trust_reason == TRUST_BAD_REASON

    def test_stale_progress(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(progress_ago_ms=6000), NOW, mon)
        assert s.score == 5
        assert "no_progress" in s.reasons
        assert s.trust_reason == TRUST_PROGRESS_STALE

    def test_stale_but_recent_enough(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(progress_ago_ms=3000), NOW, mon)
        assert "stale_progress" in s.reasons
        assert s.score == 7
        assert s.trusted is True

    def test_paused_low_ready(self, make_handle, mon):
        handle = make_handle(paused=True, ready_state=1)
        s = score_candidate("video-1", handle, progressing_state(), NOW, mon)
        assert "paused" in s.reasons
        assert "ready_low" in s.reasons
        assert s.score == 3

    def test_reset_pending_penalised_but_trusted(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(reset_pending_at=NOW - 100), NOW, mon)
        assert "reset_pending" in s.reasons
        assert s.score == 6
        assert s.trusted is True

    def test_reset_state_not_trusted(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(state=PlaybackState.RESET), NOW, mon)
        assert "reset" in s.reasons
        assert s.trusted is False

    def test_detached(self, make_handle, mon):
        handle = make_handle()
        handle.attached = False
        s = score_candidate("video-1", handle, progressing_state(), NOW, mon)
        assert "not_in_dom" in s.reasons
        assert s.score == -1

    def test_dead_candidate(self, make_handle, mon):
        s = score_candidate("video-1", make_handle(), progressing_state(dead_candidate_until=NOW + 1000),
                            NOW, mon)
        assert s.dead_candidate is True
        assert "dead_candidate" in s.reasons

    def test_as_dict(self, make_handle, mon):
        d = score_candidate("video-1", make_handle(), progressing_state(), NOW, mon).as_dict()
        assert d["id"] == "video-1"
        assert d["state"] == "PLAYING"
        assert d["trusted"] is True
        assert d["video_state"]["ready_state"] == 4

    def test_readiness_is_monotonic(self, make_handle, mon):
        scores = [
            score_candidate("video-1", make_handle(ready_state=level), progressing_state(), NOW, mon).score
            for level in range(5)
        ]
        assert scores == sorted(scores)
