"""Candidate fitness scoring and trust classification.

Every rule is independent: all matching rules apply and their reason tags
accumulate in order. Scores are recomputed on each evaluation and never
mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from streamheal.core import media
from streamheal.core.media import LiteSnapshot
from streamheal.core.state import MonitorState, PlaybackState

if TYPE_CHECKING:
    from streamheal.config import MonitoringConfig

# Reasons that disqualify a candidate from being trusted
BAD_REASONS = frozenset({"fallback_src", "ended", "not_in_dom", "reset", "error_state", "error"})

# Reasons that mark the current candidate as clearly broken for switch policy
CLEARLY_BAD_REASONS = frozenset({"fallback_src", "ended", "not_in_dom", "reset", "error_state"})

TRUST_OK = "trusted"
TRUST_PROGRESS_INELIGIBLE = "progress_ineligible"
TRUST_BAD_REASON = "bad_reason"
TRUST_PROGRESS_STALE = "progress_stale"


@dataclass(frozen=True)
class CandidateScore:
    id: str
    score: int
    reasons: tuple[str, ...]
    vs: LiteSnapshot
    state: PlaybackState
    progress_ago_ms: float | None
    progress_streak_ms: float
    progress_eligible: bool
    dead_candidate: bool
    trusted: bool = False
    trust_reason: str = TRUST_PROGRESS_INELIGIBLE

    def has_reason(self, *tags: str) -> bool:
        return any(t in self.reasons for t in tags)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "score": self.score,
            "reasons": list(self.reasons),
            "state": self.state.value,
            "progress_ago_ms": round(self.progress_ago_ms) if self.progress_ago_ms is not None else None,
            "progress_streak_ms": round(self.progress_streak_ms),
            "progress_eligible": self.progress_eligible,
            "dead_candidate": self.dead_candidate,
            "trusted": self.trusted,
            "trust_reason": self.trust_reason,
            "video_state": self.vs.as_dict(),
        }


def score_candidate(
    video_id: str,
    handle,
    ms: MonitorState,
    now: float,
    config: MonitoringConfig,
) -> CandidateScore:
    """Score one handle and attach its trust verdict."""
    vs = media.lite_snapshot(handle)
    progress_ago_ms = now - ms.last_progress_time if ms.has_progress and ms.last_progress_time else None
    streak = ms.progress_streak_ms or 0.0
    eligible = ms.progress_eligible or streak >= config.candidate_min_progress_ms
    dead = ms.is_dead(now)

    score = 0
    reasons: list[str] = []

    if not media.is_attached(handle):
        score -= 10
        reasons.append("not_in_dom")
    if vs.ended:
        score -= 5
        reasons.append("ended")
    if vs.error_code:
        score -= 3
        reasons.append("error")
    if ms.state == PlaybackState.RESET:
        score -= 3
        reasons.append("reset")
    if ms.reset_pending:
        score -= 3
        reasons.append("reset_pending")
    if ms.state == PlaybackState.ERROR:
        score -= 2
        reasons.append("error_state")
    if dead:
        score -= 6
        reasons.append("dead_candidate")
    if media.is_fallback_src(vs.current_src):
        score -= 4
        reasons.append("fallback_src")

    if not vs.paused:
        score += 2
        reasons.append("playing")
    else:
        score -= 1
        reasons.append("paused")

    if vs.ready_state >= media.HAVE_FUTURE_DATA:
        score += 2
        reasons.append("ready_high")
    elif vs.ready_state >= media.HAVE_CURRENT_DATA:
        score += 1
        reasons.append("ready_mid")
    else:
        score -= 1
        reasons.append("ready_low")

    if progress_ago_ms is None:
        score -= 2
        reasons.append("no_progress")
    elif progress_ago_ms < config.progress_recent_ms:
        score += 3
        reasons.append("recent_progress")
    elif progress_ago_ms < config.progress_stale_ms:
        score += 1
        reasons.append("stale_progress")
    else:
        score -= 1
        reasons.append("no_progress")

    if not eligible:
        score -= 3
        reasons.append("progress_short")
    if vs.buffered_length > 0:
        score += 1
        reasons.append("buffered")
    if vs.current_time is not None and vs.current_time > 0:
        score += 1
        reasons.append("time_nonzero")

    record = CandidateScore(
        id=video_id,
        score=score,
        reasons=tuple(reasons),
        vs=vs,
        state=ms.state,
        progress_ago_ms=progress_ago_ms,
        progress_streak_ms=streak,
        progress_eligible=eligible,
        dead_candidate=dead,
    )
    trusted, trust_reason = classify_trust(record, config.trust_stale_ms)
    return replace(record, trusted=trusted, trust_reason=trust_reason)


def classify_trust(record: CandidateScore, trust_stale_ms: float) -> tuple[bool, str]:
    """Return (trusted, reason); reason is one of the TRUST_* tags."""
    if not record.progress_eligible:
        return False, TRUST_PROGRESS_INELIGIBLE
    if any(r in BAD_REASONS for r in record.reasons):
        return False, TRUST_BAD_REASON
    if record.progress_ago_ms is None or record.progress_ago_ms > trust_stale_ms:
        return False, TRUST_PROGRESS_STALE
    return True, TRUST_OK
