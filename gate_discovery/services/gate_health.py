# =======================================================================================
# gate_discovery/services/gate_health.py - Gate Health Scoring
# =======================================================================================
import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from ..models.schemas import CheckinEvent, Gate, utcnow
from .cluster_discoverer import hour_bucket

logger = logging.getLogger(__name__)

SUCCESS_WEIGHT = 0.5
LATENCY_WEIGHT = 0.25
UPTIME_WEIGHT = 0.25
LATENCY_GOOD_MS = 500.0
LATENCY_BAD_MS = 3000.0


def latency_score(mean_ms: Optional[float]) -> float:
    if mean_ms is None or mean_ms <= LATENCY_GOOD_MS:
        return 1.0
    if mean_ms >= LATENCY_BAD_MS:
        return 0.0
    return 1.0 - (mean_ms - LATENCY_GOOD_MS) / (LATENCY_BAD_MS - LATENCY_GOOD_MS)


class GateHealthScorer:
    """Scores a gate 0-100 from the outcome, latency and regularity of its scans."""

    def score(self, checkins: Sequence[CheckinEvent], now: Optional[datetime] = None) -> Optional[float]:
        if not checkins:
            return None
        now = now or utcnow()

        success_rate = sum(1 for c in checkins if c.status == "success") / len(checkins)

        latencies = [c.processing_time_ms for c in checkins if c.processing_time_ms is not None]
        mean_latency = sum(latencies) / len(latencies) if latencies else None

        first_hour = hour_bucket(min(c.timestamp for c in checkins))
        last_hour = hour_bucket(max(now, max(c.timestamp for c in checkins)))
        span_hours = int((last_hour - first_hour) / timedelta(hours=1)) + 1
        busy_hours = len({hour_bucket(c.timestamp) for c in checkins})
        uptime = min(1.0, busy_hours / span_hours)

        health = 100.0 * (
            SUCCESS_WEIGHT * success_rate
            + LATENCY_WEIGHT * latency_score(mean_latency)
            + UPTIME_WEIGHT * uptime
        )
        return round(max(0.0, min(100.0, health)), 2)

    def refresh(self, gate: Gate, checkins: Sequence[CheckinEvent], now: Optional[datetime] = None) -> Gate:
        """Update gate.health_score in place; a gate without scans keeps its score."""
        health = self.score(checkins, now)
        if health is not None:
            gate.health_score = health
        return gate
