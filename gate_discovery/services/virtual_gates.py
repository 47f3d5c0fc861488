# =======================================================================================
# gate_discovery/services/virtual_gates.py - Category-Based Virtual Gates
# =======================================================================================
import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..models.enums import DecisionKind, DerivationMethod, GateStatus
from ..models.schemas import CheckinEvent, ConfidenceBreakdown, Gate, utcnow
from ..utils.geo import spatial_variance
from .cluster_discoverer import (
    TEMPORAL_SATURATION_HOURS, has_location_fix, hour_bucket, unique_gate_name,
)
from .decision_recorder import DecisionRecorder, factor

logger = logging.getLogger(__name__)

LOW_GPS_SHARE = 0.2             # below this share of valid fixes, physical discovery cannot work
MIN_CATEGORY_CHECKINS = 5
MIN_VIRTUAL_CONFIDENCE = 0.65


class VirtualCandidate(BaseModel):
    category: str
    checkin_count: int
    unique_attendees: int
    share: float
    active_hours: int
    spread_m: Optional[float] = None
    first_seen: datetime
    last_seen: datetime
    confidence: float

    @property
    def breakdown(self) -> ConfidenceBreakdown:
        return ConfidenceBreakdown(
            spatial_consistency=round(spread_factor(self.spread_m) / 1.05, 4),
            sample_size=round(attendee_factor(self.unique_attendees), 4),
            temporal_stability=round(min(1.0, self.active_hours / TEMPORAL_SATURATION_HOURS), 4),
            category_distribution=round(self.share, 4),
        )


def volume_factor(share: float) -> float:
    if share >= 0.5:
        return 0.98
    if share >= 0.3:
        return 0.92
    if share >= 0.15:
        return 0.85
    if share >= 0.05:
        return 0.75
    return 0.65


def attendee_factor(unique_attendees: int) -> float:
    if unique_attendees >= 100:
        return 1.0
    if unique_attendees >= 50:
        return 0.98
    if unique_attendees >= 20:
        return 0.95
    if unique_attendees >= 10:
        return 0.90
    return 0.80 + unique_attendees / 10 * 0.10


def activity_factor(active_hours: int) -> float:
    if active_hours >= 6:
        return 1.0
    if active_hours >= 3:
        return 0.95
    if active_hours >= 1:
        return 0.88
    return 0.80


def spread_factor(spread_m: Optional[float]) -> float:
    """Scans that all come from one spot (or from nowhere) are category-segregated, not spatial."""
    if spread_m is None or spread_m < 1.1:
        return 1.05
    if spread_m < 11.1:
        return 1.0
    return 0.95


def virtual_gate_name(category: str, share: float) -> str:
    if share >= 0.5:
        return f"Primary {category} Gate"
    if share >= 0.3:
        return f"{category} Main Entrance"
    if share >= 0.15:
        return f"{category} Gate"
    return f"{category} Virtual Access"


class VirtualGatePlanner:
    """
    Fallback for events whose scans carry too little usable GPS to locate gates:
    one location-less gate per attendee category. Scans are then attributed to it
    by category, so bindings still learn which category each entry point serves.
    """

    def plan(self, checkins: Sequence[CheckinEvent], gates: Dict[str, Gate]) -> List[VirtualCandidate]:
        usable = [c for c in checkins if c.status == "success"]
        if not usable:
            return []
        if any(g.is_live and g.has_location for g in gates.values()):
            return []
        located = [c for c in usable if has_location_fix(c)]
        gps_share = len(located) / len(usable)
        if gps_share >= LOW_GPS_SHARE:
            return []

        spread = None
        if located:
            points = [(c.location.latitude, c.location.longitude) for c in located]
            spread = math.sqrt(spatial_variance(points))

        by_category: Dict[str, List[CheckinEvent]] = defaultdict(list)
        for c in usable:
            by_category[c.category].append(c)

        candidates = []
        for category in sorted(by_category):
            scans = by_category[category]
            if len(scans) < MIN_CATEGORY_CHECKINS:
                continue
            share = len(scans) / len(usable)
            attendees = len({c.wristband_id for c in scans})
            hours = len({hour_bucket(c.timestamp) for c in scans})
            confidence = min(
                1.0,
                volume_factor(share) * attendee_factor(attendees) * activity_factor(hours) * spread_factor(spread),
            )
            if confidence < MIN_VIRTUAL_CONFIDENCE:
                logger.debug("[virtual] %s confidence %.3f below %.2f; skipped", category, confidence,
                             MIN_VIRTUAL_CONFIDENCE)
                continue
            candidates.append(VirtualCandidate(
                category=category,
                checkin_count=len(scans),
                unique_attendees=attendees,
                share=share,
                active_hours=hours,
                spread_m=spread,
                first_seen=min(c.timestamp for c in scans),
                last_seen=max(c.timestamp for c in scans),
                confidence=round(confidence, 4),
            ))

        logger.debug("[virtual] gps share %.0f%% -> %d virtual candidates", gps_share * 100, len(candidates))
        return candidates

    def reconcile(
        self,
        event_id: str,
        candidates: Sequence[VirtualCandidate],
        gates: Dict[str, Gate],
        recorder: DecisionRecorder,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Gate], List[Gate]]:
        """Refresh the live virtual gate of each category or create one. Mutates `gates`."""
        now = now or utcnow()
        existing = {
            g.virtual_category: g for g in gates.values()
            if g.is_live and g.derivation_method == DerivationMethod.VIRTUAL
        }
        created: List[Gate] = []
        refreshed: List[Gate] = []

        for candidate in candidates:
            gate = existing.get(candidate.category)
            if gate is not None:
                gate.confidence = candidate.confidence
                if gate.last_seen_at is None or candidate.last_seen > gate.last_seen_at:
                    gate.last_seen_at = candidate.last_seen
                gate.updated_at = now
                refreshed.append(gate)
                continue

            gate = Gate(
                event_id=event_id,
                name=unique_gate_name(virtual_gate_name(candidate.category, candidate.share), gates),
                status=GateStatus.LEARNING,
                derivation_method=DerivationMethod.VIRTUAL,
                virtual_category=candidate.category,
                confidence=candidate.confidence,
                created_at=now,
                updated_at=now,
                last_seen_at=candidate.last_seen,
            )
            gates[gate.id] = gate
            created.append(gate)
            recorder.record(
                DecisionKind.CREATED,
                [
                    factor(
                        "category_share", candidate.share, 0.4,
                        f"{candidate.share:.0%} of scans are {candidate.category} and too few carry usable GPS",
                    ),
                    factor(
                        "unique_attendees", attendee_factor(candidate.unique_attendees), 0.3,
                        f"{candidate.unique_attendees} distinct wristbands",
                    ),
                    factor("active_hours", activity_factor(candidate.active_hours), 0.3),
                ],
                candidate.breakdown,
                gate_id=gate.id, category=candidate.category,
                primary_reason=f"{candidate.share:.0%} of scans are {candidate.category} and too few carry usable GPS",
                at=now,
            )
            logger.info("[virtual] event=%s created %s (confidence %.2f)", event_id, gate.name, gate.confidence)

        return created, refreshed
