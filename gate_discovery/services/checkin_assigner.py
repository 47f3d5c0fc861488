# =======================================================================================
# gate_discovery/services/checkin_assigner.py - Check-in To Gate Attribution
# =======================================================================================
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ..models.schemas import AdaptiveThresholds, CheckinAssignment, CheckinEvent, Gate, utcnow
from ..utils.geo import distance
from .binding_tracker import ScanEvidence
from .cluster_discoverer import has_location_fix

logger = logging.getLogger(__name__)


class AssignmentResult(BaseModel):
    assignments: List[CheckinAssignment] = Field(default_factory=list)
    evidence: Dict[str, List[ScanEvidence]] = Field(default_factory=dict)
    unmatched: int = 0

    def evidence_for(self, gate_id: str) -> List[ScanEvidence]:
        return self.evidence.get(gate_id, [])


class CheckinAssigner:
    """
    Attributes check-ins that have no gate yet. Nearest live gate within epsilon
    wins; otherwise the gate whose learned WiFi/BLE fingerprint overlaps most,
    and last the virtual gate serving the scan's category.
    Every new successful attribution yields one piece of binding evidence.
    """

    def __init__(self, thresholds: AdaptiveThresholds):
        self.epsilon = float(thresholds.duplicate_distance_meters)
        self.velocity_threshold_ms = int(thresholds.velocity_threshold_ms)

    def assign(
        self,
        checkins: Sequence[CheckinEvent],
        gates: Dict[str, Gate],
        existing: Dict[str, CheckinAssignment],
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        now = now or utcnow()
        live = sorted((g for g in gates.values() if g.is_live), key=lambda g: (g.created_at, g.id))
        result = AssignmentResult()
        # wristband -> (timestamp, gate_id) of its latest attributed scan
        last_seen: Dict[str, Tuple[datetime, str]] = {}

        for checkin in sorted(checkins, key=lambda c: (c.timestamp, c.id)):
            prior = existing.get(checkin.id)
            if prior is not None:
                last_seen[checkin.wristband_id] = (checkin.timestamp, prior.gate_id)
                continue

            gate, spatially_consistent = self.match(checkin, live)
            if gate is None:
                result.unmatched += 1
                continue

            result.assignments.append(CheckinAssignment(
                checkin_id=checkin.id, event_id=checkin.event_id, gate_id=gate.id, assigned_at=now,
            ))
            temporally_consistent = self._velocity_ok(checkin, gate, gates, last_seen.get(checkin.wristband_id))
            last_seen[checkin.wristband_id] = (checkin.timestamp, gate.id)

            if checkin.status != "success":
                continue
            result.evidence.setdefault(gate.id, []).append(ScanEvidence(
                checkin_id=checkin.id,
                gate_id=gate.id,
                category=checkin.category,
                timestamp=checkin.timestamp,
                spatially_consistent=spatially_consistent,
                temporally_consistent=temporally_consistent,
            ))

        if result.unmatched:
            logger.debug("[assign] %d check-ins left unattributed for the next cycle", result.unmatched)
        return result

    def match(self, checkin: CheckinEvent, live: List[Gate]) -> Tuple[Optional[Gate], bool]:
        """Return (gate, spatially_consistent) or (None, False)."""
        physical = [g for g in live if g.has_location]
        located = has_location_fix(checkin)
        if located:
            point = (checkin.location.latitude, checkin.location.longitude)
            best, best_d = None, None
            for gate in physical:
                d = distance(point, gate.point)
                if d <= self.epsilon and (best_d is None or d < best_d):
                    best, best_d = gate, d
            if best is not None:
                return best, True

        signals = checkin.ambient_signals
        best, best_overlap = None, 0
        for gate in physical:
            overlap = len(signals & gate.ambient_signals)
            if overlap > best_overlap:
                best, best_overlap = gate, overlap
        if best is not None:
            # A GPS fix that disagrees with the fingerprint match is a spatial mismatch.
            return best, not located

        for gate in live:
            if not gate.has_location and gate.virtual_category == checkin.category:
                return gate, True
        return None, False

    def _velocity_ok(
        self,
        checkin: CheckinEvent,
        gate: Gate,
        gates: Dict[str, Gate],
        previous: Optional[Tuple[datetime, str]],
    ) -> bool:
        if previous is None:
            return True
        prev_ts, prev_gate_id = previous
        if prev_gate_id == gate.id:
            return True
        elapsed_ms = (checkin.timestamp - prev_ts).total_seconds() * 1000.0
        if elapsed_ms >= self.velocity_threshold_ms:
            return True
        prev_gate = gates.get(prev_gate_id)
        if prev_gate is None or not (prev_gate.has_location and gate.has_location):
            return True
        return distance(prev_gate.point, gate.point) <= self.epsilon
