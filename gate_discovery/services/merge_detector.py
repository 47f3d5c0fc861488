# =======================================================================================
# gate_discovery/services/merge_detector.py - Duplicate Gate Detection & Merging
# =======================================================================================
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..models.enums import DecisionKind, DerivationMethod, GateStatus, MergeOrigin, MergeStatus
from ..models.schemas import (
    AdaptiveThresholds, CheckinAssignment, CheckinEvent, ConfidenceBreakdown, Gate,
    GateBinding, MergeSuggestion, utcnow,
)
from ..utils.exceptions import GateEngineError
from ..utils.geo import distance, grid_cell, neighbouring_cells, weighted_centroid
from .binding_tracker import BindingKey, BindingTracker
from .cluster_discoverer import hour_bucket
from .decision_recorder import DecisionRecorder, factor

logger = logging.getLogger(__name__)

PROXIMITY_WEIGHT = 0.35
SIMILARITY_WEIGHT = 0.45
EVIDENCE_WEIGHT = 0.2
EVIDENCE_SATURATION = 30


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


def hourly_traffic(
    gates: Iterable[Gate],
    assignments: Iterable[CheckinAssignment],
    checkins: Dict[str, CheckinEvent],
) -> Dict[str, np.ndarray]:
    """Per-gate vector of check-in counts per hour, all on a shared hour axis."""
    per_gate: Dict[str, List[datetime]] = {g.id: [] for g in gates}
    for assignment in assignments:
        checkin = checkins.get(assignment.checkin_id)
        if checkin is None or assignment.gate_id not in per_gate:
            continue
        per_gate[assignment.gate_id].append(hour_bucket(checkin.timestamp))

    axis = sorted({h for hours in per_gate.values() for h in hours})
    index = {h: i for i, h in enumerate(axis)}
    vectors: Dict[str, np.ndarray] = {}
    for gate_id, hours in per_gate.items():
        vec = np.zeros(len(axis), dtype=float)
        for h in hours:
            vec[index[h]] += 1.0
        vectors[gate_id] = vec
    return vectors


def choose_primary(a: Gate, b: Gate) -> Tuple[Gate, Gate]:
    """Higher sample_count wins; ties go to the older gate, then the smaller id."""
    ranked = sorted((a, b), key=lambda g: (-g.sample_count, g.created_at, g.id))
    return ranked[0], ranked[1]


def merge_confidence(d: float, epsilon: float, similarity: float, n1: int, n2: int) -> float:
    proximity = max(0.0, 1.0 - (d / epsilon) ** 2)
    evidence = min(1.0, min(n1, n2) / EVIDENCE_SATURATION)
    score = PROXIMITY_WEIGHT * proximity + SIMILARITY_WEIGHT * similarity + EVIDENCE_WEIGHT * evidence
    return max(0.0, min(1.0, score))


class MergeDetector:
    """
    Finds pairs of live gates that are most likely the same physical entry point,
    using a grid prefilter so only nearby gates are ever compared.
    """

    def __init__(
        self,
        thresholds: AdaptiveThresholds,
        recorder: DecisionRecorder,
        tracker: BindingTracker,
        auto_approve_confidence: float = 0.85,
        similarity_floor: float = 0.5,
    ):
        self.thresholds = thresholds
        self.epsilon = float(thresholds.duplicate_distance_meters)
        self.recorder = recorder
        self.tracker = tracker
        self.auto_approve_confidence = auto_approve_confidence
        self.similarity_floor = similarity_floor

    def candidate_pairs(self, gates: Sequence[Gate]) -> List[Tuple[Gate, Gate, float]]:
        """(a, b, distance) for live gates in the same or a neighbouring grid cell, closest first."""
        live = sorted((g for g in gates if g.is_live and g.has_location), key=lambda g: (g.created_at, g.id))
        buckets: Dict[Tuple[int, int], List[Gate]] = {}
        for gate in live:
            buckets.setdefault(grid_cell(gate.latitude, gate.longitude, self.epsilon), []).append(gate)

        seen: Set[frozenset] = set()
        pairs: List[Tuple[Gate, Gate, float]] = []
        for gate in live:
            for cell in neighbouring_cells(grid_cell(gate.latitude, gate.longitude, self.epsilon)):
                for other in buckets.get(cell, []):
                    pair = frozenset((gate.id, other.id))
                    if other.id == gate.id or pair in seen:
                        continue
                    seen.add(pair)
                    pairs.append((gate, other, distance(gate.point, other.point)))
        pairs.sort(key=lambda p: (p[2], min(p[0].id, p[1].id), max(p[0].id, p[1].id)))
        return pairs

    def detect(
        self,
        gates: Dict[str, Gate],
        bindings: Dict[BindingKey, GateBinding],
        assignments: Dict[str, CheckinAssignment],
        checkins: Dict[str, CheckinEvent],
        existing: Sequence[MergeSuggestion],
        now: Optional[datetime] = None,
    ) -> Tuple[List[MergeSuggestion], List[CheckinAssignment]]:
        """
        Scan all live gates for duplicates. High-confidence pairs are merged on the
        spot; the rest are returned as pending suggestions.
        Returns (new suggestions, assignments moved by merges).
        """
        now = now or utcnow()
        known_pairs = {s.pair for s in existing}
        vectors = hourly_traffic(gates.values(), assignments.values(), checkins)
        created: List[MergeSuggestion] = []
        moved: List[CheckinAssignment] = []

        for a, b, d in self.candidate_pairs(list(gates.values())):
            if not (a.is_live and b.is_live):
                continue  # absorbed earlier in this pass
            if frozenset((a.id, b.id)) in known_pairs:
                continue
            if d >= self.epsilon:
                continue
            similarity = cosine_similarity(vectors[a.id], vectors[b.id])
            if similarity < self.similarity_floor:
                continue

            primary, secondary = choose_primary(a, b)
            confidence = merge_confidence(d, self.epsilon, similarity, primary.sample_count, secondary.sample_count)
            suggestion = MergeSuggestion(
                event_id=primary.event_id,
                primary_gate_id=primary.id,
                secondary_gate_id=secondary.id,
                confidence_score=round(confidence, 4),
                distance_meters=round(d, 2),
                traffic_similarity=round(similarity, 4),
                reasoning=(
                    f"Centroids {d:.1f}m apart (epsilon {self.epsilon:.0f}m), hourly traffic "
                    f"similarity {similarity:.2f}, samples {primary.sample_count}/{secondary.sample_count}"
                ),
                created_at=now,
            )
            known_pairs.add(suggestion.pair)
            created.append(suggestion)

            if confidence >= self.auto_approve_confidence:
                moved.extend(self.merge(suggestion, gates, bindings, assignments, MergeOrigin.AUTO_APPROVED, now))
                vectors[primary.id] = vectors[primary.id] + vectors[secondary.id]
            else:
                logger.info(
                    "[merge] event=%s pending suggestion %s <- %s (confidence %.2f)",
                    primary.event_id, primary.name, secondary.name, confidence,
                )
        return created, moved

    def merge(
        self,
        suggestion: MergeSuggestion,
        gates: Dict[str, Gate],
        bindings: Dict[BindingKey, GateBinding],
        assignments: Dict[str, CheckinAssignment],
        origin: MergeOrigin,
        now: Optional[datetime] = None,
    ) -> List[CheckinAssignment]:
        """Absorb the secondary gate into the primary. Returns the reattributed assignments."""
        now = now or utcnow()
        primary = gates.get(suggestion.primary_gate_id)
        secondary = gates.get(suggestion.secondary_gate_id)
        if primary is None or secondary is None or not (primary.is_live and secondary.is_live):
            raise GateEngineError(f"Merge suggestion {suggestion.id} refers to a gate that is no longer live")
        if not (primary.has_location and secondary.has_location):
            raise GateEngineError(f"Merge suggestion {suggestion.id} involves a virtual gate")

        moved = []
        for assignment in assignments.values():
            if assignment.gate_id == secondary.id:
                assignment.gate_id = primary.id
                assignment.assigned_at = now
                moved.append(assignment)

        for binding in [b for b in bindings.values() if b.gate_id == secondary.id]:
            self.tracker.absorb(primary, binding, bindings, now)

        n1, n2 = primary.sample_count, secondary.sample_count
        if primary.derivation_method == DerivationMethod.AUTO_DISCOVERED:
            merged_point = weighted_centroid([(primary.point, max(n1, 1)), (secondary.point, max(n2, 1))])
            w1, w2 = max(n1, 1), max(n2, 1)
            d1 = distance(merged_point, primary.point)
            d2 = distance(merged_point, secondary.point)
            primary.spatial_variance = (
                w1 * (primary.spatial_variance + d1 ** 2) + w2 * (secondary.spatial_variance + d2 ** 2)
            ) / (w1 + w2)
            primary.latitude, primary.longitude = merged_point
        primary.sample_count = n1 + n2
        primary.confidence = max(primary.confidence, secondary.confidence)
        primary.wifi_ssids = sorted(set(primary.wifi_ssids) | set(secondary.wifi_ssids))
        primary.ble_beacons = sorted(set(primary.ble_beacons) | set(secondary.ble_beacons))
        if secondary.last_seen_at and (primary.last_seen_at is None or secondary.last_seen_at > primary.last_seen_at):
            primary.last_seen_at = secondary.last_seen_at
        primary.updated_at = now

        secondary.status = GateStatus.AUTO_ARCHIVED
        secondary.archived_at = now
        secondary.archive_reason = f"Merged into {primary.name}"
        secondary.merged_into = primary.id
        secondary.updated_at = now

        suggestion.status = MergeStatus.APPROVED
        suggestion.decided_by = origin
        suggestion.resolved_at = now

        self.recorder.record(
            DecisionKind.MERGED,
            [
                factor(
                    "distance_meters", max(0.0, 1.0 - suggestion.distance_meters / self.epsilon), PROXIMITY_WEIGHT,
                    f"{secondary.name} is {suggestion.distance_meters:.1f}m from {primary.name}",
                ),
                factor(
                    "traffic_similarity", suggestion.traffic_similarity, SIMILARITY_WEIGHT,
                    f"{suggestion.traffic_similarity:.0%} hourly traffic similarity",
                ),
                factor(
                    "sample_size", min(1.0, min(n1, n2) / EVIDENCE_SATURATION), EVIDENCE_WEIGHT,
                    f"{n1} and {n2} scans at the two gates",
                ),
            ],
            ConfidenceBreakdown(
                spatial_consistency=round(max(0.0, 1.0 - (suggestion.distance_meters / self.epsilon) ** 2), 4),
                sample_size=round(min(1.0, min(n1, n2) / EVIDENCE_SATURATION), 4),
                temporal_stability=suggestion.traffic_similarity,
                category_distribution=round(self._category_overlap(primary.id, bindings), 4),
            ),
            gate_id=primary.id,
            primary_reason=(
                f"{secondary.name} merged into {primary.name}: {suggestion.distance_meters:.1f}m apart "
                f"with {suggestion.traffic_similarity:.0%} traffic similarity"
            ),
            at=now,
        )
        logger.info(
            "[merge] event=%s %s absorbed %s (%s, confidence %.2f, %d assignments moved)",
            primary.event_id, primary.name, secondary.name, origin.value,
            suggestion.confidence_score, len(moved),
        )
        return moved

    @staticmethod
    def _category_overlap(gate_id: str, bindings: Dict[BindingKey, GateBinding]) -> float:
        counts = [b.sample_count for b in bindings.values() if b.gate_id == gate_id]
        total = sum(counts)
        return max(counts) / total if total else 0.0
