# =======================================================================================
# gate_discovery/services/cluster_discoverer.py - Density-Based Gate Discovery
# =======================================================================================
import logging
import math
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import DBSCAN

from ..models.enums import DecisionKind, DerivationMethod, GateStatus
from ..models.schemas import (
    AdaptiveThresholds, CheckinEvent, ConfidenceBreakdown, Gate, utcnow,
)
from ..utils.geo import (
    EARTH_RADIUS_M, centroid, distance, is_valid_location, spatial_variance,
)
from .decision_recorder import DecisionRecorder, factor

logger = logging.getLogger(__name__)

# Confidence = weighted blend of tightness, evidence volume and category purity
SPATIAL_WEIGHT = 0.4
SAMPLE_WEIGHT = 0.3
PURITY_WEIGHT = 0.3
SAMPLE_SATURATION_FACTOR = 10       # n >= 10 * min_samples counts as full evidence
TEMPORAL_SATURATION_HOURS = 8
DEDICATED_PURITY = 0.9


def has_location_fix(checkin: CheckinEvent) -> bool:
    loc = checkin.location
    if loc is None:
        return False
    return is_valid_location(loc.latitude, loc.longitude, loc.accuracy_m)


def hour_bucket(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


class ClusterCandidate(BaseModel):
    """A spatial cluster that qualifies as a physical gate."""
    latitude: float
    longitude: float
    spatial_variance: float
    located_ids: List[str]
    corroborated_ids: List[str] = Field(default_factory=list)
    category_counts: Dict[str, int]
    dominant_category: str
    purity: float
    within_radius_share: float
    wifi_ssids: List[str] = Field(default_factory=list)
    ble_beacons: List[str] = Field(default_factory=list)
    first_seen: datetime
    last_seen: datetime
    active_hours: int
    confidence: float
    breakdown: ConfidenceBreakdown

    @property
    def point(self) -> Tuple[float, float]:
        return self.latitude, self.longitude

    @property
    def sample_count(self) -> int:
        return len(self.located_ids) + len(self.corroborated_ids)

    @property
    def rms_radius(self) -> float:
        return math.sqrt(self.spatial_variance)


def gate_name_for(dominant_category: str, sample_count: int, purity: float) -> str:
    if sample_count >= 200:
        return f"Primary {dominant_category} Gate"
    if sample_count >= 100:
        return f"Main {dominant_category} Gate"
    if sample_count >= 50:
        return f"{dominant_category} Entrance"
    if purity >= DEDICATED_PURITY:
        return f"{dominant_category} Dedicated Gate"
    return f"{dominant_category} Access Point"


def unique_gate_name(base: str, gates: Dict[str, Gate]) -> str:
    taken = {g.name for g in gates.values()}
    if base not in taken:
        return base
    suffix = 2
    while f"{base} {suffix}" in taken:
        suffix += 1
    return f"{base} {suffix}"


class ClusterDiscoverer:
    """Groups located check-ins into candidate gates and reconciles them with known gates."""

    def __init__(self, thresholds: AdaptiveThresholds):
        self.thresholds = thresholds
        self.epsilon = float(thresholds.duplicate_distance_meters)
        self.min_samples = int(thresholds.min_samples)

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------
    def discover(self, checkins: Sequence[CheckinEvent]) -> List[ClusterCandidate]:
        """Run one density clustering pass. Input order does not matter."""
        usable = [c for c in checkins if c.status == "success"]
        canonical = sorted(usable, key=lambda c: (c.timestamp, c.id))
        located = [c for c in canonical if has_location_fix(c)]
        unlocated = [c for c in canonical if not has_location_fix(c)]

        if len(located) < self.min_samples:
            logger.debug(
                "[cluster] %d located scans < min_samples=%d; nothing to discover",
                len(located), self.min_samples,
            )
            return []

        coords = np.radians(np.array(
            [[c.location.latitude, c.location.longitude] for c in located]
        ))
        labels = DBSCAN(
            eps=self.epsilon / EARTH_RADIUS_M,
            min_samples=self.min_samples,
            metric="haversine",
            algorithm="ball_tree",
        ).fit(coords).labels_

        groups: Dict[int, List[CheckinEvent]] = {}
        for checkin, label in zip(located, labels):
            if label == -1:
                continue  # noise stays unassigned until next cycle
            groups.setdefault(int(label), []).append(checkin)

        ordered = sorted(groups.values(), key=lambda members: (members[0].timestamp, members[0].id))
        corroborated = self._corroborate(ordered, unlocated)

        candidates: List[ClusterCandidate] = []
        for idx, members in enumerate(ordered):
            candidate = self._build_candidate(members, corroborated.get(idx, []))
            if candidate.sample_count < self.min_samples:
                continue
            if candidate.rms_radius > self.epsilon:
                logger.debug(
                    "[cluster] dropping loose cluster at %.6f,%.6f (rms %.1fm > eps %.1fm)",
                    candidate.latitude, candidate.longitude, candidate.rms_radius, self.epsilon,
                )
                continue
            candidates.append(candidate)

        logger.debug(
            "[cluster] %d located / %d unlocated scans -> %d candidates",
            len(located), len(unlocated), len(candidates),
        )
        return candidates

    def _corroborate(
        self, clusters: List[List[CheckinEvent]], unlocated: List[CheckinEvent]
    ) -> Dict[int, List[CheckinEvent]]:
        """Attach GPS-less scans to the cluster whose ambient signals they share most."""
        fingerprints = []
        for members in clusters:
            signals = set()
            for c in members:
                signals |= c.ambient_signals
            fingerprints.append(signals)

        attached: Dict[int, List[CheckinEvent]] = {}
        for checkin in unlocated:
            signals = checkin.ambient_signals
            if not signals:
                continue
            best_idx, best_overlap = None, 0
            for idx, fingerprint in enumerate(fingerprints):
                overlap = len(signals & fingerprint)
                if overlap > best_overlap:
                    best_idx, best_overlap = idx, overlap
            if best_idx is not None:
                attached.setdefault(best_idx, []).append(checkin)
        return attached

    def _build_candidate(
        self, members: List[CheckinEvent], corroborated: List[CheckinEvent]
    ) -> ClusterCandidate:
        points = [(c.location.latitude, c.location.longitude) for c in members]
        center = centroid(points)
        variance = spatial_variance(points)
        within = sum(1 for p in points if distance(center, p) <= self.epsilon) / len(points)

        everyone = members + corroborated
        counts = Counter(c.category for c in everyone)
        dominant, dominant_count = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0]
        purity = dominant_count / len(everyone)
        active_hours = len({hour_bucket(c.timestamp) for c in everyone})

        spatial_score = 1.0 / (1.0 + variance / (self.epsilon ** 2))
        sample_score = min(1.0, len(everyone) / (SAMPLE_SATURATION_FACTOR * self.min_samples))
        confidence = (
            SPATIAL_WEIGHT * spatial_score
            + SAMPLE_WEIGHT * sample_score
            + PURITY_WEIGHT * purity
        )

        return ClusterCandidate(
            latitude=center[0],
            longitude=center[1],
            spatial_variance=variance,
            located_ids=[c.id for c in members],
            corroborated_ids=[c.id for c in corroborated],
            category_counts=dict(counts),
            dominant_category=dominant,
            purity=purity,
            within_radius_share=within,
            wifi_ssids=sorted({s for c in members for s in c.wifi_ssids}),
            ble_beacons=sorted({b for c in members for b in c.ble_beacons}),
            first_seen=min(c.timestamp for c in everyone),
            last_seen=max(c.timestamp for c in everyone),
            active_hours=active_hours,
            confidence=min(1.0, confidence),
            breakdown=ConfidenceBreakdown(
                spatial_consistency=round(spatial_score, 4),
                sample_size=round(sample_score, 4),
                temporal_stability=round(min(1.0, active_hours / TEMPORAL_SATURATION_HOURS), 4),
                category_distribution=round(purity, 4),
            ),
        )

    # ------------------------------------------------------------------
    # Reconciliation with known gates
    # ------------------------------------------------------------------
    def reconcile(
        self,
        event_id: str,
        candidates: Sequence[ClusterCandidate],
        gates: Dict[str, Gate],
        recorder: DecisionRecorder,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Gate], List[Gate]]:
        """
        Create a learning gate per new candidate, or refresh the statistics of the
        known gate whose centroid lies within epsilon. Mutates `gates` in place.
        Returns (created, refreshed).
        """
        now = now or utcnow()
        known = [g for g in gates.values() if g.is_live and g.has_location]
        created: List[Gate] = []
        refreshed: List[Gate] = []
        touched = set()

        for candidate in candidates:
            match = self._nearest_gate(candidate, known)
            if match is not None and match.id not in touched:
                self._refresh(match, candidate, now)
                touched.add(match.id)
                refreshed.append(match)
                continue

            gate = Gate(
                event_id=event_id,
                name=self._unique_name(candidate, gates),
                status=GateStatus.LEARNING,
                latitude=candidate.latitude,
                longitude=candidate.longitude,
                spatial_variance=candidate.spatial_variance,
                derivation_method=DerivationMethod.AUTO_DISCOVERED,
                confidence=candidate.confidence,
                wifi_ssids=candidate.wifi_ssids,
                ble_beacons=candidate.ble_beacons,
                created_at=now,
                updated_at=now,
                last_seen_at=candidate.last_seen,
            )
            gates[gate.id] = gate
            created.append(gate)
            self._record_creation(gate, candidate, recorder, now)

        return created, refreshed

    def _nearest_gate(self, candidate: ClusterCandidate, known: List[Gate]) -> Optional[Gate]:
        best: Optional[Gate] = None
        best_key = None
        for gate in known:
            d = distance(gate.point, candidate.point)
            if d > self.epsilon:
                continue
            key = (d, gate.created_at, gate.id)
            if best_key is None or key < best_key:
                best, best_key = gate, key
        return best

    def _refresh(self, gate: Gate, candidate: ClusterCandidate, now: datetime) -> None:
        if gate.derivation_method == DerivationMethod.AUTO_DISCOVERED:
            gate.latitude = candidate.latitude
            gate.longitude = candidate.longitude
            gate.spatial_variance = candidate.spatial_variance
            gate.confidence = candidate.confidence
        gate.wifi_ssids = sorted(set(gate.wifi_ssids) | set(candidate.wifi_ssids))
        gate.ble_beacons = sorted(set(gate.ble_beacons) | set(candidate.ble_beacons))
        if gate.last_seen_at is None or candidate.last_seen > gate.last_seen_at:
            gate.last_seen_at = candidate.last_seen
        gate.updated_at = now

    @staticmethod
    def _unique_name(candidate: ClusterCandidate, gates: Dict[str, Gate]) -> str:
        base = gate_name_for(candidate.dominant_category, candidate.sample_count, candidate.purity)
        return unique_gate_name(base, gates)

    def _record_creation(
        self, gate: Gate, candidate: ClusterCandidate, recorder: DecisionRecorder, now: datetime
    ) -> None:
        b = candidate.breakdown
        factors = [
            factor(
                "spatial_consistency", b.spatial_consistency, SPATIAL_WEIGHT,
                f"{candidate.within_radius_share:.0%} of scans within "
                f"{self.epsilon:.0f}m radius",
            ),
            factor(
                "sample_size", b.sample_size, SAMPLE_WEIGHT,
                f"{candidate.sample_count} scans clustered (minimum {self.min_samples})",
            ),
            factor(
                "category_purity", candidate.purity, PURITY_WEIGHT,
                f"{candidate.purity:.0%} of scans are {candidate.dominant_category}",
            ),
        ]
        recorder.record(DecisionKind.CREATED, factors, b, gate_id=gate.id, at=now)
