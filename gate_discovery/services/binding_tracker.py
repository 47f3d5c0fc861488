# =======================================================================================
# gate_discovery/services/binding_tracker.py - Gate/Category Binding State Machine
# =======================================================================================
import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from ..models.enums import BINDING_TRANSITIONS, BindingStatus, DecisionKind
from ..models.schemas import AdaptiveThresholds, ConfidenceBreakdown, Gate, GateBinding, utcnow
from ..utils.exceptions import GateEngineError
from .decision_recorder import DecisionRecorder, factor

logger = logging.getLogger(__name__)

EVIDENCE_WEIGHT = 0.05          # share of the remaining gap closed by one consistent scan
VIOLATION_DECAY = 0.9           # multiplicative decay per violating scan
DEMOTION_RATIO = 0.25           # violations / samples above which enforcement is lifted
REJECTION_CONFIDENCE_FLOOR = 0.2
REJECTION_MIN_OBSERVATIONS = 30
HARD_VIOLATION_LIMIT = 200

BindingKey = Tuple[str, str]


class ScanEvidence(BaseModel):
    """One attributed scan, tagged with how well it fits the gate's learned profile."""
    checkin_id: str
    gate_id: str
    category: str
    timestamp: datetime
    spatially_consistent: bool = True
    temporally_consistent: bool = True

    @property
    def consistent(self) -> bool:
        return self.spatially_consistent and self.temporally_consistent


def observations(binding: GateBinding) -> int:
    return binding.sample_count + binding.violation_count


def violation_ratio(binding: GateBinding) -> float:
    if binding.sample_count == 0:
        return math.inf if binding.violation_count else 0.0
    return binding.violation_count / binding.sample_count


class BindingTracker:
    """
    Applies per-scan evidence to (gate, category) bindings and drives the
    probation -> enforced -> probation/rejected lifecycle. Pure state updater:
    it never blocks or fails a live check-in.
    """

    def __init__(self, thresholds: AdaptiveThresholds, recorder: DecisionRecorder):
        self.thresholds = thresholds
        self.recorder = recorder

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------
    def apply(
        self,
        gate: Gate,
        evidence: Iterable[ScanEvidence],
        bindings: Dict[BindingKey, GateBinding],
        now: Optional[datetime] = None,
    ) -> List[GateBinding]:
        """Apply a gate's new evidence in timestamp order. Returns the bindings touched."""
        now = now or utcnow()
        touched: Dict[BindingKey, GateBinding] = {}
        for scan in sorted(evidence, key=lambda e: (e.timestamp, e.checkin_id)):
            for binding in self.observe(gate, scan, bindings, now):
                touched[binding.key] = binding
        return list(touched.values())

    def observe(
        self,
        gate: Gate,
        scan: ScanEvidence,
        bindings: Dict[BindingKey, GateBinding],
        now: Optional[datetime] = None,
    ) -> List[GateBinding]:
        now = now or utcnow()
        key = (gate.id, scan.category)
        binding = bindings.get(key)
        if binding is None:
            binding = GateBinding(
                gate_id=gate.id, category=scan.category, event_id=gate.event_id,
                bound_at=scan.timestamp, updated_at=now,
            )
            bindings[key] = binding
            self.recorder.record(
                DecisionKind.CREATED,
                [factor("first_scan", 1.0, 1.0, f"First {scan.category} scan at {gate.name}")],
                self.breakdown(gate, binding, bindings),
                gate_id=gate.id, category=scan.category, at=now,
            )

        touched = [binding]
        if binding.status != BindingStatus.REJECTED:
            if scan.consistent:
                binding.sample_count += 1
                binding.confidence = min(1.0, binding.confidence + (1.0 - binding.confidence) * EVIDENCE_WEIGHT)
            else:
                self._violate(binding, scan.timestamp)
            binding.updated_at = now
            self.evaluate(gate, binding, bindings, now)

        # A category the gate does not enforce contradicts the categories it does.
        if binding.status != BindingStatus.ENFORCED:
            for other in self._enforced_at(gate.id, bindings):
                if other.category == scan.category:
                    continue
                self._violate(other, scan.timestamp)
                other.updated_at = now
                self.evaluate(gate, other, bindings, now)
                touched.append(other)
        return touched

    @staticmethod
    def _violate(binding: GateBinding, at: datetime) -> None:
        binding.violation_count += 1
        binding.confidence = max(0.0, binding.confidence * VIOLATION_DECAY)
        binding.last_violation_at = at

    @staticmethod
    def _enforced_at(gate_id: str, bindings: Dict[BindingKey, GateBinding]) -> List[GateBinding]:
        return [
            b for b in bindings.values()
            if b.gate_id == gate_id and b.status == BindingStatus.ENFORCED
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def evaluate(
        self,
        gate: Gate,
        binding: GateBinding,
        bindings: Dict[BindingKey, GateBinding],
        now: Optional[datetime] = None,
    ) -> Optional[BindingStatus]:
        """Check the binding against every transition rule; fire at most one."""
        now = now or utcnow()
        t = self.thresholds
        status = binding.status
        if status == BindingStatus.REJECTED:
            return None

        ratio = violation_ratio(binding)
        if binding.violation_count >= HARD_VIOLATION_LIMIT:
            return self._transition(gate, binding, bindings, BindingStatus.REJECTED, [
                factor(
                    "violation_count", binding.violation_count, 1.0,
                    f"{binding.violation_count} violations reached the hard limit of {HARD_VIOLATION_LIMIT}",
                    negative=True,
                ),
            ], now)

        if (
            status == BindingStatus.PROBATION
            and observations(binding) >= REJECTION_MIN_OBSERVATIONS
            and binding.confidence < REJECTION_CONFIDENCE_FLOOR
        ):
            return self._transition(gate, binding, bindings, BindingStatus.REJECTED, [
                factor(
                    "confidence", binding.confidence, 1.0,
                    f"Confidence {binding.confidence:.2f} stayed below {REJECTION_CONFIDENCE_FLOOR:.2f} "
                    f"after {observations(binding)} observations",
                    negative=True,
                ),
                factor("violation_ratio", min(1.0, ratio), 0.5, negative=True),
            ], now)

        if (
            status == BindingStatus.PROBATION
            and binding.sample_count >= t.promotion_sample_size
            and binding.confidence >= t.confidence_threshold
            and ratio <= DEMOTION_RATIO
        ):
            return self._transition(gate, binding, bindings, BindingStatus.ENFORCED, [
                factor(
                    "sample_size", min(1.0, binding.sample_count / t.promotion_sample_size), 0.4,
                    f"{binding.sample_count} consistent scans (required {t.promotion_sample_size})",
                ),
                factor(
                    "confidence", binding.confidence, 0.6,
                    f"Confidence {binding.confidence:.2f} reached threshold {t.confidence_threshold:.2f}",
                ),
            ], now)

        if status == BindingStatus.ENFORCED and ratio > DEMOTION_RATIO:
            return self._transition(gate, binding, bindings, BindingStatus.PROBATION, [
                factor(
                    "violation_ratio", min(1.0, ratio), 1.0,
                    f"{binding.violation_count} violations against {binding.sample_count} samples "
                    f"exceeds {DEMOTION_RATIO:.0%}",
                    negative=True,
                ),
                factor("confidence", binding.confidence, 0.3),
            ], now)
        return None

    def _transition(
        self,
        gate: Gate,
        binding: GateBinding,
        bindings: Dict[BindingKey, GateBinding],
        target: BindingStatus,
        factors,
        now: datetime,
    ) -> BindingStatus:
        if target not in BINDING_TRANSITIONS[binding.status]:
            raise GateEngineError(
                f"Illegal binding transition {binding.status.value} -> {target.value} "
                f"for {binding.gate_id}/{binding.category}"
            )
        previous = binding.status
        binding.status = target
        binding.updated_at = now
        if target == BindingStatus.ENFORCED:
            binding.promoted_at = now
            kind = DecisionKind.PROMOTED
        elif target == BindingStatus.REJECTED:
            kind = DecisionKind.REJECTED
        else:
            kind = DecisionKind.DEMOTED

        logger.debug(
            "[binding] %s/%s %s -> %s (samples=%d violations=%d confidence=%.3f)",
            binding.gate_id, binding.category, previous.value, target.value,
            binding.sample_count, binding.violation_count, binding.confidence,
        )
        self.recorder.record(
            kind, factors, self.breakdown(gate, binding, bindings),
            gate_id=gate.id, category=binding.category, at=now,
        )
        return target

    def breakdown(
        self, gate: Gate, binding: GateBinding, bindings: Dict[BindingKey, GateBinding]
    ) -> ConfidenceBreakdown:
        eps = float(self.thresholds.duplicate_distance_meters)
        gate_samples = sum(b.sample_count for b in bindings.values() if b.gate_id == gate.id)
        seen = observations(binding)
        return ConfidenceBreakdown(
            spatial_consistency=round(1.0 / (1.0 + gate.spatial_variance / (eps ** 2)), 4),
            sample_size=round(min(1.0, binding.sample_count / self.thresholds.promotion_sample_size), 4),
            temporal_stability=round(binding.sample_count / seen, 4) if seen else 0.0,
            category_distribution=round(binding.sample_count / gate_samples, 4) if gate_samples else 0.0,
        )

    # ------------------------------------------------------------------
    # Merge support
    # ------------------------------------------------------------------
    def absorb(
        self,
        primary: Gate,
        absorbed: GateBinding,
        bindings: Dict[BindingKey, GateBinding],
        now: Optional[datetime] = None,
    ) -> GateBinding:
        """
        Move a binding of a merged-away gate onto the primary gate. Bindings for the
        same category combine their counters and take the sample-weighted confidence.

        Status only changes through the transition rules. A rejected primary binding
        stays rejected. Otherwise the combined counters are re-evaluated, after applying
        a rejection that carried more evidence.
        """
        now = now or utcnow()
        bindings.pop(absorbed.key, None)
        key = (primary.id, absorbed.category)
        existing = bindings.get(key)
        if existing is None:
            moved = absorbed.model_copy(update={"gate_id": primary.id, "updated_at": now})
            bindings[key] = moved
            return moved

        if existing.status == BindingStatus.REJECTED:
            logger.debug(
                "[binding] %s/%s is rejected; dropped %d absorbed samples",
                existing.gate_id, existing.category, absorbed.sample_count,
            )
            return existing

        outweighed = absorbed.sample_count > existing.sample_count
        total = existing.sample_count + absorbed.sample_count
        if total:
            existing.confidence = (
                existing.confidence * existing.sample_count + absorbed.confidence * absorbed.sample_count
            ) / total
        else:
            existing.confidence = max(existing.confidence, absorbed.confidence)
        existing.sample_count = total
        existing.violation_count += absorbed.violation_count
        existing.bound_at = min(existing.bound_at, absorbed.bound_at)
        if absorbed.last_violation_at and (
            existing.last_violation_at is None or absorbed.last_violation_at > existing.last_violation_at
        ):
            existing.last_violation_at = absorbed.last_violation_at
        existing.updated_at = now

        if outweighed and absorbed.status == BindingStatus.REJECTED:
            self._transition(primary, existing, bindings, BindingStatus.REJECTED, [
                factor(
                    "absorbed_samples", absorbed.sample_count, 1.0,
                    f"Merged-in {absorbed.category} binding with {absorbed.sample_count} samples was rejected",
                    negative=True,
                ),
                factor("confidence", existing.confidence, 0.3),
            ], now)
            return existing

        self.evaluate(primary, existing, bindings, now)
        return existing
