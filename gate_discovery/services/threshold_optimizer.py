# =======================================================================================
# gate_discovery/services/threshold_optimizer.py - Adaptive Threshold Tuning
# =======================================================================================
import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.enums import DecisionKind
from ..models.schemas import (
    AdaptiveThresholds, DecisionExplanation, Gate, OptimizationEntry, OptimizationReport, utcnow,
)
from ..utils.geo import distance
from ..utils.validators import INTEGER_FIELDS, ThresholdValidator

logger = logging.getLogger(__name__)

MIN_PROMOTIONS = 5
TARGET_ACCURACY = 0.9
MAX_STEP_FRACTION = 0.10
CONFIDENCE_STEP = 0.05
FRAGMENTATION_SHARE = 0.3


def promotion_accuracy(
    decisions: Sequence[DecisionExplanation], since: Optional[datetime] = None
) -> Tuple[int, Optional[float]]:
    """
    Fraction of binding promotions that were never followed by a demotion or
    rejection of the same binding. Only promotions made after `since` are judged.
    Returns (promotion count, accuracy).
    """
    reversals: Dict[Tuple[str, str], List[datetime]] = {}
    promotions: List[DecisionExplanation] = []
    for d in decisions:
        if d.category is None or d.gate_id is None:
            continue  # gate-level decisions
        if d.decision == DecisionKind.PROMOTED:
            if since is None or d.created_at > since:
                promotions.append(d)
        elif d.decision in (DecisionKind.DEMOTED, DecisionKind.REJECTED):
            reversals.setdefault((d.gate_id, d.category), []).append(d.created_at)

    if not promotions:
        return 0, None
    held = 0
    for p in promotions:
        later = [t for t in reversals.get((p.gate_id, p.category), []) if t > p.created_at]
        if not later:
            held += 1
    return len(promotions), held / len(promotions)


class ThresholdOptimizer:
    """Nudges per-event thresholds toward better promotion accuracy, a bounded step at a time."""

    def __init__(self, validator: Optional[ThresholdValidator] = None):
        self.validator = validator or ThresholdValidator()

    def optimize(
        self,
        thresholds: AdaptiveThresholds,
        decisions: Sequence[DecisionExplanation],
        gates: Sequence[Gate],
        now: Optional[datetime] = None,
    ) -> Tuple[AdaptiveThresholds, OptimizationReport]:
        now = now or utcnow()
        event_id = thresholds.event_id
        since = thresholds.last_optimization_at
        count, accuracy = promotion_accuracy(decisions, since)
        if count < MIN_PROMOTIONS:
            window = "since the last optimization" if since else "so far"
            reason = f"Only {count} promotions {window} (need {MIN_PROMOTIONS}); optimization skipped"
            logger.debug("[optimize] event=%s %s", event_id, reason)
            return thresholds, OptimizationReport(event_id=event_id, skipped=True, reason=reason, accuracy=accuracy)

        live = [g for g in gates if g.is_live and g.has_location]
        eps = float(thresholds.duplicate_distance_meters)
        improvement = 0.0 if thresholds.baseline_accuracy is None else accuracy - thresholds.baseline_accuracy

        planned: List[Tuple[str, float, str]] = []
        if accuracy < TARGET_ACCURACY:
            mean_radius = self.mean_rms_radius(live)
            if mean_radius > eps / 2:
                planned.append((
                    "duplicate_distance_meters", eps * (1 - MAX_STEP_FRACTION),
                    f"Accuracy {accuracy:.2f} below {TARGET_ACCURACY:.2f} with mean cluster radius "
                    f"{mean_radius:.1f}m > {eps / 2:.1f}m; tightening epsilon",
                ))
                planned.append((
                    "promotion_sample_size", math.floor(thresholds.promotion_sample_size * (1 + MAX_STEP_FRACTION)),
                    f"Accuracy {accuracy:.2f} below {TARGET_ACCURACY:.2f}; requiring more evidence",
                ))
            else:
                planned.append((
                    "promotion_sample_size", math.floor(thresholds.promotion_sample_size * (1 + MAX_STEP_FRACTION)),
                    f"Accuracy {accuracy:.2f} below {TARGET_ACCURACY:.2f}; requiring more evidence",
                ))
                planned.append((
                    "confidence_threshold", thresholds.confidence_threshold + CONFIDENCE_STEP,
                    f"Accuracy {accuracy:.2f} below {TARGET_ACCURACY:.2f}; raising confidence bar",
                ))

        if not any(p[0] == "duplicate_distance_meters" for p in planned):
            fragmented = self.fragmentation_share(live, eps, thresholds.min_samples)
            if fragmented >= FRAGMENTATION_SHARE:
                planned.append((
                    "duplicate_distance_meters", eps * (1 + MAX_STEP_FRACTION),
                    f"{fragmented:.0%} of gates are small clusters near another gate; loosening epsilon",
                ))

        updated = thresholds.model_copy(deep=True)
        entries: List[OptimizationEntry] = []
        for name, proposed, reason in planned:
            old = getattr(thresholds, name)
            new = self._bounded(name, old, proposed)
            if new == old:
                continue
            setattr(updated, name, new)
            entries.append(OptimizationEntry(
                parameter=name, old_value=float(old), new_value=float(new), reason=reason,
                performance_improvement=round(improvement, 4), timestamp=now,
            ))

        self.validator.validate(updated)
        updated.optimization_history = list(thresholds.optimization_history) + entries
        updated.last_optimization_at = now
        if entries:
            updated.baseline_accuracy = accuracy
            updated.version = thresholds.version + 1

        reason = (
            f"Adjusted {', '.join(e.parameter for e in entries)}" if entries
            else f"Accuracy {accuracy:.2f} within target; no adjustment"
        )
        logger.info("[optimize] event=%s accuracy=%.3f over %d promotions: %s", event_id, accuracy, count, reason)
        return updated, OptimizationReport(
            event_id=event_id, skipped=False, reason=reason, accuracy=accuracy, adjustments=entries,
        )

    @staticmethod
    def mean_rms_radius(gates: Sequence[Gate]) -> float:
        if not gates:
            return 0.0
        return sum(math.sqrt(g.spatial_variance) for g in gates) / len(gates)

    @staticmethod
    def fragmentation_share(gates: Sequence[Gate], epsilon: float, min_samples: int) -> float:
        """Share of live gates that are thin and sit within 2*epsilon of another gate."""
        if len(gates) < 2:
            return 0.0
        fragments = 0
        for gate in gates:
            if gate.sample_count >= 2 * min_samples:
                continue
            if any(o.id != gate.id and distance(o.point, gate.point) <= 2 * epsilon for o in gates):
                fragments += 1
        return fragments / len(gates)

    def _bounded(self, name: str, old: float, proposed: float) -> float:
        """Limit a move to MAX_STEP_FRACTION of the old value and to the validation bounds."""
        max_step = abs(old) * MAX_STEP_FRACTION
        step = max(-max_step, min(max_step, proposed - old))
        if name in INTEGER_FIELDS:
            step = math.floor(step) if step > 0 else math.ceil(step)
            return self.validator.clamp(name, int(old) + step)
        return round(self.validator.clamp(name, old + step), 4)
