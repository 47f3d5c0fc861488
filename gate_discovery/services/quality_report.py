# =======================================================================================
# gate_discovery/services/quality_report.py - Event Quality & Performance Read Model
# =======================================================================================
import logging
from datetime import datetime
from typing import Optional, Sequence

from ..models.enums import BindingStatus, DecisionKind, DerivationMethod, GpsQuality
from ..models.schemas import (
    AdaptiveThresholds, AutonomousPerformance, CheckinEvent, DataQuality, DecisionExplanation,
    DiscoverySummary, EventQualityReport, Gate, GateBinding, utcnow,
)
from .cluster_discoverer import has_location_fix
from .threshold_optimizer import promotion_accuracy

logger = logging.getLogger(__name__)

MIN_RELIABLE_CHECKINS = 50
MIN_GOOD_FIXES = 10


def gps_quality_label(avg_accuracy_m: Optional[float]) -> GpsQuality:
    if avg_accuracy_m is None:
        return "no_gps_data"
    if avg_accuracy_m <= 15:
        return "excellent"
    if avg_accuracy_m <= 30:
        return "good"
    if avg_accuracy_m <= 50:
        return "fair"
    return "poor"


class QualityReporter:
    """Summarises one event for operators. Read only; never changes engine state."""

    def report(
        self,
        thresholds: AdaptiveThresholds,
        checkins: Sequence[CheckinEvent],
        gates: Sequence[Gate],
        bindings: Sequence[GateBinding],
        decisions: Sequence[DecisionExplanation],
        now: Optional[datetime] = None,
    ) -> EventQualityReport:
        now = now or utcnow()
        data = self.data_quality(checkins)
        discovery = self.discovery(gates, bindings)
        performance = self.performance(decisions, now)
        return EventQualityReport(
            event_id=thresholds.event_id,
            generated_at=now,
            data_quality=data,
            discovery=discovery,
            performance=performance,
            thresholds_version=thresholds.version,
            recommendation=self.recommend(data, discovery),
        )

    @staticmethod
    def data_quality(checkins: Sequence[CheckinEvent]) -> DataQuality:
        usable = [c for c in checkins if c.status == "success"]
        with_location = [c for c in usable if c.location is not None]
        accuracies = [c.location.accuracy_m for c in with_location if c.location.accuracy_m is not None]
        valid = sum(1 for c in usable if has_location_fix(c))
        avg_accuracy = round(sum(accuracies) / len(accuracies), 2) if accuracies else None
        return DataQuality(
            total_checkins=len(usable),
            checkins_with_location=len(with_location),
            checkins_with_valid_location=valid,
            valid_location_share=round(valid / len(usable), 4) if usable else 0.0,
            avg_accuracy_m=avg_accuracy,
            gps_quality=gps_quality_label(avg_accuracy),
        )

    @staticmethod
    def discovery(gates: Sequence[Gate], bindings: Sequence[GateBinding]) -> DiscoverySummary:
        live = [g for g in gates if g.is_live]
        physical = sum(1 for g in live if g.has_location)
        virtual = sum(1 for g in live if g.derivation_method == DerivationMethod.VIRTUAL)
        if physical and virtual:
            strategy = "hybrid"
        elif physical:
            strategy = "physical"
        elif virtual:
            strategy = "virtual"
        else:
            strategy = "insufficient_data"
        return DiscoverySummary(
            physical_gates=physical,
            virtual_gates=virtual,
            archived_gates=len(gates) - len(live),
            enforced_bindings=sum(1 for b in bindings if b.status == BindingStatus.ENFORCED),
            strategy=strategy,
        )

    @staticmethod
    def performance(decisions: Sequence[DecisionExplanation], now: datetime) -> AutonomousPerformance:
        if not decisions:
            return AutonomousPerformance()
        judged, accuracy = promotion_accuracy(decisions)
        span_hours = (now - min(d.created_at for d in decisions)).total_seconds() / 3600.0

        def count(*kinds, binding_level=None):
            return sum(
                1 for d in decisions
                if d.decision in kinds and (binding_level is None or (d.category is not None) == binding_level)
            )

        return AutonomousPerformance(
            total_decisions=len(decisions),
            decisions_per_hour=round(len(decisions) / max(span_hours, 1.0), 2),
            promotions_judged=judged,
            accuracy_rate=round(accuracy, 4) if accuracy is not None else None,
            false_positive_rate=round(1.0 - accuracy, 4) if accuracy is not None else None,
            auto_corrections=count(DecisionKind.DEMOTED, DecisionKind.REJECTED, binding_level=True),
            duplicates_merged=count(DecisionKind.MERGED),
            gates_archived=count(DecisionKind.ARCHIVED),
            learning_window_hours=round(span_hours, 2),
        )

    @staticmethod
    def recommend(data: DataQuality, discovery: DiscoverySummary) -> str:
        if data.total_checkins < MIN_RELIABLE_CHECKINS:
            return f"Need at least {MIN_RELIABLE_CHECKINS} check-ins for reliable gate discovery"
        if data.checkins_with_valid_location < MIN_GOOD_FIXES and not discovery.virtual_gates:
            return "GPS data quality too low; category-based virtual gates will be used"
        if not discovery.physical_gates and not discovery.virtual_gates:
            return "Unable to discover any gates; check data quality"
        if discovery.physical_gates == 1 and not discovery.virtual_gates:
            return "Only one physical gate found; may need more data"
        if discovery.physical_gates:
            return f"Gate discovery ready: {discovery.physical_gates} physical gates available"
        return f"Gate discovery ready: {discovery.virtual_gates} virtual gates available"
