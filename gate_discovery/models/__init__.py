# =======================================================================================
# gate_discovery/models/__init__.py - Models Package
# =======================================================================================
from .schemas import *
from .enums import *

__all__ = [
    "Location", "CheckinEvent", "Gate", "GateBinding", "CheckinAssignment",
    "OptimizationEntry", "AdaptiveThresholds", "ThresholdUpdateRequest", "EventSetupRequest",
    "MergeSuggestion", "DecisionFactor", "ConfidenceBreakdown", "DecisionExplanation",
    "CycleReport", "OptimizationReport", "HealthResponse", "MergeResolutionResponse",
    "DataQuality", "DiscoverySummary", "AutonomousPerformance", "EventQualityReport",
    "GateStatus", "DerivationMethod", "BindingStatus", "MergeStatus", "MergeOrigin",
    "DecisionKind", "VenueType", "CheckinStatus", "FactorImpact", "CycleStatus",
    "GateStrategy", "GpsQuality",
]
