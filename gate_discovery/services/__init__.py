# =======================================================================================
# gate_discovery/services/__init__.py - Services Package
# =======================================================================================
from .binding_tracker import BindingTracker, ScanEvidence
from .checkin_assigner import CheckinAssigner
from .cluster_discoverer import ClusterCandidate, ClusterDiscoverer
from .decision_recorder import DecisionRecorder
from .gate_engine import EventLockRegistry, GateEngine
from .gate_health import GateHealthScorer
from .merge_detector import MergeDetector
from .quality_report import QualityReporter
from .threshold_optimizer import ThresholdOptimizer
from .virtual_gates import VirtualCandidate, VirtualGatePlanner

__all__ = [
    "BindingTracker", "ScanEvidence", "CheckinAssigner", "ClusterCandidate", "ClusterDiscoverer",
    "DecisionRecorder", "EventLockRegistry", "GateEngine", "GateHealthScorer", "MergeDetector",
    "QualityReporter", "ThresholdOptimizer", "VirtualCandidate", "VirtualGatePlanner",
]
