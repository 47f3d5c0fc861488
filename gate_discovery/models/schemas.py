# =======================================================================================
# gate_discovery/models/schemas.py - Pydantic Models
# =======================================================================================
import uuid
from datetime import datetime, timezone
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from .enums import (
    CheckinStatus, FactorImpact, CycleStatus, GateStrategy, GpsQuality, GateStatus, DerivationMethod,
    BindingStatus, MergeStatus, MergeOrigin, DecisionKind, VenueType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ========== Check-in feed (read only) ==========

class Location(BaseModel):
    """Location estimate attached to a scan."""
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    accuracy_m: Optional[float] = Field(None, description="Reported accuracy radius in meters")


class CheckinEvent(BaseModel):
    """One wristband scan as produced by the check-in client."""
    model_config = ConfigDict(frozen=True)

    id: str
    wristband_id: str
    event_id: str
    series_id: Optional[str] = None
    timestamp: datetime
    category: str = Field(..., min_length=1, description="Attendee category on the wristband")
    location: Optional[Location] = None
    wifi_ssids: List[str] = Field(default_factory=list)
    ble_beacons: List[str] = Field(default_factory=list)
    status: CheckinStatus = "success"
    processing_time_ms: Optional[float] = None

    @property
    def ambient_signals(self) -> set:
        return {f"wifi:{s}" for s in self.wifi_ssids} | {f"ble:{b}" for b in self.ble_beacons}


# ========== Gates & bindings ==========

class Gate(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    name: str
    status: GateStatus = GateStatus.LEARNING
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    spatial_variance: float = 0.0
    derivation_method: DerivationMethod = DerivationMethod.AUTO_DISCOVERED
    virtual_category: Optional[str] = Field(None, description="Category served by a virtual gate")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    health_score: float = Field(100.0, ge=0.0, le=100.0)
    sample_count: int = 0
    wifi_ssids: List[str] = Field(default_factory=list)
    ble_beacons: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_seen_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    archive_reason: Optional[str] = None
    merged_into: Optional[str] = None

    @property
    def point(self):
        return self.latitude, self.longitude

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_live(self) -> bool:
        return self.status != GateStatus.AUTO_ARCHIVED

    @property
    def ambient_signals(self) -> set:
        return {f"wifi:{s}" for s in self.wifi_ssids} | {f"ble:{b}" for b in self.ble_beacons}


class GateBinding(BaseModel):
    gate_id: str
    category: str
    event_id: str
    status: BindingStatus = BindingStatus.PROBATION
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    sample_count: int = 0
    violation_count: int = 0
    bound_at: datetime = Field(default_factory=utcnow)
    promoted_at: Optional[datetime] = None
    last_violation_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self):
        return self.gate_id, self.category


class CheckinAssignment(BaseModel):
    """Engine-owned attribution of one check-in to one gate."""
    checkin_id: str
    event_id: str
    gate_id: str
    assigned_at: datetime = Field(default_factory=utcnow)


# ========== Adaptive thresholds ==========

class OptimizationEntry(BaseModel):
    parameter: str
    old_value: float
    new_value: float
    reason: str
    performance_improvement: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


class AdaptiveThresholds(BaseModel):
    """Per-event tuning record; passed by value into every cycle."""
    event_id: str
    venue_type: VenueType = VenueType.OUTDOOR
    duplicate_distance_meters: float = 25.0
    min_samples: int = 3
    promotion_sample_size: int = 100
    confidence_threshold: float = 0.85
    velocity_threshold_ms: int = 5000
    version: int = 1
    last_optimization_at: Optional[datetime] = None
    baseline_accuracy: Optional[float] = None
    optimization_history: List[OptimizationEntry] = Field(default_factory=list)


class ThresholdUpdateRequest(BaseModel):
    """Partial update of tunable threshold values."""
    duplicate_distance_meters: Optional[float] = None
    min_samples: Optional[int] = None
    promotion_sample_size: Optional[int] = None
    confidence_threshold: Optional[float] = None
    velocity_threshold_ms: Optional[int] = None


class EventSetupRequest(BaseModel):
    """Seed values supplied by the external event setup flow."""
    venue_type: VenueType = Field(VenueType.OUTDOOR, description="indoor | outdoor | hybrid")
    default_capacity: Optional[int] = Field(None, description="Informational; not used by the engine")
    overrides: ThresholdUpdateRequest = Field(default_factory=ThresholdUpdateRequest)


# ========== Merge suggestions ==========

class MergeSuggestion(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    primary_gate_id: str
    secondary_gate_id: str
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    distance_meters: float
    traffic_similarity: float
    reasoning: str
    status: MergeStatus = MergeStatus.PENDING
    decided_by: Optional[MergeOrigin] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def pair(self) -> frozenset:
        return frozenset((self.primary_gate_id, self.secondary_gate_id))


# ========== Decision audit ==========

class DecisionFactor(BaseModel):
    metric: str
    value: float
    weight: float
    impact: FactorImpact
    description: Optional[str] = Field(None, description="Human readable phrasing of this factor")


class ConfidenceBreakdown(BaseModel):
    spatial_consistency: float = 0.0
    sample_size: float = 0.0
    temporal_stability: float = 0.0
    category_distribution: float = 0.0


class DecisionExplanation(BaseModel):
    id: str = Field(default_factory=new_id)
    event_id: str
    decision: DecisionKind
    gate_id: Optional[str] = None
    category: Optional[str] = None
    factors: List[DecisionFactor] = Field(default_factory=list)
    primary_reason: str
    confidence_breakdown: ConfidenceBreakdown = Field(default_factory=ConfidenceBreakdown)
    created_at: datetime = Field(default_factory=utcnow)


# ========== Cycle reporting ==========

class CycleReport(BaseModel):
    event_id: str
    status: CycleStatus
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    gates_created: int = 0
    gates_processed: int = 0
    checkins_assigned: int = 0
    decisions: int = 0
    merges_executed: int = 0
    suggestions_created: int = 0
    message: Optional[str] = None


class OptimizationReport(BaseModel):
    event_id: str
    skipped: bool
    reason: str
    accuracy: Optional[float] = None
    adjustments: List[OptimizationEntry] = Field(default_factory=list)


# ========== Health for dashboard ==========

class HealthResponse(BaseModel):
    status: str                 # "ok" | "error"
    dataAvailable: bool
    message: Optional[str] = None


class MergeResolutionResponse(BaseModel):
    success: bool
    message: str
    suggestion: Optional[MergeSuggestion] = None


# ========== Quality report ==========

class DataQuality(BaseModel):
    total_checkins: int = 0
    checkins_with_location: int = 0
    checkins_with_valid_location: int = 0
    valid_location_share: float = 0.0
    avg_accuracy_m: Optional[float] = None
    gps_quality: GpsQuality = "no_gps_data"


class DiscoverySummary(BaseModel):
    physical_gates: int = 0
    virtual_gates: int = 0
    archived_gates: int = 0
    enforced_bindings: int = 0
    strategy: GateStrategy = "insufficient_data"


class AutonomousPerformance(BaseModel):
    """How the engine has behaved over the learning window, from the decision log."""
    total_decisions: int = 0
    decisions_per_hour: float = 0.0
    promotions_judged: int = 0
    accuracy_rate: Optional[float] = None
    false_positive_rate: Optional[float] = None
    auto_corrections: int = 0
    duplicates_merged: int = 0
    gates_archived: int = 0
    learning_window_hours: float = 0.0


class EventQualityReport(BaseModel):
    event_id: str
    generated_at: datetime = Field(default_factory=utcnow)
    data_quality: DataQuality
    discovery: DiscoverySummary
    performance: AutonomousPerformance
    thresholds_version: int
    recommendation: str
