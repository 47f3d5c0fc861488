# =======================================================================================
# gate_discovery/models/enums.py - Enums and Constants
# =======================================================================================
from enum import Enum
from typing import Literal

# Type aliases for better type hints
CheckinStatus = Literal["success", "failed", "denied"]
FactorImpact = Literal["positive", "negative"]
CycleStatus = Literal["completed", "skipped", "cancelled", "timed_out"]
GateStrategy = Literal["physical", "virtual", "hybrid", "insufficient_data"]
GpsQuality = Literal["excellent", "good", "fair", "poor", "no_gps_data"]


class GateStatus(str, Enum):
    """Lifecycle of a physical gate."""
    LEARNING = "learning"
    ACTIVE = "active"
    AUTO_ARCHIVED = "auto-archived"


class DerivationMethod(str, Enum):
    AUTO_DISCOVERED = "auto-discovered"
    VIRTUAL = "virtual"         # one per category when GPS is too poor to locate gates
    MANUAL = "manual"


class BindingStatus(str, Enum):
    """Lifecycle of a (gate, category) binding. Absence of a row is the implicit 'none' state."""
    PROBATION = "probation"
    ENFORCED = "enforced"
    REJECTED = "rejected"


# Allowed binding transitions; anything else is a programming error.
BINDING_TRANSITIONS = {
    BindingStatus.PROBATION: {BindingStatus.ENFORCED, BindingStatus.REJECTED},
    BindingStatus.ENFORCED: {BindingStatus.PROBATION, BindingStatus.REJECTED},
    BindingStatus.REJECTED: set(),
}


class MergeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MergeOrigin(str, Enum):
    AUTO_APPROVED = "auto-approved"
    MANUAL = "manual"


class DecisionKind(str, Enum):
    """Autonomous actions recorded in the audit log."""
    CREATED = "created"
    PROMOTED = "promoted"
    DEMOTED = "demoted"
    REJECTED = "rejected"
    MERGED = "merged"
    ARCHIVED = "archived"


class VenueType(str, Enum):
    INDOOR = "indoor"
    OUTDOOR = "outdoor"
    HYBRID = "hybrid"
