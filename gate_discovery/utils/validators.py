# =======================================================================================
# gate_discovery/utils/validators.py - Validation Helpers
# =======================================================================================
import math
from typing import Dict, List, Tuple

from .exceptions import ThresholdValidationError
from ..models.enums import VenueType
from ..models.schemas import AdaptiveThresholds


# Seed values per venue type. Indoor venues have gates packed closer together.
VENUE_DEFAULTS: Dict[VenueType, Dict[str, float]] = {
    VenueType.INDOOR: {"duplicate_distance_meters": 15.0},
    VenueType.OUTDOOR: {"duplicate_distance_meters": 25.0},
    VenueType.HYBRID: {"duplicate_distance_meters": 20.0},
}

COMMON_DEFAULTS: Dict[str, float] = {
    "min_samples": 3,
    "promotion_sample_size": 100,
    "confidence_threshold": 0.85,
    "velocity_threshold_ms": 5000,
}

# (min, max) inclusive
THRESHOLD_BOUNDS: Dict[str, Tuple[float, float]] = {
    "duplicate_distance_meters": (2.0, 200.0),
    "min_samples": (2, 100),
    "promotion_sample_size": (5, 10000),
    "confidence_threshold": (0.5, 0.99),
    "velocity_threshold_ms": (500, 600000),
}

INTEGER_FIELDS = {"min_samples", "promotion_sample_size", "velocity_threshold_ms"}


class ThresholdValidator:
    """Validates adaptive threshold values before they are written."""

    @staticmethod
    def defaults_for(venue_type: VenueType) -> Dict[str, float]:
        values = dict(COMMON_DEFAULTS)
        values.update(VENUE_DEFAULTS[VenueType(venue_type)])
        return values

    @staticmethod
    def collect_errors(values: Dict[str, object]) -> List[str]:
        errors: List[str] = []
        for name, value in values.items():
            if name not in THRESHOLD_BOUNDS or value is None:
                continue
            low, high = THRESHOLD_BOUNDS[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{name} must be numeric, got {value!r}")
                continue
            if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
                errors.append(f"{name} must be finite")
                continue
            if name in INTEGER_FIELDS and float(value) != int(value):
                errors.append(f"{name} must be an integer, got {value}")
                continue
            if not low <= value <= high:
                errors.append(f"{name}={value} outside [{low}, {high}]")
        return errors

    def validate(self, thresholds: AdaptiveThresholds) -> AdaptiveThresholds:
        """Raise ThresholdValidationError if any tunable value is out of range."""
        values = {name: getattr(thresholds, name) for name in THRESHOLD_BOUNDS}
        errors = self.collect_errors(values)
        if errors:
            raise ThresholdValidationError(errors)
        return thresholds

    @staticmethod
    def clamp(name: str, value: float) -> float:
        low, high = THRESHOLD_BOUNDS[name]
        clamped = min(high, max(low, value))
        if name in INTEGER_FIELDS:
            return int(round(clamped))
        return clamped
