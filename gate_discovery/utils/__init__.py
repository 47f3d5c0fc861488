# =======================================================================================
# gate_discovery/utils/__init__.py - Utils Package
# =======================================================================================
from .exceptions import *
from .validators import *

__all__ = [
    "GateEngineError", "InvalidCoordinateError", "ThresholdValidationError",
    "GateNotFoundError", "EventNotConfiguredError", "MergeSuggestionNotFoundError",
    "CycleInterruptedError", "CycleCancelledError", "CycleTimeoutError",
    "ThresholdValidator",
]
