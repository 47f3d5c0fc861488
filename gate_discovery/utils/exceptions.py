# =======================================================================================
# gate_discovery/utils/exceptions.py - Custom Exceptions
# =======================================================================================
class GateEngineError(Exception):
    """Base exception for the gate discovery engine."""
    pass

class InvalidCoordinateError(GateEngineError):
    """Raised when a latitude/longitude pair is NaN or out of range."""
    pass

class ThresholdValidationError(GateEngineError):
    """Raised when adaptive threshold values are malformed or out of range."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))

class GateNotFoundError(GateEngineError):
    """Raised when a gate does not exist for the event."""
    pass

class EventNotConfiguredError(GateEngineError):
    """Raised when an event has no adaptive thresholds yet."""
    pass

class MergeSuggestionNotFoundError(GateEngineError):
    """Raised when a merge suggestion is missing or already resolved."""
    pass

class CycleInterruptedError(GateEngineError):
    """Raised between gates when a recompute cycle must stop early."""
    pass

class CycleCancelledError(CycleInterruptedError):
    """Raised when a cycle's cancel flag is set."""
    pass

class CycleTimeoutError(CycleInterruptedError):
    """Raised when a cycle runs past its deadline."""
    pass
