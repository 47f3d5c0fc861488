# =======================================================================================
# gate_discovery/api/dependencies.py - FastAPI Dependencies
# =======================================================================================
from fastapi import HTTPException, Request
from ..services.gate_engine import GateEngine
from ..utils.exceptions import (
    EventNotConfiguredError, GateEngineError, GateNotFoundError, MergeSuggestionNotFoundError,
    ThresholdValidationError,
)

def get_gate_engine(request: Request) -> GateEngine:
    """Dependency to get the engine attached to the running app."""
    engine = getattr(request.app.state, "gate_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Gate engine not initialised")
    return engine

def http_error(exc: GateEngineError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, (EventNotConfiguredError, GateNotFoundError, MergeSuggestionNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ThresholdValidationError):
        return HTTPException(status_code=400, detail=exc.errors)
    return HTTPException(status_code=400, detail=str(exc))
