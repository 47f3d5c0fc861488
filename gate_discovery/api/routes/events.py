# =======================================================================================
# gate_discovery/api/routes/events.py - Event Setup, Triggers & Thresholds
# =======================================================================================
from fastapi import APIRouter, Depends
from ...models.schemas import (
    AdaptiveThresholds, CycleReport, EventQualityReport, EventSetupRequest, OptimizationReport,
    ThresholdUpdateRequest,
)
from ...services.gate_engine import GateEngine
from ...utils.exceptions import GateEngineError
from ..dependencies import get_gate_engine, http_error

router = APIRouter()


@router.post("/events/{event_id}/setup", response_model=AdaptiveThresholds)
def setup_event(event_id: str, request: EventSetupRequest, engine: GateEngine = Depends(get_gate_engine)):
    """Seed adaptive thresholds for a new event from its venue type."""
    try:
        return engine.setup_event(event_id, request.venue_type, request.overrides)
    except GateEngineError as e:
        raise http_error(e)


@router.post("/events/{event_id}/recompute", response_model=CycleReport)
def trigger_recompute(event_id: str, engine: GateEngine = Depends(get_gate_engine)):
    """Manual "re-learn now". A cycle already in progress yields a skipped report."""
    try:
        return engine.recompute(event_id)
    except GateEngineError as e:
        raise http_error(e)


@router.post("/events/{event_id}/optimize", response_model=OptimizationReport)
def trigger_optimize(event_id: str, engine: GateEngine = Depends(get_gate_engine)):
    try:
        return engine.optimize_thresholds(event_id)
    except GateEngineError as e:
        raise http_error(e)


@router.get("/events/{event_id}/thresholds", response_model=AdaptiveThresholds)
def get_thresholds(event_id: str, engine: GateEngine = Depends(get_gate_engine)):
    try:
        return engine.get_thresholds(event_id)
    except GateEngineError as e:
        raise http_error(e)


@router.put("/events/{event_id}/thresholds", response_model=AdaptiveThresholds)
def update_thresholds(
    event_id: str, request: ThresholdUpdateRequest, engine: GateEngine = Depends(get_gate_engine)
):
    """Partial update; invalid values are rejected and the stored record is left as is."""
    try:
        return engine.update_thresholds(event_id, request)
    except GateEngineError as e:
        raise http_error(e)


@router.get("/events/{event_id}/quality", response_model=EventQualityReport)
def quality_report(event_id: str, engine: GateEngine = Depends(get_gate_engine)):
    """GPS data quality, discovery strategy and how well autonomous decisions have held up."""
    try:
        return engine.quality_report(event_id)
    except GateEngineError as e:
        raise http_error(e)
