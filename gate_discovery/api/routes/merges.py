# =======================================================================================
# gate_discovery/api/routes/merges.py - Merge Suggestion Review
# =======================================================================================
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from ...models.enums import MergeStatus
from ...models.schemas import MergeResolutionResponse, MergeSuggestion
from ...services.gate_engine import GateEngine
from ...utils.exceptions import GateEngineError
from ..dependencies import get_gate_engine, http_error

router = APIRouter()


@router.get("/events/{event_id}/merge-suggestions", response_model=List[MergeSuggestion])
def list_merge_suggestions(
    event_id: str,
    status: Optional[MergeStatus] = Query(None, description="pending | approved | rejected"),
    engine: GateEngine = Depends(get_gate_engine),
):
    return engine.list_merge_suggestions(event_id, status.value if status else None)


@router.post("/merge-suggestions/{suggestion_id}/approve", response_model=MergeResolutionResponse)
def approve_merge(suggestion_id: str, engine: GateEngine = Depends(get_gate_engine)):
    try:
        suggestion = engine.approve_merge(suggestion_id)
    except GateEngineError as e:
        raise http_error(e)
    return MergeResolutionResponse(success=True, message="Merge executed", suggestion=suggestion)


@router.post("/merge-suggestions/{suggestion_id}/reject", response_model=MergeResolutionResponse)
def reject_merge(suggestion_id: str, engine: GateEngine = Depends(get_gate_engine)):
    try:
        suggestion = engine.reject_merge(suggestion_id)
    except GateEngineError as e:
        raise http_error(e)
    return MergeResolutionResponse(success=True, message="Merge suggestion rejected", suggestion=suggestion)
