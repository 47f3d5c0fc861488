# =======================================================================================
# gate_discovery/api/routes/gates.py - Gate & Binding Read Model
# =======================================================================================
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from ...models.enums import BindingStatus
from ...models.schemas import Gate, GateBinding
from ...services.gate_engine import GateEngine
from ...utils.exceptions import GateEngineError
from ..dependencies import get_gate_engine, http_error

router = APIRouter()


@router.get("/events/{event_id}/gates", response_model=List[Gate])
def list_gates(
    event_id: str,
    include_archived: bool = Query(True, description="Include auto-archived gates"),
    engine: GateEngine = Depends(get_gate_engine),
):
    return engine.list_gates(event_id, include_archived)


@router.get("/events/{event_id}/gates/{gate_id}", response_model=Gate)
def get_gate(event_id: str, gate_id: str, engine: GateEngine = Depends(get_gate_engine)):
    try:
        return engine.get_gate(event_id, gate_id)
    except GateEngineError as e:
        raise http_error(e)


@router.get("/events/{event_id}/bindings", response_model=List[GateBinding])
def list_bindings(
    event_id: str,
    gate_id: Optional[str] = Query(None),
    status: Optional[BindingStatus] = Query(None, description="probation | enforced | rejected"),
    engine: GateEngine = Depends(get_gate_engine),
):
    """What the check-in router consults to decide whether a category may pass a gate."""
    return engine.list_bindings(event_id, gate_id, status.value if status else None)
