# =======================================================================================
# gate_discovery/api/routes/decisions.py - Decision Audit Log
# =======================================================================================
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from ...models.enums import DecisionKind
from ...models.schemas import DecisionExplanation
from ...services.gate_engine import GateEngine
from ..dependencies import get_gate_engine

router = APIRouter()


@router.get("/events/{event_id}/decisions", response_model=List[DecisionExplanation])
def list_decisions(
    event_id: str,
    gate_id: Optional[str] = Query(None),
    kind: Optional[DecisionKind] = Query(None, description="created | promoted | demoted | rejected | merged | archived"),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=5000),
    engine: GateEngine = Depends(get_gate_engine),
):
    return engine.list_decisions(event_id, gate_id, kind, since, until, limit)
