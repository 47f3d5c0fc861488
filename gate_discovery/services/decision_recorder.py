# =======================================================================================
# gate_discovery/services/decision_recorder.py - Decision Audit Wrapper
# =======================================================================================
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..models.enums import DecisionKind
from ..models.schemas import (
    ConfidenceBreakdown, DecisionExplanation, DecisionFactor, utcnow,
)

logger = logging.getLogger(__name__)


def factor(metric: str, value: float, weight: float, description: Optional[str] = None,
           negative: bool = False) -> DecisionFactor:
    """Shorthand used by the components that trigger decisions."""
    return DecisionFactor(
        metric=metric,
        value=round(float(value), 4),
        weight=weight,
        impact="negative" if negative else "positive",
        description=description,
    )


class DecisionRecorder:
    """
    Every gate/binding status transition goes through record(); it formats the
    explanation and appends it to the pending audit batch of the current cycle.
    The batch is flushed with the rest of the cycle's writes.
    """

    def __init__(self, event_id: str):
        self.event_id = event_id
        self._pending: List[DecisionExplanation] = []

    @staticmethod
    def primary_reason_from(factors: Sequence[DecisionFactor]) -> str:
        """Phrase of the dominant factor (largest |weight * value|)."""
        if not factors:
            return "No supporting factors recorded"
        dominant = max(factors, key=lambda f: abs(f.weight * f.value))
        if dominant.description:
            return dominant.description
        return f"{dominant.metric} = {dominant.value:g}"

    def record(
        self,
        decision: DecisionKind,
        factors: Sequence[DecisionFactor],
        breakdown: ConfidenceBreakdown,
        gate_id: Optional[str] = None,
        category: Optional[str] = None,
        primary_reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> DecisionExplanation:
        explanation = DecisionExplanation(
            event_id=self.event_id,
            decision=decision,
            gate_id=gate_id,
            category=category,
            factors=list(factors),
            primary_reason=primary_reason or self.primary_reason_from(factors),
            confidence_breakdown=breakdown,
            created_at=at or utcnow(),
        )
        self._pending.append(explanation)
        logger.info(
            "[decision] event=%s %s gate=%s category=%s: %s",
            self.event_id, decision.value, gate_id, category, explanation.primary_reason,
        )
        return explanation

    def drain(self) -> List[DecisionExplanation]:
        """Remove and return everything recorded so far."""
        taken, self._pending = self._pending, []
        return taken
