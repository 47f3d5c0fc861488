# =======================================================================================
# gate_discovery/repository.py - Persistence For Gates, Bindings, Thresholds & Audit
# =======================================================================================
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection

from .models.enums import DecisionKind
from .models.schemas import (
    AdaptiveThresholds, CheckinAssignment, CheckinEvent, ConfidenceBreakdown,
    DecisionExplanation, DecisionFactor, Gate, GateBinding, Location, MergeSuggestion,
    OptimizationEntry,
)
from .tables import (
    adaptive_thresholds, checkin_events, checkin_gate_assignments, decision_log,
    gate_bindings, gates, merge_suggestions, threshold_history,
)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventSnapshot:
    """Everything one recompute cycle needs, read once at cycle start."""

    def __init__(
        self,
        thresholds: AdaptiveThresholds,
        gates: Dict[str, Gate],
        bindings: Dict[Tuple[str, str], GateBinding],
        assignments: Dict[str, CheckinAssignment],
        suggestions: List[MergeSuggestion],
        checkins: List[CheckinEvent],
    ):
        self.thresholds = thresholds
        self.gates = gates
        self.bindings = bindings
        self.assignments = assignments
        self.suggestions = suggestions
        self.checkins = checkins

    @property
    def checkins_by_id(self) -> Dict[str, CheckinEvent]:
        return {c.id: c for c in self.checkins}


class GateRepository:
    """Reads and writes the engine's tables. Callers own the transaction."""

    # ------------------------------------------------------------------
    # Check-in feed
    # ------------------------------------------------------------------
    def add_checkins(self, conn: Connection, checkins: Iterable[CheckinEvent]) -> int:
        """Append scans to the feed (used by the check-in client and fixtures)."""
        rows = []
        for c in checkins:
            loc = c.location
            rows.append({
                "id": c.id,
                "wristband_id": c.wristband_id,
                "event_id": c.event_id,
                "series_id": c.series_id,
                "timestamp": to_db_time(c.timestamp),
                "category": c.category,
                "latitude": loc.latitude if loc else None,
                "longitude": loc.longitude if loc else None,
                "accuracy_m": loc.accuracy_m if loc else None,
                "wifi_ssids": list(c.wifi_ssids),
                "ble_beacons": list(c.ble_beacons),
                "status": c.status,
                "processing_time_ms": c.processing_time_ms,
            })
        if rows:
            conn.execute(insert(checkin_events), rows)
        return len(rows)

    def get_checkins(self, conn: Connection, event_id: str, since: Optional[datetime] = None,
                     until: Optional[datetime] = None) -> List[CheckinEvent]:
        query = select(checkin_events).where(checkin_events.c.event_id == event_id)
        if since is not None:
            query = query.where(checkin_events.c.timestamp >= to_db_time(since))
        if until is not None:
            query = query.where(checkin_events.c.timestamp <= to_db_time(until))
        rows = conn.execute(query.order_by(checkin_events.c.timestamp, checkin_events.c.id)).mappings().all()
        return [self._checkin_from_row(r) for r in rows]

    @staticmethod
    def _checkin_from_row(row) -> CheckinEvent:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Location(latitude=row["latitude"], longitude=row["longitude"], accuracy_m=row["accuracy_m"])
        return CheckinEvent(
            id=row["id"],
            wristband_id=row["wristband_id"],
            event_id=row["event_id"],
            series_id=row["series_id"],
            timestamp=from_db_time(row["timestamp"]),
            category=row["category"],
            location=location,
            wifi_ssids=row["wifi_ssids"] or [],
            ble_beacons=row["ble_beacons"] or [],
            status=row["status"],
            processing_time_ms=row["processing_time_ms"],
        )

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------
    def list_event_ids(self, conn: Connection) -> List[str]:
        rows = conn.execute(select(adaptive_thresholds.c.event_id).order_by(adaptive_thresholds.c.event_id))
        return [r[0] for r in rows]

    def get_thresholds(self, conn: Connection, event_id: str) -> Optional[AdaptiveThresholds]:
        row = conn.execute(
            select(adaptive_thresholds).where(adaptive_thresholds.c.event_id == event_id)
        ).mappings().first()
        if row is None:
            return None
        history = conn.execute(
            select(threshold_history)
            .where(threshold_history.c.event_id == event_id)
            .order_by(threshold_history.c.timestamp, threshold_history.c.id)
        ).mappings().all()
        return AdaptiveThresholds(
            event_id=row["event_id"],
            venue_type=row["venue_type"],
            duplicate_distance_meters=row["duplicate_distance_meters"],
            min_samples=row["min_samples"],
            promotion_sample_size=row["promotion_sample_size"],
            confidence_threshold=row["confidence_threshold"],
            velocity_threshold_ms=row["velocity_threshold_ms"],
            version=row["version"],
            last_optimization_at=from_db_time(row["last_optimization_at"]),
            baseline_accuracy=row["baseline_accuracy"],
            optimization_history=[
                OptimizationEntry(
                    parameter=h["parameter"],
                    old_value=h["old_value"],
                    new_value=h["new_value"],
                    reason=h["reason"],
                    performance_improvement=h["performance_improvement"],
                    timestamp=from_db_time(h["timestamp"]),
                )
                for h in history
            ],
        )

    def save_thresholds(self, conn: Connection, thresholds: AdaptiveThresholds,
                        new_entries: Sequence[OptimizationEntry] = ()) -> None:
        row = {
            "event_id": thresholds.event_id,
            "venue_type": thresholds.venue_type.value,
            "duplicate_distance_meters": thresholds.duplicate_distance_meters,
            "min_samples": thresholds.min_samples,
            "promotion_sample_size": thresholds.promotion_sample_size,
            "confidence_threshold": thresholds.confidence_threshold,
            "velocity_threshold_ms": thresholds.velocity_threshold_ms,
            "version": thresholds.version,
            "last_optimization_at": to_db_time(thresholds.last_optimization_at),
            "baseline_accuracy": thresholds.baseline_accuracy,
        }
        self._upsert(conn, adaptive_thresholds, ["event_id"], row)
        if new_entries:
            conn.execute(insert(threshold_history), [
                {
                    "event_id": thresholds.event_id,
                    "parameter": e.parameter,
                    "old_value": e.old_value,
                    "new_value": e.new_value,
                    "reason": e.reason,
                    "performance_improvement": e.performance_improvement,
                    "timestamp": to_db_time(e.timestamp),
                }
                for e in new_entries
            ])

    # ------------------------------------------------------------------
    # Gates & bindings
    # ------------------------------------------------------------------
    def get_gates(self, conn: Connection, event_id: str, include_archived: bool = True) -> List[Gate]:
        query = select(gates).where(gates.c.event_id == event_id)
        if not include_archived:
            query = query.where(gates.c.archived_at.is_(None))
        rows = conn.execute(query.order_by(gates.c.created_at, gates.c.id)).mappings().all()
        return [self._gate_from_row(r) for r in rows]

    def get_gate(self, conn: Connection, gate_id: str) -> Optional[Gate]:
        row = conn.execute(select(gates).where(gates.c.id == gate_id)).mappings().first()
        return self._gate_from_row(row) if row else None

    @staticmethod
    def _gate_from_row(row) -> Gate:
        return Gate(
            id=row["id"],
            event_id=row["event_id"],
            name=row["name"],
            status=row["status"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            spatial_variance=row["spatial_variance"],
            derivation_method=row["derivation_method"],
            virtual_category=row["virtual_category"],
            confidence=row["confidence"],
            health_score=row["health_score"],
            sample_count=row["sample_count"],
            wifi_ssids=row["wifi_ssids"] or [],
            ble_beacons=row["ble_beacons"] or [],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
            archived_at=from_db_time(row["archived_at"]),
            archive_reason=row["archive_reason"],
            merged_into=row["merged_into"],
        )

    def upsert_gates(self, conn: Connection, items: Iterable[Gate]) -> None:
        for g in items:
            self._upsert(conn, gates, ["id"], {
                "id": g.id,
                "event_id": g.event_id,
                "name": g.name,
                "status": g.status.value,
                "latitude": g.latitude,
                "longitude": g.longitude,
                "spatial_variance": g.spatial_variance,
                "derivation_method": g.derivation_method.value,
                "virtual_category": g.virtual_category,
                "confidence": g.confidence,
                "health_score": g.health_score,
                "sample_count": g.sample_count,
                "wifi_ssids": list(g.wifi_ssids),
                "ble_beacons": list(g.ble_beacons),
                "created_at": to_db_time(g.created_at),
                "updated_at": to_db_time(g.updated_at),
                "last_seen_at": to_db_time(g.last_seen_at),
                "archived_at": to_db_time(g.archived_at),
                "archive_reason": g.archive_reason,
                "merged_into": g.merged_into,
            })

    def get_bindings(self, conn: Connection, event_id: str, gate_id: Optional[str] = None,
                     status: Optional[str] = None) -> List[GateBinding]:
        query = select(gate_bindings).where(gate_bindings.c.event_id == event_id)
        if gate_id:
            query = query.where(gate_bindings.c.gate_id == gate_id)
        if status:
            query = query.where(gate_bindings.c.status == status)
        rows = conn.execute(
            query.order_by(gate_bindings.c.gate_id, gate_bindings.c.category)
        ).mappings().all()
        return [
            GateBinding(
                gate_id=r["gate_id"],
                category=r["category"],
                event_id=r["event_id"],
                status=r["status"],
                confidence=r["confidence"],
                sample_count=r["sample_count"],
                violation_count=r["violation_count"],
                bound_at=from_db_time(r["bound_at"]),
                promoted_at=from_db_time(r["promoted_at"]),
                last_violation_at=from_db_time(r["last_violation_at"]),
                updated_at=from_db_time(r["updated_at"]),
            )
            for r in rows
        ]

    def replace_bindings(self, conn: Connection, event_id: str, items: Iterable[GateBinding]) -> None:
        """Bindings are rewritten as a set; merges remove keys as well as add them."""
        conn.execute(delete(gate_bindings).where(gate_bindings.c.event_id == event_id))
        rows = [
            {
                "gate_id": b.gate_id,
                "category": b.category,
                "event_id": b.event_id,
                "status": b.status.value,
                "confidence": b.confidence,
                "sample_count": b.sample_count,
                "violation_count": b.violation_count,
                "bound_at": to_db_time(b.bound_at),
                "promoted_at": to_db_time(b.promoted_at),
                "last_violation_at": to_db_time(b.last_violation_at),
                "updated_at": to_db_time(b.updated_at),
            }
            for b in items
        ]
        if rows:
            conn.execute(insert(gate_bindings), rows)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------
    def get_assignments(self, conn: Connection, event_id: str) -> Dict[str, CheckinAssignment]:
        rows = conn.execute(
            select(checkin_gate_assignments).where(checkin_gate_assignments.c.event_id == event_id)
        ).mappings().all()
        return {
            r["checkin_id"]: CheckinAssignment(
                checkin_id=r["checkin_id"],
                event_id=r["event_id"],
                gate_id=r["gate_id"],
                assigned_at=from_db_time(r["assigned_at"]),
            )
            for r in rows
        }

    def upsert_assignments(self, conn: Connection, items: Iterable[CheckinAssignment]) -> None:
        for a in items:
            self._upsert(conn, checkin_gate_assignments, ["checkin_id"], {
                "checkin_id": a.checkin_id,
                "event_id": a.event_id,
                "gate_id": a.gate_id,
                "assigned_at": to_db_time(a.assigned_at),
            })

    def count_assignments(self, conn: Connection, gate_id: str) -> int:
        return conn.execute(
            select(func.count()).select_from(checkin_gate_assignments)
            .where(checkin_gate_assignments.c.gate_id == gate_id)
        ).scalar_one()

    # ------------------------------------------------------------------
    # Merge suggestions
    # ------------------------------------------------------------------
    def get_merge_suggestions(self, conn: Connection, event_id: str,
                              status: Optional[str] = None) -> List[MergeSuggestion]:
        query = select(merge_suggestions).where(merge_suggestions.c.event_id == event_id)
        if status:
            query = query.where(merge_suggestions.c.status == status)
        rows = conn.execute(
            query.order_by(merge_suggestions.c.created_at, merge_suggestions.c.id)
        ).mappings().all()
        return [self._suggestion_from_row(r) for r in rows]

    def get_merge_suggestion(self, conn: Connection, suggestion_id: str) -> Optional[MergeSuggestion]:
        row = conn.execute(
            select(merge_suggestions).where(merge_suggestions.c.id == suggestion_id)
        ).mappings().first()
        return self._suggestion_from_row(row) if row else None

    @staticmethod
    def _suggestion_from_row(row) -> MergeSuggestion:
        return MergeSuggestion(
            id=row["id"],
            event_id=row["event_id"],
            primary_gate_id=row["primary_gate_id"],
            secondary_gate_id=row["secondary_gate_id"],
            confidence_score=row["confidence_score"],
            distance_meters=row["distance_meters"],
            traffic_similarity=row["traffic_similarity"],
            reasoning=row["reasoning"],
            status=row["status"],
            decided_by=row["decided_by"],
            created_at=from_db_time(row["created_at"]),
            resolved_at=from_db_time(row["resolved_at"]),
        )

    def upsert_merge_suggestions(self, conn: Connection, items: Iterable[MergeSuggestion]) -> None:
        for s in items:
            self._upsert(conn, merge_suggestions, ["id"], {
                "id": s.id,
                "event_id": s.event_id,
                "primary_gate_id": s.primary_gate_id,
                "secondary_gate_id": s.secondary_gate_id,
                "confidence_score": s.confidence_score,
                "distance_meters": s.distance_meters,
                "traffic_similarity": s.traffic_similarity,
                "reasoning": s.reasoning,
                "status": s.status.value,
                "decided_by": s.decided_by.value if s.decided_by else None,
                "created_at": to_db_time(s.created_at),
                "resolved_at": to_db_time(s.resolved_at),
            })

    # ------------------------------------------------------------------
    # Decision log (insert only)
    # ------------------------------------------------------------------
    def add_decisions(self, conn: Connection, items: Iterable[DecisionExplanation]) -> int:
        rows = [
            {
                "id": d.id,
                "event_id": d.event_id,
                "decision": d.decision.value,
                "gate_id": d.gate_id,
                "category": d.category,
                "factors": [f.model_dump(mode="json") for f in d.factors],
                "primary_reason": d.primary_reason,
                "confidence_breakdown": d.confidence_breakdown.model_dump(mode="json"),
                "created_at": to_db_time(d.created_at),
            }
            for d in items
        ]
        if rows:
            conn.execute(insert(decision_log), rows)
        return len(rows)

    def get_decisions(
        self,
        conn: Connection,
        event_id: str,
        gate_id: Optional[str] = None,
        kind: Optional[DecisionKind] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[DecisionExplanation]:
        conditions = [decision_log.c.event_id == event_id]
        if gate_id:
            conditions.append(decision_log.c.gate_id == gate_id)
        if kind:
            conditions.append(decision_log.c.decision == DecisionKind(kind).value)
        if since is not None:
            conditions.append(decision_log.c.created_at >= to_db_time(since))
        if until is not None:
            conditions.append(decision_log.c.created_at <= to_db_time(until))
        query = select(decision_log).where(and_(*conditions)).order_by(decision_log.c.created_at)
        if limit:
            query = query.limit(limit)
        rows = conn.execute(query).mappings().all()
        return [
            DecisionExplanation(
                id=r["id"],
                event_id=r["event_id"],
                decision=r["decision"],
                gate_id=r["gate_id"],
                category=r["category"],
                factors=[DecisionFactor(**f) for f in r["factors"] or []],
                primary_reason=r["primary_reason"],
                confidence_breakdown=ConfidenceBreakdown(**(r["confidence_breakdown"] or {})),
                created_at=from_db_time(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Cycle snapshot / batched write
    # ------------------------------------------------------------------
    def load_snapshot(self, conn: Connection, thresholds: AdaptiveThresholds,
                      window_start: datetime, window_end: Optional[datetime] = None) -> EventSnapshot:
        event_id = thresholds.event_id
        gate_list = self.get_gates(conn, event_id)
        return EventSnapshot(
            thresholds=thresholds.model_copy(deep=True),
            gates={g.id: g for g in gate_list},
            bindings={b.key: b for b in self.get_bindings(conn, event_id)},
            assignments=self.get_assignments(conn, event_id),
            suggestions=self.get_merge_suggestions(conn, event_id),
            checkins=self.get_checkins(conn, event_id, since=window_start, until=window_end),
        )

    def save_cycle(
        self,
        conn: Connection,
        event_id: str,
        gate_items: Iterable[Gate],
        bindings: Iterable[GateBinding],
        assignments: Iterable[CheckinAssignment],
        suggestions: Iterable[MergeSuggestion],
        decisions: Iterable[DecisionExplanation],
    ) -> None:
        """All writes of one cycle; call inside a single transaction."""
        self.upsert_gates(conn, gate_items)
        self.replace_bindings(conn, event_id, bindings)
        self.upsert_assignments(conn, assignments)
        self.upsert_merge_suggestions(conn, suggestions)
        self.add_decisions(conn, decisions)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _upsert(conn: Connection, table, keys: List[str], row: dict) -> None:
        where = and_(*[table.c[k] == row[k] for k in keys])
        values = {k: v for k, v in row.items() if k not in keys}
        result = conn.execute(update(table).where(where).values(**values))
        if result.rowcount == 0:
            conn.execute(insert(table).values(**row))

