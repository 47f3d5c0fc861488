# =======================================================================================
# gate_discovery/services/gate_engine.py - Recompute Cycle Orchestration
# =======================================================================================
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple, Union

from ..config import config
from ..database import DatabaseManager, db_manager
from ..models.enums import (
    BindingStatus, DecisionKind, DerivationMethod, GateStatus, MergeOrigin, MergeStatus, VenueType,
)
from ..models.schemas import (
    AdaptiveThresholds, CheckinAssignment, CheckinEvent, ConfidenceBreakdown, CycleReport,
    DecisionExplanation, EventQualityReport, Gate, GateBinding, MergeSuggestion, OptimizationEntry,
    OptimizationReport, ThresholdUpdateRequest, utcnow,
)
from ..repository import GateRepository
from ..utils.exceptions import (
    CycleCancelledError, CycleTimeoutError, CycleInterruptedError, EventNotConfiguredError,
    GateEngineError, GateNotFoundError, MergeSuggestionNotFoundError, ThresholdValidationError,
)
from ..utils.validators import ThresholdValidator
from .binding_tracker import BindingKey, BindingTracker, ScanEvidence
from .checkin_assigner import CheckinAssigner
from .cluster_discoverer import ClusterDiscoverer
from .decision_recorder import DecisionRecorder, factor
from .gate_health import GateHealthScorer
from .merge_detector import MergeDetector
from .quality_report import QualityReporter
from .threshold_optimizer import ThresholdOptimizer
from .virtual_gates import VirtualGatePlanner

logger = logging.getLogger(__name__)

RECOMPUTE = "recompute"
OPTIMIZE = "optimize"


class EventLockRegistry:
    """One advisory lock per (purpose, event). Different events never share a lock."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def lock_for(self, purpose: str, event_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((purpose, event_id), threading.Lock())

    @contextmanager
    def hold(self, purpose: str, event_id: str, blocking: bool = False,
             timeout: float = -1) -> Iterator[bool]:
        """Yield True when the lock was taken, False when someone else holds it."""
        lock = self.lock_for(purpose, event_id)
        acquired = lock.acquire(blocking, timeout) if blocking else lock.acquire(False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


class GateEngine:
    """
    Entry points for the gate model of each event:
    - setup_event: seed adaptive thresholds from the venue type
    - recompute: one discovery / binding / merge cycle (acquire-or-skip)
    - optimize_thresholds: periodic tuning, under its own lock
    plus the read model queried by dashboards and the check-in router.
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        repository: Optional[GateRepository] = None,
        locks: Optional[EventLockRegistry] = None,
        learning_window_hours: Optional[float] = None,
        cycle_timeout_seconds: Optional[float] = None,
        idle_archive_hours: Optional[float] = None,
        auto_approve_confidence: Optional[float] = None,
        similarity_floor: Optional[float] = None,
    ):
        self.db = db or db_manager
        self.repository = repository or GateRepository()
        self.locks = locks or EventLockRegistry()
        self.learning_window = timedelta(hours=learning_window_hours or config.LEARNING_WINDOW_HOURS)
        self.cycle_timeout_seconds = cycle_timeout_seconds or config.CYCLE_TIMEOUT_SECONDS
        self.idle_archive_after = timedelta(hours=idle_archive_hours or config.GATE_IDLE_ARCHIVE_HOURS)
        self.auto_approve_confidence = auto_approve_confidence or config.MERGE_AUTO_APPROVE_CONFIDENCE
        self.similarity_floor = similarity_floor if similarity_floor is not None else config.MERGE_SIMILARITY_FLOOR
        self.validator = ThresholdValidator()
        self.optimizer = ThresholdOptimizer(self.validator)
        self.health = GateHealthScorer()
        self.virtual = VirtualGatePlanner()
        self.reporter = QualityReporter()

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------
    def setup_event(
        self,
        event_id: str,
        venue_type: Union[VenueType, str] = VenueType.OUTDOOR,
        overrides: Optional[Union[ThresholdUpdateRequest, dict]] = None,
    ) -> AdaptiveThresholds:
        """Create (or reseed) the event's thresholds from venue defaults plus overrides."""
        venue_type = VenueType(venue_type)
        changes = self._changes(overrides)
        errors = self.validator.collect_errors(changes)
        if errors:
            raise ThresholdValidationError(errors)

        values = self.validator.defaults_for(venue_type)
        values.update(changes)
        with self.locks.hold(OPTIMIZE, event_id, blocking=True):
            with self.db.get_connection() as conn:
                existing = self.repository.get_thresholds(conn, event_id)
                thresholds = AdaptiveThresholds(
                    event_id=event_id,
                    venue_type=venue_type,
                    version=existing.version + 1 if existing else 1,
                    **values,
                )
                self.validator.validate(thresholds)
                self.repository.save_thresholds(conn, thresholds)
        logger.info("[setup] event=%s seeded %s thresholds (v%d)", event_id, venue_type.value, thresholds.version)
        return thresholds

    def get_thresholds(self, event_id: str) -> AdaptiveThresholds:
        with self.db.get_connection() as conn:
            thresholds = self.repository.get_thresholds(conn, event_id)
        if thresholds is None:
            raise EventNotConfiguredError(f"Event {event_id} has no adaptive thresholds")
        return thresholds

    def update_thresholds(
        self, event_id: str, request: Union[ThresholdUpdateRequest, dict], now: Optional[datetime] = None
    ) -> AdaptiveThresholds:
        """Validate then write; on any error the stored values stay as they were."""
        now = now or utcnow()
        changes = self._changes(request)
        errors = self.validator.collect_errors(changes)
        if errors:
            logger.warning("[thresholds] event=%s rejected update: %s", event_id, "; ".join(errors))
            raise ThresholdValidationError(errors)

        with self.locks.hold(OPTIMIZE, event_id, blocking=True):
            current = self.get_thresholds(event_id)
            entries = [
                OptimizationEntry(
                    parameter=name, old_value=float(getattr(current, name)), new_value=float(value),
                    reason="Manual update", timestamp=now,
                )
                for name, value in changes.items()
                if getattr(current, name) != value
            ]
            if not entries:
                return current
            updated = current.model_copy(update=dict(changes, version=current.version + 1))
            updated.optimization_history = list(current.optimization_history) + entries
            self.validator.validate(updated)
            with self.db.get_connection() as conn:
                self.repository.save_thresholds(conn, updated, entries)
        logger.info("[thresholds] event=%s updated to v%d", event_id, updated.version)
        return updated

    @staticmethod
    def _changes(request) -> dict:
        if request is None:
            return {}
        if isinstance(request, ThresholdUpdateRequest):
            return request.model_dump(exclude_none=True)
        return {k: v for k, v in dict(request).items() if v is not None}

    def optimize_thresholds(self, event_id: str, now: Optional[datetime] = None) -> OptimizationReport:
        with self.locks.hold(OPTIMIZE, event_id) as acquired:
            if not acquired:
                logger.info("[optimize] event=%s already running; skipped", event_id)
                return OptimizationReport(event_id=event_id, skipped=True, reason="Optimization already running")

            now = now or utcnow()
            with self.db.get_connection() as conn:
                thresholds = self.repository.get_thresholds(conn, event_id)
                if thresholds is None:
                    raise EventNotConfiguredError(f"Event {event_id} has no adaptive thresholds")
                decisions = self.repository.get_decisions(conn, event_id, since=thresholds.last_optimization_at)
                gate_list = self.repository.get_gates(conn, event_id)

            updated, report = self.optimizer.optimize(thresholds, decisions, gate_list, now)
            if not report.skipped:
                with self.db.get_connection() as conn:
                    self.repository.save_thresholds(conn, updated, report.adjustments)
            return report

    # ------------------------------------------------------------------
    # Recompute cycle
    # ------------------------------------------------------------------
    def recompute(
        self,
        event_id: str,
        cancel: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
        timeout_seconds: Optional[float] = None,
    ) -> CycleReport:
        """Run one cycle for the event, or report `skipped` if one is already running."""
        with self.locks.hold(RECOMPUTE, event_id) as acquired:
            if not acquired:
                logger.info("[cycle] event=%s recompute already running; skipped", event_id)
                return CycleReport(
                    event_id=event_id, status="skipped", finished_at=utcnow(),
                    message="Recompute already running for this event",
                )
            return self._run_cycle(
                event_id,
                cancel or threading.Event(),
                now or utcnow(),
                timeout_seconds or self.cycle_timeout_seconds,
            )

    def _run_cycle(self, event_id: str, cancel: threading.Event, now: datetime,
                   timeout_seconds: float) -> CycleReport:
        deadline = time.monotonic() + timeout_seconds
        logger.info("[cycle] event=%s started", event_id)

        with self.db.get_connection() as conn:
            thresholds = self.repository.get_thresholds(conn, event_id)
            if thresholds is None:
                raise EventNotConfiguredError(f"Event {event_id} has no adaptive thresholds")
            snapshot = self.repository.load_snapshot(conn, thresholds, now - self.learning_window, now)

        t = snapshot.thresholds
        gates = snapshot.gates
        bindings = snapshot.bindings
        checkins_by_id = snapshot.checkins_by_id
        recorder = DecisionRecorder(event_id)
        report = CycleReport(event_id=event_id, status="completed", started_at=now)

        discoverer = ClusterDiscoverer(t)
        created, _ = discoverer.reconcile(event_id, discoverer.discover(snapshot.checkins), gates, recorder, now)
        virtual, _ = self.virtual.reconcile(
            event_id, self.virtual.plan(snapshot.checkins, gates), gates, recorder, now,
        )
        report.gates_created = len(created) + len(virtual)

        assigned = CheckinAssigner(t).assign(snapshot.checkins, gates, snapshot.assignments, now)
        new_by_gate: Dict[str, List[CheckinAssignment]] = {}
        for a in assigned.assignments:
            new_by_gate.setdefault(a.gate_id, []).append(a)
        scans_by_gate: Dict[str, List[CheckinEvent]] = {}
        for a in list(snapshot.assignments.values()) + assigned.assignments:
            checkin = checkins_by_id.get(a.checkin_id)
            if checkin is not None:
                scans_by_gate.setdefault(a.gate_id, []).append(checkin)

        tracker = BindingTracker(t, recorder)
        assignments = dict(snapshot.assignments)
        interrupted: Optional[CycleInterruptedError] = None
        for gate in sorted((g for g in gates.values() if g.is_live), key=lambda g: (g.created_at, g.id)):
            try:
                self._checkpoint(cancel, deadline)
            except CycleInterruptedError as exc:
                interrupted = exc
                break
            self._process_gate(
                gate, assigned.evidence_for(gate.id), scans_by_gate.get(gate.id, []),
                bindings, tracker, recorder, now,
            )
            for a in new_by_gate.get(gate.id, []):
                assignments[a.checkin_id] = a
            report.gates_processed += 1
        report.checkins_assigned = len(assignments) - len(snapshot.assignments)

        suggestions: List[MergeSuggestion] = []
        moved: List[CheckinAssignment] = []
        if interrupted is None:
            detector = MergeDetector(
                t, recorder, tracker,
                auto_approve_confidence=self.auto_approve_confidence,
                similarity_floor=self.similarity_floor,
            )
            suggestions, moved = detector.detect(
                gates, bindings, assignments, checkins_by_id, snapshot.suggestions, now,
            )
            report.suggestions_created = len(suggestions)
            report.merges_executed = sum(1 for s in suggestions if s.status == MergeStatus.APPROVED)
        else:
            report.status = "timed_out" if isinstance(interrupted, CycleTimeoutError) else "cancelled"
            report.message = str(interrupted)
            logger.warning(
                "[cycle] event=%s %s after %d gates; merge detection skipped",
                event_id, report.status, report.gates_processed,
            )

        to_write = {a.checkin_id: a for a in assignments.values() if a.checkin_id not in snapshot.assignments}
        for a in moved:
            to_write[a.checkin_id] = a
        decisions = recorder.drain()
        report.decisions = len(decisions)

        with self.db.get_connection() as conn:
            self.repository.save_cycle(
                conn, event_id, gates.values(), bindings.values(), to_write.values(), suggestions, decisions,
            )

        report.finished_at = utcnow()
        logger.info(
            "[cycle] event=%s %s: %d gates created, %d processed, %d check-ins assigned, "
            "%d decisions, %d merges, %d suggestions",
            event_id, report.status, report.gates_created, report.gates_processed,
            report.checkins_assigned, report.decisions, report.merges_executed, report.suggestions_created,
        )
        return report

    @staticmethod
    def _checkpoint(cancel: threading.Event, deadline: float) -> None:
        if cancel.is_set():
            raise CycleCancelledError("Recompute cycle cancelled")
        if time.monotonic() > deadline:
            raise CycleTimeoutError("Recompute cycle exceeded its time budget")

    def _process_gate(
        self,
        gate: Gate,
        evidence: List[ScanEvidence],
        scans: List[CheckinEvent],
        bindings: Dict[BindingKey, GateBinding],
        tracker: BindingTracker,
        recorder: DecisionRecorder,
        now: datetime,
    ) -> None:
        """Bindings, health and lifecycle for one gate. Self-contained per gate."""
        tracker.apply(gate, evidence, bindings, now)
        if evidence:
            gate.sample_count += len(evidence)
            newest = max(e.timestamp for e in evidence)
            if gate.last_seen_at is None or newest > gate.last_seen_at:
                gate.last_seen_at = newest
            gate.updated_at = now
        self.health.refresh(gate, scans, now)

        enforced = [b for b in bindings.values() if b.gate_id == gate.id and b.status == BindingStatus.ENFORCED]
        if gate.status == GateStatus.LEARNING and enforced:
            gate.status = GateStatus.ACTIVE
            gate.updated_at = now
            recorder.record(
                DecisionKind.PROMOTED,
                [
                    factor(
                        "enforced_bindings", len(enforced), 1.0,
                        f"{gate.name} enforces {', '.join(sorted(b.category for b in enforced))}",
                    ),
                    factor("confidence", gate.confidence, 0.5),
                ],
                self._gate_breakdown(gate, bindings),
                gate_id=gate.id, at=now,
            )

        if (
            gate.derivation_method in (DerivationMethod.AUTO_DISCOVERED, DerivationMethod.VIRTUAL)
            and gate.last_seen_at is not None
            and now - gate.last_seen_at > self.idle_archive_after
        ):
            idle_hours = (now - gate.last_seen_at).total_seconds() / 3600.0
            gate.status = GateStatus.AUTO_ARCHIVED
            gate.archived_at = now
            gate.archive_reason = f"No scans for {idle_hours:.1f} hours"
            gate.updated_at = now
            recorder.record(
                DecisionKind.ARCHIVED,
                [factor("idle_hours", idle_hours, 1.0, gate.archive_reason, negative=True)],
                self._gate_breakdown(gate, bindings),
                gate_id=gate.id, at=now,
            )

    def _gate_breakdown(self, gate: Gate, bindings: Dict[BindingKey, GateBinding]) -> ConfidenceBreakdown:
        counts = [b.sample_count for b in bindings.values() if b.gate_id == gate.id]
        total = sum(counts)
        return ConfidenceBreakdown(
            spatial_consistency=round(gate.confidence, 4),
            sample_size=round(min(1.0, gate.sample_count / 100.0), 4),
            temporal_stability=round(gate.health_score / 100.0, 4),
            category_distribution=round(max(counts) / total, 4) if total else 0.0,
        )

    # ------------------------------------------------------------------
    # Manual merge disposition
    # ------------------------------------------------------------------
    def approve_merge(self, suggestion_id: str, now: Optional[datetime] = None) -> MergeSuggestion:
        now = now or utcnow()
        suggestion = self._pending_suggestion(suggestion_id)
        event_id = suggestion.event_id
        with self.locks.hold(RECOMPUTE, event_id, blocking=True, timeout=self.cycle_timeout_seconds) as acquired:
            if not acquired:
                raise GateEngineError(f"Event {event_id} is busy recomputing; try again")
            with self.db.get_connection() as conn:
                thresholds = self.repository.get_thresholds(conn, event_id)
                if thresholds is None:
                    raise EventNotConfiguredError(f"Event {event_id} has no adaptive thresholds")
                gates = {g.id: g for g in self.repository.get_gates(conn, event_id)}
                bindings = {b.key: b for b in self.repository.get_bindings(conn, event_id)}
                assignments = self.repository.get_assignments(conn, event_id)

                recorder = DecisionRecorder(event_id)
                detector = MergeDetector(
                    thresholds, recorder, BindingTracker(thresholds, recorder),
                    auto_approve_confidence=self.auto_approve_confidence,
                    similarity_floor=self.similarity_floor,
                )
                moved = detector.merge(suggestion, gates, bindings, assignments, MergeOrigin.MANUAL, now)
                self.repository.save_cycle(
                    conn, event_id,
                    [gates[suggestion.primary_gate_id], gates[suggestion.secondary_gate_id]],
                    bindings.values(), moved, [suggestion], recorder.drain(),
                )
        return suggestion

    def reject_merge(self, suggestion_id: str, now: Optional[datetime] = None) -> MergeSuggestion:
        suggestion = self._pending_suggestion(suggestion_id)
        suggestion.status = MergeStatus.REJECTED
        suggestion.decided_by = MergeOrigin.MANUAL
        suggestion.resolved_at = now or utcnow()
        with self.db.get_connection() as conn:
            self.repository.upsert_merge_suggestions(conn, [suggestion])
        logger.info("[merge] suggestion %s rejected manually", suggestion_id)
        return suggestion

    def _pending_suggestion(self, suggestion_id: str) -> MergeSuggestion:
        with self.db.get_connection() as conn:
            suggestion = self.repository.get_merge_suggestion(conn, suggestion_id)
        if suggestion is None or suggestion.status != MergeStatus.PENDING:
            raise MergeSuggestionNotFoundError(f"No pending merge suggestion {suggestion_id}")
        return suggestion

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------
    def list_events(self) -> List[str]:
        with self.db.get_connection() as conn:
            return self.repository.list_event_ids(conn)

    def list_gates(self, event_id: str, include_archived: bool = True) -> List[Gate]:
        with self.db.get_connection() as conn:
            return self.repository.get_gates(conn, event_id, include_archived)

    def get_gate(self, event_id: str, gate_id: str) -> Gate:
        with self.db.get_connection() as conn:
            gate = self.repository.get_gate(conn, gate_id)
        if gate is None or gate.event_id != event_id:
            raise GateNotFoundError(f"Gate {gate_id} not found for event {event_id}")
        return gate

    def list_bindings(self, event_id: str, gate_id: Optional[str] = None,
                      status: Optional[str] = None) -> List[GateBinding]:
        with self.db.get_connection() as conn:
            return self.repository.get_bindings(conn, event_id, gate_id, status)

    def list_merge_suggestions(self, event_id: str, status: Optional[str] = None) -> List[MergeSuggestion]:
        with self.db.get_connection() as conn:
            return self.repository.get_merge_suggestions(conn, event_id, status)

    def list_decisions(
        self,
        event_id: str,
        gate_id: Optional[str] = None,
        kind: Optional[DecisionKind] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[DecisionExplanation]:
        with self.db.get_connection() as conn:
            return self.repository.get_decisions(conn, event_id, gate_id, kind, since, until, limit)

    def quality_report(self, event_id: str, now: Optional[datetime] = None) -> EventQualityReport:
        """Data quality and autonomous performance over the learning window."""
        now = now or utcnow()
        since = now - self.learning_window
        with self.db.get_connection() as conn:
            thresholds = self.repository.get_thresholds(conn, event_id)
            if thresholds is None:
                raise EventNotConfiguredError(f"Event {event_id} has no adaptive thresholds")
            checkins = self.repository.get_checkins(conn, event_id, since, now)
            gate_list = self.repository.get_gates(conn, event_id)
            binding_list = self.repository.get_bindings(conn, event_id)
            decisions = self.repository.get_decisions(conn, event_id, since=since, until=now)
        return self.reporter.report(thresholds, checkins, gate_list, binding_list, decisions, now)
