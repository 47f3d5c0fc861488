"""
Binding state machine tests.

Key properties:
1. Confidence never decreases under consistent evidence and never exceeds 1
2. probation -> enforced only with enough samples AND enough confidence
3. Enforced bindings are demoted when violations outweigh samples
4. Rejected is terminal
5. Every transition is explained exactly once
"""

import random
from datetime import timedelta

import pytest

from gate_discovery.models.enums import BindingStatus, DecisionKind, GateStatus
from gate_discovery.models.schemas import AdaptiveThresholds, Gate, GateBinding
from gate_discovery.services.binding_tracker import (
    HARD_VIOLATION_LIMIT, REJECTION_MIN_OBSERVATIONS, BindingTracker, ScanEvidence,
)
from gate_discovery.services.decision_recorder import DecisionRecorder

from conftest import EVENT_ID, NOW, VENUE_CENTER


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def gate() -> Gate:
    return Gate(
        event_id=EVENT_ID, name="GA Entrance", latitude=VENUE_CENTER[0], longitude=VENUE_CENTER[1],
        status=GateStatus.LEARNING,
    )


@pytest.fixture
def recorder() -> DecisionRecorder:
    return DecisionRecorder(EVENT_ID)


class ScanStream:
    """Sequential ScanEvidence for one gate."""

    def __init__(self, gate: Gate):
        self.gate = gate
        self.seq = 0

    def __call__(self, category: str = "GA", consistent: bool = True) -> ScanEvidence:
        self.seq += 1
        return ScanEvidence(
            checkin_id=f"c-{self.seq:05d}",
            gate_id=self.gate.id,
            category=category,
            timestamp=NOW + timedelta(seconds=self.seq),
            spatially_consistent=consistent,
        )


# ============================================================================
# TEST: EVIDENCE
# ============================================================================

class TestEvidence:

    def test_first_scan_creates_probation_binding(self, gate, thresholds, recorder):
        tracker = BindingTracker(thresholds, recorder)
        bindings = {}
        tracker.observe(gate, ScanStream(gate)(), bindings, NOW)

        binding = bindings[(gate.id, "GA")]
        assert binding.status == BindingStatus.PROBATION
        assert binding.sample_count == 1
        assert binding.confidence == pytest.approx(0.05)
        decisions = recorder.drain()
        assert [(d.decision, d.category) for d in decisions] == [(DecisionKind.CREATED, "GA")]

    def test_confidence_monotone_and_bounded_under_consistent_scans(self, gate, thresholds, recorder):
        tracker = BindingTracker(thresholds, recorder)
        bindings = {}
        scan = ScanStream(gate)
        previous = 0.0
        for _ in range(800):
            tracker.observe(gate, scan(), bindings, NOW)
            current = bindings[(gate.id, "GA")].confidence
            assert current >= previous
            assert current <= 1.0
            previous = current
        assert previous > 0.99

    def test_violation_decays_confidence(self, gate, thresholds, recorder):
        tracker = BindingTracker(thresholds, recorder)
        bindings = {}
        scan = ScanStream(gate)
        for _ in range(10):
            tracker.observe(gate, scan(), bindings, NOW)
        before = bindings[(gate.id, "GA")].confidence

        tracker.observe(gate, scan(consistent=False), bindings, NOW)

        binding = bindings[(gate.id, "GA")]
        assert binding.confidence == pytest.approx(before * 0.9)
        assert binding.violation_count == 1
        assert binding.last_violation_at is not None
        assert binding.sample_count == 10

    def test_apply_orders_evidence_by_time(self, gate, thresholds, recorder):
        tracker = BindingTracker(thresholds, recorder)
        scan = ScanStream(gate)
        evidence = [scan() for _ in range(5)]
        bindings = {}
        touched = tracker.apply(gate, list(reversed(evidence)), bindings, NOW)
        assert [b.key for b in touched] == [(gate.id, "GA")]
        assert bindings[(gate.id, "GA")].bound_at == evidence[0].timestamp


# ============================================================================
# TEST: PROMOTION
# ============================================================================

class TestPromotion:

    def test_promoted_once_both_conditions_hold(self, gate, thresholds, recorder):
        """60 consistent GA scans, promotion at 50 samples / 0.8 confidence."""
        tracker = BindingTracker(thresholds, recorder)
        bindings = {}
        scan = ScanStream(gate)
        promoted_at = None
        for i in range(1, 61):
            tracker.observe(gate, scan(), bindings, NOW)
            if promoted_at is None and bindings[(gate.id, "GA")].status == BindingStatus.ENFORCED:
                promoted_at = i

        assert promoted_at == 50
        binding = bindings[(gate.id, "GA")]
        assert binding.status == BindingStatus.ENFORCED
        assert binding.promoted_at is not None
        promotions = [d for d in recorder.drain() if d.decision == DecisionKind.PROMOTED]
        assert len(promotions) == 1

    def test_enough_samples_but_low_confidence_stays_on_probation(self, gate, recorder):
        strict = AdaptiveThresholds(event_id=EVENT_ID, promotion_sample_size=10, confidence_threshold=0.9)
        tracker = BindingTracker(strict, recorder)
        bindings = {}
        scan = ScanStream(gate)
        for _ in range(20):
            tracker.observe(gate, scan(), bindings, NOW)
        # 1 - 0.95**20 ~= 0.64
        assert bindings[(gate.id, "GA")].status == BindingStatus.PROBATION

    def test_violation_heavy_binding_is_not_promoted(self, gate, thresholds, recorder):
        """Samples and confidence suffice, but 20 violations per 60 samples would demote at once."""
        binding = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID,
                              confidence=0.95, sample_count=60, violation_count=20)
        bindings = {binding.key: binding}

        assert BindingTracker(thresholds, recorder).evaluate(gate, binding, bindings, NOW) is None
        assert binding.status == BindingStatus.PROBATION
        assert recorder.drain() == []

        binding.violation_count = 15
        assert BindingTracker(thresholds, recorder).evaluate(gate, binding, bindings, NOW) == BindingStatus.ENFORCED

    @pytest.mark.parametrize("seed", range(25))
    def test_promotion_precondition_over_random_sequences(self, gate, seed):
        """Whenever a binding becomes enforced, samples and confidence meet the thresholds."""
        rng = random.Random(seed)
        t = AdaptiveThresholds(
            event_id=EVENT_ID,
            promotion_sample_size=rng.randint(5, 40),
            confidence_threshold=rng.uniform(0.5, 0.9),
        )
        tracker = BindingTracker(t, DecisionRecorder(EVENT_ID))
        bindings = {}
        scan = ScanStream(gate)
        for _ in range(rng.randint(50, 300)):
            before = {k: b.status for k, b in bindings.items()}
            category = rng.choice(["GA", "GA", "GA", "VIP"])
            tracker.observe(gate, scan(category, consistent=rng.random() > 0.15), bindings, NOW)
            for key, binding in bindings.items():
                was = before.get(key, BindingStatus.PROBATION)
                if was == BindingStatus.PROBATION and binding.status == BindingStatus.ENFORCED:
                    assert binding.sample_count >= t.promotion_sample_size
                    assert binding.confidence >= t.confidence_threshold


# ============================================================================
# TEST: DEMOTION / REJECTION
# ============================================================================

class TestDemotionAndRejection:

    def test_incompatible_category_demotes_enforced_binding(self, gate, recorder):
        """40 enforced GA scans, then 15 VIP scans the gate does not enforce."""
        t = AdaptiveThresholds(event_id=EVENT_ID, promotion_sample_size=30, confidence_threshold=0.8)
        tracker = BindingTracker(t, recorder)
        bindings = {}
        scan = ScanStream(gate)
        for _ in range(40):
            tracker.observe(gate, scan("GA"), bindings, NOW)
        ga = bindings[(gate.id, "GA")]
        assert ga.status == BindingStatus.ENFORCED
        assert ga.sample_count == 40

        for _ in range(15):
            tracker.observe(gate, scan("VIP"), bindings, NOW)

        assert ga.status == BindingStatus.PROBATION
        assert ga.violation_count == 11  # first count above 25% of 40
        assert bindings[(gate.id, "VIP")].status == BindingStatus.PROBATION

        kinds = [(d.decision, d.category) for d in recorder.drain()]
        assert kinds.count((DecisionKind.DEMOTED, "GA")) == 1
        assert (DecisionKind.REJECTED, "GA") not in kinds

    def test_low_confidence_rejected_after_observation_period(self, gate, thresholds, recorder):
        tracker = BindingTracker(thresholds, recorder)
        bindings = {}
        scan = ScanStream(gate)
        for _ in range(REJECTION_MIN_OBSERVATIONS - 1):
            tracker.observe(gate, scan(consistent=False), bindings, NOW)
        assert bindings[(gate.id, "GA")].status == BindingStatus.PROBATION

        tracker.observe(gate, scan(consistent=False), bindings, NOW)
        assert bindings[(gate.id, "GA")].status == BindingStatus.REJECTED

    def test_hard_violation_limit_rejects_enforced_binding(self, gate, thresholds, recorder):
        binding = GateBinding(
            gate_id=gate.id, category="GA", event_id=EVENT_ID, status=BindingStatus.ENFORCED,
            confidence=0.99, sample_count=5000, violation_count=HARD_VIOLATION_LIMIT - 1,
        )
        bindings = {binding.key: binding}
        BindingTracker(thresholds, recorder).observe(gate, ScanStream(gate)(consistent=False), bindings, NOW)
        assert binding.status == BindingStatus.REJECTED
        assert [d.decision for d in recorder.drain()] == [DecisionKind.REJECTED]

    def test_rejected_is_terminal(self, gate, thresholds, recorder):
        binding = GateBinding(
            gate_id=gate.id, category="GA", event_id=EVENT_ID, status=BindingStatus.REJECTED,
            confidence=0.1, sample_count=3, violation_count=40,
        )
        bindings = {binding.key: binding}
        tracker = BindingTracker(thresholds, recorder)
        scan = ScanStream(gate)
        for _ in range(200):
            tracker.observe(gate, scan(), bindings, NOW)
        assert binding.status == BindingStatus.REJECTED
        assert binding.sample_count == 3
        assert recorder.drain() == []


# ============================================================================
# TEST: MERGE SUPPORT
# ============================================================================

class TestAbsorb:

    def test_same_category_bindings_combine(self, gate, thresholds, recorder):
        other_gate_id = "gate-b"
        kept = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID,
                           status=BindingStatus.ENFORCED, confidence=0.9, sample_count=30)
        moved = GateBinding(gate_id=other_gate_id, category="GA", event_id=EVENT_ID,
                            confidence=0.4, sample_count=10, violation_count=2)
        bindings = {kept.key: kept, moved.key: moved}

        result = BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)

        assert result is kept
        assert set(bindings) == {(gate.id, "GA")}
        assert kept.sample_count == 40
        assert kept.violation_count == 2
        assert kept.confidence == pytest.approx((0.9 * 30 + 0.4 * 10) / 40)
        assert kept.status == BindingStatus.ENFORCED

    def test_new_category_moves_to_primary(self, gate, thresholds, recorder):
        moved = GateBinding(gate_id="gate-b", category="VIP", event_id=EVENT_ID, confidence=0.3, sample_count=5)
        bindings = {moved.key: moved}
        result = BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)
        assert result.gate_id == gate.id
        assert set(bindings) == {(gate.id, "VIP")}

    def test_rejected_binding_survives_a_larger_enforced_one(self, gate, thresholds, recorder):
        kept = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID,
                           status=BindingStatus.REJECTED, confidence=0.1, sample_count=5, violation_count=40)
        moved = GateBinding(gate_id="gate-b", category="GA", event_id=EVENT_ID,
                            status=BindingStatus.ENFORCED, confidence=0.99, sample_count=200)
        bindings = {kept.key: kept, moved.key: moved}

        BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)

        assert set(bindings) == {(gate.id, "GA")}
        assert kept.status == BindingStatus.REJECTED
        assert kept.sample_count == 5
        assert recorder.drain() == []

    def test_larger_enforced_binding_promotes_through_the_rules(self, gate, thresholds, recorder):
        kept = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID, confidence=0.3, sample_count=5)
        moved = GateBinding(gate_id="gate-b", category="GA", event_id=EVENT_ID,
                            status=BindingStatus.ENFORCED, confidence=0.99, sample_count=200)
        bindings = {kept.key: kept, moved.key: moved}

        BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)

        assert kept.status == BindingStatus.ENFORCED
        assert kept.promoted_at == NOW
        assert [(d.decision, d.category) for d in recorder.drain()] == [(DecisionKind.PROMOTED, "GA")]

    def test_combined_violations_demote_an_enforced_binding(self, gate, thresholds, recorder):
        kept = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID,
                           status=BindingStatus.ENFORCED, confidence=0.9, sample_count=10)
        moved = GateBinding(gate_id="gate-b", category="GA", event_id=EVENT_ID,
                            confidence=0.5, sample_count=100, violation_count=40)
        bindings = {kept.key: kept, moved.key: moved}

        BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)

        # 40 violations against 110 samples
        assert kept.status == BindingStatus.PROBATION
        assert [d.decision for d in recorder.drain()] == [DecisionKind.DEMOTED]

    def test_larger_rejected_binding_rejects_the_primary(self, gate, thresholds, recorder):
        kept = GateBinding(gate_id=gate.id, category="GA", event_id=EVENT_ID, confidence=0.6, sample_count=5)
        moved = GateBinding(gate_id="gate-b", category="GA", event_id=EVENT_ID,
                            status=BindingStatus.REJECTED, confidence=0.1, sample_count=100, violation_count=60)
        bindings = {kept.key: kept, moved.key: moved}

        BindingTracker(thresholds, recorder).absorb(gate, moved, bindings, NOW)

        assert kept.status == BindingStatus.REJECTED
        [decision] = recorder.drain()
        assert decision.decision == DecisionKind.REJECTED
        assert decision.factors[0].metric == "absorbed_samples"
