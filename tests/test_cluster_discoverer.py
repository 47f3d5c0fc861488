"""
Cluster discovery tests.

Key properties:
1. Too few located scans is a no-op, not an error
2. Same input set (any order) -> same candidates
3. GPS-less scans count toward a cluster only through shared WiFi/BLE signals
4. Candidates near a known gate refresh it instead of creating a duplicate
"""

import random
from datetime import timedelta

import pytest

from gate_discovery.models.enums import DecisionKind, DerivationMethod, GateStatus
from gate_discovery.models.schemas import Gate
from gate_discovery.services.cluster_discoverer import ClusterDiscoverer, gate_name_for
from gate_discovery.services.decision_recorder import DecisionRecorder
from gate_discovery.utils.geo import distance, offset

from conftest import EVENT_ID, NOW, VENUE_CENTER


START = NOW - timedelta(hours=2)
NORTH_GATE = VENUE_CENTER
SOUTH_GATE = offset(VENUE_CENTER, -300, 40)


# ============================================================================
# TEST: CLUSTERING
# ============================================================================

class TestDiscover:

    def test_too_few_scans_is_noop(self, factory, thresholds):
        scans = [factory.make(NORTH_GATE), factory.make(NORTH_GATE)]
        assert ClusterDiscoverer(thresholds).discover(scans) == []

    def test_single_tight_cluster(self, factory, thresholds):
        scans = factory.around(NORTH_GATE, 40, radius_m=10, start=START)
        candidates = ClusterDiscoverer(thresholds).discover(scans)

        assert len(candidates) == 1
        c = candidates[0]
        assert c.sample_count == 40
        assert c.dominant_category == "GA"
        assert c.purity == 1.0
        assert distance(c.point, NORTH_GATE) < 5.0
        assert c.rms_radius <= thresholds.duplicate_distance_meters
        assert 0.0 < c.confidence <= 1.0

    def test_two_separate_clusters(self, factory, thresholds):
        scans = (
            factory.around(NORTH_GATE, 20, radius_m=8, start=START, seed=1)
            + factory.around(SOUTH_GATE, 25, radius_m=8, start=START, seed=2, category="VIP")
        )
        candidates = ClusterDiscoverer(thresholds).discover(scans)
        assert sorted(c.dominant_category for c in candidates) == ["GA", "VIP"]

    def test_isolated_points_stay_unassigned(self, factory, thresholds):
        scans = factory.around(NORTH_GATE, 12, radius_m=6, start=START)
        stray = factory.make(offset(VENUE_CENTER, 500, 500))
        candidates = ClusterDiscoverer(thresholds).discover(scans + [stray])
        assert len(candidates) == 1
        assert stray.id not in candidates[0].located_ids

    def test_failed_scans_are_ignored(self, factory, thresholds):
        scans = factory.around(NORTH_GATE, 10, radius_m=6, start=START, status="failed")
        assert ClusterDiscoverer(thresholds).discover(scans) == []

    def test_low_accuracy_fixes_are_excluded(self, factory, thresholds):
        good = factory.around(NORTH_GATE, 10, radius_m=6, start=START)
        blurry = factory.around(SOUTH_GATE, 10, radius_m=6, start=START, accuracy=400.0)
        candidates = ClusterDiscoverer(thresholds).discover(good + blurry)
        assert len(candidates) == 1
        assert candidates[0].sample_count == 10


class TestDeterminism:
    """Clustering must not depend on the order the feed delivers scans in."""

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_shuffled_input_same_candidates(self, factory, thresholds, seed):
        scans = (
            factory.around(NORTH_GATE, 30, radius_m=12, start=START, seed=11)
            + factory.around(SOUTH_GATE, 18, radius_m=12, start=START, seed=12, category="VIP")
            + factory.around(offset(NORTH_GATE, 18, 0), 6, radius_m=4, start=START, seed=13)
        )
        shuffled = list(scans)
        random.Random(seed).shuffle(shuffled)

        discoverer = ClusterDiscoverer(thresholds)
        first = discoverer.discover(scans)
        second = discoverer.discover(shuffled)

        assert [c.point for c in first] == [c.point for c in second]
        assert [sorted(c.located_ids) for c in first] == [sorted(c.located_ids) for c in second]


class TestAmbientCorroboration:

    def test_gps_denied_scans_counted_through_shared_wifi(self, factory, thresholds):
        located = factory.around(NORTH_GATE, 10, radius_m=6, start=START, wifi=["Hall-A"])
        denied = [factory.make(None, at=START, wifi=["Hall-A"]) for _ in range(4)]
        silent = [factory.make(None, at=START) for _ in range(3)]

        candidates = ClusterDiscoverer(thresholds).discover(located + denied + silent)

        assert len(candidates) == 1
        c = candidates[0]
        assert sorted(c.corroborated_ids) == sorted(s.id for s in denied)
        assert c.sample_count == 14
        # centroid only uses the located scans
        assert len(c.located_ids) == 10

    def test_zero_accuracy_scan_with_beacon_goes_to_best_overlap(self, factory, thresholds):
        north = factory.around(NORTH_GATE, 8, radius_m=5, start=START, ble=["b-1", "b-2"], seed=3)
        south = factory.around(SOUTH_GATE, 8, radius_m=5, start=START, ble=["b-2"], seed=4)
        denied = factory.make(NORTH_GATE, at=START, accuracy=0.0, ble=["b-1", "b-2"])

        candidates = ClusterDiscoverer(thresholds).discover(north + south + [denied])
        owner = [c for c in candidates if denied.id in c.corroborated_ids]
        assert len(owner) == 1
        assert distance(owner[0].point, NORTH_GATE) < 10


# ============================================================================
# TEST: NAMING
# ============================================================================

class TestNaming:

    @pytest.mark.parametrize("samples,purity,expected", [
        (250, 0.5, "Primary GA Gate"),
        (120, 0.5, "Main GA Gate"),
        (60, 0.5, "GA Entrance"),
        (20, 0.95, "GA Dedicated Gate"),
        (20, 0.6, "GA Access Point"),
    ])
    def test_name_tiers(self, samples, purity, expected):
        assert gate_name_for("GA", samples, purity) == expected


# ============================================================================
# TEST: RECONCILIATION WITH KNOWN GATES
# ============================================================================

class TestReconcile:

    def test_new_candidate_creates_learning_gate_with_decision(self, factory, thresholds):
        discoverer = ClusterDiscoverer(thresholds)
        recorder = DecisionRecorder(EVENT_ID)
        gates = {}

        candidates = discoverer.discover(factory.around(NORTH_GATE, 20, radius_m=8, start=START))
        created, refreshed = discoverer.reconcile(EVENT_ID, candidates, gates, recorder, NOW)

        assert len(created) == 1 and refreshed == []
        gate = created[0]
        assert gate.status == GateStatus.LEARNING
        assert gate.derivation_method == DerivationMethod.AUTO_DISCOVERED
        assert gates == {gate.id: gate}

        decisions = recorder.drain()
        assert [d.decision for d in decisions] == [DecisionKind.CREATED]
        assert decisions[0].gate_id == gate.id
        assert decisions[0].primary_reason

    def test_matching_candidate_refreshes_instead_of_duplicating(self, factory, thresholds):
        discoverer = ClusterDiscoverer(thresholds)
        recorder = DecisionRecorder(EVENT_ID)
        gates = {}
        discoverer.reconcile(
            EVENT_ID, discoverer.discover(factory.around(NORTH_GATE, 20, radius_m=8, start=START, seed=1)),
            gates, recorder, NOW,
        )
        recorder.drain()

        more = factory.around(offset(NORTH_GATE, 3, 3), 25, radius_m=8, start=START, seed=2)
        created, refreshed = discoverer.reconcile(EVENT_ID, discoverer.discover(more), gates, recorder, NOW)

        assert created == []
        assert len(refreshed) == 1
        assert len(gates) == 1
        assert recorder.drain() == []

    def test_manual_gate_is_never_moved(self, factory, thresholds):
        manual = Gate(
            event_id=EVENT_ID, name="Staff Door", latitude=NORTH_GATE[0], longitude=NORTH_GATE[1],
            derivation_method=DerivationMethod.MANUAL, status=GateStatus.ACTIVE,
        )
        gates = {manual.id: manual}
        discoverer = ClusterDiscoverer(thresholds)
        scans = factory.around(offset(NORTH_GATE, 6, 0), 20, radius_m=5, start=START, wifi=["Staff"])

        discoverer.reconcile(EVENT_ID, discoverer.discover(scans), gates, DecisionRecorder(EVENT_ID), NOW)

        assert manual.point == NORTH_GATE
        assert manual.wifi_ssids == ["Staff"]

    def test_duplicate_names_get_suffix(self, factory, thresholds):
        discoverer = ClusterDiscoverer(thresholds)
        scans = (
            factory.around(NORTH_GATE, 10, radius_m=5, start=START, seed=1)
            + factory.around(SOUTH_GATE, 10, radius_m=5, start=START, seed=2)
        )
        gates = {}
        discoverer.reconcile(EVENT_ID, discoverer.discover(scans), gates, DecisionRecorder(EVENT_ID), NOW)
        assert sorted(g.name for g in gates.values()) == ["GA Dedicated Gate", "GA Dedicated Gate 2"]
