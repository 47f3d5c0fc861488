"""
Shared fixtures for the gate discovery tests.

Every test that touches storage gets its own in-memory SQLite database, so
nothing here needs a running MySQL server.
"""

import math
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

# Must be set before gate_discovery.config is imported anywhere.
os.environ.setdefault("DB_URL", "sqlite://")

import pytest

from gate_discovery.database import DatabaseManager
from gate_discovery.models.schemas import AdaptiveThresholds, CheckinEvent, Location
from gate_discovery.repository import GateRepository
from gate_discovery.services.gate_engine import GateEngine
from gate_discovery.utils.geo import offset


EVENT_ID = "evt-1"
VENUE_CENTER = (6.927100, 79.861200)
NOW = datetime(2026, 3, 14, 18, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# CHECK-IN FACTORY
# ============================================================================

class CheckinFactory:
    """Builds CheckinEvents with unique ids and wristbands unless told otherwise."""

    def __init__(self, event_id: str = EVENT_ID):
        self.event_id = event_id
        self._seq = 0

    def make(
        self,
        point: Optional[Tuple[float, float]],
        at: datetime = NOW,
        category: str = "GA",
        wristband: Optional[str] = None,
        accuracy: Optional[float] = 5.0,
        status: str = "success",
        wifi: Sequence[str] = (),
        ble: Sequence[str] = (),
        latency_ms: Optional[float] = 200.0,
    ) -> CheckinEvent:
        self._seq += 1
        location = None
        if point is not None:
            location = Location(latitude=point[0], longitude=point[1], accuracy_m=accuracy)
        return CheckinEvent(
            id=f"chk-{self._seq:05d}",
            wristband_id=wristband or f"wb-{self._seq:05d}",
            event_id=self.event_id,
            timestamp=at,
            category=category,
            location=location,
            wifi_ssids=list(wifi),
            ble_beacons=list(ble),
            status=status,
            processing_time_ms=latency_ms,
        )

    def around(
        self,
        center: Tuple[float, float],
        count: int,
        radius_m: float,
        start: datetime,
        spacing: timedelta = timedelta(minutes=1),
        category: str = "GA",
        seed: int = 7,
        **kwargs,
    ) -> List[CheckinEvent]:
        """`count` scans scattered uniformly inside a disc of radius_m around center."""
        rng = random.Random(seed)
        scans = []
        for i in range(count):
            r = radius_m * math.sqrt(rng.random())
            theta = rng.uniform(0, 2 * math.pi)
            point = offset(center, r * math.cos(theta), r * math.sin(theta))
            scans.append(self.make(point, at=start + i * spacing, category=category, **kwargs))
        return scans


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def factory() -> CheckinFactory:
    return CheckinFactory()


@pytest.fixture
def thresholds() -> AdaptiveThresholds:
    """Tuning used by the worked examples: epsilon 20m, promotion at 50 samples / 0.8."""
    return AdaptiveThresholds(
        event_id=EVENT_ID,
        duplicate_distance_meters=20.0,
        min_samples=3,
        promotion_sample_size=50,
        confidence_threshold=0.8,
        velocity_threshold_ms=5000,
    )


@pytest.fixture
def db() -> Iterable[DatabaseManager]:
    manager = DatabaseManager("sqlite://")
    manager.init_schema()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def repo() -> GateRepository:
    return GateRepository()


@pytest.fixture
def engine(db, repo) -> GateEngine:
    return GateEngine(
        db=db,
        repository=repo,
        learning_window_hours=6,
        cycle_timeout_seconds=60,
        idle_archive_hours=12,
        auto_approve_confidence=0.85,
        similarity_floor=0.5,
    )


@pytest.fixture
def configured_engine(engine, thresholds) -> GateEngine:
    """Engine with EVENT_ID already set up using the `thresholds` fixture values."""
    engine.setup_event(EVENT_ID, "outdoor", {
        "duplicate_distance_meters": thresholds.duplicate_distance_meters,
        "min_samples": thresholds.min_samples,
        "promotion_sample_size": thresholds.promotion_sample_size,
        "confidence_threshold": thresholds.confidence_threshold,
    })
    return engine


def store_checkins(db: DatabaseManager, repo: GateRepository, checkins: Iterable[CheckinEvent]) -> None:
    with db.get_connection() as conn:
        repo.add_checkins(conn, checkins)
