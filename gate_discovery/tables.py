# =======================================================================================
# gate_discovery/tables.py - Database Schema
# =======================================================================================
from sqlalchemy import (
    JSON, Column, DateTime, Float, Index, Integer, MetaData, PrimaryKeyConstraint, String, Table, Text,
)

metadata = MetaData()

# Written by the check-in client; the engine only reads it.
checkin_events = Table(
    "checkin_events", metadata,
    Column("id", String(64), primary_key=True),
    Column("wristband_id", String(64), nullable=False),
    Column("event_id", String(64), nullable=False),
    Column("series_id", String(64)),
    Column("timestamp", DateTime, nullable=False),
    Column("category", String(64), nullable=False),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("accuracy_m", Float),
    Column("wifi_ssids", JSON),
    Column("ble_beacons", JSON),
    Column("status", String(16), nullable=False, default="success"),
    Column("processing_time_ms", Float),
    Index("ix_checkin_events_event_ts", "event_id", "timestamp"),
)

gates = Table(
    "gates", metadata,
    Column("id", String(64), primary_key=True),
    Column("event_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("status", String(16), nullable=False),
    Column("latitude", Float),             # NULL for virtual gates
    Column("longitude", Float),
    Column("spatial_variance", Float, nullable=False, default=0.0),
    Column("derivation_method", String(16), nullable=False),
    Column("virtual_category", String(64)),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("health_score", Float, nullable=False, default=100.0),
    Column("sample_count", Integer, nullable=False, default=0),
    Column("wifi_ssids", JSON),
    Column("ble_beacons", JSON),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("last_seen_at", DateTime),
    Column("archived_at", DateTime),
    Column("archive_reason", String(255)),
    Column("merged_into", String(64)),
)

gate_bindings = Table(
    "gate_bindings", metadata,
    Column("gate_id", String(64), nullable=False),
    Column("category", String(64), nullable=False),
    Column("event_id", String(64), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("sample_count", Integer, nullable=False, default=0),
    Column("violation_count", Integer, nullable=False, default=0),
    Column("bound_at", DateTime, nullable=False),
    Column("promoted_at", DateTime),
    Column("last_violation_at", DateTime),
    Column("updated_at", DateTime, nullable=False),
    PrimaryKeyConstraint("gate_id", "category"),
)

checkin_gate_assignments = Table(
    "checkin_gate_assignments", metadata,
    Column("checkin_id", String(64), primary_key=True),
    Column("event_id", String(64), nullable=False, index=True),
    Column("gate_id", String(64), nullable=False, index=True),
    Column("assigned_at", DateTime, nullable=False),
)

adaptive_thresholds = Table(
    "adaptive_thresholds", metadata,
    Column("event_id", String(64), primary_key=True),
    Column("venue_type", String(16), nullable=False),
    Column("duplicate_distance_meters", Float, nullable=False),
    Column("min_samples", Integer, nullable=False),
    Column("promotion_sample_size", Integer, nullable=False),
    Column("confidence_threshold", Float, nullable=False),
    Column("velocity_threshold_ms", Integer, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("last_optimization_at", DateTime),
    Column("baseline_accuracy", Float),
)

threshold_history = Table(
    "threshold_history", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, index=True),
    Column("parameter", String(64), nullable=False),
    Column("old_value", Float, nullable=False),
    Column("new_value", Float, nullable=False),
    Column("reason", Text, nullable=False),
    Column("performance_improvement", Float, nullable=False, default=0.0),
    Column("timestamp", DateTime, nullable=False),
)

merge_suggestions = Table(
    "merge_suggestions", metadata,
    Column("id", String(64), primary_key=True),
    Column("event_id", String(64), nullable=False, index=True),
    Column("primary_gate_id", String(64), nullable=False),
    Column("secondary_gate_id", String(64), nullable=False),
    Column("confidence_score", Float, nullable=False),
    Column("distance_meters", Float, nullable=False),
    Column("traffic_similarity", Float, nullable=False),
    Column("reasoning", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("decided_by", String(16)),
    Column("created_at", DateTime, nullable=False),
    Column("resolved_at", DateTime),
)

# Append-only audit log
decision_log = Table(
    "decision_log", metadata,
    Column("id", String(64), primary_key=True),
    Column("event_id", String(64), nullable=False),
    Column("decision", String(16), nullable=False),
    Column("gate_id", String(64)),
    Column("category", String(64)),
    Column("factors", JSON, nullable=False),
    Column("primary_reason", Text, nullable=False),
    Column("confidence_breakdown", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Index("ix_decision_log_event_created", "event_id", "created_at"),
)
