"""Prometheus metrics for the power controller.

Exposes actuation, initialization, detection and queue metrics. The
exporter is started by main when a metrics port is configured.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


actuation_total = Counter(
    "fleetpower_actuations_total",
    "Total power actuation attempts",
    ["action", "backend", "status"],
)

actuation_duration = Histogram(
    "fleetpower_actuation_seconds",
    "Duration of power actuations including parent wake and settle delay",
    ["action", "backend", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

state_changes_total = Counter(
    "fleetpower_state_changes_total",
    "Detected power state changes",
    ["state"],
)

initializations_total = Counter(
    "fleetpower_initializations_total",
    "Capability probe outcomes",
    ["status"],
)

dropped_updates_total = Counter(
    "fleetpower_dropped_updates_total",
    "State-change notifications dropped because the queue was full",
)

nodes_by_state = Gauge(
    "fleetpower_nodes",
    "Nodes per current power state",
    ["state"],
)

loop_duration = Histogram(
    "fleetpower_loop_duration_seconds",
    "Duration of one pass of a controller loop",
    ["loop", "status"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
