"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

OPERATIONS_TOTAL = "complaint_operations_total"
OPERATION_DURATION = "complaint_operation_duration_seconds"
TRANSITIONS_TOTAL = "complaint_transitions_total"
WRITE_CONFLICTS_TOTAL = "complaint_write_conflicts_total"
NOTIFICATION_FAILURES_TOTAL = "complaint_notification_failures_total"
WORKLOAD_FAILURES_TOTAL = "staff_workload_update_failures_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=OPERATIONS_TOTAL,
        metric_type="counter",
        description="Complaint lifecycle operations by outcome.",
        label_names=("operation", "outcome"),
    ),
    MetricDefinition(
        name=OPERATION_DURATION,
        metric_type="distribution",
        description="Duration of complaint lifecycle operations in seconds.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name=TRANSITIONS_TOTAL,
        metric_type="counter",
        description="Applied complaint status transitions.",
        label_names=("from_status", "to_status"),
    ),
    MetricDefinition(
        name=WRITE_CONFLICTS_TOTAL,
        metric_type="counter",
        description="Optimistic concurrency conflicts detected on save.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name=NOTIFICATION_FAILURES_TOTAL,
        metric_type="counter",
        description="Real-time notifications that could not be delivered.",
        label_names=("event",),
    ),
    MetricDefinition(
        name=WORKLOAD_FAILURES_TOTAL,
        metric_type="counter",
        description="Staff workload adjustments that failed.",
    ),
)
