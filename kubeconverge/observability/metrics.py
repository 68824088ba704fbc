"""Prometheus metrics for kubeconverge."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

resource_operations_total = Counter(
    "kubeconverge_resource_operations_total",
    "Resource operations by kind, operation and outcome",
    ["kind", "operation", "outcome"],
)

provider_retries_total = Counter(
    "kubeconverge_provider_retries_total",
    "Provider calls retried after a transient failure",
    ["kind"],
)

runs_total = Counter(
    "kubeconverge_runs_total",
    "Completed runs by command and final status",
    ["command", "status"],
)

run_duration_seconds = Histogram(
    "kubeconverge_run_duration_seconds",
    "Wall-clock duration of apply/destroy runs",
    ["command"],
    buckets=(0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800),
)
