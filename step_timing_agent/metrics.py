"""
Prometheus metrics for step timing.
Metrics live on a private registry so host processes that already export their
own metrics are not polluted. Set METRICS_ENABLED=0 to turn every call into a no-op.
"""
from __future__ import annotations

import os
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, write_to_textfile

# Single registry for the process
_REGISTRY: Optional[CollectorRegistry] = None

# Metrics objects
STEPS_STARTED = None
STEPS_COMPLETED = None
ANOMALIES = None
STEP_DURATION = None


def _get_registry() -> CollectorRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = CollectorRegistry()
    return _REGISTRY


def init_metrics():
    global STEPS_STARTED, STEPS_COMPLETED, ANOMALIES, STEP_DURATION
    if STEPS_STARTED is not None:
        return
    reg = _get_registry()
    STEPS_STARTED = Counter("step_timings_started_total", "Steps whose start was recorded", registry=reg)
    STEPS_COMPLETED = Counter("step_timings_completed_total", "Steps whose duration was recorded", registry=reg)
    ANOMALIES = Counter("step_timings_anomalies_total", "Non-fatal timing anomalies by kind", ["kind"], registry=reg)
    STEP_DURATION = Histogram(
        "step_timings_duration_seconds",
        "Duration of completed steps",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        registry=reg,
    )


# Initialize eagerly if enabled
if os.getenv("METRICS_ENABLED", "1").lower() in {"1", "true", "yes", "on"}:
    init_metrics()


def record_step_started():
    if STEPS_STARTED is None:
        return
    STEPS_STARTED.inc()


def record_step_completed(duration_seconds: float):
    if STEPS_COMPLETED is None or STEP_DURATION is None:
        return
    STEPS_COMPLETED.inc()
    STEP_DURATION.observe(max(0.0, duration_seconds))


def record_anomaly(kind: str):
    if ANOMALIES is None:
        return
    ANOMALIES.labels(kind=kind).inc()


def metrics_payload_bytes() -> bytes:
    if _REGISTRY is None:
        return b""
    return generate_latest(_REGISTRY)


def write_metrics_file(path: str):
    """Dump the registry in the node-exporter textfile format"""
    write_to_textfile(path, _get_registry())
