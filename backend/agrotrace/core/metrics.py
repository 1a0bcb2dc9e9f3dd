"""Prometheus metrics for the audit trail."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

audit_events_recorded_total = Counter(
    "agrotrace_audit_events_recorded_total",
    "Audit events appended to the ledger",
    labelnames=["operation", "module"],
)

audit_chain_verifications_total = Counter(
    "agrotrace_audit_chain_verifications_total",
    "Hash chain verifications by outcome",
    labelnames=["outcome"],
)

audit_dispatch_dropped_total = Counter(
    "agrotrace_audit_dispatch_dropped_total",
    "Post-commit audit intents dropped without being recorded",
    labelnames=["reason"],
)

audit_recording_duration_seconds = Histogram(
    "agrotrace_audit_recording_duration_seconds",
    "Time spent recording one audit event, lock wait included",
    labelnames=["chained"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


def render_metrics() -> tuple[bytes, str]:
    """Return the Prometheus exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
