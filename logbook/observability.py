"""Prometheus metrics shared by the API and the note pipeline."""

from __future__ import annotations

import re

from prometheus_client import REGISTRY, Counter, Histogram


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "logbook_requests_total",
    "Total HTTP requests processed by the backend",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "logbook_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)
AI_CALLS = _get_or_create_metric(
    Counter,
    "logbook_ai_calls_total",
    "Remote AI calls partitioned by pipeline stage and outcome",
    ("stage", "outcome"),
)
AI_FALLBACKS = _get_or_create_metric(
    Counter,
    "logbook_ai_fallbacks_total",
    "Pipeline stages that fell back to pass-through or keyword matching",
    ("stage", "reason"),
)

_ID_SEGMENT = re.compile(r"/[0-9a-fA-F-]{16,}(?=/|$)")


def normalise_path_for_metrics(path: str) -> str:
    """Collapse identifier segments so metric label cardinality stays bounded."""

    return _ID_SEGMENT.sub("/{id}", path)


def record_ai_call(stage: str, outcome: str) -> None:
    AI_CALLS.labels(stage, outcome).inc()


def record_fallback(stage: str, reason: str) -> None:
    AI_FALLBACKS.labels(stage, reason).inc()


__all__ = [
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "AI_CALLS",
    "AI_FALLBACKS",
    "normalise_path_for_metrics",
    "record_ai_call",
    "record_fallback",
]
