"""Prometheus metrics for pipeline runs.

Counters are keyed by pipeline and run stage; the awaiting gauge is refreshed by
the timeout sweeper so a growing backlog of suspended runs is visible without
scanning the run store.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Protocol

from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

LOG = logging.getLogger(__name__)


class MetricsClient(Protocol):
    """Interface for emitting pipeline metrics."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...

    def set_gauge(self, name: str, value: float, **labels: str) -> None: ...


class PrometheusMetrics(MetricsClient):
    """Prometheus-backed metrics client."""

    _LATENCY = Histogram(
        "docflow_stage_latency_seconds",
        "Pipeline stage latency in seconds",
        ["pipeline", "name"],
        buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
    )
    _RUN_EVENTS = Counter(
        "docflow_run_events_total",
        "Pipeline run events by stage",
        ["pipeline", "stage", "name"],
    )
    _AWAITING = Gauge(
        "docflow_awaiting_runs",
        "Runs suspended waiting for an OCR notification",
        ["pipeline"],
    )
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        PrometheusMetrics._LATENCY.labels(pipeline=labels.get("pipeline", "unknown"), name=name).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        PrometheusMetrics._RUN_EVENTS.labels(
            pipeline=labels.get("pipeline", "unknown"),
            stage=labels.get("stage", "unknown"),
            name=name,
        ).inc(amount)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        if name != "awaiting_runs":
            LOG.debug("Unknown gauge ignored: %s", name)
            return
        PrometheusMetrics._AWAITING.labels(pipeline=labels.get("pipeline", "unknown")).set(value)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE

    @classmethod
    def instrument_app(cls, app: Any) -> "PrometheusMetrics":
        """Attach the /metrics endpoint to the FastAPI app."""
        metrics = cls.default()
        if getattr(app.state, "_prometheus_instrumented", False):
            return metrics

        @app.get("/metrics", include_in_schema=False)
        async def _metrics_endpoint():  # pragma: no cover - passthrough
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

        app.state._prometheus_instrumented = True
        return metrics


class NullMetrics(MetricsClient):
    """No-op metrics implementation."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Gauge ignored: %s=%s labels=%s", name, value, labels)


__all__ = ["MetricsClient", "PrometheusMetrics", "NullMetrics"]
