"""
Prometheus Metrics for the Manifest Service

Exposes cycle, step and store metrics for monitoring reconciliation health.
"""

from __future__ import annotations

import time
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from . import __version__


class CycleMetrics:
    """Prometheus metrics collector for reconciliation cycles."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.service_info = Info(
            "manifest_service_info",
            "Manifest service information",
            registry=self.registry,
        )

        self.cycles_total = Counter(
            "manifest_cycles_total",
            "Total number of reconciliation cycles",
            ["status"],
            registry=self.registry,
        )

        self.cycle_running = Gauge(
            "manifest_cycle_running",
            "Whether a reconciliation cycle is currently running",
            registry=self.registry,
        )

        self.cycle_last_success_timestamp = Gauge(
            "manifest_cycle_last_success_timestamp",
            "Timestamp of last completed reconciliation cycle",
            registry=self.registry,
        )

        self.step_duration_seconds = Histogram(
            "manifest_step_duration_seconds",
            "Cycle step duration in seconds",
            ["step"],
            registry=self.registry,
        )

        self.step_items_total = Counter(
            "manifest_step_items_total",
            "Items handled by cycle steps",
            ["step", "outcome"],
            registry=self.registry,
        )

        self.store_rows = Gauge(
            "manifest_store_rows",
            "Rows in the manifest store",
            ["table", "state"],
            registry=self.registry,
        )

        self.service_info.info({"version": __version__, "service": "manifest-service"})

    def cycle_started(self) -> None:
        self.cycle_running.set(1)

    def cycle_finished(self, status: str) -> None:
        self.cycle_running.set(0)
        self.cycles_total.labels(status=status).inc()
        if status == "completed":
            self.cycle_last_success_timestamp.set(time.time())

    def record_step(self, step: str, duration: float, processed: int, failed: int, status: str) -> None:
        """Record step duration and item outcomes."""
        self.step_duration_seconds.labels(step=step).observe(duration)
        if processed:
            self.step_items_total.labels(step=step, outcome="processed").inc(processed)
        if failed:
            self.step_items_total.labels(step=step, outcome="failed").inc(failed)
        if status == "failed":
            self.step_items_total.labels(step=step, outcome="step_failed").inc()

    def set_store_counts(self, table: str, counts: dict[str, int]) -> None:
        for state, value in counts.items():
            self.store_rows.labels(table=table, state=state).set(value)

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry).decode("utf-8")

    def serve(self, port: int) -> None:
        """Expose the registry on ``port`` from a background thread."""
        start_http_server(port, registry=self.registry)
