"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_adapter_enabled_gauge = Gauge(
    "importer_stripe_adapter_enabled_total",
    "Whether the payment CSV importer adapter is enabled (1) or disabled (0).",
)
_rows_counter = Counter(
    "importer_stripe_rows_total",
    "Payment export rows handled by outcome.",
    ["outcome"],
)
_donations_counter = Counter(
    "importer_stripe_donations_total",
    "Donations created by the payment import, by status.",
    ["status"],
)
_batch_counter = Counter(
    "importer_stripe_batches_total",
    "Payment import batches by status.",
    ["status"],
)
_batch_duration = Histogram(
    "importer_stripe_batch_duration_seconds",
    "Duration of payment import batches in seconds.",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)


def record_adapter_status(enabled: bool) -> None:
    """Set the adapter enabled gauge."""

    _adapter_enabled_gauge.set(1 if enabled else 0)


def record_row_outcome(outcome: Literal["processed", "parse_error", "failed"]) -> None:
    _rows_counter.labels(outcome=outcome).inc()


def record_donation_status(status: str, count: int = 1) -> None:
    if count > 0:
        _donations_counter.labels(status=status).inc(count)


def record_batch(*, status: Literal["success", "failure"], duration_seconds: float) -> None:
    """Capture metrics for a finished payment import batch."""

    _batch_counter.labels(status=status).inc()
    _batch_duration.observe(duration_seconds)
