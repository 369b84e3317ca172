"""Prometheus counters and histograms for split runs."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RUNS_TOTAL = Counter(
    "splitter_runs_total",
    "Split runs by terminal outcome",
    labelnames=("outcome",),
)
TILES_TOTAL = Counter("splitter_tiles_total", "Tiles extracted across all runs")
RUN_SECONDS = Histogram(
    "splitter_run_seconds",
    "Wall time of a split run",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
CLEANUP_FAILURES = Counter(
    "splitter_cleanup_failures_total",
    "Scratch artifacts that could not be removed",
    labelnames=("kind",),
)


def observe_run(outcome: str, seconds: float) -> None:
    RUNS_TOTAL.labels(outcome=outcome).inc()
    RUN_SECONDS.observe(seconds)


def increment_tiles(count: int) -> None:
    if count > 0:
        TILES_TOTAL.inc(count)


def increment_cleanup_failure(kind: str) -> None:
    CLEANUP_FAILURES.labels(kind=kind).inc()
