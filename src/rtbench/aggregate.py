"""Statistical reduction of run results.

Each run is first reduced to a flat set of metrics; the metrics of all
repetitions are then summarised by mean and sample variance. Incomplete runs
are left out of the statistics unless explicitly included, but they are
always kept in the aggregate's run list.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from typing import Iterable, Sequence

from rtbench.config import TestConfiguration
from rtbench.supervisor import SERVER_SUBJECT_ID
from rtbench.types import (
    AggregateResult,
    MetricSummary,
    RunFailure,
    RunResult,
    UsageSample,
)

logger = logging.getLogger(__name__)

TIME_TO_FIRST = "time_to_first_message_ms"
TIME_TO_LAST = "time_to_last_message_ms"
LATENCY_SPREAD = "latency_spread_ms"
SERVER_CPU = "server_cpu_percent"
SERVER_MEMORY = "server_memory_bytes"
CLIENT_CPU = "client_cpu_percent"
CLIENT_MEMORY = "client_memory_bytes"


def _mean_cpu(series: Sequence[UsageSample]) -> float:
    return statistics.fmean(s.cpu_percentage for s in series)


def _peak_memory(series: Sequence[UsageSample]) -> int:
    return max(s.memory_bytes for s in series)


def summarize_run(run: RunResult) -> dict[str, float]:
    """Reduce one run to its metrics.

    Latency metrics are relative to ``send_started_at`` and averaged over
    the clients that received anything. Server usage is the mean CPU and peak
    memory of the server series; client usage sums the per-browser figures.
    Metrics without data are omitted.
    """
    metrics: dict[str, float] = {}

    start = run.send_started_at
    received = [
        lat for lat in run.per_client_latency.values()
        if lat.first_received_at is not None and lat.last_received_at is not None
    ]
    if start is not None and received:
        metrics[TIME_TO_FIRST] = statistics.fmean(lat.first_received_at - start for lat in received)
        metrics[TIME_TO_LAST] = statistics.fmean(lat.last_received_at - start for lat in received)
        metrics[LATENCY_SPREAD] = (
            max(lat.last_received_at for lat in received)
            - min(lat.first_received_at for lat in received)
        )

    server = run.usage_series.get(SERVER_SUBJECT_ID)
    if server:
        metrics[SERVER_CPU] = _mean_cpu(server)
        metrics[SERVER_MEMORY] = float(_peak_memory(server))

    browsers = [
        series for sid, series in run.usage_series.items()
        if sid != SERVER_SUBJECT_ID and series
    ]
    if browsers:
        metrics[CLIENT_CPU] = sum(_mean_cpu(series) for series in browsers)
        metrics[CLIENT_MEMORY] = float(sum(_peak_memory(series) for series in browsers))

    return metrics


def summarize(values: Sequence[float]) -> MetricSummary:
    """Mean and sample variance (0.0 for fewer than two values)."""
    variance = statistics.variance(values) if len(values) > 1 else 0.0
    return MetricSummary(mean=statistics.fmean(values), variance=variance, count=len(values))


def aggregate(
    config: TestConfiguration,
    runs: Iterable[RunResult],
    failures: Iterable[RunFailure] = (),
    include_incomplete: bool = False,
) -> AggregateResult:
    """Build the aggregate result of one configuration."""
    runs = tuple(runs)
    collected: dict[str, list[float]] = defaultdict(list)

    for run in runs:
        if not run.is_complete and not include_incomplete:
            logger.info(
                "Excluding incomplete repetition %d from statistics: %s",
                run.repetition, run.incomplete_reason,
            )
            continue
        for name, value in summarize_run(run).items():
            collected[name].append(value)

    metrics = {name: summarize(values) for name, values in sorted(collected.items())}
    return AggregateResult(config=config, runs=runs, metrics=metrics, failures=tuple(failures))
