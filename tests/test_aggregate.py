"""Tests for run summarisation and aggregation."""

import pytest

from rtbench.aggregate import (
    CLIENT_CPU,
    CLIENT_MEMORY,
    LATENCY_SPREAD,
    SERVER_CPU,
    SERVER_MEMORY,
    TIME_TO_FIRST,
    TIME_TO_LAST,
    aggregate,
    summarize,
    summarize_run,
)
from rtbench.types import ClientLatency, RunFailure, RunResult, RunStatus, UsageSample


def make_run(config, repetition=0, offset=0.0, status=RunStatus.COMPLETE, usage=None):
    start = 1000.0
    latency = {
        "client-0": ClientLatency(start + 10 + offset, start + 50 + offset, received_count=5),
        "client-1": ClientLatency(start + 20 + offset, start + 70 + offset, received_count=5),
        "client-2": ClientLatency(None, None, incomplete=status is RunStatus.INCOMPLETE),
    }
    return RunResult(
        config=config,
        repetition=repetition,
        send_started_at=start,
        per_client_latency=latency,
        usage_series=usage or {},
        status=status,
        incomplete_reason="drain timeout" if status is RunStatus.INCOMPLETE else None,
    )


class TestSummarizeRun:
    """Per-run metrics."""

    def test_latency_metrics(self, make_config):
        """Latencies are relative to the send start and skip silent clients."""
        metrics = summarize_run(make_run(make_config()))
        assert metrics[TIME_TO_FIRST] == pytest.approx(15.0)
        assert metrics[TIME_TO_LAST] == pytest.approx(60.0)
        assert metrics[LATENCY_SPREAD] == pytest.approx(60.0)

    def test_usage_metrics(self, make_config):
        """Server: mean CPU and peak memory. Clients: summed over browsers."""
        usage = {
            "server": (
                UsageSample("server", 1.0, 10.0, 100),
                UsageSample("server", 2.0, 30.0, 300),
            ),
            "browser-0": (
                UsageSample("browser-0", 1.0, 5.0, 50),
                UsageSample("browser-0", 2.0, 15.0, 70),
            ),
            "browser-1": (UsageSample("browser-1", 1.0, 20.0, 40),),
        }
        metrics = summarize_run(make_run(make_config(), usage=usage))
        assert metrics[SERVER_CPU] == pytest.approx(20.0)
        assert metrics[SERVER_MEMORY] == 300
        assert metrics[CLIENT_CPU] == pytest.approx(30.0)
        assert metrics[CLIENT_MEMORY] == 110

    def test_no_data(self, make_config):
        """Metrics without data are left out."""
        run = RunResult(
            config=make_config(),
            repetition=0,
            send_started_at=None,
            per_client_latency={},
            usage_series={},
        )
        assert summarize_run(run) == {}


class TestAggregate:
    """Reduction across repetitions."""

    def test_summarize(self):
        """Mean and sample variance."""
        summary = summarize([1.0, 2.0, 3.0, 4.0])
        assert summary.mean == pytest.approx(2.5)
        assert summary.variance == pytest.approx(5 / 3)
        assert summary.count == 4

    def test_single_value_has_zero_variance(self):
        """One repetition has no spread."""
        assert summarize([7.0]).variance == 0.0

    def test_mean_and_variance_across_runs(self, make_config):
        """Each metric is summarised over the repetitions."""
        config = make_config(repetitions=3)
        runs = [make_run(config, i, offset=float(i * 10)) for i in range(3)]

        result = aggregate(config, runs)

        assert result.metrics[TIME_TO_FIRST].mean == pytest.approx(25.0)
        assert result.metrics[TIME_TO_FIRST].variance == pytest.approx(100.0)
        assert result.metrics[TIME_TO_FIRST].count == 3
        assert result.runs == tuple(runs)

    def test_incomplete_runs_excluded(self, make_config):
        """Incomplete runs stay in the result but not in the statistics."""
        config = make_config(repetitions=2)
        runs = [make_run(config, 0), make_run(config, 1, offset=100.0, status=RunStatus.INCOMPLETE)]

        result = aggregate(config, runs)

        assert result.metrics[TIME_TO_FIRST].count == 1
        assert result.metrics[TIME_TO_FIRST].mean == pytest.approx(15.0)
        assert result.incomplete_runs == 1
        assert len(result.runs) == 2

    def test_incomplete_runs_included_on_request(self, make_config):
        """Incomplete runs can be folded into the statistics."""
        config = make_config(repetitions=2)
        runs = [make_run(config, 0), make_run(config, 1, status=RunStatus.INCOMPLETE)]

        result = aggregate(config, runs, include_incomplete=True)

        assert result.metrics[TIME_TO_FIRST].count == 2

    def test_failures_kept(self, make_config):
        """Failed repetitions are carried through."""
        config = make_config(repetitions=2)
        failure = RunFailure(repetition=1, code="adapter", phase="sending", reason="refused")

        result = aggregate(config, [make_run(config, 0)], [failure])

        assert result.failures == (failure,)
