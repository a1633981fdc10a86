"""Tests for the test orchestrator.

Servers are real subprocesses, browsers and pages are in-process fakes, and
every event travels through the real client bridge.
"""

from pathlib import Path

import pytest

from rtbench import exporter
from rtbench.aggregate import CLIENT_CPU, SERVER_CPU, TIME_TO_FIRST, TIME_TO_LAST
from rtbench.config import HarnessSettings
from rtbench.error import (
    AdapterError,
    BridgeDisconnect,
    ClientConnectTimeout,
    ConfigurationError,
    SubjectCrashed,
)
from rtbench.monitor import ResourceMonitor
from rtbench.runner import RunPhase, TestRunner
from rtbench.supervisor import SERVER_SUBJECT_ID, ProcessSupervisor
from rtbench.types import MessageSpec, RunStatus, SendMode

from tests.conftest import FakeAdapter, FakeLauncher


def make_runner(settings: HarnessSettings, launcher: FakeLauncher, **adapter_options) -> tuple[TestRunner, dict]:
    """Build a runner whose adapter factory hands out ``FakeAdapter``s.

    Returns the runner and a dict of the adapters created, by protocol name.
    """
    adapters: dict[str, FakeAdapter] = {}

    def factory(name: str, settings: HarnessSettings) -> FakeAdapter:
        adapter = FakeAdapter(settings, launcher, protocol=name, **adapter_options)
        adapters[name] = adapter
        return adapter

    runner = TestRunner(
        settings,
        supervisor=ProcessSupervisor(settings, launcher=launcher),
        monitor=ResourceMonitor(),
        adapter_factory=factory,
    )
    return runner, adapters


def assert_all_released(runner: TestRunner, launcher: FakeLauncher) -> None:
    assert runner.supervisor.subjects == []
    for browser in launcher.browsers:
        assert browser.close_count == 1
    for page in launcher.all_pages():
        assert page.close_count <= 1
    ctx = runner.last_context
    if ctx is not None and ctx.server is not None:
        assert ctx.server.released
        assert ctx.server.process.returncode is not None


@pytest.mark.asyncio
class TestRunOnce:
    """Single runs through the full state machine."""

    async def test_complete_run(self, settings, launcher, make_config):
        """Every client receives every message and the run is complete."""
        runner, adapters = make_runner(settings, launcher)
        config = make_config(clients=4, messages=10)

        async with runner:
            result = await runner.run_once(config)

        assert result.status is RunStatus.COMPLETE
        assert result.send_started_at is not None
        assert sorted(result.per_client_latency) == [f"client-{i}" for i in range(4)]
        for latency in result.per_client_latency.values():
            assert latency.received_count == 10
            assert not latency.incomplete
            assert latency.first_received_at <= latency.last_received_at
            assert latency.first_received_at >= result.send_started_at
        assert result.usage_series[SERVER_SUBJECT_ID]
        assert adapters["fake"].calls == [MessageSpec(count=10, payload_size=16)]
        assert adapters["fake"].teardowns == 1

    async def test_phase_sequence(self, settings, launcher, make_config):
        """A successful run visits every phase once, in order."""
        runner, _ = make_runner(settings, launcher)

        async with runner:
            await runner.run_once(make_config())

        assert runner.last_context.history == [
            RunPhase.IDLE,
            RunPhase.PROVISIONING,
            RunPhase.WARMING_CLIENTS,
            RunPhase.SENDING,
            RunPhase.DRAINING,
            RunPhase.AGGREGATING,
            RunPhase.DONE,
        ]

    async def test_subjects_released_after_success(self, settings, launcher, make_config):
        """No subject outlives its run."""
        runner, _ = make_runner(settings, launcher)

        async with runner:
            await runner.run_once(make_config(clients=8))
            assert_all_released(runner, launcher)

    async def test_clients_split_across_browsers(self, settings, launcher, make_config):
        """Twelve clients at six per browser need exactly two browsers."""
        runner, _ = make_runner(settings, launcher)

        async with runner:
            await runner.run_once(make_config(clients=12))

        assert len(launcher.browsers) == 2
        assert all(len(browser.pages) <= 6 for browser in launcher.browsers)

    async def test_per_message_send_mode(self, settings, launcher, make_config):
        """A per-message adapter is triggered once per message, in order."""
        runner, adapters = make_runner(settings, launcher, send_mode=SendMode.PER_MESSAGE)

        async with runner:
            result = await runner.run_once(make_config(messages=5))

        assert result.is_complete
        assert adapters["fake"].calls == [
            MessageSpec(count=1, payload_size=16, start_seq=seq) for seq in range(1, 6)
        ]


@pytest.mark.asyncio
class TestFairness:
    """Every protocol sees the same trigger sequence for the same workload."""

    async def test_identical_trigger_sequence(self, settings, launcher, make_config):
        """Two protocols with the same capabilities receive identical calls."""
        runner, adapters = make_runner(settings, launcher)

        async with runner:
            await runner.run_once(make_config(protocol="alpha", clients=3, messages=25))
            await runner.run_once(make_config(protocol="beta", clients=3, messages=25))

        assert adapters["alpha"].calls == adapters["beta"].calls
        assert len(adapters["alpha"].calls) == 1

    async def test_same_partitioning_for_every_protocol(self, settings, launcher, make_config):
        """Browser partitioning depends on the workload, not the protocol name."""
        runner, _ = make_runner(settings, launcher)

        async with runner:
            await runner.run_once(make_config(protocol="alpha", clients=9))
            alpha_browsers = [len(b.pages) for b in launcher.browsers]
            launcher.browsers.clear()
            await runner.run_once(make_config(protocol="beta", clients=9))
            beta_browsers = [len(b.pages) for b in launcher.browsers]

        assert alpha_browsers == beta_browsers == [6, 3]


@pytest.mark.asyncio
class TestAbort:
    """Failures abort the run and still release every subject."""

    async def test_adapter_failure_during_sending(self, settings, launcher, make_config):
        """A trigger failure surfaces with the sending phase and tears down."""

        def fail(server, spec):
            raise AdapterError("server refused trigger")

        runner, adapters = make_runner(settings, launcher, on_trigger=fail)

        async with runner:
            with pytest.raises(AdapterError) as exc_info:
                await runner.run_once(make_config(clients=7))
            assert_all_released(runner, launcher)

        assert exc_info.value.phase is RunPhase.SENDING
        assert runner.last_context.history[-1] is RunPhase.ABORTING
        assert adapters["fake"].teardowns == 1
        for page in launcher.all_pages():
            assert page.close_count == 1

    async def test_unexpected_trigger_exception_becomes_adapter_error(
        self, settings, launcher, make_config
    ):
        """Non-harness exceptions from an adapter are reported as adapter errors."""

        def explode(server, spec):
            raise RuntimeError("socket exploded")

        runner, _ = make_runner(settings, launcher, on_trigger=explode)

        async with runner:
            with pytest.raises(AdapterError, match="socket exploded") as exc_info:
                await runner.run_once(make_config())

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    async def test_server_ready_exception_becomes_adapter_error(self, settings, launcher, make_config):
        """A raw exception while readying the server aborts provisioning as an adapter error."""

        class SlowGateway(FakeAdapter):
            async def server_ready(self, server):
                raise TimeoutError()

        runner, _ = make_runner(settings, launcher)
        adapter = SlowGateway(settings, launcher)

        async with runner:
            with pytest.raises(AdapterError) as exc_info:
                await runner.run_once(make_config(), adapter=adapter)
            assert_all_released(runner, launcher)

        assert exc_info.value.phase is RunPhase.PROVISIONING
        assert isinstance(exc_info.value.__cause__, TimeoutError)
        assert adapter.teardowns == 1
        assert adapter.calls == []

    async def test_connect_timeout(self, settings, launcher, make_config):
        """Clients that never connect abort the run while warming up."""
        settings.connect_timeout = 0.3
        launcher.max_connected = 2
        runner, adapters = make_runner(settings, launcher)

        async with runner:
            with pytest.raises(ClientConnectTimeout) as exc_info:
                await runner.run_once(make_config(clients=4))
            assert_all_released(runner, launcher)

        assert exc_info.value.phase is RunPhase.WARMING_CLIENTS
        assert "2/4" in exc_info.value.reason
        assert adapters["fake"].calls == []

    async def test_client_crash_is_bridge_disconnect(self, settings, launcher, make_config):
        """A page crashing before completion fails the run."""

        def crash_first_page(server, spec):
            page = launcher.open_pages()[0]
            page.emit("crash", page)

        runner, _ = make_runner(settings, launcher, on_trigger=crash_first_page)

        async with runner:
            with pytest.raises(BridgeDisconnect) as exc_info:
                await runner.run_once(make_config(clients=3))
            assert_all_released(runner, launcher)

        assert exc_info.value.client_id == "client-0"
        assert exc_info.value.phase in (RunPhase.SENDING, RunPhase.DRAINING)

    async def test_server_crash(self, settings, launcher, make_config):
        """The server exiting mid-run fails the run with the server's exit."""

        def kill_server(server, spec):
            server.process.kill()

        runner, _ = make_runner(
            settings, launcher, on_trigger=kill_server, skip_clients=frozenset(range(4))
        )

        async with runner:
            with pytest.raises(SubjectCrashed) as exc_info:
                await runner.run_once(make_config(clients=4))
            assert_all_released(runner, launcher)

        assert exc_info.value.phase in (RunPhase.SENDING, RunPhase.DRAINING)
        assert SERVER_SUBJECT_ID in exc_info.value.reason

    async def test_unknown_protocol_rejected_before_provisioning(self, settings, launcher, make_config):
        """An unknown protocol never starts a subject."""
        runner = TestRunner(settings, supervisor=ProcessSupervisor(settings, launcher=launcher))

        async with runner:
            with pytest.raises(ConfigurationError):
                await runner.run_once(make_config(protocol="carrier-pigeon"))

        assert runner.last_context is None
        assert launcher.browsers == []

    async def test_too_many_browsers_rejected(self, settings, launcher, make_config):
        """A workload needing more browsers than allowed is a configuration error."""
        settings.max_browsers = 2
        runner, _ = make_runner(settings, launcher)

        async with runner:
            with pytest.raises(ConfigurationError):
                await runner.run_configuration(make_config(clients=13))

        assert launcher.browsers == []


@pytest.mark.asyncio
class TestDrain:
    """Drain timeouts produce incomplete runs rather than errors."""

    async def test_drain_timeout_marks_run_incomplete(self, settings, launcher, make_config):
        """A client that misses messages is flagged and the run is incomplete."""
        settings.drain_timeout = 0.3
        runner, _ = make_runner(settings, launcher, skip_clients=frozenset({1}))

        async with runner:
            result = await runner.run_once(make_config(clients=3))
            assert_all_released(runner, launcher)

        assert result.status is RunStatus.INCOMPLETE
        assert "drain_timeout" in result.incomplete_reason
        assert result.incomplete_clients() == ["client-1"]
        assert result.per_client_latency["client-1"].first_received_at is None
        assert result.per_client_latency["client-0"].received_count == 10

    async def test_duplicate_and_out_of_range_messages_dropped(self, settings, launcher, make_config):
        """Replayed or out-of-range sequence numbers are not counted."""

        def replay(server, spec):
            for page in launcher.open_pages():
                page.report(type="message", seq=0)
                page.report(type="message", seq=1)
                page.report(type="message", seq=1)
                page.report(type="message", seq=99)

        runner, _ = make_runner(settings, launcher, on_trigger=replay)

        async with runner:
            result = await runner.run_once(make_config(clients=2, messages=10))

        assert result.is_complete
        for latency in result.per_client_latency.values():
            assert latency.received_count == 10
        assert runner.last_context.dropped_messages == 2 * 4


@pytest.mark.asyncio
class TestRunConfiguration:
    """Repetitions, aggregation and export."""

    async def test_failure_stops_the_set(self, settings, launcher, make_config):
        """Without continue_on_failure the first failure is raised and nothing is exported."""

        def fail(server, spec):
            raise AdapterError("nope")

        runner, _ = make_runner(settings, launcher, on_trigger=fail)
        config = make_config(repetitions=3)

        async with runner:
            with pytest.raises(AdapterError):
                await runner.run_configuration(config)

        assert not config.output_path.exists()

    async def test_continue_on_failure_records_failures(self, settings, launcher, make_config):
        """Failed repetitions are recorded and the remaining ones still run."""
        settings.continue_on_failure = True
        attempts = []

        def fail_first(server, spec):
            attempts.append(spec)
            if len(attempts) == 1:
                raise AdapterError("first trigger refused")

        runner, _ = make_runner(settings, launcher, on_trigger=fail_first)
        config = make_config(repetitions=3)

        async with runner:
            result = await runner.run_configuration(config)

        assert len(result.runs) == 2
        assert [run.repetition for run in result.runs] == [1, 2]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.repetition == 0
        assert failure.code == "adapter"
        assert failure.phase == "sending"
        assert exporter.load(config.output_path) == result

    async def test_full_workload(self, settings, launcher, make_config, tmp_path: Path):
        """100 clients, 1000 messages, 10 repetitions: complete, aggregated and exported."""
        runner, adapters = make_runner(settings, launcher)
        config = make_config(
            protocol="websocket",
            clients=100,
            messages=1000,
            repetitions=10,
            output_path=tmp_path / "websocket.json",
        )

        async with runner:
            result = await runner.run_configuration(config)
            assert runner.supervisor.subjects == []

        assert len(result.runs) == 10
        assert result.failures == ()
        assert result.incomplete_runs == 0
        for run in result.runs:
            assert len(run.per_client_latency) == 100
            assert all(lat.received_count == 1000 for lat in run.per_client_latency.values())
            assert run.usage_series[SERVER_SUBJECT_ID]
        assert len(adapters["websocket"].calls) == 10

        assert result.metrics[TIME_TO_FIRST].count == 10
        assert result.metrics[TIME_TO_LAST].mean >= result.metrics[TIME_TO_FIRST].mean
        assert SERVER_CPU in result.metrics
        assert CLIENT_CPU in result.metrics
        assert exporter.load(config.output_path) == result
