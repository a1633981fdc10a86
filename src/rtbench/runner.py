"""Test orchestrator: drives one configuration end to end.

A run moves through::

    IDLE -> PROVISIONING -> WARMING_CLIENTS -> SENDING -> DRAINING
         -> AGGREGATING -> DONE

and may drop into ABORTING from any non-terminal phase. All per-run state
lives in a ``RunContext`` that is threaded through every phase, so repeated
runs never share mutable state.

The runner suspends only at phase barriers ("all clients connected", "all
clients complete"). Each barrier waits for the first of: its condition, the
run's failure future (subject crash, bridge disconnect), or its timeout.

Subjects are always released before a run is reported, whether it
completed, timed out or failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import suppress
from enum import Enum
from typing import Callable, ClassVar, Self

from rtbench import exporter
from rtbench.adapters import ProtocolAdapter, get_adapter
from rtbench.aggregate import aggregate
from rtbench.bridge import BridgeEvent, ClientBridge, EventKind
from rtbench.config import HarnessSettings, TestConfiguration, validate_against_settings
from rtbench.error import (
    AdapterError,
    BridgeDisconnect,
    ClientConnectTimeout,
    DrainTimeout,
    HarnessError,
    SubjectCrashed,
)
from rtbench.monitor import ResourceMonitor
from rtbench.supervisor import ProcessSupervisor, ServerSubject
from rtbench.types import (
    AggregateResult,
    ClientLatency,
    MessageEvent,
    MessageSpec,
    RunFailure,
    RunResult,
    RunStatus,
    SendMode,
    UsageSample,
    now_ms,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, HarnessSettings], ProtocolAdapter]


class RunPhase(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    WARMING_CLIENTS = "warming_clients"
    SENDING = "sending"
    DRAINING = "draining"
    AGGREGATING = "aggregating"
    DONE = "done"
    ABORTING = "aborting"


# Phases in which a lost client or a dead server invalidates the run.
ACTIVE_PHASES = frozenset({
    RunPhase.PROVISIONING,
    RunPhase.WARMING_CLIENTS,
    RunPhase.SENDING,
    RunPhase.DRAINING,
})


class RunContext:
    """Mutable state of a single run.

    Built up incrementally while the run progresses and frozen into a
    ``RunResult`` by ``freeze``.
    """

    def __init__(self, config: TestConfiguration, repetition: int) -> None:
        self.config = config
        self.repetition = repetition
        self.phase = RunPhase.IDLE
        self.history: list[RunPhase] = [RunPhase.IDLE]

        self.server: ServerSubject | None = None
        self.client_ids: list[str] = []
        self._known: frozenset[str] = frozenset()
        self.send_started_at: float | None = None

        self.connected: set[str] = set()
        self.completed: set[str] = set()
        self.all_connected = asyncio.Event()
        self.all_completed = asyncio.Event()

        self._first: dict[str, float] = {}
        self._last: dict[str, float] = {}
        self._last_seq: dict[str, int] = {}
        self._counts: dict[str, int] = defaultdict(int)
        self._errors: dict[str, int] = defaultdict(int)
        self.dropped_messages = 0

        self.usage: dict[str, list[UsageSample]] = defaultdict(list)
        self.failure: asyncio.Future[HarnessError] = asyncio.get_running_loop().create_future()
        self.incomplete_reason: str | None = None

    def expect_clients(self, client_ids: list[str]) -> None:
        self.client_ids = list(client_ids)
        self._known = frozenset(client_ids)
        if not self.client_ids:
            self.all_connected.set()
            self.all_completed.set()

    def fail(self, error: HarnessError) -> None:
        """Record the first run-level failure; later ones are only logged."""
        if self.failure.done():
            logger.debug("Additional failure after abort: %s", error)
            return
        error.with_phase(self.phase)
        logger.error("Run %d failing: %s", self.repetition, error)
        self.failure.set_result(error)

    def raise_if_failed(self) -> None:
        if self.failure.done():
            raise self.failure.result()

    def record_usage(self, sample: UsageSample) -> None:
        self.usage[sample.subject_id].append(sample)

    def apply(self, event: BridgeEvent) -> None:
        """Apply one bridge event to the run state."""
        cid = event.client_id
        if cid not in self._known:
            logger.debug("Ignoring event from unknown client %s", cid)
            return

        if event.kind is EventKind.MESSAGE:
            self.record_message(event.as_message())
        elif event.kind is EventKind.CONNECTED:
            self.connected.add(cid)
            if len(self.connected) == len(self.client_ids):
                self.all_connected.set()
        elif event.kind is EventKind.COMPLETE:
            self._mark_complete(cid)
        elif event.kind is EventKind.ERROR:
            self._errors[cid] += 1
            logger.warning("Client %s reported an error: %s", cid, event.detail)
        elif event.kind is EventKind.DISCONNECTED:
            if cid in self.completed or self.phase not in ACTIVE_PHASES:
                logger.debug("Client %s disconnected after completing", cid)
            else:
                self.fail(BridgeDisconnect.client(cid, event.detail))

    def record_message(self, message: MessageEvent) -> None:
        """Record a received message.

        Sequence numbers must lie in 1..M and strictly increase per client;
        anything else is dropped.
        """
        cid = message.client_id
        seq = message.message_seq
        last_seq = self._last_seq.get(cid, 0)
        if not 1 <= seq <= self.config.messages or seq <= last_seq:
            self.dropped_messages += 1
            logger.warning(
                "Dropping message seq=%d from %s (last seq %d, M=%d)",
                seq, cid, last_seq, self.config.messages,
            )
            return

        self._last_seq[cid] = seq
        self._counts[cid] += 1
        at = message.received_at_ms
        self._first.setdefault(cid, at)
        self._last[cid] = max(at, self._last.get(cid, at))
        if seq == self.config.messages:
            self._mark_complete(cid)

    def _mark_complete(self, cid: str) -> None:
        self.completed.add(cid)
        if len(self.completed) == len(self.client_ids):
            self.all_completed.set()

    def mark_incomplete(self, reason: str) -> None:
        self.incomplete_reason = reason

    def freeze(self) -> RunResult:
        latency = {
            cid: ClientLatency(
                first_received_at=self._first.get(cid),
                last_received_at=self._last.get(cid),
                received_count=self._counts.get(cid, 0),
                incomplete=cid not in self.completed,
                errors=self._errors.get(cid, 0),
            )
            for cid in self.client_ids
        }
        incomplete = self.incomplete_reason is not None or any(
            lat.incomplete for lat in latency.values()
        )
        return RunResult(
            config=self.config,
            repetition=self.repetition,
            send_started_at=self.send_started_at,
            per_client_latency=latency,
            usage_series={sid: tuple(series) for sid, series in self.usage.items()},
            status=RunStatus.INCOMPLETE if incomplete else RunStatus.COMPLETE,
            incomplete_reason=self.incomplete_reason,
        )


class TestRunner:
    """Runs test configurations against protocol adapters.

    Example:
        ```python
        async with TestRunner(HarnessSettings()) as runner:
            result = await runner.run_configuration(config)
        ```
    """

    __test__: ClassVar[bool] = False

    def __init__(
        self,
        settings: HarnessSettings,
        supervisor: ProcessSupervisor | None = None,
        monitor: ResourceMonitor | None = None,
        adapter_factory: AdapterFactory = get_adapter,
    ) -> None:
        self.settings = settings
        self.supervisor = supervisor or ProcessSupervisor(settings)
        self.monitor = monitor or ResourceMonitor()
        self._adapter_factory = adapter_factory
        self.last_context: RunContext | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self.monitor.stop_all()
        await self.supervisor.close()

    def effective_cap(self, adapter: ProtocolAdapter) -> int:
        """Clients per browser: the settings cap, lowered to the transport's limit."""
        cap = self.settings.clients_per_browser
        if adapter.max_connections_per_browser is not None:
            cap = min(cap, adapter.max_connections_per_browser)
        return cap

    def validate(self, config: TestConfiguration) -> ProtocolAdapter:
        """Resolve the adapter and reject unrunnable configurations.

        Raises:
            ConfigurationError: On an unknown protocol or impossible layout
        """
        adapter = self._adapter_factory(config.protocol, self.settings)
        validate_against_settings(config, self.settings, self.effective_cap(adapter))
        return adapter

    async def run_configuration(self, config: TestConfiguration) -> AggregateResult:
        """Run all repetitions of a configuration, aggregate and export.

        Failed runs are never retried. Unless ``continue_on_failure`` is set
        the first failure is raised; otherwise it is recorded in the
        aggregate and the next repetition starts.
        """
        adapter = self.validate(config)
        runs: list[RunResult] = []
        failures: list[RunFailure] = []

        for repetition in range(config.repetitions):
            logger.info(
                "Repetition %d/%d: %s, N=%d, M=%d, payload=%dB",
                repetition + 1, config.repetitions, config.protocol,
                config.clients, config.messages, config.payload_size,
            )
            try:
                runs.append(await self.run_once(config, repetition, adapter=adapter))
            except HarnessError as e:
                if not self.settings.continue_on_failure:
                    raise
                failures.append(RunFailure(
                    repetition=repetition,
                    code=e.code.value,
                    phase=e.phase.value if e.phase else None,
                    reason=e.reason,
                ))

        result = aggregate(
            config, runs, failures, include_incomplete=self.settings.include_incomplete
        )
        exporter.write(config.output_path, result)
        return result

    async def run_once(
        self,
        config: TestConfiguration,
        repetition: int = 0,
        adapter: ProtocolAdapter | None = None,
    ) -> RunResult:
        """Execute a single run and return its frozen result.

        Raises:
            HarnessError: Tagged with the phase that failed. All subjects
                have been released by the time it is raised.
        """
        adapter = adapter or self.validate(config)
        ctx = RunContext(config, repetition)
        self.last_context = ctx
        bridge = ClientBridge(max_events=self.settings.bridge_queue_size)
        pump: asyncio.Task[None] | None = None
        preexisting = set(map(id, self.supervisor.subjects))

        try:
            await self._provision(ctx, adapter)
            pump = asyncio.create_task(self._pump(ctx, bridge))
            await self._warm_clients(ctx, adapter, bridge)
            await self._send(ctx, adapter)
            await self._drain(ctx)

            self._enter(ctx, RunPhase.AGGREGATING)
            await self.monitor.stop_all()
            bridge.close()
            await pump
            ctx.raise_if_failed()
            result = ctx.freeze()
        except Exception as e:
            failed_phase = ctx.phase
            if isinstance(e, HarnessError):
                e.with_phase(failed_phase)
            else:
                e.add_note(f"run phase: {failed_phase.value}")
            self._enter(ctx, RunPhase.ABORTING)
            logger.error("Run %d aborted in %s: %s", repetition, failed_phase.value, e)
            raise
        finally:
            await self._teardown(ctx, adapter, bridge, pump, preexisting)

        self._enter(ctx, RunPhase.DONE)
        logger.info(
            "Run %d done: %s, %d/%d clients complete",
            repetition, result.status.value, len(ctx.completed), len(ctx.client_ids),
        )
        return result

    def _enter(self, ctx: RunContext, phase: RunPhase) -> None:
        logger.info("Run %d: %s -> %s", ctx.repetition, ctx.phase.value, phase.value)
        ctx.phase = phase
        ctx.history.append(phase)

    async def _provision(self, ctx: RunContext, adapter: ProtocolAdapter) -> None:
        self._enter(ctx, RunPhase.PROVISIONING)
        spec = adapter.prepare_server(ctx.config)
        server = await self.supervisor.start_container_subject(
            spec, spec.readiness_marker, self.settings.provision_timeout
        )
        ctx.server = server
        server.exited.add_done_callback(lambda fut: self._on_server_exit(ctx, server, fut))
        self.monitor.start(server, self.settings.sample_interval_ms, ctx.record_usage)
        try:
            await adapter.server_ready(server)
        except HarnessError:
            raise
        except Exception as e:
            raise AdapterError(f"{adapter.name} server_ready raised {e!r}") from e

    def _on_server_exit(self, ctx: RunContext, server: ServerSubject, fut: asyncio.Future) -> None:
        if server.released or ctx.phase not in ACTIVE_PHASES:
            return
        ctx.fail(SubjectCrashed.exited(server.subject_id, fut.result()))

    async def _warm_clients(
        self, ctx: RunContext, adapter: ProtocolAdapter, bridge: ClientBridge
    ) -> None:
        self._enter(ctx, RunPhase.WARMING_CLIENTS)
        assert ctx.server is not None
        endpoint = ctx.server.endpoint
        script = adapter.prepare_client(endpoint, ctx.config)

        fleet = await self.supervisor.start_browser_subjects(
            ctx.config.clients, self.effective_cap(adapter), adapter.page_url(endpoint)
        )
        ctx.expect_clients([client.client_id for client in fleet.clients])
        for browser in fleet.browsers:
            self.monitor.start(browser, self.settings.sample_interval_ms, ctx.record_usage)
        for client in fleet.clients:
            bridge.attach(client)
        await asyncio.gather(*(client.inject(script) for client in fleet.clients))

        timeout = self.settings.connect_timeout
        if not await self._barrier(ctx, ctx.all_connected, timeout):
            raise ClientConnectTimeout.partial(len(ctx.connected), len(ctx.client_ids), timeout)
        logger.info("All %d clients connected", len(ctx.client_ids))

    async def _send(self, ctx: RunContext, adapter: ProtocolAdapter) -> None:
        self._enter(ctx, RunPhase.SENDING)
        ctx.send_started_at = now_ms()
        send = asyncio.create_task(self._trigger_all(ctx, adapter))
        try:
            await asyncio.wait({send, ctx.failure}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not send.done():
                send.cancel()
                with suppress(asyncio.CancelledError):
                    await send
        ctx.raise_if_failed()
        send.result()

    async def _trigger_all(self, ctx: RunContext, adapter: ProtocolAdapter) -> None:
        """The fairness boundary: the same call sequence for every protocol."""
        assert ctx.server is not None
        config = ctx.config
        if adapter.send_mode is SendMode.BURST:
            specs = [MessageSpec(count=config.messages, payload_size=config.payload_size)]
        else:
            specs = [
                MessageSpec(count=1, payload_size=config.payload_size, start_seq=seq)
                for seq in range(1, config.messages + 1)
            ]

        for spec in specs:
            try:
                ack = await adapter.trigger_send(ctx.server, spec)
            except HarnessError:
                raise
            except Exception as e:
                raise AdapterError(f"{adapter.name} trigger raised {e!r}") from e
            if ack.accepted < spec.count:
                logger.warning(
                    "Server accepted %d of %d messages starting at seq %d",
                    ack.accepted, spec.count, spec.start_seq,
                )

    async def _drain(self, ctx: RunContext) -> None:
        self._enter(ctx, RunPhase.DRAINING)
        timeout = self.settings.drain_timeout
        if await self._barrier(ctx, ctx.all_completed, timeout):
            return
        missing = len(ctx.client_ids) - len(ctx.completed)
        error = DrainTimeout.missing(missing, len(ctx.client_ids), timeout).with_phase(ctx.phase)
        logger.warning("Run %d incomplete: %s", ctx.repetition, error)
        ctx.mark_incomplete(str(error))

    async def _barrier(self, ctx: RunContext, condition: asyncio.Event, timeout: float) -> bool:
        """Wait for a condition, a run failure, or the timeout.

        Returns whether the condition was met; raises the run failure.
        """
        if not condition.is_set():
            waiter = asyncio.create_task(condition.wait())
            try:
                await asyncio.wait(
                    {waiter, ctx.failure}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                waiter.cancel()
        ctx.raise_if_failed()
        return condition.is_set()

    async def _pump(self, ctx: RunContext, bridge: ClientBridge) -> None:
        """Feed bridge events into the run context until the bridge closes."""
        try:
            async for event in bridge:
                ctx.apply(event)
        except BridgeDisconnect as e:
            ctx.fail(e)

    async def _teardown(
        self,
        ctx: RunContext,
        adapter: ProtocolAdapter,
        bridge: ClientBridge,
        pump: asyncio.Task[None] | None,
        preexisting: set[int],
    ) -> None:
        await self.monitor.stop_all()
        bridge.close()
        if pump is not None and not pump.done():
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump

        owned = [s for s in self.supervisor.subjects if id(s) not in preexisting]
        await self.supervisor.stop_all(owned)

        try:
            await adapter.teardown()
        except Exception as e:
            logger.error("Adapter %s teardown failed: %s", adapter.name, e)
        logger.debug("Run %d released %d subjects", ctx.repetition, len(owned))
