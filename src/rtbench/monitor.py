"""Resource monitor: fixed-cadence CPU and memory sampling of subjects.

Container groups are sampled through the Docker statistics stream and
process subjects (browsers, bare-process servers) through psutil. Sampling
runs in background tasks and never blocks the orchestrator. A failed sample
is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Iterator

import docker
import psutil
from docker.errors import DockerException

from rtbench.supervisor import BrowserSubject, ServerSubject, Subject
from rtbench.types import UsageSample, now_ms

logger = logging.getLogger(__name__)

UsageSink = Callable[[UsageSample], None]


class SamplingError(Exception):
    """A single sample could not be taken."""


def container_cpu_percent(stats: dict[str, Any]) -> float:
    """CPU percentage from one Docker stats object.

    ``(cpu delta / system delta) * online CPUs * 100``, the same figure the
    docker CLI reports.
    """
    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}

    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)

    online_cpus = cpu.get("online_cpus")
    if not online_cpus:
        online_cpus = len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1

    if system_delta <= 0 or cpu_delta < 0:
        return 0.0
    return (cpu_delta / system_delta) * online_cpus * 100.0


def container_memory_bytes(stats: dict[str, Any]) -> int:
    """Working-set memory from one Docker stats object (usage minus inactive file)."""
    memory = stats.get("memory_stats") or {}
    if "usage" not in memory:
        raise SamplingError("stats object has no memory usage")
    usage = int(memory["usage"])
    detail = memory.get("stats") or {}
    # cgroup v2 reports inactive_file, v1 total_inactive_file
    inactive = detail.get("inactive_file", detail.get("total_inactive_file", 0))
    if inactive < usage:
        usage -= inactive
    return usage


class Sampler(ABC):
    """Takes one usage reading per call."""

    @abstractmethod
    async def sample(self) -> tuple[float, int]:
        """Return ``(cpu_percentage, memory_bytes)``; raise on failure."""
        ...

    def close(self) -> None:
        pass


class ContainerSampler(Sampler):
    """Sums usage across the containers of a group.

    Each container's statistics stream is iterated in a worker thread; one
    streamed object per container makes one sample.
    """

    def __init__(self, client: docker.DockerClient, container_ids: list[str]) -> None:
        self._client = client
        self._container_ids = container_ids
        self._streams: dict[str, Iterator[dict[str, Any]]] = {}

    def _stream(self, container_id: str) -> Iterator[dict[str, Any]]:
        stream = self._streams.get(container_id)
        if stream is None:
            container = self._client.containers.get(container_id)
            stream = container.stats(stream=True, decode=True)
            self._streams[container_id] = stream
        return stream

    def _read(self, container_id: str) -> dict[str, Any]:
        try:
            stats = next(self._stream(container_id))
        except StopIteration:
            self._streams.pop(container_id, None)
            raise SamplingError(f"stats stream of {container_id} ended") from None
        except DockerException as e:
            self._streams.pop(container_id, None)
            raise SamplingError(f"stats of {container_id}: {e}") from e
        return stats

    async def sample(self) -> tuple[float, int]:
        readings = await asyncio.gather(
            *(asyncio.to_thread(self._read, cid) for cid in self._container_ids)
        )
        cpu = sum(container_cpu_percent(stats) for stats in readings)
        memory = sum(container_memory_bytes(stats) for stats in readings)
        return cpu, memory

    def close(self) -> None:
        for container_id, stream in self._streams.items():
            close = getattr(stream, "close", None)
            if close is None:
                continue
            try:
                close()
            except ValueError:
                # Still being read by a worker thread; it ends with the container.
                logger.debug("Stats stream of %s busy at close", container_id)
        self._streams.clear()


class ProcessSampler(Sampler):
    """Usage of a process and all of its children through psutil."""

    def __init__(self, pid: int) -> None:
        self._root = psutil.Process(pid)
        self._known: dict[int, psutil.Process] = {pid: self._root}
        # Prime cpu_percent so the next call reports a real interval.
        self._root.cpu_percent(None)

    def _processes(self) -> list[psutil.Process]:
        procs = [self._root]
        try:
            procs.extend(self._root.children(recursive=True))
        except psutil.NoSuchProcess as e:
            raise SamplingError(f"process {self._root.pid} is gone") from e
        live: list[psutil.Process] = []
        for proc in procs:
            # Reuse Process objects so cpu_percent keeps its baseline.
            known = self._known.setdefault(proc.pid, proc)
            live.append(known)
        return live

    async def sample(self) -> tuple[float, int]:
        cpu = 0.0
        memory = 0
        for proc in self._processes():
            try:
                cpu += proc.cpu_percent(None)
                memory += proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                self._known.pop(proc.pid, None)
            except psutil.AccessDenied as e:
                raise SamplingError(f"access denied to process {proc.pid}") from e
        return cpu, memory


class ResourceMonitor:
    """Samples subjects at a fixed cadence in background tasks.

    Example:
        ```python
        monitor = ResourceMonitor()
        monitor.start(server, 500, samples.append)
        ...
        await monitor.stop_all()
        ```
    """

    def __init__(self, docker_client: docker.DockerClient | None = None) -> None:
        self._docker = docker_client
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def sampler_for(self, subject: Subject) -> Sampler | None:
        """Choose how a subject is sampled, or None if it cannot be."""
        if isinstance(subject, ServerSubject) and subject.container_ids:
            if self._docker is None:
                self._docker = docker.from_env()
            return ContainerSampler(self._docker, subject.container_ids)

        pid = subject.pid if isinstance(subject, (ServerSubject, BrowserSubject)) else None
        if pid is None:
            return None
        try:
            return ProcessSampler(pid)
        except psutil.Error as e:
            logger.warning("Cannot sample %s (pid %s): %s", subject.subject_id, pid, e)
            return None

    async def watch(self, subject: Subject, interval_ms: int) -> AsyncIterator[UsageSample]:
        """Yield usage samples of a subject every ``interval_ms``.

        The first sample is taken immediately. Failed samples are skipped.
        """
        sampler = self.sampler_for(subject)
        if sampler is None:
            logger.warning("No sampler for %s, usage will not be recorded", subject.subject_id)
            return

        interval = interval_ms / 1000.0
        loop = asyncio.get_running_loop()
        try:
            while True:
                started = loop.time()
                try:
                    cpu, memory = await sampler.sample()
                except (SamplingError, psutil.Error, DockerException) as e:
                    logger.warning("Sampling %s failed, skipping: %s", subject.subject_id, e)
                else:
                    yield UsageSample(subject.subject_id, now_ms(), cpu, memory)
                elapsed = loop.time() - started
                await asyncio.sleep(max(0.0, interval - elapsed))
        finally:
            sampler.close()

    def start(self, subject: Subject, interval_ms: int, sink: UsageSink) -> None:
        """Run ``watch`` in the background, feeding each sample to ``sink``."""
        if subject.subject_id in self._tasks:
            return

        async def pump() -> None:
            async for sample in self.watch(subject, interval_ms):
                sink(sample)

        self._tasks[subject.subject_id] = asyncio.create_task(pump())

    async def stop_all(self) -> None:
        """Cancel every monitoring task."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error("Monitor task failed: %s", result)
