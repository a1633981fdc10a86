"""Process supervisor: lifecycle of out-of-process test subjects.

Two kinds of subject are managed:

- ``ServerSubject``: a container group started through the compose CLI.
  Readiness is detected by matching a marker substring in the combined
  output stream.
- ``BrowserSubject`` / ``ClientSubject``: headless browser processes and
  the pages (one per client) they host. Clients are partitioned across
  browsers so that no browser ever hosts more than ``per_browser_cap``
  pages.

Every subject is released at most once. ``stop_all`` is best-effort: a
failing release is logged and the remaining subjects are still released.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

import docker
import psutil
from docker.errors import DockerException
from playwright.async_api import async_playwright

from rtbench.config import HarnessSettings
from rtbench.error import ConfigurationError, ProvisionTimeout, SubjectCrashed

logger = logging.getLogger(__name__)

# Constants
OUTPUT_READ_LIMIT = 1 << 20
PROCESS_KILL_GRACE_SECONDS = 5.0
SUBJECT_FLAG = "--rtbench-subject"
SERVER_SUBJECT_ID = "server"


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Launch description of a server container group.

    Attributes:
        name: Subject id for the server
        compose_file: Compose file describing the group
        project: Compose project name, also used to find the containers
        readiness_marker: Substring that signals the server is ready
        base_url: HTTP base URL the server is reachable on from the host
        command: Explicit launch command, replacing ``compose up``
        build: Pass ``--build`` to ``compose up``
    """

    name: str
    compose_file: Path | None
    project: str
    readiness_marker: str
    base_url: str
    command: tuple[str, ...] | None = None
    build: bool = False

    @property
    def uses_compose(self) -> bool:
        return self.command is None


class Subject(ABC):
    """A managed out-of-process entity."""

    def __init__(self, subject_id: str) -> None:
        self.subject_id = subject_id
        self.released = False

    async def release(self, timeout: float) -> bool:
        """Release the subject. Returns False if it was already released."""
        if self.released:
            return False
        self.released = True
        await self._release(timeout)
        return True

    @abstractmethod
    async def _release(self, timeout: float) -> None:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.subject_id!r})"


class ServerSubject(Subject):
    """A running container group."""

    def __init__(
        self,
        spec: ContainerSpec,
        process: asyncio.subprocess.Process,
        compose_command: list[str],
    ) -> None:
        super().__init__(spec.name)
        self.spec = spec
        self.process = process
        self.container_ids: list[str] = []
        self.exited: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()
        self._compose_command = compose_command
        self._output_task: asyncio.Task[None] | None = None

    @property
    def endpoint(self) -> str:
        return self.spec.base_url

    @property
    def pid(self) -> int | None:
        return self.process.pid

    def follow_output(self) -> None:
        """Keep draining output after readiness so the pipe never fills."""
        self._output_task = asyncio.create_task(self._drain_output())

    async def _drain_output(self) -> None:
        stream = self.process.stdout
        try:
            if stream is not None:
                while line := await stream.readline():
                    logger.debug("[%s] %s", self.subject_id, line.decode(errors="replace").rstrip())
            returncode = await self.process.wait()
        finally:
            if not self.exited.done():
                self.exited.set_result(self.process.returncode)
        if not self.released:
            logger.warning("Server %s exited with code %s", self.subject_id, returncode)

    async def _release(self, timeout: float) -> None:
        try:
            if self.spec.uses_compose and self.spec.compose_file is not None:
                await self._compose_down(timeout)
        finally:
            await terminate_process(self.process, timeout)
            if self._output_task is not None:
                self._output_task.cancel()
                try:
                    await self._output_task
                except asyncio.CancelledError:
                    pass
            if not self.exited.done():
                self.exited.set_result(self.process.returncode)

    async def _compose_down(self, timeout: float) -> None:
        argv = [
            *self._compose_command,
            "-f", str(self.spec.compose_file),
            "-p", self.spec.project,
            "down", "--remove-orphans",
        ]
        down = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(down.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("compose down for %s timed out after %.1fs", self.spec.project, timeout)
            down.kill()
            await down.wait()


class BrowserHandle(Protocol):
    """One browser process, as provided by a ``BrowserLauncher``."""

    pid: int | None

    async def new_page(self) -> Any:
        """Open a new page in this browser."""
        ...

    async def close(self) -> None:
        """Terminate the browser process."""
        ...


class BrowserLauncher(Protocol):
    """Capability provider for browser processes."""

    async def launch(self, subject_id: str) -> BrowserHandle:
        ...

    async def close(self) -> None:
        ...


class BrowserSubject(Subject):
    """A browser process hosting up to ``cap`` client pages."""

    def __init__(self, subject_id: str, handle: BrowserHandle) -> None:
        super().__init__(subject_id)
        self.handle = handle
        self.clients: list[ClientSubject] = []

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    async def _release(self, timeout: float) -> None:
        await asyncio.wait_for(self.handle.close(), timeout=timeout)


class ClientSubject(Subject):
    """A single client: one page inside one browser."""

    def __init__(self, client_id: str, browser: BrowserSubject, page: Any) -> None:
        super().__init__(client_id)
        self.browser = browser
        self.page = page

    @property
    def client_id(self) -> str:
        return self.subject_id

    async def inject(self, script: str) -> None:
        """Run the client script inside the page."""
        await self.page.evaluate(script)

    async def _release(self, timeout: float) -> None:
        if self.browser.released:
            # Pages die with their browser.
            return
        await asyncio.wait_for(self.page.close(), timeout=timeout)


@dataclass
class BrowserFleet:
    """Result of ``start_browser_subjects``."""

    browsers: list[BrowserSubject] = field(default_factory=list)
    clients: list[ClientSubject] = field(default_factory=list)


def plan_browser_allocation(count: int, per_browser_cap: int) -> list[int]:
    """Split ``count`` clients into per-browser page counts.

    Allocates ``ceil(count / per_browser_cap)`` browsers and fills them in
    order, so every browser except possibly the last hosts exactly the cap.
    """
    if count < 0:
        raise ConfigurationError(f"client count must be >= 0, got {count}")
    if per_browser_cap < 1:
        raise ConfigurationError(f"per-browser cap must be >= 1, got {per_browser_cap}")
    browsers = math.ceil(count / per_browser_cap)
    return [min(per_browser_cap, count - i * per_browser_cap) for i in range(browsers)]


async def terminate_process(process: asyncio.subprocess.Process, timeout: float) -> None:
    """Terminate a subprocess, killing it if it ignores SIGTERM."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=min(timeout, PROCESS_KILL_GRACE_SECONDS))
    except asyncio.TimeoutError:
        logger.warning("Process %s ignored SIGTERM, killing", process.pid)
        process.kill()
        await process.wait()


def find_pid_by_flag(flag: str) -> int | None:
    """Find the main process whose command line carries ``flag``.

    Chromium helper processes (renderer, gpu, ...) are launched with a
    ``--type=`` switch; the browser process itself is not.
    """
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info["cmdline"] or []
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if flag in cmdline and not any(arg.startswith("--type=") for arg in cmdline):
            return proc.info["pid"]
    return None


class PlaywrightBrowser:
    """``BrowserHandle`` backed by a Playwright Chromium instance."""

    def __init__(self, browser: Any, context: Any, pid: int | None) -> None:
        self._browser = browser
        self._context = context
        self.pid = pid

    async def new_page(self) -> Any:
        return await self._context.new_page()

    async def close(self) -> None:
        try:
            await self._context.close()
        finally:
            await self._browser.close()


class PlaywrightLauncher:
    """Launch headless Chromium processes through Playwright."""

    def __init__(self, headless: bool = True) -> None:
        self._headless = headless
        self._playwright: Any | None = None

    async def launch(self, subject_id: str) -> PlaywrightBrowser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        flag = f"{SUBJECT_FLAG}={subject_id}"
        browser = await self._playwright.chromium.launch(headless=self._headless, args=[flag])
        context = await browser.new_context()
        pid = await asyncio.to_thread(find_pid_by_flag, flag)
        if pid is None:
            logger.warning("Could not resolve pid of browser %s, usage will not be sampled", subject_id)
        return PlaywrightBrowser(browser, context, pid)

    async def close(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class ProcessSupervisor:
    """Starts and stops every subject of a run.

    Example:
        ```python
        supervisor = ProcessSupervisor(settings)
        try:
            server = await supervisor.start_container_subject(spec, "listening", 60)
            fleet = await supervisor.start_browser_subjects(12, 6, server.endpoint)
        finally:
            await supervisor.stop_all()
            await supervisor.close()
        ```
    """

    def __init__(
        self,
        settings: HarnessSettings,
        launcher: BrowserLauncher | None = None,
        docker_client: docker.DockerClient | None = None,
    ) -> None:
        self._settings = settings
        self._launcher = launcher or PlaywrightLauncher(headless=settings.headless)
        self._docker = docker_client
        self.subjects: list[Subject] = []

    async def start_container_subject(
        self,
        spec: ContainerSpec,
        readiness_marker: str | None = None,
        timeout: float | None = None,
    ) -> ServerSubject:
        """Start a container group and wait for its readiness marker.

        Args:
            spec: Launch description
            readiness_marker: Substring to wait for, defaults to the container spec's marker
            timeout: Seconds to wait, defaults to ``provision_timeout``

        Raises:
            ProvisionTimeout: If the marker is not seen in time
            SubjectCrashed: If the process exits before becoming ready
        """
        marker = readiness_marker or spec.readiness_marker
        timeout = timeout if timeout is not None else self._settings.provision_timeout

        argv = self._up_command(spec)
        logger.info("Starting server %s: %s", spec.name, " ".join(argv))
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=OUTPUT_READ_LIMIT,
        )
        subject = ServerSubject(spec, process, self._settings.compose_command)
        self.subjects.append(subject)

        try:
            await asyncio.wait_for(self._wait_for_marker(subject, marker), timeout=timeout)
        except asyncio.TimeoutError:
            await self._release_quietly(subject)
            raise ProvisionTimeout.waiting_for(marker, timeout) from None
        except BaseException:
            await self._release_quietly(subject)
            raise

        subject.follow_output()
        if spec.uses_compose:
            subject.container_ids = await asyncio.to_thread(self._find_containers, spec.project)
        logger.info(
            "Server %s ready at %s (containers: %s)",
            spec.name, spec.base_url, ", ".join(subject.container_ids) or "none",
        )
        return subject

    def _up_command(self, spec: ContainerSpec) -> list[str]:
        if spec.command is not None:
            return list(spec.command)
        if spec.compose_file is None:
            raise ConfigurationError(f"server {spec.name} has neither a compose file nor a command")
        argv = [
            *self._settings.compose_command,
            "-f", str(spec.compose_file),
            "-p", spec.project,
            "up", "--no-color",
        ]
        if spec.build:
            argv.append("--build")
        return argv

    async def _wait_for_marker(self, subject: ServerSubject, marker: str) -> None:
        stream = subject.process.stdout
        assert stream is not None
        while True:
            raw = await stream.readline()
            if not raw:
                returncode = await subject.process.wait()
                raise SubjectCrashed.exited(subject.subject_id, returncode)
            line = raw.decode(errors="replace").rstrip()
            logger.debug("[%s] %s", subject.subject_id, line)
            if marker in line:
                return

    def _find_containers(self, project: str) -> list[str]:
        try:
            if self._docker is None:
                self._docker = docker.from_env()
            containers = self._docker.containers.list(
                filters={"label": f"com.docker.compose.project={project}"}
            )
        except DockerException as e:
            logger.warning("Cannot list containers of project %s: %s", project, e)
            return []
        return [c.id for c in containers]

    async def start_browser_subjects(
        self,
        count: int,
        per_browser_cap: int,
        page_url: str,
    ) -> BrowserFleet:
        """Start browsers and open one page per client.

        Allocates ``ceil(count / per_browser_cap)`` browsers. Subjects are
        registered as soon as they exist, so a failure part way through
        still leaves them to ``stop_all``.
        """
        plan = plan_browser_allocation(count, per_browser_cap)
        fleet = BrowserFleet()
        run_tag = uuid.uuid4().hex[:8]
        client_index = 0

        for browser_index, pages in enumerate(plan):
            subject_id = f"browser-{browser_index}"
            handle = await self._launcher.launch(f"{run_tag}-{subject_id}")
            browser = BrowserSubject(subject_id, handle)
            self.subjects.append(browser)
            fleet.browsers.append(browser)

            for _ in range(pages):
                page = await handle.new_page()
                client = ClientSubject(f"client-{client_index}", browser, page)
                client_index += 1
                self.subjects.append(client)
                browser.clients.append(client)
                fleet.clients.append(client)
                await page.goto(page_url)

        logger.info(
            "Started %d clients across %d browsers (cap %d)",
            len(fleet.clients), len(fleet.browsers), per_browser_cap,
        )
        return fleet

    async def stop_all(self, subjects: Iterable[Subject] | None = None) -> None:
        """Release subjects, newest first. Idempotent and best-effort."""
        targets = list(subjects) if subjects is not None else list(self.subjects)
        # Pages before browsers before servers.
        for subject in reversed(targets):
            await self._release_quietly(subject)
        self.subjects = [s for s in self.subjects if not s.released]

    async def _release_quietly(self, subject: Subject) -> None:
        try:
            if await subject.release(self._settings.teardown_timeout):
                logger.debug("Released %r", subject)
        except Exception as e:
            logger.error("Failed to release %r: %s", subject, e)

    async def close(self) -> None:
        """Release leftovers and shut down the browser driver."""
        await self.stop_all()
        await self._launcher.close()
