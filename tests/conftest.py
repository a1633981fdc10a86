"""Pytest configuration and in-process fakes for all tests.

The fakes stand in for browsers and protocol servers so the orchestrator can
be driven end to end without Docker or Chromium. Servers are real
subprocesses running a tiny Python script that prints the readiness marker,
so provisioning, sampling and teardown exercise real process handling.
"""

from __future__ import annotations

import json
import os
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

import pytest

from rtbench.adapters.base import DEFAULT_READINESS_MARKER, ProtocolAdapter
from rtbench.config import HarnessSettings, TestConfiguration
from rtbench.supervisor import SERVER_SUBJECT_ID, ContainerSpec, ServerSubject
from rtbench.types import MessageSpec, SendAck, SendMode, now_ms

SERVER_SCRIPT = f"""
import time
print({DEFAULT_READINESS_MARKER!r}, flush=True)
time.sleep(300)
"""


class FakeConsoleMessage:
    def __init__(self, text: str) -> None:
        self.text = text


class FakePage:
    """Page double with Playwright's ``on`` / ``evaluate`` / ``close`` surface."""

    def __init__(self, browser: FakeBrowser, connects: bool = True) -> None:
        self.browser = browser
        self.connects = connects
        self.handlers: dict[str, list[Callable[[Any], None]]] = defaultdict(list)
        self.url: str | None = None
        self.scripts: list[str] = []
        self.closed = False
        self.close_count = 0

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self.handlers[event].append(handler)

    def emit(self, event: str, arg: Any) -> None:
        for handler in list(self.handlers[event]):
            handler(arg)

    def report(self, **payload: Any) -> None:
        """Emit an ``rtbench:`` console line as the client script would."""
        payload.setdefault("ts", now_ms())
        self.emit("console", FakeConsoleMessage("rtbench:" + json.dumps(payload)))

    async def goto(self, url: str) -> None:
        self.url = url

    async def evaluate(self, script: str) -> None:
        self.scripts.append(script)
        if self.connects:
            self.report(type="connected")

    async def close(self) -> None:
        self.close_count += 1
        if not self.closed:
            self.closed = True
            self.emit("close", self)


class FakeBrowser:
    def __init__(self, launcher: FakeLauncher, subject_id: str) -> None:
        self.launcher = launcher
        self.subject_id = subject_id
        self.pid: int | None = os.getpid()
        self.pages: list[FakePage] = []
        self.close_count = 0

    async def new_page(self) -> FakePage:
        connects = self.launcher.max_connected is None or (
            self.launcher.connected_pages < self.launcher.max_connected
        )
        if connects:
            self.launcher.connected_pages += 1
        page = FakePage(self, connects=connects)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.close_count += 1
        for page in self.pages:
            if not page.closed:
                page.closed = True
                page.emit("close", page)


class FakeLauncher:
    """``BrowserLauncher`` producing in-process fake browsers.

    Args:
        max_connected: Only this many pages (over the launcher's lifetime)
            report ``connected``; None for all of them
    """

    def __init__(self, max_connected: int | None = None) -> None:
        self.max_connected = max_connected
        self.connected_pages = 0
        self.browsers: list[FakeBrowser] = []
        self.closed = False

    async def launch(self, subject_id: str) -> FakeBrowser:
        browser = FakeBrowser(self, subject_id)
        self.browsers.append(browser)
        return browser

    async def close(self) -> None:
        self.closed = True

    def open_pages(self) -> list[FakePage]:
        return [
            page
            for browser in self.browsers
            if browser.close_count == 0
            for page in browser.pages
            if not page.closed
        ]

    def all_pages(self) -> list[FakePage]:
        return [page for browser in self.browsers for page in browser.pages]


class FakeAdapter(ProtocolAdapter):
    """Adapter whose server is a local subprocess and whose clients are fake pages.

    ``trigger_send`` delivers the requested messages straight into every open
    page's console, so the events travel through the real bridge.

    Args:
        settings: Harness settings
        launcher: Launcher whose pages receive messages
        protocol: Name the adapter reports
        send_mode: Declared send capability
        skip_clients: Page indexes (in open order) that receive nothing
        on_trigger: Hook run at the start of every trigger call
    """

    name = "fake"

    def __init__(
        self,
        settings: HarnessSettings,
        launcher: FakeLauncher,
        protocol: str = "fake",
        send_mode: SendMode = SendMode.BURST,
        skip_clients: frozenset[int] = frozenset(),
        on_trigger: Callable[[ServerSubject, MessageSpec], None] | None = None,
    ) -> None:
        super().__init__(settings)
        self.name = protocol
        self.send_mode = send_mode
        self.launcher = launcher
        self.skip_clients = skip_clients
        self.on_trigger = on_trigger
        self.calls: list[MessageSpec] = []
        self.teardowns = 0

    def prepare_server(self, config: TestConfiguration) -> ContainerSpec:
        return ContainerSpec(
            name=SERVER_SUBJECT_ID,
            compose_file=None,
            project=f"rtbench-{self.name}",
            readiness_marker=DEFAULT_READINESS_MARKER,
            base_url="http://127.0.0.1:9",
            command=(sys.executable, "-u", "-c", SERVER_SCRIPT),
        )

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        return f"/* {self.name} client for {endpoint} */"

    async def trigger_send(self, server: ServerSubject, spec: MessageSpec) -> SendAck:
        self.calls.append(spec)
        if self.on_trigger is not None:
            self.on_trigger(server, spec)
        for index, page in enumerate(self.launcher.open_pages()):
            if index in self.skip_clients:
                continue
            for seq in range(spec.start_seq, spec.last_seq + 1):
                page.report(type="message", seq=seq)
        return SendAck(accepted=spec.count)

    async def teardown(self) -> None:
        self.teardowns += 1


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    """Settings with short timeouts suitable for tests."""
    return HarnessSettings(
        provision_timeout=10,
        connect_timeout=2,
        drain_timeout=5,
        trigger_timeout=2,
        teardown_timeout=5,
        sample_interval_ms=50,
        servers_dir=tmp_path / "servers",
    )


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., TestConfiguration]:
    def make(**overrides: Any) -> TestConfiguration:
        values: dict[str, Any] = {
            "protocol": "fake",
            "clients": 4,
            "messages": 10,
            "payload_size": 16,
            "repetitions": 1,
            "output_path": tmp_path / "out" / "result.json",
        }
        values.update(overrides)
        return TestConfiguration(**values)

    return make
