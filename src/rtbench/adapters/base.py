"""Protocol adapter capability interface.

Every protocol under test plugs into the harness through a
``ProtocolAdapter``. The orchestrator only ever talks to this interface; it
never looks at which protocol sits behind it. What an adapter may vary is
declared as capabilities (``send_mode``, ``max_connections_per_browser``),
never inferred from its name.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from string import Template
from typing import TYPE_CHECKING, Any, ClassVar

from rtbench.error import AdapterError
from rtbench.supervisor import SERVER_SUBJECT_ID, ContainerSpec
from rtbench.types import MessageSpec, SendAck, SendMode

if TYPE_CHECKING:
    from rtbench.config import HarnessSettings, TestConfiguration
    from rtbench.supervisor import ServerSubject

DEFAULT_READINESS_MARKER = "rtbench-server-ready"

# Shared client runtime. Reports go to the console as ``rtbench:{json}``
# lines which the bridge picks up. Timestamps are epoch milliseconds with
# sub-millisecond resolution.
CLIENT_PRELUDE = Template(
    """(() => {
  const cfg = $config;
  const origin = performance.timeOrigin;
  const ts = () => origin + performance.now();
  const report = (type, extra) =>
    console.log("rtbench:" + JSON.stringify(Object.assign({ type: type, ts: ts() }, extra || {})));
  let done = false;
  const onMessage = (raw) => {
    const at = ts();
    let msg = raw;
    if (typeof raw === "string") {
      try {
        msg = JSON.parse(raw);
      } catch (e) {
        report("error", { detail: "unparseable message: " + e });
        return;
      }
    }
    if (!msg || typeof msg.seq !== "number") {
      report("error", { detail: "message without seq" });
      return;
    }
    console.log("rtbench:" + JSON.stringify({ type: "message", seq: msg.seq, ts: at }));
    if (!done && msg.seq >= cfg.messages) {
      done = true;
      report("complete");
    }
  };
$body
})();"""
)


def build_client_script(body: str, **config: Any) -> str:
    """Wrap a transport-specific body in the shared client prelude.

    ``config`` becomes the ``cfg`` object visible to the body.
    """
    return CLIENT_PRELUDE.substitute(config=json.dumps(config), body=body)


class ProtocolAdapter(ABC):
    """Uniform interface a protocol implements to take part in a run.

    Subclasses set ``name`` and implement ``prepare_client`` and
    ``trigger_send``. ``prepare_server`` has a default that points at
    ``<servers_dir>/<name>/docker-compose.yml``.

    Capabilities:
        send_mode: ``BURST`` if one trigger call can carry all M messages,
            ``PER_MESSAGE`` if the server needs one call per message
        max_connections_per_browser: hard per-browser connection ceiling of
            the transport (6 for HTTP/1.1-bound transports), None if unbounded
    """

    name: ClassVar[str]
    send_mode: ClassVar[SendMode] = SendMode.BURST
    max_connections_per_browser: ClassVar[int | None] = None
    readiness_marker: ClassVar[str] = DEFAULT_READINESS_MARKER
    stream_path: ClassVar[str] = "/"

    def __init__(self, settings: HarnessSettings) -> None:
        self.settings = settings

    @property
    def base_url(self) -> str:
        return f"http://{self.settings.server_host}:{self.settings.server_port}"

    def prepare_server(self, config: TestConfiguration) -> ContainerSpec:
        """Describe the server container group for this protocol."""
        compose_file = self.settings.servers_dir / self.name / "docker-compose.yml"
        if not compose_file.is_file():
            raise AdapterError(f"no compose file for {self.name!r} at {compose_file}")
        return ContainerSpec(
            name=SERVER_SUBJECT_ID,
            compose_file=compose_file,
            project=f"rtbench-{self.name}",
            readiness_marker=self.readiness_marker,
            base_url=self.base_url,
        )

    async def server_ready(self, server: ServerSubject) -> None:
        """Hook run once the server is ready, before clients connect."""

    def page_url(self, endpoint: str) -> str:
        """Page the clients are opened on, same-origin with the server."""
        return endpoint.rstrip("/") + "/"

    def stream_url(self, endpoint: str) -> str:
        return endpoint.rstrip("/") + self.stream_path

    @abstractmethod
    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        """Return the script injected into every client page."""
        ...

    @abstractmethod
    async def trigger_send(self, server: ServerSubject, spec: MessageSpec) -> SendAck:
        """Ask the server to push ``spec.count`` messages starting at ``spec.start_seq``.

        Raises:
            AdapterError: If the server refuses or cannot be reached
        """
        ...

    async def teardown(self) -> None:
        """Release adapter-side resources (sessions, sockets)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
