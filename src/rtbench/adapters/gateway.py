"""Pub/sub gateway adapter.

The gateway is a topic-based broker reached over WebSocket. Clients send
``{"type": "subscribe", "topic": ...}`` and receive
``{"type": "event", "topic": ..., "data": {"seq", "payload"}}`` frames.

The gateway can be reached natively from Python, so the send trigger is a
publisher connection of its own rather than an HTTP side door: it publishes
``{"type": "publish", "topic": ..., "data": ...}`` frames and waits for the
gateway's ``ack`` of each.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from rtbench.adapters.base import ProtocolAdapter, build_client_script
from rtbench.adapters.websocket import to_ws_url
from rtbench.error import AdapterError
from rtbench.types import MessageSpec, SendAck

if TYPE_CHECKING:
    from rtbench.config import HarnessSettings, TestConfiguration
    from rtbench.supervisor import ServerSubject

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "rtbench"

GATEWAY_BODY = """
  const socket = new WebSocket(cfg.url);
  socket.onopen = () => socket.send(JSON.stringify({ type: "subscribe", topic: cfg.topic }));
  socket.onmessage = (event) => {
    let frame;
    try {
      frame = JSON.parse(event.data);
    } catch (e) {
      report("error", { detail: "unparseable frame: " + e });
      return;
    }
    if (frame.type === "event") {
      onMessage(frame.data);
    } else if (frame.type === "ack" && frame.request_type === "subscribe") {
      report("connected");
    } else if (frame.type === "error") {
      report("error", { detail: frame.code + ": " + frame.message });
    }
  };
  socket.onerror = () => report("error", { detail: "gateway socket error" });
  socket.onclose = (event) => {
    if (!done) report("error", { detail: "gateway socket closed with code " + event.code });
  };"""


class PubSubGatewayAdapter(ProtocolAdapter):
    name = "gateway"
    stream_path = "/ws"
    topics_path = "/topics"

    def __init__(self, settings: HarnessSettings, topic: str = DEFAULT_TOPIC) -> None:
        super().__init__(settings)
        self.topic = topic
        self._session: aiohttp.ClientSession | None = None
        self._publisher: aiohttp.ClientWebSocketResponse | None = None

    async def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def server_ready(self, server: ServerSubject) -> None:
        """Create the benchmark topic before any client subscribes."""
        session = await self._http()
        url = server.endpoint.rstrip("/") + self.topics_path
        try:
            async with session.post(
                url,
                json={"name": self.topic},
                timeout=aiohttp.ClientTimeout(total=self.settings.trigger_timeout),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise AdapterError(
                        f"gateway refused topic {self.topic!r}: HTTP {response.status} {text[:200]}"
                    )
        except aiohttp.ClientError as e:
            raise AdapterError(f"cannot create gateway topic: {e}") from e
        except asyncio.TimeoutError as e:
            raise AdapterError(
                f"gateway topic creation timed out after {self.settings.trigger_timeout:.1f}s"
            ) from e
        logger.info("Gateway topic %r ready", self.topic)

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        return build_client_script(
            GATEWAY_BODY,
            url=to_ws_url(self.stream_url(endpoint)),
            topic=self.topic,
            messages=config.messages,
        )

    async def _connect_publisher(self, endpoint: str) -> aiohttp.ClientWebSocketResponse:
        if self._publisher is None or self._publisher.closed:
            session = await self._http()
            try:
                self._publisher = await session.ws_connect(to_ws_url(self.stream_url(endpoint)))
            except aiohttp.ClientError as e:
                raise AdapterError(f"cannot connect gateway publisher: {e}") from e
        return self._publisher

    async def trigger_send(self, server: ServerSubject, spec: MessageSpec) -> SendAck:
        ws = await self._connect_publisher(server.endpoint)
        payload = "x" * spec.payload_size

        try:
            for seq in range(spec.start_seq, spec.last_seq + 1):
                await ws.send_str(json.dumps({
                    "type": "publish",
                    "topic": self.topic,
                    "data": {"seq": seq, "payload": payload},
                }))
            acked = await asyncio.wait_for(
                self._collect_acks(ws, spec.count),
                timeout=self.settings.trigger_timeout,
            )
        except asyncio.TimeoutError as e:
            raise AdapterError(
                f"gateway did not ack {spec.count} publishes within "
                f"{self.settings.trigger_timeout:.1f}s"
            ) from e
        except (aiohttp.ClientError, ConnectionError) as e:
            raise AdapterError(f"gateway publish failed: {e}") from e

        return SendAck(accepted=acked)

    async def _collect_acks(self, ws: aiohttp.ClientWebSocketResponse, expected: int) -> int:
        acked = 0
        while acked < expected:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                frame: Any = json.loads(msg.data)
                if frame.get("type") == "ack" and frame.get("request_type") == "publish":
                    acked += 1
                elif frame.get("type") == "error":
                    raise AdapterError(
                        f"gateway rejected publish: {frame.get('code')}: {frame.get('message')}"
                    )
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                raise AdapterError("gateway closed the publisher connection")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise AdapterError(f"gateway publisher error: {ws.exception()}")
        return acked

    async def teardown(self) -> None:
        if self._publisher is not None:
            await self._publisher.close()
            self._publisher = None
        if self._session is not None:
            await self._session.close()
            self._session = None
