"""Plain WebSocket adapter.

Clients connect to ``ws://<server>/ws``; every text frame is one
``{"seq", "payload"}`` message.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rtbench.adapters.base import build_client_script
from rtbench.adapters.http import HttpTriggerAdapter

if TYPE_CHECKING:
    from rtbench.config import TestConfiguration

WEBSOCKET_BODY = """
  const socket = new WebSocket(cfg.url);
  socket.onopen = () => report("connected");
  socket.onmessage = (event) => onMessage(event.data);
  socket.onerror = () => report("error", { detail: "websocket error" });
  socket.onclose = (event) => {
    if (!done) report("error", { detail: "websocket closed with code " + event.code });
  };"""


def to_ws_url(http_url: str) -> str:
    """Map an http(s) URL onto the matching ws(s) URL."""
    if http_url.startswith("https://"):
        return "wss://" + http_url[len("https://"):]
    if http_url.startswith("http://"):
        return "ws://" + http_url[len("http://"):]
    return http_url


class WebSocketAdapter(HttpTriggerAdapter):
    name = "websocket"
    stream_path = "/ws"

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        return build_client_script(
            WEBSOCKET_BODY,
            url=to_ws_url(self.stream_url(endpoint)),
            messages=config.messages,
        )
