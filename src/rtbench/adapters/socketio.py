"""Socket.IO adapter.

The server serves its own client library at ``/socket.io/socket.io.js``;
the injected script loads it and listens for ``message`` events carrying
``{"seq", "payload"}``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rtbench.adapters.base import build_client_script
from rtbench.adapters.http import HttpTriggerAdapter

if TYPE_CHECKING:
    from rtbench.config import TestConfiguration

SOCKETIO_BODY = """
  const boot = () => {
    const socket = io(cfg.url, { transports: ["websocket"] });
    socket.on("connect", () => report("connected"));
    socket.on("message", onMessage);
    socket.on("connect_error", (err) => report("error", { detail: "connect_error: " + err }));
    socket.on("disconnect", (reason) => {
      if (!done) report("error", { detail: "disconnected: " + reason });
    });
  };
  if (window.io) {
    boot();
  } else {
    const tag = document.createElement("script");
    tag.src = cfg.library;
    tag.onload = boot;
    tag.onerror = () => report("error", { detail: "cannot load " + cfg.library });
    document.head.appendChild(tag);
  }"""


class SocketIOAdapter(HttpTriggerAdapter):
    name = "socketio"
    library_path = "/socket.io/socket.io.js"

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        base = endpoint.rstrip("/")
        return build_client_script(
            SOCKETIO_BODY,
            url=base,
            library=base + self.library_path,
            messages=config.messages,
        )
