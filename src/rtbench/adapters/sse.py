"""Server-Sent Events adapter.

Clients open an ``EventSource`` on ``/events``; each message arrives as an
unnamed event whose data is ``{"seq", "payload"}``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rtbench.adapters.base import build_client_script
from rtbench.adapters.http import HttpTriggerAdapter

if TYPE_CHECKING:
    from rtbench.config import TestConfiguration

SSE_BODY = """
  const source = new EventSource(cfg.url);
  source.onopen = () => report("connected");
  source.onmessage = (event) => onMessage(event.data);
  source.onerror = () => report("error", { detail: "eventsource error, readyState " + source.readyState });"""


class ServerSentEventsAdapter(HttpTriggerAdapter):
    name = "sse"
    # An open EventSource occupies an HTTP/1.1 connection for its lifetime.
    max_connections_per_browser = 6
    stream_path = "/events"

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        return build_client_script(
            SSE_BODY,
            url=self.stream_url(endpoint),
            messages=config.messages,
        )
