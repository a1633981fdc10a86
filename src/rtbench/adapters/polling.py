"""HTTP long-polling adapter.

Clients loop on ``GET /poll?after=<seq>``. The server holds each request
until messages newer than ``after`` exist and answers with a JSON array of
``{"seq", "payload"}`` objects (an empty array on its own timeout).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rtbench.adapters.base import build_client_script
from rtbench.adapters.http import HttpTriggerAdapter

if TYPE_CHECKING:
    from rtbench.config import TestConfiguration

POLL_BODY = """
  const poll = async () => {
    let after = 0;
    let first = true;
    while (!done) {
      const request = fetch(cfg.url + "?after=" + after, { cache: "no-store" });
      if (first) {
        first = false;
        report("connected");
      }
      try {
        const response = await request;
        if (!response.ok) {
          report("error", { detail: "poll returned HTTP " + response.status });
          await new Promise((resolve) => setTimeout(resolve, 100));
          continue;
        }
        const batch = await response.json();
        for (const msg of batch) {
          onMessage(msg);
          if (msg.seq > after) after = msg.seq;
        }
      } catch (e) {
        report("error", { detail: "poll failed: " + e });
        await new Promise((resolve) => setTimeout(resolve, 100));
      }
    }
  };
  poll();"""


class LongPollingAdapter(HttpTriggerAdapter):
    name = "polling"
    # Each pending poll holds an HTTP/1.1 connection.
    max_connections_per_browser = 6
    stream_path = "/poll"

    def prepare_client(self, endpoint: str, config: TestConfiguration) -> str:
        return build_client_script(
            POLL_BODY,
            url=self.stream_url(endpoint),
            messages=config.messages,
        )
