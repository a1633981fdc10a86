"""Client bridge: relays in-browser events to the orchestrator.

Injected client code reports through the browser console, writing lines of
the form ``rtbench:{"type": "...", ...}``. The bridge listens to each page's
console, parses those lines into ``BridgeEvent`` records tagged with the
client id, and delivers them through a single bounded queue.

Ordering:
- Events of one client keep emission order (console callbacks are
  dispatched in order and enqueued synchronously).
- No ordering is guaranteed across clients.

A page that crashes or closes produces exactly one synthetic
``disconnected`` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Final

from rtbench.error import BridgeDisconnect
from rtbench.types import MessageEvent, now_ms

if TYPE_CHECKING:
    from rtbench.supervisor import ClientSubject

logger = logging.getLogger(__name__)

LINE_PREFIX: Final[str] = "rtbench:"


class EventKind(str, Enum):
    CONNECTED = "connected"
    MESSAGE = "message"
    COMPLETE = "complete"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class BridgeEvent:
    """A structured event from one client."""

    kind: EventKind
    client_id: str
    timestamp_ms: float
    seq: int | None = None
    detail: str = ""

    def as_message(self) -> MessageEvent:
        if self.kind is not EventKind.MESSAGE or self.seq is None:
            raise ValueError(f"not a message event: {self}")
        return MessageEvent(self.client_id, self.seq, self.timestamp_ms)


def parse_line(client_id: str, line: str) -> BridgeEvent | None:
    """Parse one console line.

    Returns None for lines that are not bridge events. Raises ValueError for
    lines that carry the prefix but are malformed.
    """
    if not line.startswith(LINE_PREFIX):
        return None

    data: Any = json.loads(line[len(LINE_PREFIX):])
    if not isinstance(data, dict) or "type" not in data:
        raise ValueError("bridge event must be an object with a 'type' field")

    kind = EventKind(data["type"])
    ts = data.get("ts")
    timestamp = float(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else now_ms()

    seq = None
    if kind is EventKind.MESSAGE:
        raw_seq = data.get("seq")
        if not isinstance(raw_seq, int) or isinstance(raw_seq, bool):
            raise ValueError(f"message event needs an integer seq, got {raw_seq!r}")
        seq = raw_seq

    return BridgeEvent(
        kind=kind,
        client_id=client_id,
        timestamp_ms=timestamp,
        seq=seq,
        detail=str(data.get("detail", "")),
    )


class ClientBridge:
    """Bounded, ordered-per-sender event queue between pages and the runner.

    Example:
        ```python
        bridge = ClientBridge(max_events=10_000)
        bridge.attach(client)
        async for event in bridge:
            ...
        ```
    """

    def __init__(self, max_events: int = 0) -> None:
        self._queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(maxsize=max_events)
        self._disconnected: set[str] = set()
        self._closed = False
        self._closed_event = asyncio.Event()
        self._overflow: BridgeDisconnect | None = None
        self.dropped_lines = 0

    @property
    def overflow(self) -> BridgeDisconnect | None:
        """Set once the queue has overflowed; the bridge is unusable after that."""
        return self._overflow

    def attach(self, client: ClientSubject) -> None:
        """Listen to a client's page for console, error and close events."""
        client_id = client.client_id
        page = client.page

        def on_console(msg: Any) -> None:
            self.feed_line(client_id, msg.text)

        def on_page_error(error: Any) -> None:
            self.publish(BridgeEvent(EventKind.ERROR, client_id, now_ms(), detail=str(error)))

        def on_gone(_page: Any) -> None:
            self.disconnect(client_id, "page closed")

        def on_crash(_page: Any) -> None:
            self.disconnect(client_id, "page crashed")

        page.on("console", on_console)
        page.on("pageerror", on_page_error)
        page.on("crash", on_crash)
        page.on("close", on_gone)

    def feed_line(self, client_id: str, line: str) -> None:
        """Parse and publish one console line from a client."""
        try:
            event = parse_line(client_id, line)
        except (ValueError, KeyError) as e:
            self.dropped_lines += 1
            logger.warning("Malformed bridge line from %s: %s (%r)", client_id, e, line[:200])
            return

        if event is None:
            logger.debug("console[%s]: %s", client_id, line)
            return
        self.publish(event)

    def disconnect(self, client_id: str, detail: str = "") -> None:
        """Emit the synthetic disconnected event for a client, once."""
        if client_id in self._disconnected:
            return
        self._disconnected.add(client_id)
        self.publish(BridgeEvent(EventKind.DISCONNECTED, client_id, now_ms(), detail=detail))

    def publish(self, event: BridgeEvent) -> None:
        """Enqueue an event without blocking the caller."""
        if self._closed or self._overflow is not None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._overflow = BridgeDisconnect(
                f"bridge queue full ({self._queue.maxsize} events), "
                f"dropping events from {event.client_id}",
                client_id=event.client_id,
            )
            logger.error("%s", self._overflow.reason)

    async def next_event(self) -> BridgeEvent | None:
        """Wait for the next event.

        Returns None once the bridge is closed and drained. Raises
        ``BridgeDisconnect`` if the queue overflowed.
        """
        if self._overflow is not None:
            raise self._overflow
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed:
            return None

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    def close(self) -> None:
        """Stop accepting events and wake any waiting consumer."""
        self._closed = True
        self._closed_event.set()

    def __aiter__(self) -> AsyncIterator[BridgeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BridgeEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event
