"""Reference server for rtbench.

One aiohttp application serving every transport rtbench ships an adapter
for, except socket.io:

- ``GET /poll?after=N``: long-polling, JSON array of messages newer than N
- ``GET /events``: Server-Sent Events
- ``GET /ws``: plain WebSocket broadcast, and the pub/sub gateway frames
  (``subscribe`` / ``publish`` / ``ack`` / ``event``)
- ``POST /topics``: create a gateway topic
- ``POST /trigger``: push ``count`` messages starting at ``seq``

It prints ``rtbench-server-ready`` once it accepts connections.

Run:
    python examples/reference_server/server.py --port 8080
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSMsgType, web

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

READY_MARKER = "rtbench-server-ready"
POLL_HOLD_SECONDS = 25.0

INDEX_HTML = "<!doctype html><html><head><title>rtbench</title></head><body></body></html>"


@dataclass
class Hub:
    """Fans triggered messages out to every connected client."""

    history: list[dict[str, Any]] = field(default_factory=list)
    new_messages: asyncio.Condition = field(default_factory=asyncio.Condition)
    sse_queues: set[asyncio.Queue[str]] = field(default_factory=set)
    sockets: set[web.WebSocketResponse] = field(default_factory=set)
    topics: dict[str, set[web.WebSocketResponse]] = field(default_factory=dict)

    async def push(self, count: int, size: int, first_seq: int) -> int:
        payload = "x" * size
        for seq in range(first_seq, first_seq + count):
            message = {"seq": seq, "payload": payload}
            text = json.dumps(message)
            self.history.append(message)
            for queue in self.sse_queues:
                queue.put_nowait(text)
            for ws in list(self.sockets):
                if not ws.closed:
                    await ws.send_str(text)
        async with self.new_messages:
            self.new_messages.notify_all()
        return count

    def newer_than(self, after: int) -> list[dict[str, Any]]:
        return [m for m in self.history if m["seq"] > after]


HUB = web.AppKey("hub", Hub)


async def index(request: web.Request) -> web.Response:
    return web.Response(text=INDEX_HTML, content_type="text/html")


async def trigger(request: web.Request) -> web.Response:
    body = await request.json()
    try:
        count, size, seq = int(body["count"]), int(body["size"]), int(body["seq"])
    except (KeyError, TypeError, ValueError):
        return web.json_response({"error": "expected count, size and seq"}, status=400)
    accepted = await request.app[HUB].push(count, size, seq)
    logger.info("Pushed %d messages from seq %d", accepted, seq)
    return web.json_response({"accepted": accepted})


async def poll(request: web.Request) -> web.Response:
    hub = request.app[HUB]
    after = int(request.query.get("after", "0"))
    if not hub.newer_than(after):
        async with hub.new_messages:
            try:
                await asyncio.wait_for(
                    hub.new_messages.wait_for(lambda: bool(hub.newer_than(after))),
                    timeout=POLL_HOLD_SECONDS,
                )
            except asyncio.TimeoutError:
                pass
    return web.json_response(hub.newer_than(after))


async def events(request: web.Request) -> web.StreamResponse:
    hub = request.app[HUB]
    response = web.StreamResponse(headers={
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
    })
    await response.prepare(request)
    queue: asyncio.Queue[str] = asyncio.Queue()
    hub.sse_queues.add(queue)
    try:
        await response.write(b": connected\n\n")
        while True:
            text = await queue.get()
            await response.write(f"data: {text}\n\n".encode())
    except ConnectionResetError:
        logger.debug("SSE client went away")
    finally:
        hub.sse_queues.discard(queue)
    return response


async def create_topic(request: web.Request) -> web.Response:
    body = await request.json()
    name = body.get("name")
    if not isinstance(name, str) or not name:
        return web.json_response({"error": "topic name required"}, status=400)
    request.app[HUB].topics.setdefault(name, set())
    return web.json_response({"name": name}, status=201)


async def handle_frame(hub: Hub, ws: web.WebSocketResponse, frame: dict[str, Any]) -> None:
    match frame.get("type"):
        case "subscribe":
            topic = frame.get("topic")
            if topic not in hub.topics:
                await ws.send_json({"type": "error", "code": "unknown_topic", "message": str(topic)})
                return
            # Gateway subscribers only receive topic events.
            hub.sockets.discard(ws)
            hub.topics[topic].add(ws)
            await ws.send_json({"type": "ack", "request_type": "subscribe", "topic": topic})
        case "publish":
            topic = frame.get("topic")
            subscribers = hub.topics.get(topic)
            if subscribers is None:
                await ws.send_json({"type": "error", "code": "unknown_topic", "message": str(topic)})
                return
            hub.sockets.discard(ws)
            event = json.dumps({"type": "event", "topic": topic, "data": frame.get("data")})
            for subscriber in list(subscribers):
                if not subscriber.closed:
                    await subscriber.send_str(event)
            await ws.send_json({"type": "ack", "request_type": "publish", "topic": topic})
        case other:
            await ws.send_json({"type": "error", "code": "bad_request", "message": f"unknown frame {other!r}"})


async def websocket(request: web.Request) -> web.WebSocketResponse:
    hub = request.app[HUB]
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    hub.sockets.add(ws)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    await ws.send_json({"type": "error", "code": "bad_request", "message": "invalid JSON"})
                    continue
                await handle_frame(hub, ws, frame)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket error: %s", ws.exception())
    finally:
        hub.sockets.discard(ws)
        for subscribers in hub.topics.values():
            subscribers.discard(ws)
    return ws


def create_app() -> web.Application:
    app = web.Application()
    app[HUB] = Hub()
    app.router.add_get("/", index)
    app.router.add_post("/trigger", trigger)
    app.router.add_get("/poll", poll)
    app.router.add_get("/events", events)
    app.router.add_post("/topics", create_topic)
    app.router.add_get("/ws", websocket)
    return app


async def main(host: str, port: int) -> None:
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    print(READY_MARKER, flush=True)
    logger.info("Listening on http://%s:%d", host, port)

    try:
        await asyncio.Future()
    finally:
        await runner.cleanup()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="rtbench reference server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args()
    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        pass
