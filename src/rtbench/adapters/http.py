"""HTTP trigger endpoint shared by adapters of cross-language servers.

Servers written in another runtime cannot be invoked directly, so they
expose ``POST /trigger``. The body is ``{"count", "size", "seq"}``. The
server then pushes messages ``seq .. seq + count - 1`` to every connected
client through its own transport, so the measured path is the real one.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, ClassVar

import aiohttp

from rtbench.adapters.base import ProtocolAdapter
from rtbench.error import AdapterError
from rtbench.types import MessageSpec, SendAck

if TYPE_CHECKING:
    from rtbench.config import HarnessSettings
    from rtbench.supervisor import ServerSubject

logger = logging.getLogger(__name__)


class HttpTriggerAdapter(ProtocolAdapter):
    """Base for adapters whose server is triggered over HTTP."""

    trigger_path: ClassVar[str] = "/trigger"

    def __init__(self, settings: HarnessSettings) -> None:
        super().__init__(settings)
        self._session: aiohttp.ClientSession | None = None

    async def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def trigger_url(self, endpoint: str) -> str:
        return endpoint.rstrip("/") + self.trigger_path

    async def trigger_send(self, server: ServerSubject, spec: MessageSpec) -> SendAck:
        session = await self._http()
        url = self.trigger_url(server.endpoint)
        body = {"count": spec.count, "size": spec.payload_size, "seq": spec.start_seq}

        try:
            async with session.post(
                url,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.settings.trigger_timeout),
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    raise AdapterError(
                        f"{self.name} trigger returned HTTP {response.status}: {text[:200]}"
                    )
        except aiohttp.ClientError as e:
            raise AdapterError(f"{self.name} trigger failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise AdapterError(
                f"{self.name} trigger timed out after {self.settings.trigger_timeout:.1f}s"
            ) from e

        accepted = spec.count
        if text:
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Non-JSON trigger response from %s: %r", url, text[:200])
            else:
                if isinstance(data, dict) and isinstance(data.get("accepted"), int):
                    accepted = data["accepted"]
        return SendAck(accepted=accepted, detail=text[:200])

    async def teardown(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
