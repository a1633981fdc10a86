"""Protocol adapters and their registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rtbench.adapters.base import ProtocolAdapter, build_client_script
from rtbench.adapters.gateway import PubSubGatewayAdapter
from rtbench.adapters.http import HttpTriggerAdapter
from rtbench.adapters.polling import LongPollingAdapter
from rtbench.adapters.socketio import SocketIOAdapter
from rtbench.adapters.sse import ServerSentEventsAdapter
from rtbench.adapters.websocket import WebSocketAdapter
from rtbench.error import ConfigurationError

if TYPE_CHECKING:
    from rtbench.config import HarnessSettings

_REGISTRY: dict[str, type[ProtocolAdapter]] = {}


def register_adapter(cls: type[ProtocolAdapter]) -> type[ProtocolAdapter]:
    """Register an adapter class under its ``name``. Usable as a decorator."""
    if cls.name in _REGISTRY and _REGISTRY[cls.name] is not cls:
        raise ConfigurationError(f"protocol {cls.name!r} is already registered")
    _REGISTRY[cls.name] = cls
    return cls


for _cls in (
    LongPollingAdapter,
    ServerSentEventsAdapter,
    WebSocketAdapter,
    SocketIOAdapter,
    PubSubGatewayAdapter,
):
    register_adapter(_cls)


def available_protocols() -> list[str]:
    return sorted(_REGISTRY)


def get_adapter(name: str, settings: HarnessSettings) -> ProtocolAdapter:
    """Instantiate the adapter for a protocol.

    Raises:
        ConfigurationError: If no adapter is registered under ``name``
    """
    try:
        cls = _REGISTRY[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown protocol {name!r}, expected one of: {', '.join(available_protocols())}"
        ) from None
    return cls(settings)


__all__ = [
    "ProtocolAdapter",
    "HttpTriggerAdapter",
    "LongPollingAdapter",
    "ServerSentEventsAdapter",
    "WebSocketAdapter",
    "SocketIOAdapter",
    "PubSubGatewayAdapter",
    "available_protocols",
    "build_client_script",
    "get_adapter",
    "register_adapter",
]
