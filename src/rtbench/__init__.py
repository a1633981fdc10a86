"""rtbench - performance test harness for real-time messaging protocols

Runs a fixed workload (N clients, M messages, R repetitions) against a
protocol server in a container group, with clients hosted in headless
browsers, and records delivery latency and resource usage.
"""

from rtbench.config import HarnessSettings, TestConfiguration, load_configuration
from rtbench.error import (
    AdapterError,
    BridgeDisconnect,
    ClientConnectTimeout,
    ConfigurationError,
    DrainTimeout,
    ErrorCode,
    ExportError,
    HarnessError,
    ProvisionTimeout,
    SubjectCrashed,
)
from rtbench.types import (
    AggregateResult,
    ClientLatency,
    MessageEvent,
    MessageSpec,
    MetricSummary,
    RunFailure,
    RunResult,
    RunStatus,
    SendAck,
    SendMode,
    UsageSample,
)
from rtbench.adapters import ProtocolAdapter, available_protocols, get_adapter, register_adapter
from rtbench.bridge import BridgeEvent, ClientBridge, EventKind
from rtbench.monitor import ResourceMonitor
from rtbench.supervisor import ContainerSpec, ProcessSupervisor
from rtbench.runner import RunContext, RunPhase, TestRunner

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "HarnessSettings",
    "TestConfiguration",
    "load_configuration",
    # Errors
    "ErrorCode",
    "HarnessError",
    "ProvisionTimeout",
    "ClientConnectTimeout",
    "AdapterError",
    "BridgeDisconnect",
    "DrainTimeout",
    "ExportError",
    "ConfigurationError",
    "SubjectCrashed",
    # Data model
    "MessageSpec",
    "SendAck",
    "SendMode",
    "UsageSample",
    "MessageEvent",
    "ClientLatency",
    "RunResult",
    "RunStatus",
    "RunFailure",
    "MetricSummary",
    "AggregateResult",
    # Components
    "ProtocolAdapter",
    "available_protocols",
    "get_adapter",
    "register_adapter",
    "BridgeEvent",
    "ClientBridge",
    "EventKind",
    "ResourceMonitor",
    "ContainerSpec",
    "ProcessSupervisor",
    "RunContext",
    "RunPhase",
    "TestRunner",
]
