"""Core data model for test runs.

Records produced during a run are frozen dataclasses. Each knows how to
convert itself to and from a JSON-compatible structure so results can be
persisted and reloaded without loss.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from rtbench.config import TestConfiguration

# Epoch-aligned origin for the monotonic clock, same idea as
# performance.timeOrigin in the browser.
_EPOCH_ANCHOR_MS: Final[float] = time.time() * 1000.0 - time.monotonic() * 1000.0


def now_ms() -> float:
    """Current time in milliseconds on the shared clock.

    Monotonic within the process and aligned to the Unix epoch, so values can
    be compared with timestamps reported by browser clients on the same host.
    """
    return _EPOCH_ANCHOR_MS + time.monotonic() * 1000.0


class SendMode(str, Enum):
    """How an adapter wants the message burst delivered."""

    BURST = "burst"  # One trigger call carrying count=M
    PER_MESSAGE = "per_message"  # M trigger calls carrying count=1


class RunStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True, slots=True)
class MessageSpec:
    """Arguments of a single trigger call."""

    count: int
    payload_size: int
    start_seq: int = 1

    @property
    def last_seq(self) -> int:
        return self.start_seq + self.count - 1


@dataclass(frozen=True, slots=True)
class SendAck:
    """Acknowledgement returned by an adapter trigger."""

    accepted: int
    detail: str = ""


@dataclass(frozen=True, slots=True)
class UsageSample:
    subject_id: str
    timestamp_ms: float
    cpu_percentage: float
    memory_bytes: int

    def to_json(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "timestamp_ms": self.timestamp_ms,
            "cpu_percentage": self.cpu_percentage,
            "memory_bytes": self.memory_bytes,
        }

    @staticmethod
    def from_json(value: dict[str, Any]) -> UsageSample:
        return UsageSample(
            subject_id=value["subject_id"],
            timestamp_ms=float(value["timestamp_ms"]),
            cpu_percentage=float(value["cpu_percentage"]),
            memory_bytes=int(value["memory_bytes"]),
        )


@dataclass(frozen=True, slots=True)
class MessageEvent:
    """One message observed by one client."""

    client_id: str
    message_seq: int
    received_at_ms: float


@dataclass(frozen=True, slots=True)
class ClientLatency:
    """Receipt window of a single client.

    ``first_received_at`` and ``last_received_at`` are ``None`` when the
    client received nothing.
    """

    first_received_at: float | None
    last_received_at: float | None
    received_count: int = 0
    incomplete: bool = False
    errors: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "first_received_at": self.first_received_at,
            "last_received_at": self.last_received_at,
            "received_count": self.received_count,
            "incomplete": self.incomplete,
            "errors": self.errors,
        }

    @staticmethod
    def from_json(value: dict[str, Any]) -> ClientLatency:
        return ClientLatency(
            first_received_at=value["first_received_at"],
            last_received_at=value["last_received_at"],
            received_count=int(value["received_count"]),
            incomplete=bool(value["incomplete"]),
            errors=int(value.get("errors", 0)),
        )


@dataclass(frozen=True, slots=True)
class RunResult:
    """Frozen outcome of one run of a configuration."""

    config: TestConfiguration
    repetition: int
    send_started_at: float | None
    per_client_latency: dict[str, ClientLatency]
    usage_series: dict[str, tuple[UsageSample, ...]]
    status: RunStatus = RunStatus.COMPLETE
    incomplete_reason: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status is RunStatus.COMPLETE

    def incomplete_clients(self) -> list[str]:
        return [cid for cid, lat in self.per_client_latency.items() if lat.incomplete]

    def to_json(self) -> dict[str, Any]:
        return {
            "config": self.config.model_dump(mode="json"),
            "repetition": self.repetition,
            "send_started_at": self.send_started_at,
            "status": self.status.value,
            "incomplete_reason": self.incomplete_reason,
            "per_client_latency": {
                cid: lat.to_json() for cid, lat in self.per_client_latency.items()
            },
            "usage_series": {
                sid: [s.to_json() for s in series]
                for sid, series in self.usage_series.items()
            },
        }

    @staticmethod
    def from_json(value: dict[str, Any]) -> RunResult:
        return RunResult(
            config=TestConfiguration.model_validate(value["config"]),
            repetition=int(value["repetition"]),
            send_started_at=value["send_started_at"],
            per_client_latency={
                cid: ClientLatency.from_json(lat)
                for cid, lat in value["per_client_latency"].items()
            },
            usage_series={
                sid: tuple(UsageSample.from_json(s) for s in series)
                for sid, series in value["usage_series"].items()
            },
            status=RunStatus(value["status"]),
            incomplete_reason=value.get("incomplete_reason"),
        )


@dataclass(frozen=True, slots=True)
class MetricSummary:
    mean: float
    variance: float
    count: int

    def to_json(self) -> dict[str, Any]:
        return {"mean": self.mean, "variance": self.variance, "count": self.count}

    @staticmethod
    def from_json(value: dict[str, Any]) -> MetricSummary:
        return MetricSummary(
            mean=float(value["mean"]),
            variance=float(value["variance"]),
            count=int(value["count"]),
        )


@dataclass(frozen=True, slots=True)
class RunFailure:
    """A repetition that aborted, kept when failures do not stop the set."""

    repetition: int
    code: str
    phase: str | None
    reason: str

    def to_json(self) -> dict[str, Any]:
        return {
            "repetition": self.repetition,
            "code": self.code,
            "phase": self.phase,
            "reason": self.reason,
        }

    @staticmethod
    def from_json(value: dict[str, Any]) -> RunFailure:
        return RunFailure(
            repetition=int(value["repetition"]),
            code=value["code"],
            phase=value.get("phase"),
            reason=value["reason"],
        )


@dataclass(frozen=True, slots=True)
class AggregateResult:
    """Reduction of all repetitions of one configuration."""

    config: TestConfiguration
    runs: tuple[RunResult, ...]
    metrics: dict[str, MetricSummary]
    failures: tuple[RunFailure, ...] = field(default=())

    @property
    def incomplete_runs(self) -> int:
        return sum(1 for run in self.runs if not run.is_complete)

    def to_json(self) -> dict[str, Any]:
        return {
            "config": self.config.model_dump(mode="json"),
            "metrics": {name: m.to_json() for name, m in self.metrics.items()},
            "runs": [run.to_json() for run in self.runs],
            "failures": [f.to_json() for f in self.failures],
        }

    @staticmethod
    def from_json(value: dict[str, Any]) -> AggregateResult:
        return AggregateResult(
            config=TestConfiguration.model_validate(value["config"]),
            runs=tuple(RunResult.from_json(run) for run in value["runs"]),
            metrics={
                name: MetricSummary.from_json(m) for name, m in value["metrics"].items()
            },
            failures=tuple(RunFailure.from_json(f) for f in value.get("failures", [])),
        )
