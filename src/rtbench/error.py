"""Error taxonomy for the test harness.

Every failure the harness reports derives from ``HarnessError``. Errors carry
an ``ErrorCode`` and, once they cross the runner boundary, the ``RunPhase``
that was active when they happened.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rtbench.runner import RunPhase


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    PROVISION_TIMEOUT = "provision_timeout"
    CLIENT_CONNECT_TIMEOUT = "client_connect_timeout"
    ADAPTER = "adapter"
    BRIDGE_DISCONNECT = "bridge_disconnect"
    DRAIN_TIMEOUT = "drain_timeout"
    EXPORT = "export"
    CONFIGURATION = "configuration"
    SUBJECT_CRASHED = "subject_crashed"


class HarnessError(Exception):
    """Base class for harness failures.

    Attributes:
        code: The error code
        reason: Human-readable description
        phase: The run phase in which the error surfaced, if known
    """

    code: ErrorCode = ErrorCode.ADAPTER

    def __init__(self, reason: str, *, phase: RunPhase | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.phase = phase

    def __str__(self) -> str:
        if self.phase is not None:
            return f"[{self.phase.value}] {self.code.value}: {self.reason}"
        return f"{self.code.value}: {self.reason}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason!r}, phase={self.phase!r})"

    def with_phase(self, phase: RunPhase) -> HarnessError:
        """Tag the error with a phase unless it already has one."""
        if self.phase is None:
            self.phase = phase
        return self


class ProvisionTimeout(HarnessError):
    code = ErrorCode.PROVISION_TIMEOUT

    @classmethod
    def waiting_for(cls, marker: str, timeout: float) -> ProvisionTimeout:
        return cls(f"readiness marker {marker!r} not seen within {timeout:.1f}s")


class ClientConnectTimeout(HarnessError):
    code = ErrorCode.CLIENT_CONNECT_TIMEOUT

    @classmethod
    def partial(cls, connected: int, expected: int, timeout: float) -> ClientConnectTimeout:
        return cls(f"{connected}/{expected} clients connected within {timeout:.1f}s")


class AdapterError(HarnessError):
    """A protocol adapter call failed."""

    code = ErrorCode.ADAPTER


class BridgeDisconnect(HarnessError):
    code = ErrorCode.BRIDGE_DISCONNECT

    def __init__(
        self,
        reason: str,
        *,
        client_id: str | None = None,
        phase: RunPhase | None = None,
    ) -> None:
        super().__init__(reason, phase=phase)
        self.client_id = client_id

    @classmethod
    def client(cls, client_id: str, detail: str = "") -> BridgeDisconnect:
        msg = f"client {client_id} disconnected"
        if detail:
            msg = f"{msg}: {detail}"
        return cls(msg, client_id=client_id)


class DrainTimeout(HarnessError):
    """Not every client received every message in time.

    Recorded on the run result rather than raised; partial data is kept.
    """

    code = ErrorCode.DRAIN_TIMEOUT

    @classmethod
    def missing(cls, incomplete: int, expected: int, timeout: float) -> DrainTimeout:
        return cls(f"{incomplete}/{expected} clients incomplete after {timeout:.1f}s")


class ExportError(HarnessError):
    code = ErrorCode.EXPORT


class ConfigurationError(HarnessError):
    code = ErrorCode.CONFIGURATION


class SubjectCrashed(HarnessError):
    """A managed subject exited while the run still needed it."""

    code = ErrorCode.SUBJECT_CRASHED

    @classmethod
    def exited(cls, subject_id: str, returncode: int | None) -> SubjectCrashed:
        return cls(f"subject {subject_id} exited with code {returncode}")
