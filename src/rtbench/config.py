"""Pydantic configuration models for the test harness.

``TestConfiguration`` describes one workload and is frozen once created.
``HarnessSettings`` carries environment-level knobs (timeouts, sampling
cadence, browser partitioning) that stay the same across protocols so runs
remain comparable.

Run records themselves are plain frozen dataclasses (see ``rtbench.types``);
pydantic is only used at the configuration surface.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rtbench.error import ConfigurationError


class TestConfiguration(BaseModel):
    """One workload: N clients each receiving M ordered messages, R times.

    Attributes:
        protocol: Adapter name (see ``rtbench.adapters.available_protocols``)
        clients: Number of concurrent clients N
        messages: Number of messages M each client must receive
        payload_size: Size in bytes of each message payload
        repetitions: Number of repeated runs R
        output_path: File the aggregate result is written to
    """

    __test__: ClassVar[bool] = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    protocol: str = Field(..., description="Protocol adapter name")
    clients: int = Field(..., gt=0, description="Concurrent clients N")
    messages: int = Field(..., gt=0, description="Messages per client M")
    payload_size: int = Field(default=64, ge=0, description="Payload bytes")
    repetitions: int = Field(default=1, gt=0, description="Repetitions R")
    output_path: Path = Field(..., description="Aggregate result file")

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Normalize the protocol name."""
        v = v.strip().lower()
        if not v:
            raise ValueError("protocol cannot be empty")
        return v

    @field_validator("output_path")
    @classmethod
    def validate_output_path(cls, v: Path) -> Path:
        if not v.name or v.is_dir():
            raise ValueError("output_path must name a file")
        return v


class HarnessSettings(BaseModel):
    """Environment configuration shared by every run.

    Timeouts are in seconds, the sampling interval in milliseconds.
    """

    model_config = ConfigDict(frozen=False, extra="forbid")

    provision_timeout: float = Field(default=120.0, gt=0)
    connect_timeout: float = Field(default=60.0, gt=0)
    drain_timeout: float = Field(default=120.0, gt=0)
    trigger_timeout: float = Field(default=30.0, gt=0)
    teardown_timeout: float = Field(default=30.0, gt=0)
    sample_interval_ms: int = Field(default=500, gt=0)

    clients_per_browser: int = Field(
        default=6,
        gt=0,
        description="Pages hosted by one browser process",
    )
    max_browsers: int = Field(default=64, gt=0)
    headless: bool = True

    compose_command: list[str] = Field(default_factory=lambda: ["docker", "compose"])
    servers_dir: Path = Field(default=Path("servers"))
    server_host: str = "localhost"
    server_port: int = Field(default=8080, gt=0, le=65535)

    bridge_queue_size: int = Field(
        default=200_000,
        ge=0,
        description="Maximum buffered bridge events, 0 for unbounded",
    )
    continue_on_failure: bool = False
    include_incomplete: bool = False

    @field_validator("compose_command")
    @classmethod
    def validate_compose_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("compose_command cannot be empty")
        return v

    @classmethod
    def from_file(cls, path: Path) -> HarnessSettings:
        """Load settings from a JSON file."""
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"cannot read settings {path}: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"invalid settings {path}: {e}") from e


def load_configuration(**values: Any) -> TestConfiguration:
    """Build a ``TestConfiguration``, raising ``ConfigurationError`` on bad input."""
    try:
        return TestConfiguration(**values)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def validate_against_settings(config: TestConfiguration, settings: HarnessSettings, cap: int) -> None:
    """Reject combinations the harness cannot run fairly.

    Args:
        config: The workload
        settings: Environment settings
        cap: Effective clients-per-browser cap for the chosen adapter
    """
    browsers_needed = -(-config.clients // cap)
    if browsers_needed > settings.max_browsers:
        raise ConfigurationError(
            f"{config.clients} clients need {browsers_needed} browsers at "
            f"{cap} per browser, above max_browsers={settings.max_browsers}"
        )
