"""Pydantic models for qb-port-sync.

Provides validated configuration models and the closed enums shared by the
sync core.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Strategy(str, Enum):
    """Port source strategies."""

    FILE = "file"
    PCP = "pcp"
    NATPMP = "natpmp"
    AUTO = "auto"


class Transport(str, Enum):
    """Transport protocol(s) a mapping covers."""

    TCP = "TCP"
    UDP = "UDP"
    BOTH = "BOTH"


class MappingSource(str, Enum):
    """Component that produced a port mapping."""

    FILE = "file"
    PCP = "pcp"
    NATPMP = "natpmp"


class DaemonState(str, Enum):
    """States of the daemon sync loop."""

    IDLE = "idle"
    NEGOTIATING = "negotiating"
    APPLYING = "applying"
    VERIFYING = "verifying"
    STEADY = "steady"
    DEGRADED = "degraded"


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    return value


class QbittorrentConfig(BaseModel):
    """qBittorrent Web API connection settings."""

    base_url: str = Field(
        default="http://127.0.0.1:8080",
        description="Base URL of the qBittorrent Web UI",
    )
    username: str = Field(default="admin", description="Web UI username")
    password: str | None = Field(
        default=None,
        description="Web UI password (falls back to QB_PORT_SYNC_QB_PASSWORD)",
    )
    bind_interface: str | None = Field(
        default=None,
        description="Network interface qBittorrent should bind to",
    )
    request_timeout: float = Field(
        default=15.0,
        gt=0.0,
        le=300.0,
        description="HTTP request timeout in seconds",
    )

    @field_validator("password", "bind_interface", mode="before")
    @classmethod
    def _empty_as_none(cls, v: object) -> object:
        return _blank_to_none(v)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            msg = f"base_url must be an http(s) URL, got {v!r}"
            raise ValueError(msg)
        return v


class ProtonVpnConfig(BaseModel):
    """Forwarded port file settings."""

    forwarded_port_path: Path | None = Field(
        default=None,
        description="File holding the forwarded port number",
    )

    @field_validator("forwarded_port_path", mode="before")
    @classmethod
    def _empty_as_none(cls, v: object) -> object:
        return _blank_to_none(v)


class PortMapConfig(BaseModel):
    """Gateway port-mapping negotiation settings."""

    internal_port: int = Field(
        default=0,
        ge=0,
        le=65535,
        description="Internal port to map (0 picks a random high port)",
    )
    protocol: Transport = Field(
        default=Transport.TCP,
        description="Transport to map: TCP, UDP or BOTH",
    )
    refresh_secs: int = Field(
        default=300,
        ge=1,
        le=86400,
        description="Requested lifetime and fallback refresh interval in seconds",
    )
    autodiscover_gateway: bool = Field(
        default=True,
        description="Derive the gateway from the default route",
    )
    gateway: str | None = Field(
        default=None,
        description="Gateway address when not autodiscovered",
    )
    enable_pcp: bool = Field(default=True, description="Enable PCP (RFC 6887)")
    enable_natpmp: bool = Field(
        default=True,
        description="Enable NAT-PMP (RFC 6886)",
    )
    request_timeout: float = Field(
        default=2.0,
        gt=0.0,
        le=30.0,
        description="Per-attempt gateway response timeout in seconds",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per backend before declaring it failed",
    )

    @field_validator("protocol", mode="before")
    @classmethod
    def _upper_protocol(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("gateway", mode="before")
    @classmethod
    def _empty_as_none(cls, v: object) -> object:
        return _blank_to_none(v)


class HealthConfig(BaseModel):
    """Health and metrics endpoint settings."""

    enabled: bool = Field(default=False, description="Serve /healthz and /metrics")
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=9184, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(default=None, description="Optional log file path")
    structured: bool = Field(
        default=False,
        description="Write JSON structured records to the log file",
    )

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("log_file", mode="before")
    @classmethod
    def _empty_as_none(cls, v: object) -> object:
        return _blank_to_none(v)


class Config(BaseModel):
    """Root configuration model."""

    qbittorrent: QbittorrentConfig = Field(default_factory=QbittorrentConfig)
    protonvpn: ProtonVpnConfig = Field(default_factory=ProtonVpnConfig)
    portmap: PortMapConfig = Field(default_factory=PortMapConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
