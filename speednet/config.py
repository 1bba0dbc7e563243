"""
speednet Configuration

TestConfig is the agreed configuration of one throughput test. The client
builds it from the command line, ships it inside ClientHello, and the server
stores it in its registry. Every stream worker gets the same immutable copy.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_BUFFER_LEN,
    DEFAULT_DURATION,
    DEFAULT_PARALLEL,
    DEFAULT_PORT,
    MAX_BUFFER_LEN,
    MAX_DSCP,
    MIN_BUFFER_LEN,
)

logger = logging.getLogger("Speednet.Config")


class TransportKind(str, Enum):
    """Transport used by the data streams"""
    TCP = "tcp"
    UDP = "udp"


class Direction(str, Enum):
    """Direction of the data flow, seen from the client"""
    UPLOAD = "upload"       # Client sends to server
    DOWNLOAD = "download"   # Server sends to client (revert)


def clamp_buffer_len(length: int) -> int:
    """Clamp a requested buffer length into [MIN_BUFFER_LEN, MAX_BUFFER_LEN]"""
    return max(MIN_BUFFER_LEN, min(length, MAX_BUFFER_LEN))


def total_packets(duration: int, bandwidth: int, length: int) -> int:
    """
    Number of buffers a throttled sender should push over the whole test

    Args:
        duration: Test duration in seconds
        bandwidth: Target bandwidth in bits/sec (0 = unlimited)
        length: Requested buffer length in bytes (clamped here)

    Returns:
        Packet budget, 0 when the rate is unlimited
    """
    if not bandwidth:
        return 0
    return (duration * bandwidth) // (8 * clamp_buffer_len(length))


class TestConfig(BaseModel):
    """
    Throughput test configuration

    Attributes:
        hostname: Server address the client connects to
        port: Server control port
        transport: TCP or UDP data streams
        direction: Upload (client sends) or download (server sends)
        dscp: DSCP value applied to data sockets
        mark: Firewall mark (SO_MARK) applied to data sockets
        bind: Local address the client binds its sockets to
        bandwidth: Target bandwidth in bits/sec, 0 or None for unlimited
        parallel: Number of parallel data streams
        length: Requested buffer length in bytes
        time: Test duration in seconds
    """
    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    hostname: str
    port: int = Field(DEFAULT_PORT, ge=0, le=65535)
    transport: TransportKind = TransportKind.TCP
    direction: Direction = Direction.UPLOAD
    dscp: Optional[int] = Field(None, ge=0, le=MAX_DSCP)
    mark: Optional[int] = Field(None, ge=0)
    bind: Optional[str] = None
    bandwidth: Optional[int] = Field(None, ge=0)
    parallel: int = Field(DEFAULT_PARALLEL, ge=1)
    length: int = Field(DEFAULT_BUFFER_LEN, ge=0)
    time: int = Field(DEFAULT_DURATION, ge=0)

    @property
    def buffer_len(self) -> int:
        """Clamped buffer length"""
        return clamp_buffer_len(self.length)

    @property
    def target_bandwidth(self) -> int:
        """Target bandwidth in bits/sec, 0 when unlimited"""
        return self.bandwidth or 0

    @property
    def total_packets(self) -> int:
        """Packet budget for a throttled test, 0 when unlimited"""
        return total_packets(self.time, self.target_bandwidth, self.length)

    @property
    def is_udp(self) -> bool:
        return self.transport == TransportKind.UDP

    @property
    def is_download(self) -> bool:
        return self.direction == Direction.DOWNLOAD

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class ServerConfig:
    """speednet server configuration"""
    bind: Optional[str] = None
    port: int = DEFAULT_PORT

    @property
    def listen_host(self) -> str:
        # Unspecified IPv6 address gives a dual-stack listener
        return self.bind or "::"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bind": self.bind,
            "port": self.port,
        }


def load_env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Read speednet settings from the environment

    Recognised variables: SPEEDNET_PORT, SPEEDNET_BIND, SPEEDNET_LOG_LEVEL.
    Invalid values are logged and ignored.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        Dictionary of overrides keyed by setting name
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    port = environ.get("SPEEDNET_PORT")
    if port:
        try:
            value = int(port)
            if not 0 <= value <= 65535:
                raise ValueError(f"out of range: {value}")
            overrides["port"] = value
        except ValueError as e:
            logger.warning(f"Ignoring invalid SPEEDNET_PORT {port!r}: {e}")

    bind = environ.get("SPEEDNET_BIND")
    if bind:
        overrides["bind"] = bind

    level = environ.get("SPEEDNET_LOG_LEVEL")
    if level:
        if isinstance(logging.getLevelName(level.upper()), int):
            overrides["log_level"] = level.upper()
        else:
            logger.warning(f"Ignoring invalid SPEEDNET_LOG_LEVEL {level!r}")

    return overrides
