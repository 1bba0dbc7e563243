"""
speednet - Network throughput tester

A client negotiates a test with a server over a TCP control connection,
then opens one or more parallel TCP or UDP data streams and either floods
or receives traffic for a fixed duration, optionally shaped to a target
bitrate.

Usage:
    from speednet import SpeednetServer, ServerConfig, TestConfig, run_client

    server = SpeednetServer(ServerConfig(port=4000))
    await server.start()

    report = await run_client(TestConfig(hostname="192.0.2.1", time=10))
    for stream in report.streams:
        print(stream.summary())
"""

from .config import (
    Direction,
    ServerConfig,
    TestConfig,
    TransportKind,
    clamp_buffer_len,
    total_packets,
)
from .errors import (
    ConnectionClosed,
    DecodeError,
    FramingError,
    ProtocolViolation,
    RegistryFull,
    SpeednetError,
    StreamIOError,
    TransportConnectError,
    UnknownTest,
)
from .message import (
    ClientHello,
    ClientStartTest,
    ClientStreamHello,
    Message,
    ServerHello,
    ServerStreamHello,
    ServerTestUpdate,
    decode_message,
    encode_message,
)
from .pktgenerator import ProgressUpdate, QueueObserver
from .registry import TestRegistry
from .report import RunReport, StreamReport
from .client import CoordinatorState, TestCoordinator, run_client
from .server import SpeednetServer, run_server

__version__ = "0.1.0"

__all__ = [
    # Config
    "Direction",
    "ServerConfig",
    "TestConfig",
    "TransportKind",
    "clamp_buffer_len",
    "total_packets",
    # Errors
    "ConnectionClosed",
    "DecodeError",
    "FramingError",
    "ProtocolViolation",
    "RegistryFull",
    "SpeednetError",
    "StreamIOError",
    "TransportConnectError",
    "UnknownTest",
    # Messages
    "Message",
    "ClientHello",
    "ServerHello",
    "ClientStreamHello",
    "ServerStreamHello",
    "ClientStartTest",
    "ServerTestUpdate",
    "encode_message",
    "decode_message",
    # Packet generator
    "ProgressUpdate",
    "QueueObserver",
    # Registry / reports
    "TestRegistry",
    "RunReport",
    "StreamReport",
    # Client / server
    "CoordinatorState",
    "TestCoordinator",
    "run_client",
    "SpeednetServer",
    "run_server",
]
