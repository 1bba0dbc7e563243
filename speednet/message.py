"""
speednet Control Messages

Messages exchanged between speednet server and client:

    ClientHello(config)                   client -> server, control connection
    ServerHello(test_id)                  server -> client, control connection
    ClientStreamHello(test_id, stream_id) client -> server, data stream
    ServerStreamHello                     server -> client, data stream
    ClientStartTest                       client -> server, control connection
    ServerTestUpdate                      reserved

Wire format: externally tagged JSON, followed by a single NUL byte.

    {"ClientHello": {"hostname": "10.0.0.1", ...}}\\0
    {"ServerHello": 3}\\0
    {"ClientStreamHello": [3, 0]}\\0
    "ServerStreamHello"\\0

JSON text never contains a raw NUL, so the sentinel is unambiguous. A frame,
sentinel included, must fit in the LOOKAHEAD_WINDOW. On a stream transport
the receiver looks for the sentinel within that window before consuming
anything; on a datagram transport one datagram carries exactly one frame.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from .config import TestConfig
from .constants import LOOKAHEAD_WINDOW, MAX_TEST_ID, MESSAGE_SENTINEL
from .errors import (
    ConnectionClosed,
    DecodeError,
    FramingError,
    ProtocolViolation,
    StreamIOError,
)

logger = logging.getLogger("Speednet.Message")


class Message(BaseModel):
    """Base class of all control messages. Variants without fields are unit messages."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def tag(self) -> str:
        return type(self).__name__

    def payload(self) -> Any:
        """JSON payload carried under the tag, None for unit messages"""
        return None

    @classmethod
    def from_payload(cls, payload: Any) -> "Message":
        if payload is not None:
            raise DecodeError(f"{cls.__name__} carries no payload")
        return cls()

    def to_wire(self) -> Any:
        payload = self.payload()
        if payload is None:
            return self.tag
        return {self.tag: payload}


class ClientHello(Message):
    """Client greets the server with its test configuration"""
    config: TestConfig

    def payload(self) -> Any:
        return self.config.to_dict()

    @classmethod
    def from_payload(cls, payload: Any) -> "ClientHello":
        if not isinstance(payload, dict):
            raise DecodeError("ClientHello payload must be an object")
        return cls.model_validate({"config": payload})


class ServerHello(Message):
    """Server replies with the test id it allocated"""
    test_id: StrictInt = Field(..., ge=0, le=MAX_TEST_ID)

    def payload(self) -> Any:
        return self.test_id

    @classmethod
    def from_payload(cls, payload: Any) -> "ServerHello":
        return cls.model_validate({"test_id": payload})


class ClientStreamHello(Message):
    """
    Client announces a new data stream for a negotiated test.

    Over UDP the client may resend it when no ServerStreamHello comes back.
    """
    test_id: StrictInt = Field(..., ge=0, le=MAX_TEST_ID)
    stream_id: StrictInt = Field(..., ge=0, le=MAX_TEST_ID)

    def payload(self) -> Any:
        return [self.test_id, self.stream_id]

    @classmethod
    def from_payload(cls, payload: Any) -> "ClientStreamHello":
        if not isinstance(payload, list) or len(payload) != 2:
            raise DecodeError("ClientStreamHello payload must be [test_id, stream_id]")
        return cls.model_validate({"test_id": payload[0], "stream_id": payload[1]})


class ServerStreamHello(Message):
    """Server acknowledges a data stream"""


class ClientStartTest(Message):
    """Client tells the server every stream is initialized"""


class ServerTestUpdate(Message):
    """Reserved for live server-side progress reporting"""


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.__name__: cls
    for cls in (
        ClientHello,
        ServerHello,
        ClientStreamHello,
        ServerStreamHello,
        ClientStartTest,
        ServerTestUpdate,
    )
}


def encode_payload(msg: Message) -> bytes:
    """Serialize a message to UTF-8 JSON, without the sentinel"""
    return json.dumps(msg.to_wire(), separators=(",", ":")).encode("utf-8")


def encode_message(msg: Message) -> bytes:
    """
    Build the complete wire frame for a message

    Raises:
        FramingError: If the frame would not fit in the receiver's lookahead window
    """
    frame = encode_payload(msg) + MESSAGE_SENTINEL
    if len(frame) > LOOKAHEAD_WINDOW:
        raise FramingError(
            f"{msg.tag} frame is {len(frame)} bytes, window is {LOOKAHEAD_WINDOW}"
        )
    return frame


def decode_message(payload: bytes) -> Message:
    """
    Parse a frame payload (sentinel already stripped)

    Raises:
        DecodeError: If the payload is not a valid message
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"Received message is not UTF-8: {e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Failed to parse message: {e}") from e

    if isinstance(data, str):
        tag, body = data, None
    elif isinstance(data, dict) and len(data) == 1:
        (tag, body), = data.items()
        if body is None:
            raise DecodeError(f"Message {tag} has a null payload")
    else:
        raise DecodeError(f"Malformed message: {text[:64]!r}")

    cls = MESSAGE_TYPES.get(tag)
    if cls is None:
        raise DecodeError(f"Unknown message {tag!r}")

    try:
        return cls.from_payload(body)
    except ValidationError as e:
        raise DecodeError(f"Invalid {tag} message: {e.error_count()} error(s)") from e


async def read_stream_frame(reader: asyncio.StreamReader) -> bytes:
    """
    Read one frame from a stream, sentinel stripped

    The reader must have been created with limit=LOOKAHEAD_WINDOW - 1 so that
    readuntil() gives up once the window is full without a sentinel; nothing
    is consumed in that case.
    """
    try:
        frame = await reader.readuntil(MESSAGE_SENTINEL)
    except asyncio.LimitOverrunError as e:
        raise FramingError(f"Recv message has no end within {LOOKAHEAD_WINDOW} bytes") from e
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            raise ConnectionClosed("Connection closed by peer") from e
        raise FramingError(
            f"Connection closed inside a message ({len(e.partial)} bytes)"
        ) from e
    except OSError as e:
        raise StreamIOError(f"Failed to read message: {e}", e) from e

    if len(frame) > LOOKAHEAD_WINDOW:
        raise FramingError(f"Recv message is {len(frame)} bytes, window is {LOOKAHEAD_WINDOW}")
    return frame[:-1]


def split_datagram_frame(datagram: bytes) -> bytes:
    """Extract the frame payload from one datagram"""
    if not datagram:
        raise ConnectionClosed("Connection closed by peer")
    if len(datagram) > LOOKAHEAD_WINDOW:
        raise FramingError(f"Datagram is {len(datagram)} bytes, window is {LOOKAHEAD_WINDOW}")
    end = datagram.find(MESSAGE_SENTINEL)
    if end < 0:
        raise FramingError("Recv message has no end")
    return datagram[:end]


def decode_datagram(datagram: bytes) -> Message:
    return decode_message(split_datagram_frame(datagram))


async def send_message(channel, msg: Message) -> None:
    """Send a control message on a StreamChannel or DatagramChannel"""
    await channel.write_frame(encode_message(msg))
    logger.debug(f"Sent {msg.tag}")


async def recv_message(channel) -> Message:
    """Receive a control message from a StreamChannel or DatagramChannel"""
    if channel.is_datagram:
        datagram = await channel.recv(LOOKAHEAD_WINDOW + 1)
        msg = decode_datagram(datagram)
    else:
        msg = decode_message(await read_stream_frame(channel.reader))
    logger.debug(f"Received {msg.tag}")
    return msg


def expect_message(msg: Message, expected: Type[Message], context: Optional[str] = None):
    """
    Check that a received message is of the expected variant

    Raises:
        ProtocolViolation: On any other variant
    """
    if not isinstance(msg, expected):
        where = f" {context}" if context else ""
        raise ProtocolViolation(f"Expected {expected.__name__}{where}, received {msg.tag}")
    return msg


__all__ = [
    "Message",
    "ClientHello",
    "ServerHello",
    "ClientStreamHello",
    "ServerStreamHello",
    "ClientStartTest",
    "ServerTestUpdate",
    "MESSAGE_TYPES",
    "encode_payload",
    "encode_message",
    "decode_message",
    "decode_datagram",
    "read_stream_frame",
    "split_datagram_frame",
    "send_message",
    "recv_message",
    "expect_message",
]
