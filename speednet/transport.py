"""
speednet Transports

Two channel flavours carry both control messages and test payload:

- StreamChannel: TCP connection wrapped in asyncio streams (reliable, ordered)
- DatagramChannel: UDP socket connected to a single peer (unreliable, unordered)

Both expose the same small interface used by the packet generator and the
framed messaging layer:

    await channel.send(data) -> int      # 0 when the peer is gone
    await channel.recv(size) -> bytes    # b"" at end of stream
    await channel.write_frame(frame)
    await channel.finish()               # signal end of stream
    await channel.close()
"""

import asyncio
import logging
import socket
from typing import Any, Optional, Tuple

from .constants import (
    DSCP_SHIFT,
    LOOKAHEAD_WINDOW,
    SO_MARK,
    UDP_END_MARKERS,
)
from .errors import StreamIOError, TransportConnectError

logger = logging.getLogger("Speednet.Transport")

# readuntil() on a reader with this limit fails once LOOKAHEAD_WINDOW bytes
# are buffered without a sentinel
STREAM_READER_LIMIT = LOOKAHEAD_WINDOW - 1


async def resolve(host: str, port: int, socktype: int,
                  passive: bool = False) -> Tuple[int, Any]:
    """
    Resolve a host/port pair to the first usable (family, sockaddr)

    Raises:
        TransportConnectError: If the name does not resolve
    """
    loop = asyncio.get_running_loop()
    flags = socket.AI_PASSIVE if passive else 0
    try:
        infos = await loop.getaddrinfo(host, port, type=socktype, flags=flags)
    except socket.gaierror as e:
        raise TransportConnectError(f"Failed to resolve {host}: {e}") from e
    if not infos:
        raise TransportConnectError(f"No address for {host}")
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def apply_socket_options(sock: socket.socket, dscp: Optional[int] = None,
                         mark: Optional[int] = None) -> None:
    """
    Apply DSCP and firewall mark to a data socket

    Args:
        sock: Socket to configure
        dscp: DSCP code point, written to the TOS / traffic class byte
        mark: Firewall mark (SO_MARK, Linux, needs CAP_NET_ADMIN)
    """
    try:
        if dscp is not None:
            tos = dscp << DSCP_SHIFT
            if sock.family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_TCLASS, tos)
            else:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, tos)
        if mark is not None:
            sock.setsockopt(socket.SOL_SOCKET, getattr(socket, "SO_MARK", SO_MARK), mark)
    except OSError as e:
        raise TransportConnectError(f"Failed to set socket options: {e}") from e


def _new_socket(family: int, socktype: int) -> socket.socket:
    sock = socket.socket(family, socktype)
    if family == socket.AF_INET6:
        # Accept IPv4-mapped peers on dual-stack sockets
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
    sock.setblocking(False)
    return sock


def _bind_addr(family: int, bind: Optional[str]) -> Tuple:
    host = bind or ("::" if family == socket.AF_INET6 else "0.0.0.0")
    return (host, 0)


class StreamChannel:
    """TCP channel on top of asyncio StreamReader/StreamWriter"""

    is_datagram = False

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")

    @property
    def sock(self):
        return self.writer.get_extra_info("socket")

    @property
    def read_limit(self) -> int:
        return self.reader._limit

    def set_read_limit(self, limit: int) -> None:
        """
        Change the reader's buffer limit

        Connections are opened with STREAM_READER_LIMIT so that framing
        fails within the lookahead window. Once the hello exchange is over
        only payload is read, and a limit that small makes asyncio pause the
        transport every few kilobytes.
        """
        # StreamReader has no public setter; flow control reads _limit on every feed
        self.reader._limit = limit

    @classmethod
    async def connect(cls, host: str, port: int, bind: Optional[str] = None,
                      dscp: Optional[int] = None,
                      mark: Optional[int] = None) -> "StreamChannel":
        """
        Open a new TCP connection

        Args:
            host: Server address
            port: Server port
            bind: Local address to bind to
            dscp: DSCP code point for the connection
            mark: Firewall mark for the connection

        Raises:
            TransportConnectError: If the connection cannot be established
        """
        loop = asyncio.get_running_loop()
        family, sockaddr = await resolve(host, port, socket.SOCK_STREAM)
        sock = _new_socket(family, socket.SOCK_STREAM)
        try:
            apply_socket_options(sock, dscp, mark)
            if bind:
                sock.bind(_bind_addr(family, bind))
            await loop.sock_connect(sock, sockaddr)
            reader, writer = await asyncio.open_connection(sock=sock, limit=STREAM_READER_LIMIT)
        except TransportConnectError:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            raise TransportConnectError(f"Failed to connect to {host}:{port}: {e}") from e

        logger.debug(f"[Transport] TCP connected to {host}:{port}")
        return cls(reader, writer)

    async def send(self, data: bytes) -> int:
        if self.writer.is_closing():
            return 0
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            return 0
        except OSError as e:
            raise StreamIOError(f"Failed to write: {e}", e) from e
        return len(data)

    async def recv(self, size: int) -> bytes:
        try:
            return await self.reader.read(size)
        except OSError as e:
            raise StreamIOError(f"Failed to read: {e}", e) from e

    async def write_frame(self, frame: bytes) -> None:
        try:
            self.writer.write(frame)
            await self.writer.drain()
        except OSError as e:
            raise StreamIOError(f"Failed to send message: {e}", e) from e

    async def finish(self) -> None:
        if self.writer.is_closing() or not self.writer.can_write_eof():
            return
        try:
            self.writer.write_eof()
        except OSError as e:
            logger.debug(f"[Transport] write_eof failed for {self.peer}: {e}")

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"[Transport] Error closing connection to {self.peer}: {e}")


class DatagramChannel:
    """UDP channel; the socket is connected to exactly one peer"""

    is_datagram = True

    def __init__(self, sock: socket.socket, peer: Any = None):
        self.sock = sock
        self.sock.setblocking(False)
        self.peer = peer

    @classmethod
    async def open(cls, host: str, port: int, bind: Optional[str] = None,
                   dscp: Optional[int] = None,
                   mark: Optional[int] = None) -> Tuple["DatagramChannel", Any]:
        """
        Bind a fresh UDP socket on an ephemeral local endpoint

        The socket is not connected yet; the caller connects it once the
        server tells it which endpoint serves the stream.

        Returns:
            (channel, server sockaddr)
        """
        family, sockaddr = await resolve(host, port, socket.SOCK_DGRAM)
        sock = _new_socket(family, socket.SOCK_DGRAM)
        try:
            apply_socket_options(sock, dscp, mark)
            sock.bind(_bind_addr(family, bind))
        except TransportConnectError:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            raise TransportConnectError(f"Failed to bind UDP socket: {e}") from e
        return cls(sock), sockaddr

    @classmethod
    def reply_to(cls, family: int, local_host: str, peer: Any,
                 dscp: Optional[int] = None,
                 mark: Optional[int] = None) -> "DatagramChannel":
        """Server side: fresh socket on an ephemeral port, connected to one client"""
        sock = _new_socket(family, socket.SOCK_DGRAM)
        try:
            apply_socket_options(sock, dscp, mark)
            sock.bind((local_host, 0))
            sock.connect(peer)
        except TransportConnectError:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            raise TransportConnectError(f"Failed to open UDP stream to {peer}: {e}") from e
        return cls(sock, peer)

    def connect(self, peer: Any) -> None:
        try:
            self.sock.connect(peer)
        except OSError as e:
            raise TransportConnectError(f"Failed to connect UDP socket to {peer}: {e}") from e
        self.peer = peer

    async def sendto(self, frame: bytes, peer: Any) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendto(self.sock, frame, peer)
        except OSError as e:
            raise StreamIOError(f"Failed to send datagram: {e}", e) from e

    async def recvfrom(self, size: int) -> Tuple[bytes, Any]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.sock_recvfrom(self.sock, size)
        except OSError as e:
            raise StreamIOError(f"Failed to receive datagram: {e}", e) from e

    async def send(self, data: bytes) -> int:
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendall(self.sock, data)
        except ConnectionRefusedError:
            # ICMP port unreachable: the peer socket is gone
            return 0
        except OSError as e:
            raise StreamIOError(f"Failed to write: {e}", e) from e
        return len(data)

    async def recv(self, size: int) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.sock_recv(self.sock, size)
        except ConnectionRefusedError:
            return b""
        except OSError as e:
            raise StreamIOError(f"Failed to read: {e}", e) from e

    async def write_frame(self, frame: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendall(self.sock, frame)
        except OSError as e:
            raise StreamIOError(f"Failed to send message: {e}", e) from e

    async def finish(self) -> None:
        # Empty datagrams mark the end of the stream; sent a few times as
        # any of them may be lost
        loop = asyncio.get_running_loop()
        for _ in range(UDP_END_MARKERS):
            try:
                await loop.sock_sendall(self.sock, b"")
            except ConnectionRefusedError:
                break
            except OSError as e:
                raise StreamIOError(f"Failed to send end of stream: {e}", e) from e

    async def close(self) -> None:
        self.sock.close()
