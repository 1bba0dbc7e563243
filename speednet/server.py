"""
speednet Server

Listens on one port for both TCP and UDP:

- TCP connections start with either ClientHello (control connection, a new
  test is negotiated) or ClientStreamHello (data stream of a known test).
- UDP datagrams on the listening socket carry ClientStreamHello; each
  announced stream is then served from its own socket connected to the
  client.

Every connection and every UDP stream runs in its own task. A failure is
logged and ends that task only; the accept loop and other tests keep going.
"""

import asyncio
import logging
import socket
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Set

from . import pktgenerator
from .config import ServerConfig, TestConfig
from .constants import DATA_READER_LIMIT, LOOKAHEAD_WINDOW, MAX_SERVER_RESULTS
from .errors import ProtocolViolation, SpeednetError, TransportConnectError
from .message import (
    ClientHello,
    ClientStartTest,
    ClientStreamHello,
    ServerHello,
    ServerStreamHello,
    decode_datagram,
    expect_message,
    recv_message,
    send_message,
)
from .pktgenerator import ProgressUpdate
from .registry import TestRegistry
from .report import StreamReport, StreamRole
from .transport import (
    STREAM_READER_LIMIT,
    DatagramChannel,
    StreamChannel,
    apply_socket_options,
    resolve,
)

logger = logging.getLogger("Speednet.Server")


@dataclass
class ServerStats:
    """speednet server statistics"""
    connections: int = 0
    tests_negotiated: int = 0
    streams_completed: int = 0
    streams_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connections": self.connections,
            "tests_negotiated": self.tests_negotiated,
            "streams_completed": self.streams_completed,
            "streams_failed": self.streams_failed,
        }


class SpeednetServer:
    """
    speednet server

    Owns the test registry and shares it with every connection handler.
    """

    def __init__(self, config: Optional[ServerConfig] = None,
                 registry: Optional[TestRegistry] = None,
                 max_results: int = MAX_SERVER_RESULTS):
        """
        Initialize server

        Args:
            config: Listen address and port
            registry: Test registry, a fresh one by default
            max_results: Number of most recent stream reports kept
        """
        self.config = config or ServerConfig()
        self.registry = registry or TestRegistry()
        self.stats = ServerStats()
        self.port = self.config.port

        self._server: Optional[asyncio.AbstractServer] = None
        self._udp: Optional[DatagramChannel] = None
        self._udp_family = socket.AF_INET6
        self._udp_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()
        # Client address -> stream channel, None until the channel is open
        self._udp_peers: Dict[Any, Optional[DatagramChannel]] = {}
        self._results: Deque[StreamReport] = deque(maxlen=max_results)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bind the TCP and UDP listeners"""
        if self._running:
            logger.warning("[Server] Already running")
            return

        host = self.config.listen_host
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, host, self.config.port,
                limit=STREAM_READER_LIMIT,
            )
        except OSError as e:
            raise TransportConnectError(f"Failed to listen on {host}:{self.config.port}: {e}") from e

        # Port 0 picks an ephemeral port; UDP shares whatever TCP got
        self.port = self._server.sockets[0].getsockname()[1]

        try:
            self._udp = await self._bind_udp(host, self.port)
        except BaseException:
            self._server.close()
            raise

        self._running = True
        self._udp_task = asyncio.create_task(self._udp_receive_loop())
        logger.info(f"[Server] speednet server listening on {host}:{self.port} (tcp+udp)")

    async def _bind_udp(self, host: str, port: int) -> DatagramChannel:
        family, sockaddr = await resolve(host, port, socket.SOCK_DGRAM, passive=True)
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(sockaddr)
        except OSError as e:
            sock.close()
            raise TransportConnectError(f"Failed to bind UDP {host}:{port}: {e}") from e
        self._udp_family = family
        return DatagramChannel(sock)

    async def serve_forever(self) -> None:
        """Start if needed and serve until cancelled"""
        if not self._running:
            await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop listening and cancel in-flight handlers"""
        if not self._running:
            return
        self._running = False

        if self._server:
            self._server.close()

        if self._udp_task:
            self._udp_task.cancel()
            try:
                await self._udp_task
            except asyncio.CancelledError:
                pass

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

        if self._udp:
            await self._udp.close()
            self._udp = None

        logger.info("[Server] Stopped")

    def _track(self, task: asyncio.Task) -> None:
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        """Serve one accepted TCP connection"""
        self._track(asyncio.current_task())
        channel = StreamChannel(reader, writer)
        self.stats.connections += 1
        logger.debug(f"[Server] Connection from {channel.peer}")

        try:
            msg = await recv_message(channel)
            if isinstance(msg, ClientHello):
                await self._handle_client_hello(channel, msg.config)
            elif isinstance(msg, ClientStreamHello):
                await self._handle_stream(channel, msg.test_id, msg.stream_id)
            else:
                raise ProtocolViolation(f"Received an unexpected message: {msg.tag}")

        except Exception as e:
            logger.error(f"[Server] Client {channel.peer} error: {e}")

        finally:
            await channel.close()

    async def _handle_client_hello(self, channel: StreamChannel, config: TestConfig) -> None:
        logger.info(f"[Server] Client config: {config.to_dict()}")

        test_id = self.registry.register(config)
        self.stats.tests_negotiated += 1

        await send_message(channel, ServerHello(test_id=test_id))
        logger.info(f"[Server] Server hello sent for test {test_id}")

        expect_message(await recv_message(channel), ClientStartTest, "after ServerHello")
        logger.info(f"[Server] Test {test_id} started")

    async def _handle_stream(self, channel, test_id: int, stream_id: int) -> None:
        # UnknownTest propagates before any reply is written
        config = self.registry.lookup(test_id)
        apply_socket_options(channel.sock, config.dscp, config.mark)
        await send_message(channel, ServerStreamHello())
        channel.set_read_limit(max(config.buffer_len, DATA_READER_LIMIT))
        await self._run_stream(config, channel, test_id, stream_id)

    async def _run_stream(self, config: TestConfig, channel, test_id: int,
                          stream_id: int) -> StreamReport:
        """Run the complementary role of the client's direction"""
        label = f"test {test_id} stream {stream_id}"
        report = StreamReport(
            stream_id=stream_id,
            role=StreamRole.SEND if config.is_download else StreamRole.RECV,
            transport=config.transport,
            test_id=test_id,
        )

        def on_update(update: ProgressUpdate) -> None:
            logger.info(
                f"[Server] {label}: elapsed {update.elapsed_seconds}s "
                f"pkts {update.pktcount} expected {update.pktcount_expected}"
            )

        try:
            if report.role == StreamRole.SEND:
                logger.info(f"[Server] {label}: {config.transport.value} download, sending")
                report.final = await pktgenerator.send(config, channel, on_update)
                await channel.finish()
            else:
                logger.info(f"[Server] {label}: {config.transport.value} upload, receiving")
                report.final = await pktgenerator.recv(config, channel, on_update)
        except SpeednetError as e:
            report.error = str(e)
            self.stats.streams_failed += 1
            raise
        finally:
            self._results.append(report)

        self.stats.streams_completed += 1
        logger.info(f"[Server] {label} done: {report.summary()}")
        return report

    async def _udp_receive_loop(self) -> None:
        """Accept UDP stream announcements"""
        while self._running:
            try:
                datagram, addr = await self._udp.recvfrom(LOOKAHEAD_WINDOW + 1)
            except asyncio.CancelledError:
                break
            except SpeednetError as e:
                logger.error(f"[Server] UDP receive error: {e}")
                await asyncio.sleep(0.1)
                continue

            try:
                msg = decode_datagram(datagram)
                expect_message(msg, ClientStreamHello, "on UDP listener")
            except SpeednetError as e:
                logger.warning(f"[Server] Dropping datagram from {addr}: {e}")
                continue

            if addr in self._udp_peers:
                # Our ServerStreamHello was lost; acknowledge again from the stream's endpoint
                await self._resend_stream_hello(addr)
                continue

            self._udp_peers[addr] = None
            task = asyncio.create_task(self._handle_udp_stream(msg, addr))
            self._track(task)

    async def _resend_stream_hello(self, addr: Any) -> None:
        channel = self._udp_peers.get(addr)
        if channel is None:
            logger.debug(f"[Server] Duplicate ClientStreamHello from {addr}, stream not open yet")
            return
        logger.debug(f"[Server] Duplicate ClientStreamHello from {addr}, acknowledging again")
        try:
            await send_message(channel, ServerStreamHello())
        except SpeednetError as e:
            logger.warning(f"[Server] Failed to resend ServerStreamHello to {addr}: {e}")

    async def _handle_udp_stream(self, msg: ClientStreamHello, addr: Any) -> None:
        channel = None
        try:
            config = self.registry.lookup(msg.test_id)
            channel = DatagramChannel.reply_to(
                self._udp_family, self.config.listen_host, addr,
                dscp=config.dscp, mark=config.mark,
            )
            self._udp_peers[addr] = channel
            await send_message(channel, ServerStreamHello())
            await self._run_stream(config, channel, msg.test_id, msg.stream_id)

        except Exception as e:
            logger.error(f"[Server] UDP client {addr} error: {e}")

        finally:
            self._udp_peers.pop(addr, None)
            if channel is not None:
                await channel.close()

    def get_results(self) -> List[StreamReport]:
        """Reports of the most recent finished or failed data streams, oldest first"""
        return list(self._results)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "config": self.config.to_dict(),
            "port": self.port,
            "registry": self.registry.get_statistics(),
            "statistics": self.stats.to_dict(),
            "result_count": len(self._results),
        }


async def run_server(config: ServerConfig) -> None:
    """Run a speednet server until cancelled"""
    server = SpeednetServer(config)
    await server.serve_forever()
