"""
speednet Client

1. TCP/UDP upload
   - [ctl]  Client sends ClientHello with its config, server replies ServerHello(test_id)
   - [data] Client opens N data streams, each announced with ClientStreamHello
   - [ctl]  Client sends ClientStartTest once every stream is initialized
   - [data] Client sends on every data stream for the test duration

2. TCP/UDP download (revert)
   - Same negotiation, then the server sends on every data stream and the
     client receives until the server ends the stream
"""

import asyncio
import functools
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from . import pktgenerator
from .config import TestConfig
from .constants import DATA_READER_LIMIT, UDP_HELLO_ATTEMPTS, UDP_HELLO_TIMEOUT
from .errors import SpeednetError, TransportConnectError
from .message import (
    ClientHello,
    ClientStartTest,
    ClientStreamHello,
    ServerHello,
    ServerStreamHello,
    decode_datagram,
    encode_message,
    expect_message,
    recv_message,
    send_message,
)
from .pktgenerator import ProgressUpdate
from .report import CpuSampler, RunReport, StreamReport, StreamRole
from .transport import DatagramChannel, StreamChannel

logger = logging.getLogger("Speednet.Client")

# Called with (stream_id, update)
StreamObserver = Callable[[int, ProgressUpdate], None]


class CoordinatorState(Enum):
    """Client negotiation state"""
    IDLE = "idle"
    HELLO_SENT = "hello_sent"
    NEGOTIATED = "negotiated"
    STREAMS_RUNNING = "streams_running"
    COMPLETED = "completed"


class ClientStream:
    """
    Client side of one data stream

    Opens its own connection, announces the test id, waits for the
    coordinator's start signal, then sends (upload) or receives (download).
    Any failure ends up in the stream's report; it never escapes run().
    """

    def __init__(self, config: TestConfig, test_id: int, stream_id: int,
                 on_update: Optional[StreamObserver] = None):
        self.config = config
        self.test_id = test_id
        self.stream_id = stream_id
        self.on_update = on_update
        self.ready = asyncio.Event()
        self.role = StreamRole.RECV if config.is_download else StreamRole.SEND

    async def open(self):
        """Open and announce the data stream; returns the channel"""
        if self.config.is_udp:
            return await self._open_udp()
        return await self._open_tcp()

    async def _open_tcp(self) -> StreamChannel:
        channel = await StreamChannel.connect(
            self.config.hostname,
            self.config.port,
            bind=self.config.bind,
            dscp=self.config.dscp,
            mark=self.config.mark,
        )
        try:
            await send_message(channel, ClientStreamHello(test_id=self.test_id, stream_id=self.stream_id))
            expect_message(await recv_message(channel), ServerStreamHello, "on data stream")
            channel.set_read_limit(max(self.config.buffer_len, DATA_READER_LIMIT))
        except BaseException:
            await channel.close()
            raise
        return channel

    async def _open_udp(self) -> DatagramChannel:
        channel, server_addr = await DatagramChannel.open(
            self.config.hostname,
            self.config.port,
            bind=self.config.bind,
            dscp=self.config.dscp,
            mark=self.config.mark,
        )
        hello = encode_message(ClientStreamHello(test_id=self.test_id, stream_id=self.stream_id))
        try:
            for attempt in range(1, UDP_HELLO_ATTEMPTS + 1):
                await channel.sendto(hello, server_addr)
                stream_addr = await self._wait_udp_ack(channel)
                if stream_addr is not None:
                    # The server serves this stream from a dedicated endpoint
                    channel.connect(stream_addr)
                    return channel
                logger.debug(f"[Client] Stream {self.stream_id}: no ServerStreamHello, attempt {attempt}")
        except BaseException:
            await channel.close()
            raise

        await channel.close()
        raise TransportConnectError(
            f"No ServerStreamHello after {UDP_HELLO_ATTEMPTS} attempts"
        )

    async def _wait_udp_ack(self, channel: DatagramChannel):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + UDP_HELLO_TIMEOUT
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                datagram, addr = await asyncio.wait_for(channel.recvfrom(65535), remaining)
            except asyncio.TimeoutError:
                return None
            try:
                msg = decode_datagram(datagram)
            except SpeednetError as e:
                logger.debug(f"[Client] Stream {self.stream_id}: ignoring datagram from {addr}: {e}")
                continue
            expect_message(msg, ServerStreamHello, "on data stream")
            return addr

    async def run(self, start: asyncio.Event) -> StreamReport:
        """
        Run the stream to completion

        Args:
            start: Set by the coordinator once every stream is initialized

        Returns:
            Report for this stream
        """
        report = StreamReport(
            stream_id=self.stream_id,
            role=self.role,
            transport=self.config.transport,
            test_id=self.test_id,
        )
        observer = None
        if self.on_update:
            observer = functools.partial(self.on_update, self.stream_id)

        channel = None
        try:
            channel = await self.open()
            self.ready.set()
            await start.wait()

            if self.role == StreamRole.SEND:
                logger.info(f"[Client] Stream {self.stream_id}: {self.config.transport.value} upload")
                report.final = await pktgenerator.send(self.config, channel, observer)
                await channel.finish()
            else:
                logger.info(f"[Client] Stream {self.stream_id}: {self.config.transport.value} download")
                report.final = await pktgenerator.recv(self.config, channel, observer)

            logger.info(f"[Client] {report.summary()}")

        except Exception as e:
            report.error = str(e)
            logger.error(f"[Client] Failed to run stream {self.stream_id}: {e}")

        finally:
            self.ready.set()
            if channel is not None:
                await channel.close()

        return report


class TestCoordinator:
    """
    Client negotiation state machine and stream orchestrator

    States:
    - IDLE: Nothing sent yet
    - HELLO_SENT: ClientHello sent on the control connection
    - NEGOTIATED: ServerHello received, test id known
    - STREAMS_RUNNING: `parallel` stream workers spawned
    - COMPLETED: Every worker finished, whatever its outcome
    """
    __test__ = False

    def __init__(self, config: TestConfig, on_update: Optional[StreamObserver] = None):
        """
        Initialize coordinator

        Args:
            config: Test configuration
            on_update: Progress observer, called with (stream_id, update)
        """
        self.config = config
        self.on_update = on_update
        self.state = CoordinatorState.IDLE
        self.test_id: Optional[int] = None
        self.streams: List[ClientStream] = []
        self.tasks: List[asyncio.Task] = []

    async def negotiate(self, control) -> int:
        """
        Exchange ClientHello/ServerHello on the control connection

        Returns:
            The test id allocated by the server

        Raises:
            ProtocolViolation: If the server replies with anything but ServerHello
        """
        await send_message(control, ClientHello(config=self.config))
        self.state = CoordinatorState.HELLO_SENT

        msg = expect_message(await recv_message(control), ServerHello, "after ClientHello")
        self.test_id = msg.test_id
        self.state = CoordinatorState.NEGOTIATED
        logger.info(f"[Client] Negotiated test {self.test_id}")
        return self.test_id

    async def run(self) -> RunReport:
        """
        Run a complete test

        Negotiation errors abort the run and propagate. Stream failures are
        recorded in their own reports.
        """
        logger.info(f"[Client] speednet client connect to {self.config.hostname}:{self.config.port}")
        control = await StreamChannel.connect(
            self.config.hostname, self.config.port, bind=self.config.bind
        )

        cpu = CpuSampler()
        try:
            test_id = await self.negotiate(control)
            report = RunReport(test_id=test_id, config=self.config)
            cpu.start()

            start = asyncio.Event()
            self.streams = [
                ClientStream(self.config, test_id, stream_id, self.on_update)
                for stream_id in range(self.config.parallel)
            ]
            self.tasks = tasks = [asyncio.create_task(stream.run(start)) for stream in self.streams]
            self.state = CoordinatorState.STREAMS_RUNNING

            try:
                await asyncio.gather(*(stream.ready.wait() for stream in self.streams))
                try:
                    await send_message(control, ClientStartTest())
                except SpeednetError as e:
                    logger.warning(f"[Client] Failed to send ClientStartTest: {e}")
                start.set()
                report.streams = list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                # Wait for the streams to close their channels
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

            report.end_time = datetime.now()
            report.cpu_utilization_local = cpu.stop()
            self.state = CoordinatorState.COMPLETED

        finally:
            await control.close()

        return report


async def run_client(config: TestConfig, on_update: Optional[StreamObserver] = None) -> RunReport:
    """Negotiate and run one test against a speednet server"""
    return await TestCoordinator(config, on_update).run()
