"""
End-to-end tests against a speednet server on the loopback interface

Tests cover:
- TCP and UDP tests in both directions
- Parallel streams
- Concurrent negotiation
- Unknown test ids and protocol violations
- Client-side stream failure isolation
- UDP announce resends
- DSCP and bind address on data sockets
- Report retention and client cancellation
"""

import asyncio
import socket
import sys

import pytest

from speednet import pktgenerator
from speednet.client import ClientStream, CoordinatorState, TestCoordinator, run_client
from speednet.config import Direction, ServerConfig, TestConfig, TransportKind
from speednet.errors import ConnectionClosed, ProtocolViolation
from speednet.message import (
    ClientHello,
    ClientStartTest,
    ClientStreamHello,
    ServerHello,
    ServerStreamHello,
    encode_message,
    read_stream_frame,
    recv_message,
    send_message,
)
from speednet.report import StreamRole
from speednet.server import SpeednetServer
from speednet.transport import STREAM_READER_LIMIT, StreamChannel

from .conftest import LOOPBACK, unused_port, wait_for_results


class TestTcp:
    """TCP data streams"""

    @pytest.mark.asyncio
    async def test_upload(self, server, make_config):
        config = make_config(time=1)
        report = await run_client(config)

        assert report.test_id == 0
        assert len(report.streams) == 1
        stream = report.streams[0]
        assert stream.is_success, stream.error
        assert stream.role == StreamRole.SEND
        assert stream.bytes_transferred > 0
        assert stream.final.elapsed >= 1.0

        results = await wait_for_results(server, 1)
        assert results[0].is_success
        assert results[0].role == StreamRole.RECV
        assert results[0].test_id == 0
        assert results[0].bytes_transferred == stream.bytes_transferred

    @pytest.mark.asyncio
    async def test_download(self, server, make_config):
        config = make_config(time=1, direction=Direction.DOWNLOAD)
        report = await run_client(config)

        stream = report.streams[0]
        assert stream.is_success, stream.error
        assert stream.role == StreamRole.RECV
        assert stream.bytes_transferred > 0

        results = await wait_for_results(server, 1)
        assert results[0].role == StreamRole.SEND
        assert results[0].bytes_transferred == stream.bytes_transferred

    @pytest.mark.asyncio
    async def test_parallel_streams(self, server, make_config):
        config = make_config(time=1, parallel=3, length=1400)
        report = await run_client(config)

        assert sorted(s.stream_id for s in report.streams) == [0, 1, 2]
        assert all(s.is_success for s in report.streams)

        results = await wait_for_results(server, 3)
        assert sorted(r.stream_id for r in results) == [0, 1, 2]
        assert sum(r.bytes_transferred for r in results) == report.total_bytes

    @pytest.mark.asyncio
    async def test_throttled_upload(self, server, make_config):
        # 10 packets of 1000 bytes over 1s
        config = make_config(time=1, bandwidth=80_000, length=1000)
        updates = []
        report = await run_client(config, lambda sid, update: updates.append((sid, update)))

        stream = report.streams[0]
        assert stream.pktcount <= config.total_packets
        assert stream.bytes_transferred == stream.pktcount * 1000
        assert [sid for sid, _ in updates] == [0] * len(updates)

        results = await wait_for_results(server, 1)
        assert results[0].bytes_transferred == stream.bytes_transferred


class TestUdp:
    """UDP data streams"""

    @pytest.mark.asyncio
    async def test_upload(self, server, make_config):
        config = make_config(time=1, transport=TransportKind.UDP, bandwidth=80_000, length=1000)
        report = await run_client(config)

        stream = report.streams[0]
        assert stream.is_success, stream.error
        assert 0 < stream.pktcount <= config.total_packets

        results = await wait_for_results(server, 1)
        assert results[0].is_success
        assert results[0].pktcount == stream.pktcount
        assert results[0].bytes_transferred == stream.bytes_transferred

    @pytest.mark.asyncio
    async def test_download(self, server, make_config):
        config = make_config(time=1, transport=TransportKind.UDP,
                             direction=Direction.DOWNLOAD, bandwidth=80_000, length=1000)
        report = await run_client(config)

        stream = report.streams[0]
        assert stream.is_success, stream.error
        assert stream.role == StreamRole.RECV

        results = await wait_for_results(server, 1)
        assert results[0].role == StreamRole.SEND
        assert results[0].pktcount > 0
        assert stream.pktcount == results[0].pktcount

    @pytest.mark.asyncio
    async def test_parallel_streams(self, server, make_config):
        config = make_config(time=1, transport=TransportKind.UDP, parallel=2,
                             bandwidth=80_000, length=1000)
        report = await run_client(config)

        assert all(s.is_success for s in report.streams)
        results = await wait_for_results(server, 2)
        assert sorted(r.stream_id for r in results) == [0, 1]


class TestNegotiation:
    """Control connection handling"""

    @pytest.mark.asyncio
    async def test_concurrent_hellos_get_unique_ids(self, server, make_config):
        config = make_config()

        async def negotiate():
            channel = await StreamChannel.connect(LOOPBACK, server.port)
            try:
                await send_message(channel, ClientHello(config=config))
                reply = await recv_message(channel)
                await send_message(channel, ClientStartTest())
                return reply.test_id
            finally:
                await channel.close()

        ids = await asyncio.gather(*(negotiate() for _ in range(20)))
        assert sorted(ids) == list(range(20))
        assert server.registry.next_test_id == 20
        assert server.stats.tests_negotiated == 20

    @pytest.mark.asyncio
    async def test_unknown_test_id_gets_no_reply(self, server):
        channel = await StreamChannel.connect(LOOPBACK, server.port)
        try:
            await send_message(channel, ClientStreamHello(test_id=999, stream_id=0))
            with pytest.raises(ConnectionClosed):
                await recv_message(channel)
        finally:
            await channel.close()

    @pytest.mark.asyncio
    async def test_unknown_udp_test_id_gets_no_reply(self, server):
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        try:
            await loop.sock_sendto(sock, encode_message(ClientStreamHello(test_id=999, stream_id=0)),
                                   (LOOPBACK, server.port))
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(loop.sock_recv(sock, 4096), 0.5)
        finally:
            sock.close()

    @pytest.mark.asyncio
    async def test_protocol_violation_is_isolated(self, server, make_config):
        channel = await StreamChannel.connect(LOOPBACK, server.port)
        try:
            await send_message(channel, ServerHello(test_id=1))
            with pytest.raises(ConnectionClosed):
                await recv_message(channel)
        finally:
            await channel.close()

        report = await run_client(make_config(time=1))
        assert report.streams[0].is_success
        assert server.is_running

    @pytest.mark.asyncio
    async def test_status(self, server, make_config):
        await run_client(make_config(time=1))
        await wait_for_results(server, 1)

        status = server.get_status()
        assert status["running"]
        assert status["port"] == server.port
        assert status["registry"]["next_test_id"] == 1
        assert status["statistics"]["streams_completed"] == 1
        assert status["result_count"] == 1


class TestClientFailures:
    """Client-side error handling"""

    @pytest.mark.asyncio
    async def test_stream_failure_is_reported(self):
        config = TestConfig(hostname=LOOPBACK, port=unused_port(), time=1)
        stream = ClientStream(config, test_id=0, stream_id=0)
        start = asyncio.Event()

        report = await stream.run(start)

        assert stream.ready.is_set()
        assert not report.is_success
        assert report.error
        assert report.final is None

    @pytest.mark.asyncio
    async def test_wrong_reply_to_hello(self):
        async def handler(reader, writer):
            await read_stream_frame(reader)
            writer.write(encode_message(ServerStreamHello()))
            await writer.drain()
            writer.close()

        fake = await asyncio.start_server(handler, LOOPBACK, 0, limit=STREAM_READER_LIMIT)
        port = fake.sockets[0].getsockname()[1]
        try:
            coordinator = TestCoordinator(TestConfig(hostname=LOOPBACK, port=port, time=1))
            with pytest.raises(ProtocolViolation):
                await coordinator.run()
            assert coordinator.state == CoordinatorState.HELLO_SENT
            assert coordinator.test_id is None
        finally:
            fake.close()
            await fake.wait_closed()

    @pytest.mark.asyncio
    async def test_coordinator_completes(self, server, make_config):
        coordinator = TestCoordinator(make_config(time=1, parallel=2))
        assert coordinator.state == CoordinatorState.IDLE

        report = await coordinator.run()

        assert coordinator.state == CoordinatorState.COMPLETED
        assert coordinator.test_id == report.test_id
        assert len(coordinator.streams) == 2
        assert report.end_time is not None


class TestUdpAnnounce:
    """ClientStreamHello resends"""

    @pytest.mark.asyncio
    async def test_resent_hello_is_acknowledged_again(self, server, make_config):
        test_id = server.registry.register(make_config(transport=TransportKind.UDP))
        hello = encode_message(ClientStreamHello(test_id=test_id, stream_id=0))

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        try:
            await loop.sock_sendto(sock, hello, (LOOPBACK, server.port))
            first, stream_addr = await asyncio.wait_for(loop.sock_recvfrom(sock, 4096), 2)

            # Pretend the first acknowledgement never arrived
            await loop.sock_sendto(sock, hello, (LOOPBACK, server.port))
            second, resend_addr = await asyncio.wait_for(loop.sock_recvfrom(sock, 4096), 2)

            assert first == second == encode_message(ServerStreamHello())
            assert resend_addr == stream_addr
            assert stream_addr[1] != server.port

            await loop.sock_sendto(sock, b"", stream_addr)
            results = await wait_for_results(server, 1)
            assert results[0].is_success
            assert results[0].pktcount == 0
        finally:
            sock.close()

    @pytest.mark.asyncio
    async def test_client_retries_lost_ack(self, server, make_config, monkeypatch):
        original_wait = ClientStream._wait_udp_ack
        calls = []

        async def lose_first_ack(self, channel):
            addr = await original_wait(self, channel)
            calls.append(addr)
            if len(calls) == 1:
                return None
            return addr

        monkeypatch.setattr(ClientStream, "_wait_udp_ack", lose_first_ack)

        config = make_config(time=1, transport=TransportKind.UDP, bandwidth=80_000, length=1000)
        report = await run_client(config)

        assert len(calls) == 2
        assert calls[0] == calls[1]
        stream = report.streams[0]
        assert stream.is_success, stream.error

        results = await wait_for_results(server, 1)
        assert results[0].pktcount == stream.pktcount


class TestDataSocketOptions:
    """DSCP on both ends of every data stream"""

    @pytest.mark.parametrize("transport", [TransportKind.TCP, TransportKind.UDP])
    @pytest.mark.parametrize("direction", [Direction.UPLOAD, Direction.DOWNLOAD])
    @pytest.mark.asyncio
    async def test_dscp_applied(self, server, make_config, monkeypatch, transport, direction):
        seen = []
        original_send = pktgenerator.send
        original_recv = pktgenerator.recv

        def record(channel, role):
            tos = channel.sock.getsockopt(socket.IPPROTO_IP, socket.IP_TOS)
            seen.append((role, tos))

        async def recording_send(config, channel, on_update=None):
            record(channel, "send")
            return await original_send(config, channel, on_update)

        async def recording_recv(config, channel, on_update=None):
            record(channel, "recv")
            return await original_recv(config, channel, on_update)

        monkeypatch.setattr(pktgenerator, "send", recording_send)
        monkeypatch.setattr(pktgenerator, "recv", recording_recv)

        config = make_config(time=1, transport=transport, direction=direction,
                             bandwidth=80_000, length=1000, dscp=46)
        report = await run_client(config)
        assert report.streams[0].is_success, report.streams[0].error
        await wait_for_results(server, 1)

        assert sorted(seen) == [("recv", 46 << 2), ("send", 46 << 2)]

    @pytest.mark.skipif(sys.platform != "linux", reason="needs the whole 127/8 on lo")
    @pytest.mark.parametrize("transport", [TransportKind.TCP, TransportKind.UDP])
    @pytest.mark.asyncio
    async def test_bind(self, server, make_config, transport):
        config = make_config(time=1, transport=transport, bind="127.0.0.2",
                             bandwidth=80_000, length=1000)
        report = await run_client(config)
        assert report.streams[0].is_success, report.streams[0].error


class TestServerResults:
    """Stream report retention"""

    @pytest.mark.asyncio
    async def test_results_are_bounded(self):
        class EmptySource:
            async def recv(self, size):
                return b""

        srv = SpeednetServer(ServerConfig(bind=LOOPBACK, port=0), max_results=2)
        config = TestConfig(hostname=LOOPBACK, time=1)
        for stream_id in range(3):
            await srv._run_stream(config, EmptySource(), 0, stream_id)

        assert [r.stream_id for r in srv.get_results()] == [1, 2]
        assert srv.stats.streams_completed == 3


class TestCancellation:
    """Cancelling a running client"""

    @pytest.mark.asyncio
    async def test_streams_finished_when_run_is_cancelled(self, server, make_config):
        coordinator = TestCoordinator(make_config(time=10, parallel=2))
        run = asyncio.create_task(coordinator.run())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 5
        while not (coordinator.tasks and all(s.ready.is_set() for s in coordinator.streams)):
            assert loop.time() < deadline, "streams never became ready"
            await asyncio.sleep(0.02)

        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        assert len(coordinator.tasks) == 2
        assert all(task.done() for task in coordinator.tasks)
