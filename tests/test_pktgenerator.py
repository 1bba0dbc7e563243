"""
Tests for the packet generator

The channels here are in-memory fakes; real sockets are covered by the
integration tests.
"""

import asyncio

import pytest

from speednet import pktgenerator
from speednet.config import TestConfig
from speednet.errors import StreamIOError
from speednet.pktgenerator import ProgressUpdate, QueueObserver, make_buffer


class FakeSink:
    """Accepts every write, or reports the peer gone after `accept` writes"""

    def __init__(self, accept=None):
        self.accept = accept
        self.writes = 0
        self.bytes = 0

    async def send(self, data):
        if self.accept is not None and self.writes >= self.accept:
            return 0
        self.writes += 1
        self.bytes += len(data)
        return len(data)


class FailingSink:
    async def send(self, data):
        raise StreamIOError("Failed to write: broken")


class FakeSource:
    def __init__(self, chunks):
        self.chunks = list(chunks)

    async def recv(self, size):
        if not self.chunks:
            return b""
        return self.chunks.pop(0)[:size]


def config(**fields):
    fields.setdefault("hostname", "localhost")
    return TestConfig(**fields)


class TestMakeBuffer:

    def test_length(self):
        assert len(make_buffer(10)) == 10
        assert len(make_buffer(4096)) == 4096
        assert len(make_buffer(1400)) == 1400


class TestSend:
    """Sending loop"""

    @pytest.mark.asyncio
    async def test_zero_duration_sends_nothing(self):
        sink = FakeSink()
        final = await pktgenerator.send(config(time=0), sink)
        assert final.pktcount == 0
        assert sink.writes == 0

    @pytest.mark.asyncio
    async def test_unthrottled_runs_for_duration(self):
        sink = FakeSink()
        final = await pktgenerator.send(config(time=1, length=100), sink)
        assert final.elapsed >= 1.0
        assert final.pktcount == sink.writes > 0
        assert final.bytes_transferred == sink.bytes == final.pktcount * 100
        assert final.pktcount_expected == 0

    @pytest.mark.asyncio
    async def test_buffer_length_is_clamped(self):
        sink = FakeSink(accept=1)
        final = await pktgenerator.send(config(time=1, length=1), sink)
        assert final.bytes_transferred == 10

    @pytest.mark.asyncio
    async def test_peer_closed_stops_early(self):
        sink = FakeSink(accept=5)
        final = await pktgenerator.send(config(time=5), sink)
        assert final.pktcount == 5
        assert final.elapsed < 5

    @pytest.mark.asyncio
    async def test_write_error_propagates(self):
        with pytest.raises(StreamIOError):
            await pktgenerator.send(config(time=1), FailingSink())

    @pytest.mark.asyncio
    async def test_throttled(self):
        # 8 kbit/s of 1000 byte buffers for 3s: a budget of 3 packets
        cfg = config(time=3, bandwidth=8000, length=1000)
        assert cfg.total_packets == 3

        updates = []
        sink = FakeSink()
        final = await pktgenerator.send(cfg, sink, updates.append)

        assert 2 <= final.pktcount <= 3
        assert final.pktcount_expected <= 3
        assert final.pktcount == sink.writes

        seconds = [u.elapsed_seconds for u in updates]
        assert seconds == sorted(set(seconds))
        assert len(updates) <= cfg.time
        assert all(s >= 1 for s in seconds)
        for update in updates:
            assert update.pktcount <= update.pktcount_expected

    @pytest.mark.asyncio
    async def test_updates_are_snapshots(self):
        updates = []
        final = await pktgenerator.send(config(time=2, length=100), FakeSink(), updates.append)
        assert updates
        assert updates[0] is not final
        assert updates[0].pktcount <= final.pktcount

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_stop_sender(self):
        def broken(update):
            raise RuntimeError("observer bug")

        final = await pktgenerator.send(config(time=1, length=100), FakeSink(), broken)
        assert final.pktcount > 0


class TestRecv:
    """Receiving loop"""

    @pytest.mark.asyncio
    async def test_counts_until_end_of_stream(self):
        source = FakeSource([b"a" * 100, b"b" * 50, b"c"])
        final = await pktgenerator.recv(config(length=100), source)
        assert final.pktcount == 3
        assert final.bytes_transferred == 151
        assert final.elapsed >= 0

    @pytest.mark.asyncio
    async def test_immediate_end(self):
        final = await pktgenerator.recv(config(), FakeSource([]))
        assert final.pktcount == 0
        assert final.bytes_transferred == 0

    @pytest.mark.asyncio
    async def test_read_size_is_buffer_len(self):
        source = FakeSource([b"x" * 500])
        final = await pktgenerator.recv(config(length=200), source)
        assert final.bytes_transferred == 200


class TestQueueObserver:
    """Streaming updates to a consumer"""

    @pytest.mark.asyncio
    async def test_iterates_until_closed(self):
        observer = QueueObserver()
        observer(ProgressUpdate(elapsed=1.0, pktcount=10))
        observer(ProgressUpdate(elapsed=2.0, pktcount=20))
        observer.close()

        received = [update async for update in observer]
        assert [u.pktcount for u in received] == [10, 20]

    @pytest.mark.asyncio
    async def test_with_sender(self):
        observer = QueueObserver()

        async def run():
            try:
                return await pktgenerator.send(config(time=2, length=100), FakeSink(), observer)
            finally:
                observer.close()

        task = asyncio.create_task(run())
        received = [update async for update in observer]
        final = await task

        assert [u.elapsed_seconds for u in received] == [1, 2]
        assert received[-1].pktcount <= final.pktcount


class TestProgressUpdate:

    def test_to_dict(self):
        update = ProgressUpdate(elapsed=1.5, pktcount=3, pktcount_expected=4, bytes_transferred=300)
        assert update.elapsed_seconds == 1
        assert update.to_dict() == {
            "elapsed": 1.5,
            "pktcount": 3,
            "pktcount_expected": 4,
            "bytes_transferred": 300,
        }
