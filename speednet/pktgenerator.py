"""
speednet Packet Generator

Pushes or pulls a fixed-size buffer across a channel and counts the I/O
calls. The sender runs for the configured duration and can be shaped to a
target bandwidth; the receiver runs until the peer ends the stream.

Rate shaping is a coarse leaky-bucket approximation: the sender compares the
packets sent so far against a linear model of the budget and sleeps ~1ms
whenever it is ahead. Short bursts above the target are expected; the
long-run average converges to it.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from .config import TestConfig
from .constants import THROTTLE_DELAY

logger = logging.getLogger("Speednet.PktGen")

NS_PER_SEC = 1_000_000_000


@dataclass
class ProgressUpdate:
    """
    Snapshot of a running packet generator

    Attributes:
        elapsed: Seconds since the loop started
        pktcount: Buffers written or reads completed
        pktcount_expected: Buffers a throttled sender should have written by now
        bytes_transferred: Payload bytes written or read
    """
    elapsed: float = 0.0
    pktcount: int = 0
    pktcount_expected: int = 0
    bytes_transferred: int = 0

    @property
    def elapsed_seconds(self) -> int:
        return int(self.elapsed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed": round(self.elapsed, 6),
            "pktcount": self.pktcount,
            "pktcount_expected": self.pktcount_expected,
            "bytes_transferred": self.bytes_transferred,
        }


ProgressObserver = Callable[[ProgressUpdate], None]


class QueueObserver:
    """
    Observer that streams updates to a separate consumer

    Usage:
        observer = QueueObserver()
        task = asyncio.create_task(pktgenerator.send(config, channel, observer))
        async for update in observer:
            ...
    """

    def __init__(self, maxsize: int = 0):
        self.queue: "asyncio.Queue[Optional[ProgressUpdate]]" = asyncio.Queue(maxsize)

    def __call__(self, update: ProgressUpdate) -> None:
        self.queue.put_nowait(update)

    def close(self) -> None:
        """Wake the consumer once the generator is done"""
        self.queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ProgressUpdate]:
        while True:
            update = await self.queue.get()
            if update is None:
                return
            yield update


class _SecondTicker:
    """Fires the observer at most once per whole elapsed second"""

    def __init__(self, observer: Optional[ProgressObserver]):
        self.observer = observer
        self.last_second = 0

    def tick(self, elapsed_ns: int, update: ProgressUpdate) -> None:
        second = elapsed_ns // NS_PER_SEC
        if second <= self.last_second:
            return
        self.last_second = second
        if self.observer is None:
            return
        try:
            self.observer(dataclasses.replace(update))
        except Exception as e:
            logger.error(f"[PktGen] Progress observer failed: {e}")


def make_buffer(length: int) -> bytes:
    """Deterministic filler; content is irrelevant to the measurement"""
    pattern = bytes(range(255))
    return (pattern * (length // 255 + 1))[:length]


async def send(config: TestConfig, channel, on_update: Optional[ProgressObserver] = None) -> ProgressUpdate:
    """
    Write buffers for config.time seconds

    Args:
        config: Test configuration (buffer length, duration, bandwidth)
        channel: StreamChannel or DatagramChannel
        on_update: Called with a snapshot at most once per elapsed second

    Returns:
        Final update

    Raises:
        StreamIOError: On a write failure other than the peer closing
    """
    buffer = make_buffer(config.buffer_len)
    duration_ns = config.time * NS_PER_SEC
    throttled = config.target_bandwidth > 0
    budget = config.total_packets

    logger.info(
        f"[PktGen] Sending: duration={config.time}s bandwidth={config.target_bandwidth}bps "
        f"bufferlen={len(buffer)} total_packets={budget}"
    )

    update = ProgressUpdate()
    ticker = _SecondTicker(on_update)
    start = time.monotonic_ns()

    while True:
        elapsed_ns = time.monotonic_ns() - start
        update.elapsed = elapsed_ns / NS_PER_SEC
        if duration_ns:
            update.pktcount_expected = budget * elapsed_ns // duration_ns
        ticker.tick(elapsed_ns, update)

        if elapsed_ns >= duration_ns:
            break

        if throttled and update.pktcount >= update.pktcount_expected:
            await asyncio.sleep(THROTTLE_DELAY)
            continue

        written = await channel.send(buffer)
        if written < len(buffer):
            logger.info("[PktGen] Connection closed by peer")
            break
        update.pktcount += 1
        update.bytes_transferred += written

        # Writes may complete without suspending; let sibling streams run
        await asyncio.sleep(0)

    return update


async def recv(config: TestConfig, channel, on_update: Optional[ProgressObserver] = None) -> ProgressUpdate:
    """
    Read until the peer ends the stream

    Each non-empty read counts as one unit. On TCP that is one read call,
    not necessarily one of the sender's buffers; on UDP it is one datagram.

    Args:
        config: Test configuration (buffer length)
        channel: StreamChannel or DatagramChannel
        on_update: Called with a snapshot at most once per elapsed second

    Returns:
        Final update

    Raises:
        StreamIOError: On a read failure
    """
    size = config.buffer_len
    update = ProgressUpdate()
    ticker = _SecondTicker(on_update)
    start = time.monotonic_ns()

    while True:
        elapsed_ns = time.monotonic_ns() - start
        update.elapsed = elapsed_ns / NS_PER_SEC
        ticker.tick(elapsed_ns, update)

        data = await channel.recv(size)
        if not data:
            break
        update.pktcount += 1
        update.bytes_transferred += len(data)

    update.elapsed = (time.monotonic_ns() - start) / NS_PER_SEC
    return update
