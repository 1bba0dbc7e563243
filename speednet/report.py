"""
speednet Reports

Per-stream results of a test run. Each stream worker produces its own
StreamReport; a failed stream carries its error instead of a final update
and never affects its siblings' reports.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import psutil

from .config import TestConfig, TransportKind
from .pktgenerator import ProgressUpdate

logger = logging.getLogger("Speednet.Report")


class StreamRole(Enum):
    """What the local end of a stream did"""
    SEND = "send"
    RECV = "recv"


@dataclass
class StreamReport:
    """
    Outcome of a single data stream

    Attributes:
        stream_id: Stream identifier within the test
        role: Local role (send or recv)
        transport: TCP or UDP
        test_id: Test the stream belongs to
        final: Final generator update, None if the stream failed
        error: Error message if the stream failed
    """
    stream_id: int
    role: StreamRole
    transport: TransportKind
    test_id: Optional[int] = None
    final: Optional[ProgressUpdate] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.final is not None

    @property
    def pktcount(self) -> int:
        return self.final.pktcount if self.final else 0

    @property
    def bytes_transferred(self) -> int:
        return self.final.bytes_transferred if self.final else 0

    @property
    def bits_per_second(self) -> float:
        if not self.final or self.final.elapsed <= 0:
            return 0.0
        return self.final.bytes_transferred * 8 / self.final.elapsed

    @property
    def mbps(self) -> float:
        return self.bits_per_second / 1_000_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "test_id": self.test_id,
            "role": self.role.value,
            "transport": self.transport.value,
            "elapsed": self.final.elapsed if self.final else 0.0,
            "pktcount": self.pktcount,
            "bytes_transferred": self.bytes_transferred,
            "bits_per_second": self.bits_per_second,
            "mbps": self.mbps,
            "is_success": self.is_success,
            "error": self.error,
        }

    def summary(self) -> str:
        if not self.is_success:
            return f"stream {self.stream_id}: failed: {self.error}"
        return (
            f"stream {self.stream_id}: {self.role.value} {self.pktcount} pkts "
            f"{self.bytes_transferred} bytes in {self.final.elapsed:.2f}s "
            f"({self.mbps:.2f} Mbps)"
        )


@dataclass
class RunReport:
    """
    All stream reports of one client run

    Stream outcomes are listed independently; the byte and throughput sums
    are for display only.
    """
    test_id: Optional[int]
    config: TestConfig
    streams: List[StreamReport] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    cpu_utilization_local: float = 0.0

    @property
    def total_bytes(self) -> int:
        return sum(s.bytes_transferred for s in self.streams)

    @property
    def total_mbps(self) -> float:
        return sum(s.mbps for s in self.streams)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "config": self.config.to_dict(),
            "streams": [s.to_dict() for s in self.streams],
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "total_bytes": self.total_bytes,
            "total_mbps": self.total_mbps,
            "cpu_utilization_local": self.cpu_utilization_local,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


class CpuSampler:
    """Host CPU utilization between start() and stop()"""

    def start(self) -> None:
        # First call only primes psutil's counters
        psutil.cpu_percent(interval=None)

    def stop(self) -> float:
        return psutil.cpu_percent(interval=None)
