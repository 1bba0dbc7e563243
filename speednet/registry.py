"""
speednet Test Registry

Server-side table of negotiated tests. Each ClientHello allocates the next
test id from a monotonically increasing counter and stores the client's
configuration under it; data streams later look their test up by id.

The counter and the table are the only state shared between connection
handlers. They sit behind one reader/writer lock which is held for the
insert or the lookup only, never across socket I/O.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List

from .config import TestConfig
from .constants import MAX_TEST_ID
from .errors import RegistryFull, UnknownTest

logger = logging.getLogger("Speednet.Registry")


class ReadWriteLock:
    """
    Many concurrent readers or a single writer

    Waiting writers block new readers so that a steady stream of lookups
    cannot starve a negotiation.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class TestEntry:
    """A negotiated test"""
    __test__ = False

    test_id: int
    config: TestConfig
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "config": self.config.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


class TestRegistry:
    """
    Test id allocation and lookup

    Owned by the server and shared by reference with every connection
    handler. Entries are kept for the lifetime of the process unless
    remove() is called; removing an entry never makes its id reusable.
    """
    __test__ = False

    def __init__(self):
        self._lock = ReadWriteLock()
        self._next_test_id = 0
        self._tests: Dict[int, TestEntry] = {}

    def register(self, config: TestConfig) -> int:
        """
        Allocate a test id and store the configuration under it

        Args:
            config: Configuration received in ClientHello

        Returns:
            The new test id

        Raises:
            RegistryFull: If the 32-bit id space is exhausted
        """
        with self._lock.write_locked():
            test_id = self._next_test_id
            if test_id > MAX_TEST_ID:
                raise RegistryFull(f"Test id space exhausted ({MAX_TEST_ID + 1} tests)")
            self._tests[test_id] = TestEntry(test_id=test_id, config=config)
            self._next_test_id = test_id + 1

        logger.info(f"[Registry] Registered test {test_id}")
        return test_id

    def lookup(self, test_id: int) -> TestConfig:
        """
        Get a copy of a test's configuration

        Raises:
            UnknownTest: If the id was never allocated or has been removed
        """
        with self._lock.read_locked():
            entry = self._tests.get(test_id)
            if entry is None:
                raise UnknownTest(test_id)
            return entry.config.model_copy()

    def remove(self, test_id: int) -> bool:
        """
        Drop a test entry

        Returns:
            True if the entry existed
        """
        with self._lock.write_locked():
            removed = self._tests.pop(test_id, None) is not None
        if removed:
            logger.info(f"[Registry] Removed test {test_id}")
        return removed

    @property
    def next_test_id(self) -> int:
        with self._lock.read_locked():
            return self._next_test_id

    def test_ids(self) -> List[int]:
        with self._lock.read_locked():
            return sorted(self._tests)

    def __contains__(self, test_id: int) -> bool:
        with self._lock.read_locked():
            return test_id in self._tests

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._tests)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock.read_locked():
            return {
                "active_tests": len(self._tests),
                "next_test_id": self._next_test_id,
            }
