"""In-memory backend, transport and sink helpers for watch-loop tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from queue import Queue

import pytest

from alloc_tail.watch import (
    AllocationDetail,
    AllocationRegistry,
    AllocationStub,
    BackendError,
    ClientStatus,
    LogSink,
    StreamType,
)

_END = object()


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class QueueLogSource:
    """Log source driven by the test: frames, end of stream, or an error."""

    def __init__(self) -> None:
        self._items: Queue[object] = Queue()
        self.closed = threading.Event()

    def push(self, data: bytes) -> None:
        self._items.put(data)

    def finish(self) -> None:
        self._items.put(_END)

    def fail(self, exc: BaseException) -> None:
        self._items.put(exc)

    def remaining(self) -> int:
        """Items pushed but not yet read by the consumer."""

        return self._items.qsize()

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self._items.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            assert isinstance(item, bytes)
            yield item

    def close(self) -> None:
        self.closed.set()
        self._items.put(_END)


class FakeTransport:
    """Hands out one queue-backed source per (allocation, stream) open call."""

    def __init__(self) -> None:
        self.opened: list[tuple[str, str, StreamType, str]] = []
        self.sources: dict[tuple[str, StreamType], list[QueueLogSource]] = {}
        self.fail_open: set[str] = set()
        self._lock = threading.Lock()

    def source(self, alloc_id: str, stream: StreamType = StreamType.STDOUT) -> QueueLogSource:
        """Return the most recent source for the allocation, creating it up front if needed."""

        with self._lock:
            sources = self.sources.setdefault((alloc_id, stream), [])
            if not sources:
                sources.append(QueueLogSource())
            return sources[-1]

    def opens_for(self, alloc_id: str) -> int:
        with self._lock:
            return sum(1 for entry in self.opened if entry[0] == alloc_id)

    def stream_logs(
        self,
        allocation: AllocationDetail,
        task: str,
        stream: StreamType,
        *,
        origin: str = "end",
    ) -> QueueLogSource:
        if allocation.id in self.fail_open:
            raise BackendError(f"cannot open logs for {allocation.id}")
        with self._lock:
            self.opened.append((allocation.id, task, stream, origin))
            sources = self.sources.setdefault((allocation.id, stream), [])
            # a pre-seeded source is used by the first open only
            opens = sum(1 for e in self.opened if e[0] == allocation.id and e[2] is stream)
            if len(sources) < opens:
                sources.append(QueueLogSource())
            return sources[opens - 1]


class FakeBackend:
    """Allocation listing/detail backend with injectable failures."""

    def __init__(self) -> None:
        self.stubs: list[AllocationStub] = []
        self.details: dict[str, AllocationDetail] = {}
        self.list_failures = 0
        self.list_calls = 0
        self.detail_calls: list[str] = []
        self.on_get: Callable[[str], None] | None = None
        self._lock = threading.Lock()

    def add(
        self,
        alloc_id: str,
        job: str,
        *,
        tasks: tuple[str, ...] = ("worker",),
        status: ClientStatus = ClientStatus.RUNNING,
    ) -> None:
        with self._lock:
            self.stubs.append(
                AllocationStub(id=alloc_id, job_id=job, client_status=status, task_names=tasks)
            )
            self.details[alloc_id] = AllocationDetail(
                id=alloc_id, job_id=job, task_group="group", task_names=frozenset(tasks)
            )

    def remove(self, alloc_id: str, *, keep_detail: bool = False) -> None:
        with self._lock:
            self.stubs = [stub for stub in self.stubs if stub.id != alloc_id]
            if not keep_detail:
                self.details.pop(alloc_id, None)

    def list_allocations(self) -> list[AllocationStub]:
        with self._lock:
            self.list_calls += 1
            if self.list_failures > 0:
                self.list_failures -= 1
                raise BackendError("listing unavailable")
            return list(self.stubs)

    def get_allocation(self, alloc_id: str) -> AllocationDetail:
        self.detail_calls.append(alloc_id)
        if self.on_get is not None:
            self.on_get(alloc_id)
        with self._lock:
            try:
                return self.details[alloc_id]
            except KeyError:
                raise BackendError(f"allocation {alloc_id} not found") from None


class RecordingWriter:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, text: str) -> None:
        with self._lock:
            self.lines.append(text)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self.lines)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def registry() -> AllocationRegistry:
    return AllocationRegistry()


@pytest.fixture()
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture()
def sink(writer: RecordingWriter) -> LogSink:
    return LogSink(writer)
