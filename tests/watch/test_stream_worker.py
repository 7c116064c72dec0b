from __future__ import annotations

import threading

import pytest

from alloc_tail.watch import (
    AllocationDetail,
    AllocationRegistry,
    LogLine,
    LogSink,
    StreamError,
    StreamType,
    StreamWorker,
    WorkerExit,
    WorkerState,
)
from alloc_tail.watch.stream_worker import EVENT_QUEUE_SIZE
from tests.watch.conftest import FakeTransport, RecordingWriter, wait_for

ALLOC = AllocationDetail(
    id="a1b2c3d4-0000-4000-8000-000000000001",
    job_id="svc",
    task_group="svc",
    task_names=frozenset({"worker"}),
)


def _worker(
    registry: AllocationRegistry, transport: FakeTransport, sink: LogSink
) -> StreamWorker:
    claim = registry.claim(ALLOC.id)
    assert claim is not None
    return StreamWorker(
        claim=claim,
        allocation=ALLOC,
        task="worker",
        source_label="svc",
        transport=transport,
        sink=sink,
    )


def test_clean_close_forwards_lines_and_releases(
    registry: AllocationRegistry,
    transport: FakeTransport,
    sink: LogSink,
    writer: RecordingWriter,
) -> None:
    stdout = transport.source(ALLOC.id, StreamType.STDOUT)
    stdout.push(b"line1\nline2\n\n")
    stdout.push(b"line3\n")
    stdout.finish()
    worker = _worker(registry, transport, sink)

    assert worker.run() is WorkerExit.CLOSED

    assert worker.state is WorkerState.DONE
    assert ALLOC.id not in registry
    assert worker.lines_forwarded == 3
    assert [(task, stream, origin) for _, task, stream, origin in transport.opened] == [
        ("worker", StreamType.STDOUT, "end"),
        ("worker", StreamType.STDERR, "end"),
    ]
    assert transport.source(ALLOC.id, StreamType.STDERR).closed.is_set()
    sink.close()
    sink.run()
    assert writer.snapshot() == ["svc: line1", "svc: line2", "svc: line3"]


def test_stream_error_ends_worker_and_releases(
    registry: AllocationRegistry, transport: FakeTransport, sink: LogSink
) -> None:
    stderr = transport.source(ALLOC.id, StreamType.STDERR)
    stderr.push(b"warning\n")
    stderr.fail(StreamError("allocation stopped"))
    worker = _worker(registry, transport, sink)

    assert worker.run() is WorkerExit.ERROR
    assert ALLOC.id not in registry
    assert worker.lines_forwarded == 1


def test_open_failure_releases_claim(
    registry: AllocationRegistry, transport: FakeTransport, sink: LogSink
) -> None:
    transport.fail_open.add(ALLOC.id)
    worker = _worker(registry, transport, sink)

    assert worker.run() is WorkerExit.OPEN_FAILED
    assert worker.state is WorkerState.DONE
    assert ALLOC.id not in registry


def test_claim_is_held_while_streaming_and_released_on_cancel(
    registry: AllocationRegistry, transport: FakeTransport, sink: LogSink
) -> None:
    worker = _worker(registry, transport, sink)
    thread = threading.Thread(target=worker.run)
    thread.start()
    assert wait_for(lambda: worker.state is WorkerState.STREAMING)

    assert not registry.try_claim(ALLOC.id)

    worker.cancel()
    thread.join(2)
    assert not thread.is_alive()
    assert worker.exit_reason is WorkerExit.CANCELLED
    assert ALLOC.id not in registry
    assert transport.source(ALLOC.id, StreamType.STDOUT).closed.is_set()
    assert transport.source(ALLOC.id, StreamType.STDERR).closed.is_set()


def test_per_stream_order_is_preserved(
    registry: AllocationRegistry,
    transport: FakeTransport,
    sink: LogSink,
    writer: RecordingWriter,
) -> None:
    stdout = transport.source(ALLOC.id, StreamType.STDOUT)
    for index in range(50):
        stdout.push(f"out-{index}\n".encode())
    stdout.finish()
    worker = _worker(registry, transport, sink)
    worker.run()
    sink.close()
    sink.run()
    assert writer.snapshot() == [f"svc: out-{index}" for index in range(50)]


def test_unexpected_failure_still_releases(
    registry: AllocationRegistry, transport: FakeTransport
) -> None:
    class ExplodingSink(LogSink):
        def submit(self, line: LogLine) -> bool:
            raise RuntimeError("sink exploded")

    stdout = transport.source(ALLOC.id, StreamType.STDOUT)
    stdout.push(b"boom\n")
    worker = _worker(registry, transport, ExplodingSink())

    with pytest.raises(RuntimeError, match="sink exploded"):
        worker.run()
    assert worker.state is WorkerState.DONE
    assert ALLOC.id not in registry


def test_closed_sink_stops_worker(
    registry: AllocationRegistry, transport: FakeTransport, sink: LogSink
) -> None:
    stdout = transport.source(ALLOC.id, StreamType.STDOUT)
    stdout.push(b"dropped\n")
    sink.close()
    worker = _worker(registry, transport, sink)

    assert worker.run() is WorkerExit.SINK_CLOSED
    assert ALLOC.id not in registry


def test_slow_sink_stalls_the_stream_instead_of_buffering(
    registry: AllocationRegistry, transport: FakeTransport, writer: RecordingWriter
) -> None:
    sink = LogSink(writer, capacity=1)
    stdout = transport.source(ALLOC.id, StreamType.STDOUT)
    for index in range(5000):
        stdout.push(f"line-{index}\n".encode())
    worker = _worker(registry, transport, sink)
    thread = threading.Thread(target=worker.run)
    thread.start()

    assert wait_for(
        lambda: worker.lines_forwarded == 1 and worker.pending_events == EVENT_QUEUE_SIZE
    )
    assert stdout.remaining() >= 5000 - EVENT_QUEUE_SIZE - 3

    sink.close()
    thread.join(2)
    assert not thread.is_alive()
    assert worker.exit_reason is WorkerExit.SINK_CLOSED
    assert ALLOC.id not in registry
