"""Per-allocation worker that forwards stdout and stderr to the sink."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from queue import Empty, Full, Queue

from alloc_tail.watch.models import (
    AllocationDetail,
    LogLine,
    LogSource,
    LogTransport,
    StreamType,
    split_frame,
)
from alloc_tail.watch.registry import AllocationClaim
from alloc_tail.watch.sink import LogSink

__all__ = ["EVENT_QUEUE_SIZE", "StreamWorker", "WorkerExit", "WorkerState"]

EVENT_QUEUE_SIZE = 16
_WAKE_INTERVAL = 0.2

logger = logging.getLogger("alloc_tail.watch.worker")


class WorkerState(str, enum.Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    DONE = "done"


class WorkerExit(str, enum.Enum):
    """Why a worker reached ``DONE``."""

    CLOSED = "closed"
    ERROR = "error"
    OPEN_FAILED = "open_failed"
    CANCELLED = "cancelled"
    SINK_CLOSED = "sink_closed"


class _EventKind(str, enum.Enum):
    FRAME = "frame"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(slots=True)
class _Event:
    kind: _EventKind
    stream: StreamType
    data: bytes = b""
    error: BaseException | None = None


class StreamWorker:
    """Stream one allocation task until either of its log streams ends.

    Both sources are pumped by helper threads into one bounded queue, so the
    worker reacts to whichever frame, end-of-stream or error arrives first,
    and a slow sink stalls the pumps instead of buffering frames. The
    registry claim is released on every exit path.
    """

    def __init__(
        self,
        *,
        claim: AllocationClaim,
        allocation: AllocationDetail,
        task: str,
        source_label: str,
        transport: LogTransport,
        sink: LogSink,
    ) -> None:
        self.claim = claim
        self.allocation = allocation
        self.task = task
        self.source_label = source_label
        self.transport = transport
        self.sink = sink
        self.state = WorkerState.STARTING
        self.exit_reason: WorkerExit | None = None
        self.lines_forwarded = 0
        self._events: Queue[_Event] = Queue(maxsize=EVENT_QUEUE_SIZE)
        self._sources: dict[StreamType, LogSource] = {}
        self._sources_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._done = threading.Event()

    @property
    def alloc_id(self) -> str:
        return self.allocation.id

    @property
    def pending_events(self) -> int:
        return self._events.qsize()

    def cancel(self) -> None:
        """Ask the worker to stop; safe to call from any thread, any number of times."""

        self._cancelled.set()
        self._close_sources()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def run(self) -> WorkerExit:
        try:
            self.exit_reason = self._run()
        except BaseException:
            self.exit_reason = WorkerExit.ERROR
            logger.exception("Stream worker for allocation %s crashed", self.alloc_id)
            raise
        finally:
            self._close_sources()
            self.state = WorkerState.DONE
            self.claim.release()
            self._done.set()
            logger.info(
                "Stopped streaming %s task %s (%s, %d lines)",
                self.allocation.short_id,
                self.task,
                self.exit_reason.value if self.exit_reason else "unknown",
                self.lines_forwarded,
            )
        return self.exit_reason

    # ------------------------------------------------------------------ helpers
    def _run(self) -> WorkerExit:
        failure = self._open_sources()
        if failure is not None:
            return failure
        self.state = WorkerState.STREAMING
        logger.info(
            "Streaming logs for job %s allocation %s task %s",
            self.allocation.job_id,
            self.allocation.short_id,
            self.task,
        )
        while not self._cancelled.is_set():
            try:
                event = self._events.get(timeout=_WAKE_INTERVAL)
            except Empty:
                continue
            if self._cancelled.is_set():
                break
            if event.kind is _EventKind.CLOSED:
                logger.debug("%s stream of %s closed", event.stream.value, self.alloc_id)
                return WorkerExit.CLOSED
            if event.kind is _EventKind.ERROR:
                logger.warning(
                    "%s stream of allocation %s failed: %s",
                    event.stream.value,
                    self.allocation.short_id,
                    event.error,
                )
                return WorkerExit.ERROR
            if not self._forward(event.stream, event.data):
                return WorkerExit.SINK_CLOSED
        return WorkerExit.CANCELLED

    def _open_sources(self) -> WorkerExit | None:
        for stream in StreamType:
            if self._cancelled.is_set():
                return WorkerExit.CANCELLED
            try:
                source = self.transport.stream_logs(
                    self.allocation, self.task, stream, origin="end"
                )
            except Exception as exc:  # noqa: BLE001 - any transport failure ends the worker
                logger.warning(
                    "Could not open %s stream for allocation %s: %s",
                    stream.value,
                    self.allocation.short_id,
                    exc,
                )
                return WorkerExit.OPEN_FAILED
            with self._sources_lock:
                self._sources[stream] = source
            # cancel() may have run before the source was registered
            if self._cancelled.is_set():
                return WorkerExit.CANCELLED
            thread = threading.Thread(
                target=self._pump,
                args=(source, stream),
                name=f"pump-{self.allocation.short_id}-{stream.value}",
                daemon=True,
            )
            thread.start()
        return None

    def _pump(self, source: LogSource, stream: StreamType) -> None:
        try:
            for frame in source:
                if not self._post(_Event(_EventKind.FRAME, stream, data=frame)):
                    return
        except Exception as exc:  # noqa: BLE001 - forwarded to the worker loop
            self._post(_Event(_EventKind.ERROR, stream, error=exc))
        else:
            self._post(_Event(_EventKind.CLOSED, stream))

    def _post(self, event: _Event) -> bool:
        """Hand ``event`` to the worker loop; False once the worker has stopped."""

        while not (self._cancelled.is_set() or self._done.is_set()):
            try:
                self._events.put(event, timeout=_WAKE_INTERVAL)
            except Full:
                continue
            return True
        return False

    def _forward(self, stream: StreamType, data: bytes) -> bool:
        for text in split_frame(data):
            line = LogLine(source_label=self.source_label, stream=stream, text=text)
            if not self.sink.submit(line):
                return False
            self.lines_forwarded += 1
        return True

    def _close_sources(self) -> None:
        with self._sources_lock:
            sources = list(self._sources.values())
        for source in sources:
            try:
                source.close()
            except OSError as exc:  # pragma: no cover - best effort teardown
                logger.debug("Closing log source for %s failed: %s", self.alloc_id, exc)
