"""Single funnel that writes tagged log lines from every worker."""

from __future__ import annotations

import logging
from collections.abc import Callable
from queue import Empty, Full, Queue
from threading import Event

import click

from alloc_tail.watch.models import LogLine

__all__ = ["DEFAULT_QUEUE_SIZE", "LogSink"]

DEFAULT_QUEUE_SIZE = 100
_WAKE_INTERVAL = 0.2

logger = logging.getLogger("alloc_tail.watch.sink")


class LogSink:
    """Bounded queue in front of the output surface.

    Producers block while the queue is full, so a slow consumer applies
    backpressure to the stream workers instead of losing lines. Once the sink
    is closed, ``submit`` stops blocking and reports the line as not accepted.
    """

    def __init__(
        self,
        writer: Callable[[str], None] | None = None,
        *,
        capacity: int = DEFAULT_QUEUE_SIZE,
        show_stream: bool = False,
    ) -> None:
        if capacity < 1:
            raise ValueError("Sink capacity must be at least 1")
        self._writer = writer or click.echo
        self._queue: Queue[LogLine] = Queue(maxsize=capacity)
        self._closed = Event()
        self.show_stream = show_stream
        self.written = 0

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def submit(self, line: LogLine) -> bool:
        """Queue ``line``, waiting for room. Returns False once the sink is closed."""

        while not self._closed.is_set():
            try:
                self._queue.put(line, timeout=_WAKE_INTERVAL)
            except Full:
                continue
            return True
        return False

    def run(self) -> None:
        """Consume lines until closed, then drain what is already queued."""

        while not self._closed.is_set():
            try:
                line = self._queue.get(timeout=_WAKE_INTERVAL)
            except Empty:
                continue
            self._write(line)
        self._drain()

    def close(self) -> None:
        self._closed.set()

    def _drain(self) -> None:
        while True:
            try:
                line = self._queue.get_nowait()
            except Empty:
                return
            self._write(line)

    def _write(self, line: LogLine) -> None:
        self._writer(line.render(show_stream=self.show_stream))
        self.written += 1
        self._queue.task_done()
