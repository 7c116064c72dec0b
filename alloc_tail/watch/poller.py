"""Discovery loop that keeps one job's running allocations watched."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from alloc_tail.watch.errors import BackendError
from alloc_tail.watch.models import (
    AllocationBackend,
    AllocationDetail,
    JobSpec,
    LogTransport,
)
from alloc_tail.watch.registry import AllocationRegistry
from alloc_tail.watch.sink import LogSink
from alloc_tail.watch.stream_worker import StreamWorker

__all__ = ["DEFAULT_POLL_INTERVAL", "DiscoveryPoller", "PollSummary", "WorkerHandle"]

DEFAULT_POLL_INTERVAL = 5.0

logger = logging.getLogger("alloc_tail.watch.poller")


@dataclass(slots=True)
class PollSummary:
    """Counters for one discovery cycle."""

    listed: int = 0
    matched: int = 0
    spawned: int = 0
    skipped: int = 0
    failed: bool = False


@dataclass(slots=True)
class WorkerHandle:
    worker: StreamWorker
    thread: threading.Thread

    @property
    def alive(self) -> bool:
        return self.thread.is_alive()


@dataclass(slots=True)
class _Backoff:
    base: float
    ceiling: float
    current: float = field(init=False)

    def __post_init__(self) -> None:
        self.current = self.base

    def failed(self) -> float:
        delay = self.current
        self.current = min(self.current * 2, self.ceiling)
        return delay

    def reset(self) -> float:
        self.current = self.base
        return self.base


class DiscoveryPoller:
    """Poll the backend for one job spec and spawn a worker per new allocation.

    Listing failures are retried forever. The wait after a failure starts at
    ``interval`` and doubles up to ``max_backoff``; with the default ceiling
    the poller simply keeps its fixed interval.
    """

    def __init__(
        self,
        spec: JobSpec,
        *,
        backend: AllocationBackend,
        transport: LogTransport,
        registry: AllocationRegistry,
        sink: LogSink,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_backoff: float | None = None,
        alloc_label: bool = False,
        join_timeout: float = 5.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.spec = spec
        self.backend = backend
        self.transport = transport
        self.registry = registry
        self.sink = sink
        self.interval = interval
        self.max_backoff = max(interval, max_backoff or interval)
        self.alloc_label = alloc_label
        self.join_timeout = join_timeout
        self._stop = threading.Event()
        self._workers: dict[str, WorkerHandle] = {}
        self._workers_lock = threading.Lock()
        self._warned: set[str] = set()

    # ------------------------------------------------------------------ lifecycle
    def run(self) -> None:
        """Poll until ``stop`` is called, then cancel and join every worker."""

        self.spec.validate()
        backoff = _Backoff(self.interval, self.max_backoff)
        logger.info("Watching job %s (task %s)", self.spec.job, self.spec.task or "<default>")
        try:
            while not self._stop.is_set():
                summary = self.poll_once()
                delay = backoff.failed() if summary.failed else backoff.reset()
                if self._stop.wait(delay):
                    break
        finally:
            self._shutdown_workers()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def live_workers(self) -> list[WorkerHandle]:
        with self._workers_lock:
            self._reap()
            return list(self._workers.values())

    # ------------------------------------------------------------------ polling
    def poll_once(self) -> PollSummary:
        """Run a single discovery cycle."""

        summary = PollSummary()
        try:
            stubs = self.backend.list_allocations()
        except (BackendError, OSError) as exc:
            logger.warning("Listing allocations for job %s failed: %s", self.spec.job, exc)
            summary.failed = True
            return summary
        summary.listed = len(stubs)
        self._warned.intersection_update(stub.id for stub in stubs)
        with self._workers_lock:
            self._reap()
        for stub in stubs:
            if not stub.is_running or stub.job_id != self.spec.job:
                continue
            summary.matched += 1
            if self._stop.is_set():
                break
            if not self.registry.is_claimable(stub.id):
                continue
            if self._start_worker(stub.id):
                summary.spawned += 1
            else:
                summary.skipped += 1
        return summary

    def _start_worker(self, alloc_id: str) -> bool:
        try:
            allocation = self.backend.get_allocation(alloc_id)
        except (BackendError, OSError) as exc:
            # Usually the allocation stopped between listing and lookup.
            logger.debug("Skipping allocation %s: %s", alloc_id, exc)
            return False
        task = self._resolve_task(allocation)
        if task is None:
            return False
        claim = self.registry.claim(allocation.id)
        if claim is None:
            return False
        worker = StreamWorker(
            claim=claim,
            allocation=allocation,
            task=task,
            source_label=self._label(allocation),
            transport=self.transport,
            sink=self.sink,
        )
        thread = threading.Thread(
            target=worker.run,
            name=f"stream-{allocation.short_id}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers[allocation.id] = WorkerHandle(worker=worker, thread=thread)
        try:
            thread.start()
        except RuntimeError:
            with self._workers_lock:
                self._workers.pop(allocation.id, None)
            claim.release()
            raise
        if self._stop.is_set():
            worker.cancel()
        return True

    def _resolve_task(self, allocation: AllocationDetail) -> str | None:
        names = sorted(allocation.task_names)
        if self.spec.task:
            if names and self.spec.task not in allocation.task_names:
                self._warn_once(
                    allocation.id,
                    "Allocation %s of job %s has no task %s (tasks: %s)",
                    allocation.short_id,
                    allocation.job_id,
                    self.spec.task,
                    ", ".join(names),
                )
                return None
            return self.spec.task
        if not names:
            self._warn_once(
                allocation.id,
                "Allocation %s of job %s reports no tasks",
                allocation.short_id,
                allocation.job_id,
            )
            return None
        if len(names) > 1:
            self._warn_once(
                allocation.id,
                "Allocation %s has several tasks, streaming %s",
                allocation.short_id,
                names[0],
            )
        return names[0]

    def _label(self, allocation: AllocationDetail) -> str:
        if self.alloc_label:
            return f"{self.spec.job}[{allocation.short_id}]"
        return self.spec.job

    def _warn_once(self, alloc_id: str, message: str, *args: object) -> None:
        if alloc_id in self._warned:
            return
        self._warned.add(alloc_id)
        logger.warning(message, *args)

    def _reap(self) -> None:
        # Caller holds the workers lock.
        finished = [alloc_id for alloc_id, h in self._workers.items() if not h.alive]
        for alloc_id in finished:
            del self._workers[alloc_id]

    def _shutdown_workers(self) -> None:
        with self._workers_lock:
            handles = list(self._workers.values())
        for handle in handles:
            handle.worker.cancel()
        for handle in handles:
            handle.thread.join(self.join_timeout)
            if handle.alive:
                logger.warning(
                    "Stream worker for allocation %s did not stop within %.1fs",
                    handle.worker.allocation.short_id,
                    self.join_timeout,
                )
        with self._workers_lock:
            self._reap()
