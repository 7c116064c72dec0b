"""Supervisor running one discovery poller per job plus the shared sink."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from queue import Queue
from typing import Any

from alloc_tail.watch.errors import SupervisorError
from alloc_tail.watch.models import (
    AllocationBackend,
    JobSpec,
    LogTransport,
    ensure_distinct_jobs,
)
from alloc_tail.watch.poller import DEFAULT_POLL_INTERVAL, DiscoveryPoller
from alloc_tail.watch.registry import AllocationRegistry
from alloc_tail.watch.sink import DEFAULT_QUEUE_SIZE, LogSink

__all__ = ["ActorGroup", "WatchSettings", "WatchSupervisor"]

logger = logging.getLogger("alloc_tail.watch.supervisor")


@dataclass(slots=True)
class WatchSettings:
    """Tunables for the watch loop."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_backoff: float | None = None
    claim_cooldown: float | None = None
    queue_size: int = DEFAULT_QUEUE_SIZE
    alloc_label: bool = False
    show_stream: bool = False
    worker_join_timeout: float = 5.0

    @property
    def effective_cooldown(self) -> float:
        """Re-claim cooldown; defaults to one poll interval."""

        if self.claim_cooldown is None:
            return self.poll_interval
        return self.claim_cooldown

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> WatchSettings:
        defaults = cls()

        def _float(key: str, default: float | None) -> float | None:
            value = data.get(key, default)
            return None if value is None else float(value)

        return cls(
            poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
            max_backoff=_float("max_backoff", defaults.max_backoff),
            claim_cooldown=_float("claim_cooldown", defaults.claim_cooldown),
            queue_size=int(data.get("queue_size", defaults.queue_size)),
            alloc_label=bool(data.get("alloc_label", defaults.alloc_label)),
            show_stream=bool(data.get("show_stream", defaults.show_stream)),
            worker_join_timeout=float(
                data.get("worker_join_timeout", defaults.worker_join_timeout)
            ),
        )


@dataclass(slots=True)
class _Actor:
    name: str
    execute: Callable[[], None]
    interrupt: Callable[[BaseException | None], None]


class ActorGroup:
    """Run actors concurrently; the first one to return stops all the others.

    ``run`` waits for every actor to return and re-raises the error of the
    actor that returned first, if it failed.
    """

    def __init__(self) -> None:
        self._actors: list[_Actor] = []

    def add(
        self,
        name: str,
        execute: Callable[[], None],
        interrupt: Callable[[BaseException | None], None],
    ) -> None:
        self._actors.append(_Actor(name=name, execute=execute, interrupt=interrupt))

    def __len__(self) -> int:
        return len(self._actors)

    def run(self) -> None:
        if not self._actors:
            return
        results: Queue[tuple[_Actor, BaseException | None]] = Queue()

        def _execute(actor: _Actor) -> None:
            try:
                actor.execute()
            except Exception as exc:  # noqa: BLE001 - reported to the group
                results.put((actor, exc))
            else:
                results.put((actor, None))

        for actor in self._actors:
            thread = threading.Thread(
                target=_execute, args=(actor,), name=f"actor-{actor.name}", daemon=True
            )
            thread.start()

        first, error = results.get()
        if error is not None:
            logger.error("%s failed: %s", first.name, error)
        else:
            logger.debug("%s returned, stopping the group", first.name)
        for actor in self._actors:
            actor.interrupt(error)
        for _ in range(len(self._actors) - 1):
            actor, late_error = results.get()
            if late_error is not None:
                logger.warning("%s failed during shutdown: %s", actor.name, late_error)
        if error is not None:
            raise SupervisorError(f"{first.name} failed: {error}") from error


class WatchSupervisor:
    """Wire pollers, registry and sink together and run them until stopped."""

    def __init__(
        self,
        specs: Sequence[JobSpec],
        *,
        backend: AllocationBackend,
        transport: LogTransport,
        sink: LogSink | None = None,
        registry: AllocationRegistry | None = None,
        settings: WatchSettings | None = None,
    ) -> None:
        self.specs = list(specs)
        ensure_distinct_jobs(self.specs)
        self.settings = settings or WatchSettings()
        self.backend = backend
        self.transport = transport
        self.sink = sink or LogSink(
            capacity=self.settings.queue_size, show_stream=self.settings.show_stream
        )
        self.registry = registry or AllocationRegistry(
            cooldown=self.settings.effective_cooldown
        )
        self.pollers = [self._build_poller(spec) for spec in self.specs]
        self._stop = threading.Event()

    def run(self) -> None:
        """Block until ``stop`` is called or an actor fails."""

        group = ActorGroup()
        group.add("stop-signal", self._wait_for_stop, lambda _err: self._stop.set())
        for poller in self.pollers:
            group.add(f"poller[{poller.spec}]", poller.run, lambda _err, p=poller: p.stop())
        group.add("sink", self.sink.run, lambda _err: self.sink.close())
        logger.info("Starting %d job watcher(s)", len(self.pollers))
        try:
            group.run()
        finally:
            self._stop.set()
            logger.info("All watchers stopped")

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _wait_for_stop(self) -> None:
        self._stop.wait()

    def _build_poller(self, spec: JobSpec) -> DiscoveryPoller:
        return DiscoveryPoller(
            spec,
            backend=self.backend,
            transport=self.transport,
            registry=self.registry,
            sink=self.sink,
            interval=self.settings.poll_interval,
            max_backoff=self.settings.max_backoff,
            alloc_label=self.settings.alloc_label,
            join_timeout=self.settings.worker_join_timeout,
        )
