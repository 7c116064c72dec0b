"""Data types exchanged between the backend, the watch loop and the sink."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Protocol

from alloc_tail.watch.errors import InvalidJobSpecError

__all__ = [
    "AllocationBackend",
    "AllocationDetail",
    "AllocationStub",
    "ClientStatus",
    "JobSpec",
    "LogLine",
    "LogSource",
    "LogTransport",
    "StreamType",
    "ensure_distinct_jobs",
    "parse_job_specs",
    "split_frame",
]


class StreamType(str, enum.Enum):
    """The two log files Nomad keeps per task."""

    STDOUT = "stdout"
    STDERR = "stderr"


class ClientStatus(str, enum.Enum):
    """Client-side status reported for an allocation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    LOST = "lost"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> ClientStatus:
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True, slots=True)
class JobSpec:
    """A configured ``job:task`` target. An empty task means the default task."""

    job: str
    task: str = ""

    def validate(self) -> None:
        if not self.job.strip():
            raise InvalidJobSpecError(f"Job name must not be empty (received '{self}').")
        if ":" in self.job or ":" in self.task:
            raise InvalidJobSpecError(f"Job spec '{self}' contains more than one ':' separator.")

    def __str__(self) -> str:
        return f"{self.job}:{self.task}"


def parse_job_specs(raw: str | Iterable[str]) -> list[JobSpec]:
    """Parse ``job:task,job2:task2`` into job specs.

    Every entry must carry the ``:`` separator; the task part may be empty.
    Duplicate entries are collapsed, keeping the first occurrence.
    """

    entries = raw.split(",") if isinstance(raw, str) else list(raw)
    specs: list[JobSpec] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        if ":" not in entry:
            raise InvalidJobSpecError(f"Job entries must be job:task (received '{entry}').")
        job, task = entry.split(":", 1)
        spec = JobSpec(job=job.strip(), task=task.strip())
        spec.validate()
        if spec not in specs:
            specs.append(spec)
    if not specs:
        raise InvalidJobSpecError("At least one job:task entry is required.")
    ensure_distinct_jobs(specs)
    return specs


def ensure_distinct_jobs(specs: Iterable[JobSpec]) -> None:
    """Reject a job listed with two different tasks.

    Allocations are claimed by ID, so only one task of an allocation can be
    streamed at a time.
    """

    seen: dict[str, JobSpec] = {}
    for spec in specs:
        previous = seen.setdefault(spec.job, spec)
        if previous != spec:
            raise InvalidJobSpecError(
                f"Job '{spec.job}' is listed with more than one task "
                f"('{previous}' and '{spec}')."
            )


@dataclass(frozen=True, slots=True)
class AllocationStub:
    """Lightweight allocation record returned by a listing."""

    id: str
    job_id: str
    client_status: ClientStatus
    task_names: tuple[str, ...] = ()

    @property
    def is_running(self) -> bool:
        return self.client_status is ClientStatus.RUNNING


@dataclass(frozen=True, slots=True)
class AllocationDetail:
    """Full allocation record fetched once a stub is selected for watching."""

    id: str
    job_id: str
    task_group: str
    task_names: frozenset[str] = field(default_factory=frozenset)

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass(frozen=True, slots=True)
class LogLine:
    """One line of task output on its way to the sink."""

    source_label: str
    stream: StreamType
    text: str

    def render(self, *, show_stream: bool = False) -> str:
        if show_stream and self.stream is StreamType.STDERR:
            return f"{self.source_label}: [stderr] {self.text}"
        return f"{self.source_label}: {self.text}"


def split_frame(data: bytes | str) -> list[str]:
    """Split a raw frame into its non-empty lines."""

    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    lines: list[str] = []
    for segment in text.split("\n"):
        segment = segment.rstrip("\r")
        if segment:
            lines.append(segment)
    return lines


class LogSource(Protocol):
    """An open, live log stream.

    Iterating yields raw frames until the stream ends; a failure is raised
    from the iterator. ``close`` may be called from another thread.
    """

    def __iter__(self) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class AllocationBackend(Protocol):
    """Discovery half of the orchestrator API."""

    def list_allocations(self) -> list[AllocationStub]: ...

    def get_allocation(self, alloc_id: str) -> AllocationDetail: ...


class LogTransport(Protocol):
    """Streaming half of the orchestrator API."""

    def stream_logs(
        self,
        allocation: AllocationDetail,
        task: str,
        stream: StreamType,
        *,
        origin: str = "end",
    ) -> LogSource: ...
