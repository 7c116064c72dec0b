"""Allocation discovery, log stream workers, and the supervisor that runs them."""

from .errors import BackendError, InvalidJobSpecError, StreamError, SupervisorError
from .exec_transport import ExecLogTransport, ProcessLogSource
from .models import (
    AllocationBackend,
    AllocationDetail,
    AllocationStub,
    ClientStatus,
    JobSpec,
    LogLine,
    LogSource,
    LogTransport,
    StreamType,
    ensure_distinct_jobs,
    parse_job_specs,
    split_frame,
)
from .poller import DiscoveryPoller, PollSummary
from .registry import AllocationClaim, AllocationRegistry
from .sink import LogSink
from .stream_worker import StreamWorker, WorkerExit, WorkerState
from .supervisor import ActorGroup, WatchSettings, WatchSupervisor

__all__ = [
    "ActorGroup",
    "AllocationBackend",
    "AllocationClaim",
    "AllocationDetail",
    "AllocationRegistry",
    "AllocationStub",
    "BackendError",
    "ClientStatus",
    "DiscoveryPoller",
    "ExecLogTransport",
    "InvalidJobSpecError",
    "JobSpec",
    "LogLine",
    "LogSink",
    "LogSource",
    "LogTransport",
    "PollSummary",
    "ProcessLogSource",
    "StreamError",
    "StreamType",
    "StreamWorker",
    "SupervisorError",
    "WatchSettings",
    "WatchSupervisor",
    "WorkerExit",
    "WorkerState",
    "ensure_distinct_jobs",
    "parse_job_specs",
    "split_frame",
]
