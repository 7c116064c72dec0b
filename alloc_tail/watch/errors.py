"""Exception types shared by the watch loop and its backends."""

from __future__ import annotations

__all__ = [
    "BackendError",
    "InvalidJobSpecError",
    "StreamError",
    "SupervisorError",
]


class InvalidJobSpecError(ValueError):
    """Raised when a ``job:task`` entry cannot be parsed."""


class BackendError(RuntimeError):
    """Raised when the orchestrator backend cannot serve a request."""


class StreamError(BackendError):
    """Raised by a log source that failed mid-stream."""


class SupervisorError(RuntimeError):
    """Raised when a supervised actor fails and the whole group is stopped."""
