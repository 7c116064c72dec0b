"""Log transport that shells out to the ``nomad`` CLI instead of the HTTP API."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from collections.abc import Iterator, Sequence

from alloc_tail.watch.errors import StreamError
from alloc_tail.watch.models import AllocationDetail, StreamType

__all__ = ["ExecLogTransport", "ProcessLogSource"]

logger = logging.getLogger("alloc_tail.watch.exec")


class ProcessLogSource:
    """Iterate the output lines of a ``nomad alloc logs -f`` process."""

    def __init__(self, argv: Sequence[str]) -> None:
        self.argv = list(argv)
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise StreamError(f"Failed to start {shlex.join(self.argv)}: {exc}") from exc

    @property
    def pid(self) -> int:
        return self._process.pid

    def __iter__(self) -> Iterator[bytes]:
        stdout = self._process.stdout
        if stdout is None:  # pragma: no cover - Popen invariant
            raise StreamError("Process has no stdout pipe")
        with stdout:
            for line in iter(stdout.readline, b""):
                yield line
        exit_code = self._process.wait()
        with self._lock:
            closed = self._closed
        if exit_code != 0 and not closed:
            raise StreamError(f"{shlex.join(self.argv)} exited with status {exit_code}")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._process.poll() is None:
            self._process.kill()
        self._process.wait()


class ExecLogTransport:
    """Stream logs by running ``nomad alloc logs -tail -f`` per stream.

    ``command_prefix`` is prepended to the nomad invocation, for example
    ``("vagrant", "ssh", "client", "--")`` to run it inside a VM.
    """

    def __init__(
        self,
        *,
        command_prefix: Sequence[str] = (),
        nomad_binary: str = "nomad",
        address: str | None = None,
    ) -> None:
        self.command_prefix = tuple(command_prefix)
        self.nomad_binary = nomad_binary
        self.address = address

    def build_command(
        self,
        allocation: AllocationDetail,
        task: str,
        stream: StreamType,
        *,
        origin: str = "end",
    ) -> list[str]:
        argv = [*self.command_prefix, self.nomad_binary, "alloc", "logs"]
        if self.address:
            argv.append(f"-address={self.address}")
        argv.append("-f")
        if origin == "end":
            argv.extend(["-tail", "-n", "0"])
        if stream is StreamType.STDERR:
            argv.append("-stderr")
        argv.extend([allocation.id, task])
        return argv

    def stream_logs(
        self,
        allocation: AllocationDetail,
        task: str,
        stream: StreamType,
        *,
        origin: str = "end",
    ) -> ProcessLogSource:
        argv = self.build_command(allocation, task, stream, origin=origin)
        logger.info("Starting command %s", shlex.join(argv))
        return ProcessLogSource(argv)
