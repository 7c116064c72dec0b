"""HTTP client powered by urllib for the Nomad API."""

from __future__ import annotations

import json
import logging
import ssl
import threading
from collections.abc import Iterator
from http.client import HTTPResponse
from typing import Any, cast
from urllib import error, parse, request

from alloc_tail.version import __version__
from alloc_tail.watch.errors import BackendError, StreamError
from alloc_tail.watch.models import (
    AllocationDetail,
    AllocationStub,
    StreamType,
)
from nomad_client.sdk.models import FrameDecoder, detail_from_payload, stub_from_payload

__all__ = [
    "NomadAPIError",
    "NomadClient",
    "NomadConnectionError",
    "NomadLogSource",
]

_READ_SIZE = 64 * 1024

logger = logging.getLogger("nomad_client.sdk")


class NomadAPIError(BackendError):
    """Raised when the agent answers with an error status or a bad payload."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NomadConnectionError(BackendError):
    """Raised when the agent cannot be reached."""


class NomadLogSource:
    """Live ``/v1/client/fs/logs`` stream yielding decoded log payloads."""

    def __init__(self, response: HTTPResponse, *, description: str = "") -> None:
        self._response = response
        self._decoder = FrameDecoder()
        self._closed = threading.Event()
        self.description = description

    def __iter__(self) -> Iterator[bytes]:
        try:
            while not self._closed.is_set():
                chunk = self._response.read1(_READ_SIZE)
                if not chunk:
                    return
                for frame in self._decoder.feed(chunk):
                    if frame.file_event:
                        logger.debug("%s: file event %s", self.description, frame.file_event)
                        continue
                    if frame.data:
                        yield frame.data
        except (OSError, ValueError) as exc:
            if self._closed.is_set():
                return
            raise StreamError(f"{self.description or 'log stream'} failed: {exc}") from exc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._response.close()


class NomadClient:
    """Minimal HTTP client for the parts of the Nomad API the watcher needs."""

    def __init__(
        self,
        *,
        address: str,
        token: str | None = None,
        namespace: str | None = None,
        region: str | None = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
        stream_timeout: float = 60.0,
    ) -> None:
        self._address = address.rstrip("/")
        self._token = token
        self._namespace = namespace
        self._region = region
        self._timeout = timeout
        self._stream_timeout = stream_timeout
        self._ssl_context: ssl.SSLContext | None = None
        if not verify_tls:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            self._ssl_context = context

    @property
    def address(self) -> str:
        return self._address

    def close(self) -> None:  # pragma: no cover - kept for API symmetry
        return None

    def list_allocations(self) -> list[AllocationStub]:
        payload = self._json_request("GET", "/v1/allocations")
        if not isinstance(payload, list):
            raise NomadAPIError("Expected a list of allocations")
        try:
            return [stub_from_payload(item) for item in payload]
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise NomadAPIError(f"Malformed allocation listing: {exc!r}") from exc

    def get_allocation(self, alloc_id: str) -> AllocationDetail:
        payload = self._json_request("GET", f"/v1/allocation/{parse.quote(alloc_id)}")
        if not isinstance(payload, dict):
            raise NomadAPIError(f"Unexpected payload for allocation {alloc_id}")
        try:
            return detail_from_payload(payload)
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise NomadAPIError(f"Malformed allocation {alloc_id}: {exc!r}") from exc

    def list_job_tasks(self) -> list[tuple[str, str]]:
        """Return every distinct ``(job, task)`` pair across visible allocations."""

        pairs: set[tuple[str, str]] = set()
        for stub in self.list_allocations():
            for task in stub.task_names:
                pairs.add((stub.job_id, task))
        return sorted(pairs)

    def stream_logs(
        self,
        allocation: AllocationDetail,
        task: str,
        stream: StreamType,
        *,
        origin: str = "end",
    ) -> NomadLogSource:
        params = {
            "task": task,
            "type": stream.value,
            "follow": "true",
            "origin": origin,
            "offset": "0",
        }
        response = self._open(
            "GET",
            f"/v1/client/fs/logs/{parse.quote(allocation.id)}",
            params=params,
            timeout=self._stream_timeout,
        )
        return NomadLogSource(
            response,
            description=f"{stream.value} of {allocation.short_id}/{task}",
        )

    def _json_request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
    ) -> Any:
        with self._open(method, path, params=params) as resp:
            try:
                data = resp.read()
            except OSError as exc:
                raise NomadConnectionError(f"Reading {path} failed: {exc}") from exc
        if not data:
            return None
        try:
            return json.loads(data.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise NomadAPIError(f"Invalid JSON from {path}: {exc}") from exc

    def _open(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> HTTPResponse:
        query = dict(params or {})
        if self._namespace:
            query.setdefault("namespace", self._namespace)
        if self._region:
            query.setdefault("region", self._region)
        url = f"{self._address}{path}"
        if query:
            url = f"{url}?{parse.urlencode(query)}"
        headers = {
            "User-Agent": f"alloc-tail/{__version__}",
            "Accept": "application/json",
        }
        if self._token:
            headers["X-Nomad-Token"] = self._token
        req = request.Request(url, headers=headers, method=method)
        effective_timeout = self._timeout if timeout is None else timeout
        try:
            return cast(
                HTTPResponse,
                request.urlopen(req, timeout=effective_timeout, context=self._ssl_context),
            )
        except error.HTTPError as exc:
            message = exc.read().decode(errors="replace").strip() or exc.reason
            raise NomadAPIError(
                f"Nomad returned {exc.code} for {path}: {message}", status=exc.code
            ) from exc
        except (error.URLError, OSError) as exc:
            raise NomadConnectionError(f"Could not reach {self._address}: {exc}") from exc
