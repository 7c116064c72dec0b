"""Translate Nomad API payloads into watch-loop types."""

from __future__ import annotations

import base64
import binascii
import codecs
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from alloc_tail.watch.errors import StreamError
from alloc_tail.watch.models import AllocationDetail, AllocationStub, ClientStatus

__all__ = [
    "FrameDecoder",
    "LogFrame",
    "detail_from_payload",
    "stub_from_payload",
]

_MAX_PENDING_CHARS = 8 * 1024 * 1024


def _task_names(data: Mapping[str, Any]) -> list[str]:
    names: set[str] = set()
    for key in ("TaskStates", "TaskResources"):
        raw = data.get(key)
        if isinstance(raw, dict):
            names.update(str(name) for name in raw)
    resources = data.get("AllocatedResources")
    if isinstance(resources, dict) and isinstance(resources.get("Tasks"), dict):
        names.update(str(name) for name in resources["Tasks"])
    if not names:
        job = data.get("Job")
        group_name = data.get("TaskGroup")
        if isinstance(job, dict):
            for group in job.get("TaskGroups") or []:
                if group.get("Name") != group_name:
                    continue
                names.update(str(task.get("Name")) for task in group.get("Tasks") or [])
    return sorted(names)


def stub_from_payload(data: Mapping[str, Any]) -> AllocationStub:
    return AllocationStub(
        id=str(data["ID"]),
        job_id=str(data.get("JobID", "")),
        client_status=ClientStatus.parse(data.get("ClientStatus", "")),
        task_names=tuple(_task_names(data)),
    )


def detail_from_payload(data: Mapping[str, Any]) -> AllocationDetail:
    return AllocationDetail(
        id=str(data["ID"]),
        job_id=str(data.get("JobID", "")),
        task_group=str(data.get("TaskGroup", "")),
        task_names=frozenset(_task_names(data)),
    )


@dataclass
class LogFrame:
    """One frame of the ``/v1/client/fs/logs`` stream."""

    data: bytes
    offset: int = 0
    file: str = ""
    file_event: str = ""

    @property
    def is_heartbeat(self) -> bool:
        return not self.data and not self.file_event

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LogFrame:
        raw = data.get("Data") or ""
        try:
            payload = base64.b64decode(raw, validate=True) if raw else b""
        except (binascii.Error, ValueError) as exc:
            raise StreamError(f"Malformed log frame payload: {exc}") from exc
        return cls(
            data=payload,
            offset=int(data.get("Offset") or 0),
            file=str(data.get("File") or ""),
            file_event=str(data.get("FileEvent") or ""),
        )


class FrameDecoder:
    """Incrementally decode a byte stream of concatenated JSON frames."""

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._text = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> Iterator[LogFrame]:
        self._buffer += self._text.decode(chunk)
        while True:
            self._buffer = self._buffer.lstrip()
            if not self._buffer:
                return
            try:
                obj, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError as exc:
                if len(self._buffer) > _MAX_PENDING_CHARS:
                    raise StreamError(f"Undecodable log stream: {exc}") from exc
                # incomplete frame, wait for more bytes
                return
            self._buffer = self._buffer[end:]
            if not isinstance(obj, dict):
                raise StreamError(f"Unexpected log frame: {obj!r}")
            yield LogFrame.from_dict(obj)

    @property
    def pending(self) -> str:
        return self._buffer
