"""Exported SDK primitives for the Nomad client."""

from .client import NomadAPIError, NomadClient, NomadConnectionError, NomadLogSource
from .models import FrameDecoder, LogFrame, detail_from_payload, stub_from_payload

__all__ = [
    "FrameDecoder",
    "LogFrame",
    "NomadAPIError",
    "NomadClient",
    "NomadConnectionError",
    "NomadLogSource",
    "detail_from_payload",
    "stub_from_payload",
]
