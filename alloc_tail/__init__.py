"""Nomad allocation log tailer."""

from .version import __version__  # noqa: F401
