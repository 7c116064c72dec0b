"""Nomad API client and command line interface for alloc-tail."""

from alloc_tail.version import __version__

__all__ = ["__version__"]
