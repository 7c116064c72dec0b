"""Registry of allocations that currently have a stream worker."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from types import TracebackType

__all__ = ["AllocationClaim", "AllocationRegistry"]


@dataclass(slots=True)
class AllocationClaim:
    """Ownership of one registry slot, handed from the poller to its worker."""

    alloc_id: str
    registry: AllocationRegistry
    _released: bool = field(default=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.registry.release(self.alloc_id)

    def __enter__(self) -> AllocationClaim:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:  # noqa: D401 - context manager hook
        self.release()


class AllocationRegistry:
    """Thread-safe set of watched allocation IDs.

    ``cooldown`` keeps a released ID from being claimed again for that many
    seconds, so an allocation whose stream just ended is not immediately
    re-watched by the next poll.
    """

    def __init__(
        self,
        *,
        cooldown: float = 0.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.cooldown = max(0.0, cooldown)
        self._clock = clock or time.monotonic
        self._watched: set[str] = set()
        self._cooling: dict[str, float] = {}
        self._lock = Lock()

    def try_claim(self, alloc_id: str) -> bool:
        """Insert ``alloc_id`` if it is free; return whether the claim was won."""

        with self._lock:
            if alloc_id in self._watched:
                return False
            self._prune_cooling()
            if alloc_id in self._cooling:
                return False
            self._watched.add(alloc_id)
            return True

    def claim(self, alloc_id: str) -> AllocationClaim | None:
        if not self.try_claim(alloc_id):
            return None
        return AllocationClaim(alloc_id=alloc_id, registry=self)

    def release(self, alloc_id: str) -> None:
        with self._lock:
            if alloc_id not in self._watched:
                return
            self._watched.discard(alloc_id)
            self._prune_cooling()
            if self.cooldown:
                self._cooling[alloc_id] = self._clock() + self.cooldown

    def is_claimable(self, alloc_id: str) -> bool:
        with self._lock:
            return alloc_id not in self._watched and self._cooled_down(alloc_id)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._watched)

    @property
    def cooling_count(self) -> int:
        """Number of released IDs whose cooldown has not been pruned yet."""

        with self._lock:
            return len(self._cooling)

    def __contains__(self, alloc_id: object) -> bool:
        with self._lock:
            return alloc_id in self._watched

    def __len__(self) -> int:
        with self._lock:
            return len(self._watched)

    def _cooled_down(self, alloc_id: str) -> bool:
        # Caller holds the lock.
        deadline = self._cooling.get(alloc_id)
        if deadline is None:
            return True
        if self._clock() >= deadline:
            del self._cooling[alloc_id]
            return True
        return False

    def _prune_cooling(self) -> None:
        # Caller holds the lock.
        now = self._clock()
        expired = [alloc_id for alloc_id, deadline in self._cooling.items() if now >= deadline]
        for alloc_id in expired:
            del self._cooling[alloc_id]
